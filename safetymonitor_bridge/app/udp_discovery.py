from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Callable

_LOGGER = logging.getLogger("safetymonitor.discovery")

DISCOVERY_PORT = 32227
DISCOVERY_TOKEN = "alpacadiscovery1"


def build_reply(http_port: int) -> bytes:
    return json.dumps({"AlpacaPort": int(http_port)}, separators=(",", ":")).encode("ascii")


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """Stateless Alpaca discovery responder; each datagram is handled on its own."""

    def __init__(self, http_port: Callable[[], int], broadcast_addr: str = "255.255.255.255"):
        self._http_port = http_port
        self._broadcast_addr = broadcast_addr
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        txt = data.decode("ascii", errors="replace").strip().lower()
        if txt != DISCOVERY_TOKEN:
            return
        if self.transport is None:
            return
        payload = build_reply(self._http_port())
        host, port = addr[0], addr[1]
        _LOGGER.debug("Discovery request from %s:%s", host, port)
        for target in ((host, port), (self._broadcast_addr, port)):
            try:
                self.transport.sendto(payload, target)
            except OSError as e:
                _LOGGER.warning("Discovery reply to %s:%s failed: %s", target[0], target[1], e)

    def error_received(self, exc):
        _LOGGER.warning("Discovery socket error: %s", exc)

    def connection_lost(self, exc):
        if exc is not None:
            _LOGGER.info("Discovery socket closed: %s", exc)


class DiscoveryResponder:
    def __init__(
        self,
        *,
        http_port: Callable[[], int],
        port: int = DISCOVERY_PORT,
        host: str = "0.0.0.0",
        broadcast_addr: str = "255.255.255.255",
    ):
        self._http_port = http_port
        self._port = port
        self._host = host
        self._broadcast_addr = broadcast_addr
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def started(self) -> bool:
        return self._transport is not None

    def _create_sock(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind((self._host, self._port))
        except OSError:
            sock.close()
            raise
        return sock

    async def start(self) -> None:
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            sock = self._create_sock()
        except OSError as ex:
            _LOGGER.warning("Could not bind discovery socket %s:%s: %s", self._host, self._port, ex)
            return
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self._http_port, self._broadcast_addr), sock=sock
            )
        except OSError as ex:
            sock.close()
            _LOGGER.warning("Could not start discovery on %s:%s: %s", self._host, self._port, ex)
            return
        self._transport = transport
        _LOGGER.info("UDP discovery on %s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
