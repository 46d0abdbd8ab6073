from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

from .state import DeviceStateManager, Subscription

_LOGGER = logging.getLogger("safetymonitor.realtime")


class RealtimeHub:
    """Pushes state notifications to connected UI websockets."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self._subscriptions: list[Subscription] = []

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach(self, state: DeviceStateManager) -> None:
        self._subscriptions = [
            state.add_safe_listener(
                lambda is_safe, reason, ts: self.notify("safe", {"isSafe": is_safe, "reason": reason, "last_change": ts})
            ),
            state.add_health_listener(lambda value: self.notify("health", {"health": value})),
            state.add_client_listener(
                lambda connected, source, ts: self.notify(
                    "client", {"alpaca_client_connected": connected, "alpaca_client_lastseen": ts}
                )
            ),
        ]

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []

    def notify(self, event_type: str, data: dict[str, Any]) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._clients.add(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(ws)

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> None:
        msg = json.dumps({"type": event_type, "data": data}, ensure_ascii=False)
        async with self._lock:
            clients = list(self._clients)
        dead: list[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(msg)
            except Exception:
                dead.append(ws)
        if dead:
            _LOGGER.debug("Dropping %d dead websocket(s)", len(dead))
            async with self._lock:
                for ws in dead:
                    self._clients.discard(ws)

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients)
            self._clients.clear()
        for ws in clients:
            try:
                await ws.close()
            except Exception:
                _LOGGER.debug("websocket close failed", exc_info=True)
