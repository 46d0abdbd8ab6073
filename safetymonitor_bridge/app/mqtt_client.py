from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .settings import MqttEndpoint

_LOGGER = logging.getLogger("safetymonitor.mqtt")


@dataclass(frozen=True)
class MqttStatus:
    connected: bool
    last_error: str | None


@dataclass(frozen=True)
class Will:
    topic: str
    payload: str
    qos: int = 1
    retain: bool = True


class MqttClient:
    """One broker connection, owned by the bridge for its lifetime.

    paho runs its network loop on a thread; connect and message callbacks are
    handed to the asyncio loop so handlers run on the same thread as the rest
    of the app. Each callback receives this client so the owner can drop
    events from a connection it has already replaced.
    """

    def __init__(
        self,
        *,
        endpoint: MqttEndpoint,
        username: str,
        password: str,
        client_id: str,
        loop: asyncio.AbstractEventLoop,
        will: Will | None = None,
        reconnect_s: float = 5.0,
    ):
        self._endpoint = endpoint
        self._loop = loop
        self._reconnect_s = max(1, int(round(reconnect_s)))
        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            transport=endpoint.transport,
        )
        if endpoint.transport == "websockets":
            self._client.ws_set_options(path=endpoint.path)
        if endpoint.tls:
            self._client.tls_set()
        if username:
            self._client.username_pw_set(username, password or None)
        if will is not None:
            self._client.will_set(will.topic, will.payload, qos=will.qos, retain=will.retain)

        self._lock = threading.Lock()
        self._connected = False
        self._last_error: str | None = None

        self._on_message_user: Callable[[MqttClient, str, bytes, bool], None] | None = None
        self._on_connect_user: Callable[[MqttClient], None] | None = None

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_connect_fail = self._on_connect_fail

    @property
    def endpoint(self) -> MqttEndpoint:
        return self._endpoint

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop already closed during shutdown.
            pass

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            with self._lock:
                self._connected = False
                self._last_error = f"connect refused: {reason_code}"
            _LOGGER.warning("MQTT connect to %s:%s refused: %s", self._endpoint.host, self._endpoint.port, reason_code)
            return
        with self._lock:
            self._connected = True
            self._last_error = None
        _LOGGER.info("MQTT connected %s:%s", self._endpoint.host, self._endpoint.port)
        handler = self._on_connect_user
        if handler is not None:
            self._dispatch(handler, self)

    def _on_connect_fail(self, client, userdata):
        with self._lock:
            self._connected = False
            self._last_error = f"connect to {self._endpoint.host}:{self._endpoint.port} failed"
        _LOGGER.warning("MQTT connect to %s:%s failed, retrying", self._endpoint.host, self._endpoint.port)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        with self._lock:
            self._connected = False
            if getattr(reason_code, "value", reason_code) != 0:
                self._last_error = f"disconnect reason_code={reason_code}"
        _LOGGER.info("MQTT connection closed (%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        handler = self._on_message_user
        if handler is None:
            return
        self._dispatch(handler, self, str(msg.topic), bytes(msg.payload or b""), bool(msg.retain))

    def set_message_handler(self, handler: Callable[[MqttClient, str, bytes, bool], None] | None) -> None:
        self._on_message_user = handler

    def set_connect_handler(self, handler: Callable[[MqttClient], None] | None) -> None:
        self._on_connect_user = handler

    def connect(self) -> None:
        try:
            # Fixed retry period, unbounded attempts; paho keeps retrying the first connect too.
            self._client.reconnect_delay_set(min_delay=self._reconnect_s, max_delay=self._reconnect_s)
            self._client.connect_async(self._endpoint.host, self._endpoint.port, keepalive=30)
            self._client.loop_start()
        except Exception as e:
            with self._lock:
                self._connected = False
                self._last_error = str(e)
            _LOGGER.warning("MQTT connect to %s:%s failed: %s", self._endpoint.host, self._endpoint.port, e)

    def disconnect(self) -> None:
        """Blocking: joins the paho network thread."""
        try:
            self._client.disconnect()
            self._client.loop_stop()
        finally:
            with self._lock:
                self._connected = False

    def status(self) -> MqttStatus:
        with self._lock:
            return MqttStatus(connected=self._connected, last_error=self._last_error)

    @property
    def connected(self) -> bool:
        return self.status().connected

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> bool:
        if isinstance(payload, (dict, list)):
            data = json.dumps(payload, ensure_ascii=False)
        elif isinstance(payload, bool):
            data = "true" if payload else "false"
        else:
            data = str(payload)
        try:
            info = self._client.publish(topic, data, qos=qos, retain=retain)
        except Exception as e:
            _LOGGER.warning("MQTT publish %s failed: %s", topic, e)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            _LOGGER.warning("MQTT publish %s failed: %s", topic, mqtt.error_string(info.rc))
            return False
        return True

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        try:
            self._client.subscribe(topic, qos=qos)
        except Exception as e:
            _LOGGER.warning("MQTT subscribe %s failed: %s", topic, e)
