from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from .discovery import health_discovery, safety_discovery
from .mqtt_client import MqttClient, MqttStatus, Will
from .settings import RuntimeConfig, parse_mqtt_url
from .state import VERSION, DeviceStateManager, parse_safe_value, utc_now_iso

_LOGGER = logging.getLogger("safetymonitor.bridge")


@dataclass(frozen=True)
class Topics:
    base: str

    @property
    def command(self) -> str:
        return f"{self.base}/safe/set"

    @property
    def state(self) -> str:
        return f"{self.base}/safe/state"

    @property
    def online(self) -> str:
        return f"{self.base}/online"

    @property
    def version(self) -> str:
        return f"{self.base}/version"

    @property
    def heartbeat(self) -> str:
        return f"{self.base}/heartbeat"

    @property
    def uptime(self) -> str:
        return f"{self.base}/uptime"

    @property
    def last_change(self) -> str:
        return f"{self.base}/last_change"

    @property
    def reason(self) -> str:
        return f"{self.base}/reason"

    @property
    def source(self) -> str:
        return f"{self.base}/source"

    @property
    def health(self) -> str:
        return f"{self.base}/health"

    @property
    def client_connected(self) -> str:
        return f"{self.base}/clients/alpaca/connected"

    @property
    def client_lastseen(self) -> str:
        return f"{self.base}/clients/alpaca/lastseen"


def reason_source(reason: str | None) -> str:
    return (reason or "").split(":", 1)[0] or "manual"


def safe_payload(is_safe: bool) -> str:
    return "safe" if is_safe else "unsafe"


ClientFactory = Callable[..., Any]


class MqttBridge:
    """Mirrors the safety state onto an MQTT broker and accepts commands from it.

    At most one connection is live. start/stop/restart derive everything from
    the current RuntimeConfig; a restart is a full stop followed by a start.
    """

    def __init__(
        self,
        *,
        state: DeviceStateManager,
        config: Callable[[], RuntimeConfig],
        heartbeat_s: float = 30.0,
        reconnect_s: float = 5.0,
        client_factory: ClientFactory | None = None,
    ):
        self._state = state
        self._config = config
        self._heartbeat_s = heartbeat_s
        self._reconnect_s = reconnect_s
        self._client_factory: ClientFactory = client_factory or MqttClient

        self._conn: Any = None
        self._topics: Topics | None = None
        self._ha_discovery = False
        self._discovery_prefix = "homeassistant"
        self._heartbeat_task: asyncio.Task | None = None
        self._lifecycle_lock = asyncio.Lock()

        self._subscriptions = [
            state.add_safe_listener(self._on_safe_changed),
            state.add_health_listener(self._on_health_changed),
            state.add_client_listener(self._on_client_changed),
        ]

    @property
    def topics(self) -> Topics | None:
        return self._topics

    @property
    def connection(self) -> Any:
        return self._conn

    @property
    def connected(self) -> bool:
        conn = self._conn
        return bool(conn is not None and conn.connected)

    def status(self) -> MqttStatus:
        conn = self._conn
        if conn is None:
            return MqttStatus(connected=False, last_error=None)
        return conn.status()

    # lifecycle

    async def start(self) -> None:
        async with self._lifecycle_lock:
            await self._start()

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            await self._stop()

    async def restart(self) -> None:
        async with self._lifecycle_lock:
            _LOGGER.info("Restarting MQTT bridge")
            await self._stop()
            await self._start()

    async def _start(self) -> None:
        if self._conn is not None:
            return
        cfg = self._config()
        if not cfg.enable_mqtt:
            _LOGGER.info("MQTT disabled")
            return
        try:
            endpoint = parse_mqtt_url(cfg.mqtt_url)
        except ValueError as e:
            _LOGGER.warning("MQTT not started: %s", e)
            return

        topics = Topics(cfg.topic_base)
        conn = self._client_factory(
            endpoint=endpoint,
            username=cfg.mqtt_user,
            password=cfg.mqtt_pass,
            client_id=f"alpaca-safetymonitor-{uuid.uuid4().hex[:8]}",
            loop=asyncio.get_running_loop(),
            will=Will(topic=topics.online, payload="false", qos=1, retain=True),
            reconnect_s=self._reconnect_s,
        )
        conn.set_connect_handler(self._handle_connect)
        conn.set_message_handler(self._handle_message)

        self._conn = conn
        self._topics = topics
        self._ha_discovery = cfg.ha_discovery
        self._discovery_prefix = cfg.discovery_prefix
        _LOGGER.info("MQTT connecting %s, sub %s", cfg.mqtt_url, topics.command)
        conn.connect()

    async def _stop(self) -> None:
        self._cancel_heartbeat()
        conn = self._conn
        topics = self._topics
        self._conn = None
        self._topics = None
        if conn is None:
            return
        try:
            if topics is not None and conn.connected:
                conn.publish(topics.online, "false", retain=True, qos=1)
            await asyncio.to_thread(conn.disconnect)
        except Exception:
            _LOGGER.exception("MQTT disconnect failed")
        _LOGGER.info("MQTT bridge stopped")

    # connection callbacks (run on the event loop)

    def _handle_connect(self, conn: Any) -> None:
        if conn is not self._conn or self._topics is None:
            return
        t = self._topics
        conn.subscribe(t.command)
        conn.publish(t.online, "true", retain=True)
        conn.publish(t.version, VERSION, retain=True)
        conn.publish(t.state, safe_payload(self._state.is_safe), retain=True)
        conn.publish(t.health, self._state.health, retain=True)
        if self._state.last_change is not None:
            reason = self._state.last_reason or ""
            conn.publish(t.last_change, self._state.last_change, retain=True)
            conn.publish(t.reason, reason, retain=True)
            conn.publish(t.source, reason_source(reason), retain=True)
        conn.publish(t.client_connected, self._state.client_connected, retain=True)
        # An empty retained payload would clear the broker's copy.
        if self._state.client_last_seen is not None:
            conn.publish(t.client_lastseen, self._state.client_last_seen, retain=True)
        if self._ha_discovery:
            self._publish_discovery(conn, t)
        self._start_heartbeat(conn)

    def _handle_message(self, conn: Any, topic: str, payload: bytes, retain: bool) -> None:
        if conn is not self._conn or self._topics is None:
            return
        if topic != self._topics.command:
            return
        s = payload.decode("utf-8", errors="replace").strip().lower()
        if retain and self._config().ignore_retained_commands:
            _LOGGER.info('MQTT ignore retained command: "%s"', s)
            return
        value = parse_safe_value(s)
        if value is None:
            _LOGGER.info('MQTT ignore payload: "%s"', s)
            return
        self._state.set_safe(value, f"mqtt:{s}")

    def _publish_discovery(self, conn: Any, t: Topics) -> None:
        name = self._config().device_name
        for build in (safety_discovery, health_discovery):
            topic, payload = build(discovery_prefix=self._discovery_prefix, topic_base=t.base, device_name=name)
            conn.publish(topic, payload, retain=True)

    # heartbeat

    def _start_heartbeat(self, conn: Any) -> None:
        self._cancel_heartbeat()
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop(conn))

    def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _heartbeat_loop(self, conn: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_s)
                if conn is not self._conn:
                    return
                if not conn.connected:
                    continue
                self.publish_heartbeat()
        except asyncio.CancelledError:
            return

    def publish_heartbeat(self) -> None:
        conn, t = self._live()
        if conn is None or t is None:
            return
        conn.publish(t.heartbeat, utc_now_iso(), retain=False)
        conn.publish(t.uptime, str(self._state.uptime_seconds()), retain=False)

    # state listeners

    def _live(self) -> tuple[Any, Topics | None]:
        conn = self._conn
        if conn is None or not conn.connected:
            return None, None
        return conn, self._topics

    def _on_safe_changed(self, is_safe: bool, reason: str, ts: str) -> None:
        conn, t = self._live()
        if conn is None or t is None:
            return
        conn.publish(t.state, safe_payload(is_safe), retain=True)
        conn.publish(t.last_change, ts, retain=True)
        conn.publish(t.reason, reason, retain=True)
        conn.publish(t.source, reason_source(reason), retain=True)

    def _on_health_changed(self, value: str) -> None:
        conn, t = self._live()
        if conn is None or t is None:
            return
        conn.publish(t.health, value, retain=True)

    def _on_client_changed(self, connected: bool, source: str, ts: str) -> None:
        conn, t = self._live()
        if conn is None or t is None:
            return
        conn.publish(t.client_connected, connected, retain=True)
        conn.publish(t.client_lastseen, ts, retain=True)
