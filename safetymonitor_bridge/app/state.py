from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Literal

_LOGGER = logging.getLogger("safetymonitor.state")

VERSION = "0.4.0"

HEALTH_OK = "ok"
HEALTH_DEGRADED = "degraded"
HEALTH_ERROR = "error"
HEALTH_VALUES = (HEALTH_OK, HEALTH_DEGRADED, HEALTH_ERROR)

Health = Literal["ok", "degraded", "error"]

TRUTHY = ("1", "true", "on", "safe", "yes")
FALSY = ("0", "false", "off", "unsafe", "no")


def utc_now_iso() -> str:
    # 2024-05-01T21:14:03.512Z
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_safe_value(raw: object) -> bool | None:
    """Map a command token to a safety verdict, or None if it is not in the vocabulary."""
    s = str(raw if raw is not None else "").strip().lower()
    if s in TRUTHY:
        return True
    if s in FALSY:
        return False
    return None


def parse_health(raw: object) -> str | None:
    s = str(raw if raw is not None else "").strip().lower()
    return s if s in HEALTH_VALUES else None


@dataclass
class SafetyState:
    is_safe: bool
    health: str = HEALTH_OK
    last_change: str | None = None
    last_reason: str | None = None
    connected: bool = False
    client_connected: bool = False
    client_last_seen: str | None = None
    server_transaction_id: int = 0


SafeListener = Callable[[bool, str, str], None]
HealthListener = Callable[[str], None]
ClientListener = Callable[[bool, str, str], None]


class Subscription:
    """Handle returned by the add_*_listener methods; cancel() detaches the callback."""

    def __init__(self, listeners: list, cb: Callable) -> None:
        self._listeners = listeners
        self._cb = cb

    @property
    def active(self) -> bool:
        return self._cb in self._listeners

    def cancel(self) -> None:
        try:
            self._listeners.remove(self._cb)
        except ValueError:
            pass


class DeviceStateManager:
    def __init__(self, *, default_safe: bool = True) -> None:
        self._state = SafetyState(is_safe=bool(default_safe))
        self._started = time.monotonic()

        self._safe_listeners: list[SafeListener] = []
        self._health_listeners: list[HealthListener] = []
        self._client_listeners: list[ClientListener] = []

    @property
    def state(self) -> SafetyState:
        return self._state

    @property
    def is_safe(self) -> bool:
        return self._state.is_safe

    @property
    def health(self) -> str:
        return self._state.health

    @property
    def last_change(self) -> str | None:
        return self._state.last_change

    @property
    def last_reason(self) -> str | None:
        return self._state.last_reason

    @property
    def connected(self) -> bool:
        return self._state.connected

    @property
    def client_connected(self) -> bool:
        return self._state.client_connected

    @property
    def client_last_seen(self) -> str | None:
        return self._state.client_last_seen

    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self._started)

    # listeners

    def add_safe_listener(self, cb: SafeListener) -> Subscription:
        self._safe_listeners.append(cb)
        return Subscription(self._safe_listeners, cb)

    def add_health_listener(self, cb: HealthListener) -> Subscription:
        self._health_listeners.append(cb)
        return Subscription(self._health_listeners, cb)

    def add_client_listener(self, cb: ClientListener) -> Subscription:
        self._client_listeners.append(cb)
        return Subscription(self._client_listeners, cb)

    def _emit(self, listeners: list, what: str, *args: object) -> None:
        for cb in list(listeners):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("%s listener failed", what)

    # mutations

    def set_safe(self, value: bool, reason: str = "manual") -> bool:
        """Set the safety verdict. Returns True when the value actually flipped."""
        new = bool(value)
        if new == self._state.is_safe:
            return False
        ts = utc_now_iso()
        self._state.is_safe = new
        self._state.last_change = ts
        self._state.last_reason = reason
        _LOGGER.info("IsSafe=%s (%s)", new, reason)
        self._emit(self._safe_listeners, "safeChanged", new, reason, ts)
        return True

    def set_health(self, value: str) -> None:
        # Re-announced even when unchanged.
        self._state.health = value
        self._emit(self._health_listeners, "healthChanged", value)

    def set_connected(self, value: bool) -> None:
        self._state.connected = bool(value)

    def set_client_connected(self, value: bool, source: str, timestamp: str | None = None) -> bool:
        ts = timestamp or utc_now_iso()
        new = bool(value)
        self._state.client_last_seen = ts
        if new == self._state.client_connected:
            return False
        self._state.client_connected = new
        _LOGGER.info("Alpaca client %s (%s)", "connected" if new else "disconnected", source)
        self._emit(self._client_listeners, "clientConnectionChanged", new, source, ts)
        return True

    def next_server_transaction_id(self) -> int:
        self._state.server_transaction_id += 1
        return self._state.server_transaction_id
