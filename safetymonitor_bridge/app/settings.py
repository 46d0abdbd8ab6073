from __future__ import annotations

import os
import urllib.parse
from dataclasses import asdict, dataclass, replace
from typing import Any, Mapping

PASSWORD_MASK = "********"

# scheme -> (default port, tls, paho transport)
MQTT_SCHEMES: dict[str, tuple[int, bool, str]] = {
    "mqtt": (1883, False, "tcp"),
    "tcp": (1883, False, "tcp"),
    "mqtts": (8883, True, "tcp"),
    "ssl": (8883, True, "tcp"),
    "ws": (80, False, "websockets"),
    "wss": (443, True, "websockets"),
}

# Changing any of these requires a full bridge restart.
CONNECTION_KEYS = frozenset(
    {
        "mqtt_url",
        "mqtt_user",
        "mqtt_pass",
        "topic_base",
        "enable_mqtt",
        "ha_discovery",
        "discovery_prefix",
    }
)


def _parse_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


@dataclass(frozen=True)
class BootSettings:
    http_port: int
    discovery_port: int
    discovery_host: str
    discovery_broadcast: str
    heartbeat_s: float
    reconnect_s: float
    default_safe: bool
    config_path: str
    log_level: str
    log_buffer_size: int


@dataclass(frozen=True)
class MqttEndpoint:
    host: str
    port: int
    tls: bool
    transport: str
    path: str


@dataclass(frozen=True)
class RuntimeConfig:
    device_name: str = "SafetyMonitor"
    mqtt_url: str = "mqtt://localhost:1883"
    mqtt_user: str = ""
    mqtt_pass: str = ""
    topic_base: str = "alpaca/safetymonitor"
    enable_mqtt: bool = True
    enable_rest_control: bool = True
    ignore_retained_commands: bool = True
    ha_discovery: bool = False
    discovery_prefix: str = "homeassistant"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def masked(self) -> dict[str, Any]:
        data = self.to_dict()
        if data.get("mqtt_pass"):
            data["mqtt_pass"] = PASSWORD_MASK
        return data


def load_boot_settings(env: Mapping[str, str] | None = None) -> BootSettings:
    env = os.environ if env is None else env

    def _read_int(key: str, default: int, lo: int, hi: int) -> int:
        try:
            v = env.get(key)
            if v is None or str(v).strip() == "":
                return default
            return max(lo, min(hi, int(str(v).strip())))
        except Exception:
            return default

    def _read_float(key: str, default: float) -> float:
        try:
            v = env.get(key)
            if v is None:
                return float(default)
            return float(v)
        except Exception:
            return float(default)

    return BootSettings(
        http_port=_read_int("ALPACA_PORT", 11111, 0, 65535),
        discovery_port=_read_int("NINA_DISCOVERY_PORT", 32227, 0, 65535),
        discovery_host=str(env.get("DISCOVERY_HOST") or "0.0.0.0"),
        discovery_broadcast=str(env.get("DISCOVERY_BROADCAST") or "255.255.255.255"),
        heartbeat_s=max(1.0, _read_float("HEARTBEAT_SEC", 30.0)),
        reconnect_s=max(1.0, _read_float("MQTT_RECONNECT_SEC", 5.0)),
        default_safe=_parse_bool(env.get("DEFAULT_SAFE"), True),
        config_path=str(env.get("CONFIG_PATH") or "./config/config.json"),
        log_level=str(env.get("LOG_LEVEL") or "INFO").upper(),
        log_buffer_size=_read_int("LOG_BUFFER_SIZE", 500, 10, 100000),
    )


def default_runtime_config(env: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Defaults for the persisted config, seeded from the environment."""
    env = os.environ if env is None else env
    base = RuntimeConfig()
    raw: dict[str, Any] = {}
    for key, field in (
        ("DEVICE_NAME", "device_name"),
        ("MQTT_URL", "mqtt_url"),
        ("MQTT_USER", "mqtt_user"),
        ("MQTT_PASS", "mqtt_pass"),
        ("MQTT_TOPIC_BASE", "topic_base"),
        ("ENABLE_MQTT", "enable_mqtt"),
        ("ENABLE_REST_CONTROL", "enable_rest_control"),
        ("MQTT_IGNORE_RETAINED", "ignore_retained_commands"),
    ):
        v = env.get(key)
        if v is not None and str(v) != "":
            raw[field] = v
    try:
        return apply_config_update(base, raw, strict=False)
    except ValueError:
        return base


def parse_mqtt_url(url: str) -> MqttEndpoint:
    parsed = urllib.parse.urlsplit(str(url or "").strip())
    scheme = (parsed.scheme or "").lower()
    if scheme not in MQTT_SCHEMES:
        raise ValueError(f"unsupported MQTT URL scheme: {scheme or '(none)'}")
    if not parsed.hostname:
        raise ValueError("MQTT URL has no host")
    default_port, tls, transport = MQTT_SCHEMES[scheme]
    try:
        port = parsed.port or default_port
    except ValueError as e:
        raise ValueError(f"invalid MQTT port: {e}") from e
    return MqttEndpoint(
        host=parsed.hostname,
        port=int(port),
        tls=tls,
        transport=transport,
        path=parsed.path or "/mqtt",
    )


def apply_config_update(current: RuntimeConfig, payload: Mapping[str, Any], *, strict: bool = True) -> RuntimeConfig:
    """Return a new RuntimeConfig with `payload` merged in.

    Unknown keys are ignored. With strict=True a wrongly-typed value raises
    ValueError; otherwise it is coerced from its string form.
    """
    changes: dict[str, Any] = {}

    for key in ("device_name", "mqtt_url", "mqtt_user", "mqtt_pass", "topic_base", "discovery_prefix"):
        if key not in payload:
            continue
        v = payload[key]
        if v is None:
            v = ""
        if strict and not isinstance(v, str):
            raise ValueError(f"{key} must be a string")
        changes[key] = str(v).strip() if key != "mqtt_pass" else str(v)

    for key in ("enable_mqtt", "enable_rest_control", "ignore_retained_commands", "ha_discovery"):
        if key not in payload:
            continue
        v = payload[key]
        if isinstance(v, bool):
            changes[key] = v
            continue
        if strict:
            raise ValueError(f"{key} must be a boolean")
        parsed = _parse_bool(v, getattr(current, key))
        changes[key] = parsed

    if changes.get("mqtt_pass") == PASSWORD_MASK:
        changes.pop("mqtt_pass")

    if "device_name" in changes and not changes["device_name"]:
        raise ValueError("device_name must not be empty")
    if "topic_base" in changes:
        changes["topic_base"] = changes["topic_base"].rstrip("/")
        if not changes["topic_base"]:
            raise ValueError("topic_base must not be empty")
    if "discovery_prefix" in changes:
        changes["discovery_prefix"] = changes["discovery_prefix"].rstrip("/") or "homeassistant"
    if "mqtt_url" in changes:
        parse_mqtt_url(changes["mqtt_url"])

    return replace(current, **changes)


def changed_keys(old: RuntimeConfig, new: RuntimeConfig) -> set[str]:
    a = old.to_dict()
    b = new.to_dict()
    return {k for k in a if a[k] != b.get(k)}
