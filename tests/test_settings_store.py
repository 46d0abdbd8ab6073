from __future__ import annotations

import json
import os

import pytest

from safetymonitor_bridge.app.settings import (
    RuntimeConfig,
    apply_config_update,
    changed_keys,
    default_runtime_config,
    load_boot_settings,
    parse_mqtt_url,
)
from safetymonitor_bridge.app.store import ConfigStore


def test_boot_settings_defaults():
    s = load_boot_settings({})
    assert s.http_port == 11111
    assert s.discovery_port == 32227
    assert s.heartbeat_s == 30.0
    assert s.default_safe is True
    assert s.discovery_broadcast == "255.255.255.255"


def test_boot_settings_tolerates_garbage():
    s = load_boot_settings({"ALPACA_PORT": "abc", "HEARTBEAT_SEC": "x", "DEFAULT_SAFE": "false", "LOG_LEVEL": "debug"})
    assert s.http_port == 11111
    assert s.heartbeat_s == 30.0
    assert s.default_safe is False
    assert s.log_level == "DEBUG"


def test_runtime_defaults_from_env():
    cfg = default_runtime_config(
        {"MQTT_URL": "mqtt://broker:1999", "MQTT_TOPIC_BASE": "obs/sm/", "ENABLE_REST_CONTROL": "0"}
    )
    assert cfg.mqtt_url == "mqtt://broker:1999"
    assert cfg.topic_base == "obs/sm"
    assert cfg.enable_rest_control is False
    assert cfg.ignore_retained_commands is True


@pytest.mark.parametrize(
    "url,host,port,tls,transport",
    [
        ("mqtt://localhost", "localhost", 1883, False, "tcp"),
        ("mqtt://10.0.0.2:1884", "10.0.0.2", 1884, False, "tcp"),
        ("mqtts://broker", "broker", 8883, True, "tcp"),
        ("ws://broker:9001", "broker", 9001, False, "websockets"),
        ("wss://broker", "broker", 443, True, "websockets"),
    ],
)
def test_parse_mqtt_url(url, host, port, tls, transport):
    ep = parse_mqtt_url(url)
    assert (ep.host, ep.port, ep.tls, ep.transport) == (host, port, tls, transport)


@pytest.mark.parametrize("url", ["", "localhost:1883", "http://broker", "mqtt://"])
def test_parse_mqtt_url_rejects(url):
    with pytest.raises(ValueError):
        parse_mqtt_url(url)


def test_apply_update_keeps_password_on_mask():
    cfg = RuntimeConfig(mqtt_pass="secret")
    new = apply_config_update(cfg, {"mqtt_pass": "********", "device_name": "Dome", "unknown": 1})
    assert new.mqtt_pass == "secret"
    assert new.device_name == "Dome"
    assert changed_keys(cfg, new) == {"device_name"}


def test_masked_hides_password_only_when_set():
    assert RuntimeConfig().masked()["mqtt_pass"] == ""
    assert RuntimeConfig(mqtt_pass="x").masked()["mqtt_pass"] == "********"


def test_store_load_writes_defaults(tmp_path):
    path = tmp_path / "nested" / "config.json"
    store = ConfigStore(str(path))
    cfg = store.load()
    assert cfg == RuntimeConfig()
    assert json.loads(path.read_text(encoding="utf-8"))["topic_base"] == "alpaca/safetymonitor"


def test_store_load_overlays_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"device_name": "Roof", "enable_mqtt": False}), encoding="utf-8")
    cfg = ConfigStore(str(path)).load()
    assert cfg.device_name == "Roof"
    assert cfg.enable_mqtt is False


def test_store_moves_corrupt_file_aside(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    cfg = ConfigStore(str(path)).load()
    assert cfg == RuntimeConfig()
    assert any(name.startswith("config.json.corrupt.") for name in os.listdir(tmp_path))


def test_store_load_fails_when_directory_not_writable(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    store = ConfigStore(str(blocker / "config.json"))
    with pytest.raises(OSError):
        store.load()


def test_store_update_persists_and_reports_changes(tmp_path):
    path = tmp_path / "config.json"
    store = ConfigStore(str(path))
    store.load()
    new, changed = store.update({"topic_base": "a/b", "device_name": "SafetyMonitor"})
    assert changed == {"topic_base"}
    assert store.config is new
    assert json.loads(path.read_text(encoding="utf-8"))["topic_base"] == "a/b"
    assert not (tmp_path / "config.json.tmp").exists()


def test_store_update_invalid_leaves_config(tmp_path):
    store = ConfigStore(str(tmp_path / "config.json"))
    store.load()
    with pytest.raises(ValueError):
        store.update({"enable_rest_control": "nope"})
    assert store.config == RuntimeConfig()
