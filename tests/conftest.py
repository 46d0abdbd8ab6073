"""Shared fixtures: a broker-less MQTT client double and an app wired to a temp config."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from safetymonitor_bridge.app.main import create_app
from safetymonitor_bridge.app.mqtt_client import MqttStatus
from safetymonitor_bridge.app.settings import RuntimeConfig, load_boot_settings
from safetymonitor_bridge.app.state import DeviceStateManager
from safetymonitor_bridge.app.store import ConfigStore


class FakeMqttClient:
    """Stands in for MqttClient; records everything the bridge sends."""

    instances: list["FakeMqttClient"] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.endpoint = kwargs.get("endpoint")
        self.will = kwargs.get("will")
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.published: list[tuple[str, Any, bool]] = []
        self.subscribed: list[str] = []
        self.on_connect = None
        self.on_message = None
        FakeMqttClient.instances.append(self)

    def set_connect_handler(self, handler) -> None:
        self.on_connect = handler

    def set_message_handler(self, handler) -> None:
        self.on_message = handler

    def connect(self) -> None:
        self.connect_calls += 1

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def status(self) -> MqttStatus:
        return MqttStatus(connected=self.connected, last_error=None)

    def publish(self, topic: str, payload: Any, *, retain: bool = False, qos: int = 0) -> bool:
        self.published.append((topic, payload, retain))
        return True

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        self.subscribed.append(topic)

    # test helpers

    def simulate_connect(self) -> None:
        self.connected = True
        self.on_connect(self)

    def simulate_message(self, topic: str, payload: bytes, retain: bool = False) -> None:
        self.on_message(self, topic, payload, retain)

    def last(self, topic: str) -> Any:
        for t, p, _ in reversed(self.published):
            if t == topic:
                return p
        raise KeyError(topic)

    def topics(self) -> list[str]:
        return [t for t, _, _ in self.published]


@pytest.fixture(autouse=True)
def _reset_fake_clients():
    FakeMqttClient.instances.clear()
    yield
    FakeMqttClient.instances.clear()


@pytest.fixture
def state() -> DeviceStateManager:
    return DeviceStateManager(default_safe=True)


@pytest.fixture
def boot_settings(tmp_path):
    return load_boot_settings(
        {
            "ALPACA_PORT": "11111",
            "NINA_DISCOVERY_PORT": "0",
            "DISCOVERY_HOST": "127.0.0.1",
            "CONFIG_PATH": str(tmp_path / "config" / "config.json"),
        }
    )


@pytest.fixture
def config_store(boot_settings) -> ConfigStore:
    store = ConfigStore(boot_settings.config_path, defaults=RuntimeConfig())
    store.load()
    return store


@pytest.fixture
def app(boot_settings, config_store):
    return create_app(boot_settings, config_store=config_store, client_factory=FakeMqttClient)


@pytest.fixture
def client(app) -> TestClient:
    # No context manager: lifespan (UDP bind, broker connect) stays off.
    return TestClient(app)
