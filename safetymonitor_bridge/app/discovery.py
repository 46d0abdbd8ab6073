from __future__ import annotations

import re
from typing import Any

from .state import HEALTH_VALUES, VERSION


def slugify(text: str) -> str:
    s = text.strip().lower()
    s = re.sub(r"[^a-z0-9_\- ]+", "", s)
    s = re.sub(r"[\s\-]+", "_", s)
    return s or "safetymonitor"


def node_id(topic_base: str) -> str:
    return slugify(topic_base.replace("/", "_"))


def _device_block(*, topic_base: str, device_name: str) -> dict[str, Any]:
    return {
        "identifiers": [f"alpaca:{node_id(topic_base)}"],
        "name": device_name,
        "manufacturer": "GalaxyScape",
        "model": "Alpaca SafetyMonitor",
        "sw_version": VERSION,
    }


def safety_discovery(*, discovery_prefix: str, topic_base: str, device_name: str) -> tuple[str, dict[str, Any]]:
    nid = node_id(topic_base)
    # HA "safety" device class: ON means unsafe.
    payload: dict[str, Any] = {
        "name": "Safe",
        "unique_id": f"{nid}_safe",
        "device_class": "safety",
        "state_topic": f"{topic_base}/safe/state",
        "payload_on": "unsafe",
        "payload_off": "safe",
        "availability_topic": f"{topic_base}/online",
        "payload_available": "true",
        "payload_not_available": "false",
        "device": _device_block(topic_base=topic_base, device_name=device_name),
    }
    return f"{discovery_prefix}/binary_sensor/{nid}/safe/config", payload


def health_discovery(*, discovery_prefix: str, topic_base: str, device_name: str) -> tuple[str, dict[str, Any]]:
    nid = node_id(topic_base)
    payload: dict[str, Any] = {
        "name": "Health",
        "unique_id": f"{nid}_health",
        "device_class": "enum",
        "options": list(HEALTH_VALUES),
        "entity_category": "diagnostic",
        "state_topic": f"{topic_base}/health",
        "availability_topic": f"{topic_base}/online",
        "payload_available": "true",
        "payload_not_available": "false",
        "icon": "mdi:heart-pulse",
        "device": _device_block(topic_base=topic_base, device_name=device_name),
    }
    return f"{discovery_prefix}/sensor/{nid}/health/config", payload
