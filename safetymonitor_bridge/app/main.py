from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .alpaca import RequestParams, SafetyMonitorDevice, install_alpaca_routes
from .bridge import ClientFactory, MqttBridge
from .logbuffer import LogBuffer
from .realtime import RealtimeHub
from .settings import CONNECTION_KEYS, BootSettings, default_runtime_config, load_boot_settings
from .state import VERSION, DeviceStateManager, parse_health, parse_safe_value
from .store import ConfigStore
from .udp_discovery import DiscoveryResponder

_LOGGER = logging.getLogger("safetymonitor")
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
)


def _configure_logging(level_name: str, buffer_size: int = 500) -> LogBuffer:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "safetymonitor",
        "paho",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)

    buf = LogBuffer(maxlen=buffer_size)
    root.addHandler(buf)
    return buf


def _fail(status_code: int, error: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error}, status_code=status_code)


def create_app(
    settings: BootSettings | None = None,
    *,
    config_store: ConfigStore | None = None,
    log_buffer: LogBuffer | None = None,
    client_factory: ClientFactory | None = None,
) -> FastAPI:
    settings = settings or load_boot_settings()

    if config_store is None:
        config_store = ConfigStore(settings.config_path, defaults=default_runtime_config())
        config_store.load()
    store = config_store

    state = DeviceStateManager(default_safe=settings.default_safe)
    bridge = MqttBridge(
        state=state,
        config=lambda: store.config,
        heartbeat_s=settings.heartbeat_s,
        reconnect_s=settings.reconnect_s,
        client_factory=client_factory,
    )
    responder = DiscoveryResponder(
        http_port=lambda: settings.http_port,
        port=settings.discovery_port,
        host=settings.discovery_host,
        broadcast_addr=settings.discovery_broadcast,
    )
    hub = RealtimeHub()
    hub.attach(state)
    logs = log_buffer or LogBuffer(maxlen=settings.log_buffer_size)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        await responder.start()
        await bridge.start()
        _LOGGER.info("Alpaca HTTP on http://0.0.0.0:%s", settings.http_port)
        try:
            yield
        finally:
            await bridge.stop()
            await responder.stop()
            await hub.close_all()

    api = FastAPI(title="Alpaca SafetyMonitor Bridge", version=VERSION, lifespan=lifespan)
    api.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    api.state.settings = settings
    api.state.config_store = store
    api.state.device_state = state
    api.state.bridge = bridge
    api.state.discovery = responder
    api.state.hub = hub
    api.state.log_buffer = logs

    def _status() -> dict[str, Any]:
        cfg = store.config
        return {
            "online": bridge.connected,
            "version": VERSION,
            "uptime_s": state.uptime_seconds(),
            "isSafe": state.is_safe,
            "last_change": state.last_change,
            "reason": state.last_reason,
            "health": state.health,
            "device": cfg.device_name,
            "topic_base": cfg.topic_base,
            "alpaca_client_connected": state.client_connected,
            "alpaca_client_lastseen": state.client_last_seen,
            "mqtt_error": bridge.status().last_error,
        }

    @api.get("/status")
    async def status():
        return _status()

    @api.get("/healthz")
    async def healthz():
        if bridge.connected:
            return PlainTextResponse("OK", status_code=200)
        return PlainTextResponse("Service Unavailable", status_code=503)

    @api.get("/config")
    async def config_get():
        return store.config.masked()

    @api.put("/config")
    async def config_put(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            return _fail(400, "body must be a JSON object")
        if not isinstance(payload, dict):
            return _fail(400, "body must be a JSON object")
        try:
            new, changed = store.update(payload)
        except ValueError as e:
            return _fail(400, str(e))
        except OSError as e:
            _LOGGER.error("Saving config failed: %s", e)
            return _fail(500, f"failed to save config: {e}")

        restarted = False
        if changed & CONNECTION_KEYS:
            await bridge.restart()
            restarted = True
        return {"ok": True, "config": new.masked(), "restarted": restarted}

    # --- REST control ---

    @api.post("/control/safe")
    async def control_safe(request: Request):
        if not store.config.enable_rest_control:
            return _fail(403, "REST control disabled")
        params = await RequestParams.from_request(request)
        value = parse_safe_value(params.get("value"))
        if value is None:
            return _fail(400, "value must be true/false/safe/unsafe/1/0")
        state.set_safe(value, "http")
        return {"ok": True, "isSafe": value}

    @api.post("/control/health")
    async def control_health(request: Request):
        if not store.config.enable_rest_control:
            return _fail(403, "REST control disabled")
        params = await RequestParams.from_request(request)
        value = parse_health(params.get("value"))
        if value is None:
            return _fail(400, "value must be ok|degraded|error")
        state.set_health(value)
        return {"ok": True, "health": value}

    @api.post("/_simulate/rain")
    async def simulate_rain(request: Request):
        if not store.config.enable_rest_control:
            return _fail(403, "REST control disabled")
        params = await RequestParams.from_request(request)
        raw = str(params.get("on", "false")).strip().lower()
        raining = raw in ("true", "1")
        state.set_safe(not raining, "simulate")
        return {"ok": True, "isRaining": raining}

    @api.get("/logs")
    async def recent_logs(limit: int = 100):
        return {"logs": logs.recent(limit)}

    @api.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        await hub.connect(ws)
        try:
            await ws.send_text(json.dumps({"type": "snapshot", "data": _status()}, ensure_ascii=False))
            while True:
                msg = await ws.receive_text()
                if msg.strip().lower() == "ping":
                    await ws.send_text("pong")
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(ws)

    # Registered last: owns the /api catch-all.
    device = SafetyMonitorDevice(state, lambda: store.config)
    install_alpaca_routes(api, state=state, device=device)

    return api


def main() -> None:
    import uvicorn

    settings = load_boot_settings()
    log_buffer = _configure_logging(settings.log_level, settings.log_buffer_size)

    store = ConfigStore(settings.config_path, defaults=default_runtime_config())
    try:
        store.load()
    except OSError as e:
        _LOGGER.critical("Cannot write config %s: %s", settings.config_path, e)
        raise SystemExit(1)

    app = create_app(settings, config_store=store, log_buffer=log_buffer)

    level = settings.log_level.lower()
    if level not in ("critical", "error", "warning", "info", "debug", "trace"):
        level = "info"

    async def _serve() -> None:
        cfg = uvicorn.Config(app, host="0.0.0.0", port=settings.http_port, log_level=level)
        srv = uvicorn.Server(cfg)
        await srv.serve()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
