from __future__ import annotations

import json
import logging
import math
import urllib.parse
from typing import Any, Callable, Iterable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .settings import RuntimeConfig
from .state import VERSION, DeviceStateManager, utc_now_iso

_LOGGER = logging.getLogger("safetymonitor.alpaca")

ERROR_UNSPECIFIED = 1024
ERROR_MISSING_CONNECTED = 1025
ERROR_INVALID_CONNECTED = 1026
ERROR_INVALID_DEVICE_NUMBER = 1027
ERROR_NEGATIVE_DEVICE_NUMBER = 1028
ERROR_DEVICE_NOT_FOUND = 1029
ERROR_NOT_FOUND = 404

DEVICE_TYPE = "safetymonitor"
DEVICE_NUMBER = 0
UNIQUE_ID = "sim-safetymonitor-0"

ALL_METHODS = ["GET", "PUT", "POST", "DELETE", "PATCH", "HEAD"]


class AlpacaError(Exception):
    """A protocol-level failure reported through the error envelope."""

    def __init__(self, message: str, error_number: int = ERROR_UNSPECIFIED, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.error_number = error_number
        self.status_code = status_code


def parse_uint_or_zero(v: Any) -> int:
    """Client transaction ids: anything missing, non-numeric, non-finite or negative becomes 0."""
    if v is None:
        return 0
    try:
        n = float(v) if isinstance(v, (int, float)) else float(str(v).strip() or 0)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(n):
        return 0
    t = int(n)
    return t if t > 0 else 0


class RequestParams:
    """Case-insensitive parameter lookup over query string and request body.

    Both sources are folded to lower-case keys up front; the query string wins
    when a key appears in both, and the first occurrence wins within a source.
    """

    def __init__(self, query: Iterable[tuple[str, Any]] = (), body: Iterable[tuple[str, Any]] = ()):
        self._query = self._fold(query)
        self._body = self._fold(body)

    @staticmethod
    def _fold(items: Iterable[tuple[str, Any]]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in items:
            out.setdefault(str(k).lower(), v)
        return out

    def get(self, key: str, default: Any = None) -> Any:
        k = key.lower()
        if self._query.get(k) is not None:
            return self._query[k]
        if self._body.get(k) is not None:
            return self._body[k]
        return default

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    @classmethod
    async def from_request(cls, request: Request) -> "RequestParams":
        body: list[tuple[str, Any]] = []
        ctype = (request.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
        if ctype and request.method.upper() not in ("GET", "HEAD"):
            raw = await request.body()
            text = raw.decode("utf-8", errors="replace")
            if ctype == "application/x-www-form-urlencoded":
                body = urllib.parse.parse_qsl(text, keep_blank_values=True)
            elif ctype == "application/json" and text.strip():
                try:
                    obj = json.loads(text)
                except ValueError:
                    obj = None
                if isinstance(obj, dict):
                    body = list(obj.items())
        return cls(request.query_params.multi_items(), body)


def ok_body(state: DeviceStateManager, value: Any, client_tx: Any) -> dict[str, Any]:
    return {
        "Value": value,
        "ClientTransactionID": parse_uint_or_zero(client_tx),
        "ServerTransactionID": state.next_server_transaction_id(),
        "ErrorNumber": 0,
        "ErrorMessage": "",
    }


def error_body(state: DeviceStateManager, message: str, client_tx: Any, number: int = ERROR_UNSPECIFIED) -> dict[str, Any]:
    return {
        "ClientTransactionID": parse_uint_or_zero(client_tx),
        "ServerTransactionID": state.next_server_transaction_id(),
        "ErrorNumber": number,
        "ErrorMessage": message,
    }


def check_device_number(raw: str) -> int:
    if not raw.isdigit() or not raw.isascii():
        raise AlpacaError("Invalid device number", ERROR_INVALID_DEVICE_NUMBER, 400)
    dev = int(raw)
    if dev < 0:
        raise AlpacaError("Negative device number", ERROR_NEGATIVE_DEVICE_NUMBER, 400)
    if dev != DEVICE_NUMBER:
        raise AlpacaError("Device not found", ERROR_DEVICE_NOT_FOUND, 404)
    return dev


class SafetyMonitorDevice:
    def __init__(self, state: DeviceStateManager, config: Callable[[], RuntimeConfig]):
        self._state = state
        self._config = config
        self._handlers: dict[tuple[str, str], Callable[[RequestParams], Any]] = {
            ("GET", "connected"): self.get_connected,
            ("PUT", "connected"): self.put_connected,
            ("GET", "description"): self.get_description,
            ("GET", "driverinfo"): self.get_driverinfo,
            ("GET", "driverversion"): self.get_driverversion,
            ("GET", "name"): self.get_name,
            ("GET", "supportedactions"): self.get_supportedactions,
            ("GET", "interfaceversion"): self.get_interfaceversion,
            ("GET", "issafe"): self.get_issafe,
        }

    def handler(self, verb: str, method: str) -> Callable[[RequestParams], Any] | None:
        return self._handlers.get((verb.upper(), method))

    def get_connected(self, params: RequestParams) -> bool:
        return self._state.connected

    def put_connected(self, params: RequestParams) -> None:
        raw = params.get("Connected")
        if raw is None:
            raise AlpacaError("Missing parameter: Connected", ERROR_MISSING_CONNECTED)
        s = str(raw).strip().lower()
        if s in ("true", "1"):
            self._state.set_connected(True)
        elif s in ("false", "0"):
            self._state.set_connected(False)
        else:
            raise AlpacaError(f"Invalid Connected value: {raw}", ERROR_INVALID_CONNECTED)
        return None

    def get_description(self, params: RequestParams) -> str:
        return "Python SafetyMonitor"

    def get_driverinfo(self, params: RequestParams) -> str:
        return "Alpaca SafetyMonitor Bridge (Python)"

    def get_driverversion(self, params: RequestParams) -> str:
        return VERSION

    def get_name(self, params: RequestParams) -> str:
        return self._config().device_name

    def get_supportedactions(self, params: RequestParams) -> list[str]:
        return []

    def get_interfaceversion(self, params: RequestParams) -> int:
        return 1

    def get_issafe(self, params: RequestParams) -> bool:
        now = utc_now_iso()
        _LOGGER.debug("GET issafe @ %s", now)
        if not self._state.connected:
            # Minimal clients never PUT Connected.
            self._state.set_connected(True)
        self._state.set_client_connected(True, "issafe", now)
        return self._state.is_safe


def install_alpaca_routes(api: FastAPI, *, state: DeviceStateManager, device: SafetyMonitorDevice) -> None:
    """Register device, management and API catch-all routes.

    Must run after every other route under /api so the catch-all stays last.
    """

    def _cfg() -> RuntimeConfig:
        return api.state.config_store.config

    async def _ok(request: Request, value: Any) -> JSONResponse:
        params = await RequestParams.from_request(request)
        return JSONResponse(ok_body(state, value, params.get("ClientTransactionID")))

    @api.get("/management/apiversions")
    async def management_apiversions(request: Request):
        return await _ok(request, [1])

    @api.get("/management/v1/description")
    async def management_description(request: Request):
        return await _ok(
            request,
            {
                "ServerName": "Python Alpaca SafetyMonitor",
                "Manufacturer": "GalaxyScape",
                "ManufacturerVersion": VERSION,
                "Location": "localhost",
            },
        )

    @api.get("/management/v1/configureddevices")
    async def management_configureddevices(request: Request):
        return await _ok(
            request,
            [
                {
                    "DeviceName": _cfg().device_name,
                    "DeviceType": "SafetyMonitor",
                    "DeviceNumber": DEVICE_NUMBER,
                    "UniqueID": UNIQUE_ID,
                }
            ],
        )

    # Every path under the device prefix has its index validated before method lookup.
    @api.api_route(f"/api/v1/{DEVICE_TYPE}/{{device_number}}", methods=ALL_METHODS)
    @api.api_route(f"/api/v1/{DEVICE_TYPE}/{{device_number}}/{{method:path}}", methods=ALL_METHODS)
    async def device_call(request: Request):
        device_number = request.path_params["device_number"]
        method = request.path_params.get("method", "")
        params = await RequestParams.from_request(request)
        client_tx = params.get("ClientTransactionID")
        try:
            check_device_number(device_number)
            handler = device.handler(request.method, method)
            if handler is None:
                raise AlpacaError("Not Found", ERROR_NOT_FOUND, 404)
            value = handler(params)
        except AlpacaError as e:
            return JSONResponse(error_body(state, e.message, client_tx, e.error_number), status_code=e.status_code)
        except Exception as e:
            _LOGGER.exception("Alpaca %s %s failed", request.method, method)
            return JSONResponse(error_body(state, str(e) or "Internal error", client_tx), status_code=500)
        return JSONResponse(ok_body(state, value, client_tx))

    @api.api_route("/api/{path:path}", methods=ALL_METHODS)
    async def api_not_found(path: str, request: Request):
        params = await RequestParams.from_request(request)
        return JSONResponse(
            error_body(state, "Not Found", params.get("ClientTransactionID"), ERROR_NOT_FOUND),
            status_code=404,
        )
