from __future__ import annotations

import pytest

from safetymonitor_bridge.app.alpaca import RequestParams, parse_uint_or_zero

BASE = "/api/v1/safetymonitor"


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, 0),
        ("", 0),
        ("42", 42),
        (" 7 ", 7),
        ("12.9", 12),
        ("-5", 0),
        ("abc", 0),
        ("inf", 0),
        ("nan", 0),
        (99, 99),
        (-1, 0),
    ],
)
def test_parse_uint_or_zero(raw, expected):
    assert parse_uint_or_zero(raw) == expected


def test_request_params_case_insensitive_query_first():
    params = RequestParams(
        query=[("clienttransactionid", "5")],
        body=[("ClientTransactionID", "9"), ("CONNECTED", "true")],
    )
    assert params.get("ClientTransactionID") == "5"
    assert params.get("connected") == "true"
    assert "Connected" in params
    assert params.get("missing", "dflt") == "dflt"


def test_put_then_get_connected(client):
    r = client.put(f"{BASE}/0/connected", params={"Connected": "true"})
    assert r.status_code == 200
    body = r.json()
    assert body["ErrorNumber"] == 0
    assert body["Value"] is None

    r = client.get(f"{BASE}/0/connected")
    assert r.json()["Value"] is True


def test_put_connected_form_body(client):
    r = client.put(f"{BASE}/0/connected", data={"connected": "True", "ClientTransactionID": "33"})
    assert r.status_code == 200
    assert r.json()["ClientTransactionID"] == 33
    assert client.get(f"{BASE}/0/connected").json()["Value"] is True

    client.put(f"{BASE}/0/connected", data={"Connected": "0"})
    assert client.get(f"{BASE}/0/connected").json()["Value"] is False


def test_put_connected_missing_param(client):
    r = client.put(f"{BASE}/0/connected")
    assert r.status_code == 400
    body = r.json()
    assert body["ErrorNumber"] == 1025
    assert "Value" not in body


def test_put_connected_invalid_value(client):
    r = client.put(f"{BASE}/0/connected", params={"Connected": "yes"})
    assert r.status_code == 400
    assert r.json()["ErrorNumber"] == 1026
    assert "yes" in r.json()["ErrorMessage"]


@pytest.mark.parametrize("endpoint", ["connected", "issafe", "name", "description", "nonexistent"])
def test_unknown_device_index(client, endpoint):
    r = client.get(f"{BASE}/7/{endpoint}")
    assert r.status_code == 404
    assert r.json()["ErrorNumber"] == 1029


@pytest.mark.parametrize("path", [f"{BASE}/7", f"{BASE}/7/", f"{BASE}/7/a/b"])
def test_unknown_device_index_on_any_subpath(client, path):
    r = client.get(path)
    assert r.status_code == 404
    assert r.json()["ErrorNumber"] == 1029


@pytest.mark.parametrize("path", [f"{BASE}/abc", f"{BASE}/x/issafe/extra"])
def test_invalid_device_index_on_any_subpath(client, path):
    r = client.get(path)
    assert r.status_code == 400
    assert r.json()["ErrorNumber"] == 1027


@pytest.mark.parametrize("path", [f"{BASE}/0", f"{BASE}/0/issafe/extra"])
def test_valid_index_without_known_method_is_not_found(client, path):
    r = client.get(path)
    assert r.status_code == 404
    assert r.json()["ErrorNumber"] == 404


@pytest.mark.parametrize("dev", ["abc", "-1", "1.0"])
def test_invalid_device_index(client, dev):
    r = client.get(f"{BASE}/{dev}/issafe")
    assert r.status_code == 400
    assert r.json()["ErrorNumber"] == 1027


def test_issafe_auto_connects_and_marks_client(client, app):
    st = app.state.device_state
    assert st.connected is False

    r = client.get(f"{BASE}/0/issafe", params={"ClientTransactionID": "12"})
    body = r.json()
    assert body["Value"] is True
    assert body["ClientTransactionID"] == 12
    assert st.connected is True
    assert st.client_connected is True
    assert st.client_last_seen is not None


def test_issafe_reflects_state(client, app):
    app.state.device_state.set_safe(False, "test")
    assert client.get(f"{BASE}/0/issafe").json()["Value"] is False


def test_static_descriptors(client, app):
    assert client.get(f"{BASE}/0/supportedactions").json()["Value"] == []
    assert client.get(f"{BASE}/0/interfaceversion").json()["Value"] == 1
    assert client.get(f"{BASE}/0/driverversion").json()["Value"] == "0.4.0"
    assert client.get(f"{BASE}/0/name").json()["Value"] == "SafetyMonitor"

    app.state.config_store.update({"device_name": "Roof"})
    assert client.get(f"{BASE}/0/name").json()["Value"] == "Roof"


def test_server_transaction_id_spans_success_and_error(client):
    ids = []
    for path in (
        f"{BASE}/0/issafe",
        f"{BASE}/9/issafe",
        "/management/apiversions",
        "/api/nothing/here",
        f"{BASE}/0/connected",
    ):
        ids.append(client.get(path).json()["ServerTransactionID"])
    ids.append(client.put(f"{BASE}/0/connected", params={"Connected": "bad"}).json()["ServerTransactionID"])
    assert ids == list(range(ids[0], ids[0] + len(ids)))


def test_negative_client_transaction_id_is_zero(client):
    r = client.get(f"{BASE}/0/name", params={"clienttransactionid": "-4"})
    assert r.json()["ClientTransactionID"] == 0


def test_unknown_api_route_uses_envelope(client):
    r = client.post("/api/v1/telescope/0/slew", params={"ClientTransactionID": "3"})
    assert r.status_code == 404
    body = r.json()
    assert body["ErrorNumber"] == 404
    assert body["ErrorMessage"] == "Not Found"
    assert body["ClientTransactionID"] == 3


def test_wrong_verb_on_known_method_is_not_found(client):
    r = client.put(f"{BASE}/0/issafe")
    assert r.status_code == 404
    assert r.json()["ErrorNumber"] == 404


def test_management_endpoints(client):
    versions = client.get("/management/apiversions").json()
    assert versions["Value"] == [1]
    assert versions["ErrorNumber"] == 0

    desc = client.get("/management/v1/description").json()["Value"]
    assert desc["Manufacturer"] == "GalaxyScape"
    assert desc["ManufacturerVersion"] == "0.4.0"

    devices = client.get("/management/v1/configureddevices").json()["Value"]
    assert len(devices) == 1
    assert devices[0]["DeviceType"] == "SafetyMonitor"
    assert devices[0]["DeviceNumber"] == 0
