from __future__ import annotations

import pytest

from moissense.core.errors import TransportError
from moissense.core.models import CommandResult, OperatingMode, PumpState
from moissense.main import create_app
from moissense.utils.user_preferences import UserPreferencesManager
from tests.conftest import latest_payload


@pytest.fixture
def prefs(tmp_path) -> UserPreferencesManager:
    return UserPreferencesManager(config_dir=str(tmp_path))


@pytest.fixture
def app(store, dispatcher, sync_loop, prefs):
    app = create_app(store, dispatcher, sync_loop=sync_loop, user_prefs=prefs)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http(app):
    return app.test_client()


def test_status(http, sync_loop) -> None:
    sync_loop.poll_once()

    body = http.get("/status").get_json()

    assert body["success"] is True
    assert body["device_connected"] is True
    assert body["sync_running"] is False
    assert body["version"]
    assert "/api/pump" in body["remote_api"]


def test_state_before_first_poll(http) -> None:
    body = http.get("/api/state").get_json()

    assert body["snapshot"] is None
    assert body["connectivity"]["connected"] is False
    assert body["alerts"] == []
    assert body["mode"] == "AUTO"


def test_state_after_poll(http, sync_loop, client) -> None:
    client.latest = latest_payload(soil=250, rain_status="🌧 Hujan")
    sync_loop.poll_once()

    body = http.get("/api/state").get_json()

    assert body["snapshot"]["moisture_percent"] == 24
    assert body["snapshot"]["pump_state"] == "OFF"
    assert [a["code"] for a in body["alerts"]] == ["DRY", "RAIN"]
    assert body["connectivity"]["connected"] is True


def test_events_in_service_order(http, sync_loop) -> None:
    sync_loop.poll_once()

    events = http.get("/api/events").get_json()["events"]

    assert [e["category"] for e in events] == ["PUMP_ON", "WARNING", "RAIN_DETECTED"]
    assert events[0]["timestamp"] == "14:32:15"


def test_toggle_refused_in_auto_mode(http, sync_loop, client) -> None:
    sync_loop.poll_once()

    response = http.post("/api/pump/toggle")

    assert response.status_code == 409
    assert response.get_json()["error"] == "ModeError"
    assert client.sent == []


def test_mode_then_toggle(http, sync_loop, client, prefs) -> None:
    sync_loop.poll_once()

    mode = http.post("/api/mode", json={"mode": "manual"})
    assert mode.get_json() == {"success": True, "mode": "MANUAL", "auto_mode": False}
    assert prefs.get_preference("system.auto_mode") is False

    response = http.post("/api/pump/toggle")
    assert response.status_code == 200
    assert response.get_json()["pump_state"] == "ON"
    assert client.sent == [PumpState.ON]


def test_mode_accepts_auto_flag(http, store) -> None:
    http.post("/api/mode", json={"auto": False})
    assert store.state.mode is OperatingMode.MANUAL

    http.post("/api/mode", json={"auto": True})
    assert store.state.mode is OperatingMode.AUTO


@pytest.mark.parametrize("payload", [{}, {"mode": "turbo"}, {"auto": "false"}, {"auto": 0}])
def test_mode_bad_input(http, payload) -> None:
    assert http.post("/api/mode", json=payload).status_code == 400


def test_set_pump_bad_cmd(http) -> None:
    assert http.post("/api/pump", json={"cmd": "MAYBE"}).status_code == 400


def test_set_pump_transport_failure_is_502(http, sync_loop, dispatcher, client, store) -> None:
    sync_loop.poll_once()
    dispatcher.set_mode(OperatingMode.MANUAL)
    client.command_error = TransportError("timeout")

    response = http.post("/api/pump", json={"cmd": "on"})

    assert response.status_code == 502
    body = response.get_json()
    assert body["error"] == "TransportError"
    assert body["pump_state"] == "OFF"
    assert store.state.snapshot.pump_state is PumpState.OFF


def test_set_pump_device_rejection_is_502(http, sync_loop, dispatcher, client) -> None:
    sync_loop.poll_once()
    dispatcher.set_mode(OperatingMode.MANUAL)
    client.command_result = CommandResult(accepted=False, error_message="relay stuck")

    response = http.post("/api/pump", json={"cmd": "ON"})

    assert response.status_code == 502
    assert response.get_json()["message"] == "relay stuck"


def test_set_pump_unexpected_client_error_is_502(http, sync_loop, dispatcher, client, store) -> None:
    sync_loop.poll_once()
    dispatcher.set_mode(OperatingMode.MANUAL)
    client.command_error = OSError("socket closed")

    response = http.post("/api/pump", json={"cmd": "ON"})

    assert response.status_code == 502
    assert response.get_json()["error"] == "OSError"
    assert store.state.pending is False
