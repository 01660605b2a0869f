"""Tests for the FastAPI REST endpoints.

Tests verify:
- Status, health and restart endpoints
- Command routing and error mapping (400/503)
- Recent readings and CSV export
"""

from fastapi.testclient import TestClient

from api import main as api_module


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "online"


def test_status_reports_link_and_state(client) -> None:
    response = client.get("/api/status")
    assert response.status_code == 200

    data = response.json()
    assert data["serial"] == {
        "port": "/dev/fake",
        "baudRate": 9600,
        "connected": True,
        "state": "connected",
    }
    assert data["server"]["port"] == api_module.SERVER_PORT
    assert data["server"]["uptime_s"] >= 0
    assert data["clients"] == 0
    assert data["state"]["isRunning"] is False
    assert data["readings"]["row_count"] == 0


def test_status_counts_websocket_clients(client) -> None:
    with client.websocket_connect("/") as websocket:
        websocket.receive_json()
        websocket.receive_json()
        assert client.get("/api/status").json()["clients"] == 1


def test_command_while_stopped_is_sent(client, fake_serial, wait_for) -> None:
    response = client.post("/api/command", json={"command": " T1:2 "})

    assert response.status_code == 200
    assert response.json() == {"status": "sent", "command": "T1:2"}
    assert wait_for(lambda: fake_serial.temp_sample_time == 2)


def test_command_while_running_is_queued(client, fake_serial, wait_for) -> None:
    assert client.post("/api/command", json={"command": "a"}).json()["status"] == "sent"
    assert wait_for(lambda: api_module._relay.store.is_running)

    response = client.post("/api/command", json={"command": "T2:7"})

    assert response.json() == {"status": "queued", "command": "T2:7"}
    assert wait_for(lambda: not api_module._relay.sequencer.in_flight)
    assert fake_serial.commands()[2:] == ["a", "b", "T2:7", "a"]


def test_empty_command_is_400(client) -> None:
    response = client.post("/api/command", json={"command": "   "})
    assert response.status_code == 400
    assert "Empty command" in response.json()["detail"]


def test_missing_command_field_is_422(client) -> None:
    assert client.post("/api/command", json={}).status_code == 422


def test_command_without_serial_port_is_503(monkeypatch_relay, monkeypatch) -> None:
    monkeypatch.setattr(api_module, "AUTO_CONNECT", False)
    with TestClient(api_module.app) as client:
        response = client.post("/api/command", json={"command": "a"})

    assert response.status_code == 503
    assert "not connected" in response.json()["detail"]


def test_reset_defaults(client, fake_serial, wait_for) -> None:
    fake_serial.temp_samples = 40

    response = client.post("/api/reset-defaults")

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert wait_for(lambda: not api_module._relay.sequencer.in_flight)
    assert fake_serial.temp_samples == 10
    assert fake_serial.running is True


def test_restart_serial_reruns_init_sequence(client, fake_serial, wait_for) -> None:
    response = client.post("/api/restart-serial")

    assert response.json()["success"] is True
    assert wait_for(lambda: fake_serial.commands() == ["b", "STATUS", "b", "STATUS"])


def test_recent_readings(client, fake_serial, wait_for) -> None:
    fake_serial.emit_readings()
    assert wait_for(lambda: len(api_module._readings) == 2)

    rows = client.get("/api/recent?seconds=30").json()["rows"]

    assert [(r["kind"], r["value"]) for r in rows] == [("temperature", 23.5), ("intensity", 412.25)]


def test_recent_window_is_bounded(client) -> None:
    assert client.get("/api/recent?seconds=0").status_code == 422
    assert client.get("/api/recent?seconds=301").status_code == 422


def test_export_csv(client, fake_serial, wait_for) -> None:
    assert client.get("/api/export/csv").status_code == 400

    fake_serial.inject_line("TEMP:19.00")
    assert wait_for(lambda: len(api_module._readings) == 1)

    response = client.get("/api/export/csv")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    assert response.text.splitlines()[0] == "timestamp,kind,value"
    assert response.text.splitlines()[1].endswith(",temperature,19.0")
