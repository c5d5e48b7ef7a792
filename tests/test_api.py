import os
import subprocess
import sys
from pathlib import Path

from fastapi.testclient import TestClient

from tunnelwatch.main import create_app
from tunnelwatch.vpn.exceptions import ProbeUnavailable
from tunnelwatch.vpn.command_factory import VPNCommandFactory


def client_for(monitor):
    return TestClient(create_app(monitor, start_monitor=False))


def test_status_when_idle(make_monitor):
    monitor = make_monitor()
    response = client_for(monitor).get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "disconnected"
    assert body["throughput"]["valid"] is False
    assert body["throughput"]["down_bps"] is None
    assert body["ipv6_leak"]["status"] == "unknown"
    assert body["dns_leak"]["status"] == "unknown"


def test_profiles(make_monitor):
    response = client_for(make_monitor()).get("/profiles")
    assert response.status_code == 200
    assert [p["name"] for p in response.json()] == ["nl-amsterdam", "us-east"]
    assert response.json()[1]["protocol"] == "openvpn"


def test_connect_then_scan(make_monitor, no_missing_tools):
    monitor = make_monitor()
    client = client_for(monitor)

    response = client.post("/connect", json={"profile": "nl-amsterdam"})
    assert response.status_code == 200
    assert response.json()["state"] == "connecting"
    assert response.json()["pending_profile"] == "nl-amsterdam"
    assert monitor.runner.calls == [["wg-quick", "up", "/etc/wireguard/nl-amsterdam.conf"]]

    monitor.scanner.up()
    monitor._scan_job()
    body = client.get("/status").json()
    assert body["state"] == "connected"
    assert body["active_profile"] == "nl-amsterdam"
    assert body["interface"] == "wg0"

    # only one profile may be active
    assert client.post("/connect", json={"profile": "us-east"}).status_code == 409


def test_connect_unknown_profile(make_monitor, no_missing_tools):
    response = client_for(make_monitor()).post("/connect", json={"profile": "de-berlin"})
    assert response.status_code == 404


def test_connect_with_missing_tools(make_monitor, monkeypatch):
    monkeypatch.setattr(VPNCommandFactory, "missing_tools", staticmethod(lambda protocol: ["wg-quick"]))
    monitor = make_monitor()
    response = client_for(monitor).post("/connect", json={"profile": "nl-amsterdam"})
    assert response.status_code == 424
    assert monitor.latest_snapshot().state.value == "disconnected"


def test_failed_connect_command(make_monitor, no_missing_tools):
    monitor = make_monitor()
    monitor.runner.error = ProbeUnavailable("wg-quick: exit status 1")
    response = client_for(monitor).post("/connect", json={"profile": "nl-amsterdam"})
    assert response.status_code == 502
    assert monitor.latest_snapshot().state.value == "disconnected"


def test_disconnect(make_monitor, no_missing_tools):
    monitor = make_monitor()
    client = client_for(monitor)
    assert client.post("/disconnect").status_code == 409

    client.post("/connect", json={"profile": "nl-amsterdam"})
    monitor.scanner.up()
    monitor._scan_job()
    response = client.post("/disconnect")
    assert response.status_code == 200
    assert response.json()["state"] == "disconnecting"
    assert monitor.runner.calls[-1] == ["wg-quick", "down", "/etc/wireguard/nl-amsterdam.conf"]


def test_events_since(make_monitor, no_missing_tools):
    monitor = make_monitor()
    client = client_for(monitor)
    client.post("/connect", json={"profile": "nl-amsterdam"})

    events = client.get("/events").json()
    assert events[-1]["message"] == "Connecting to 'nl-amsterdam'"
    last = events[-1]["sequence"]
    assert client.get("/events", params={"since": last}).json() == []


def test_event_stream_ends_when_monitor_stops(make_monitor):
    monitor = make_monitor()
    monitor.stop()
    response = client_for(monitor).get("/events/stream")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")


def connected_client(monitor):
    client = client_for(monitor)
    client.post("/connect", json={"profile": "nl-amsterdam"})
    monitor.scanner.up()
    monitor._scan_job()
    return client


def test_reconnect(make_monitor, no_missing_tools):
    monitor = make_monitor()
    client = client_for(monitor)
    assert client.post("/reconnect").status_code == 409

    client = connected_client(monitor)
    response = client.post("/reconnect")
    assert response.status_code == 200
    assert response.json()["state"] == "connecting"
    assert response.json()["pending_profile"] == "nl-amsterdam"
    assert monitor.runner.calls[-2:] == [
        ["wg-quick", "down", "/etc/wireguard/nl-amsterdam.conf"],
        ["wg-quick", "up", "/etc/wireguard/nl-amsterdam.conf"],
    ]

    monitor._scan_job()
    assert client.get("/status").json()["state"] == "connected"


def test_failed_reconnect(make_monitor, no_missing_tools):
    monitor = make_monitor()
    client = connected_client(monitor)
    monitor.runner.error = ProbeUnavailable("wg-quick: exit status 1")
    response = client.post("/reconnect")
    assert response.status_code == 502
    assert monitor.latest_snapshot().state.value == "disconnected"


def test_importing_the_api_builds_no_monitor(tmp_path):
    broken = tmp_path / "broken.conf"
    broken.write_text("[broken]\nprotocol = wireguard\n")
    root = Path(__file__).resolve().parents[1]
    env = dict(
        os.environ,
        TUNNELWATCH_CONFIG=str(broken),
        TUNNELWATCH_LOG_DIR=str(tmp_path),
        PYTHONPATH=os.pathsep.join(filter(None, [str(root), os.environ.get("PYTHONPATH")])),
    )
    result = subprocess.run(
        [sys.executable, "-c", "import tunnelwatch.main as api; assert not hasattr(api, 'app')"],
        env=env, capture_output=True, text=True, timeout=60,
    )
    assert result.returncode == 0, result.stderr
