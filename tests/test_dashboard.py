from dataclasses import replace

from tunnelwatch.dashboard import render, sparkline
from tunnelwatch.vpn.models import (
    ConnectionSnapshot,
    ConnectionState,
    Event,
    LeakCheck,
    LeakStatus,
    LeakVerdict,
    NetworkInfo,
    SessionDetails,
    ThroughputRate,
    VPNProtocol,
)


def connected_snapshot(**changes):
    session = SessionDetails(interface_id="wg0", protocol=VPNProtocol.WIREGUARD, profile_name="nl-amsterdam",
                             endpoint="185.65.134.1:51820", internal_ip="10.64.12.7", mtu=1420)
    snap = ConnectionSnapshot(
        sequence=5,
        state=ConnectionState.CONNECTED,
        active_profile="nl-amsterdam",
        interface_id="wg0",
        session=session,
        session_age=3725.0,
        handshake_age=12.0,
        transfer_rx=5 * 1024 * 1024,
        transfer_tx=1536,
        throughput=ThroughputRate(down_bps=2000.0, up_bps=500.0, valid=True, elapsed=1.0),
        down_history=(1000.0, 2000.0),
        up_history=(500.0, 500.0),
        ipv6_leak=LeakVerdict(LeakCheck.IPV6, LeakStatus.LEAKING),
        dns_leak=LeakVerdict(LeakCheck.DNS, LeakStatus.CLEAR),
        network=NetworkInfo(public_ip="185.65.134.9", isp="AS39351 31173 Services AB", latency_ms=14.2),
        events=(Event(1, 0.0, "Connected to 'nl-amsterdam' on wg0"),),
    )
    return replace(snap, **changes)


def test_render_connected():
    out = render(connected_snapshot())
    assert "[CONNECTED]" in out
    assert "Profile:   nl-amsterdam" in out
    assert "01:02:05" in out
    assert "2.0 KB/s" in out
    assert "500 B/s" in out
    assert "IPv6 LEAK" in out
    assert "DNS ok" in out
    assert "5.0 MiB" in out
    assert "Connected to 'nl-amsterdam' on wg0" in out


def test_render_warming_up_is_not_zero():
    out = render(connected_snapshot(throughput=ThroughputRate.warming_up()))
    assert "warming up" in out
    assert "0 B/s" not in out


def test_render_disconnected():
    out = render(ConnectionSnapshot(scanner_available=False, scanner_failures=3))
    assert "[DISCONNECTED]" in out
    assert "scanner unavailable" in out
    assert "Profile:" not in out


def test_sparkline():
    assert sparkline([]) == ""
    assert sparkline([0, 0]) == "  "
    line = sparkline([1, 2, 4, 8])
    assert len(line) == 4
    assert line[-1] == "█"
