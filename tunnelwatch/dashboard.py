import os
import sys
import time

from .vpn.models import ConnectionSnapshot, ConnectionState, LeakStatus
from .vpn.utils import format_bytes, format_bytes_speed, format_duration, truncate

SPARK_BLOCKS = " ▁▂▃▄▅▆▇█"
SPARK_WIDTH = 30
EVENT_LINES = 5

_LEAK_MARKS = {
    LeakStatus.UNKNOWN: "?",
    LeakStatus.CLEAR: "ok",
    LeakStatus.LEAKING: "LEAK",
}


def sparkline(values, width: int = SPARK_WIDTH) -> str:
    """Scale the last ``width`` values to block characters."""
    values = list(values)[-width:]
    if not values:
        return ""
    peak = max(values)
    if peak <= 0:
        return SPARK_BLOCKS[0] * len(values)
    top = len(SPARK_BLOCKS) - 1
    return "".join(SPARK_BLOCKS[round(v / peak * top)] for v in values)


def _opt(value, fmt=str, missing: str = "-") -> str:
    return missing if value is None else fmt(value)


def render(snapshot: ConnectionSnapshot) -> str:
    lines = []
    state = snapshot.state.value.upper()
    if snapshot.state is ConnectionState.CONNECTING and snapshot.pending_profile:
        state += f" ({snapshot.pending_profile})"
    lines.append(f"TunnelWatch  [{state}]")

    if not snapshot.scanner_available:
        lines.append(f"  ! scanner unavailable ({snapshot.scanner_failures} failed scans)")

    if snapshot.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING):
        session = snapshot.session
        lines.append(f"  Profile:   {snapshot.active_profile or 'unknown'}")
        lines.append(f"  Interface: {snapshot.interface_id}")
        if session is not None:
            lines.append(f"  Endpoint:  {_opt(session.endpoint)}  Internal IP: {_opt(session.internal_ip)}"
                         f"  MTU: {_opt(session.mtu)}")
        lines.append(f"  Uptime:    {_opt(snapshot.session_age, format_duration)}"
                     f"  Handshake: {_opt(snapshot.handshake_age, lambda a: format_duration(a) + ' ago')}")
        lines.append(f"  Transfer:  rx {_opt(snapshot.transfer_rx, format_bytes)}"
                     f"  tx {_opt(snapshot.transfer_tx, format_bytes)}")

        rate = snapshot.throughput
        if rate.valid:
            lines.append(f"  Down: {format_bytes_speed(rate.down_bps):>10}  {sparkline(snapshot.down_history)}")
            lines.append(f"  Up:   {format_bytes_speed(rate.up_bps):>10}  {sparkline(snapshot.up_history)}")
        else:
            lines.append(f"  Throughput: {rate.reason or 'warming up'}")

        lines.append(f"  Leaks:     IPv6 {_LEAK_MARKS[snapshot.ipv6_leak.status]}"
                     f"  DNS {_LEAK_MARKS[snapshot.dns_leak.status]}")

    if snapshot.ambiguous_interfaces:
        lines.append(f"  Also active: {', '.join(snapshot.ambiguous_interfaces)}")

    net = snapshot.network
    lines.append(f"  Public IP: {_opt(net.public_ip)}  ISP: {truncate(net.isp or '-', 32)}")
    lines.append(f"  Latency:   {_opt(net.latency_ms, lambda ms: f'{ms:.0f} ms')}  DNS: {_opt(net.dns_server)}")

    if snapshot.events:
        lines.append("")
        lines.append("Events:")
        for event in snapshot.events[-EVENT_LINES:]:
            lines.append(f"  {truncate(event.format(), 100)}")
    return "\n".join(lines)


def print_periodic(monitor, interval: float = 1.0) -> None:
    """Print the latest snapshot every ``interval`` seconds until Ctrl+C.

    The screen is only cleared when stdout is a terminal, so redirected
    output stays free of control codes.
    """
    is_tty = sys.stdout.isatty()
    try:
        while True:
            out = render(monitor.latest_snapshot())
            if is_tty:
                os.system('clear')
            print(out)
            if is_tty:
                print("\nCtrl+C to quit.")
            time.sleep(interval)
    except KeyboardInterrupt:
        print("Stopping monitor...")
