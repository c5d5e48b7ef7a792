"""Connection state machine: the single writer of ConnectionSnapshot.

``merge_tick`` and the ``apply_*`` functions are pure: they take the previous
snapshot plus the latest probe outputs and return the next snapshot.
``ConnectionStateMachine`` buffers probe outputs between scans, serialises
every merge under one lock and hands each result to the publisher.

Transitions::

    DISCONNECTED  -> CONNECTING     connect requested, or a session was found
    CONNECTING    -> CONNECTED      scanner reports a matching session
    CONNECTING    -> DISCONNECTED   connect command failed, reconnect failed or connect_timeout passed
    CONNECTED     -> DISCONNECTING  disconnect requested
    CONNECTED     -> DISCONNECTED   no matching session for disconnect_debounce scans
    DISCONNECTING -> DISCONNECTED   same
    CONNECTED     -> CONNECTING     reconnect requested
    any           -> DISCONNECTED   scanner failed scanner_failure_threshold times in a row
"""

import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Union

from .config import MonitorSettings
from .exceptions import ConnectionStateError, VPNError
from .models import (
    ConnectionSnapshot,
    ConnectionState,
    Event,
    InterfaceSample,
    LeakCheck,
    LeakStatus,
    LeakVerdict,
    NetworkInfo,
    ScanResult,
    SessionDetails,
    ThroughputRate,
)
from ..logging_utility import logger

_LEAK_LABELS = {LeakCheck.IPV6: "IPv6", LeakCheck.DNS: "DNS"}
_LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class SampleReading(NamedTuple):
    sample: InterfaceSample
    rate: ThroughputRate


ScanOutcome = Union[ScanResult, VPNError]
SampleOutcome = Union[SampleReading, VPNError, None]


class _EventBuffer:
    """Events raised while building one snapshot, numbered after the previous one."""

    def __init__(self, previous: ConnectionSnapshot, now: float):
        self._next = previous.last_event_sequence + 1
        self._now = now
        self.items: List[Event] = []

    def add(self, message: str, level: str = "info") -> None:
        self.items.append(Event(sequence=self._next, timestamp=self._now, message=message, level=level))
        self._next += 1


def _describe(profile_name: Optional[str], interface_id: Optional[str] = None) -> str:
    if profile_name:
        return f"'{profile_name}'"
    return f"unknown session on {interface_id}" if interface_id else "unknown session"


def _matches(session: SessionDetails, profile_name: Optional[str], interface_id: Optional[str]) -> bool:
    if profile_name is not None and session.profile_name is not None:
        return session.profile_name == profile_name
    if interface_id is not None:
        return session.interface_id == interface_id
    return True


def _finish(previous: ConnectionSnapshot, draft: ConnectionSnapshot, events: _EventBuffer,
            now: float, settings: MonitorSettings) -> ConnectionSnapshot:
    log = previous.events + tuple(events.items)
    return replace(
        draft,
        sequence=previous.sequence + 1,
        taken_at=now,
        events=log[-settings.event_log_size:],
    )


def _to_disconnected(snap: ConnectionSnapshot, now: float) -> ConnectionSnapshot:
    return replace(
        snap,
        state=ConnectionState.DISCONNECTED,
        state_since=now,
        active_profile=None,
        pending_profile=None,
        interface_id=None,
        session=None,
        session_age=None,
        handshake_age=None,
        transfer_rx=None,
        transfer_tx=None,
        missed_scans=0,
        throughput=ThroughputRate.warming_up(),
        telemetry_available=True,
        down_history=(),
        up_history=(),
    )


def _without_tunnel_telemetry(snap: ConnectionSnapshot) -> ConnectionSnapshot:
    # Rates and leak verdicts only describe a CONNECTED tunnel
    return replace(
        snap,
        throughput=ThroughputRate.warming_up(),
        telemetry_available=True,
        ipv6_leak=LeakVerdict.unknown(LeakCheck.IPV6),
        dns_leak=LeakVerdict.unknown(LeakCheck.DNS),
    )


def _refresh_session(snap: ConnectionSnapshot, session: SessionDetails, now: float,
                     events: _EventBuffer) -> ConnectionSnapshot:
    previous = snap.session
    started_at = session.started_at
    if started_at is None:
        started_at = previous.started_at if previous and previous.started_at is not None else now
    session = replace(
        session,
        started_at=started_at,
        profile_name=session.profile_name or snap.active_profile,
    )

    if session.latest_handshake is not None and (previous is None or previous.latest_handshake is None):
        events.add(f"Handshake observed with {session.endpoint or 'peer'} on {session.interface_id}")

    handshake_age = None
    if session.latest_handshake is not None:
        handshake_age = max(now - session.latest_handshake, 0.0)

    return replace(
        snap,
        session=session,
        interface_id=session.interface_id,
        session_age=max(now - started_at, 0.0),
        handshake_age=handshake_age,
        transfer_rx=session.transfer_rx if session.transfer_rx is not None else snap.transfer_rx,
        transfer_tx=session.transfer_tx if session.transfer_tx is not None else snap.transfer_tx,
        missed_scans=0,
    )


def _to_connected(snap: ConnectionSnapshot, session: SessionDetails, now: float,
                  events: _EventBuffer) -> ConnectionSnapshot:
    name = session.profile_name or snap.pending_profile
    events.add(f"Connected to {_describe(name, session.interface_id)} on {session.interface_id}")
    snap = replace(
        snap,
        state=ConnectionState.CONNECTED,
        state_since=now,
        active_profile=name,
        pending_profile=None,
        session=None,
        transfer_rx=None,
        transfer_tx=None,
        throughput=ThroughputRate.warming_up(),
        down_history=(),
        up_history=(),
    )
    return _refresh_session(snap, replace(session, profile_name=name), now, events)


def _apply_scan_failure(snap: ConnectionSnapshot, error: VPNError, now: float,
                        settings: MonitorSettings, events: _EventBuffer) -> ConnectionSnapshot:
    failures = snap.scanner_failures + 1
    if snap.scanner_available:
        events.add(f"Scanner unavailable, telemetry degraded: {error}", "warning")
    snap = replace(snap, scanner_available=False, scanner_failures=failures)
    if failures >= settings.scanner_failure_threshold and snap.state is not ConnectionState.DISCONNECTED:
        events.add(
            f"Scanner failed {failures} consecutive times; forcing disconnect of "
            f"{_describe(snap.active_profile or snap.pending_profile, snap.interface_id)}",
            "error",
        )
        snap = _to_disconnected(snap, now)
    return snap


def _apply_scan_result(snap: ConnectionSnapshot, scan: ScanResult, now: float,
                       settings: MonitorSettings, events: _EventBuffer) -> ConnectionSnapshot:
    if not snap.scanner_available:
        events.add(f"Scanner recovered after {snap.scanner_failures} failed scans")
    snap = replace(snap, scanner_available=True, scanner_failures=0)

    ambiguous = tuple(s.interface_id for s in scan.sessions) if len(scan.sessions) > 1 else ()
    if ambiguous != snap.ambiguous_interfaces:
        if ambiguous:
            events.add(
                f"Multiple active tunnels ({', '.join(ambiguous)}); reporting {scan.interface_id}",
                "warning",
            )
        snap = replace(snap, ambiguous_interfaces=ambiguous)

    session = scan.session
    state = snap.state

    if state is ConnectionState.DISCONNECTED:
        if session is not None:
            events.add(f"Detected active session {_describe(session.profile_name, session.interface_id)}")
            snap = replace(
                snap,
                state=ConnectionState.CONNECTING,
                state_since=now,
                pending_profile=session.profile_name,
                interface_id=session.interface_id,
            )
        return snap

    if state is ConnectionState.CONNECTING:
        if session is not None and _matches(session, snap.pending_profile, snap.interface_id):
            return _to_connected(snap, session, now, events)
        if now - snap.state_since > settings.connect_timeout:
            events.add(f"Connection to {_describe(snap.pending_profile)} timed out", "warning")
            return _to_disconnected(snap, now)
        return snap

    # CONNECTED or DISCONNECTING
    if session is not None and _matches(session, snap.active_profile, snap.interface_id):
        return _refresh_session(snap, session, now, events)

    missed = snap.missed_scans + 1
    if missed >= settings.disconnect_debounce:
        events.add(f"Disconnected from {_describe(snap.active_profile, snap.interface_id)}")
        return _to_disconnected(snap, now)
    return replace(snap, missed_scans=missed)


def _merge_sample(snap: ConnectionSnapshot, sample: SampleOutcome, settings: MonitorSettings,
                  events: _EventBuffer) -> ConnectionSnapshot:
    if snap.state is not ConnectionState.CONNECTED:
        return _without_tunnel_telemetry(snap)
    if sample is None:
        return snap

    if isinstance(sample, VPNError):
        if snap.telemetry_available:
            events.add(f"Telemetry unavailable: {sample}", "warning")
        return replace(
            snap,
            throughput=ThroughputRate.warming_up("telemetry unavailable"),
            telemetry_available=False,
        )

    if sample.sample.interface_id != snap.interface_id:
        return snap

    if not snap.telemetry_available:
        events.add(f"Telemetry restored on {snap.interface_id}")
    rate = sample.rate
    snap = replace(snap, throughput=rate, telemetry_available=True)
    if snap.session is None or snap.session.transfer_rx is None:
        snap = replace(snap, transfer_rx=sample.sample.bytes_recv, transfer_tx=sample.sample.bytes_sent)
    if rate.valid:
        snap = replace(
            snap,
            down_history=(snap.down_history + (rate.down_bps,))[-settings.history_size:],
            up_history=(snap.up_history + (rate.up_bps,))[-settings.history_size:],
        )
    return snap


def _merge_leaks(snap: ConnectionSnapshot, verdicts: Iterable[LeakVerdict],
                 events: _EventBuffer) -> ConnectionSnapshot:
    if snap.state is not ConnectionState.CONNECTED:
        return _without_tunnel_telemetry(snap)

    for verdict in verdicts:
        label = _LEAK_LABELS[verdict.check]
        previous = snap.verdict(verdict.check)
        if verdict.status is LeakStatus.LEAKING and previous.status is not LeakStatus.LEAKING:
            suffix = f": {verdict.detail}" if verdict.detail else ""
            events.add(f"{label} leak detected{suffix}", "warning")
        elif verdict.status is LeakStatus.CLEAR and previous.status is LeakStatus.LEAKING:
            events.add(f"{label} leak cleared")
        if verdict.check is LeakCheck.IPV6:
            snap = replace(snap, ipv6_leak=verdict)
        else:
            snap = replace(snap, dns_leak=verdict)
    return snap


def merge_tick(previous: ConnectionSnapshot, scan: ScanOutcome, sample: SampleOutcome = None,
               leaks: Iterable[LeakVerdict] = (), network: Optional[NetworkInfo] = None,
               now: Optional[float] = None,
               settings: Optional[MonitorSettings] = None) -> ConnectionSnapshot:
    """
    Build the next snapshot from the previous one and this tick's inputs.

    The scan outcome is applied first since it decides the state; the sample
    and leak verdicts are only merged when the resulting state is CONNECTED.

    Args:
        previous: Last published snapshot
        scan: ScanResult, or the VPNError the scanner raised
        sample: Latest sampler output since the previous tick, if any
        leaks: Leak verdicts produced since the previous tick
        network: Latest network info, if any
        now: Wall clock time of the tick
        settings: Thresholds; defaults when omitted

    Returns:
        A new ConnectionSnapshot with sequence ``previous.sequence + 1``
    """
    settings = settings or MonitorSettings()
    now = time.time() if now is None else now
    events = _EventBuffer(previous, now)

    if isinstance(scan, VPNError):
        snap = _apply_scan_failure(previous, scan, now, settings, events)
    else:
        snap = _apply_scan_result(previous, scan, now, settings, events)

    snap = _merge_sample(snap, sample, settings, events)
    snap = _merge_leaks(snap, leaks, events)
    if network is not None:
        snap = replace(snap, network=network)
    return _finish(previous, snap, events, now, settings)


def apply_connect_intent(previous: ConnectionSnapshot, profile_name: str, now: float,
                         settings: MonitorSettings) -> ConnectionSnapshot:
    if previous.state is not ConnectionState.DISCONNECTED:
        raise ConnectionStateError(
            f"Cannot connect to '{profile_name}' while {previous.state.value}"
        )
    events = _EventBuffer(previous, now)
    events.add(f"Connecting to '{profile_name}'")
    snap = replace(
        previous,
        state=ConnectionState.CONNECTING,
        state_since=now,
        pending_profile=profile_name,
        interface_id=None,
        missed_scans=0,
    )
    return _finish(previous, snap, events, now, settings)


def apply_disconnect_intent(previous: ConnectionSnapshot, now: float,
                            settings: MonitorSettings) -> ConnectionSnapshot:
    events = _EventBuffer(previous, now)
    if previous.state is ConnectionState.CONNECTED:
        events.add(f"Disconnecting from {_describe(previous.active_profile, previous.interface_id)}")
        snap = _without_tunnel_telemetry(
            replace(previous, state=ConnectionState.DISCONNECTING, state_since=now, missed_scans=0)
        )
    elif previous.state is ConnectionState.DISCONNECTING:
        events.add(f"Disconnect re-issued for {_describe(previous.active_profile, previous.interface_id)}")
        snap = previous
    else:
        raise ConnectionStateError(f"Cannot disconnect while {previous.state.value}")
    return _finish(previous, snap, events, now, settings)


def apply_reconnect_intent(previous: ConnectionSnapshot, now: float,
                           settings: MonitorSettings) -> ConnectionSnapshot:
    """Drop the current session and wait for the same profile to come back up."""
    if previous.state is not ConnectionState.CONNECTED or previous.active_profile is None:
        raise ConnectionStateError(f"Cannot reconnect while {previous.state.value}")
    events = _EventBuffer(previous, now)
    events.add(f"Reconnecting to '{previous.active_profile}'")
    snap = replace(
        _without_tunnel_telemetry(_to_disconnected(previous, now)),
        state=ConnectionState.CONNECTING,
        pending_profile=previous.active_profile,
    )
    return _finish(previous, snap, events, now, settings)


def apply_command_failure(previous: ConnectionSnapshot, action: str, error: Exception, now: float,
                          settings: MonitorSettings) -> ConnectionSnapshot:
    events = _EventBuffer(previous, now)
    snap = previous
    if action in ("connect", "reconnect"):
        events.add(f"{action.capitalize()} to {_describe(previous.pending_profile)} failed: {error}", "error")
        if previous.state is ConnectionState.CONNECTING:
            snap = _to_disconnected(previous, now)
    else:
        events.add(f"Disconnect failed: {error}", "error")
    return _finish(previous, snap, events, now, settings)


class ConnectionStateMachine:
    """Serialises every snapshot change and publishes the result.

    Probe outputs that are not scans are buffered (latest wins) and merged on
    the next scan tick, so the scan of a tick is always applied before the
    telemetry gathered for it.
    """

    def __init__(self, publisher, settings: Optional[MonitorSettings] = None,
                 clock: Callable[[], float] = time.time):
        self.publisher = publisher
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._pending_sample: SampleOutcome = None
        self._pending_leaks: Dict[LeakCheck, LeakVerdict] = {}
        self._pending_network: Optional[NetworkInfo] = None

    @property
    def snapshot(self) -> ConnectionSnapshot:
        return self.publisher.latest()

    def submit_sample(self, outcome: SampleOutcome) -> None:
        with self._lock:
            self._pending_sample = outcome

    def submit_leak(self, verdict: LeakVerdict) -> None:
        with self._lock:
            self._pending_leaks[verdict.check] = verdict

    def submit_network(self, info: NetworkInfo) -> None:
        with self._lock:
            self._pending_network = info

    def on_scan(self, outcome: ScanOutcome) -> ConnectionSnapshot:
        """Run one tick with the scan outcome and whatever telemetry is buffered."""
        with self._lock:
            previous = self.publisher.latest()
            snapshot = merge_tick(
                previous,
                outcome,
                sample=self._pending_sample,
                leaks=tuple(self._pending_leaks.values()),
                network=self._pending_network,
                now=self._clock(),
                settings=self.settings,
            )
            self._pending_sample = None
            self._pending_leaks.clear()
            self._pending_network = None
            return self._publish(previous, snapshot)

    def request_connect(self, profile_name: str) -> ConnectionSnapshot:
        with self._lock:
            previous = self.publisher.latest()
            snapshot = apply_connect_intent(previous, profile_name, self._clock(), self.settings)
            self._pending_sample = None
            return self._publish(previous, snapshot)

    def request_disconnect(self) -> ConnectionSnapshot:
        with self._lock:
            previous = self.publisher.latest()
            snapshot = apply_disconnect_intent(previous, self._clock(), self.settings)
            return self._publish(previous, snapshot)

    def request_reconnect(self) -> ConnectionSnapshot:
        with self._lock:
            previous = self.publisher.latest()
            snapshot = apply_reconnect_intent(previous, self._clock(), self.settings)
            self._pending_sample = None
            self._pending_leaks.clear()
            return self._publish(previous, snapshot)

    def command_failed(self, action: str, error: Exception) -> ConnectionSnapshot:
        with self._lock:
            previous = self.publisher.latest()
            snapshot = apply_command_failure(previous, action, error, self._clock(), self.settings)
            return self._publish(previous, snapshot)

    def _publish(self, previous: ConnectionSnapshot, snapshot: ConnectionSnapshot) -> ConnectionSnapshot:
        self.publisher.publish(snapshot)
        for event in snapshot.events:
            if event.sequence > previous.last_event_sequence:
                logger.log(_LOG_LEVELS.get(event.level, 20), event.message)
        if snapshot.state is not previous.state:
            logger.info(f"State {previous.state.value} -> {snapshot.state.value}")
        return snapshot
