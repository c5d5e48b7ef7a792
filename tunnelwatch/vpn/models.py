"""Data models for VPN monitoring."""

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple


class VPNProtocol(Enum):
    """Supported tunnel protocols"""
    WIREGUARD = "wireguard"
    OPENVPN = "openvpn"

    @property
    def label(self) -> str:
        return "WireGuard" if self is VPNProtocol.WIREGUARD else "OpenVPN"

    @classmethod
    def parse(cls, value: str) -> "VPNProtocol":
        normalized = value.strip().lower().replace("-", "").replace("_", "")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown VPN protocol: {value!r}")


class ConnectionState(Enum):
    """VPN connection status"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class LeakCheck(Enum):
    IPV6 = "ipv6"
    DNS = "dns"


class LeakStatus(Enum):
    UNKNOWN = "unknown"
    CLEAR = "clear"
    LEAKING = "leaking"


@dataclass(frozen=True)
class Profile:
    """A VPN configuration known to the profile store"""
    name: str
    protocol: VPNProtocol
    config_path: Path
    endpoint: Optional[str] = None
    dns: Tuple[str, ...] = ()
    interface: Optional[str] = None

    @property
    def interface_name(self) -> str:
        """Interface the tunnel comes up on; wg-quick names it after the config file."""
        if self.interface:
            return self.interface
        if self.protocol is VPNProtocol.WIREGUARD:
            return self.config_path.stem
        return "tun0"


@dataclass(frozen=True)
class InterfaceSample:
    """Point-in-time reading of one interface's byte counters"""
    interface_id: str
    timestamp: float
    bytes_recv: int
    bytes_sent: int


@dataclass(frozen=True)
class ThroughputRate:
    down_bps: float = 0.0
    up_bps: float = 0.0
    valid: bool = False
    elapsed: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def warming_up(cls, reason: str = "warming up") -> "ThroughputRate":
        return cls(valid=False, reason=reason)


@dataclass(frozen=True)
class LeakVerdict:
    check: LeakCheck
    status: LeakStatus = LeakStatus.UNKNOWN
    checked_at: Optional[float] = None
    detail: Optional[str] = None

    @classmethod
    def unknown(cls, check: LeakCheck, detail: Optional[str] = None) -> "LeakVerdict":
        return cls(check=check, status=LeakStatus.UNKNOWN, checked_at=None, detail=detail)


@dataclass(frozen=True)
class SessionDetails:
    """Technical details of one active tunnel, as reported by its protocol driver"""
    interface_id: str
    protocol: VPNProtocol
    profile_name: Optional[str] = None
    endpoint: Optional[str] = None
    internal_ip: Optional[str] = None
    mtu: Optional[int] = None
    public_key: Optional[str] = None
    listen_port: Optional[int] = None
    latest_handshake: Optional[float] = None
    transfer_rx: Optional[int] = None
    transfer_tx: Optional[int] = None
    started_at: Optional[float] = None

    @property
    def attributed(self) -> bool:
        return self.profile_name is not None


@dataclass(frozen=True)
class ScanResult:
    session: Optional[SessionDetails] = None
    sessions: Tuple[SessionDetails, ...] = ()
    protocol_details: Dict[str, str] = field(default_factory=dict)
    warnings: Tuple[Exception, ...] = ()

    @property
    def interface_id(self) -> Optional[str]:
        return self.session.interface_id if self.session else None

    @property
    def active_profile(self) -> Optional[str]:
        return self.session.profile_name if self.session else None


@dataclass(frozen=True)
class NetworkInfo:
    public_ip: Optional[str] = None
    isp: Optional[str] = None
    latency_ms: Optional[float] = None
    dns_server: Optional[str] = None


@dataclass(frozen=True)
class Event:
    sequence: int
    timestamp: float
    message: str
    level: str = "info"

    def format(self) -> str:
        stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
        return f"{stamp} {self.message}"


@dataclass(frozen=True)
class ConnectionSnapshot:
    """One immutable, fully merged view of the monitor at a given tick"""
    sequence: int = 0
    taken_at: float = 0.0
    state: ConnectionState = ConnectionState.DISCONNECTED
    state_since: float = 0.0
    active_profile: Optional[str] = None
    pending_profile: Optional[str] = None
    interface_id: Optional[str] = None
    session: Optional[SessionDetails] = None
    session_age: Optional[float] = None
    handshake_age: Optional[float] = None
    transfer_rx: Optional[int] = None
    transfer_tx: Optional[int] = None
    throughput: ThroughputRate = field(default_factory=ThroughputRate.warming_up)
    ipv6_leak: LeakVerdict = field(default_factory=lambda: LeakVerdict.unknown(LeakCheck.IPV6))
    dns_leak: LeakVerdict = field(default_factory=lambda: LeakVerdict.unknown(LeakCheck.DNS))
    scanner_available: bool = True
    scanner_failures: int = 0
    missed_scans: int = 0
    telemetry_available: bool = True
    ambiguous_interfaces: Tuple[str, ...] = ()
    down_history: Tuple[float, ...] = ()
    up_history: Tuple[float, ...] = ()
    network: NetworkInfo = field(default_factory=NetworkInfo)
    events: Tuple[Event, ...] = ()

    @property
    def last_event_sequence(self) -> int:
        return self.events[-1].sequence if self.events else 0

    def verdict(self, check: LeakCheck) -> LeakVerdict:
        return self.ipv6_leak if check is LeakCheck.IPV6 else self.dns_leak
