"""Custom exceptions for VPN monitoring."""

from typing import Iterable


class VPNError(Exception):
    """Base exception for VPN-related errors."""
    pass


class ConfigurationError(VPNError):
    """Raised when there's an issue with the monitor configuration"""
    pass


class ProfileNotFoundError(ConfigurationError):
    """Raised when a profile name is not in the profile store"""
    pass


class DependencyError(VPNError):
    """Raised when the tools a protocol needs are not installed"""

    def __init__(self, protocol, missing: Iterable[str]):
        self.protocol = protocol
        self.missing = list(missing)
        super().__init__(f"Missing tools for {protocol.label}: {', '.join(self.missing)}")


class ConnectionStateError(VPNError):
    """Raised when a control action is not valid in the current state"""
    pass


class ConnectError(VPNError):
    """Raised when a connect or disconnect command fails"""
    pass


class ProbeError(VPNError):
    """Base for failures of an OS or network probe."""
    pass


class ProbeUnavailable(ProbeError):
    """Raised when the underlying tool or command is missing or failed"""
    pass


class ProbeTimeout(ProbeError):
    """Raised when a probe did not answer within its timeout"""
    pass


class ResolverUnreadable(ProbeError):
    """Raised when the resolver configuration cannot be read"""
    pass


class InterfaceError(ProbeError):
    """Raised when there's an issue with network interfaces"""
    pass


class InterfaceGone(InterfaceError):
    """Raised when interface counters disappeared between samples"""
    pass


class AmbiguousScan(VPNError):
    """More than one tunnel interface is active at the same time.

    Never raised by the scanner; carried in ``ScanResult.warnings``.
    """

    def __init__(self, interfaces: Iterable[str], chosen: str):
        self.interfaces = tuple(interfaces)
        self.chosen = chosen
        super().__init__(
            f"Multiple active tunnels ({', '.join(self.interfaces)}); reporting {chosen}"
        )
