"""Factory for creating VPN-related commands."""

from pathlib import Path
from typing import Dict, List, Optional

from .commands import (
    Command,
    WG,
    WG_SHOW_DUMP,
    WG_QUICK,
    WG_QUICK_UP,
    WG_QUICK_DOWN,
    OPENVPN,
    OPENVPN_START,
    PKILL,
    PING_ONCE,
)
from .models import Profile, VPNProtocol


class VPNCommandFactory:
    """Factory for creating VPN management and probe commands."""

    REQUIRED_TOOLS: Dict[VPNProtocol, List[Command]] = {
        VPNProtocol.WIREGUARD: [WG_QUICK, WG],
        VPNProtocol.OPENVPN: [OPENVPN],
    }

    @staticmethod
    def wireguard_status(use_sudo: bool = False) -> List[str]:
        """Create command dumping every WireGuard interface and peer."""
        return WG_SHOW_DUMP.as_sudo(use_sudo).build()

    @staticmethod
    def wireguard_up(config_path: Path, use_sudo: bool = False) -> List[str]:
        """Create wg-quick up command."""
        return WG_QUICK_UP.args(str(config_path)).as_sudo(use_sudo).build()

    @staticmethod
    def wireguard_down(config_path: Path, use_sudo: bool = False) -> List[str]:
        """Create wg-quick down command."""
        return WG_QUICK_DOWN.args(str(config_path)).as_sudo(use_sudo).build()

    @staticmethod
    def openvpn_start(config_path: Path, interface: Optional[str] = None,
                      use_sudo: bool = False) -> List[str]:
        """Create OpenVPN start command."""
        cmd = OPENVPN_START.with_options(config=str(config_path))
        if interface:
            cmd = cmd.with_options(dev=interface)
        return cmd.as_sudo(use_sudo).build()

    @staticmethod
    def openvpn_stop(config_path: Path, use_sudo: bool = False) -> List[str]:
        """Create command stopping the OpenVPN daemon started for a config."""
        return PKILL.args("-f", f"openvpn.*{config_path}").as_sudo(use_sudo).build()

    @classmethod
    def connect(cls, profile: Profile, use_sudo: bool = False) -> List[str]:
        if profile.protocol is VPNProtocol.WIREGUARD:
            return cls.wireguard_up(profile.config_path, use_sudo)
        return cls.openvpn_start(profile.config_path, profile.interface, use_sudo)

    @classmethod
    def disconnect(cls, profile: Profile, use_sudo: bool = False) -> List[str]:
        if profile.protocol is VPNProtocol.WIREGUARD:
            return cls.wireguard_down(profile.config_path, use_sudo)
        return cls.openvpn_stop(profile.config_path, use_sudo)

    @staticmethod
    def ping(target: str) -> List[str]:
        """Create single-echo ping command."""
        return PING_ONCE.args(target).build()

    @classmethod
    def missing_tools(cls, protocol: VPNProtocol) -> List[str]:
        """Names of the executables a protocol needs that are not in PATH."""
        return [cmd.executable for cmd in cls.REQUIRED_TOOLS[protocol] if not cmd.is_available()]
