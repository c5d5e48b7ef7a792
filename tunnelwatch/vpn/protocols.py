"""Per-protocol session probes.

Each protocol exposes the same two capabilities, ``scan`` and
``parse_status``, and the scanner dispatches on the protocol tag through
:data:`DRIVERS`.
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

import psutil

from .command_factory import VPNCommandFactory
from .exceptions import ProbeUnavailable
from .models import Profile, SessionDetails, VPNProtocol
from .utils import run_command
from ..logging_utility import logger


@dataclass
class ProbeContext:
    """What a protocol probe may look at; the OS hooks are swappable for tests."""
    profiles: Sequence[Profile] = ()
    scan_timeout: float = 2.0
    use_sudo: bool = False
    wireguard_run_dir: Path = Path("/var/run/wireguard")
    runner: Callable[..., Any] = run_command
    processes: Callable[..., Any] = psutil.process_iter
    if_addrs: Callable[[], Dict] = psutil.net_if_addrs
    if_stats: Callable[[], Dict] = psutil.net_if_stats


class ProtocolDriver(NamedTuple):
    protocol: VPNProtocol
    scan: Callable[[ProbeContext], List[SessionDetails]]
    parse_status: Callable[..., Dict[str, Dict[str, Any]]]


def _interface_addressing(context: ProbeContext, interface: str) -> Dict[str, Any]:
    details: Dict[str, Any] = {"internal_ip": None, "mtu": None}
    try:
        for addr in context.if_addrs().get(interface, []):
            if addr.family == socket.AF_INET:
                details["internal_ip"] = addr.address
                break
        stats = context.if_stats().get(interface)
        if stats is not None:
            details["mtu"] = stats.mtu
    except (psutil.Error, OSError) as e:
        logger.warning(f"Could not read addressing for {interface}: {e}")
    return details


def _none_if_unset(value: str) -> Optional[str]:
    return None if value in ("", "(none)", "off") else value


def parse_wireguard_dump(output: str) -> Dict[str, Dict[str, Any]]:
    """
    Parse ``wg show all dump`` output.

    Interface rows carry 5 tab-separated fields (interface, private key,
    public key, listen port, fwmark); peer rows carry 9 (interface, public
    key, preshared key, endpoint, allowed ips, latest handshake, rx, tx,
    keepalive).

    Returns:
        Mapping of interface name to its status: public_key, listen_port,
        endpoint (first peer with one), latest_handshake (newest, epoch
        seconds, None if never), transfer_rx/transfer_tx (summed over peers)
        and peers (count).
    """
    interfaces: Dict[str, Dict[str, Any]] = {}
    for line in output.splitlines():
        fields = line.rstrip("\n").split("\t")
        if len(fields) == 5:
            name, _private_key, public_key, listen_port, _fwmark = fields
            interfaces[name] = {
                "public_key": _none_if_unset(public_key),
                "listen_port": int(listen_port) if listen_port.isdigit() else None,
                "endpoint": None,
                "latest_handshake": None,
                "transfer_rx": 0,
                "transfer_tx": 0,
                "peers": 0,
            }
        elif len(fields) == 9:
            name = fields[0]
            entry = interfaces.setdefault(name, {
                "public_key": None, "listen_port": None, "endpoint": None,
                "latest_handshake": None, "transfer_rx": 0, "transfer_tx": 0, "peers": 0,
            })
            endpoint = _none_if_unset(fields[3])
            if entry["endpoint"] is None and endpoint:
                entry["endpoint"] = endpoint
            handshake = int(fields[5]) if fields[5].isdigit() else 0
            if handshake > 0 and (entry["latest_handshake"] is None or handshake > entry["latest_handshake"]):
                entry["latest_handshake"] = float(handshake)
            entry["transfer_rx"] += int(fields[6]) if fields[6].isdigit() else 0
            entry["transfer_tx"] += int(fields[7]) if fields[7].isdigit() else 0
            entry["peers"] += 1
        elif line.strip():
            logger.debug(f"Skipping unexpected wg dump line: {line!r}")
    return interfaces


def read_wireguard_name_map(run_dir: Path) -> Dict[str, str]:
    """
    Read the ``<profile>.name`` files wg-quick leaves on systems where the
    real interface name differs from the profile (e.g. utun3 on macOS).

    Returns:
        Mapping of real interface name to profile name
    """
    mapping: Dict[str, str] = {}
    if not run_dir.is_dir():
        return mapping
    for name_file in sorted(run_dir.glob("*.name")):
        try:
            interface = name_file.read_text().strip()
        except OSError as e:
            logger.warning(f"Could not read {name_file}: {e}")
            continue
        if interface:
            mapping[interface] = name_file.stem
    return mapping


def _wireguard_started_at(run_dir: Path, interface: str, profile_name: Optional[str]) -> Optional[float]:
    candidates = []
    if profile_name:
        candidates.append(run_dir / f"{profile_name}.name")
    candidates.append(run_dir / f"{interface}.sock")
    for path in candidates:
        try:
            return path.stat().st_mtime
        except OSError:
            continue
    return None


def scan_wireguard(context: ProbeContext) -> List[SessionDetails]:
    stdout, _ = context.runner(
        VPNCommandFactory.wireguard_status(context.use_sudo),
        timeout=context.scan_timeout,
    )
    name_map = read_wireguard_name_map(context.wireguard_run_dir)
    sessions = []
    for interface, status in sorted(parse_wireguard_dump(stdout).items()):
        profile_name = name_map.get(interface)
        sessions.append(SessionDetails(
            interface_id=interface,
            protocol=VPNProtocol.WIREGUARD,
            profile_name=profile_name,
            endpoint=status["endpoint"],
            public_key=status["public_key"],
            listen_port=status["listen_port"],
            latest_handshake=status["latest_handshake"],
            transfer_rx=status["transfer_rx"],
            transfer_tx=status["transfer_tx"],
            started_at=_wireguard_started_at(context.wireguard_run_dir, interface, profile_name),
            **_interface_addressing(context, interface),
        ))
    return sessions


def parse_openvpn_cmdline(cmdline: Sequence[str]) -> Dict[str, Dict[str, Any]]:
    """
    Extract the config path and device from an openvpn command line.

    Returns:
        ``{"openvpn": {"config": ..., "dev": ...}}`` with None for missing
        values, or an empty mapping when the command line is not openvpn.
    """
    if not cmdline or os.path.basename(cmdline[0]) != "openvpn":
        return {}
    config = None
    dev = None
    args = list(cmdline[1:])
    for i, arg in enumerate(args):
        value = args[i + 1] if i + 1 < len(args) else None
        if arg == "--config" and value:
            config = value
        elif arg == "--dev" and value:
            dev = value
    if config is None and len(args) == 1 and not args[0].startswith("-"):
        config = args[0]
    return {"openvpn": {"config": config, "dev": dev}}


def _same_config(candidate: str, profile: Profile) -> bool:
    path = Path(candidate).expanduser()
    try:
        if path.resolve() == profile.config_path.resolve():
            return True
    except OSError:
        pass
    return path.name == profile.config_path.name


def _first_tun_interface(context: ProbeContext) -> Optional[str]:
    try:
        stats = context.if_stats()
    except (psutil.Error, OSError):
        return None
    for name in sorted(stats):
        if name.startswith("tun") and stats[name].isup:
            return name
    return None


def scan_openvpn(context: ProbeContext) -> List[SessionDetails]:
    profiles = [p for p in context.profiles if p.protocol is VPNProtocol.OPENVPN]
    sessions = []
    try:
        processes = list(context.processes(["pid", "name", "cmdline", "create_time"]))
    except (psutil.Error, OSError) as e:
        raise ProbeUnavailable(f"Cannot list processes: {e}")

    for proc in processes:
        info = proc.info
        status = parse_openvpn_cmdline(info.get("cmdline") or []).get("openvpn")
        if status is None:
            continue

        profile_name = None
        if status["config"]:
            for profile in profiles:
                if _same_config(status["config"], profile):
                    profile_name = profile.name
                    break

        interface = status["dev"]
        if interface is None or interface in ("tun", "tap"):
            interface = _first_tun_interface(context)
        if interface is None:
            logger.info(f"openvpn process {info.get('pid')} has no tunnel interface yet")
            continue

        sessions.append(SessionDetails(
            interface_id=interface,
            protocol=VPNProtocol.OPENVPN,
            profile_name=profile_name,
            started_at=info.get("create_time"),
            **_interface_addressing(context, interface),
        ))
    return sessions


DRIVERS: Dict[VPNProtocol, ProtocolDriver] = {
    VPNProtocol.WIREGUARD: ProtocolDriver(VPNProtocol.WIREGUARD, scan_wireguard, parse_wireguard_dump),
    VPNProtocol.OPENVPN: ProtocolDriver(VPNProtocol.OPENVPN, scan_openvpn, parse_openvpn_cmdline),
}
