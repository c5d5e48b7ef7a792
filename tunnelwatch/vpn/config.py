"""Monitor settings and the config-file backed profile store."""

import configparser
import ipaddress
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .exceptions import ConfigurationError, ProfileNotFoundError
from .models import Profile, VPNProtocol
from ..logging_utility import Logger, logger

DEFAULT_CONFIG_PATH = os.environ.get("TUNNELWATCH_CONFIG", "config/tunnelwatch.conf")
MONITOR_SECTION = "monitor"
LOGGING_SECTION = "logging"
RESERVED_SECTIONS = (MONITOR_SECTION, LOGGING_SECTION)

_ADDRESS_SPLIT = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class MonitorSettings:
    """Timing, thresholds and probe endpoints for the monitor.

    Every field can be overridden in the ``[monitor]`` section of the config
    file using the field name as key.
    """
    scan_interval: float = 1.0
    sample_interval: float = 1.0
    leak_interval: float = 15.0
    network_interval: float = 10.0
    scan_timeout: float = 2.0
    ipv6_timeout: float = 3.0
    network_timeout: float = 5.0
    staleness_threshold: float = 5.0
    disconnect_debounce: int = 2
    scanner_failure_threshold: int = 5
    connect_timeout: float = 30.0
    command_timeout: float = 30.0
    event_log_size: int = 200
    history_size: int = 60
    ipv6_check_url: str = "https://api6.ipify.org"
    ip_info_url: str = "https://ipinfo.io/json"
    ping_target: str = "1.1.1.1"
    resolv_conf: Path = Path("/etc/resolv.conf")
    resolved_upstream_conf: Path = Path("/run/systemd/resolve/resolv.conf")
    wireguard_run_dir: Path = Path("/var/run/wireguard")
    use_sudo: bool = False

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> "MonitorSettings":
        if not config.has_section(MONITOR_SECTION):
            settings = cls()
        else:
            section = config[MONITOR_SECTION]
            values = {}
            for f in fields(cls):
                if f.name not in section:
                    continue
                default = f.default
                try:
                    if isinstance(default, bool):
                        values[f.name] = section.getboolean(f.name)
                    elif isinstance(default, int):
                        values[f.name] = section.getint(f.name)
                    elif isinstance(default, float):
                        values[f.name] = section.getfloat(f.name)
                    elif isinstance(default, Path):
                        values[f.name] = Path(section[f.name])
                    else:
                        values[f.name] = section[f.name]
                except ValueError as e:
                    raise ConfigurationError(f"Invalid value for {MONITOR_SECTION}.{f.name}: {e}")
            unknown = set(section.keys()) - {f.name for f in fields(cls)}
            for key in sorted(unknown):
                logger.warning(f"Ignoring unknown setting {MONITOR_SECTION}.{key}")
            settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        for name in ("scan_interval", "sample_interval", "leak_interval", "network_interval",
                     "scan_timeout", "ipv6_timeout", "network_timeout", "staleness_threshold",
                     "connect_timeout", "command_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("disconnect_debounce", "scanner_failure_threshold", "event_log_size", "history_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.staleness_threshold < self.sample_interval:
            raise ConfigurationError(
                "staleness_threshold must not be shorter than sample_interval"
            )


def load_config(config_file: str) -> configparser.ConfigParser:
    config = configparser.ConfigParser()
    read = config.read(config_file)
    if not read:
        logger.warning(f"Config file {config_file} not found, using defaults")
    return config


def configure_logging(config: configparser.ConfigParser) -> None:
    """Apply the optional ``[logging]`` section (``level``, ``directory``)."""
    if not config.has_section(LOGGING_SECTION):
        return
    section = config[LOGGING_SECTION]
    try:
        Logger().configure(level=section.get("level"), log_dir=section.get("directory"))
    except (ValueError, OSError) as e:
        raise ConfigurationError(f"Invalid {LOGGING_SECTION} section: {e}")


def parse_addresses(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part for part in _ADDRESS_SPLIT.split(value.strip()) if part)


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def read_wireguard_dns(config_path: Path) -> Tuple[str, ...]:
    """DNS addresses from the [Interface] section of a wg-quick config."""
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read(config_path)
    except configparser.Error as e:
        logger.warning(f"Could not parse WireGuard config {config_path}: {e}")
        return ()
    if not parser.has_option("Interface", "DNS"):
        return ()
    # DNS may also list search domains; keep only address-like entries
    return tuple(
        entry for entry in parse_addresses(parser.get("Interface", "DNS"))
        if _is_address(entry)
    )


def read_openvpn_dns(config_path: Path) -> Tuple[str, ...]:
    """Addresses pushed through ``dhcp-option DNS`` lines of an OpenVPN config."""
    try:
        with open(config_path, "r") as f:
            lines = f.readlines()
    except OSError as e:
        logger.warning(f"Could not read OpenVPN config {config_path}: {e}")
        return ()
    addresses = []
    for line in lines:
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "dhcp-option" and parts[1].upper() in ("DNS", "DNS6"):
            addresses.append(parts[2])
    return tuple(addresses)


class ConfigProfileStore:
    """Read-only view of the profiles declared in the config file.

    Every section except ``[monitor]`` is a profile named after the section::

        [nl-amsterdam]
        protocol = wireguard
        config_path = profiles/nl-amsterdam.conf
        endpoint = 185.65.134.1:51820
        dns = 10.64.0.1
    """

    def __init__(self, config: configparser.ConfigParser, base_path: Optional[Path] = None):
        self.config = config
        self.base_path = Path(base_path) if base_path else Path.cwd()

    def _build_profile(self, name: str) -> Profile:
        section = self.config[name]
        try:
            protocol = VPNProtocol.parse(section.get("protocol", "wireguard"))
            config_path = section["config_path"]
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Invalid profile '{name}': {str(e)}")

        path = Path(config_path).expanduser()
        if not path.is_absolute():
            path = self.base_path / path

        return Profile(
            name=name,
            protocol=protocol,
            config_path=path,
            endpoint=section.get("endpoint"),
            dns=parse_addresses(section.get("dns")),
            interface=section.get("interface"),
        )

    def list_profiles(self) -> List[Profile]:
        profiles = []
        for section in self.config.sections():
            if section in RESERVED_SECTIONS:
                continue
            profiles.append(self._build_profile(section))
        return profiles

    def get(self, name: str) -> Profile:
        if name in RESERVED_SECTIONS or not self.config.has_section(name):
            raise ProfileNotFoundError(f"Unknown profile: {name}")
        return self._build_profile(name)

    def by_name(self) -> Dict[str, Profile]:
        return {profile.name: profile for profile in self.list_profiles()}

    def expected_dns(self, profile: Profile) -> Tuple[str, ...]:
        if profile.dns:
            return profile.dns
        if not profile.config_path.exists():
            return ()
        if profile.protocol is VPNProtocol.WIREGUARD:
            return read_wireguard_dns(profile.config_path)
        return read_openvpn_dns(profile.config_path)
