"""Public IP, ISP, latency and resolver lookups shown alongside the tunnel."""

import re
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests

from .command_factory import VPNCommandFactory
from .exceptions import ProbeError, ResolverUnreadable
from .leaks import read_nameservers
from .models import NetworkInfo
from .utils import run_command
from ..logging_utility import logger

_PING_TIME = re.compile(r"time[=<]([\d.]+)\s*ms")


def parse_ping_latency(output: str) -> Optional[float]:
    """Round-trip time in milliseconds from single-echo ping output."""
    match = _PING_TIME.search(output)
    if not match:
        return None
    try:
        return max(float(match.group(1)), 0.0)
    except ValueError:
        return None


class NetworkInfoProbe:
    def __init__(self, ip_info_url: str = "https://ipinfo.io/json", ping_target: str = "1.1.1.1",
                 timeout: float = 5.0, resolv_conf: Path = Path("/etc/resolv.conf"),
                 session: Optional[requests.Session] = None,
                 runner: Callable = run_command):
        self.ip_info_url = ip_info_url
        self.ping_target = ping_target
        self.timeout = timeout
        self.resolv_conf = Path(resolv_conf)
        self.session = session or requests.Session()
        self.runner = runner

    def public_ip_and_isp(self) -> Tuple[Optional[str], Optional[str]]:
        try:
            response = self.session.get(self.ip_info_url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to get current IP: {str(e)}")
            return None, None
        return data.get("ip"), data.get("org")

    def latency(self) -> Optional[float]:
        try:
            stdout, _ = self.runner(VPNCommandFactory.ping(self.ping_target), check=False,
                                    timeout=self.timeout)
        except ProbeError as e:
            logger.error(f"Failed to measure latency: {e}")
            return None
        return parse_ping_latency(stdout)

    def dns_server(self) -> Optional[str]:
        try:
            return read_nameservers(self.resolv_conf)[0]
        except ResolverUnreadable as e:
            logger.warning(str(e))
            return None

    def collect(self) -> NetworkInfo:
        public_ip, isp = self.public_ip_and_isp()
        return NetworkInfo(
            public_ip=public_ip,
            isp=isp,
            latency_ms=self.latency(),
            dns_server=self.dns_server(),
        )
