"""IPv6 and DNS leak checks.

Both checks are best-effort samples of the host configuration. A verdict is
only ever CLEAR when the check actually ran and found nothing; anything
ambiguous is UNKNOWN.
"""

import errno
import ipaddress
import socket
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import dns.resolver
import requests

from .exceptions import ResolverUnreadable
from .models import LeakCheck, LeakStatus, LeakVerdict, Profile
from ..logging_utility import logger

# errno values meaning the host cannot do IPv6 at all, not that the tunnel blocked it
_LOCAL_STACK_ERRNOS = {errno.EAFNOSUPPORT, errno.EPROTONOSUPPORT}


def _local_stack_failure(exc: BaseException, depth: int = 0) -> bool:
    """Walk the wrapped causes of a requests error looking for a local IPv6 stack problem."""
    if exc is None or depth > 6:
        return False
    if isinstance(exc, socket.gaierror):
        return True
    if isinstance(exc, OSError) and exc.errno in _LOCAL_STACK_ERRNOS:
        return True
    nested = [exc.__cause__, exc.__context__, getattr(exc, "reason", None)]
    nested.extend(arg for arg in getattr(exc, "args", ()) if isinstance(arg, BaseException))
    return any(
        _local_stack_failure(inner, depth + 1)
        for inner in nested
        if isinstance(inner, BaseException) and inner is not exc
    )


def read_nameservers(path: Path) -> List[str]:
    """
    Nameservers listed in a resolv.conf style file, in order.

    Raises:
        ResolverUnreadable: the file is missing, unreadable or lists no nameserver
    """
    resolver = dns.resolver.Resolver(configure=False)
    try:
        resolver.read_resolv_conf(str(path))
    except (dns.resolver.NoResolverConfiguration, OSError) as e:
        raise ResolverUnreadable(f"Cannot read resolver configuration {path}: {e}")
    nameservers = [str(getattr(ns, "address", ns)) for ns in resolver.nameservers]
    if not nameservers:
        raise ResolverUnreadable(f"No nameserver in {path}")
    return nameservers


def _same_address(left: str, right: str) -> bool:
    try:
        return ipaddress.ip_address(left.split("%")[0]) == ipaddress.ip_address(right.split("%")[0])
    except ValueError:
        return left.strip() == right.strip()


class LeakDetector:
    def __init__(self, ipv6_url: str = "https://api6.ipify.org", timeout: float = 3.0,
                 resolv_conf: Path = Path("/etc/resolv.conf"),
                 resolved_upstream_conf: Optional[Path] = Path("/run/systemd/resolve/resolv.conf"),
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.ipv6_url = ipv6_url
        self.timeout = timeout
        self.resolv_conf = Path(resolv_conf)
        self.resolved_upstream_conf = Path(resolved_upstream_conf) if resolved_upstream_conf else None
        self.session = session or requests.Session()
        self._clock = clock

    def _verdict(self, check: LeakCheck, status: LeakStatus, detail: Optional[str] = None) -> LeakVerdict:
        return LeakVerdict(check=check, status=status, checked_at=self._clock(), detail=detail)

    def check_ipv6(self) -> LeakVerdict:
        """Reaching an IPv6-only endpoint while the tunnel should carry all traffic is a leak."""
        if not socket.has_ipv6:
            logger.info("IPv6 leak check skipped: interpreter built without IPv6")
            return self._verdict(LeakCheck.IPV6, LeakStatus.UNKNOWN, "no IPv6 support")
        try:
            response = self.session.get(self.ipv6_url, timeout=self.timeout)
        except requests.exceptions.Timeout:
            return self._verdict(LeakCheck.IPV6, LeakStatus.CLEAR, "IPv6 endpoint timed out")
        except requests.exceptions.ConnectionError as e:
            if _local_stack_failure(e):
                logger.warning(f"IPv6 leak check inconclusive: {e}")
                return self._verdict(LeakCheck.IPV6, LeakStatus.UNKNOWN, "no usable IPv6 stack")
            return self._verdict(LeakCheck.IPV6, LeakStatus.CLEAR, "IPv6 endpoint unreachable")
        except requests.exceptions.RequestException as e:
            logger.warning(f"IPv6 leak check failed: {e}")
            return self._verdict(LeakCheck.IPV6, LeakStatus.UNKNOWN, str(e))

        address = response.text.strip()[:64] if response.ok else f"HTTP {response.status_code}"
        logger.warning(f"IPv6 leak: {self.ipv6_url} reachable ({address})")
        return self._verdict(LeakCheck.IPV6, LeakStatus.LEAKING, f"IPv6 reachable as {address}")

    def active_nameserver(self) -> str:
        """
        First nameserver the host resolves through.

        Falls through the systemd-resolved stub to its upstream file when the
        stub address is listed first.
        """
        nameservers = read_nameservers(self.resolv_conf)
        first = nameservers[0]
        upstream = self.resolved_upstream_conf
        if _is_loopback(first) and upstream is not None and upstream.exists():
            try:
                return read_nameservers(upstream)[0]
            except ResolverUnreadable as e:
                logger.info(f"Ignoring unreadable resolved upstream config: {e}")
        return first

    def check_dns(self, profile: Optional[Profile], expected_dns: Sequence[str] = ()) -> LeakVerdict:
        """
        Compare the active nameserver against the profile's DNS.

        Args:
            profile: Profile the tunnel belongs to, used for messages only
            expected_dns: Addresses the profile declares; empty means no expectation
        """
        try:
            nameserver = self.active_nameserver()
        except ResolverUnreadable as e:
            logger.warning(f"DNS leak check inconclusive: {e}")
            return self._verdict(LeakCheck.DNS, LeakStatus.UNKNOWN, str(e))

        if not expected_dns:
            return self._verdict(LeakCheck.DNS, LeakStatus.CLEAR, f"nameserver {nameserver}")
        if any(_same_address(nameserver, expected) for expected in expected_dns):
            return self._verdict(LeakCheck.DNS, LeakStatus.CLEAR, f"nameserver {nameserver}")

        name = profile.name if profile else "active profile"
        logger.warning(f"DNS leak: resolving through {nameserver}, {name} expects {', '.join(expected_dns)}")
        return self._verdict(LeakCheck.DNS, LeakStatus.LEAKING, nameserver)


def _is_loopback(address: str) -> bool:
    try:
        return ipaddress.ip_address(address.split("%")[0]).is_loopback
    except ValueError:
        return False
