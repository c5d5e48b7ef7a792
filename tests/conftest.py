import configparser
import time
from collections import namedtuple

import pytest

from tunnelwatch.vpn.command_factory import VPNCommandFactory
from tunnelwatch.vpn.config import ConfigProfileStore, MonitorSettings
from tunnelwatch.vpn.manager import ConnectionMonitor
from tunnelwatch.vpn.models import (
    LeakCheck,
    LeakStatus,
    LeakVerdict,
    NetworkInfo,
    ScanResult,
    SessionDetails,
    VPNProtocol,
)
from tunnelwatch.vpn.sampler import MetricSampler

Counters = namedtuple("Counters", ["bytes_recv", "bytes_sent"])

PROFILES = """
[nl-amsterdam]
protocol = wireguard
config_path = /etc/wireguard/nl-amsterdam.conf
dns = 10.64.0.1

[us-east]
protocol = openvpn
config_path = /etc/openvpn/client/us-east.ovpn
"""


class FakeScanner:
    """Reports whatever session the test put up."""

    def __init__(self):
        self.session = None
        self.error = None
        self.calls = 0

    def up(self, profile="nl-amsterdam", iface="wg0"):
        self.session = SessionDetails(interface_id=iface, protocol=VPNProtocol.WIREGUARD, profile_name=profile)

    def down(self):
        self.session = None

    def scan(self, preferred_profile=None):
        self.calls += 1
        if self.error:
            raise self.error
        if self.session is None:
            return ScanResult()
        return ScanResult(session=self.session, sessions=(self.session,))


class GrowingCounters:
    """Counters that advance 1000 bytes down and 100 up on every read."""

    def __init__(self, interfaces=("lo", "wg0")):
        self.interfaces = interfaces
        self.reads = 0

    def __call__(self, pernic=False):
        self.reads += 1
        return {name: Counters(self.reads * 1000, self.reads * 100) for name in self.interfaces}


class FakeLeakDetector:
    def check_ipv6(self):
        return LeakVerdict(LeakCheck.IPV6, LeakStatus.CLEAR, time.time(), "IPv6 endpoint unreachable")

    def check_dns(self, profile, expected_dns=()):
        return LeakVerdict(LeakCheck.DNS, LeakStatus.CLEAR, time.time(), "nameserver 10.64.0.1")


class FakeNetworkProbe:
    def collect(self):
        return NetworkInfo(public_ip="185.65.134.9", isp="AS39351 31173 Services AB", latency_ms=14.0,
                           dns_server="10.64.0.1")


class FakeRunner:
    def __init__(self):
        self.calls = []
        self.error = None

    def __call__(self, cmd, check=True, timeout=None):
        self.calls.append(cmd)
        if self.error:
            raise self.error
        return "", ""


@pytest.fixture
def no_missing_tools(monkeypatch):
    monkeypatch.setattr(VPNCommandFactory, "missing_tools", staticmethod(lambda protocol: []))


@pytest.fixture
def make_monitor():
    def factory(settings=None, counters=None):
        config = configparser.ConfigParser()
        config.read_string(PROFILES)
        settings = settings or MonitorSettings()
        return ConnectionMonitor(
            settings=settings,
            profile_store=ConfigProfileStore(config),
            scanner=FakeScanner(),
            sampler=MetricSampler(staleness=settings.staleness_threshold, counters=counters or GrowingCounters()),
            leak_detector=FakeLeakDetector(),
            network_probe=FakeNetworkProbe(),
            runner=FakeRunner(),
        )

    return factory
