import errno
import socket
from pathlib import Path

import pytest
import requests

from tunnelwatch.vpn.leaks import LeakDetector, read_nameservers
from tunnelwatch.vpn.exceptions import ResolverUnreadable
from tunnelwatch.vpn.models import LeakCheck, LeakStatus, Profile, VPNProtocol


class FakeResponse:
    ok = True
    status_code = 200

    def __init__(self, text):
        self.text = text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append((url, timeout))
        if self.error:
            raise self.error
        return self.response


def detector(tmp_path, session=None, resolv="nameserver 10.64.0.1\n", upstream=None):
    resolv_conf = tmp_path / "resolv.conf"
    if resolv is not None:
        resolv_conf.write_text(resolv)
    upstream_conf = tmp_path / "upstream.conf"
    if upstream is not None:
        upstream_conf.write_text(upstream)
    return LeakDetector(
        ipv6_url="https://v6.example.test",
        timeout=1.0,
        resolv_conf=resolv_conf,
        resolved_upstream_conf=upstream_conf,
        session=session or FakeSession(),
        clock=lambda: 500.0,
    )


PROFILE = Profile(name="nl-amsterdam", protocol=VPNProtocol.WIREGUARD,
                  config_path=Path("/etc/wireguard/nl-amsterdam.conf"))


@pytest.fixture(autouse=True)
def ipv6_capable(monkeypatch):
    monkeypatch.setattr(socket, "has_ipv6", True)


def test_ipv6_reachable_is_a_leak(tmp_path):
    session = FakeSession(response=FakeResponse("2001:db8::1\n"))
    verdict = detector(tmp_path, session).check_ipv6()
    assert verdict.check is LeakCheck.IPV6
    assert verdict.status is LeakStatus.LEAKING
    assert "2001:db8::1" in verdict.detail
    assert verdict.checked_at == 500.0
    assert session.urls == [("https://v6.example.test", 1.0)]


def test_ipv6_timeout_is_clear(tmp_path):
    session = FakeSession(error=requests.exceptions.ConnectTimeout("timed out"))
    assert detector(tmp_path, session).check_ipv6().status is LeakStatus.CLEAR


def test_ipv6_unreachable_is_clear(tmp_path):
    error = requests.exceptions.ConnectionError(OSError(errno.ENETUNREACH, "Network is unreachable"))
    assert detector(tmp_path, FakeSession(error=error)).check_ipv6().status is LeakStatus.CLEAR


def test_missing_ipv6_stack_is_unknown(tmp_path):
    error = requests.exceptions.ConnectionError(OSError(errno.EAFNOSUPPORT, "Address family not supported"))
    verdict = detector(tmp_path, FakeSession(error=error)).check_ipv6()
    assert verdict.status is LeakStatus.UNKNOWN


def test_interpreter_without_ipv6_is_unknown(tmp_path, monkeypatch):
    monkeypatch.setattr(socket, "has_ipv6", False)
    session = FakeSession(response=FakeResponse("2001:db8::1"))
    assert detector(tmp_path, session).check_ipv6().status is LeakStatus.UNKNOWN
    assert session.urls == []


def test_dns_matching_profile_is_clear(tmp_path):
    verdict = detector(tmp_path).check_dns(PROFILE, ("10.64.0.1",))
    assert verdict.check is LeakCheck.DNS
    assert verdict.status is LeakStatus.CLEAR


def test_dns_mismatch_is_a_leak(tmp_path):
    verdict = detector(tmp_path, resolv="nameserver 192.168.1.1\n").check_dns(PROFILE, ("10.64.0.1",))
    assert verdict.status is LeakStatus.LEAKING
    assert verdict.detail == "192.168.1.1"


def test_dns_without_expectation_is_clear(tmp_path):
    assert detector(tmp_path).check_dns(PROFILE, ()).status is LeakStatus.CLEAR


def test_unreadable_resolver_is_unknown(tmp_path):
    verdict = detector(tmp_path, resolv=None).check_dns(PROFILE, ("10.64.0.1",))
    assert verdict.status is LeakStatus.UNKNOWN


def test_resolved_stub_falls_through_to_upstream(tmp_path):
    d = detector(tmp_path, resolv="nameserver 127.0.0.53\n", upstream="nameserver 10.64.0.1\n")
    assert d.active_nameserver() == "10.64.0.1"
    assert d.check_dns(PROFILE, ("10.64.0.1",)).status is LeakStatus.CLEAR


def test_read_nameservers(tmp_path):
    path = tmp_path / "resolv.conf"
    path.write_text("# comment\nsearch lan\nnameserver 1.1.1.1\nnameserver 9.9.9.9\n")
    assert read_nameservers(path) == ["1.1.1.1", "9.9.9.9"]

    path.write_text("search lan\n")
    with pytest.raises(ResolverUnreadable):
        read_nameservers(path)
