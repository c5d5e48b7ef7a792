import configparser
import logging
import os
from pathlib import Path

import pytest

from tunnelwatch.logging_utility import Logger
from tunnelwatch.vpn.config import (
    ConfigProfileStore,
    MonitorSettings,
    configure_logging,
    load_config,
    parse_addresses,
    read_openvpn_dns,
    read_wireguard_dns,
)
from tunnelwatch.vpn.exceptions import ConfigurationError, ProfileNotFoundError
from tunnelwatch.vpn.models import VPNProtocol

CONFIG = """
[monitor]
scan_interval = 0.5
disconnect_debounce = 3
use_sudo = yes
ipv6_check_url = https://v6.example.test

[nl-amsterdam]
protocol = wireguard
config_path = profiles/nl-amsterdam.conf
endpoint = 185.65.134.1:51820
dns = 10.64.0.1, 10.64.0.2

[us-east]
protocol = OpenVPN
config_path = /etc/openvpn/client/us-east.ovpn
"""


def parse(text):
    config = configparser.ConfigParser()
    config.read_string(text)
    return config


def test_settings_from_config():
    settings = MonitorSettings.from_config(parse(CONFIG))
    assert settings.scan_interval == 0.5
    assert settings.disconnect_debounce == 3
    assert settings.use_sudo is True
    assert settings.ipv6_check_url == "https://v6.example.test"
    assert settings.leak_interval == 15.0


def test_settings_defaults_without_section():
    assert MonitorSettings.from_config(configparser.ConfigParser()) == MonitorSettings()


@pytest.mark.parametrize("body", [
    "scan_interval = fast",
    "scan_interval = 0",
    "disconnect_debounce = 0",
    "staleness_threshold = 0.5\nsample_interval = 1",
])
def test_invalid_settings_rejected(body):
    with pytest.raises(ConfigurationError):
        MonitorSettings.from_config(parse(f"[monitor]\n{body}\n"))


def test_profile_store(tmp_path):
    store = ConfigProfileStore(parse(CONFIG), tmp_path)
    profiles = store.by_name()
    assert sorted(profiles) == ["nl-amsterdam", "us-east"]

    amsterdam = store.get("nl-amsterdam")
    assert amsterdam.protocol is VPNProtocol.WIREGUARD
    assert amsterdam.config_path == tmp_path / "profiles" / "nl-amsterdam.conf"
    assert amsterdam.dns == ("10.64.0.1", "10.64.0.2")
    assert amsterdam.interface_name == "nl-amsterdam"

    us_east = store.get("us-east")
    assert us_east.protocol is VPNProtocol.OPENVPN
    assert us_east.config_path == Path("/etc/openvpn/client/us-east.ovpn")
    assert us_east.interface_name == "tun0"


def test_unknown_profile():
    store = ConfigProfileStore(parse(CONFIG))
    with pytest.raises(ProfileNotFoundError):
        store.get("de-berlin")
    with pytest.raises(ProfileNotFoundError):
        store.get("monitor")


def test_profile_without_config_path_is_invalid():
    store = ConfigProfileStore(parse("[broken]\nprotocol = wireguard\n"))
    with pytest.raises(ConfigurationError):
        store.list_profiles()


def test_expected_dns_from_profile_files(tmp_path):
    wg_conf = tmp_path / "home.conf"
    wg_conf.write_text("[Interface]\nPrivateKey = abc\nAddress = 10.8.0.2/24\nDNS = 10.8.0.1, lan.example\n")
    ovpn_conf = tmp_path / "work.ovpn"
    ovpn_conf.write_text("client\ndhcp-option DNS 172.16.0.53\ndhcp-option DOMAIN corp\n")
    config = parse(f"[home]\nconfig_path = {wg_conf}\n\n[work]\nprotocol = openvpn\nconfig_path = {ovpn_conf}\n")
    store = ConfigProfileStore(config, tmp_path)

    assert store.expected_dns(store.get("home")) == ("10.8.0.1",)
    assert store.expected_dns(store.get("work")) == ("172.16.0.53",)
    assert read_wireguard_dns(tmp_path / "missing.conf") == ()
    assert read_openvpn_dns(tmp_path / "missing.ovpn") == ()


def test_parse_addresses():
    assert parse_addresses("1.1.1.1,  9.9.9.9 8.8.8.8") == ("1.1.1.1", "9.9.9.9", "8.8.8.8")
    assert parse_addresses(None) == ()


def test_load_missing_config_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "nope.conf"))
    assert config.sections() == []


def test_protocol_parse():
    assert VPNProtocol.parse("Wire-Guard") is VPNProtocol.WIREGUARD
    with pytest.raises(ValueError):
        VPNProtocol.parse("ipsec")


def test_logging_section(tmp_path):
    config = parse(f"[logging]\nlevel = debug\ndirectory = {tmp_path}\n")
    log = Logger()
    previous_dir = os.path.dirname(log.log_file)
    previous_level = logging.getLevelName(log.logger.level)
    try:
        configure_logging(config)
        assert log.log_file == os.path.join(str(tmp_path), "tunnelwatch.log")
        assert log.logger.level == logging.DEBUG
        assert ConfigProfileStore(config).list_profiles() == []
    finally:
        log.configure(level=previous_level, log_dir=previous_dir)


def test_logging_section_rejects_unknown_level():
    with pytest.raises(ConfigurationError):
        configure_logging(parse("[logging]\nlevel = chatty\n"))
