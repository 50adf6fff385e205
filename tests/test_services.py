"""
Tests for banner grabbing and service identification.
"""
import pytest

from portaudit.models import PortState, PortStatus, ServiceGuess
from portaudit.services import (
    BannerGrabber,
    ServiceIdentifier,
    clean_banner,
    guess_from_port,
    match_banner,
    probe_payload_for,
)


class StaticGrabber:
    def __init__(self, banner):
        self.banner = banner
        self.calls = 0

    def grab(self, address, port, family=None):
        self.calls += 1
        return self.banner


class TestMatchBanner:
    @pytest.mark.parametrize(
        "raw, name, product, version",
        [
            ("SSH-2.0-OpenSSH_7.2p2 Ubuntu-4ubuntu2.8\r\n", "ssh", "openssh", "7.2p2"),
            ("SSH-2.0-dropbear_2019.78\r\n", "ssh", "dropbear", "2019.78"),
            ("HTTP/1.1 200 OK\r\nServer: Apache/2.4.49 (Unix)\r\n\r\n", "http", "apache", "2.4.49"),
            ("HTTP/1.1 404 Not Found\r\nServer: nginx/1.18.0\r\n\r\n", "http", "nginx", "1.18.0"),
            ("220 (vsFTPd 3.0.3)\r\n", "ftp", "vsftpd", "3.0.3"),
            ("220 mail.example.test ESMTP Postfix (Ubuntu)\r\n", "smtp", "postfix", None),
            ("220 mx.example.test ESMTP Exim 4.94.2 Mon\r\n", "smtp", "exim", "4.94.2"),
            ("J\x00\x00\x00\n5.7.33-0ubuntu0.18.04.1\x00", "mysql", "mysql", "5.7.33"),
            ("+PONG\r\n", "redis", "redis", None),
        ],
    )
    def test_known_banners(self, raw, name, product, version):
        guess = match_banner(raw, 1234)
        assert guess is not None
        assert (guess.name, guess.product, guess.version) == (name, product, version)
        assert guess.method == "banner"
        assert 0.0 <= guess.confidence <= 1.0

    def test_version_raises_confidence(self):
        with_version = match_banner("SSH-2.0-OpenSSH_8.9\r\n", 22)
        without = match_banner("SSH-2.0-SomethingElse\r\n", 22)
        assert with_version.confidence > without.confidence

    def test_unknown_banner(self):
        assert match_banner("hello there", 4000) is None


def test_clean_banner_strips_control_characters():
    cleaned = clean_banner("line one\r\nline\x01two\n" + "x" * 1000)
    assert "\x01" not in cleaned
    assert " | " in cleaned
    assert len(cleaned) == 500


def test_probe_payloads():
    assert probe_payload_for(80).startswith(b"GET /")
    assert probe_payload_for(25).startswith(b"EHLO")
    assert probe_payload_for(6379) == b"PING\r\n"
    assert probe_payload_for(4000) == b"\r\n\r\n"


def test_guess_from_port():
    guess = guess_from_port(3306)
    assert guess.name == "mysql"
    assert guess.method == "port"
    assert guess_from_port(4000) is None


class TestServiceIdentifier:
    def test_closed_port_has_no_guess(self, make_item):
        identifier = ServiceIdentifier(grabber=StaticGrabber("SSH-2.0-OpenSSH_7.2\r\n"))
        assert identifier.identify(PortState(make_item(22), PortStatus.CLOSED)) is None
        assert identifier.grabber.calls == 0

    def test_banner_wins_over_port(self, make_item):
        identifier = ServiceIdentifier(grabber=StaticGrabber("SSH-2.0-OpenSSH_7.2\r\n"))
        guess = identifier.identify(PortState(make_item(8080), PortStatus.OPEN))
        assert guess.product == "openssh"
        assert guess.port == 8080

    def test_falls_back_to_port_map(self, make_item):
        identifier = ServiceIdentifier(grabber=StaticGrabber("garbage"))
        guess = identifier.identify(PortState(make_item(6379), PortStatus.OPEN))
        assert guess.method == "port"
        assert guess.name == "redis"
        assert guess.banner == "garbage"

    def test_banners_disabled(self, make_item):
        grabber = StaticGrabber("SSH-2.0-OpenSSH_7.2\r\n")
        identifier = ServiceIdentifier(use_banners=False, grabber=grabber)
        guess = identifier.identify(PortState(make_item(22), PortStatus.OPEN))
        assert guess.method == "port"
        assert grabber.calls == 0

    def test_live_banner_over_loopback(self, tcp_server, make_item):
        port = tcp_server(b"SSH-2.0-OpenSSH_7.2p2 Ubuntu-4ubuntu2.8\r\n")
        banner = BannerGrabber(timeout=1.0).grab("127.0.0.1", port)
        assert banner.startswith("SSH-2.0-OpenSSH_7.2p2")

    def test_silent_service_returns_none(self, tcp_server):
        port = tcp_server(None)
        assert BannerGrabber(timeout=0.3).grab("127.0.0.1", port) is None


def test_guess_confidence_is_bounded():
    with pytest.raises(ValueError):
        ServiceGuess(port=22, protocol="tcp", name="ssh", confidence=1.5)
