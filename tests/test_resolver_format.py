import ipaddress

import pytest

from hostsync.agent.containers import DnsSearchList, DnsServerList
from hostsync.agent.entities import DnsSearchDomain, DnsServer
from hostsync.agent.system import (
    SystemPaths,
    format_dns_server,
    parse_dns_server,
    read_dns_search,
    read_dns_servers,
    read_resolv_options,
    write_resolv_option,
    write_resolved,
)
from hostsync.settings import Settings


def _paths(tmp_path) -> SystemPaths:
    return SystemPaths.from_settings(Settings(system_root=str(tmp_path)))


@pytest.mark.parametrize("text", ["192.0.2.10", "2001:db8::53", "::1", "10.0.0.1"])
def test_address_text_round_trips(text: str) -> None:
    server = DnsServer(name=text)
    server.set_address(text)

    assert ipaddress.ip_address(server.address_text()) == server.address
    assert server.address_text() == str(ipaddress.ip_address(text))


def test_port_text() -> None:
    server = DnsServer(name="a", address=ipaddress.ip_address("192.0.2.1"), port=53)
    assert server.port_text() == "53"

    server.set_port(0)
    assert server.port_text() is None

    server.set_port("5353")
    assert server.port == 5353


@pytest.mark.parametrize(
    ("address", "port", "expected"),
    [
        ("192.0.2.1", 0, "192.0.2.1"),
        ("192.0.2.1", 53, "192.0.2.1:53"),
        ("2001:db8::1", 0, "2001:db8::1"),
        ("2001:db8::1", 5353, "[2001:db8::1]:5353"),
    ],
)
def test_format_and_parse_dns_server(address: str, port: int, expected: str) -> None:
    server = DnsServer(name="x", address=ipaddress.ip_address(address), port=port)

    rendered = format_dns_server(server)
    parsed = parse_dns_server(rendered)

    assert rendered == expected
    assert parsed.address == server.address
    assert parsed.port == port


def test_parse_dns_server_strips_interface_and_server_name() -> None:
    parsed = parse_dns_server("fe80::1%eth0#dns.example")
    assert parsed.address == ipaddress.ip_address("fe80::1")
    assert parsed.port == 0


def test_resolved_dropin_round_trip(tmp_path) -> None:
    paths = _paths(tmp_path)
    search = DnsSearchList()
    search.add(DnsSearchDomain(domain="example.com"))
    search.add(DnsSearchDomain(domain="corp.local", search=False))
    servers = DnsServerList()
    servers.add(DnsServer(name="one", address=ipaddress.ip_address("192.0.2.1")))
    servers.add(DnsServer(name="two", address=ipaddress.ip_address("2001:db8::2"), port=5353))
    servers.add(DnsServer(name="pending"))

    write_resolved(paths, search, servers)

    content = paths.resolved_dropin.read_text(encoding="utf-8")
    assert "DNS=192.0.2.1 [2001:db8::2]:5353\n" in content
    assert "Domains=example.com ~corp.local\n" in content

    assert [(d.domain, d.search) for d in read_dns_search(paths)] == [("example.com", True), ("corp.local", False)]
    assert [(s.name, s.port) for s in read_dns_servers(paths)] == [("192.0.2.1", 0), ("2001:db8::2", 5353)]


def test_resolv_options_update_keeps_other_lines(tmp_path) -> None:
    paths = _paths(tmp_path)
    paths.resolv_conf.parent.mkdir(parents=True)
    paths.resolv_conf.write_text("nameserver 127.0.0.53\noptions edns0 timeout:1\n", encoding="utf-8")

    write_resolv_option(paths, "timeout", "5")
    write_resolv_option(paths, "attempts", "2")

    assert read_resolv_options(paths) == {"edns0": "", "timeout": "5", "attempts": "2"}
    assert paths.resolv_conf.read_text(encoding="utf-8").startswith("nameserver 127.0.0.53\n")

    write_resolv_option(paths, "timeout", None)
    assert read_resolv_options(paths) == {"edns0": "", "attempts": "2"}
