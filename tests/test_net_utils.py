"""Tests for target expansion and TCP port probing"""

import asyncio

import pytest

from cctvcore.net_utils import (
    InvalidTargetError,
    count_ips_in_cidr,
    count_ips_in_range,
    count_target,
    ip_to_int,
    is_port_open,
    is_valid_cidr,
    is_valid_ip,
    iter_target,
    parse_cidr,
    parse_ip_range,
    parse_target,
    probe_ports,
)
from tests.fakes import closed_port


class TestValidation:
    @pytest.mark.parametrize("ip", ["0.0.0.0", "192.168.1.1", "255.255.255.255", "010.0.0.1"])
    def test_valid_ips(self, ip):
        assert is_valid_ip(ip)

    @pytest.mark.parametrize("ip", ["256.1.1.1", "1.2.3", "1.2.3.4.5", "a.b.c.d", "", "1.2.3.-4", "1.2.3.1000",
                                    "1.2.3.\u00b2", "\u0661.2.3.4"])
    def test_invalid_ips(self, ip):
        assert not is_valid_ip(ip)

    def test_cidr_prefix_bounds(self):
        assert is_valid_cidr("10.0.0.0/0")
        assert is_valid_cidr("10.0.0.0/32")
        assert not is_valid_cidr("10.0.0.0/33")
        assert not is_valid_cidr("10.0.0.0")
        assert not is_valid_cidr("10.0.0.0/x")

    def test_leading_zero_octets_are_decimal(self):
        """"010" is ten, not octal eight"""
        assert ip_to_int("010.0.0.1") == (10 << 24) | 1


class TestCidrExpansion:
    def test_slash_24_excludes_network_and_broadcast(self):
        hosts = parse_cidr("192.168.1.0/24")
        assert len(hosts) == 254
        assert hosts[0] == "192.168.1.1"
        assert hosts[-1] == "192.168.1.254"
        assert "192.168.1.0" not in hosts
        assert "192.168.1.255" not in hosts

    def test_addresses_strictly_ascending(self):
        hosts = parse_cidr("10.0.0.0/22")
        values = [ip_to_int(h) for h in hosts]
        assert values == sorted(values)
        assert len(set(values)) == len(values)

    @pytest.mark.parametrize("prefix", [16, 20, 24, 28, 30])
    def test_count_formula(self, prefix):
        cidr = f"172.16.0.0/{prefix}"
        assert count_ips_in_cidr(cidr) == 2 ** (32 - prefix) - 2
        assert len(parse_cidr(cidr)) == count_ips_in_cidr(cidr)

    def test_host_bits_are_masked(self):
        assert parse_cidr("192.168.1.77/30") == parse_cidr("192.168.1.76/30")
        assert parse_cidr("192.168.1.77/30") == ["192.168.1.77", "192.168.1.78"]

    @pytest.mark.parametrize("cidr", ["10.0.0.0/31", "10.0.0.1/32"])
    def test_tiny_blocks_expand_to_nothing(self, cidr):
        assert parse_cidr(cidr) == []
        assert count_ips_in_cidr(cidr) == 0

    @pytest.mark.parametrize("cidr", ["192.168.1.0/33", "256.1.1.0/24", "garbage", "1.2.3.4/"])
    def test_invalid_cidr_raises(self, cidr):
        with pytest.raises(InvalidTargetError):
            parse_cidr(cidr)


class TestRangeExpansion:
    def test_inclusive_count(self):
        hosts = parse_ip_range("192.168.1.10", "192.168.1.50")
        assert len(hosts) == 41 == count_ips_in_range("192.168.1.10", "192.168.1.50")
        assert hosts[0] == "192.168.1.10"
        assert hosts[-1] == "192.168.1.50"

    def test_crosses_octet_boundary(self):
        assert parse_ip_range("10.0.0.254", "10.0.1.1") == [
            "10.0.0.254", "10.0.0.255", "10.0.1.0", "10.0.1.1",
        ]

    def test_single_address_range(self):
        assert parse_ip_range("10.0.0.5", "10.0.0.5") == ["10.0.0.5"]

    def test_start_after_end_raises(self):
        with pytest.raises(InvalidTargetError):
            parse_ip_range("192.168.1.50", "192.168.1.10")

    def test_invalid_endpoint_raises(self):
        with pytest.raises(InvalidTargetError):
            parse_ip_range("192.168.1.1", "192.168.1.300")


class TestParseTarget:
    def test_single_ip(self):
        assert parse_target("10.0.0.5") == ["10.0.0.5"]
        assert count_target("10.0.0.5") == 1

    def test_dash_range(self):
        assert parse_target("10.0.0.1 - 10.0.0.3") == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert count_target("10.0.0.1-10.0.0.3") == 3

    def test_cidr(self):
        assert count_target("10.0.0.0/29") == 6

    def test_unrecognized(self):
        with pytest.raises(InvalidTargetError):
            parse_target("camera.local")

    @pytest.mark.parametrize("target", ["1.2.3.\u00b2", "10.0.0.0/\u00b2\u00b2", "1.2.3.4-1.2.3.\u00b9"])
    def test_non_ascii_digits_are_invalid_targets(self, target):
        with pytest.raises(InvalidTargetError):
            parse_target(target)
        with pytest.raises(InvalidTargetError):
            count_target(target)

    def test_iter_target_is_lazy(self):
        addresses = iter_target("10.0.0.0/8")
        assert next(addresses) == "10.0.0.1"
        assert next(addresses) == "10.0.0.2"

    def test_iter_target_validates_on_call(self):
        with pytest.raises(InvalidTargetError):
            iter_target("10.0.0.0/33")
        with pytest.raises(InvalidTargetError):
            iter_target("10.0.0.9-10.0.0.1")


class TestPortProbe:
    @pytest.fixture
    async def listening_port(self):
        async def handler(reader, writer):
            writer.close()

        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        yield server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

    async def test_open_port(self, listening_port):
        assert await is_port_open("127.0.0.1", listening_port, timeout_ms=1000) is True

    async def test_closed_port(self):
        assert await is_port_open("127.0.0.1", closed_port(), timeout_ms=1000) is False

    async def test_timeout_is_enforced(self, monkeypatch):
        """A connect that never completes is reported closed once the deadline passes"""
        async def hang(*args, **kwargs):
            await asyncio.sleep(60)

        monkeypatch.setattr(asyncio, "open_connection", hang)
        loop = asyncio.get_running_loop()
        start = loop.time()
        assert await is_port_open("192.0.2.1", 554, timeout_ms=100) is False
        assert loop.time() - start < 5

    async def test_probe_ports_returns_open_subset(self, listening_port):
        closed = closed_port()
        assert await probe_ports("127.0.0.1", [listening_port, closed], timeout_ms=1000) == {listening_port}
