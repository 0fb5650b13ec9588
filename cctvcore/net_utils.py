"""Network utilities — target ranges (CIDR / start-end) and TCP port probing."""

import asyncio
import logging
import socket
import struct
from typing import Iterator

logger = logging.getLogger("cctvdiscovery.net_utils")


class InvalidTargetError(ValueError):
    """Malformed IP address, CIDR block or address range."""


def is_valid_ip(ip: str) -> bool:
    """Check dotted-quad IPv4 format with octets 0-255."""
    if not isinstance(ip, str):
        return False
    parts = ip.strip().split(".")
    if len(parts) != 4:
        return False
    return all(p.isascii() and p.isdigit() and len(p) <= 3 and 0 <= int(p) <= 255 for p in parts)


def is_valid_cidr(cidr: str) -> bool:
    if not isinstance(cidr, str) or cidr.count("/") != 1:
        return False
    ip, prefix = cidr.strip().split("/")
    if not is_valid_ip(ip) or not (prefix.isascii() and prefix.isdigit()):
        return False
    return 0 <= int(prefix) <= 32


def ip_to_int(ip: str) -> int:
    if not is_valid_ip(ip):
        raise InvalidTargetError(f"Invalid IP address: {ip!r}")
    # Octets are decimal; inet_aton would read "010" as octal.
    octets = bytes(int(p) for p in ip.strip().split("."))
    return struct.unpack("!I", octets)[0]


def int_to_ip(value: int) -> str:
    return socket.inet_ntoa(struct.pack("!I", value & 0xFFFFFFFF))


def _cidr_bounds(cidr: str) -> tuple[int, int]:
    """Return (first_host, last_host) as integers, excluding network and broadcast."""
    if not is_valid_cidr(cidr):
        raise InvalidTargetError(f"Invalid CIDR: {cidr!r} (expected a.b.c.d/n, 0 <= n <= 32)")
    ip, prefix = cidr.strip().split("/")
    prefix_len = int(prefix)
    mask = (0xFFFFFFFF << (32 - prefix_len)) & 0xFFFFFFFF
    network = ip_to_int(ip) & mask
    broadcast = network | (~mask & 0xFFFFFFFF)
    return network + 1, broadcast - 1


def iter_cidr(cidr: str) -> Iterator[str]:
    """Lazily yield the host addresses of a CIDR block in ascending order."""
    first, last = _cidr_bounds(cidr)
    for value in range(first, last + 1):
        yield int_to_ip(value)


def parse_cidr(cidr: str) -> list[str]:
    """Expand a CIDR block to every address strictly between network and broadcast."""
    return list(iter_cidr(cidr))


def count_ips_in_cidr(cidr: str) -> int:
    """2^(32-n) - 2, clamped at zero for /31 and /32."""
    first, last = _cidr_bounds(cidr)
    return max(0, last - first + 1)


def _range_bounds(start_ip: str, end_ip: str) -> tuple[int, int]:
    start = ip_to_int(start_ip)
    end = ip_to_int(end_ip)
    if start > end:
        raise InvalidTargetError(
            f"Start IP must be less than or equal to end IP ({start_ip} > {end_ip})"
        )
    return start, end


def iter_ip_range(start_ip: str, end_ip: str) -> Iterator[str]:
    start, end = _range_bounds(start_ip, end_ip)
    for value in range(start, end + 1):
        yield int_to_ip(value)


def parse_ip_range(start_ip: str, end_ip: str) -> list[str]:
    """Expand an inclusive start-end address range."""
    return list(iter_ip_range(start_ip, end_ip))


def count_ips_in_range(start_ip: str, end_ip: str) -> int:
    start, end = _range_bounds(start_ip, end_ip)
    return end - start + 1


def iter_target(target: str) -> Iterator[str]:
    """Lazily yield the addresses of a CIDR, a range or a single IP.

    Unlike the iter_* generators, the target is validated on the call itself.
    """
    count_target(target)
    target = target.strip()
    if "/" in target:
        return iter_cidr(target)
    if "-" in target:
        start, _, end = target.partition("-")
        return iter_ip_range(start.strip(), end.strip())
    return iter([target])


def parse_target(target: str) -> list[str]:
    """Expand a CIDR ("a.b.c.d/n"), a range ("a.b.c.d-e.f.g.h") or a single IP."""
    return list(iter_target(target))


def count_target(target: str) -> int:
    target = (target or "").strip()
    if "/" in target:
        return count_ips_in_cidr(target)
    if "-" in target:
        start, _, end = target.partition("-")
        return count_ips_in_range(start.strip(), end.strip())
    if is_valid_ip(target):
        return 1
    raise InvalidTargetError(f"Unrecognized target: {target!r}")


async def is_port_open(host: str, port: int, timeout_ms: int = 2000) -> bool:
    """TCP connect check bounded by timeout_ms. Never raises on network failure."""
    writer = None
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout_ms / 1000
        )
        return True
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Port {host}:{port} closed: {e!r}")
        return False
    finally:
        if writer is not None:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=1)
            except (OSError, asyncio.TimeoutError):
                pass


async def probe_ports(host: str, ports, timeout_ms: int = 2000) -> set[int]:
    """Probe several ports of one host concurrently, return the open ones."""
    ports = sorted(set(ports))
    results = await asyncio.gather(*[is_port_open(host, p, timeout_ms) for p in ports])
    return {port for port, is_open in zip(ports, results) if is_open}
