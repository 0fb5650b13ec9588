"""MAC address resolution (OS neighbor table) and manufacturer lookup."""

import asyncio
import contextlib
import logging
import re
import shutil
import sys
from typing import Protocol

logger = logging.getLogger("cctvdiscovery.mac_lookup")

MAC_PATTERN = re.compile(r"(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}")
_SEPARATORS = re.compile(r"[:\-.\s]")
_HEX12 = re.compile(r"[0-9A-F]{12}")

# Well-known surveillance OUI prefixes (first 3 bytes of MAC)
CAMERA_OUI = {
    # Hikvision
    "C0:56:E3": "Hikvision", "44:19:B6": "Hikvision", "54:C4:15": "Hikvision",
    "C4:2F:90": "Hikvision", "BC:AD:28": "Hikvision", "A4:14:37": "Hikvision",
    "18:68:CB": "Hikvision", "28:57:BE": "Hikvision", "80:09:02": "Hikvision",
    "48:57:02": "Hikvision",
    # Dahua
    "3C:EF:8C": "Dahua", "A0:BD:1D": "Dahua", "E0:50:8B": "Dahua",
    "40:2C:76": "Dahua", "90:02:A9": "Dahua", "B8:A8:AF": "Dahua",
    "4C:11:BF": "Dahua",
    # Axis Communications
    "00:40:8C": "Axis", "AC:CC:8E": "Axis", "B8:A4:4F": "Axis",
    # Reolink
    "EC:71:DB": "Reolink", "B4:6B:FC": "Reolink",
    # Foscam
    "C0:6D:1A": "Foscam",
    # Amcrest
    "9C:8E:CD": "Amcrest",
    # Ubiquiti
    "FC:EC:DA": "Ubiquiti", "04:18:D6": "Ubiquiti", "44:D9:E7": "Ubiquiti",
    "24:5A:4C": "Ubiquiti", "68:72:51": "Ubiquiti", "74:83:C2": "Ubiquiti",
    # Hanwha / Samsung Techwin
    "00:16:6C": "Samsung", "00:09:18": "Samsung",
    # Bosch
    "00:04:13": "Bosch", "00:07:5F": "Bosch",
    # Panasonic
    "00:80:45": "Panasonic", "00:B0:C7": "Panasonic",
    # Vivotek
    "00:02:D1": "Vivotek",
    # Honeywell
    "00:30:AB": "Honeywell",
    # GeoVision
    "00:13:E2": "GeoVision",
}


def normalize_mac(mac: str | None) -> str | None:
    """Canonical XX:XX:XX:XX:XX:XX, or the input unchanged if not 12 hex digits."""
    if mac is None:
        return None
    cleaned = _SEPARATORS.sub("", mac).upper()
    if not _HEX12.fullmatch(cleaned):
        return mac
    return ":".join(cleaned[i:i + 2] for i in range(0, 12, 2))


def get_mac_prefix(mac: str | None) -> str | None:
    """First three canonical octets (XX:XX:XX) for manufacturer lookup."""
    if not mac or len(mac) < 8:
        return None
    normalized = normalize_mac(mac)
    if normalized is None or len(normalized) != 17 or normalized.count(":") != 5:
        return None
    return normalized[:8]


def extract_mac_from_line(line: str) -> str | None:
    match = MAC_PATTERN.search(line)
    if match:
        return match.group().replace("-", ":").upper()
    return None


def extract_mac_for_ip(output: str, ip: str) -> str | None:
    """Scan neighbor-table text for the line mentioning ip and return its MAC."""
    ip_pattern = re.compile(rf"(?<![\d.]){re.escape(ip)}(?![\d.])")
    for line in output.splitlines():
        if ip_pattern.search(line):
            mac = extract_mac_from_line(line)
            if mac:
                return mac
    return None


class MacResolver(Protocol):
    async def resolve(self, ip: str) -> str | None:
        ...


class ArpResolver:
    """Resolve MACs through the OS neighbor table (arp / ip neigh)."""

    def __init__(self, timeout_ms: int = 2000, platform: str | None = None):
        self.timeout_ms = timeout_ms
        self.platform = platform or sys.platform

    def build_command(self, ip: str) -> list[str] | None:
        if self.platform.startswith(("win", "cygwin")):
            return ["arp", "-a", ip]
        if self.platform.startswith(("linux", "darwin", "freebsd", "openbsd", "netbsd")):
            if not shutil.which("arp") and shutil.which("ip"):
                return ["ip", "neigh", "show", ip]
            return ["arp", "-n", ip]
        return None

    async def resolve(self, ip: str) -> str | None:
        cmd = self.build_command(ip)
        if cmd is None:
            logger.warning(f"Unsupported platform for ARP resolution: {self.platform}")
            return None

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning(f"Neighbor table command {cmd[0]!r} unavailable: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Neighbor table lookup for {ip} timed out")
            return None
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        mac = extract_mac_for_ip(stdout.decode(errors="ignore"), ip)
        if mac:
            logger.debug(f"Resolved {ip} -> {mac}")
        return mac


async def lookup_vendor(mac: str | None, timeout: float = 2.0) -> str:
    """Look up device manufacturer from MAC address."""
    prefix = get_mac_prefix(mac)
    if not prefix:
        return ""

    if prefix in CAMERA_OUI:
        return CAMERA_OUI[prefix]

    # Fall back to the IEEE OUI database
    try:
        from mac_vendor_lookup import AsyncMacLookup
        return await asyncio.wait_for(AsyncMacLookup().lookup(normalize_mac(mac)), timeout=timeout)
    except Exception as e:
        logger.debug(f"Vendor lookup failed for {prefix}: {e!r}")
    return ""


def is_camera_vendor(mac: str | None) -> bool:
    return get_mac_prefix(mac) in CAMERA_OUI
