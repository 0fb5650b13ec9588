"""ONVIF — SOAP device/media client and WS-Discovery probe."""

import asyncio
import logging
import re
import socket
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlsplit

import aiohttp

from cctvcore.auth import AuthSession, TransportResponse

logger = logging.getLogger("cctvdiscovery.onvif")

SOAP_CONTENT_TYPE = "application/soap+xml; charset=utf-8"
DEVICE_SERVICE_PATH = "/onvif/device_service"
TLS_PORTS = (443, 8443)

WS_DISCOVERY_ADDR = ("239.255.255.250", 3702)

GET_DEVICE_INFORMATION = '<GetDeviceInformation xmlns="http://www.onvif.org/ver10/device/wsdl"/>'
GET_SYSTEM_DATE_AND_TIME = '<GetSystemDateAndTime xmlns="http://www.onvif.org/ver10/device/wsdl"/>'
GET_CAPABILITIES = (
    '<GetCapabilities xmlns="http://www.onvif.org/ver10/device/wsdl">'
    "<Category>Media</Category></GetCapabilities>"
)
GET_VIDEO_SOURCES = '<GetVideoSources xmlns="http://www.onvif.org/ver10/media/wsdl"/>'
GET_PROFILES = '<GetProfiles xmlns="http://www.onvif.org/ver10/media/wsdl"/>'
GET_STREAM_URI = (
    '<GetStreamUri xmlns="http://www.onvif.org/ver10/media/wsdl">'
    "<StreamSetup>"
    '<Stream xmlns="http://www.onvif.org/ver10/schema">RTP-Unicast</Stream>'
    '<Transport xmlns="http://www.onvif.org/ver10/schema"><Protocol>RTSP</Protocol></Transport>'
    "</StreamSetup>"
    "<ProfileToken>{token}</ProfileToken>"
    "</GetStreamUri>"
)

_FAULT_RE = re.compile(r"<(?:[\w.-]+:)?Fault[\s>/]")


def device_service_url(ip: str, port: int) -> str:
    scheme = "https" if port in TLS_PORTS else "http"
    return f"{scheme}://{ip}:{port}{DEVICE_SERVICE_PATH}"


def build_envelope(body: str, security: str | None = None) -> str:
    header = f"<s:Header>{security}</s:Header>" if security else ""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope">'
        f"{header}"
        f"<s:Body>{body}</s:Body>"
        "</s:Envelope>"
    )


def is_soap_fault(body: str) -> bool:
    return bool(_FAULT_RE.search(body or ""))


# ═══════════════════════════════════════════════════════════════
# Response parsing
# ═══════════════════════════════════════════════════════════════

def parse_device_information(xml_text: str) -> dict:
    """Parse ONVIF GetDeviceInformation response."""
    info = {}
    patterns = {
        "manufacturer": r"<(?:\w+:)?Manufacturer>([^<]+)</",
        "model": r"<(?:\w+:)?Model>([^<]+)</",
        "firmware_version": r"<(?:\w+:)?FirmwareVersion>([^<]+)</",
        "serial_number": r"<(?:\w+:)?SerialNumber>([^<]+)</",
        "hardware_id": r"<(?:\w+:)?HardwareId>([^<]+)</",
    }
    for key, pattern in patterns.items():
        match = re.search(pattern, xml_text)
        if match:
            info[key] = match.group(1).strip()
    return info


def parse_system_date_time(xml_text: str) -> datetime | None:
    block = re.search(r"<(?:\w+:)?UTCDateTime>(.*?)</(?:\w+:)?UTCDateTime>", xml_text, re.S)
    if not block:
        return None
    values = {}
    for name in ("Year", "Month", "Day", "Hour", "Minute", "Second"):
        match = re.search(rf"<(?:\w+:)?{name}>(\d+)</", block.group(1))
        if not match:
            return None
        values[name.lower()] = int(match.group(1))
    try:
        return datetime(tzinfo=timezone.utc, **values)
    except ValueError:
        return None


def parse_video_sources(xml_text: str) -> list[str]:
    return re.findall(r"<(?:\w+:)?VideoSources\b[^>]*\btoken=\"([^\"]+)\"", xml_text)


def parse_media_xaddr(xml_text: str) -> str | None:
    block = re.search(r"<(?:\w+:)?Media>(.*?)</(?:\w+:)?Media>", xml_text, re.S)
    if not block:
        return None
    match = re.search(r"<(?:\w+:)?XAddr>([^<]+)</", block.group(1))
    return match.group(1).strip() if match else None


def parse_stream_uri(xml_text: str) -> str | None:
    match = re.search(r"<(?:\w+:)?Uri>([^<]+)</", xml_text)
    return match.group(1).strip().replace("&amp;", "&") if match else None


@dataclass
class OnvifProfile:
    token: str
    name: str = ""
    encoding: str | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    bitrate_kbps: int | None = None
    h264_profile: str | None = None
    video_source_token: str | None = None

    @property
    def resolution(self) -> str | None:
        if self.width and self.height:
            return f"{self.width}x{self.height}"
        return None


def _int(text: str | None) -> int | None:
    try:
        return int(text) if text is not None else None
    except ValueError:
        return None


def parse_profiles(xml_text: str) -> list[OnvifProfile]:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.debug(f"Unparseable GetProfiles response: {e}")
        return []

    profiles = []
    for node in root.iterfind(".//{*}Profiles"):
        token = node.get("token")
        if not token:
            continue
        profile = OnvifProfile(token=token, name=(node.findtext("{*}Name") or "").strip())

        encoder = node.find("{*}VideoEncoderConfiguration")
        if encoder is not None:
            profile.encoding = encoder.findtext("{*}Encoding")
            profile.width = _int(encoder.findtext("{*}Resolution/{*}Width"))
            profile.height = _int(encoder.findtext("{*}Resolution/{*}Height"))
            profile.bitrate_kbps = _int(encoder.findtext("{*}RateControl/{*}BitrateLimit"))
            fps = _int(encoder.findtext("{*}RateControl/{*}FrameRateLimit"))
            profile.fps = float(fps) if fps is not None else None
            profile.h264_profile = encoder.findtext("{*}H264/{*}H264Profile")

        source = node.find("{*}VideoSourceConfiguration")
        if source is not None:
            profile.video_source_token = source.findtext("{*}SourceToken")
        profiles.append(profile)
    return profiles


# ═══════════════════════════════════════════════════════════════
# Client
# ═══════════════════════════════════════════════════════════════

class OnvifTransport:
    """One SOAP operation against one service URL."""

    method = "POST"
    supports_ws_security = True

    def __init__(self, client: "OnvifClient", url: str, body: str):
        self.client = client
        self.url = url
        self.uri = urlsplit(url).path or "/"
        self.body = body

    async def send(self, authorization: str | None = None,
                   security: str | None = None) -> TransportResponse:
        return await self.client.post(self.url, build_envelope(self.body, security), authorization)

    def is_accepted(self, response: TransportResponse) -> bool:
        return response.status == 200 and not is_soap_fault(response.body)


class OnvifClient:
    """SOAP client for one device. Use as an async context manager."""

    def __init__(self, service_url: str, http_timeout_ms: int = 10000):
        self.service_url = service_url
        self.media_url = service_url
        self.timeout = aiohttp.ClientTimeout(total=http_timeout_ms / 1000)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "OnvifClient":
        connector = aiohttp.TCPConnector(ssl=False)
        self._session = aiohttp.ClientSession(timeout=self.timeout, connector=connector)
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def transport(self, body: str = GET_DEVICE_INFORMATION, url: str | None = None) -> OnvifTransport:
        return OnvifTransport(self, url or self.service_url, body)

    async def post(self, url: str, envelope: str, authorization: str | None = None) -> TransportResponse:
        """POST a SOAP envelope; network failures come back as status 0."""
        if self._session is None:
            raise RuntimeError("OnvifClient used outside 'async with'")
        headers = {"Content-Type": SOAP_CONTENT_TYPE}
        if authorization:
            headers["Authorization"] = authorization
        try:
            async with self._session.post(url, data=envelope.encode("utf-8"), headers=headers) as resp:
                body = await resp.text(errors="ignore")
                return TransportResponse(
                    status=resp.status,
                    challenges=resp.headers.getall("WWW-Authenticate", []),
                    body=body,
                    headers={k.lower(): v for k, v in resp.headers.items()},
                )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"ONVIF POST {url} failed: {e!r}")
            return TransportResponse(status=0, error=f"{type(e).__name__}: {e}")

    async def call(self, body: str, auth: AuthSession, url: str | None = None) -> str | None:
        """Run one operation with the device's session; None on failure or Fault."""
        transport = self.transport(body, url)
        response = await auth.send(transport)
        if not transport.is_accepted(response):
            logger.debug(f"{transport.url}: {body[:40]}... -> {response.status} {response.error or ''}")
            return None
        return response.body

    async def get_device_information(self, auth: AuthSession) -> dict:
        body = await self.call(GET_DEVICE_INFORMATION, auth)
        return parse_device_information(body) if body else {}

    async def get_system_date_and_time(self, auth: AuthSession) -> datetime | None:
        body = await self.call(GET_SYSTEM_DATE_AND_TIME, auth)
        return parse_system_date_time(body) if body else None

    async def get_clock_offset(self, auth: AuthSession) -> int | None:
        """Device clock minus local clock, in whole seconds."""
        device_time = await self.get_system_date_and_time(auth)
        if device_time is None:
            return None
        return round((device_time - datetime.now(timezone.utc)).total_seconds())

    async def resolve_media_url(self, auth: AuthSession) -> str:
        body = await self.call(GET_CAPABILITIES, auth)
        xaddr = parse_media_xaddr(body) if body else None
        if xaddr:
            self.media_url = xaddr
        return self.media_url

    async def get_video_sources(self, auth: AuthSession) -> list[str]:
        body = await self.call(GET_VIDEO_SOURCES, auth, self.media_url)
        return parse_video_sources(body) if body else []

    async def get_profiles(self, auth: AuthSession) -> list[OnvifProfile]:
        body = await self.call(GET_PROFILES, auth, self.media_url)
        return parse_profiles(body) if body else []

    async def get_stream_uri(self, auth: AuthSession, profile_token: str) -> str | None:
        body = await self.call(GET_STREAM_URI.format(token=profile_token), auth, self.media_url)
        return parse_stream_uri(body) if body else None


# ═══════════════════════════════════════════════════════════════
# WS-Discovery
# ═══════════════════════════════════════════════════════════════

def build_probe(message_id: str | None = None) -> str:
    message_id = message_id or f"uuid:{uuid.uuid4()}"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<e:Envelope xmlns:e="http://www.w3.org/2003/05/soap-envelope" '
        'xmlns:w="http://schemas.xmlsoap.org/ws/2004/08/addressing" '
        'xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery" '
        'xmlns:dn="http://www.onvif.org/ver10/network/wsdl">'
        "<e:Header>"
        f"<w:MessageID>{message_id}</w:MessageID>"
        "<w:To e:mustUnderstand=\"true\">urn:schemas-xmlsoap-org:ws:2005:04:discovery</w:To>"
        "<w:Action e:mustUnderstand=\"true\">"
        "http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe</w:Action>"
        "</e:Header>"
        "<e:Body><d:Probe><d:Types>dn:NetworkVideoTransmitter</d:Types></d:Probe></e:Body>"
        "</e:Envelope>"
    )


def parse_probe_match(xml_text: str) -> list[str]:
    """XAddrs (space separated service URLs) from a ProbeMatch."""
    addrs = []
    for match in re.findall(r"<(?:\w+:)?XAddrs>([^<]+)</", xml_text):
        addrs.extend(a for a in match.split() if a.startswith("http"))
    return addrs


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.found: dict[str, list[str]] = {}

    def datagram_received(self, data: bytes, addr) -> None:
        for xaddr in parse_probe_match(data.decode(errors="ignore")):
            host = urlsplit(xaddr).hostname or addr[0]
            urls = self.found.setdefault(host, [])
            if xaddr not in urls:
                urls.append(xaddr)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"WS-Discovery socket error: {exc!r}")


async def ws_discover(timeout_ms: int = 5000) -> dict[str, list[str]]:
    """Multicast a Probe and collect ONVIF service URLs per responding IP."""
    loop = asyncio.get_running_loop()
    try:
        transport, protocol = await loop.create_datagram_endpoint(
            _DiscoveryProtocol, local_addr=("0.0.0.0", 0), family=socket.AF_INET,
        )
    except OSError as e:
        logger.warning(f"WS-Discovery unavailable: {e}")
        return {}

    try:
        sock = transport.get_extra_info("socket")
        if sock is not None:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        transport.sendto(build_probe().encode(), WS_DISCOVERY_ADDR)
        await asyncio.sleep(timeout_ms / 1000)
    except OSError as e:
        logger.warning(f"WS-Discovery probe failed: {e}")
        return {}
    finally:
        transport.close()

    logger.info(f"WS-Discovery: {len(protocol.found)} ONVIF device(s) answered")
    return protocol.found
