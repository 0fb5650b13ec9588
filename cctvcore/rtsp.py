"""RTSP — DESCRIBE client, SDP parsing and stream path discovery."""

import asyncio
import contextlib
import itertools
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from cctvcore.auth import AuthNegotiator, AuthSession, TransportResponse
from cctvcore.device import Credential, Device, RTSPStream
from cctvcore.mac_lookup import get_mac_prefix
from cctvcore.stream_analyzer import H264_PROFILES, H265_PROFILES, normalize_codec

logger = logging.getLogger("cctvdiscovery.rtsp")

DATA_DIR = Path(__file__).parent.parent / "data"
TEMPLATES_FILE = "rtsp_templates.json"

DEFAULT_TEMPLATES = {
    "manufacturers": {
        "HIKVISION": [
            "/Streaming/Channels/101", "/Streaming/Channels/102",
            "/h264/ch1/main/av_stream", "/h264/ch1/sub/av_stream",
        ],
        "DAHUA": [
            "/cam/realmonitor?channel=1&subtype=0", "/cam/realmonitor?channel=1&subtype=1",
            "/live/ch00_0", "/live/ch00_1",
        ],
        "AXIS": [
            "/axis-media/media.amp", "/axis-media/media.amp?videocodec=h264", "/mpeg4/media.amp",
        ],
        "CP_PLUS": [
            "/cam/realmonitor?channel=1&subtype=0", "/cam/realmonitor?channel=1&subtype=1",
        ],
    },
    "generic": [
        "/live", "/live/0", "/live/1", "/ch0", "/ch01",
        "/stream1", "/stream2", "/video.mjpg", "/h264",
    ],
    "nvr_channels": {
        "HIKVISION": ["/Streaming/Channels/{hik_main}", "/Streaming/Channels/{hik_sub}"],
        "DAHUA": ["/cam/realmonitor?channel={channel}&subtype=0",
                  "/cam/realmonitor?channel={channel}&subtype=1"],
        "UNIVIEW": ["/media/video{channel}", "/media/video{uniview_sub}"],
        "GENERIC": ["/ch{channel2}/0", "/ch{channel2}/1"],
    },
}

# Vendors sharing another vendor's URL scheme
_MANUFACTURER_ALIASES = {
    "hikvision": "HIKVISION", "hikvision digital technology": "HIKVISION",
    "dahua": "DAHUA", "amcrest": "DAHUA", "lorex": "DAHUA",
    "cp plus": "CP_PLUS", "cp_plus": "CP_PLUS", "cpplus": "CP_PLUS", "cp-plus": "CP_PLUS",
    "axis": "AXIS", "axis communications": "AXIS",
    "uniview": "UNIVIEW", "unv": "UNIVIEW",
}

_NVR_PATTERN_FOR = {
    "HIKVISION": "HIKVISION",
    "DAHUA": "DAHUA",
    "CP_PLUS": "DAHUA",
    "UNIVIEW": "UNIVIEW",
}


def _load_json(filename: str) -> dict:
    path = DATA_DIR / filename
    if path.exists():
        with open(path) as f:
            return json.load(f)
    return {}


def load_templates() -> dict:
    templates = _load_json(TEMPLATES_FILE)
    if not templates:
        logger.debug(f"{TEMPLATES_FILE} missing, using built-in path templates")
        return DEFAULT_TEMPLATES
    return templates


def manufacturer_key(manufacturer: str | None) -> str:
    """HIKVISION / DAHUA / AXIS / CP_PLUS / UNIVIEW, or GENERIC."""
    name = (manufacturer or "").strip().lower()
    if not name:
        return "GENERIC"
    if name in _MANUFACTURER_ALIASES:
        return _MANUFACTURER_ALIASES[name]
    for alias, key in _MANUFACTURER_ALIASES.items():
        if name.startswith(alias):
            return key
    return "GENERIC"


_SUBSTREAM_RULES = [
    (re.compile(r"/101$"), "/102"),
    (re.compile(r"subtype=0"), "subtype=1"),
    (re.compile(r"/main/"), "/sub/"),
    (re.compile(r"_0$"), "_1"),
    (re.compile(r"/0$"), "/1"),
    (re.compile(r"/live$"), "/live/1"),
]


def guess_substream_path(main_path: str) -> str | None:
    for pattern, replacement in _SUBSTREAM_RULES:
        if pattern.search(main_path):
            return pattern.sub(replacement, main_path, count=1)
    return None


def build_rtsp_url(ip: str, port: int, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"rtsp://{ip}:{port}{path}"


# ═══════════════════════════════════════════════════════════════
# SDP
# ═══════════════════════════════════════════════════════════════

@dataclass
class SdpInfo:
    session_name: str | None = None
    codec: str | None = None
    resolution: str | None = None
    fps: float | None = None
    bitrate_kbps: int | None = None
    profile: str | None = None


def is_valid_sdp(sdp: str | None) -> bool:
    """A usable description has a version line and a video media section."""
    if not sdp:
        return False
    lines = [line.strip() for line in sdp.splitlines()]
    return any(line.startswith("v=") for line in lines) and \
        any(line.startswith("m=video") for line in lines)


def _h264_profile(fmtp: str) -> str | None:
    match = re.search(r"profile-level-id=([0-9A-Fa-f]{6})", fmtp)
    if not match:
        return None
    return H264_PROFILES.get(int(match.group(1)[:2], 16))


def _h265_profile(fmtp: str) -> str | None:
    match = re.search(r"profile-id=(\d+)", fmtp)
    if not match:
        return None
    return H265_PROFILES.get(int(match.group(1)))


def parse_sdp(sdp: str | None) -> SdpInfo | None:
    """Extract session name and the first video section's attributes."""
    if not is_valid_sdp(sdp):
        return None

    info = SdpInfo()
    in_video = False
    video_sections = 0
    payload_codecs = {}
    fmtp_lines = []

    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("s="):
            name = line[2:].strip()
            if name and name != "-":
                info.session_name = name
            continue
        if line.startswith("m="):
            if line.startswith("m=video"):
                video_sections += 1
            in_video = line.startswith("m=video") and video_sections == 1
            continue
        if not in_video:
            continue

        if line.startswith("b=AS:"):
            with contextlib.suppress(ValueError):
                info.bitrate_kbps = int(line[5:].strip())
        elif line.startswith("a=rtpmap:"):
            match = re.match(r"a=rtpmap:(\d+)\s+([\w.\-]+)/", line)
            if match:
                payload_codecs[match.group(1)] = match.group(2)
        elif line.startswith("a=fmtp:"):
            fmtp_lines.append(line)
        elif line.startswith("a=x-dimensions:"):
            dims = re.findall(r"\d+", line[15:])
            if len(dims) >= 2:
                info.resolution = f"{dims[0]}x{dims[1]}"
        elif line.startswith("a=framesize:"):
            match = re.search(r"(\d+)-(\d+)\s*$", line)
            if match:
                info.resolution = f"{match.group(1)}x{match.group(2)}"
        elif line.startswith("a=cliprect:") and not info.resolution:
            nums = [int(n) for n in re.findall(r"\d+", line[11:])]
            if len(nums) == 4:
                # top, left, bottom, right
                info.resolution = f"{nums[3] - nums[1]}x{nums[2] - nums[0]}"
        elif line.startswith("a=framerate:"):
            with contextlib.suppress(ValueError):
                info.fps = float(line[12:].strip())

    if payload_codecs:
        info.codec = normalize_codec(next(iter(payload_codecs.values())))
    for fmtp in fmtp_lines:
        if info.codec == "H.264":
            info.profile = info.profile or _h264_profile(fmtp)
        elif info.codec == "H.265":
            info.profile = info.profile or _h265_profile(fmtp)
    return info


# ═══════════════════════════════════════════════════════════════
# DESCRIBE transport
# ═══════════════════════════════════════════════════════════════

def parse_rtsp_response(raw: bytes) -> TransportResponse:
    text = raw.decode(errors="ignore")
    head, _, body = text.partition("\r\n\r\n")
    lines = head.split("\r\n")
    match = re.match(r"RTSP/\d\.\d\s+(\d{3})", lines[0]) if lines else None
    if not match:
        return TransportResponse(status=0, error="Malformed RTSP response")

    headers = {}
    challenges = []
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep:
            continue
        name, value = name.strip(), value.strip()
        if name.lower() == "www-authenticate":
            challenges.append(value)
        headers[name.lower()] = value
    return TransportResponse(status=int(match.group(1)), challenges=challenges,
                             body=body, headers=headers)


class RtspTransport:
    """One DESCRIBE target. RTSP carries no SOAP, so no WS-Security."""

    method = "DESCRIBE"
    supports_ws_security = False

    def __init__(self, client: "RtspClient", url: str):
        self.client = client
        self.uri = url
        self.sent_credentials = False

    async def send(self, authorization: str | None = None,
                   security: str | None = None) -> TransportResponse:
        self.sent_credentials = authorization is not None
        return await self.client.describe(self.uri, authorization)

    def is_accepted(self, response: TransportResponse) -> bool:
        """200 always counts. Other answers count only for a request that carried credentials.

        Some cameras answer 404 for an unknown path before checking auth, so
        an unauthenticated 404 says nothing about whether auth is required.
        """
        if not response.reachable or response.status in (401, 403):
            return False
        return response.status == 200 or self.sent_credentials


class RtspClient:
    def __init__(self, read_timeout_ms: int = 5000, user_agent: str = "CCTV-Discovery/1.0"):
        self.read_timeout = read_timeout_ms / 1000
        self.user_agent = user_agent
        self._cseq = itertools.count(1)

    def transport(self, url: str) -> RtspTransport:
        return RtspTransport(self, url)

    def _build_request(self, url: str, authorization: str | None) -> bytes:
        lines = [
            f"DESCRIBE {url} RTSP/1.0",
            f"CSeq: {next(self._cseq)}",
            f"User-Agent: {self.user_agent}",
            "Accept: application/sdp",
        ]
        if authorization:
            lines.append(f"Authorization: {authorization}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode()

    async def describe(self, url: str, authorization: str | None = None) -> TransportResponse:
        """Send DESCRIBE; network failures come back as status 0."""
        match = re.match(r"rtsp://([^/:]+)(?::(\d+))?", url)
        if not match:
            return TransportResponse(status=0, error=f"Invalid RTSP URL {url}")
        host, port = match.group(1), int(match.group(2) or 554)

        writer = None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.read_timeout
            )
            writer.write(self._build_request(url, authorization))
            await writer.drain()
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=self.read_timeout)
            response = parse_rtsp_response(head)
            length = int(response.headers.get("content-length", "0") or 0)
            if length > 0:
                body = await asyncio.wait_for(reader.readexactly(length), timeout=self.read_timeout)
                response.body = body.decode(errors="ignore")
            return response
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError,
                asyncio.LimitOverrunError, ValueError) as e:
            logger.debug(f"DESCRIBE {url} failed: {e!r}")
            return TransportResponse(status=0, error=f"{type(e).__name__}: {e}")
        finally:
            if writer is not None:
                writer.close()
                with contextlib.suppress(OSError, asyncio.TimeoutError):
                    await asyncio.wait_for(writer.wait_closed(), timeout=1)


class RtspEndpoint:
    """DESCRIBE requests against one device, reusing the negotiated auth session."""

    def __init__(self, client: RtspClient, credential: Credential | None,
                 session: AuthSession | None = None, negotiator: AuthNegotiator | None = None):
        self.client = client
        self.credential = credential
        self.session = session
        self.negotiator = negotiator or AuthNegotiator()
        self._auth_rejected = False

    async def describe(self, url: str) -> TransportResponse:
        transport = self.client.transport(url)
        if self.session is not None:
            response = await self.session.send(transport)
        else:
            response = await transport.send()

        if response.status in (401, 403) and self.credential and not self._auth_rejected:
            result = await self.negotiator.negotiate(transport, self.credential)
            if result.success:
                self.session = result.session
                return result.response
            self._auth_rejected = True
        return response

    async def fetch_sdp(self, url: str) -> SdpInfo | None:
        response = await self.describe(url)
        if response.status != 200:
            return None
        return parse_sdp(response.body)


# ═══════════════════════════════════════════════════════════════
# Stream discovery
# ═══════════════════════════════════════════════════════════════

class StreamPathFinder:
    """Path waterfall for single cameras plus channel iteration for recorders."""

    def __init__(self, templates: dict | None = None, custom_paths: list[dict] | None = None,
                 max_channels: int = 64, consecutive_failures: int = 3):
        self.templates = templates or load_templates()
        self.custom_paths = custom_paths or []
        self.max_channels = max_channels
        self.consecutive_failures = consecutive_failures
        self.smart_cache: dict[str, tuple[str, str | None]] = {}

    def candidate_paths(self, manufacturer: str | None,
                        mac: str | None) -> list[tuple[str, str | None]]:
        """(main, sub) candidates: cache -> manufacturer -> custom -> generic."""
        candidates = []
        prefix = get_mac_prefix(mac)
        if prefix and prefix in self.smart_cache:
            candidates.append(self.smart_cache[prefix])

        key = manufacturer_key(manufacturer)
        vendor_paths = self.templates.get("manufacturers", {}).get(key, [])
        candidates.extend((p, guess_substream_path(p)) for p in vendor_paths)

        for pair in self.custom_paths:
            if pair.get("main"):
                candidates.append((pair["main"], pair.get("sub") or guess_substream_path(pair["main"])))

        candidates.extend((p, guess_substream_path(p)) for p in self.templates.get("generic", []))

        seen = set()
        unique = []
        for main, sub in candidates:
            if main not in seen:
                seen.add(main)
                unique.append((main, sub))
        return unique

    def channel_patterns(self, manufacturer: str | None) -> list[list[str]]:
        patterns = self.templates.get("nvr_channels", {})
        key = _NVR_PATTERN_FOR.get(manufacturer_key(manufacturer))
        if key and key in patterns:
            return [patterns[key]]
        return list(patterns.values())

    @staticmethod
    def channel_paths(pattern: list[str], channel: int) -> list[str]:
        values = {
            "channel": channel,
            "channel2": f"{channel:02d}",
            "hik_main": channel * 100 + 1,
            "hik_sub": channel * 100 + 2,
            "uniview_sub": channel + 100,
        }
        return [template.format(**values) for template in pattern]

    async def discover(self, device: Device, endpoint: RtspEndpoint) -> list[RTSPStream]:
        streams = await self.find_main_and_sub(device, endpoint)
        if device.is_nvr_dvr:
            known = {s.rtsp_url for s in streams}
            for stream in await self.iterate_channels(device, endpoint):
                if stream.rtsp_url not in known:
                    streams.append(stream)
        return streams

    async def find_main_and_sub(self, device: Device, endpoint: RtspEndpoint) -> list[RTSPStream]:
        candidates = self.candidate_paths(device.manufacturer, device.mac)
        for port in sorted(device.open_rtsp_ports):
            for main_path, sub_path in candidates:
                main_url = build_rtsp_url(device.ip, port, main_path)
                sdp = await endpoint.fetch_sdp(main_url)
                if sdp is None:
                    continue

                streams = [_make_stream(main_url, sdp, "Main Stream", "Channel 1")]
                found_sub = None
                if sub_path and sub_path != main_path:
                    sub_url = build_rtsp_url(device.ip, port, sub_path)
                    sub_sdp = await endpoint.fetch_sdp(sub_url)
                    if sub_sdp is not None:
                        streams.append(_make_stream(sub_url, sub_sdp, "Sub Stream", "Channel 1"))
                        found_sub = sub_path

                prefix = get_mac_prefix(device.mac)
                if prefix:
                    self.smart_cache[prefix] = (main_path, found_sub)
                logger.info(f"{device.ip}: found {len(streams)} stream(s) at {main_path}")
                return streams
        return []

    async def iterate_channels(self, device: Device, endpoint: RtspEndpoint) -> list[RTSPStream]:
        if not device.open_rtsp_ports:
            return []
        port = min(device.open_rtsp_ports)

        for pattern in self.channel_patterns(device.manufacturer):
            streams = []
            misses = 0
            for channel in range(1, self.max_channels + 1):
                main_path, *rest = self.channel_paths(pattern, channel)
                main_url = build_rtsp_url(device.ip, port, main_path)
                sdp = await endpoint.fetch_sdp(main_url)
                if sdp is None:
                    misses += 1
                    if misses >= self.consecutive_failures:
                        break
                    continue

                misses = 0
                channel_name = f"Channel {channel}"
                streams.append(_make_stream(main_url, sdp, f"{channel_name} Main Stream", channel_name))
                for sub_path in rest:
                    sub_url = build_rtsp_url(device.ip, port, sub_path)
                    sub_sdp = await endpoint.fetch_sdp(sub_url)
                    if sub_sdp is not None:
                        streams.append(
                            _make_stream(sub_url, sub_sdp, f"{channel_name} Sub Stream", channel_name)
                        )
            if streams:
                logger.info(f"{device.ip}: {len(streams)} stream(s) across recorder channels")
                return streams
        return []


def _make_stream(url: str, sdp: SdpInfo, stream_name: str, channel_name: str) -> RTSPStream:
    return RTSPStream(
        stream_name=stream_name,
        rtsp_url=url,
        video_source_name=sdp.session_name or "",
        channel_name=channel_name,
        resolution=sdp.resolution,
        codec=sdp.codec,
        profile=sdp.profile,
        bitrate_kbps=sdp.bitrate_kbps,
        fps=sdp.fps,
        sdp_session_name=sdp.session_name,
    )
