"""Stream compliance — codec / resolution / bitrate / profile checks per RTSP stream."""

import logging
import re
from dataclasses import asdict, dataclass, field

from cctvcore.device import Device, RTSPStream

logger = logging.getLogger("cctvdiscovery.stream_analyzer")

# profile_idc (first byte of profile-level-id) -> name
H264_PROFILES = {
    66: "Baseline",
    77: "Main",
    88: "Extended",
    100: "High",
    110: "High 10",
    122: "High 4:2:2",
    244: "High 4:4:4",
    44: "CAVLC 4:4:4",
    83: "Scalable Baseline",
    86: "Scalable High",
    118: "Multiview High",
    128: "Stereo High",
    138: "Multiview Depth High",
}

H265_PROFILES = {
    1: "Main",
    2: "Main 10",
    3: "Main Still Picture",
    4: "Rext",
}

_CODEC_ALIASES = {
    "H264": "H.264", "AVC": "H.264", "AVC1": "H.264",
    "H265": "H.265", "HEVC": "H.265", "HVC1": "H.265",
    "MPEG4": "MPEG-4", "MP4V": "MPEG-4", "MP4V-ES": "MPEG-4",
    "JPEG": "MJPEG", "MJPEG": "MJPEG",
}

_RESOLUTION_RE = re.compile(r"^\s*(\d+)\s*[x×*X]\s*(\d+)\s*$")


def normalize_codec(codec: str | None) -> str | None:
    """Map encoder / SDP codec names onto H.264, H.265, MPEG-4, MJPEG."""
    if not codec:
        return None
    key = codec.strip().upper().replace(".", "").replace("_", "")
    return _CODEC_ALIASES.get(key, codec.strip())


def parse_resolution(resolution: str | None) -> tuple[int, int] | None:
    if not resolution:
        return None
    match = _RESOLUTION_RE.match(resolution)
    if not match:
        return None
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return None
    return width, height


def _default_profiles() -> list[str]:
    return sorted(set(H264_PROFILES.values()) | set(H265_PROFILES.values()))


@dataclass
class CompliancePolicy:
    accepted_codecs: list[str] = field(default_factory=lambda: ["H.264", "H.265"])
    min_bitrate_kbps: int = 32
    max_bitrate_kbps: int = 16384
    recognized_profiles: list[str] = field(default_factory=_default_profiles)
    flag_high_profile: bool = True
    sub_stream_min_height: int = 360
    sub_stream_max_height: int = 480
    sub_stream_codec: str = "H.264"
    sub_stream_max_bitrate_kbps: int = 512

    @classmethod
    def from_dict(cls, data: dict) -> "CompliancePolicy":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown compliance settings: {', '.join(sorted(unknown))}")
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)


class StreamComplianceAnalyzer:
    """Checks each stream against a CompliancePolicy, recording reasons on violation."""

    def __init__(self, policy: CompliancePolicy | None = None):
        self.policy = policy or CompliancePolicy()
        self._accepted = {normalize_codec(c) for c in self.policy.accepted_codecs}
        self._profiles = {p.lower() for p in self.policy.recognized_profiles}

    def analyze(self, stream: RTSPStream) -> RTSPStream:
        for reason in self.check(stream):
            stream.add_issue(reason)
        if not stream.compliant:
            logger.debug(f"{stream.rtsp_url}: {stream.compliance_issues}")
        return stream

    def analyze_device(self, device: Device) -> Device:
        for stream in device.rtsp_streams:
            self.analyze(stream)
        return device

    def check(self, stream: RTSPStream) -> list[str]:
        """Human-readable violations; empty when compliant."""
        p = self.policy
        issues = []
        codec = normalize_codec(stream.codec)
        dims = parse_resolution(stream.resolution)

        if codec and codec not in self._accepted:
            issues.append(f"Unsupported codec {codec}")

        if stream.resolution and dims is None:
            issues.append(f"Unparseable resolution '{stream.resolution}'")

        if stream.bitrate_kbps is not None and not (
            p.min_bitrate_kbps <= stream.bitrate_kbps <= p.max_bitrate_kbps
        ):
            issues.append(f"Bitrate {stream.bitrate_kbps}kbps outside "
                          f"{p.min_bitrate_kbps}-{p.max_bitrate_kbps}kbps")

        if stream.profile:
            if stream.profile.lower() not in self._profiles:
                issues.append(f"Unrecognized profile {stream.profile}")
            elif p.flag_high_profile and "high" in stream.profile.lower():
                issues.append("High profile (requires transcoding for browser HLS)")

        if stream.is_sub_stream:
            issues.extend(self._check_sub_stream(stream, codec, dims))
        return issues

    def _check_sub_stream(self, stream, codec, dims) -> list[str]:
        p = self.policy
        issues = []
        if dims and not (p.sub_stream_min_height <= dims[1] <= p.sub_stream_max_height):
            issues.append(f"Resolution not in {p.sub_stream_min_height}p-"
                          f"{p.sub_stream_max_height}p range")
        if codec and codec != normalize_codec(p.sub_stream_codec):
            issues.append(f"Codec is not {p.sub_stream_codec}")
        if stream.bitrate_kbps is not None and stream.bitrate_kbps >= p.sub_stream_max_bitrate_kbps:
            issues.append(f"Bitrate >= {p.sub_stream_max_bitrate_kbps}kbps")
        return issues
