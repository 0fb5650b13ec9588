"""Device model — a CCTV camera / NVR under investigation and its streams."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DeviceStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    AUTHENTICATING = "authenticating"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"


class AuthMethod(str, Enum):
    DIGEST = "digest"
    WS_SECURITY = "ws_security"
    BASIC = "basic"
    NONE = "none"


# Forward-only status graph; ERROR is reachable from every non-terminal state.
TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.PENDING: frozenset({DeviceStatus.SCANNING, DeviceStatus.ERROR}),
    DeviceStatus.SCANNING: frozenset({DeviceStatus.AUTHENTICATING, DeviceStatus.ERROR}),
    DeviceStatus.AUTHENTICATING: frozenset({
        DeviceStatus.ANALYZING, DeviceStatus.AUTH_FAILED, DeviceStatus.ERROR,
    }),
    DeviceStatus.ANALYZING: frozenset({DeviceStatus.COMPLETED, DeviceStatus.ERROR}),
    DeviceStatus.COMPLETED: frozenset(),
    DeviceStatus.AUTH_FAILED: frozenset(),
    DeviceStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    DeviceStatus.COMPLETED, DeviceStatus.AUTH_FAILED, DeviceStatus.ERROR,
})


class IllegalTransitionError(RuntimeError):
    """Raised when a device status change is not in the transition graph."""

    def __init__(self, current: DeviceStatus, target: DeviceStatus):
        super().__init__(f"Illegal status transition {current.name} -> {target.name}")
        self.current = current
        self.target = target


def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    return target in TRANSITIONS[current]


def mask_password(password: str) -> str:
    """Mask a password for display: first char + *** + last char."""
    if not password:
        return ""
    if len(password) <= 2:
        return "**"
    return f"{password[0]}***{password[-1]}"


@dataclass(frozen=True)
class Credential:
    username: str = ""
    password: str = field(default="", repr=False)

    @property
    def masked_password(self) -> str:
        return mask_password(self.password)

    def display(self) -> str:
        """Unmasked form for explicit user review only; never log this."""
        return f"{self.username} : {self.password}"

    def __str__(self) -> str:
        return f"{self.username} / {self.masked_password}"

    def __repr__(self) -> str:
        return f"Credential(username={self.username!r}, password={self.masked_password!r})"

    @classmethod
    def parse(cls, text: str) -> "Credential":
        """Parse 'user:password' (the password may itself contain ':')."""
        if ":" not in text:
            raise ValueError(f"Credential must look like user:password, got {text!r}")
        username, password = text.split(":", 1)
        if not username:
            raise ValueError("Credential username must not be empty")
        return cls(username=username, password=password)


@dataclass
class RTSPStream:
    stream_name: str = ""
    rtsp_url: str = ""
    video_source_name: str = ""
    channel_name: str = ""
    resolution: str | None = None   # "1920x1080"
    codec: str | None = None        # H.264, H.265, MPEG-4, MJPEG
    profile: str | None = None      # Baseline, Main, High...
    bitrate_kbps: int | None = None
    fps: float | None = None
    compliant: bool = True
    compliance_issues: str | None = None
    sdp_session_name: str | None = None

    @property
    def is_sub_stream(self) -> bool:
        return "sub" in (self.stream_name or "").lower()

    def add_issue(self, reason: str) -> None:
        """Record a compliance violation and clear the compliant flag."""
        self.compliant = False
        if self.compliance_issues:
            self.compliance_issues = f"{self.compliance_issues}, {reason}"
        else:
            self.compliance_issues = reason

    def to_dict(self) -> dict:
        return {
            "video_source_name": self.video_source_name,
            "channel_name": self.channel_name,
            "stream_name": self.stream_name,
            "rtsp_url": self.rtsp_url,
            "resolution": self.resolution,
            "codec": self.codec,
            "profile": self.profile,
            "bitrate_kbps": self.bitrate_kbps,
            "fps": self.fps,
            "compliant": self.compliant,
            "compliance_issues": self.compliance_issues,
            "sdp_session_name": self.sdp_session_name,
        }


@dataclass
class Device:
    ip: str
    mac: str | None = None
    device_name: str | None = None
    device_type: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    serial_number: str | None = None
    firmware_version: str | None = None
    time_difference_seconds: int | None = None   # device clock minus scanner clock
    credential: Credential | None = None
    auth_method: AuthMethod | None = None
    auth_failed: bool = False
    onvif_service_url: str | None = None
    open_onvif_ports: set[int] = field(default_factory=set)
    open_rtsp_ports: set[int] = field(default_factory=set)
    open_special_ports: set[int] = field(default_factory=set)
    is_nvr_dvr: bool = False
    error_message: str | None = None
    status: DeviceStatus = DeviceStatus.PENDING
    rtsp_streams: list[RTSPStream] = field(default_factory=list)
    history: list[DeviceStatus] = field(default_factory=lambda: [DeviceStatus.PENDING])
    extra_info: dict[str, Any] = field(default_factory=dict)

    @property
    def open_ports(self) -> list[int]:
        return sorted(self.open_onvif_ports | self.open_rtsp_ports | self.open_special_ports)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def compliant_streams(self) -> int:
        return sum(1 for s in self.rtsp_streams if s.compliant)

    def transition(self, target: DeviceStatus) -> None:
        if not can_transition(self.status, target):
            raise IllegalTransitionError(self.status, target)
        self.status = target
        self.history.append(target)

    def fail(self, message: str) -> None:
        """Move to ERROR from any non-terminal state."""
        self.transition(DeviceStatus.ERROR)
        self.error_message = message or "Unknown error"

    def mark_auth_failed(self, message: str) -> None:
        self.transition(DeviceStatus.AUTH_FAILED)
        self.auth_failed = True
        self.error_message = message or "Authentication failed"

    def complete(self) -> None:
        self.error_message = None
        self.transition(DeviceStatus.COMPLETED)

    def add_stream(self, stream: RTSPStream) -> None:
        self.rtsp_streams.append(stream)

    def has_stream_url(self, url: str) -> bool:
        return any(s.rtsp_url == url for s in self.rtsp_streams)

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "device_name": self.device_name,
            "device_type": self.device_type,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "serial_number": self.serial_number,
            "firmware_version": self.firmware_version,
            "time_difference_seconds": self.time_difference_seconds,
            "credential": str(self.credential) if self.credential else None,
            "auth_method": self.auth_method.value if self.auth_method else None,
            "auth_failed": self.auth_failed,
            "onvif_service_url": self.onvif_service_url,
            "open_onvif_ports": sorted(self.open_onvif_ports),
            "open_rtsp_ports": sorted(self.open_rtsp_ports),
            "open_special_ports": sorted(self.open_special_ports),
            "is_nvr_dvr": self.is_nvr_dvr,
            "error_message": self.error_message,
            "status": self.status.value,
            "rtsp_streams": [s.to_dict() for s in self.rtsp_streams],
        }
