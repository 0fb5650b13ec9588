"""Scan configuration — defaults, overridable from data/settings.json."""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from cctvcore.stream_analyzer import CompliancePolicy

logger = logging.getLogger("cctvdiscovery.config")

DATA_DIR = Path(__file__).parent.parent / "data"
CONFIG_PATH = DATA_DIR / "settings.json"
SETTINGS_ENV = "CCTV_DISCOVERY_SETTINGS"


def default_concurrency() -> int:
    return min((os.cpu_count() or 1) * 8, 64)


@dataclass
class ScanConfig:
    onvif_ports: list[int] = field(default_factory=lambda: [80, 8080, 443, 8443])
    rtsp_ports: list[int] = field(default_factory=lambda: [554, 8554, 8888])
    special_ports: list[int] = field(default_factory=lambda: [8000, 37777, 34567])
    nvr_indicator_ports: list[int] = field(default_factory=lambda: [8000, 37777])
    port_timeout_ms: int = 2000
    read_timeout_ms: int = 5000
    http_timeout_ms: int = 10000
    max_concurrency: int = field(default_factory=default_concurrency)
    mac_resolution_enabled: bool = True
    mac_resolution_timeout_ms: int = 2000
    ws_discovery_enabled: bool = False
    ws_discovery_timeout_ms: int = 5000
    nvr_max_channels: int = 64
    nvr_consecutive_failures: int = 3
    custom_rtsp_paths: list[dict] = field(default_factory=list)   # [{"main": ..., "sub": ...}]
    user_agent: str = "CCTV-Discovery/1.0"
    compliance: CompliancePolicy = field(default_factory=CompliancePolicy)

    @property
    def all_ports(self) -> list[int]:
        return sorted(set(self.onvif_ports) | set(self.rtsp_ports) | set(self.special_ports))

    @classmethod
    def from_dict(cls, data: dict) -> "ScanConfig":
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in names:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            if key == "compliance":
                value = CompliancePolicy.from_dict(value or {})
            kwargs[key] = value
        config = cls(**kwargs)
        if config.max_concurrency < 1:
            logger.warning(f"max_concurrency={config.max_concurrency} is invalid, using 1")
            config.max_concurrency = 1
        return config

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["compliance"] = self.compliance.to_dict()
        return data


def _settings_path(path: str | Path | None) -> Path:
    if path:
        return Path(path)
    env = os.environ.get(SETTINGS_ENV)
    if env:
        return Path(env)
    return CONFIG_PATH


def load_config(path: str | Path | None = None) -> ScanConfig:
    """Load settings; missing or malformed files fall back to defaults."""
    settings_path = _settings_path(path)
    if not settings_path.exists():
        logger.debug(f"No settings file at {settings_path}, using defaults")
        return ScanConfig()
    try:
        with open(settings_path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"Cannot read settings {settings_path}: {e}")
        return ScanConfig()
    if not isinstance(data, dict):
        logger.error(f"Settings {settings_path} must be a JSON object")
        return ScanConfig()
    return ScanConfig.from_dict(data)


def save_config(config: ScanConfig, path: str | Path | None = None) -> Path:
    settings_path = _settings_path(path)
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    return settings_path
