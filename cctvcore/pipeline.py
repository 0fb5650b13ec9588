"""Discovery pipeline — per-device scan / authenticate / analyze state machine."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable
from urllib.parse import urlsplit

from cctvcore.auth import AuthNegotiator, AuthSession, NegotiationResult
from cctvcore.config import ScanConfig
from cctvcore.device import AuthMethod, Credential, Device, DeviceStatus, RTSPStream
from cctvcore.mac_lookup import ArpResolver, MacResolver, lookup_vendor, normalize_mac
from cctvcore.net_utils import count_target, is_port_open, iter_target, parse_target
from cctvcore.onvif import OnvifClient, device_service_url, ws_discover
from cctvcore.rtsp import RtspClient, RtspEndpoint, StreamPathFinder, build_rtsp_url
from cctvcore.stream_analyzer import StreamComplianceAnalyzer, normalize_codec

logger = logging.getLogger("cctvdiscovery.pipeline")

PortProbe = Callable[[str, int, int], Awaitable[bool]]
ProgressCallback = Callable[[int, int], None]


@dataclass
class _DeviceAuth:
    credential: Credential | None
    session: AuthSession | None = None
    onvif: OnvifClient | None = None
    rtsp_session: AuthSession | None = None


def _auth_demanded(result: NegotiationResult) -> bool:
    return any(o.response is not None and o.response.status in (401, 403) for o in result.outcomes)


def expand_targets(targets: list[str]) -> list[str]:
    """Expand and de-duplicate targets, preserving order. Raises InvalidTargetError."""
    addresses = []
    for target in targets:
        addresses.extend(parse_target(target))
    return list(dict.fromkeys(addresses))


class DiscoveryPipeline:
    """Runs every candidate address through PENDING -> ... -> terminal status."""

    def __init__(self, config: ScanConfig | None = None,
                 credentials: list[Credential] | None = None,
                 probe: PortProbe | None = None,
                 resolver: MacResolver | None = None,
                 vendor_lookup: Callable[[str], Awaitable[str]] | None = None,
                 onvif_factory: Callable[[str], OnvifClient] | None = None,
                 rtsp_client: RtspClient | None = None,
                 analyzer: StreamComplianceAnalyzer | None = None,
                 negotiator: AuthNegotiator | None = None,
                 path_finder: StreamPathFinder | None = None,
                 discover: Callable[[int], Awaitable[dict]] | None = None):
        self.config = config or ScanConfig()
        cfg = self.config
        self.credentials: list[Credential | None] = list(dict.fromkeys(credentials or [])) or [None]
        self.probe = probe or is_port_open
        if resolver is None and cfg.mac_resolution_enabled:
            resolver = ArpResolver(timeout_ms=cfg.mac_resolution_timeout_ms)
        self.resolver = resolver
        self.vendor_lookup = vendor_lookup or lookup_vendor
        self.onvif_factory = onvif_factory or (lambda url: OnvifClient(url, cfg.http_timeout_ms))
        self.rtsp_client = rtsp_client or RtspClient(cfg.read_timeout_ms, cfg.user_agent)
        self.analyzer = analyzer or StreamComplianceAnalyzer(cfg.compliance)
        self.negotiator = negotiator or AuthNegotiator()
        self.path_finder = path_finder or StreamPathFinder(
            custom_paths=cfg.custom_rtsp_paths,
            max_channels=cfg.nvr_max_channels,
            consecutive_failures=cfg.nvr_consecutive_failures,
        )
        self.discover = discover or ws_discover
        self.discovered: dict[str, list[str]] = {}
        self.devices: list[Device] = []
        self._tasks: list[asyncio.Task] = []

    # ─── Session ───

    async def run(self, addresses: Iterable[str],
                  progress_callback: ProgressCallback | None = None,
                  total: int | None = None) -> list[Device]:
        """Process addresses with a fixed pool of workers, one terminal Device per started address.

        Without ``total`` the addresses are de-duplicated into a list first.
        With it they are consumed lazily, so a Device exists only once a
        worker picks its address up. Addresses never started because the scan
        was cancelled are not reported.
        """
        if total is None:
            addresses = list(dict.fromkeys(addresses))
            total = len(addresses)
        remaining = iter(addresses)
        self.devices = []
        self.discovered = {}
        done = 0
        logger.info(f"Scanning {total} address(es), concurrency {self.config.max_concurrency}")

        found = {}
        if self.config.ws_discovery_enabled and total:
            found = await self.discover(self.config.ws_discovery_timeout_ms)

        def next_device() -> Device | None:
            ip = next(remaining, None)
            if ip is None:
                return None
            if ip in found:
                self.discovered[ip] = found[ip]
            device = Device(ip=ip)
            self.devices.append(device)
            return device

        async def worker():
            nonlocal done
            while True:
                device = next_device()
                if device is None:
                    return
                await self.process_device(device)
                done += 1
                if progress_callback:
                    progress_callback(done, total)

        workers = max(1, min(self.config.max_concurrency, total))
        self._tasks = [asyncio.create_task(worker()) for _ in range(workers)]
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            pending = [t for t in self._tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for device in self.devices:
                if not device.is_terminal:
                    device.fail("Scan cancelled")
            self._tasks = []

        completed = sum(1 for d in self.devices if d.status == DeviceStatus.COMPLETED)
        logger.info(f"Scan finished: {completed}/{len(self.devices)} device(s) completed")
        return self.devices

    async def scan(self, targets: list[str],
                   progress_callback: ProgressCallback | None = None) -> list[Device]:
        """Expand targets, streaming a single target lazily. Raises InvalidTargetError before any I/O."""
        if len(targets) == 1:
            total = count_target(targets[0])
            return await self.run(iter_target(targets[0]), progress_callback, total=total)
        return await self.run(expand_targets(targets), progress_callback)

    def cancel(self) -> None:
        for task in self._tasks:
            task.cancel()

    # ─── Per device ───

    async def process_device(self, device: Device) -> Device:
        try:
            async with contextlib.AsyncExitStack() as stack:
                await self._scan(device)
                if device.is_terminal:
                    return device
                auth = await self._authenticate(device, stack)
                if auth is None:
                    return device
                await self._analyze(device, auth)
        except Exception as e:
            logger.error(f"{device.ip}: {type(e).__name__}: {e}")
            if not device.is_terminal:
                device.fail(f"{type(e).__name__}: {e}")
        return device

    async def _scan(self, device: Device) -> None:
        cfg = self.config
        device.transition(DeviceStatus.SCANNING)

        ports = cfg.all_ports
        results = await asyncio.gather(*[self.probe(device.ip, p, cfg.port_timeout_ms) for p in ports])
        open_ports = {port for port, is_open in zip(ports, results) if is_open}

        device.open_onvif_ports = open_ports & set(cfg.onvif_ports)
        device.open_rtsp_ports = open_ports & set(cfg.rtsp_ports)
        device.open_special_ports = open_ports & set(cfg.special_ports)
        device.is_nvr_dvr = bool(open_ports & set(cfg.nvr_indicator_ports))

        if not open_ports:
            device.fail("No camera ports open (ONVIF, RTSP and vendor ports all closed)")
            return
        if not device.open_onvif_ports and not device.open_rtsp_ports:
            ports_text = ", ".join(str(p) for p in sorted(device.open_special_ports))
            device.fail(f"No ONVIF or RTSP port open (only vendor ports {ports_text})")
            return

        device.device_type = "nvr" if device.is_nvr_dvr else "camera"
        if self.discovered.get(device.ip):
            device.onvif_service_url = self.discovered[device.ip][0]
        logger.debug(f"{device.ip}: open ports {device.open_ports}")

        if self.resolver is not None:
            mac = await self.resolver.resolve(device.ip)
            if mac:
                device.mac = normalize_mac(mac)
                vendor = await self.vendor_lookup(device.mac)
                if vendor:
                    device.manufacturer = vendor

    def _onvif_urls(self, device: Device) -> list[str]:
        urls = list(self.discovered.get(device.ip, []))
        urls.extend(device_service_url(device.ip, p) for p in sorted(device.open_onvif_ports))
        return list(dict.fromkeys(urls))

    async def _negotiate(self, transport) -> NegotiationResult:
        """Full scheme fallback for each credential in turn."""
        result = None
        for credential in self.credentials:
            result = await self.negotiator.negotiate(transport, credential)
            if result.success or not result.reachable:
                return result
        return result

    async def _negotiate_rtsp(self, device: Device, port: int, paths: list[str]) -> NegotiationResult:
        """Walk candidate paths until one proves a scheme with a 200 or refuses the credentials.

        A credentialed non-200 answer (typically 404) is kept as a fallback. A
        port that never asks for auth on any path is treated as open.
        """
        fallback = None
        result = None
        for path in paths:
            transport = self.rtsp_client.transport(build_rtsp_url(device.ip, port, path))
            result = await self._negotiate(transport)
            if not result.reachable:
                return fallback or result
            if result.success:
                if result.response is not None and result.response.status == 200:
                    return result
                fallback = fallback or result
            elif _auth_demanded(result):
                return result
            else:
                logger.debug(f"{device.ip}: {path} inconclusive ({result.reason})")

        if fallback is not None:
            return fallback
        logger.debug(f"{device.ip}:{port} never asked for authentication")
        return NegotiationResult(success=True, method=AuthMethod.NONE,
                                 session=AuthSession(method=AuthMethod.NONE),
                                 response=result.response, outcomes=result.outcomes)

    def _accept(self, device: Device, result: NegotiationResult) -> None:
        device.auth_method = result.method
        device.credential = result.credential if result.method != AuthMethod.NONE else None
        logger.info(f"{device.ip}: authenticated via {result.method.name}"
                    f"{f' as {result.credential}' if device.credential else ''}")

    async def _authenticate(self, device: Device, stack: contextlib.AsyncExitStack) -> _DeviceAuth | None:
        device.transition(DeviceStatus.AUTHENTICATING)
        last_reason = None
        reachable = False

        for url in self._onvif_urls(device):
            client = await stack.enter_async_context(self.onvif_factory(url))
            result = await self._negotiate(client.transport())
            reachable = reachable or result.reachable
            if result.success:
                device.onvif_service_url = url
                self._accept(device, result)
                return _DeviceAuth(credential=result.credential, session=result.session, onvif=client)
            last_reason = result.reason

        candidates = self.path_finder.candidate_paths(device.manufacturer, device.mac)
        paths = [main for main, _ in candidates] or ["/"]
        for port in sorted(device.open_rtsp_ports):
            result = await self._negotiate_rtsp(device, port, paths)
            reachable = reachable or result.reachable
            if result.success:
                self._accept(device, result)
                return _DeviceAuth(credential=result.credential, rtsp_session=result.session)
            last_reason = result.reason

        if not reachable:
            device.fail(f"Device unreachable: {last_reason or 'no service answered'}")
        else:
            logger.warning(f"{device.ip}: all authentication schemes rejected")
            device.mark_auth_failed(last_reason or "All authentication schemes rejected")
        return None

    async def _analyze(self, device: Device, auth: _DeviceAuth) -> None:
        device.transition(DeviceStatus.ANALYZING)
        endpoint = RtspEndpoint(self.rtsp_client, auth.credential, auth.rtsp_session, self.negotiator)

        if auth.onvif is not None:
            await self._analyze_onvif(device, auth, endpoint)

        if not device.rtsp_streams and device.open_rtsp_ports:
            for stream in await self.path_finder.discover(device, endpoint):
                device.add_stream(stream)

        # The stream endpoint may have renegotiated after a later 401
        session = endpoint.session
        if session is not None and session is not auth.rtsp_session:
            if auth.onvif is not None:
                device.extra_info["rtsp_auth_method"] = session.method.value
            elif session.method != device.auth_method:
                logger.info(f"{device.ip}: RTSP renegotiated to {session.method.name}")
                device.auth_method = session.method
                device.credential = session.credential

        self.analyzer.analyze_device(device)
        device.complete()
        logger.info(f"{device.ip}: {len(device.rtsp_streams)} stream(s), "
                    f"{device.compliant_streams} compliant")

    async def _analyze_onvif(self, device: Device, auth: _DeviceAuth, endpoint: RtspEndpoint) -> None:
        client, session = auth.onvif, auth.session

        info = await client.get_device_information(session)
        device.manufacturer = info.get("manufacturer") or device.manufacturer
        device.model = info.get("model") or device.model
        device.serial_number = info.get("serial_number") or device.serial_number
        device.firmware_version = info.get("firmware_version") or device.firmware_version
        if info.get("hardware_id"):
            device.extra_info["hardware_id"] = info["hardware_id"]
        name = " ".join(filter(None, (device.manufacturer, device.model)))
        device.device_name = name or device.device_name

        device.time_difference_seconds = await client.get_clock_offset(session)

        await client.resolve_media_url(session)
        sources = await client.get_video_sources(session)
        if len(sources) > 1:
            device.is_nvr_dvr = True
            device.device_type = "nvr"

        for profile in await client.get_profiles(session):
            uri = await client.get_stream_uri(session, profile.token)
            if not uri or device.has_stream_url(uri):
                continue
            source = profile.video_source_token
            channel = sources.index(source) + 1 if source in sources else 1
            stream = RTSPStream(
                stream_name=profile.name or profile.token,
                rtsp_url=uri,
                video_source_name=source or "",
                channel_name=f"Channel {channel}",
                resolution=profile.resolution,
                codec=normalize_codec(profile.encoding),
                profile=profile.h264_profile,
                bitrate_kbps=profile.bitrate_kbps,
                fps=profile.fps,
            )
            await self._enrich_from_sdp(device, stream, endpoint)
            device.add_stream(stream)

    async def _enrich_from_sdp(self, device: Device, stream: RTSPStream, endpoint: RtspEndpoint) -> None:
        """Fill gaps from the stream's own SDP when its RTSP port is reachable."""
        parts = urlsplit(stream.rtsp_url)
        try:
            port = parts.port or 554
        except ValueError:
            return
        if parts.scheme != "rtsp" or port not in device.open_rtsp_ports:
            return
        sdp = await endpoint.fetch_sdp(stream.rtsp_url)
        if sdp is None:
            return
        stream.sdp_session_name = sdp.session_name
        stream.resolution = stream.resolution or sdp.resolution
        stream.codec = stream.codec or sdp.codec
        stream.profile = stream.profile or sdp.profile
        stream.bitrate_kbps = stream.bitrate_kbps if stream.bitrate_kbps is not None else sdp.bitrate_kbps
        stream.fps = stream.fps if stream.fps is not None else sdp.fps
