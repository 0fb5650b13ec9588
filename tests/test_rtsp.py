"""Tests for SDP parsing, the DESCRIBE client and stream path discovery"""

import pytest

from cctvcore.auth import AuthNegotiator, build_basic_auth
from cctvcore.device import AuthMethod, Credential, Device
from cctvcore.rtsp import (
    DEFAULT_TEMPLATES,
    RtspClient,
    RtspEndpoint,
    StreamPathFinder,
    build_rtsp_url,
    guess_substream_path,
    is_valid_sdp,
    load_templates,
    manufacturer_key,
    parse_rtsp_response,
    parse_sdp,
)
from tests.fakes import SDP_MAIN, SDP_SUB, closed_port


class TestSdp:
    def test_main_stream_attributes(self):
        info = parse_sdp(SDP_MAIN)
        assert info.session_name == "Media Presentation"
        assert info.codec == "H.264"
        assert info.profile == "High"
        assert info.resolution == "1920x1080"
        assert info.fps == 25.0
        assert info.bitrate_kbps == 4096

    def test_main_profile(self):
        info = parse_sdp(SDP_SUB)
        assert info.profile == "Main"
        assert info.resolution == "640x360"
        assert info.bitrate_kbps == 256

    def test_requires_version_and_video(self):
        assert not is_valid_sdp("v=0\r\nm=audio 0 RTP/AVP 8\r\n")
        assert not is_valid_sdp("m=video 0 RTP/AVP 96\r\n")
        assert not is_valid_sdp("")
        assert parse_sdp("<html>not sdp</html>") is None

    def test_dash_session_name_ignored(self):
        assert parse_sdp("v=0\ns=-\nm=video 0 RTP/AVP 96\n").session_name is None

    def test_framesize_and_h265_profile(self):
        sdp = "\n".join([
            "v=0", "s=Cam", "m=video 0 RTP/AVP 98",
            "a=rtpmap:98 H265/90000", "a=fmtp:98 profile-id=1", "a=framesize:98 1280-720",
        ])
        info = parse_sdp(sdp)
        assert info.codec == "H.265"
        assert info.profile == "Main"
        assert info.resolution == "1280x720"

    def test_cliprect(self):
        sdp = "v=0\nm=video 0 RTP/AVP 26\na=rtpmap:26 JPEG/90000\na=cliprect:0,0,480,640\n"
        info = parse_sdp(sdp)
        assert info.codec == "MJPEG"
        assert info.resolution == "640x480"

    def test_audio_bitrate_not_mixed_into_video(self):
        sdp = "v=0\nm=video 0 RTP/AVP 96\na=rtpmap:96 H264/90000\nm=audio 0 RTP/AVP 8\nb=AS:64\n"
        assert parse_sdp(sdp).bitrate_kbps is None


class TestPaths:
    @pytest.mark.parametrize("main,sub", [
        ("/Streaming/Channels/101", "/Streaming/Channels/102"),
        ("/cam/realmonitor?channel=1&subtype=0", "/cam/realmonitor?channel=1&subtype=1"),
        ("/h264/ch1/main/av_stream", "/h264/ch1/sub/av_stream"),
        ("/live/ch00_0", "/live/ch00_1"),
        ("/live/0", "/live/1"),
        ("/live", "/live/1"),
        ("/axis-media/media.amp", None),
    ])
    def test_guess_substream_path(self, main, sub):
        assert guess_substream_path(main) == sub

    @pytest.mark.parametrize("name,key", [
        ("Hikvision", "HIKVISION"),
        ("HIKVISION DIGITAL TECHNOLOGY CO.,LTD.", "HIKVISION"),
        ("Dahua", "DAHUA"),
        ("Amcrest", "DAHUA"),
        ("CP Plus", "CP_PLUS"),
        ("AXIS", "AXIS"),
        ("Acme Cameras", "GENERIC"),
        (None, "GENERIC"),
    ])
    def test_manufacturer_key(self, name, key):
        assert manufacturer_key(name) == key

    def test_build_rtsp_url(self):
        assert build_rtsp_url("10.0.0.1", 554, "live") == "rtsp://10.0.0.1:554/live"

    def test_templates_file_matches_builtin(self):
        assert load_templates() == DEFAULT_TEMPLATES

    def test_waterfall_order(self):
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES,
                                  custom_paths=[{"main": "/custom/main", "sub": "/custom/sub"}])
        finder.smart_cache["C0:56:E3"] = ("/cached/main", "/cached/sub")
        candidates = finder.candidate_paths("Hikvision", "c0:56:e3:00:00:01")
        mains = [main for main, _ in candidates]
        assert mains[0] == "/cached/main"
        assert mains[1] == "/Streaming/Channels/101"
        assert mains.index("/custom/main") < mains.index("/live")
        assert candidates[mains.index("/custom/main")] == ("/custom/main", "/custom/sub")
        assert len(mains) == len(set(mains))

    def test_unknown_vendor_skips_manufacturer_paths(self):
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES)
        mains = [main for main, _ in finder.candidate_paths("Acme", None)]
        assert mains == DEFAULT_TEMPLATES["generic"]

    def test_channel_paths(self):
        patterns = DEFAULT_TEMPLATES["nvr_channels"]
        assert StreamPathFinder.channel_paths(patterns["HIKVISION"], 3) == [
            "/Streaming/Channels/301", "/Streaming/Channels/302",
        ]
        assert StreamPathFinder.channel_paths(patterns["UNIVIEW"], 2) == ["/media/video2", "/media/video102"]
        assert StreamPathFinder.channel_paths(patterns["GENERIC"], 2) == ["/ch02/0", "/ch02/1"]

    def test_channel_patterns_for_dahua_compatible(self):
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES)
        assert finder.channel_patterns("CP Plus") == [DEFAULT_TEMPLATES["nvr_channels"]["DAHUA"]]
        assert len(finder.channel_patterns("Acme")) == 4


class TestResponseParsing:
    def test_multiple_challenges(self):
        raw = (b"RTSP/1.0 401 Unauthorized\r\nCSeq: 2\r\n"
               b'WWW-Authenticate: Digest realm="IP Camera", nonce="abc"\r\n'
               b'WWW-Authenticate: Basic realm="IP Camera"\r\n\r\n')
        response = parse_rtsp_response(raw)
        assert response.status == 401
        assert len(response.challenges) == 2
        assert response.headers["cseq"] == "2"

    def test_malformed(self):
        response = parse_rtsp_response(b"HTTP/1.1 200 OK\r\n\r\n")
        assert response.status == 0
        assert not response.reachable


HIK_STREAMS = {
    "/Streaming/Channels/101": SDP_MAIN,
    "/Streaming/Channels/102": SDP_SUB,
}


class TestRtspClient:
    async def test_describe_requires_auth(self, rtsp_server):
        server = await rtsp_server(HIK_STREAMS)
        client = RtspClient(read_timeout_ms=2000)
        response = await client.describe(build_rtsp_url("127.0.0.1", server.port, "/Streaming/Channels/101"))
        assert response.status == 401
        assert response.challenges == ['Basic realm="IP Camera"']

    async def test_describe_returns_sdp_body(self, rtsp_server):
        server = await rtsp_server(HIK_STREAMS, credential=None)
        client = RtspClient(read_timeout_ms=2000)
        response = await client.describe(build_rtsp_url("127.0.0.1", server.port, "/Streaming/Channels/101"))
        assert response.status == 200
        assert parse_sdp(response.body).resolution == "1920x1080"

    async def test_connection_refused_is_status_zero(self):
        client = RtspClient(read_timeout_ms=1000)
        response = await client.describe(f"rtsp://127.0.0.1:{closed_port()}/live")
        assert response.status == 0
        assert response.error

    async def test_endpoint_negotiates_then_reuses_session(self, rtsp_server):
        server = await rtsp_server(HIK_STREAMS)
        endpoint = RtspEndpoint(RtspClient(read_timeout_ms=2000), Credential("admin", "12345"))
        base = f"rtsp://127.0.0.1:{server.port}"

        assert (await endpoint.fetch_sdp(f"{base}/Streaming/Channels/101")).codec == "H.264"
        assert endpoint.session is not None
        server.requests.clear()

        assert (await endpoint.fetch_sdp(f"{base}/Streaming/Channels/102")).resolution == "640x360"
        assert len(server.requests) == 1

    async def test_wrong_password_gives_no_sdp(self, rtsp_server):
        server = await rtsp_server(HIK_STREAMS)
        endpoint = RtspEndpoint(RtspClient(read_timeout_ms=2000), Credential("admin", "wrong"))
        assert await endpoint.fetch_sdp(f"rtsp://127.0.0.1:{server.port}/Streaming/Channels/101") is None

    async def test_unauthenticated_404_is_not_accepted(self, rtsp_server):
        server = await rtsp_server({"/stream1": SDP_MAIN}, check_path_first=True)
        transport = RtspClient(read_timeout_ms=2000).transport(
            build_rtsp_url("127.0.0.1", server.port, "/live"))

        response = await transport.send()
        assert response.status == 404
        assert not transport.is_accepted(response)

        response = await transport.send(authorization=build_basic_auth("admin", "12345"))
        assert response.status == 404
        assert transport.is_accepted(response)

    async def test_404_before_auth_negotiates_basic(self, rtsp_server):
        server = await rtsp_server({"/stream1": SDP_MAIN}, check_path_first=True)
        transport = RtspClient(read_timeout_ms=2000).transport(
            build_rtsp_url("127.0.0.1", server.port, "/live"))
        result = await AuthNegotiator().negotiate(transport, Credential("admin", "12345"))
        assert result.success
        assert result.method == AuthMethod.BASIC


class TestStreamDiscovery:
    async def test_main_and_sub_found_and_cached(self, rtsp_server):
        server = await rtsp_server(HIK_STREAMS)
        device = Device(ip="127.0.0.1", mac="C0:56:E3:00:00:01", manufacturer="Hikvision",
                        open_rtsp_ports={server.port})
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES)
        endpoint = RtspEndpoint(RtspClient(read_timeout_ms=2000), Credential("admin", "12345"))

        streams = await finder.discover(device, endpoint)
        assert [s.stream_name for s in streams] == ["Main Stream", "Sub Stream"]
        assert streams[0].profile == "High"
        assert streams[1].is_sub_stream
        assert streams[0].sdp_session_name == "Media Presentation"
        assert finder.smart_cache["C0:56:E3"] == ("/Streaming/Channels/101", "/Streaming/Channels/102")

    async def test_generic_fallback(self, rtsp_server):
        server = await rtsp_server({"/stream1": SDP_MAIN}, credential=None)
        device = Device(ip="127.0.0.1", open_rtsp_ports={server.port})
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES)
        streams = await finder.discover(device, RtspEndpoint(RtspClient(read_timeout_ms=2000), None))
        assert [s.rtsp_url for s in streams] == [f"rtsp://127.0.0.1:{server.port}/stream1"]

    async def test_nvr_channel_iteration_stops_after_misses(self, rtsp_server):
        streams = {
            "/Streaming/Channels/101": SDP_MAIN, "/Streaming/Channels/102": SDP_SUB,
            "/Streaming/Channels/201": SDP_MAIN, "/Streaming/Channels/202": SDP_SUB,
        }
        server = await rtsp_server(streams)
        device = Device(ip="127.0.0.1", manufacturer="Hikvision", is_nvr_dvr=True,
                        open_rtsp_ports={server.port})
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES, max_channels=64, consecutive_failures=3)
        endpoint = RtspEndpoint(RtspClient(read_timeout_ms=2000), Credential("admin", "12345"))

        found = await finder.iterate_channels(device, endpoint)
        assert [s.stream_name for s in found] == [
            "Channel 1 Main Stream", "Channel 1 Sub Stream",
            "Channel 2 Main Stream", "Channel 2 Sub Stream",
        ]
        mains = [p for p in server.paths_requested() if p.endswith("01")]
        assert mains[-1] == "/Streaming/Channels/501"
        assert "/Streaming/Channels/601" not in server.paths_requested()

    async def test_nvr_discover_does_not_duplicate_channel_one(self, rtsp_server):
        server = await rtsp_server({
            "/Streaming/Channels/101": SDP_MAIN, "/Streaming/Channels/102": SDP_SUB,
        })
        device = Device(ip="127.0.0.1", manufacturer="Hikvision", is_nvr_dvr=True,
                        open_rtsp_ports={server.port})
        finder = StreamPathFinder(templates=DEFAULT_TEMPLATES)
        endpoint = RtspEndpoint(RtspClient(read_timeout_ms=2000), Credential("admin", "12345"))
        streams = await finder.discover(device, endpoint)
        urls = [s.rtsp_url for s in streams]
        assert len(urls) == len(set(urls)) == 2
