"""Tests for the device model, status graph and credential masking"""

import pytest

from cctvcore.device import (
    AuthMethod,
    Credential,
    Device,
    DeviceStatus,
    IllegalTransitionError,
    RTSPStream,
    can_transition,
    mask_password,
)


class TestMaskPassword:
    @pytest.mark.parametrize("password,masked", [
        ("", ""),
        ("a", "**"),
        ("ab", "**"),
        ("abc", "a***c"),
        ("secret", "s***t"),
    ])
    def test_masking(self, password, masked):
        assert mask_password(password) == masked


class TestCredential:
    def test_str_and_repr_never_show_password(self):
        cred = Credential("admin", "hunter22")
        assert str(cred) == "admin / h***2"
        assert "hunter22" not in repr(cred)
        assert "hunter22" not in f"{cred}"

    def test_display_is_unmasked(self):
        assert Credential("admin", "12345").display() == "admin : 12345"

    def test_parse_keeps_colons_in_password(self):
        cred = Credential.parse("admin:pa:ss")
        assert cred.username == "admin"
        assert cred.password == "pa:ss"

    def test_parse_allows_empty_password(self):
        assert Credential.parse("admin:") == Credential("admin", "")

    @pytest.mark.parametrize("text", ["admin", ":12345"])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(ValueError):
            Credential.parse(text)

    def test_credentials_are_hashable_for_dedup(self):
        creds = [Credential("admin", "1"), Credential("admin", "1"), Credential("admin", "2")]
        assert list(dict.fromkeys(creds)) == [Credential("admin", "1"), Credential("admin", "2")]


class TestStatusGraph:
    def test_happy_path(self):
        device = Device(ip="10.0.0.1")
        for status in (DeviceStatus.SCANNING, DeviceStatus.AUTHENTICATING,
                       DeviceStatus.ANALYZING, DeviceStatus.COMPLETED):
            device.transition(status)
        assert device.history == [
            DeviceStatus.PENDING, DeviceStatus.SCANNING, DeviceStatus.AUTHENTICATING,
            DeviceStatus.ANALYZING, DeviceStatus.COMPLETED,
        ]
        assert device.is_terminal

    def test_cannot_skip_to_completed(self):
        device = Device(ip="10.0.0.1")
        with pytest.raises(IllegalTransitionError):
            device.transition(DeviceStatus.COMPLETED)
        assert device.status == DeviceStatus.PENDING

    def test_auth_failed_only_from_authenticating(self):
        assert can_transition(DeviceStatus.AUTHENTICATING, DeviceStatus.AUTH_FAILED)
        assert not can_transition(DeviceStatus.SCANNING, DeviceStatus.AUTH_FAILED)
        assert not can_transition(DeviceStatus.ANALYZING, DeviceStatus.AUTH_FAILED)

    @pytest.mark.parametrize("status", [
        DeviceStatus.PENDING, DeviceStatus.SCANNING,
        DeviceStatus.AUTHENTICATING, DeviceStatus.ANALYZING,
    ])
    def test_error_reachable_from_every_active_state(self, status):
        assert can_transition(status, DeviceStatus.ERROR)

    @pytest.mark.parametrize("terminal", [
        DeviceStatus.COMPLETED, DeviceStatus.AUTH_FAILED, DeviceStatus.ERROR,
    ])
    def test_terminal_states_are_final(self, terminal):
        assert not any(can_transition(terminal, target) for target in DeviceStatus)

    def test_fail_records_message(self):
        device = Device(ip="10.0.0.1")
        device.transition(DeviceStatus.SCANNING)
        device.fail("No camera ports open")
        assert device.status == DeviceStatus.ERROR
        assert device.error_message == "No camera ports open"

    def test_fail_twice_raises(self):
        device = Device(ip="10.0.0.1")
        device.fail("boom")
        with pytest.raises(IllegalTransitionError):
            device.fail("again")

    def test_mark_auth_failed(self):
        device = Device(ip="10.0.0.1")
        device.transition(DeviceStatus.SCANNING)
        device.transition(DeviceStatus.AUTHENTICATING)
        device.mark_auth_failed("DIGEST: Rejected with status 401")
        assert device.status == DeviceStatus.AUTH_FAILED
        assert device.auth_failed
        assert "401" in device.error_message


class TestRTSPStream:
    def test_sub_stream_detection(self):
        assert RTSPStream(stream_name="subStream").is_sub_stream
        assert RTSPStream(stream_name="Channel 2 Sub Stream").is_sub_stream
        assert not RTSPStream(stream_name="mainStream").is_sub_stream

    def test_add_issue_joins_reasons(self):
        stream = RTSPStream(stream_name="main")
        assert stream.compliant
        stream.add_issue("Codec is not H.264")
        stream.add_issue("Bitrate >= 512kbps")
        assert not stream.compliant
        assert stream.compliance_issues == "Codec is not H.264, Bitrate >= 512kbps"


class TestDeviceSerialization:
    def test_to_dict_masks_credential(self):
        device = Device(ip="10.0.0.1", credential=Credential("admin", "12345"),
                        auth_method=AuthMethod.DIGEST, open_rtsp_ports={8554, 554})
        device.add_stream(RTSPStream(stream_name="main", rtsp_url="rtsp://10.0.0.1:554/live"))
        data = device.to_dict()
        assert data["credential"] == "admin / 1***5"
        assert "12345" not in str(data)
        assert data["auth_method"] == "digest"
        assert data["status"] == "pending"
        assert data["open_rtsp_ports"] == [554, 8554]
        assert data["rtsp_streams"][0]["rtsp_url"] == "rtsp://10.0.0.1:554/live"

    def test_has_stream_url(self):
        device = Device(ip="10.0.0.1")
        device.add_stream(RTSPStream(rtsp_url="rtsp://10.0.0.1/a"))
        assert device.has_stream_url("rtsp://10.0.0.1/a")
        assert not device.has_stream_url("rtsp://10.0.0.1/b")
