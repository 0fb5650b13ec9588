"""Shared fixtures starting the fake ONVIF / RTSP devices."""

import pytest
from aiohttp.test_utils import TestServer

from tests.fakes import FakeOnvifDevice, FakeRtspServer


@pytest.fixture
async def onvif_device():
    started = []

    async def start(**kwargs) -> FakeOnvifDevice:
        device = FakeOnvifDevice(**kwargs)
        device.server = TestServer(device.app, host="127.0.0.1")
        await device.server.start_server()
        started.append(device.server)
        return device

    yield start
    for server in started:
        await server.close()


@pytest.fixture
async def rtsp_server():
    started = []

    async def start(streams: dict[str, str], **kwargs) -> FakeRtspServer:
        server = await FakeRtspServer(streams, **kwargs).start()
        started.append(server)
        return server

    yield start
    for server in started:
        await server.close()
