"""Shared fixtures for hm10drive tests"""

import pytest

from hm10drive.events import AttributesResolved, Connected
from hm10drive.link import LinkManager
from hm10drive.throttle import Throttler
from hm10drive.transport import MockTransport
from hm10drive.types import LinkConfig


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def throttler(clock):
    return Throttler(send_interval=0.05, clock=clock)


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def link_config():
    return LinkConfig(max_speed=500, send_interval=0.05)


@pytest.fixture
def link(transport, link_config, clock):
    throttler = Throttler(send_interval=link_config.send_interval, clock=clock)
    return LinkManager(transport, link_config, throttler=throttler)


async def make_ready(link: LinkManager, transport: MockTransport, device_id: str = "A", handle: str = "h") -> None:
    """Walk a manual-mode link from IDLE to READY"""
    link.connect(device_id)
    await link.drain()
    transport.emit(Connected(device_id))
    await link.drain()
    transport.emit(AttributesResolved(device_id, handle))
    await link.drain()
