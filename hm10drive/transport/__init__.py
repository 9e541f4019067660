"""
Mock Transport - For testing without hardware.

Simulates the radio stack without actual Bluetooth. Every call is recorded;
completions are either emitted automatically (auto_complete=True) or
injected by the caller with emit().
"""

import asyncio
import logging
from typing import Any, List, Optional, Tuple

from hm10drive.events import (
    AttributesResolved,
    Connected,
    ConnectFailed,
    DeviceDiscovered,
    Disconnected,
    DiscoveryFailed,
)
from hm10drive.exceptions import TransportUnavailable, TransportWriteError
from hm10drive.interfaces import EventSink
from hm10drive.types import DeviceDescriptor


logger = logging.getLogger(__name__)


class MockTransport:
    """
    Mock transport for testing.

    Logs writes instead of sending them, reports scripted devices.
    """

    def __init__(
        self,
        devices: Optional[List[DeviceDescriptor]] = None,
        auto_complete: bool = False,
        connection_delay: float = 0.0,
        has_service: bool = True,
        fail_writes: bool = False,
        available: bool = True,
    ) -> None:
        """
        Initialize mock transport.

        Args:
            devices: Devices reported when a scan starts (auto_complete only)
            auto_complete: Emit completion events for connect/discover/disconnect
            connection_delay: Delay before a simulated connect completes
            has_service: If False, attribute discovery fails
            fail_writes: If True, every write raises TransportWriteError
            available: If False, start_scan raises TransportUnavailable
        """
        self._sink: Optional[EventSink] = None
        self._devices = list(devices or [])
        self._auto = auto_complete
        self._connection_delay = connection_delay
        self._has_service = has_service
        self.fail_writes = fail_writes
        self.available = available

        self.scanning = False
        self.connected_id: Optional[str] = None
        self.calls: List[Tuple[Any, ...]] = []
        self.writes: List[bytes] = []

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    def emit(self, event: Any) -> None:
        """Deliver an event as if the radio stack had produced it"""
        if self._sink is None:
            logger.warning(f"[MOCK] No event sink, dropping {event!r}")
            return
        self._sink(event)

    async def start_scan(self, service_uuid: Optional[str]) -> None:
        self.calls.append(("start_scan", service_uuid))
        if not self.available:
            raise TransportUnavailable("Bluetooth is powered off")

        logger.info(f"[MOCK] Scanning for {service_uuid or 'any service'}")
        self.scanning = True
        if self._auto:
            for device in self._devices:
                self.emit(DeviceDiscovered(device))

    async def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))
        self.scanning = False

    async def connect(self, device_id: str) -> None:
        """Simulate connection"""
        self.calls.append(("connect", device_id))
        logger.info(f"[MOCK] Connecting to {device_id}")
        if not self._auto:
            return

        known = not self._devices or any(d.id == device_id for d in self._devices)
        if known:
            self.connected_id = device_id
            event: Any = Connected(device_id)
        else:
            event = ConnectFailed(device_id, "Failed to connect to device")

        if self._connection_delay > 0:
            asyncio.get_running_loop().call_later(self._connection_delay, self.emit, event)
        else:
            self.emit(event)

    async def discover(self, device_id: str, service_uuid: str, characteristic_uuid: str) -> None:
        self.calls.append(("discover", device_id, service_uuid, characteristic_uuid))
        if not self._auto:
            return

        if self._has_service:
            self.emit(AttributesResolved(device_id, characteristic_uuid))
        else:
            self.emit(DiscoveryFailed(device_id, f"Service {service_uuid} not found"))

    async def start_notify(self, handle: Any) -> None:
        self.calls.append(("start_notify", handle))

    async def write(self, handle: Any, data: bytes, response: bool = False) -> None:
        """Record the payload instead of sending it"""
        self.calls.append(("write", handle, data, response))
        if self.fail_writes:
            raise TransportWriteError("Simulated write failure")

        self.writes.append(data)
        logger.debug(f"[MOCK] Write #{len(self.writes)}: {data!r}")

    async def disconnect(self, device_id: str) -> None:
        """Simulate disconnection"""
        self.calls.append(("disconnect", device_id))
        logger.info(f"[MOCK] Disconnecting from {device_id}")
        self.connected_id = None
        if self._auto:
            self.emit(Disconnected(device_id))

    def call_names(self) -> List[str]:
        """Names of recorded calls, in order (for testing)"""
        return [call[0] for call in self.calls]

    @property
    def last_write(self) -> Optional[bytes]:
        """Get last payload written (for testing)"""
        return self.writes[-1] if self.writes else None

    @property
    def write_count(self) -> int:
        """Get total writes (for testing)"""
        return len(self.writes)
