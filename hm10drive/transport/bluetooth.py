"""
Bluetooth Transport - BLE radio stack via Bleak.

Cross-platform (Windows, macOS, Linux/BlueZ). Scanning uses a detection
callback so discovered devices stream in as events; connect runs as a
background task and reports its outcome as an event.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from hm10drive.events import (
    AttributesResolved,
    Connected,
    ConnectFailed,
    DeviceDiscovered,
    Disconnected,
    DiscoveryFailed,
    ValueNotified,
)
from hm10drive.exceptions import TransportError, TransportUnavailable, TransportWriteError
from hm10drive.interfaces import EventSink
from hm10drive.types import DeviceDescriptor


logger = logging.getLogger(__name__)


class BleakTransport:
    """
    Transport adapter for a single BLE peripheral.

    Device ids are the platform addresses Bleak reports (MAC on
    Windows/Linux, UUID on macOS).
    """

    def __init__(self, connect_timeout: float = 10.0, debug: bool = False) -> None:
        """
        Initialize Bluetooth transport.

        Args:
            connect_timeout: Timeout handed to BleakClient for connecting
            debug: Log GATT services after connecting
        """
        self._connect_timeout = connect_timeout
        self._debug = debug
        self._sink: Optional[EventSink] = None

        self._scanner: Optional[BleakScanner] = None
        self._seen: Dict[str, BLEDevice] = {}

        self._client: Optional[BleakClient] = None
        self._device_id: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    def set_event_sink(self, sink: EventSink) -> None:
        self._sink = sink

    def _emit(self, event: Any) -> None:
        if self._sink is not None:
            self._sink(event)

    # Scanning

    async def start_scan(self, service_uuid: Optional[str]) -> None:
        """Start a background scan, reporting each advertisement as an event"""
        self._seen.clear()
        service_uuids = [service_uuid] if service_uuid else None

        try:
            self._scanner = BleakScanner(
                detection_callback=self._on_detection,
                service_uuids=service_uuids,
            )
            await self._scanner.start()
        except (BleakError, OSError) as e:
            self._scanner = None
            raise TransportUnavailable(str(e)) from e

        logger.info(f"Scanning for {service_uuid or 'all devices'}")

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return

        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            raise TransportError(f"Failed to stop scan: {e}") from e

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        self._seen[device.address] = device
        name = advertisement.local_name or device.name
        self._emit(DeviceDiscovered(DeviceDescriptor(id=device.address, display_name=name)))

    # Connection

    async def connect(self, device_id: str) -> None:
        """Start connecting in the background"""
        if self._client is not None:
            raise TransportError(f"Already connected to {self._device_id}")

        target = self._seen.get(device_id, device_id)
        self._device_id = device_id
        self._client = BleakClient(
            target,
            disconnected_callback=self._on_disconnected,
            timeout=self._connect_timeout,
        )

        task = asyncio.create_task(self._connect_task(self._client, device_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _connect_task(self, client: BleakClient, device_id: str) -> None:
        try:
            await client.connect()
        except asyncio.CancelledError:
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Connection to {device_id} failed: {e}")
            self._forget(client)
            self._emit(ConnectFailed(device_id, f"Failed to connect to device: {e}"))
            return

        if not client.is_connected:
            self._forget(client)
            self._emit(ConnectFailed(device_id))
            return

        logger.info(f"BLE connection established with {device_id}")
        self._emit(Connected(device_id))

    def _on_disconnected(self, client: BleakClient) -> None:
        if self._client is not client:
            logger.debug("Ignoring disconnect callback from a previous client")
            return

        device_id = self._device_id
        self._forget(client)
        self._emit(Disconnected(device_id))

    def _forget(self, client: BleakClient) -> None:
        if self._client is client:
            self._client = None
            self._device_id = None

    async def disconnect(self, device_id: str) -> None:
        """Drop the link, or cancel a connect that is still in flight"""
        client = self._client
        if client is None or self._device_id != device_id:
            self._emit(Disconnected(device_id))
            return

        for task in list(self._tasks):
            task.cancel()

        if not client.is_connected:
            self._forget(client)
            self._emit(Disconnected(device_id))
            return

        try:
            # disconnected_callback reports the Disconnected event
            await client.disconnect()
        except (BleakError, OSError) as e:
            self._forget(client)
            raise TransportError(f"Disconnect error: {e}") from e

    # GATT

    async def discover(self, device_id: str, service_uuid: str, characteristic_uuid: str) -> None:
        """Resolve the write characteristic from the services Bleak already discovered"""
        client = self._client
        if client is None or self._device_id != device_id:
            self._emit(DiscoveryFailed(device_id, "Not connected"))
            return

        services = client.services
        if self._debug:
            for service in services:
                logger.debug(f"  Service: {service.uuid}")
                for char in service.characteristics:
                    logger.debug(f"    Char: {char.uuid} - {char.properties}")

        service = services.get_service(service_uuid)
        if service is None:
            self._emit(DiscoveryFailed(device_id, f"Service {service_uuid} not found"))
            return

        characteristic = service.get_characteristic(characteristic_uuid)
        if characteristic is None:
            self._emit(DiscoveryFailed(device_id, f"Characteristic {characteristic_uuid} not found"))
            return

        self._emit(AttributesResolved(device_id, characteristic))

    async def start_notify(self, handle: BleakGATTCharacteristic) -> None:
        client = self._client
        if client is None:
            raise TransportError("Not connected")

        device_id = self._device_id

        def on_notify(_: BleakGATTCharacteristic, data: bytearray) -> None:
            self._emit(ValueNotified(device_id, bytes(data)))

        try:
            await client.start_notify(handle, on_notify)
        except (BleakError, OSError) as e:
            raise TransportError(f"Could not enable notifications: {e}") from e

    async def write(self, handle: BleakGATTCharacteristic, data: bytes, response: bool = False) -> None:
        client = self._client
        if client is None or not client.is_connected:
            raise TransportWriteError("Not connected")

        try:
            await client.write_gatt_char(handle, data, response=response)
        except (BleakError, OSError) as e:
            raise TransportWriteError(str(e)) from e

        logger.debug(f"TX: {len(data)} bytes")
