"""
Core interfaces (protocols) for pluggable components.

These define the contracts that all implementations must follow.
Python Protocols are like interfaces in Java/C# - they define
what methods a class must have without forcing inheritance.
"""

from typing import Any, Callable, Optional, Protocol

from .types import ControlSample


EventSink = Callable[[Any], None]


class InputProvider(Protocol):
    """
    Interface for input sources (gamepad, scripted, on-screen joystick, etc.).

    All input providers must implement these methods to be usable
    by the Pilot.
    """

    async def start(self) -> None:
        """
        Initialize and start the input provider.

        Called once when the system starts up.
        May open devices, create connections, etc.
        """
        ...

    async def stop(self) -> None:
        """
        Stop and cleanup the input provider.

        Must close devices, release resources, etc.
        """
        ...

    async def read_control_state(self) -> Optional[ControlSample]:
        """
        Read current control input.

        This should be non-blocking and return immediately.
        Returns None if no input available or device not ready.
        """
        ...


class Transport(Protocol):
    """
    Interface for the radio stack (BLE via bleak, mock, etc.).

    Every coroutine here only *starts* an operation; completion is
    reported by posting an event from hm10drive.events to the sink.
    Failures to even start an operation are raised as TransportError.
    """

    def set_event_sink(self, sink: EventSink) -> None:
        """Register the callable that receives transport events"""
        ...

    async def start_scan(self, service_uuid: Optional[str]) -> None:
        """
        Start discovering peripherals.

        Args:
            service_uuid: Only report devices advertising this service,
                or every device when None

        Raises:
            TransportUnavailable: radio is off or unsupported
        """
        ...

    async def stop_scan(self) -> None:
        """Stop discovering peripherals. Safe to call when not scanning."""
        ...

    async def connect(self, device_id: str) -> None:
        """Start connecting; reports Connected or ConnectFailed"""
        ...

    async def discover(self, device_id: str, service_uuid: str, characteristic_uuid: str) -> None:
        """Resolve the characteristic; reports AttributesResolved or DiscoveryFailed"""
        ...

    async def start_notify(self, handle: Any) -> None:
        """Enable value-change notifications; data arrives as ValueNotified"""
        ...

    async def write(self, handle: Any, data: bytes, response: bool = False) -> None:
        """
        Write raw bytes to a characteristic.

        Raises:
            TransportWriteError: the write could not be issued
        """
        ...

    async def disconnect(self, device_id: str) -> None:
        """Drop the link; reports Disconnected"""
        ...
