"""
hm10drive - Motion control for HM-10 BLE serial bridge peripherals.

This package contains the core logic for driving a differential-drive
peripheral over a BLE serial bridge:
- Types: Data classes for connection state, commands, control input
- Interfaces: Protocols for pluggable components (input, transport)
- Mapper: Transforms 2D input into bounded left/right motor speeds
- Throttler: Rate limits and deduplicates outbound commands
- LinkManager: Connection state machine and send path
"""

from .types import (
    ConnectionState,
    ControlSample,
    DeviceDescriptor,
    ErrorKind,
    ErrorNotice,
    LinkConfig,
    LinkPhase,
    LinkSnapshot,
    MotorCommand,
)
from .interfaces import (
    InputProvider,
    Transport,
)
from .mapper import DriveMapper, differential_drive
from .throttle import Throttler
from .link import LinkManager

__all__ = [
    "ConnectionState",
    "ControlSample",
    "DeviceDescriptor",
    "ErrorKind",
    "ErrorNotice",
    "LinkConfig",
    "LinkPhase",
    "LinkSnapshot",
    "MotorCommand",
    "InputProvider",
    "Transport",
    "DriveMapper",
    "differential_drive",
    "Throttler",
    "LinkManager",
]
