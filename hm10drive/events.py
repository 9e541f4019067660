"""
Transport events.

Transports report asynchronous completions by posting one of these to the
sink registered with set_event_sink(). The LinkManager consumes them one at
a time from its queue.
"""

from dataclasses import dataclass
from typing import Any, Optional

from .types import DeviceDescriptor


@dataclass(frozen=True)
class DeviceDiscovered:
    device: DeviceDescriptor


@dataclass(frozen=True)
class Connected:
    device_id: str


@dataclass(frozen=True)
class ConnectFailed:
    device_id: str
    reason: str = "Failed to connect to device"


@dataclass(frozen=True)
class AttributesResolved:
    device_id: str
    handle: Any


@dataclass(frozen=True)
class DiscoveryFailed:
    device_id: str
    reason: str


@dataclass(frozen=True)
class Disconnected:
    device_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ValueNotified:
    """Inbound data from the peripheral. Logged, never decoded as protocol."""
    device_id: str
    data: bytes


@dataclass(frozen=True)
class AdapterStateChanged:
    available: bool
    reason: Optional[str] = None
