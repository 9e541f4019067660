"""
Core data types for the hm10drive control system.

All the data structures that flow through the system, fully typed.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple
import time


# HM-10 serial bridge service/characteristic (FFE0/FFE1 on the Bluetooth base UUID)
HM10_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"
HM10_CHARACTERISTIC_UUID = "0000ffe1-0000-1000-8000-00805f9b34fb"

MIN_MAX_SPEED = 10
MAX_MAX_SPEED = 1000

AUX_VALUES = (-1, 0, 1)


class LinkPhase(Enum):
    """Connection state machine phases"""
    IDLE = "idle"                              # Nothing in progress
    SCANNING = "scanning"                      # Discovering peripherals
    CONNECTING = "connecting"                  # Waiting for the transport to connect
    ATTRIBUTE_DISCOVERY = "attribute_discovery"  # Resolving the write characteristic
    READY = "ready"                            # Connected with a write handle
    DISCONNECTING = "disconnecting"            # Waiting for the transport to drop the link
    FAILED = "failed"                          # Transient, surfaced before returning to IDLE


class ErrorKind(Enum):
    """Categories for errors surfaced to observers"""
    TRANSPORT_UNAVAILABLE = "transport_unavailable"  # Radio off / unauthorized / unsupported
    CONNECT = "connect"                              # Peer unreachable or rejected
    DISCOVERY = "discovery"                          # Service or characteristic missing
    INVALID_STATE = "invalid_state"                  # Caller command not valid right now


@dataclass(frozen=True)
class DeviceDescriptor:
    """A peripheral seen during a scan. Never mutated after discovery."""
    id: str
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or "Unknown Device"


@dataclass(frozen=True)
class MotorCommand:
    """
    Command sent to the peripheral.

    left/right are already bounded by the mapper; aux is a discrete
    auxiliary directive (-1 step down, 0 stop/neutral, 1 step up).
    """
    left: int
    right: int
    aux: int = 0

    def __post_init__(self) -> None:
        """Validate aux"""
        assert self.aux in AUX_VALUES, f"aux out of range: {self.aux}"

    @property
    def is_stop(self) -> bool:
        """Check if this is a full stop command"""
        return self.left == 0 and self.right == 0 and self.aux == 0

    def encode(self) -> bytes:
        """Wire payload: ASCII "left:right:aux" with a trailing newline"""
        return f"{self.left}:{self.right}:{self.aux}\n".encode("ascii")

    @classmethod
    def stop(cls) -> "MotorCommand":
        """Create a stop command"""
        return cls(left=0, right=0, aux=0)


@dataclass
class ThrottleWindow:
    """Last accepted continuous send, owned by the Throttler"""
    last_sent_at: Optional[float] = None
    last_left: int = 0
    last_right: int = 0


@dataclass(frozen=True)
class ConnectionState:
    """
    The single active connection state.

    Use the classmethod constructors rather than building instances by hand,
    so that each phase only carries the fields that make sense for it.
    """
    phase: LinkPhase
    device_id: Optional[str] = None
    write_handle: Any = None
    reason: Optional[str] = None

    @classmethod
    def idle(cls) -> "ConnectionState":
        return cls(LinkPhase.IDLE)

    @classmethod
    def scanning(cls) -> "ConnectionState":
        return cls(LinkPhase.SCANNING)

    @classmethod
    def connecting(cls, device_id: str) -> "ConnectionState":
        return cls(LinkPhase.CONNECTING, device_id=device_id)

    @classmethod
    def attribute_discovery(cls, device_id: str) -> "ConnectionState":
        return cls(LinkPhase.ATTRIBUTE_DISCOVERY, device_id=device_id)

    @classmethod
    def ready(cls, device_id: str, write_handle: Any) -> "ConnectionState":
        return cls(LinkPhase.READY, device_id=device_id, write_handle=write_handle)

    @classmethod
    def disconnecting(cls, device_id: Optional[str]) -> "ConnectionState":
        return cls(LinkPhase.DISCONNECTING, device_id=device_id)

    @classmethod
    def failed(cls, reason: str) -> "ConnectionState":
        return cls(LinkPhase.FAILED, reason=reason)

    @property
    def is_ready(self) -> bool:
        return self.phase == LinkPhase.READY

    def __str__(self) -> str:
        if self.device_id is not None:
            return f"{self.phase.value}({self.device_id})"
        if self.reason is not None:
            return f"{self.phase.value}({self.reason})"
        return self.phase.value


@dataclass(frozen=True)
class ErrorNotice:
    """Human-readable error for the single observable error slot"""
    kind: ErrorKind
    message: str
    timestamp: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class LinkSnapshot:
    """Read-only view of everything the LinkManager publishes"""
    state: ConnectionState
    devices: Tuple[DeviceDescriptor, ...]
    last_command: Optional[MotorCommand]
    last_error: Optional[ErrorNotice]
    transport_available: bool

    @property
    def is_connected(self) -> bool:
        return self.state.is_ready


@dataclass
class ControlSample:
    """
    Control input from any input provider.

    x is the turn bias (-1.0 left to 1.0 right), y is forward/backward
    (-1.0 back to 1.0 forward). aux carries a discrete directive when one
    was triggered on this sample; released marks the end of a drag or
    stick deflection and must stop the peripheral.
    """
    x: float = 0.0
    y: float = 0.0
    aux: Optional[int] = None
    released: bool = False
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        """Validate ranges"""
        assert -1.0 <= self.x <= 1.0, f"x out of range: {self.x}"
        assert -1.0 <= self.y <= 1.0, f"y out of range: {self.y}"
        assert self.aux is None or self.aux in AUX_VALUES, f"aux out of range: {self.aux}"

    @property
    def is_neutral(self) -> bool:
        """Check if the stick is centred"""
        return abs(self.x) < 0.01 and abs(self.y) < 0.01


def validate_max_speed(value: int) -> int:
    """Return value if it is an allowed max speed, raise ValueError otherwise"""
    if not MIN_MAX_SPEED <= value <= MAX_MAX_SPEED:
        raise ValueError(
            f"max_speed must be within [{MIN_MAX_SPEED}, {MAX_MAX_SPEED}], got {value}"
        )
    return value


@dataclass
class LinkConfig:
    """Configuration for the LinkManager"""
    service_uuid: str = HM10_SERVICE_UUID
    characteristic_uuid: str = HM10_CHARACTERISTIC_UUID
    scan_timeout: float = 10.0         # Scan auto-stops after N seconds
    link_timeout: float = 10.0         # Max time in CONNECTING/ATTRIBUTE_DISCOVERY/DISCONNECTING
    send_interval: float = 0.05        # Minimum spacing between continuous sends (20Hz)
    max_speed: int = 500               # Motor speed bound, within [10, 1000]
    write_with_response: bool = False  # HM-10 writes are unacknowledged

    def __post_init__(self) -> None:
        validate_max_speed(self.max_speed)
        if self.send_interval < 0:
            raise ValueError(f"send_interval must be >= 0, got {self.send_interval}")


@dataclass
class PilotConfig:
    """Configuration for the Pilot input loop"""
    loop_interval: float = 0.05        # Input sampling interval (20Hz)
