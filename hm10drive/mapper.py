"""
Mapper - Transforms 2D control input into bounded motor speeds.

Differential (tank) steering: y drives both sides equally, x adds to one
side and subtracts from the other. The output is always clamped to
[-max_speed, max_speed], even if the caller skipped input validation.
"""

from typing import Tuple

from .types import validate_max_speed


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp value to range [min_val, max_val]"""
    return max(min_val, min(max_val, value))


def clamp_axis(value: float) -> float:
    """Clamp a joystick axis to [-1.0, 1.0]"""
    return clamp(value, -1.0, 1.0)


def differential_drive(x: float, y: float, max_speed: int) -> Tuple[int, int]:
    """
    Convert turn/forward inputs to left/right motor speeds.

    Args:
        x: Turn bias (-1.0 left to 1.0 right)
        y: Forward/backward (-1.0 back to 1.0 forward)
        max_speed: Speed bound

    Returns:
        (left, right) in [-max_speed, max_speed]
    """
    base = y * max_speed
    turn = x * max_speed
    left = int(clamp(round(base + turn), -max_speed, max_speed))
    right = int(clamp(round(base - turn), -max_speed, max_speed))
    return left, right


class DriveMapper:
    """Holds the current max speed and maps control input with it."""

    def __init__(self, max_speed: int) -> None:
        self._max_speed = validate_max_speed(max_speed)

    @property
    def max_speed(self) -> int:
        return self._max_speed

    @max_speed.setter
    def max_speed(self, value: int) -> None:
        self._max_speed = validate_max_speed(value)

    def map(self, x: float, y: float) -> Tuple[int, int]:
        """Clamp the axes, then apply differential_drive()"""
        return differential_drive(clamp_axis(x), clamp_axis(y), self._max_speed)
