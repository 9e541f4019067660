"""
Gamepad Input Provider

Reads control input from USB/wireless game controllers via pygame.
"""

import logging
from typing import Optional, Tuple

import pygame

from hm10drive.mapper import clamp_axis
from hm10drive.types import ControlSample


logger = logging.getLogger(__name__)


class GamepadInput:
    """
    Drives the peripheral from a game controller.

    - Left stick: x (turn) / y (forward)
    - D-pad up/down: aux step up / step down
    - B button: aux stop
    - Stick back to centre after moving: released (full stop)
    """

    def __init__(
        self,
        deadzone: float = 0.1,
        invert_y: bool = False,
        controller_index: int = 0,
        stop_button: int = 1,
    ) -> None:
        """
        Args:
            deadzone: Stick deflection treated as centred
            invert_y: Use the raw Y axis (pushing up is already positive)
            controller_index: Which connected controller to read
            stop_button: Button that sends aux 0 (B on Xbox layouts)
        """
        self._deadzone = deadzone
        self._invert_y = invert_y
        self._controller_index = controller_index
        self._stop_button = stop_button

        self._joystick: Optional[pygame.joystick.Joystick] = None
        self._running = False

        self._stick_axes = (0, 1)

        self._moving = False
        self._last_hat: Tuple[int, int] = (0, 0)
        self._stop_held = False

    async def start(self) -> None:
        """Open the configured controller"""
        if self._running:
            return

        pygame.init()
        pygame.joystick.init()

        available = pygame.joystick.get_count()
        if available <= self._controller_index:
            pygame.joystick.quit()
            raise RuntimeError(
                f"Game controller {self._controller_index} not found ({available} connected)"
            )

        self._joystick = pygame.joystick.Joystick(self._controller_index)
        self._joystick.init()
        logger.info(f"Gamepad ready: {self.name}")

        self._running = True

    async def stop(self) -> None:
        """Release the controller and shut pygame down"""
        self._running = False

        joystick, self._joystick = self._joystick, None
        if joystick is not None:
            joystick.quit()

        pygame.joystick.quit()
        pygame.quit()
        logger.info("Gamepad closed")

    @property
    def name(self) -> Optional[str]:
        return self._joystick.get_name() if self._joystick else None

    async def read_control_state(self) -> Optional[ControlSample]:
        """Sample the stick and buttons once"""
        if not self._running or self._joystick is None:
            return None

        # Joystick state only refreshes while the event queue is pumped
        pygame.event.pump()

        axis_x, axis_y = self._stick_axes
        x = self._apply_deadzone(self._joystick.get_axis(axis_x))
        y = self._apply_deadzone(self._joystick.get_axis(axis_y))

        # Pushing the stick up reads negative
        if not self._invert_y:
            y = -y

        aux = self._read_aux()

        neutral = x == 0.0 and y == 0.0
        released = neutral and self._moving
        self._moving = not neutral

        logger.debug(f"Stick: X={x:+.2f} Y={y:+.2f} aux={aux} released={released}")

        return ControlSample(x=clamp_axis(x), y=clamp_axis(y), aux=aux, released=released)

    def _apply_deadzone(self, value: float) -> float:
        return 0.0 if abs(value) < self._deadzone else value

    def _read_aux(self) -> Optional[int]:
        """Edge-triggered aux directives, one per press"""
        aux = None

        if self._joystick.get_numhats() > 0:
            hat = self._joystick.get_hat(0)
            if hat != self._last_hat:
                if hat[1] > 0:
                    aux = 1
                elif hat[1] < 0:
                    aux = -1
            self._last_hat = hat

        if self._joystick.get_numbuttons() > self._stop_button:
            pressed = bool(self._joystick.get_button(self._stop_button))
            if pressed and not self._stop_held:
                aux = 0
            self._stop_held = pressed

        return aux
