"""Scripted control input for demos and tests."""

import logging
from typing import List, Optional

from hm10drive.types import ControlSample


logger = logging.getLogger(__name__)


class MockInput:
    """Replays a list of ControlSamples, then holds the last one."""

    def __init__(self, samples: Optional[List[ControlSample]] = None) -> None:
        """An empty script yields neutral samples."""
        self._samples = samples or []
        self._index = 0
        self._running = False

    async def start(self) -> None:
        logger.info(f"[MOCK INPUT] Started - Script mode ({len(self._samples)} samples)")
        self._running = True
        self._index = 0

    async def stop(self) -> None:
        logger.info("[MOCK INPUT] Script stopped")
        self._running = False

    async def read_control_state(self) -> Optional[ControlSample]:
        """Return next scripted sample"""
        if not self._running:
            return None

        if not self._samples:
            return ControlSample()

        if self._index >= len(self._samples):
            return self._samples[-1]

        sample = self._samples[self._index]
        self._index += 1
        return sample

    @property
    def finished(self) -> bool:
        """True once every scripted sample has been read"""
        return self._index >= len(self._samples)

    def reset(self) -> None:
        """Rewind the script"""
        self._index = 0

    def load_script(self, script_name: str) -> None:
        """Replace the samples with one of the TestScripts by short name"""
        script_map = {
            "forward": TestScripts.forward_drive,
            "turn": TestScripts.turn_test,
            "aux": TestScripts.aux_steps,
            "forward_turn_stop": TestScripts.forward_turn_stop,
        }

        build = script_map.get(script_name)
        if build is None:
            logger.warning(f"No script named {script_name!r}, keeping {len(self._samples)} samples")
            return

        self._samples = build()
        self._index = 0
        logger.info(f"Script {script_name!r}: {len(self._samples)} samples")


class TestScripts:
    """Canned sample sequences"""

    __test__ = False  # not a pytest class

    @staticmethod
    def forward_drive() -> List[ControlSample]:
        """Ramp up, cruise, ramp down, release"""
        return [
            ControlSample(x=0.0, y=0.0),
            ControlSample(x=0.0, y=0.3),
            ControlSample(x=0.0, y=0.6),
            ControlSample(x=0.0, y=0.8),
            ControlSample(x=0.0, y=0.8),
            ControlSample(x=0.0, y=0.8),
            # ease off
            ControlSample(x=0.0, y=0.5),
            ControlSample(x=0.0, y=0.2),
            # Release
            ControlSample(released=True),
        ]

    @staticmethod
    def turn_test() -> List[ControlSample]:
        """Spin in place both ways"""
        return [
            ControlSample(x=0.5, y=0.0),
            ControlSample(x=1.0, y=0.0),
            ControlSample(x=-0.5, y=0.0),
            ControlSample(x=-1.0, y=0.0),
            ControlSample(released=True),
        ]

    @staticmethod
    def aux_steps() -> List[ControlSample]:
        """Discrete step up, step down, stop"""
        return [
            ControlSample(aux=1),
            ControlSample(),
            ControlSample(aux=-1),
            ControlSample(),
            ControlSample(aux=0),
        ]

    @staticmethod
    def forward_turn_stop() -> List[ControlSample]:
        """Forward, veer right, veer left, slow, release"""
        return [
            ControlSample(x=0.0, y=0.5),
            ControlSample(x=0.0, y=0.7),
            ControlSample(x=0.0, y=0.7),
            ControlSample(x=0.4, y=0.6),
            ControlSample(x=0.4, y=0.6),
            ControlSample(x=-0.4, y=0.6),
            ControlSample(x=-0.4, y=0.6),
            ControlSample(x=0.0, y=0.3),
            ControlSample(x=0.0, y=0.1),
            # Release
            ControlSample(released=True),
        ]
