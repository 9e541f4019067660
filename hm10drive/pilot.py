"""
Pilot - Input loop feeding the LinkManager.

Samples an InputProvider at a fixed rate and turns each sample into link
calls. Sampling faster than the send interval is intended: the Throttler
coalesces onto the latest value.
"""

import asyncio
import logging
from typing import Optional

from .interfaces import InputProvider
from .link import LinkManager
from .types import ControlSample, PilotConfig


logger = logging.getLogger(__name__)


class Pilot:
    """Reads control input and routes it to the link."""

    def __init__(
        self,
        input_provider: InputProvider,
        link: LinkManager,
        config: Optional[PilotConfig] = None,
    ) -> None:
        """
        Initialize pilot.

        Args:
            input_provider: Source of control input
            link: Link to send commands through
            config: Loop configuration
        """
        self.input = input_provider
        self.link = link
        self.config = config or PilotConfig()
        self._running = False
        self._samples = 0

    async def run(self) -> None:
        """Sample input until stop() is called"""
        logger.info("Pilot starting")
        self._running = True

        await self.input.start()
        try:
            while self._running:
                try:
                    await self.update()
                except Exception as e:
                    logger.error(f"Error in pilot update: {e}", exc_info=True)
                    self.link.stop_motion()
                await asyncio.sleep(self.config.loop_interval)
        finally:
            logger.info("Pilot stopping")
            self.link.stop_motion()
            await self.input.stop()

    def stop(self) -> None:
        self._running = False

    async def update(self) -> Optional[ControlSample]:
        """Single iteration: read one sample and route it"""
        sample = await self.input.read_control_state()
        if sample is None:
            return None

        self._samples += 1

        if sample.aux is not None:
            self.link.send_aux(sample.aux)

        if sample.released:
            logger.debug("Input released, stopping")
            self.link.stop_motion()
        else:
            self.link.drive(sample.x, sample.y)

        return sample

    @property
    def sample_count(self) -> int:
        return self._samples
