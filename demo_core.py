#!/usr/bin/env python3
"""
hm10drive Core Demo - Simple example application.

Demonstrates the core architecture with mock components: scan, connect,
drive a scripted input, disconnect.
"""

import asyncio
import logging
import sys
from typing import Optional

from hm10drive.link import LinkManager
from hm10drive.pilot import Pilot
from hm10drive.transport import MockTransport
from hm10drive.types import (
    ConnectionState,
    DeviceDescriptor,
    LinkConfig,
    MotorCommand,
    PilotConfig,
)
from hm10drive.inputs import MockInput


logger = logging.getLogger(__name__)


async def run_demo() -> None:
    """Run a simple demo with mock components"""

    logger.info("=" * 60)
    logger.info("hm10drive Core Architecture Demo")
    logger.info("=" * 60)

    devices = [
        DeviceDescriptor(id="MOCK:HM10-A", display_name="HMSoft"),
        DeviceDescriptor(id="MOCK:HM10-B"),
    ]
    transport = MockTransport(devices=devices, auto_complete=True, connection_delay=0.1)

    link = LinkManager(
        transport,
        LinkConfig(scan_timeout=0.5, max_speed=255),
    )

    def on_state_change(old_state: ConnectionState, new_state: ConnectionState) -> None:
        logger.info(f"STATE CHANGE: {old_state} -> {new_state}")

    def on_command(command: Optional[MotorCommand]) -> None:
        if command is not None:
            logger.info(f"SENT: {command.encode()!r}")

    link.add_state_callback(on_state_change)
    link.add_command_callback(on_command)

    link_task = asyncio.create_task(link.run())

    logger.info("Scanning...")
    link.start_scan()
    await asyncio.sleep(0.2)
    for device in link.devices:
        logger.info(f"  {device.id:20s} {device.label}")

    logger.info(f"Connecting to {devices[0].id}...")
    link.connect(devices[0].id)
    await asyncio.sleep(0.5)

    input_provider = MockInput()
    input_provider.load_script("forward_turn_stop")
    pilot = Pilot(input_provider, link, PilotConfig(loop_interval=0.1))
    pilot_task = asyncio.create_task(pilot.run())

    while not input_provider.finished:
        await asyncio.sleep(0.1)

    pilot.stop()
    await pilot_task

    logger.info("Disconnecting...")
    link.disconnect()
    await asyncio.sleep(0.2)

    link.stop()
    await link_task

    logger.info(f"Demo finished, {transport.write_count} payloads written")


def main():
    """Main entry point"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        logger.info("Demo interrupted by user")
    except Exception as e:
        logger.error(f"Demo failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
