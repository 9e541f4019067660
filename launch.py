#!/usr/bin/env python3
"""
hm10drive Launcher - Easy start for HM-10 motion control

Usage:
    python launch.py                      # Scan for HM-10 peripherals
    python launch.py --gamepad            # Scan, connect to the first device, drive with gamepad
    python launch.py --gamepad --device ADDR
    python launch.py --gamepad --mock     # Gamepad with mock transport (testing)
    python launch.py --demo               # Run core demo
    python launch.py --config             # Show .env configuration
"""

import sys
import argparse
import asyncio
import logging
from dataclasses import replace
from typing import Iterable, Optional

from hm10drive.config import LOG_LEVELS, get_config
from hm10drive.link import LinkManager
from hm10drive.types import (
    ConnectionState,
    DeviceDescriptor,
    LinkConfig,
    LinkPhase,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging"""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )


def build_transport(use_mock: bool, link_config: LinkConfig):
    """Create the mock or the Bleak transport"""
    if use_mock:
        from hm10drive.transport import MockTransport
        print("Using MOCK transport (no actual hardware)")
        return MockTransport(
            devices=[DeviceDescriptor(id="MOCK:HM10", display_name="HMSoft")],
            auto_complete=True,
            connection_delay=0.2,
        )

    from hm10drive.transport.bluetooth import BleakTransport
    return BleakTransport(connect_timeout=link_config.link_timeout)


async def wait_for_phase(link: LinkManager, phases: Iterable[LinkPhase], timeout: float) -> bool:
    """
    Wait until the link enters one of the given phases.

    Returns:
        True if reached before the timeout
    """
    wanted = set(phases)
    if link.state.phase in wanted:
        return True

    reached = asyncio.Event()

    def on_state(old_state: ConnectionState, new_state: ConnectionState) -> None:
        if new_state.phase in wanted:
            reached.set()

    link.add_state_callback(on_state)
    try:
        await asyncio.wait_for(reached.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        return False
    finally:
        link.remove_state_callback(on_state)


async def scan(link: LinkManager) -> list[DeviceDescriptor]:
    """Run one scan window and return what was found"""
    print(f"Scanning for HM-10 devices ({link.config.scan_timeout:.0f} seconds)...")
    link.start_scan()
    await wait_for_phase(link, [LinkPhase.SCANNING], 2.0)
    await wait_for_phase(link, [LinkPhase.IDLE], link.config.scan_timeout + 2.0)

    devices = list(link.devices)
    for device in devices:
        print(f"  {device.id:40s} {device.label}")
    if not devices:
        print("  (no devices found)")
    if link.last_error:
        print(f"Error: {link.last_error.message}")
    return devices


def launch_scan(link_config: LinkConfig, use_mock: bool) -> None:
    """Scan once and list devices"""
    async def run():
        link = LinkManager(build_transport(use_mock, link_config), link_config)
        link_task = asyncio.create_task(link.run())
        await scan(link)
        link.stop()
        await link_task

    asyncio.run(run())


def launch_gamepad(link_config: LinkConfig, device_id: Optional[str], use_mock: bool) -> None:
    """Connect and drive with a gamepad"""
    print("Starting gamepad control mode...")
    print("Left stick drives, D-pad up/down steps aux, B stops")

    from hm10drive.inputs.gamepad_input import GamepadInput
    from hm10drive.pilot import Pilot

    async def run():
        link = LinkManager(build_transport(use_mock, link_config), link_config)
        link_task = asyncio.create_task(link.run())
        pilot: Optional[Pilot] = None

        try:
            target = device_id
            if target is None:
                devices = await scan(link)
                if not devices:
                    return
                target = devices[0].id

            print(f"Connecting to {target}...")
            link.connect(target)
            await wait_for_phase(link, [LinkPhase.CONNECTING], 2.0)
            await wait_for_phase(link, [LinkPhase.READY, LinkPhase.IDLE], link_config.link_timeout * 2 + 2.0)
            if not link.is_connected:
                message = link.last_error.message if link.last_error else "connection failed"
                print(f"Error: {message}")
                return

            print("Connected - press Ctrl+C to stop")
            pilot = Pilot(GamepadInput(deadzone=0.1), link)
            await pilot.run()

        except asyncio.CancelledError:
            print("\nShutting down...")
        finally:
            if pilot is not None:
                pilot.stop()
            link.disconnect()
            await wait_for_phase(link, [LinkPhase.IDLE], 2.0)
            link.stop()
            await link_task

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


def launch_demo() -> None:
    """Launch core architecture demo"""
    print("Starting core architecture demo...")
    from demo_core import main
    main()


def main():
    """Main entry point"""
    config = get_config()

    parser = argparse.ArgumentParser(
        description="hm10drive - Motion control over an HM-10 BLE serial bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python launch.py                         Scan for devices
  python launch.py --gamepad --mock        Test gamepad with mock transport
  python launch.py --gamepad --device ADDR Drive a known peripheral
  python launch.py --demo                  Run core demo
        """
    )

    parser.add_argument(
        "--scan",
        action="store_true",
        help="Scan for HM-10 peripherals (default action)"
    )
    parser.add_argument(
        "--gamepad",
        action="store_true",
        help="Use gamepad control (requires pygame)"
    )
    parser.add_argument(
        "--device",
        default=config.device,
        help="Peripheral address to connect to (default: HM10_DEVICE)"
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock transport for testing (no hardware needed)"
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Run core architecture demo"
    )
    parser.add_argument(
        "--config",
        action="store_true",
        help="Show configuration status"
    )
    parser.add_argument(
        "--max-speed",
        type=int,
        default=None,
        help="Override max motor speed (10-1000)"
    )
    parser.add_argument(
        "--log-level",
        default=config.log_level if config.log_level in LOG_LEVELS else "INFO",
        choices=list(LOG_LEVELS),
        help="Set logging level"
    )

    args = parser.parse_args()

    setup_logging(args.log_level)

    if args.config:
        config.print_status()
        return

    if args.demo:
        launch_demo()
        return

    try:
        link_config = config.to_link_config()
        if args.max_speed is not None:
            link_config = replace(link_config, max_speed=args.max_speed)
    except ValueError as e:
        parser.error(str(e))

    if args.gamepad:
        launch_gamepad(link_config, args.device, use_mock=args.mock)
    else:
        launch_scan(link_config, use_mock=args.mock)


if __name__ == "__main__":
    main()
