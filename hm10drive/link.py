"""
LinkManager - Connection state machine for a single HM-10 peripheral.

The LinkManager is the only owner of connection state. It:
- Manages state transitions (idle -> scanning -> connecting -> ready -> etc.)
- Runs the scan window and link timeouts
- Routes drive input through the Mapper and Throttler to the Transport
- Publishes state, discovered devices, last command and errors to observers

Caller commands and transport events go through one queue and are applied
one at a time by a single worker, so state is never touched concurrently.
Public methods only enqueue and return immediately.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .events import (
    AdapterStateChanged,
    AttributesResolved,
    Connected,
    ConnectFailed,
    DeviceDiscovered,
    Disconnected,
    DiscoveryFailed,
    ValueNotified,
)
from .exceptions import TransportError
from .interfaces import Transport
from .mapper import DriveMapper, clamp
from .throttle import Throttler
from .types import (
    AUX_VALUES,
    ConnectionState,
    DeviceDescriptor,
    ErrorKind,
    ErrorNotice,
    LinkConfig,
    LinkPhase,
    LinkSnapshot,
    MotorCommand,
)


logger = logging.getLogger(__name__)


# Caller commands and timer events, queued alongside transport events

@dataclass(frozen=True)
class _StartScan:
    pass


@dataclass(frozen=True)
class _StopScan:
    pass


@dataclass(frozen=True)
class _Connect:
    device_id: str


@dataclass(frozen=True)
class _Disconnect:
    pass


@dataclass(frozen=True)
class _Send:
    left: int
    right: int


@dataclass(frozen=True)
class _Drive:
    x: float
    y: float


@dataclass(frozen=True)
class _SendAux:
    value: int


@dataclass(frozen=True)
class _StopMotion:
    pass


@dataclass(frozen=True)
class _SendText:
    text: str


@dataclass(frozen=True)
class _SetMaxSpeed:
    value: int


@dataclass(frozen=True)
class _ClearError:
    pass


@dataclass(frozen=True)
class _ScanTimeout:
    token: int


@dataclass(frozen=True)
class _LinkTimeout:
    token: int


@dataclass(frozen=True)
class _Shutdown:
    pass


StateCallback = Callable[[ConnectionState, ConnectionState], Any]
DevicesCallback = Callable[[Tuple[DeviceDescriptor, ...]], Any]
CommandCallback = Callable[[Optional[MotorCommand]], Any]
ErrorCallback = Callable[[ErrorNotice], Any]


class LinkManager:
    """
    Connection state machine and send path.

    Run it with `await link.run()` (or process queued work with
    `await link.drain()`), then drive it through the public methods.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[LinkConfig] = None,
        throttler: Optional[Throttler] = None,
        mapper: Optional[DriveMapper] = None,
    ) -> None:
        """
        Initialize link manager.

        Args:
            transport: Radio stack adapter
            config: Link configuration (UUIDs, timeouts, send interval, max speed)
            throttler: Command throttler, built from config if omitted
            mapper: Drive mapper, built from config if omitted
        """
        self.transport = transport
        self.config = config or LinkConfig()
        self.throttler = throttler or Throttler(self.config.send_interval)
        self.mapper = mapper or DriveMapper(self.config.max_speed)

        self._state = ConnectionState.idle()
        self._devices: Dict[str, DeviceDescriptor] = {}
        self._last_command: Optional[MotorCommand] = None
        self._last_error: Optional[ErrorNotice] = None
        self._transport_available = True

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_token = 0
        # Device dropped after a failure whose Disconnected may still be queued
        self._dropped_id: Optional[str] = None

        self._state_callbacks: List[StateCallback] = []
        self._devices_callbacks: List[DevicesCallback] = []
        self._command_callbacks: List[CommandCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        self._handlers = {
            _StartScan: self._on_start_scan,
            _StopScan: self._on_stop_scan,
            _Connect: self._on_connect,
            _Disconnect: self._on_disconnect,
            _Send: self._on_send,
            _Drive: self._on_drive,
            _SendAux: self._on_send_aux,
            _StopMotion: self._on_stop_motion,
            _SendText: self._on_send_text,
            _SetMaxSpeed: self._on_set_max_speed,
            _ClearError: self._on_clear_error,
            _ScanTimeout: self._on_scan_timeout,
            _LinkTimeout: self._on_link_timeout,
            _Shutdown: self._on_shutdown,
            DeviceDiscovered: self._on_device_discovered,
            Connected: self._on_connected,
            ConnectFailed: self._on_connect_failed,
            AttributesResolved: self._on_attributes_resolved,
            DiscoveryFailed: self._on_discovery_failed,
            Disconnected: self._on_disconnected,
            ValueNotified: self._on_value_notified,
            AdapterStateChanged: self._on_adapter_state_changed,
        }

        transport.set_event_sink(self.post)

    # Subscriptions

    def add_state_callback(self, callback: StateCallback) -> None:
        """
        Register callback for state changes.

        Callback signature: callback(old_state, new_state)
        """
        self._state_callbacks.append(callback)

    def remove_state_callback(self, callback: StateCallback) -> None:
        """Unregister a callback added with add_state_callback (no-op if absent)"""
        if callback in self._state_callbacks:
            self._state_callbacks.remove(callback)

    def add_devices_callback(self, callback: DevicesCallback) -> None:
        """Register callback(devices) for discovered-device set changes"""
        self._devices_callbacks.append(callback)

    def add_command_callback(self, callback: CommandCallback) -> None:
        """Register callback(command) for last-sent-command changes"""
        self._command_callbacks.append(callback)

    def add_error_callback(self, callback: ErrorCallback) -> None:
        """Register callback(notice) for error notifications"""
        self._error_callbacks.append(callback)

    # Public operations

    def start_scan(self) -> None:
        self.post(_StartScan())

    def stop_scan(self) -> None:
        self.post(_StopScan())

    def connect(self, device_id: str) -> None:
        self.post(_Connect(device_id))

    def disconnect(self) -> None:
        self.post(_Disconnect())

    def send(self, left: int, right: int) -> None:
        """Continuous motor speeds, throttled and deduplicated"""
        self.post(_Send(left, right))

    def drive(self, x: float, y: float) -> None:
        """Continuous 2D input, mapped to motor speeds then sent like send()"""
        self.post(_Drive(x, y))

    def send_aux(self, value: int) -> None:
        """Discrete directive (-1, 0, 1), sent immediately when ready"""
        self.post(_SendAux(value))

    def stop_motion(self) -> None:
        """Full stop, e.g. when the joystick is released"""
        self.post(_StopMotion())

    def send_text(self, text: str) -> None:
        """Raw text to the serial bridge, unthrottled"""
        self.post(_SendText(text))

    def set_max_speed(self, value: int) -> None:
        self.post(_SetMaxSpeed(value))

    def clear_error(self) -> None:
        self.post(_ClearError())

    def stop(self) -> None:
        """Stop the worker loop started with run()"""
        self.post(_Shutdown())

    def post(self, item: Any) -> None:
        """
        Queue a command or transport event for the worker.

        Safe to call from any thread; calls from outside the owning
        event loop are marshalled onto it.
        """
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is not loop:
                loop.call_soon_threadsafe(self._queue.put_nowait, item)
                return
        self._queue.put_nowait(item)

    # Worker

    async def run(self) -> None:
        """
        Main worker loop - runs until stop() is called.

        Call this from an async context, usually as a background task.
        """
        logger.info("LinkManager starting")
        self._loop = asyncio.get_running_loop()
        self._running = True

        try:
            while self._running:
                item = await self._queue.get()
                await self._dispatch(item)
        finally:
            logger.info("LinkManager stopping")
            await self._cleanup()

    async def drain(self) -> None:
        """Process every queued item, including ones queued while draining"""
        self._loop = asyncio.get_running_loop()
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())

    async def _dispatch(self, item: Any) -> None:
        handler = self._handlers.get(type(item))
        if handler is None:
            logger.warning(f"Ignoring unknown event: {item!r}")
            return

        try:
            await handler(item)
        except Exception as e:
            logger.error(f"Error handling {type(item).__name__}: {e}", exc_info=True)

    # Caller command handlers

    async def _on_start_scan(self, _: _StartScan) -> None:
        if not self._transport_available:
            self._report(ErrorKind.TRANSPORT_UNAVAILABLE, "Bluetooth is not available")
            return

        phase = self._state.phase
        if phase not in (LinkPhase.IDLE, LinkPhase.SCANNING):
            self._report(ErrorKind.INVALID_STATE, f"Cannot scan while {self._state}")
            return

        self._devices.clear()
        self._notify_devices()

        if phase == LinkPhase.IDLE:
            try:
                await self.transport.start_scan(self.config.service_uuid)
            except TransportError as e:
                self._report(ErrorKind.TRANSPORT_UNAVAILABLE, f"Bluetooth is not available: {e}")
                return
            self._transition_to(ConnectionState.scanning())

        self._start_timer(self.config.scan_timeout, _ScanTimeout)

    async def _on_stop_scan(self, _: _StopScan) -> None:
        if self._state.phase != LinkPhase.SCANNING:
            logger.debug("stop_scan ignored, not scanning")
            return

        await self._halt_scan()
        self._transition_to(ConnectionState.idle())

    async def _on_connect(self, command: _Connect) -> None:
        if not self._transport_available:
            self._report(ErrorKind.TRANSPORT_UNAVAILABLE, "Bluetooth is not available")
            return

        phase = self._state.phase
        if phase == LinkPhase.SCANNING:
            # The radio cannot connect while it is scanning
            await self._halt_scan()
        elif phase != LinkPhase.IDLE:
            self._report(ErrorKind.INVALID_STATE, f"Cannot connect while {self._state}")
            return

        device_id = command.device_id
        device = self._devices.get(device_id)
        logger.info(f"Connecting to {device.label if device else 'device'} ({device_id})")

        self._transition_to(ConnectionState.connecting(device_id))
        self._start_timer(self.config.link_timeout, _LinkTimeout)

        try:
            await self.transport.connect(device_id)
        except TransportError as e:
            await self._fail(ErrorKind.CONNECT, f"Failed to connect to device: {e}")

    async def _on_disconnect(self, _: _Disconnect) -> None:
        state = self._state

        if state.phase in (LinkPhase.IDLE, LinkPhase.DISCONNECTING, LinkPhase.FAILED):
            logger.debug(f"disconnect ignored while {state}")
            return

        if state.phase == LinkPhase.SCANNING:
            await self._halt_scan()
            self._transition_to(ConnectionState.idle())
            return

        if state.is_ready:
            # Best effort, a failed stop must not block the disconnect
            await self._write(self.throttler.force_stop())

        device_id = state.device_id
        self._cancel_timer()
        self._transition_to(ConnectionState.disconnecting(device_id))
        self._start_timer(self.config.link_timeout, _LinkTimeout)

        try:
            await self.transport.disconnect(device_id)
        except TransportError as e:
            logger.warning(f"Disconnect from {device_id} failed: {e}")
            self._cancel_timer()
            self._reset_motion()
            self._transition_to(ConnectionState.idle())

    async def _on_send(self, command: _Send) -> None:
        limit = self.mapper.max_speed
        left = int(clamp(command.left, -limit, limit))
        right = int(clamp(command.right, -limit, limit))
        await self._send_continuous(left, right)

    async def _on_drive(self, command: _Drive) -> None:
        left, right = self.mapper.map(command.x, command.y)
        await self._send_continuous(left, right)

    async def _on_send_aux(self, command: _SendAux) -> None:
        if command.value not in AUX_VALUES:
            self._report(ErrorKind.INVALID_STATE, f"Invalid aux value: {command.value}")
            return

        if not self._state.is_ready:
            return

        saved = self.throttler.window
        if not await self._write(self.throttler.offer_immediate(command.value)):
            self.throttler.restore(saved)

    async def _on_stop_motion(self, _: _StopMotion) -> None:
        stop = self.throttler.force_stop()
        if self._state.is_ready:
            await self._write(stop)

    async def _on_send_text(self, command: _SendText) -> None:
        state = self._state
        data = command.text.encode("utf-8")
        if not state.is_ready or not data:
            return

        try:
            await self.transport.write(state.write_handle, data, response=self.config.write_with_response)
        except TransportError as e:
            logger.warning(f"Failed to send text: {e}")
            return

        logger.debug(f"Sent text: {command.text!r}")

    async def _on_set_max_speed(self, command: _SetMaxSpeed) -> None:
        try:
            self.mapper.max_speed = command.value
        except ValueError as e:
            self._report(ErrorKind.INVALID_STATE, str(e))
            return

        logger.info(f"Max speed set to {command.value}")

    async def _on_clear_error(self, _: _ClearError) -> None:
        self._last_error = None

    async def _on_shutdown(self, _: _Shutdown) -> None:
        self._running = False

    # Timer handlers

    async def _on_scan_timeout(self, event: _ScanTimeout) -> None:
        if event.token != self._timer_token or self._state.phase != LinkPhase.SCANNING:
            return

        logger.info("Scan window elapsed, stopping scan")
        await self._halt_scan()
        self._transition_to(ConnectionState.idle())

    async def _on_link_timeout(self, event: _LinkTimeout) -> None:
        if event.token != self._timer_token:
            return

        phase = self._state.phase
        if phase == LinkPhase.CONNECTING:
            await self._fail(ErrorKind.CONNECT, "Timed out connecting to device", drop_link=True)
        elif phase == LinkPhase.ATTRIBUTE_DISCOVERY:
            await self._fail(ErrorKind.DISCOVERY, "Timed out discovering services", drop_link=True)
        elif phase == LinkPhase.DISCONNECTING:
            logger.warning("Transport did not confirm disconnect, assuming link is down")
            self._reset_motion()
            self._transition_to(ConnectionState.idle())

    # Transport event handlers

    async def _on_device_discovered(self, event: DeviceDiscovered) -> None:
        if self._state.phase != LinkPhase.SCANNING:
            return

        device = event.device
        if device.id in self._devices:
            return

        logger.info(f"Discovered {device.label} ({device.id})")
        self._devices[device.id] = device
        self._notify_devices()

    async def _on_connected(self, event: Connected) -> None:
        if not self._is_current(LinkPhase.CONNECTING, event.device_id):
            logger.debug(f"Ignoring stale connect event for {event.device_id}")
            return

        logger.info(f"Connected to {event.device_id}, discovering services")
        self._transition_to(ConnectionState.attribute_discovery(event.device_id))
        self._start_timer(self.config.link_timeout, _LinkTimeout)

        try:
            await self.transport.discover(
                event.device_id,
                self.config.service_uuid,
                self.config.characteristic_uuid,
            )
        except TransportError as e:
            await self._fail(ErrorKind.DISCOVERY, f"Error discovering services: {e}", drop_link=True)

    async def _on_connect_failed(self, event: ConnectFailed) -> None:
        if not self._is_current(LinkPhase.CONNECTING, event.device_id):
            return

        await self._fail(ErrorKind.CONNECT, event.reason)

    async def _on_attributes_resolved(self, event: AttributesResolved) -> None:
        if not self._is_current(LinkPhase.ATTRIBUTE_DISCOVERY, event.device_id):
            return

        self._cancel_timer()

        try:
            await self.transport.start_notify(event.handle)
        except TransportError as e:
            logger.warning(f"Could not enable notifications: {e}")

        self._transition_to(ConnectionState.ready(event.device_id, event.handle))
        logger.info(f"Ready to send to {event.device_id}")

        # Never inherit motion from a previous session
        await self._write(self.throttler.force_stop())

    async def _on_discovery_failed(self, event: DiscoveryFailed) -> None:
        if not self._is_current(LinkPhase.ATTRIBUTE_DISCOVERY, event.device_id):
            return

        await self._fail(ErrorKind.DISCOVERY, event.reason, drop_link=True)

    async def _on_disconnected(self, event: Disconnected) -> None:
        state = self._state

        if self._dropped_id is not None and self._dropped_id == event.device_id:
            # One confirmation is owed for the link dropped by _fail
            self._dropped_id = None
            if state.phase in (LinkPhase.IDLE, LinkPhase.CONNECTING, LinkPhase.ATTRIBUTE_DISCOVERY):
                logger.debug(f"Ignoring disconnect confirmation for dropped link {event.device_id}")
                return

        if state.device_id != event.device_id:
            logger.debug(f"Ignoring disconnect event for {event.device_id}")
            return

        if state.phase == LinkPhase.READY:
            suffix = f": {event.reason}" if event.reason else ""
            logger.warning(f"Peripheral {event.device_id} disconnected{suffix}")
            self._reset_motion()
            self._transition_to(ConnectionState.idle())

        elif state.phase == LinkPhase.DISCONNECTING:
            self._cancel_timer()
            self._reset_motion()
            self._transition_to(ConnectionState.idle())

        elif state.phase in (LinkPhase.CONNECTING, LinkPhase.ATTRIBUTE_DISCOVERY):
            reason = event.reason or "peripheral dropped the link"
            await self._fail(ErrorKind.CONNECT, f"Connection lost: {reason}")

    async def _on_value_notified(self, event: ValueNotified) -> None:
        text = event.data.decode("utf-8", errors="replace")
        logger.debug(f"Received from {event.device_id}: {text!r}")

    async def _on_adapter_state_changed(self, event: AdapterStateChanged) -> None:
        if event.available:
            if not self._transport_available:
                logger.info("Bluetooth is available again")
            self._transport_available = True
            return

        self._transport_available = False
        self._report(ErrorKind.TRANSPORT_UNAVAILABLE, event.reason or "Bluetooth is not available")

        # The radio is gone, nothing to tell the transport
        self._cancel_timer()
        if self._state.phase != LinkPhase.IDLE:
            self._reset_motion()
            self._transition_to(ConnectionState.idle())

    # Helpers

    def _is_current(self, phase: LinkPhase, device_id: str) -> bool:
        return self._state.phase == phase and self._state.device_id == device_id

    async def _send_continuous(self, left: int, right: int) -> None:
        if not self._state.is_ready:
            return

        saved = self.throttler.window
        command = self.throttler.offer_continuous(left, right)
        if command is None:
            return

        if not await self._write(command):
            self.throttler.restore(saved)

    async def _write(self, command: MotorCommand) -> bool:
        """
        Write a command to the peripheral.

        Returns:
            True if the transport accepted the write
        """
        state = self._state
        if not state.is_ready:
            return False

        try:
            await self.transport.write(
                state.write_handle,
                command.encode(),
                response=self.config.write_with_response,
            )
        except TransportError as e:
            logger.warning(f"Failed to send command {command}: {e}")
            return False

        logger.debug(f"Sent command: L={command.left:+5d} R={command.right:+5d} AUX={command.aux:+d}")
        self._set_last_command(command)
        return True

    async def _halt_scan(self) -> None:
        self._cancel_timer()
        try:
            await self.transport.stop_scan()
        except TransportError as e:
            logger.warning(f"Failed to stop scan: {e}")

    async def _fail(self, kind: ErrorKind, message: str, drop_link: bool = False) -> None:
        """
        Surface an error, pass through FAILED and return to IDLE.

        Args:
            kind: Error category for observers
            message: Human-readable reason
            drop_link: Ask the transport to disconnect the current device
        """
        device_id = self._state.device_id
        self._cancel_timer()
        self._report(kind, message)
        self._transition_to(ConnectionState.failed(message))

        if drop_link and device_id is not None:
            self._dropped_id = device_id
            try:
                await self.transport.disconnect(device_id)
            except TransportError as e:
                self._dropped_id = None
                logger.warning(f"Disconnect after failure failed: {e}")

        self._reset_motion()
        self._transition_to(ConnectionState.idle())

    def _reset_motion(self) -> None:
        """Forget the last sent speeds so a reconnect starts from a stop"""
        self.throttler.force_stop()
        self._set_last_command(None)

    def _start_timer(self, delay: float, event_type: type) -> None:
        self._cancel_timer()
        token = self._timer_token
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.post, event_type(token))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # Invalidates timer events that already fired but are still queued
        self._timer_token += 1

    def _report(self, kind: ErrorKind, message: str) -> None:
        notice = ErrorNotice(kind=kind, message=message)
        if kind == ErrorKind.INVALID_STATE:
            logger.warning(message)
        else:
            logger.error(message)

        self._last_error = notice
        self._emit(self._error_callbacks, notice)

    def _set_last_command(self, command: Optional[MotorCommand]) -> None:
        if command == self._last_command:
            return
        self._last_command = command
        self._emit(self._command_callbacks, command)

    def _notify_devices(self) -> None:
        self._emit(self._devices_callbacks, self.devices)

    def _transition_to(self, new_state: ConnectionState) -> None:
        """
        Transition to new state.

        Args:
            new_state: State to transition to
        """
        if new_state == self._state:
            return

        old_state = self._state
        logger.info(f"State transition: {old_state} -> {new_state}")
        self._state = new_state
        self._emit(self._state_callbacks, old_state, new_state)

    def _emit(self, callbacks: list, *args: Any) -> None:
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in link callback: {e}", exc_info=True)

    async def _cleanup(self) -> None:
        """Stop scanning or drop the link on shutdown"""
        self._cancel_timer()
        state = self._state

        try:
            if state.phase == LinkPhase.SCANNING:
                await self.transport.stop_scan()
            elif state.device_id is not None and state.phase != LinkPhase.IDLE:
                if state.is_ready:
                    await self._write(self.throttler.force_stop())
                await self.transport.disconnect(state.device_id)
        except TransportError as e:
            logger.error(f"Error during cleanup: {e}", exc_info=True)

        self._reset_motion()
        self._transition_to(ConnectionState.idle())

    # Public properties for UI/monitoring

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def devices(self) -> Tuple[DeviceDescriptor, ...]:
        """Discovered devices in discovery order"""
        return tuple(self._devices.values())

    @property
    def last_command(self) -> Optional[MotorCommand]:
        return self._last_command

    @property
    def last_error(self) -> Optional[ErrorNotice]:
        return self._last_error

    @property
    def transport_available(self) -> bool:
        return self._transport_available

    @property
    def is_connected(self) -> bool:
        return self._state.is_ready

    def snapshot(self) -> LinkSnapshot:
        """Immutable view of the published state"""
        return LinkSnapshot(
            state=self._state,
            devices=self.devices,
            last_command=self._last_command,
            last_error=self._last_error,
            transport_available=self._transport_available,
        )
