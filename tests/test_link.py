"""Tests for LinkManager (connection state machine and send path)"""

import asyncio

import pytest

from conftest import make_ready
from hm10drive.events import (
    AdapterStateChanged,
    AttributesResolved,
    Connected,
    ConnectFailed,
    DeviceDiscovered,
    Disconnected,
    DiscoveryFailed,
    ValueNotified,
)
from hm10drive.link import LinkManager
from hm10drive.throttle import Throttler
from hm10drive.transport import MockTransport
from hm10drive.types import (
    HM10_CHARACTERISTIC_UUID,
    HM10_SERVICE_UUID,
    ConnectionState,
    DeviceDescriptor,
    ErrorKind,
    LinkConfig,
    LinkPhase,
    MotorCommand,
)


A = DeviceDescriptor("A", "HMSoft")
B = DeviceDescriptor("B")


def record_states(link):
    """Collect every new state published by the link"""
    states = []
    link.add_state_callback(lambda old, new: states.append(new))
    return states


@pytest.mark.asyncio
async def test_initial_state(link):
    snapshot = link.snapshot()
    assert snapshot.state == ConnectionState.idle()
    assert snapshot.devices == ()
    assert snapshot.last_command is None
    assert snapshot.last_error is None
    assert snapshot.transport_available is True
    assert snapshot.is_connected is False


@pytest.mark.asyncio
async def test_start_scan(link, transport):
    """Test IDLE -> SCANNING with the HM-10 service filter"""
    link.start_scan()
    await link.drain()

    assert link.state.phase == LinkPhase.SCANNING
    assert transport.calls[0] == ("start_scan", HM10_SERVICE_UUID)


@pytest.mark.asyncio
async def test_scan_deduplicates_and_keeps_order(link, transport):
    """Test duplicate advertisements are ignored"""
    devices_seen = []
    link.add_devices_callback(devices_seen.append)

    link.start_scan()
    await link.drain()
    transport.emit(DeviceDiscovered(A))
    transport.emit(DeviceDiscovered(B))
    transport.emit(DeviceDiscovered(DeviceDescriptor("A", "renamed")))
    await link.drain()

    assert [d.id for d in link.devices] == ["A", "B"]
    assert link.devices[0].display_name == "HMSoft"
    # cleared at scan start, then one notification per new device
    assert devices_seen == [(), (A,), (A, B)]


@pytest.mark.asyncio
async def test_new_scan_clears_devices(link, transport):
    link.start_scan()
    await link.drain()
    transport.emit(DeviceDiscovered(A))
    link.stop_scan()
    await link.drain()
    assert len(link.devices) == 1

    link.start_scan()
    await link.drain()
    assert link.devices == ()


@pytest.mark.asyncio
async def test_discovery_outside_scan_ignored(link, transport):
    transport.emit(DeviceDiscovered(A))
    await link.drain()
    assert link.devices == ()


@pytest.mark.asyncio
async def test_stop_scan(link, transport):
    link.start_scan()
    await link.drain()
    link.stop_scan()
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert transport.call_names() == ["start_scan", "stop_scan"]


@pytest.mark.asyncio
async def test_stop_scan_when_idle_is_noop(link, transport):
    link.stop_scan()
    await link.drain()

    assert transport.calls == []
    assert link.last_error is None


@pytest.mark.asyncio
async def test_scan_times_out(transport):
    """Test the scan window stops scanning on its own"""
    link = LinkManager(transport, LinkConfig(scan_timeout=0.01))
    link.start_scan()
    await link.drain()

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert transport.call_names() == ["start_scan", "stop_scan"]


@pytest.mark.asyncio
async def test_connect_cancels_scan_timeout(transport):
    """Test a connect during the scan window is not undone by the timeout"""
    link = LinkManager(transport, LinkConfig(scan_timeout=0.01))
    link.start_scan()
    await link.drain()
    link.connect("A")
    await link.drain()

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state == ConnectionState.connecting("A")


@pytest.mark.asyncio
async def test_scan_while_unavailable(link, transport):
    """Test a failing scan surfaces TRANSPORT_UNAVAILABLE and stays idle"""
    transport.available = False
    link.start_scan()
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.TRANSPORT_UNAVAILABLE


@pytest.mark.asyncio
async def test_connect_while_scanning_stops_scan(link, transport):
    """Test connect implicitly stops the scan first"""
    states = record_states(link)
    link.start_scan()
    await link.drain()

    link.connect("A")
    await link.drain()

    assert link.state == ConnectionState.connecting("A")
    assert transport.call_names() == ["start_scan", "stop_scan", "connect"]
    assert LinkPhase.IDLE not in [s.phase for s in states]


@pytest.mark.asyncio
async def test_connected_starts_discovery(link, transport):
    link.connect("A")
    await link.drain()
    transport.emit(Connected("A"))
    await link.drain()

    assert link.state == ConnectionState.attribute_discovery("A")
    assert transport.calls[-1] == ("discover", "A", HM10_SERVICE_UUID, HM10_CHARACTERISTIC_UUID)


@pytest.mark.asyncio
async def test_connect_failure_returns_to_idle(link, transport):
    """Test ConnectFailed passes through FAILED and back to IDLE"""
    states = record_states(link)
    errors = []
    link.add_error_callback(errors.append)

    link.connect("A")
    await link.drain()
    transport.emit(ConnectFailed("A", "Failed to connect to device"))
    await link.drain()

    assert [s.phase for s in states] == [LinkPhase.CONNECTING, LinkPhase.FAILED, LinkPhase.IDLE]
    assert link.state.phase == LinkPhase.IDLE
    assert errors[0].kind == ErrorKind.CONNECT
    assert errors[0].message == "Failed to connect to device"
    assert "disconnect" not in transport.call_names()


@pytest.mark.asyncio
async def test_discovery_failure_returns_to_idle(link, transport):
    link.connect("A")
    await link.drain()
    transport.emit(Connected("A"))
    await link.drain()
    transport.emit(DiscoveryFailed("A", "Service not found"))
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.DISCOVERY
    assert transport.calls[-1] == ("disconnect", "A")
    assert transport.writes == []


@pytest.mark.asyncio
async def test_ready_sends_one_stop_first(link, transport):
    """Test entering READY writes a stop before any queued caller command"""
    link.connect("A")
    await link.drain()
    transport.emit(Connected("A"))
    await link.drain()

    transport.emit(AttributesResolved("A", "h"))
    link.send(100, 100)
    await link.drain()

    assert link.state == ConnectionState.ready("A", "h")
    assert transport.writes == [b"0:0:0\n", b"100:100:0\n"]
    assert ("start_notify", "h") in transport.calls


@pytest.mark.asyncio
async def test_end_to_end_scenario(link, transport, clock):
    """Test scan, connect, ready stop and a full right turn"""
    link.start_scan()
    await link.drain()
    for device in (A, B, A):
        transport.emit(DeviceDiscovered(device))
    await link.drain()
    assert [d.id for d in link.devices] == ["A", "B"]

    await make_ready(link, transport, "A", "h")
    assert link.state == ConnectionState.ready("A", "h")
    assert transport.writes == [b"0:0:0\n"]

    clock.advance(0.1)
    link.drive(1.0, 0.0)
    await link.drain()

    assert transport.last_write == b"500:-500:0\n"
    assert link.last_command == MotorCommand(500, -500, 0)


@pytest.mark.asyncio
async def test_send_when_not_ready_is_silent(link, transport):
    """Test sends in every non-ready phase write nothing and raise nothing"""
    link.send(100, 100)
    link.send_aux(1)
    link.drive(0.5, 0.5)
    link.stop_motion()
    link.send_text("hello")
    await link.drain()

    link.connect("A")
    await link.drain()
    link.send(100, 100)
    link.send_aux(-1)
    await link.drain()

    assert transport.writes == []
    assert link.last_error is None


@pytest.mark.asyncio
async def test_send_is_throttled(link, transport, clock):
    await make_ready(link, transport)

    link.send(100, 100)
    link.send(200, 200)
    link.send(200, 200)
    await link.drain()
    assert transport.writes[1:] == [b"100:100:0\n"]

    clock.advance(0.1)
    link.send(200, 200)
    await link.drain()
    assert transport.writes[1:] == [b"100:100:0\n", b"200:200:0\n"]


@pytest.mark.asyncio
async def test_send_clamps_to_max_speed(link, transport):
    await make_ready(link, transport)
    link.send(900, -900)
    await link.drain()
    assert transport.last_write == b"500:-500:0\n"


@pytest.mark.asyncio
async def test_drive_clamps_input(link, transport):
    await make_ready(link, transport)
    link.drive(0.0, 3.0)
    await link.drain()
    assert transport.last_write == b"500:500:0\n"


@pytest.mark.asyncio
async def test_send_aux_uses_last_speeds(link, transport, clock):
    await make_ready(link, transport)
    link.send(100, -100)
    await link.drain()

    link.send_aux(1)
    link.send_aux(1)
    await link.drain()

    assert transport.writes[-2:] == [b"100:-100:1\n", b"100:-100:1\n"]


@pytest.mark.asyncio
async def test_invalid_aux_reports_error(link, transport):
    await make_ready(link, transport)
    link.send_aux(5)
    await link.drain()

    assert transport.writes == [b"0:0:0\n"]
    assert link.last_error.kind == ErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_stop_motion(link, transport, clock):
    """Test release sends a stop and resets dedup"""
    await make_ready(link, transport)
    link.send(300, 300)
    await link.drain()

    link.stop_motion()
    await link.drain()
    assert transport.last_write == b"0:0:0\n"

    clock.advance(0.1)
    count = transport.write_count
    link.send(0, 0)
    await link.drain()
    assert transport.write_count == count


@pytest.mark.asyncio
async def test_send_text(link, transport):
    await make_ready(link, transport)
    link.send_text("héllo\n")
    link.send_text("")
    await link.drain()

    assert transport.writes == [b"0:0:0\n", "héllo\n".encode("utf-8")]
    assert link.last_command == MotorCommand.stop()


@pytest.mark.asyncio
async def test_write_failure_restores_window(link, transport, clock):
    """Test a failed write does not dedup the retry of the same value"""
    await make_ready(link, transport)

    transport.fail_writes = True
    link.send(100, 100)
    await link.drain()
    assert link.state.is_ready
    assert transport.write_count == 1

    transport.fail_writes = False
    link.send(100, 100)
    await link.drain()
    assert transport.last_write == b"100:100:0\n"


@pytest.mark.asyncio
async def test_peer_disconnect_resets_motion(link, transport, clock):
    """Test a dropped link clears the handle, dedup state and last command"""
    commands = []
    link.add_command_callback(commands.append)
    await make_ready(link, transport)
    link.send(250, 250)
    await link.drain()

    transport.emit(Disconnected("A", "peer closed"))
    await link.drain()

    assert link.state == ConnectionState.idle()
    assert link.last_command is None
    assert commands[-1] is None
    window = link.throttler.window
    assert (window.last_left, window.last_right) == (0, 0)


@pytest.mark.asyncio
async def test_reconnect_starts_from_stop(link, transport, clock):
    await make_ready(link, transport)
    link.send(250, 250)
    await link.drain()
    transport.emit(Disconnected("A"))
    await link.drain()

    clock.advance(0.1)
    transport.writes.clear()
    await make_ready(link, transport)
    link.send(250, 250)
    await link.drain()

    assert transport.writes == [b"0:0:0\n", b"250:250:0\n"]


@pytest.mark.asyncio
async def test_disconnect_from_ready(link, transport):
    """Test disconnect stops the motors, then drops the link"""
    states = record_states(link)
    await make_ready(link, transport)
    link.send(100, 100)
    await link.drain()

    link.disconnect()
    await link.drain()

    assert transport.last_write == b"0:0:0\n"
    assert transport.calls[-1] == ("disconnect", "A")
    assert link.state == ConnectionState.disconnecting("A")

    transport.emit(Disconnected("A"))
    await link.drain()
    assert link.state == ConnectionState.idle()
    assert [s.phase for s in states][-2:] == [LinkPhase.DISCONNECTING, LinkPhase.IDLE]


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(link, transport):
    link.disconnect()
    await link.drain()
    assert transport.calls == []

    await make_ready(link, transport)
    link.disconnect()
    link.disconnect()
    await link.drain()

    assert transport.call_names().count("disconnect") == 1
    assert link.last_error is None


@pytest.mark.asyncio
async def test_disconnect_survives_failed_stop(link, transport):
    """Test a failed stop write does not block the disconnect"""
    await make_ready(link, transport)
    transport.fail_writes = True

    link.disconnect()
    await link.drain()

    assert transport.calls[-1] == ("disconnect", "A")
    assert link.state.phase == LinkPhase.DISCONNECTING


@pytest.mark.asyncio
async def test_disconnect_while_connecting(link, transport):
    link.connect("A")
    await link.drain()

    link.disconnect()
    await link.drain()
    assert link.state == ConnectionState.disconnecting("A")

    transport.emit(Disconnected("A"))
    await link.drain()
    assert link.state == ConnectionState.idle()
    assert transport.writes == []


@pytest.mark.asyncio
async def test_disconnect_while_scanning(link, transport):
    link.start_scan()
    await link.drain()
    link.disconnect()
    await link.drain()

    assert link.state == ConnectionState.idle()
    assert transport.call_names() == ["start_scan", "stop_scan"]


@pytest.mark.asyncio
async def test_connect_times_out(transport):
    """Test a connect that never completes ends in FAILED -> IDLE"""
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    link.connect("A")
    await link.drain()

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.CONNECT
    assert "Timed out" in link.last_error.message
    assert transport.calls[-1] == ("disconnect", "A")


@pytest.mark.asyncio
async def test_discovery_times_out(transport):
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    link.connect("A")
    await link.drain()
    transport.emit(Connected("A"))
    await link.drain()

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.DISCOVERY


@pytest.mark.asyncio
async def test_disconnecting_times_out(transport):
    """Test a transport that never confirms the disconnect still ends in IDLE"""
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    await make_ready(link, transport)
    link.disconnect()
    await link.drain()

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state == ConnectionState.idle()


@pytest.mark.asyncio
async def test_ready_has_no_timeout(transport):
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    await make_ready(link, transport)

    await asyncio.sleep(0.05)
    await link.drain()

    assert link.state.is_ready


@pytest.mark.asyncio
async def test_connect_while_ready_is_invalid(link, transport):
    await make_ready(link, transport)
    link.connect("B")
    await link.drain()

    assert link.state == ConnectionState.ready("A", "h")
    assert link.last_error.kind == ErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_scan_while_ready_is_invalid(link, transport):
    await make_ready(link, transport)
    link.start_scan()
    await link.drain()

    assert link.state.is_ready
    assert link.last_error.kind == ErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_stale_events_ignored(link, transport):
    """Test events for another device or phase change nothing"""
    link.connect("A")
    await link.drain()

    transport.emit(Connected("B"))
    transport.emit(AttributesResolved("A", "h"))
    transport.emit(Disconnected("B"))
    await link.drain()

    assert link.state == ConnectionState.connecting("A")


@pytest.mark.asyncio
async def test_link_lost_during_discovery(link, transport):
    link.connect("A")
    await link.drain()
    transport.emit(Connected("A"))
    await link.drain()

    transport.emit(Disconnected("A"))
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.CONNECT


@pytest.mark.asyncio
async def test_notifications_do_not_change_state(link, transport):
    await make_ready(link, transport)
    transport.emit(ValueNotified("A", b"OK\xff"))
    await link.drain()

    assert link.state.is_ready
    assert transport.writes == [b"0:0:0\n"]


@pytest.mark.asyncio
async def test_adapter_unavailable(link, transport):
    """Test radio loss latches TRANSPORT_UNAVAILABLE until it comes back"""
    await make_ready(link, transport)

    transport.emit(AdapterStateChanged(False, "Bluetooth is powered off"))
    await link.drain()
    assert link.state == ConnectionState.idle()
    assert link.transport_available is False
    assert link.last_error.message == "Bluetooth is powered off"

    calls = len(transport.calls)
    link.start_scan()
    link.connect("A")
    await link.drain()
    assert len(transport.calls) == calls
    assert link.last_error.kind == ErrorKind.TRANSPORT_UNAVAILABLE

    transport.emit(AdapterStateChanged(True))
    link.start_scan()
    await link.drain()
    assert link.state.phase == LinkPhase.SCANNING


@pytest.mark.asyncio
async def test_set_max_speed(link, transport):
    await make_ready(link, transport)

    link.set_max_speed(100)
    link.drive(0.0, 1.0)
    await link.drain()
    assert transport.last_write == b"100:100:0\n"

    link.set_max_speed(5000)
    await link.drain()
    assert link.mapper.max_speed == 100
    assert link.last_error.kind == ErrorKind.INVALID_STATE


@pytest.mark.asyncio
async def test_clear_error(link, transport):
    link.send_aux(7)
    await link.drain()
    assert link.last_error is not None

    link.clear_error()
    await link.drain()
    assert link.last_error is None


@pytest.mark.asyncio
async def test_latest_error_wins(link, transport):
    link.connect("A")
    await link.drain()
    transport.emit(ConnectFailed("A", "first"))
    await link.drain()
    link.connect("A")
    await link.drain()
    transport.emit(ConnectFailed("A", "second"))
    await link.drain()

    assert link.last_error.message == "second"


@pytest.mark.asyncio
async def test_callback_errors_are_contained(link, transport):
    def broken(old, new):
        raise RuntimeError("observer bug")

    link.add_state_callback(broken)
    await make_ready(link, transport)

    assert link.state.is_ready


@pytest.mark.asyncio
async def test_run_with_auto_transport():
    """Test the background worker against a self-completing transport"""
    transport = MockTransport(devices=[A, B], auto_complete=True)
    link = LinkManager(transport, LinkConfig(max_speed=255), throttler=Throttler(send_interval=0.0))
    task = asyncio.create_task(link.run())

    link.start_scan()
    await asyncio.sleep(0.01)
    assert [d.id for d in link.devices] == ["A", "B"]

    link.connect("A")
    await asyncio.sleep(0.01)
    assert link.state.is_ready
    assert link.state.write_handle == HM10_CHARACTERISTIC_UUID

    link.drive(-1.0, 0.0)
    await asyncio.sleep(0.01)
    assert transport.last_write == b"-255:255:0\n"

    link.stop()
    await task

    assert link.state == ConnectionState.idle()
    assert transport.last_write == b"0:0:0\n"
    assert transport.calls[-1] == ("disconnect", "A")


@pytest.mark.asyncio
async def test_auto_transport_missing_service():
    transport = MockTransport(auto_complete=True, has_service=False)
    link = LinkManager(transport)
    link.connect("A")
    await link.drain()

    assert link.state.phase == LinkPhase.IDLE
    assert link.last_error.kind == ErrorKind.DISCOVERY


@pytest.mark.asyncio
async def test_post_from_other_thread(link):
    """Test commands posted off the loop thread are marshalled onto it"""
    task = asyncio.create_task(link.run())
    await asyncio.sleep(0)

    await asyncio.get_running_loop().run_in_executor(None, link.start_scan)
    await asyncio.sleep(0.01)
    assert link.state.phase == LinkPhase.SCANNING

    link.stop()
    await task


@pytest.mark.asyncio
async def test_failed_aux_write_restores_window(link, transport, clock):
    """Test a failed aux send does not rate-limit the next drive sample"""
    await make_ready(link, transport)
    clock.advance(1.0)

    transport.fail_writes = True
    link.send_aux(1)
    await link.drain()

    transport.fail_writes = False
    clock.advance(0.01)
    link.send(200, 200)
    await link.drain()

    assert transport.last_write == b"200:200:0\n"


@pytest.mark.asyncio
async def test_remove_state_callback(link, transport):
    states = []

    def callback(old, new):
        states.append(new)

    link.add_state_callback(callback)
    link.remove_state_callback(callback)
    link.remove_state_callback(callback)
    link.start_scan()
    await link.drain()

    assert states == []


@pytest.mark.asyncio
async def test_stale_drop_confirmation_after_timeout(transport):
    """Test the disconnect owed for a timed-out attempt does not end the retry"""
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    link.connect("A")
    await link.drain()
    await asyncio.sleep(0.05)
    await link.drain()
    assert transport.calls[-1] == ("disconnect", "A")

    link.connect("A")
    await link.drain()
    transport.emit(Disconnected("A"))
    await link.drain()

    assert link.state == ConnectionState.connecting("A")


@pytest.mark.asyncio
async def test_pending_drop_does_not_hide_ready_disconnect(transport):
    """Test a real disconnect from READY is handled after a failed attempt"""
    link = LinkManager(transport, LinkConfig(link_timeout=0.01))
    link.connect("A")
    await link.drain()
    await asyncio.sleep(0.05)
    await link.drain()

    await make_ready(link, transport)
    transport.emit(Disconnected("A"))
    await link.drain()
    assert link.state == ConnectionState.idle()
