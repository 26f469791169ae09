"""Workout recording, start acknowledgement and the reconnect loop."""

from datetime import datetime

import pytest
from conftest import UART_CHAR, UART_SERVICE, ZONE_ADDRESS, make_ready, of_type

from zonectl.core import ZoneConfig
from zonectl.events import (
    ReconnectAttempt,
    ReconnectGaveUp,
    RecordingDiscarded,
    RecordingSaved,
    RecordingStarted,
    RecordingStopped,
    SampleRecorded,
)
from zonectl.manager import ConnectionManager
from zonectl.protocol import SAMPLE_MARKER, START_ACK
from zonectl.recorder import read_recording
from zonectl.session import RecordingState, WorkoutSession

START = bytes([0x40, 0x08])
STOP = bytes([0x40, 0x09])


def make_sample(fill: int) -> bytes:
    return SAMPLE_MARKER + bytes([fill]) * 81


S1, S2, S3 = make_sample(0x11), make_sample(0x22), make_sample(0x33)


def new_session(manager) -> WorkoutSession:
    return WorkoutSession(manager, clock=lambda: 1000.0, now=lambda: datetime(2024, 3, 5, 14, 7))


@pytest.fixture
def session(manager):
    return new_session(manager)


def begin(session, manager, transport, loop, device):
    make_ready(manager, transport, device)
    assert session.start_workout()
    loop.advance(0.15)
    assert transport.writes[-1] == START
    assert session.state == RecordingState.AWAITING_ACK


def test_time_is_set_before_start(session, manager, transport, loop, zone_device):
    make_ready(manager, transport, zone_device)
    assert session.start_workout()

    assert transport.writes[-1][:2] == bytes([0x40, 0x04])
    assert session.state == RecordingState.STARTING

    loop.advance(0.05)
    assert START not in transport.writes
    loop.advance(0.1)
    assert transport.writes[-1] == START


def test_start_without_connection(session, transport):
    assert not session.start_workout()
    assert session.state == RecordingState.IDLE
    assert transport.writes == []


def test_recording_strips_start_ack(session, manager, transport, loop, zone_device, events, tmp_path):
    begin(session, manager, transport, loop, zone_device)

    transport.sink.on_value(UART_CHAR, START_ACK + S1[:40])
    assert of_type(events, RecordingStarted)
    assert session.state == RecordingState.RECORDING
    assert session.sample_count == 0

    transport.sink.on_value(UART_CHAR, S1[40:] + S2)
    recorded = of_type(events, SampleRecorded)
    assert [e.sample.payload for e in recorded] == [S1, S2]
    assert [e.count for e in recorded] == [1, 2]

    assert session.stop_workout() == 2
    assert transport.writes[-1] == STOP
    assert session.state == RecordingState.STOPPED
    assert session.has_unsaved_data

    path = session.save()
    assert path == tmp_path / "ZonePcks_00001_03052024_1407.csv"
    assert read_recording(path) == [(1000, S1), (1000, S2)]
    assert of_type(events, RecordingSaved)[0].sample_count == 2
    assert session.state == RecordingState.IDLE


def test_no_data_discards_file(session, manager, transport, loop, zone_device, events, tmp_path):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK)

    assert session.stop_workout() == 0
    assert of_type(events, RecordingStopped) == [RecordingStopped(sample_count=0)]
    assert session.state == RecordingState.IDLE
    assert list(tmp_path.iterdir()) == []
    assert session.save() is None


def test_new_workout_refused_while_unsaved(session, manager, transport, loop, zone_device):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    session.stop_workout()

    assert not session.start_workout()


def test_discard(session, manager, transport, loop, zone_device, events, tmp_path):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    session.stop_workout()
    session.discard()

    assert of_type(events, RecordingDiscarded) == [RecordingDiscarded(sample_count=1)]
    assert list(tmp_path.iterdir()) == []
    assert session.state == RecordingState.IDLE


def test_disconnect_while_starting_resets(session, manager, transport, zone_device, loop):
    make_ready(manager, transport, zone_device)
    session.start_workout()
    transport.sink.on_disconnected(ZONE_ADDRESS, OSError("lost"))

    assert session.state == RecordingState.IDLE
    loop.advance(1.0)
    assert START not in transport.writes


def test_requested_disconnect_finishes_recording(session, manager, transport, loop, zone_device):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    manager.disconnect()
    transport.sink.on_disconnected(ZONE_ADDRESS, None)

    assert session.state == RecordingState.STOPPED
    assert not session.is_reconnecting


def test_reconnect_resumes_recording(session, manager, transport, loop, zone_device, events):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1 + S2[:30])
    transport.sink.on_disconnected(ZONE_ADDRESS, OSError("link lost"))

    assert session.is_reconnecting
    assert session.is_recording

    loop.advance(2.0)
    (attempt,) = of_type(events, ReconnectAttempt)
    assert attempt.attempt == 1
    assert attempt.max_attempts == 5
    assert transport.named("connect")[-1] == ("connect", ZONE_ADDRESS)

    transport.sink.on_connected(ZONE_ADDRESS)
    transport.sink.on_characteristics_discovered(UART_SERVICE, [UART_CHAR])
    assert not session.is_reconnecting

    # The partial sample from before the drop is gone
    transport.sink.on_value(UART_CHAR, S2[30:] + S3)
    assert session.sample_count == 2
    assert [e.sample.payload for e in of_type(events, SampleRecorded)] == [S1, S3]


def test_reconnect_gives_up(transport, loop, zone_device, tmp_path):
    config = ZoneConfig(reconnect_attempts=2, reconnect_interval=1.0, output_dir=tmp_path)
    manager = ConnectionManager(transport, loop=loop, config=config)
    manager.on_radio_state(True)
    events = []
    manager.add_listener(events.append)
    session = new_session(manager)

    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    transport.sink.on_disconnected(ZONE_ADDRESS, OSError("link lost"))

    loop.advance(1.0)
    transport.sink.on_connect_failed(ZONE_ADDRESS, OSError("not found"))
    loop.advance(1.0)
    transport.sink.on_connect_failed(ZONE_ADDRESS, OSError("not found"))

    assert len(of_type(events, ReconnectAttempt)) == 2
    (gave_up,) = of_type(events, ReconnectGaveUp)
    assert gave_up.sample_count == 1
    assert session.state == RecordingState.STOPPED
    assert session.has_unsaved_data
    assert not session.is_reconnecting


def test_cancel_reconnect_finishes(session, manager, transport, loop, zone_device):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    transport.sink.on_disconnected(ZONE_ADDRESS, OSError("link lost"))

    session.cancel_reconnect()

    assert session.state == RecordingState.STOPPED
    loop.advance(5.0)
    assert transport.named("connect") == [("connect", ZONE_ADDRESS)]


def test_save_while_recording_stops_workout(session, manager, transport, loop, zone_device, tmp_path):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_value(UART_CHAR, START_ACK + S1)
    assert session.state == RecordingState.RECORDING

    path = session.save()

    assert transport.writes[-1] == STOP
    assert read_recording(path) == [(1000, S1)]
    assert session.state == RecordingState.IDLE


def test_disconnect_before_start_ack_does_not_record(session, manager, transport, loop, zone_device, events, tmp_path):
    begin(session, manager, transport, loop, zone_device)
    transport.sink.on_disconnected(ZONE_ADDRESS, OSError("link lost"))

    assert session.state == RecordingState.IDLE
    assert not session.is_reconnecting
    loop.advance(2.0)
    assert of_type(events, ReconnectAttempt) == []

    # Battery reply after a manual reconnect is not a start acknowledgement
    manager.connect(zone_device)
    transport.sink.on_connected(ZONE_ADDRESS)
    transport.sink.on_characteristics_discovered(UART_SERVICE, [UART_CHAR])
    loop.advance(1.5)
    transport.sink.on_value(UART_CHAR, bytes([0x40, 0x86, 0x00, 0x55]))

    assert session.state == RecordingState.IDLE
    assert of_type(events, RecordingStarted) == []
    assert list(tmp_path.iterdir()) == []
