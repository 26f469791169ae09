"""Firmware upload state machine."""

import pytest

from zonectl.errors import FirmwareImageError
from zonectl.events import FirmwareCompleted, FirmwareFailed, FirmwareProgress
from zonectl.firmware import FirmwareState, FirmwareTransfer
from zonectl.protocol import CHUNK_ACK, HEADER_ACK, TAIL_ACK


class Recorder:
    def __init__(self, accept: bool = True):
        self.frames = []
        self.events = []
        self.accept = accept

    def send(self, frame: bytes) -> bool:
        self.frames.append(frame)
        return self.accept

    def emit(self, event) -> None:
        self.events.append(event)


def run_to_completion(transfer: FirmwareTransfer) -> None:
    transfer.start()
    assert transfer.handle_reply(HEADER_ACK)
    while transfer.state == FirmwareState.CHUNK_IN_FLIGHT:
        assert transfer.handle_reply(CHUNK_ACK)
    assert transfer.state == FirmwareState.TAIL_SENT
    assert transfer.handle_reply(TAIL_ACK)


@pytest.mark.parametrize("size", [37, 38, 160, 300, 1000])
def test_chunks_tile_body_then_tail(size):
    image = bytes(i % 251 for i in range(size))
    rec = Recorder()
    transfer = FirmwareTransfer(image, rec.send, rec.emit)

    run_to_completion(transfer)

    header, *chunks, tail = rec.frames
    assert header[:2] == bytes([0x40, 0x12])
    assert all(c[:2] == bytes([0x40, 0x13]) for c in chunks)
    assert all(len(c) <= 2 + 128 for c in chunks)
    assert b"".join(c[2:] for c in chunks) == image[: size - 32]
    assert tail == bytes([0x40, 0x14]) + image[-32:]
    assert transfer.state == FirmwareState.COMPLETED


def test_progress_is_monotonic_and_ends_at_total():
    image = bytes(300)
    rec = Recorder()
    run_to_completion(FirmwareTransfer(image, rec.send, rec.emit))

    progress = [e.bytes_sent for e in rec.events if isinstance(e, FirmwareProgress)]
    assert progress == [5, 128, 256, 268, 300]
    assert progress == sorted(progress)
    assert [e for e in rec.events if isinstance(e, FirmwareCompleted)] == [FirmwareCompleted(300)]


def test_acks_only_accepted_in_matching_state():
    rec = Recorder()
    transfer = FirmwareTransfer(bytes(300), rec.send, rec.emit)
    transfer.start()

    assert not transfer.handle_reply(CHUNK_ACK)
    assert not transfer.handle_reply(TAIL_ACK)
    assert len(rec.frames) == 1

    assert transfer.handle_reply(HEADER_ACK)
    assert not transfer.handle_reply(HEADER_ACK)
    assert transfer.state == FirmwareState.CHUNK_IN_FLIGHT
    assert len(rec.frames) == 2


def test_unrelated_replies_ignored():
    rec = Recorder()
    transfer = FirmwareTransfer(bytes(300), rec.send, rec.emit)
    transfer.start()
    assert not transfer.handle_reply(bytes([0x40, 0x86, 0x00, 0x50]))
    assert transfer.state == FirmwareState.HEADER_SENT


def test_send_failure_fails_transfer():
    rec = Recorder(accept=False)
    transfer = FirmwareTransfer(bytes(300), rec.send, rec.emit)
    transfer.start()

    assert transfer.state == FirmwareState.FAILED
    assert not transfer.is_active
    assert [e for e in rec.events if isinstance(e, FirmwareFailed)]


def test_cancel_stops_sending():
    rec = Recorder()
    transfer = FirmwareTransfer(bytes(300), rec.send, rec.emit)
    transfer.start()
    transfer.cancel()

    assert not transfer.handle_reply(HEADER_ACK)
    assert transfer.state == FirmwareState.CANCELLED
    assert len(rec.frames) == 1


def test_image_too_small():
    rec = Recorder()
    with pytest.raises(FirmwareImageError):
        FirmwareTransfer(bytes(36), rec.send, rec.emit)
