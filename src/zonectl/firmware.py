"""
Firmware upload state machine.

The upload is strictly request/ack: a 5-byte header frame, then the image
up to its last 32 bytes in 128-byte chunks, then the 32-byte tail. Each
frame is sent only after the device acknowledges the previous one.
"""

import logging
from enum import Enum
from typing import Callable

from .errors import FirmwareImageError
from .events import FirmwareCompleted, FirmwareFailed, FirmwareProgress, ZoneEvent
from .protocol import (
    CHUNK_ACK,
    FIRMWARE_CHUNK_SIZE,
    FIRMWARE_HEADER_LENGTH,
    FIRMWARE_MIN_SIZE,
    FIRMWARE_TAIL_LENGTH,
    HEADER_ACK,
    TAIL_ACK,
    encode_firmware_chunk,
    encode_firmware_header,
    encode_firmware_tail,
)

logger = logging.getLogger(__name__)


class FirmwareState(Enum):
    IDLE = "idle"
    HEADER_SENT = "header_sent"
    CHUNK_IN_FLIGHT = "chunk_in_flight"
    TAIL_SENT = "tail_sent"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {FirmwareState.COMPLETED, FirmwareState.FAILED, FirmwareState.CANCELLED}
)


class FirmwareTransfer:
    """Drives one firmware upload from acknowledgements."""

    HEADER_LENGTH = FIRMWARE_HEADER_LENGTH
    CHUNK_SIZE = FIRMWARE_CHUNK_SIZE

    def __init__(
        self,
        image: bytes,
        send: Callable[[bytes], bool],
        emit: Callable[[ZoneEvent], None],
    ) -> None:
        """Prepare a transfer without sending anything.

        Args:
            image: Complete firmware image
            send: Writes a frame; returns False if it could not be sent
            emit: Receives progress, completion and failure events

        Raises:
            FirmwareImageError: If the image is shorter than 37 bytes
        """
        if len(image) < FIRMWARE_MIN_SIZE:
            raise FirmwareImageError(
                f"Firmware file too small (requires at least {FIRMWARE_MIN_SIZE} bytes)"
            )
        self.image = bytes(image)
        self.offset = 0
        self.tail_start = len(self.image) - FIRMWARE_TAIL_LENGTH
        self.state = FirmwareState.IDLE
        self.bytes_sent = 0
        self._send = send
        self._emit = emit

    @property
    def total_bytes(self) -> int:
        return len(self.image)

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES and self.state != FirmwareState.IDLE

    def start(self) -> None:
        """Send the header frame."""
        if self.state != FirmwareState.IDLE:
            logger.warning(f"Firmware transfer already started ({self.state.name})")
            return
        logger.info(f"Firmware: sending header for {self.total_bytes} byte image")
        self.state = FirmwareState.HEADER_SENT
        if not self._write(encode_firmware_header(self.image)):
            return
        self._report_progress(self.HEADER_LENGTH)

    def handle_reply(self, data: bytes) -> bool:
        """Advance on an acknowledgement.

        Args:
            data: Inbound frame

        Returns:
            True if the frame was an ack this transfer consumed
        """
        frame = bytes(data)
        if self.state == FirmwareState.HEADER_SENT and frame == HEADER_ACK:
            logger.info("Firmware: received header ACK")
            self._send_next()
            return True
        if self.state == FirmwareState.CHUNK_IN_FLIGHT and frame == CHUNK_ACK:
            logger.debug(f"Firmware: received chunk ACK at offset {self.offset}")
            self._send_next()
            return True
        if self.state == FirmwareState.TAIL_SENT and frame == TAIL_ACK:
            logger.info("Firmware: received tail ACK - update complete")
            self.state = FirmwareState.COMPLETED
            self._report_progress(self.total_bytes)
            self._emit(FirmwareCompleted(total_bytes=self.total_bytes))
            return True
        return False

    def fail(self, reason: str) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.error(f"Firmware update failed: {reason}")
        self.state = FirmwareState.FAILED
        self._emit(FirmwareFailed(error=reason))

    def cancel(self) -> None:
        """Stop sending further frames; nothing is sent to the device."""
        if self.state in TERMINAL_STATES:
            return
        logger.info("Firmware update cancelled")
        self.state = FirmwareState.CANCELLED

    def _send_next(self) -> None:
        if self.offset >= self.tail_start:
            self._send_tail()
            return

        size = min(self.CHUNK_SIZE, self.tail_start - self.offset)
        frame = encode_firmware_chunk(self.image, self.offset, size)
        self.state = FirmwareState.CHUNK_IN_FLIGHT
        if not self._write(frame):
            return
        self.offset += size
        # Header bytes are re-sent as the start of the body; count them once
        self._report_progress(min(self.tail_start, max(self.HEADER_LENGTH, self.offset)))

    def _send_tail(self) -> None:
        try:
            frame = encode_firmware_tail(self.image)
        except FirmwareImageError as e:
            self.fail(str(e))
            return
        self.state = FirmwareState.TAIL_SENT
        self._write(frame)

    def _write(self, frame: bytes) -> bool:
        if self._send(frame):
            return True
        self.fail("Could not write firmware frame")
        return False

    def _report_progress(self, value: int) -> None:
        self.bytes_sent = max(self.bytes_sent, value)
        self._emit(FirmwareProgress(bytes_sent=self.bytes_sent, total_bytes=self.total_bytes))
