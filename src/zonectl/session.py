"""
Workout recording on top of a ConnectionManager.

WorkoutSession turns start/stop commands and the reply stream into a
recording: it waits for the start acknowledgement, reassembles telemetry
samples, writes them through a SessionRecorder and, if the link drops
mid-workout, runs a bounded reconnect loop before asking the caller to save
or discard what was captured.
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .core import ZoneConfig
from .devices import Device
from .events import (
    Connected,
    ConnectionFailed,
    Disconnected,
    ReconnectAttempt,
    ReconnectGaveUp,
    RecordingDiscarded,
    RecordingSaved,
    RecordingStarted,
    RecordingStopped,
    ReplyReceived,
    SampleRecorded,
    ZoneEvent,
)
from .framing import StreamReassembler
from .manager import ConnectionManager
from .protocol import strip_start_ack
from .recorder import SessionRecorder

logger = logging.getLogger(__name__)


class RecordingState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_ACK = "awaiting_ack"
    RECORDING = "recording"
    STOPPED = "stopped"


ACTIVE_STATES = frozenset(
    {RecordingState.STARTING, RecordingState.AWAITING_ACK, RecordingState.RECORDING}
)


class WorkoutSession:
    """Records one workout at a time from the connected device."""

    def __init__(
        self,
        manager: ConnectionManager,
        config: Optional[ZoneConfig] = None,
        output_dir: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize session and subscribe to manager events.

        Args:
            manager: Connection manager for the device
            config: Settings (the manager's if None)
            output_dir: Recording directory (config.output_dir if None)
            clock: Wall clock for sample timestamps
            now: Local time for recording file names
        """
        self.manager = manager
        self.config = config or manager.config
        self.output_dir = Path(output_dir or self.config.output_dir)
        self.reassembler = StreamReassembler(self.config.sample_length, clock=clock)
        self.recorder: Optional[SessionRecorder] = None
        self.state = RecordingState.IDLE
        self._now = now
        self._start_handle: Optional[asyncio.TimerHandle] = None

        self._reconnect_device: Optional[Device] = None
        self._reconnect_attempt = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None

        manager.add_listener(self._on_event)

    @property
    def sample_count(self) -> int:
        return self.recorder.sample_count if self.recorder is not None else 0

    @property
    def is_recording(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_device is not None

    @property
    def has_unsaved_data(self) -> bool:
        return self.state == RecordingState.STOPPED and self.sample_count > 0

    # ========== Workout control ==========

    def start_workout(self) -> bool:
        """Set the device clock, then send start after a short delay.

        Returns:
            False if a recording is already active or unsaved, or the
            set-time command could not be sent
        """
        if self.is_recording or self.has_unsaved_data:
            logger.warning("A workout recording is already in progress")
            return False
        if not self.manager.set_device_time():
            return False

        self.reassembler.reset()
        self.state = RecordingState.STARTING
        self._start_handle = self.manager.loop.call_later(
            self.config.start_after_time_delay, self._send_start
        )
        return True

    def _send_start(self) -> None:
        self._start_handle = None
        if self.state != RecordingState.STARTING:
            return
        # The first reply after this command is the start acknowledgement
        if self.manager.start_workout():
            self.state = RecordingState.AWAITING_ACK
        else:
            self.state = RecordingState.IDLE

    def stop_workout(self) -> int:
        """Send stop and close the recording.

        Returns:
            Samples captured; 0 means no data (the recording is discarded)
        """
        self.manager.stop_workout()
        if not self.is_recording:
            return self.sample_count
        return self._finish()

    def save(self) -> Optional[Path]:
        """Finalize a stopped recording for export.

        Returns:
            Path of the exported CSV, or None if there was nothing to save
        """
        if self.is_recording:
            self.manager.stop_workout()
            self._finish()
        recorder, self.recorder = self.recorder, None
        self.state = RecordingState.IDLE
        self.reassembler.reset()
        if recorder is None:
            return None
        count = recorder.sample_count
        path = recorder.finalize()
        if path is not None:
            self.manager.emit(RecordingSaved(path=path, sample_count=count))
        return path

    def discard(self) -> None:
        """Delete the recording instead of exporting it."""
        if self.is_recording:
            self.manager.stop_workout()
        self._cancel_start()
        recorder, self.recorder = self.recorder, None
        count = recorder.sample_count if recorder is not None else 0
        if recorder is not None:
            recorder.discard()
        self.state = RecordingState.IDLE
        self.reassembler.reset()
        self.manager.emit(RecordingDiscarded(sample_count=count))

    def _finish(self) -> int:
        self._cancel_start()
        self.cancel_reconnect(finish=False)
        count = self.sample_count
        if self.recorder is not None:
            self.recorder.close()
        if count == 0:
            logger.info("No BLE data")
            if self.recorder is not None:
                self.recorder.discard()
            self.recorder = None
            self.state = RecordingState.IDLE
            self.reassembler.reset()
        else:
            self.state = RecordingState.STOPPED
        self.manager.emit(RecordingStopped(sample_count=count))
        return count

    def _cancel_start(self) -> None:
        if self._start_handle is not None:
            self._start_handle.cancel()
            self._start_handle = None

    # ========== Inbound data ==========

    def _on_event(self, event: ZoneEvent) -> None:
        if isinstance(event, ReplyReceived):
            self._handle_reply(event.data)
        elif isinstance(event, Disconnected):
            self._handle_disconnect(event)
        elif isinstance(event, Connected):
            self._handle_reconnected(event.device)
        elif isinstance(event, ConnectionFailed) and event.reconnect:
            if self.is_reconnecting:
                logger.info(f"Reconnect attempt {self._reconnect_attempt} failed: {event.error}")
                self._schedule_reconnect()

    def _handle_reply(self, data: bytes) -> None:
        if self.state == RecordingState.AWAITING_ACK:
            self._begin_recording()
            data = strip_start_ack(data)
        if self.state != RecordingState.RECORDING or not data or self.recorder is None:
            return
        for sample in self.reassembler.feed(data):
            self.recorder.append(sample)
            self.manager.emit(SampleRecorded(sample=sample, count=self.recorder.sample_count))

    def _begin_recording(self) -> None:
        device = self.manager.device
        self.recorder = SessionRecorder(
            self.output_dir,
            serial_number=device.serial_number if device is not None else None,
            now=self._now,
        )
        path: Optional[Path]
        try:
            path = self.recorder.open()
        except OSError as e:
            # Nothing is persisted without a file; stop will report no data
            logger.error(f"Could not create recording file: {e}")
            path = None
        self.reassembler.reset()
        self.state = RecordingState.RECORDING
        self.manager.emit(RecordingStarted(path=path))

    # ========== Reconnection ==========

    def _handle_disconnect(self, event: Disconnected) -> None:
        if self.state in (RecordingState.STARTING, RecordingState.AWAITING_ACK):
            # Start was never acknowledged; nothing to resume
            self._cancel_start()
            self.state = RecordingState.IDLE
            return
        if not self.is_recording:
            return
        if event.expected or self.config.reconnect_attempts <= 0:
            self._finish()
            return
        logger.warning(f"Lost connection to {event.device.name} during workout, reconnecting")
        self._reconnect_device = event.device
        self._reconnect_attempt = 0
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        device = self._reconnect_device
        if device is None:
            return
        if self._reconnect_attempt >= self.config.reconnect_attempts:
            logger.error(f"Giving up on {device.name} after {self._reconnect_attempt} attempt(s)")
            self._reconnect_device = None
            count = self._finish()
            self.manager.emit(ReconnectGaveUp(device=device, sample_count=count))
            return
        self._reconnect_handle = self.manager.loop.call_later(
            self.config.reconnect_interval, self._attempt_reconnect
        )

    def _attempt_reconnect(self) -> None:
        self._reconnect_handle = None
        device = self._reconnect_device
        if device is None:
            return
        self._reconnect_attempt += 1
        logger.info(
            f"Reconnect attempt {self._reconnect_attempt}/{self.config.reconnect_attempts} to {device.name}"
        )
        self.manager.emit(
            ReconnectAttempt(
                device=device,
                attempt=self._reconnect_attempt,
                max_attempts=self.config.reconnect_attempts,
            )
        )
        self.manager.connect(device, reconnect=True)

    def _handle_reconnected(self, device: Device) -> None:
        if self._reconnect_device is None or device.address != self._reconnect_device.address:
            return
        logger.info(f"Reconnected to {device.name}, resuming recording")
        self._reconnect_device = None
        self._reconnect_attempt = 0
        # Bytes from before the drop cannot complete a sample
        self.reassembler.discard_pending()

    def cancel_reconnect(self, finish: bool = True) -> None:
        """Stop the reconnect loop.

        Args:
            finish: Also close the recording so the caller can save it
        """
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        was_reconnecting = self._reconnect_device is not None
        self._reconnect_device = None
        self._reconnect_attempt = 0
        if finish and was_reconnecting and self.is_recording:
            self._finish()
