"""
Incremental, crash-safe recording of telemetry samples to CSV.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, TextIO, Tuple

from .framing import Sample

logger = logging.getLogger(__name__)

FILE_PREFIX = "ZonePcks"
STAMP_FORMAT = "%m%d%Y_%H%M"


def format_sample_line(sample: Sample) -> str:
    """Render a sample as '<timestamp>,<HEX HEX ...>' with a trailing newline."""
    hex_bytes = " ".join(f"{b:02X}" for b in sample.payload)
    return f"{sample.timestamp},{hex_bytes}\n"


def parse_sample_line(line: str) -> Tuple[int, bytes]:
    """Parse one exported line back into (timestamp, payload).

    Raises:
        ValueError: If the line is not in export format
    """
    timestamp, sep, hex_bytes = line.strip().partition(",")
    if not sep:
        raise ValueError(f"Not a sample line: {line!r}")
    return int(timestamp), bytes.fromhex(hex_bytes)


def read_recording(path: Path) -> List[Tuple[int, bytes]]:
    """Load every sample from an exported recording."""
    with open(path, "r", encoding="ascii") as f:
        return [parse_sample_line(line) for line in f if line.strip()]


def serial_suffix(serial_number: Optional[str]) -> str:
    """Last five digits of a serial number, zero padded."""
    digits = "".join(c for c in (serial_number or "") if c.isdigit())
    return digits[-5:].rjust(5, "0")


class SessionRecorder:
    """Writes samples to disk one line at a time while a workout runs."""

    def __init__(
        self,
        directory: Path,
        serial_number: Optional[str] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize recorder; nothing is created until open().

        Args:
            directory: Where recording and export files are written
            serial_number: Device serial used in file names
            now: Local time source for file name stamps
        """
        self.directory = Path(directory)
        self.serial_number = serial_number
        self._now = now
        self._file: Optional[TextIO] = None
        self.path: Optional[Path] = None
        self.started_at: Optional[datetime] = None
        self.sample_count = 0

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def _base_name(self) -> str:
        stamp = (self.started_at or self._now()).strftime(STAMP_FORMAT)
        return f"{FILE_PREFIX}_{serial_suffix(self.serial_number)}_{stamp}"

    def open(self) -> Path:
        """Create the in-progress recording file, closing any previous one."""
        self.close()
        self.started_at = self._now()
        self.sample_count = 0
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"{self._base_name()}_recording.csv"
        self._file = open(self.path, "w", encoding="ascii")
        logger.info(f"Recording to {self.path}")
        return self.path

    def append(self, sample: Sample) -> None:
        """Write one sample and flush it to disk."""
        if self._file is None:
            logger.debug("Sample dropped: recorder not open")
            return
        self._file.write(format_sample_line(sample))
        self._file.flush()
        self.sample_count += 1

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def finalize(self) -> Optional[Path]:
        """Close and move the recording to its export name.

        Returns:
            Export path, or None if no samples were recorded (file removed)
        """
        self.close()
        path = self.path
        if path is None:
            return None
        if self.sample_count == 0:
            logger.info("No BLE data recorded")
            path.unlink(missing_ok=True)
            self._reset()
            return None

        target = self.directory / f"{self._base_name()}.csv"
        target.unlink(missing_ok=True)
        path.rename(target)
        logger.info(f"Saved {self.sample_count} sample(s) to {target}")
        self._reset()
        return target

    def discard(self) -> None:
        """Close and delete the recording."""
        self.close()
        if self.path is not None:
            self.path.unlink(missing_ok=True)
            logger.info(f"Discarded recording {self.path.name}")
        self._reset()

    def _reset(self) -> None:
        self.path = None
        self.started_at = None
        self.sample_count = 0
