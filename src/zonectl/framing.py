"""
Telemetry stream reassembly.

The device streams fixed-length samples, each starting with the 40 E1
marker, with no delimiter and no relation between sample and notification
boundaries. StreamReassembler rebuilds samples from arbitrary deliveries.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List

from .core import SAMPLE_LENGTH_V1
from .protocol import SAMPLE_MARKER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sample:
    """One telemetry sample.

    Attributes:
        timestamp: Wall-clock seconds at extraction, truncated to 32 bits
        payload: The full sample, marker included
    """

    timestamp: int
    payload: bytes


class StreamReassembler:
    """Recovers marker-aligned, fixed-length samples from a byte stream."""

    def __init__(
        self,
        sample_length: int = SAMPLE_LENGTH_V1,
        marker: bytes = SAMPLE_MARKER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize with an empty assembly buffer.

        Args:
            sample_length: Total sample size in bytes, marker included
            marker: Bytes every sample starts with
            clock: Wall-clock source used to timestamp samples
        """
        if sample_length < len(marker):
            raise ValueError(
                f"sample_length {sample_length} shorter than marker {marker.hex()}"
            )
        self.sample_length = sample_length
        self.marker = bytes(marker)
        self._clock = clock
        self._buffer = bytearray()
        self.samples: List[Sample] = []
        self.skipped_bytes = 0

    @property
    def pending(self) -> int:
        """Bytes held back waiting for the rest of a sample."""
        return len(self._buffer)

    def reset(self) -> None:
        """Drop buffered bytes and completed samples."""
        self._buffer.clear()
        self.samples.clear()
        self.skipped_bytes = 0

    def discard_pending(self) -> None:
        """Drop a partial sample, keeping completed ones."""
        self._buffer.clear()

    def feed(self, data: bytes) -> List[Sample]:
        """Append a delivery and extract every sample it completes.

        Args:
            data: Raw notification bytes

        Returns:
            Samples completed by this delivery, in stream order
        """
        if not data:
            return []

        self._buffer.extend(data)
        buf = self._buffer
        marker_len = len(self.marker)
        completed: List[Sample] = []
        pos = 0

        while pos + marker_len <= len(buf):
            found = buf.find(self.marker, pos)
            if found < 0:
                # Keep a possible partial marker at the tail
                skip_to = len(buf) - marker_len + 1
                self.skipped_bytes += skip_to - pos
                pos = skip_to
                break

            self.skipped_bytes += found - pos
            pos = found
            end = pos + self.sample_length
            if end > len(buf):
                break

            sample = Sample(
                timestamp=int(self._clock()) & 0xFFFFFFFF,
                payload=bytes(buf[pos:end]),
            )
            completed.append(sample)
            pos = end

        if pos:
            del buf[:pos]

        if completed:
            self.samples.extend(completed)
            logger.debug(
                f"Extracted {len(completed)} sample(s), {len(buf)} byte(s) pending"
            )
        return completed


def extract_samples(
    data: bytes,
    sample_length: int = SAMPLE_LENGTH_V1,
    clock: Callable[[], float] = time.time,
) -> List[Sample]:
    """Extract all complete samples from a raw capture in one pass."""
    return StreamReassembler(sample_length=sample_length, clock=clock).feed(data)
