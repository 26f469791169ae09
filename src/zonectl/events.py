"""
Events emitted by the connection manager and workout session.

Listeners receive one of the dataclasses below and dispatch on its type.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Tuple, Union

from .errors import ZoneError

if TYPE_CHECKING:
    from .devices import Device
    from .framing import Sample


@dataclass(frozen=True)
class RadioStateChanged:
    powered_on: bool


@dataclass(frozen=True)
class DevicesUpdated:
    """Throttled discovery flush; devices is the full known list."""

    devices: Tuple["Device", ...]


@dataclass(frozen=True)
class Connected:
    device: "Device"


@dataclass(frozen=True)
class ConnectionFailed:
    device: "Device"
    error: ZoneError
    reconnect: bool = False


@dataclass(frozen=True)
class Disconnected:
    device: "Device"
    error: Optional[Exception] = None
    expected: bool = False


@dataclass(frozen=True)
class SerialNumberUpdated:
    device: "Device"


@dataclass(frozen=True)
class FirmwareVersionUpdated:
    device: "Device"
    version: str


@dataclass(frozen=True)
class BatteryLevelUpdated:
    device: "Device"
    percent: int


@dataclass(frozen=True)
class CommandSent:
    data: bytes


@dataclass(frozen=True)
class CommandFailed:
    data: bytes
    error: ZoneError


@dataclass(frozen=True)
class ReplyReceived:
    data: bytes


@dataclass(frozen=True)
class TransportErrorEvent:
    error: ZoneError


@dataclass(frozen=True)
class FirmwareProgress:
    bytes_sent: int
    total_bytes: int

    @property
    def percent(self) -> int:
        if self.total_bytes <= 0:
            return 0
        return int(self.bytes_sent * 100 / self.total_bytes)


@dataclass(frozen=True)
class FirmwareCompleted:
    total_bytes: int


@dataclass(frozen=True)
class FirmwareFailed:
    error: str


@dataclass(frozen=True)
class RecordingStarted:
    path: Optional[Path]


@dataclass(frozen=True)
class SampleRecorded:
    sample: "Sample"
    count: int


@dataclass(frozen=True)
class RecordingStopped:
    """Recording ended; sample_count 0 means nothing was captured."""

    sample_count: int


@dataclass(frozen=True)
class RecordingSaved:
    path: Path
    sample_count: int


@dataclass(frozen=True)
class RecordingDiscarded:
    sample_count: int


@dataclass(frozen=True)
class ReconnectAttempt:
    device: "Device"
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class ReconnectGaveUp:
    device: "Device"
    sample_count: int


ZoneEvent = Union[
    RadioStateChanged,
    DevicesUpdated,
    Connected,
    ConnectionFailed,
    Disconnected,
    SerialNumberUpdated,
    FirmwareVersionUpdated,
    BatteryLevelUpdated,
    CommandSent,
    CommandFailed,
    ReplyReceived,
    TransportErrorEvent,
    FirmwareProgress,
    FirmwareCompleted,
    FirmwareFailed,
    RecordingStarted,
    SampleRecorded,
    RecordingStopped,
    RecordingSaved,
    RecordingDiscarded,
    ReconnectAttempt,
    ReconnectGaveUp,
]

Listener = Callable[[ZoneEvent], None]
