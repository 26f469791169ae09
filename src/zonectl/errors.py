"""
Error taxonomy shared by the protocol engine and its callers.
"""

from enum import Enum


class ErrorKind(Enum):
    """Category of a failure reported by the core."""

    RADIO_OFF = "radio_off"
    NOT_CONNECTED = "not_connected"
    TIMEOUT = "timeout"
    PERIPHERAL = "peripheral"
    WRITE_FAILED = "write_failed"
    READ_FAILED = "read_failed"
    VALIDATION = "validation"


class ZoneError(Exception):
    """Error with a kind, so callers can tell a timeout from a device failure."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"ZoneError({self.kind.name}, {self.message!r})"


class FirmwareImageError(ZoneError):
    """Firmware file cannot be uploaded as given."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.VALIDATION, message)
