"""
Zone wire protocol: command encoding and reply recognition.

Every command is a short byte string starting with 0x40. The encoders here
are pure functions; sequencing (time before start, acks between firmware
frames) is the caller's job.
"""

import re
import struct
import time
from typing import Optional

from .errors import FirmwareImageError

# Commands
START_WORKOUT = bytes([0x40, 0x08])
START_WORKOUT_EXTENDED = bytes([0x40, 0x08, 0x08, 0x07])
STOP_WORKOUT = bytes([0x40, 0x09])
SET_TIME_PREFIX = bytes([0x40, 0x04])
BATTERY_QUERY = bytes([0x40, 0x06])
POST_CONNECT_INIT = bytes([0x40, 0x21, 0x4B, 0x00, 0x00, 0x00, 0x32])

FIRMWARE_HEADER_PREFIX = bytes([0x40, 0x12])
FIRMWARE_CHUNK_PREFIX = bytes([0x40, 0x13])
FIRMWARE_TAIL_PREFIX = bytes([0x40, 0x14])
FIRMWARE_HEADER_TRAILER = 0xAD

# Replies
HEADER_ACK = bytes([0x40, 0x92, 0x00])
CHUNK_ACK = bytes([0x40, 0x93, 0x00])
TAIL_ACK = bytes([0x40, 0x94, 0x00])
START_ACK = bytes([0x40, 0x88, 0x00])
BATTERY_REPLY_PREFIX = bytes([0x40, 0x86])
SAMPLE_MARKER = bytes([0x40, 0xE1])

# Firmware image layout
FIRMWARE_HEADER_LENGTH = 5
FIRMWARE_TAIL_LENGTH = 32
FIRMWARE_CHUNK_SIZE = 128
FIRMWARE_MIN_SIZE = FIRMWARE_HEADER_LENGTH + FIRMWARE_TAIL_LENGTH

# Device clock runs on a fixed UTC-7 offset
DEVICE_UTC_OFFSET_SECONDS = 7 * 3600

_UINT32 = struct.Struct("<I")
_HEX_TEXT = re.compile(r"^[0-9A-Fa-fxX:\-_,;\s]*$")
_HEX_SEPARATORS = re.compile(r"0[xX]|[:\-_,;\s]")


def encode_start_workout(extended: bool = False) -> bytes:
    """Start workout command.

    Args:
        extended: Append the 08 07 suffix some firmware builds expect
    """
    return START_WORKOUT_EXTENDED if extended else START_WORKOUT


def encode_stop_workout() -> bytes:
    return STOP_WORKOUT


def encode_battery_query() -> bytes:
    return BATTERY_QUERY


def encode_led() -> bytes:
    """Blue LED command, also the post-connect init the firmware waits for."""
    return POST_CONNECT_INIT


def encode_set_time(epoch_seconds: Optional[int] = None) -> bytes:
    """Set device clock.

    Args:
        epoch_seconds: Unix time to send (current time if None)

    Returns:
        40 04 followed by the UTC-7 adjusted time as a little-endian uint32.
        Times before the offset saturate at zero; later ones wrap at 2**32.
    """
    if epoch_seconds is None:
        epoch_seconds = int(time.time())
    adjusted = max(0, int(epoch_seconds) - DEVICE_UTC_OFFSET_SECONDS)
    return SET_TIME_PREFIX + _UINT32.pack(adjusted & 0xFFFFFFFF)


def encode_firmware_header(image: bytes) -> bytes:
    """Firmware header frame.

    Bytes 1..4 of the image hold the payload length (little-endian); the
    device expects that value plus the 5 header bytes, followed by 0xAD.
    """
    length_field = bytes(image[1:FIRMWARE_HEADER_LENGTH]).ljust(4, b"\x00")
    (payload_length,) = _UINT32.unpack(length_field)
    adjusted = (payload_length + FIRMWARE_HEADER_LENGTH) & 0xFFFFFFFF
    return (
        FIRMWARE_HEADER_PREFIX
        + _UINT32.pack(adjusted)
        + bytes([FIRMWARE_HEADER_TRAILER])
    )


def encode_firmware_chunk(
    image: bytes, offset: int, size: int = FIRMWARE_CHUNK_SIZE
) -> bytes:
    """Firmware body frame carrying image[offset:offset + size]."""
    return FIRMWARE_CHUNK_PREFIX + bytes(image[offset : offset + size])


def encode_firmware_tail(image: bytes) -> bytes:
    """Firmware tail frame carrying the last 32 bytes of the image.

    Raises:
        FirmwareImageError: If the image is shorter than 32 bytes
    """
    tail = bytes(image[-FIRMWARE_TAIL_LENGTH:])
    if len(tail) != FIRMWARE_TAIL_LENGTH:
        raise FirmwareImageError("Tail size is not 32 bytes")
    return FIRMWARE_TAIL_PREFIX + tail


def strip_start_ack(data: bytes) -> bytes:
    """Remove a leading 40 88 00 start acknowledgement, if present."""
    if data[: len(START_ACK)] == START_ACK:
        return bytes(data[len(START_ACK) :])
    return bytes(data)


def parse_battery_reply(data: bytes) -> Optional[int]:
    """Battery percentage from a 40 86 reply.

    The two bytes after the opcode are a big-endian level, clamped to 0..100.
    Newer firmware appends a voltage which is ignored here.

    Returns:
        Percentage, or None if the frame is not a battery reply
    """
    if len(data) < 4 or data[:2] != BATTERY_REPLY_PREFIX:
        return None
    value = (data[2] << 8) | data[3]
    return max(0, min(100, value))


def format_hex(data: bytes, prefix: str = "") -> str:
    """Space separated uppercase hex, optionally prefixed per byte (e.g. '0x')."""
    return " ".join(f"{prefix}{b:02X}" for b in data)


def load_firmware_image(raw: bytes) -> bytes:
    """Turn the contents of a firmware file into the bytes to upload.

    Firmware is shipped either as a binary image or as hex text such as
    ``40 12 0x1F, AB:CD``. Text made only of hex digits, ``0x`` prefixes and
    separators is decoded; everything else is treated as binary.

    Raises:
        FirmwareImageError: Hex text with an odd number of digits
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return bytes(raw)

    if not text.strip() or not _HEX_TEXT.match(text):
        return bytes(raw)

    digits = _HEX_SEPARATORS.sub("", text)
    if len(digits) < 2 or len(digits) % 2:
        raise FirmwareImageError(
            f"Malformed hex firmware file: {len(digits)} hex digits"
        )
    try:
        return bytes.fromhex(digits)
    except ValueError as e:
        raise FirmwareImageError(f"Malformed hex firmware file: {e}") from e
