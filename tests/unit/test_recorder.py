"""CSV export of recorded samples."""

from datetime import datetime

import pytest

from zonectl.framing import Sample
from zonectl.recorder import (
    SessionRecorder,
    format_sample_line,
    parse_sample_line,
    read_recording,
    serial_suffix,
)


def fixed_now() -> datetime:
    return datetime(2024, 3, 5, 14, 7)


def test_format_sample_line():
    sample = Sample(timestamp=1700000000, payload=bytes([0x40, 0xE1, 0x0A]))
    assert format_sample_line(sample) == "1700000000,40 E1 0A\n"


def test_parse_sample_line():
    assert parse_sample_line("12,40 E1 0A\n") == (12, bytes([0x40, 0xE1, 0x0A]))
    with pytest.raises(ValueError):
        parse_sample_line("not a sample")


@pytest.mark.parametrize(
    "serial, expected",
    [("126000012345", "12345"), ("126", "00126"), (None, "00000")],
)
def test_serial_suffix(serial, expected):
    assert serial_suffix(serial) == expected


def test_recording_lifecycle(tmp_path):
    recorder = SessionRecorder(tmp_path / "out", serial_number="126000012345", now=fixed_now)
    path = recorder.open()
    assert path.name == "ZonePcks_12345_03052024_1407_recording.csv"

    recorder.append(Sample(1, bytes([0x40, 0xE1, 0x01])))
    recorder.append(Sample(2, bytes([0x40, 0xE1, 0x02])))
    # Each sample is on disk as soon as it is appended
    assert path.read_text().count("\n") == 2

    final = recorder.finalize()
    assert final.name == "ZonePcks_12345_03052024_1407.csv"
    assert not path.exists()
    assert read_recording(final) == [(1, bytes([0x40, 0xE1, 0x01])), (2, bytes([0x40, 0xE1, 0x02]))]


def test_empty_recording_is_removed(tmp_path):
    recorder = SessionRecorder(tmp_path, now=fixed_now)
    recorder.open()

    assert recorder.finalize() is None
    assert list(tmp_path.iterdir()) == []


def test_discard(tmp_path):
    recorder = SessionRecorder(tmp_path, now=fixed_now)
    recorder.open()
    recorder.append(Sample(1, b"\x40\xE1"))
    recorder.discard()

    assert list(tmp_path.iterdir()) == []
    assert recorder.sample_count == 0


def test_append_before_open_is_dropped(tmp_path):
    recorder = SessionRecorder(tmp_path, now=fixed_now)
    recorder.append(Sample(1, b"\x40\xE1"))
    assert recorder.sample_count == 0
    assert recorder.finalize() is None
