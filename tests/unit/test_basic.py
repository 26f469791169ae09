#!/usr/bin/env python
"""Basic functionality test for REPL components without device."""

import argparse

import pytest
from prompt_toolkit.document import Document
from rich.console import Console

from zonectl.cli import build_config, select_device
from zonectl.commands import COMMANDS, CommandCompleter, get_command
from zonectl.devices import Device
from zonectl.display import DisplayManager
from zonectl.names import MemoryStore, NameOverrides


def make_display() -> DisplayManager:
    console = Console(record=True, width=120)
    return DisplayManager(console=console, names=NameOverrides(MemoryStore()))


@pytest.mark.asyncio
async def test_display():
    """Test display functionality."""
    display = make_display()

    display.print_banner()
    display.print_status(
        {
            "connection": "READY",
            "device": "ZoneBand",
            "serial": "126000000001",
            "firmware": "2.1.0",
            "battery": 80,
            "recording": "RECORDING",
            "samples": 1234,
        }
    )
    display.print_result("start", True)
    display.print_result("stop", False)
    display.print_info("This is an info message")
    display.print_error("This is an error message")
    display.print_firmware_progress(128, 300)
    display.print_help(COMMANDS)

    output = display.console.export_text()
    assert "ZoneCtrl" in output
    assert "126000000001" in output
    assert "1,234" in output
    assert "start sent" in output
    assert "stop failed" in output
    assert "128/300 (42%)" in output
    assert "firmware" in output


def test_device_table_uses_custom_names():
    display = make_display()
    device = Device(address="AA", name="ZoneBand", rssi=-61, serial_number="126000000001")
    display.names.rename(device, "Coach")

    display.print_devices([device])
    output = display.console.export_text()
    assert "Coach" in output
    assert "-61 dBm" in output


def test_format_helpers():
    assert DisplayManager.format_rssi(-70) == "-70 dBm"
    assert DisplayManager.format_battery(None) == "-"
    assert DisplayManager.format_battery(55) == "55%"
    assert DisplayManager.format_payload(b"") == "-"
    assert DisplayManager.format_payload(bytes([0x40, 0xE1])) == "40 E1"
    assert DisplayManager.format_payload(bytes(20), limit=2) == "00 00 … (20 bytes)"


def test_live_toggle():
    display = make_display()
    assert display.toggle_live()
    display.update_live({"samples": 3, "battery": 90})
    assert display._live_data["samples"] == 3
    assert not display.toggle_live()
    # Updates while disabled are ignored
    display.update_live({"samples": 4})
    assert display._live_data["samples"] == 3


@pytest.mark.asyncio
async def test_commands():
    """Test command definitions."""
    for name, expected in [
        ("connect", "connect"),
        ("c", "connect"),
        ("fw", "firmware"),
        ("?", "help"),
        ("exit", "quit"),
    ]:
        assert get_command(name).name == expected
    assert get_command("speed") is None

    names = [cmd.name for cmd in COMMANDS]
    assert len(names) == len(set(names))
    assert all(cmd.handler == f"cmd_{cmd.name}" for cmd in COMMANDS)


def test_completer_completes_command_names():
    completer = CommandCompleter()
    completions = [c.text for c in completer.get_completions(Document("fi"), None)]
    assert completions == ["rmware"]
    assert list(completer.get_completions(Document(""), None)) == []


def test_completer_completes_firmware_paths(tmp_path):
    (tmp_path / "zone_fw.bin").write_bytes(b"\x00")
    completer = CommandCompleter()
    text = f"firmware {tmp_path}/zone_"
    completions = [c.text for c in completer.get_completions(Document(text), None)]
    assert completions == ["fw.bin"]


def test_build_config_flags(tmp_path, monkeypatch):
    monkeypatch.delenv("ZONECTL_SAMPLE_LENGTH", raising=False)
    args = argparse.Namespace(sample_length=100, output_dir=str(tmp_path), extended_start=True)
    config = build_config(args)

    assert config.sample_length == 100
    assert config.output_dir == tmp_path
    assert config.extended_start


def test_select_device_bounds():
    devices = [Device(address="AA", name="Zone 1"), Device(address="BB", name="Zone 2")]

    assert select_device(devices, None) is devices[0]
    assert select_device(devices, "2") is devices[1]
    assert select_device(devices, "0") is None
    assert select_device(devices, "-1") is None
    assert select_device(devices, "3") is None
    assert select_device(devices, "two") is None
    assert select_device([], None) is None
