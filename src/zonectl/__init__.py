"""
ZoneCtl - Zone Fitness Band Control Library

A Python library for discovering, recording and updating Zone fitness bands
via Bluetooth LE.
"""

from .core import __description__, __version__, ZoneConfig
from .devices import Device
from .display import DisplayManager
from .framing import Sample, StreamReassembler
from .manager import ConnectionManager
from .session import WorkoutSession
from .transport import BleakTransport

__all__ = [
    "BleakTransport",
    "ConnectionManager",
    "Device",
    "DisplayManager",
    "Sample",
    "StreamReassembler",
    "WorkoutSession",
    "ZoneConfig",
    "__description__",
    "__version__",
]
