"""
Core constants and configuration for Zone device control.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from bleak.uuids import normalize_uuid_str

# Nordic UART Service, used by Zone firmware for commands and replies
UART_SERVICE_UUID = normalize_uuid_str("6E400001-B5A3-F393-E0A9-E50E24DCCA9E")
UART_WRITE_CHAR_UUID = normalize_uuid_str("6E400002-B5A3-F393-E0A9-E50E24DCCA9E")

# Device Information Service and the two strings we care about
DEVICE_INFO_SERVICE_UUID = normalize_uuid_str("180A")
SERIAL_NUMBER_CHAR_UUID = normalize_uuid_str("2A25")
FIRMWARE_REVISION_CHAR_UUID = normalize_uuid_str("2A26")

# Advertisement filtering
DEVICE_NAME_FILTER = "zone"
SERIAL_PREFIX = "126"

# Telemetry sample lengths seen across firmware generations
SAMPLE_LENGTH_V1 = 83
SAMPLE_LENGTH_V2 = 100

# Timing (seconds)
CONNECT_TIMEOUT = 10.0
FULL_DISCOVERY_DELAY = 1.0
POST_CONNECT_INIT_DELAY = 1.0
BATTERY_QUERY_DELAY = 0.2
SCAN_FLUSH_INTERVAL = 0.5
START_AFTER_TIME_DELAY = 0.1
RECONNECT_ATTEMPTS = 5
RECONNECT_INTERVAL = 2.0

# Application metadata
__version__ = "0.1.0"
__description__ = "CLI and REPL interface for Zone fitness band control and recording"


def default_output_dir() -> Path:
    """Directory where recordings are written unless configured otherwise."""
    return Path.home() / "ZoneRecordings"


@dataclass(frozen=True)
class ZoneConfig:
    """Tunables for discovery, connection timing, telemetry and recording."""

    name_filter: str = DEVICE_NAME_FILTER
    serial_prefix: str = SERIAL_PREFIX
    sample_length: int = SAMPLE_LENGTH_V1
    connect_timeout: float = CONNECT_TIMEOUT
    full_discovery_delay: float = FULL_DISCOVERY_DELAY
    post_connect_init_delay: float = POST_CONNECT_INIT_DELAY
    battery_query_delay: float = BATTERY_QUERY_DELAY
    scan_flush_interval: float = SCAN_FLUSH_INTERVAL
    start_after_time_delay: float = START_AFTER_TIME_DELAY
    reconnect_attempts: int = RECONNECT_ATTEMPTS
    reconnect_interval: float = RECONNECT_INTERVAL
    extended_start: bool = False
    output_dir: Path = field(default_factory=default_output_dir)

    def __post_init__(self) -> None:
        if self.sample_length < 2:
            raise ValueError(f"sample_length must be >= 2, got {self.sample_length}")

    @classmethod
    def from_env(cls, base: Optional["ZoneConfig"] = None) -> "ZoneConfig":
        """Overlay ZONECTL_* environment variables on a config.

        Args:
            base: Starting config (defaults if None)

        Returns:
            New ZoneConfig with environment overrides applied
        """
        config = base or cls()
        overrides: dict = {}

        sample_length = os.environ.get("ZONECTL_SAMPLE_LENGTH")
        if sample_length:
            overrides["sample_length"] = int(sample_length)

        output_dir = os.environ.get("ZONECTL_OUTPUT_DIR")
        if output_dir:
            overrides["output_dir"] = Path(output_dir).expanduser()

        connect_timeout = os.environ.get("ZONECTL_CONNECT_TIMEOUT")
        if connect_timeout:
            overrides["connect_timeout"] = float(connect_timeout)

        return replace(config, **overrides) if overrides else config
