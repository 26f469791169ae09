"""
Discovered device records, advertisement filtering and the device registry.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

SERIAL_BYTES = 6


@dataclass
class Device:
    """A Zone band seen over the air.

    The platform address is not stable across OS-level rediscovery, so the
    serial number is the preferred identity once it is known.
    """

    address: str
    name: str
    rssi: int = 0
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    battery_percent: Optional[int] = None

    @property
    def key(self) -> str:
        """Stable identity: serial number when known, address otherwise."""
        return self.serial_number or self.address


def serial_from_manufacturer_data(data: Optional[bytes]) -> Optional[str]:
    """Decode the serial number carried in advertisement manufacturer data.

    The last six bytes are a little-endian 48-bit integer; the serial is its
    decimal representation.

    Args:
        data: Manufacturer data, company identifier included

    Returns:
        Serial number string, or None if the data is missing or too short
    """
    if not data or len(data) < SERIAL_BYTES:
        return None
    return str(int.from_bytes(data[-SERIAL_BYTES:], "little"))


def matches_filter(
    name: Optional[str], serial_number: Optional[str], name_filter: str, prefix: str
) -> bool:
    """Whether an advertisement belongs to a Zone device.

    Args:
        name: Advertised local name
        serial_number: Serial extracted from manufacturer data
        name_filter: Substring the name must contain (case-insensitive)
        prefix: Prefix the serial number must start with
    """
    if not name or name_filter.lower() not in name.lower():
        return False
    return serial_number is not None and serial_number.startswith(prefix)


class DeviceRegistry:
    """Known devices keyed by stable identity, updated in place."""

    def __init__(self) -> None:
        self._devices: Dict[str, Device] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._devices

    def list(self) -> List[Device]:
        return list(self._devices.values())

    def get(self, key: str) -> Optional[Device]:
        return self._devices.get(key)

    def find_by_address(self, address: str) -> Optional[Device]:
        for device in self._devices.values():
            if device.address == address:
                return device
        return None

    def lookup(self, key: str, address: str) -> Optional[Device]:
        """Find a device by identity, falling back to its platform address."""
        return self._devices.get(key) or self.find_by_address(address)

    def merge(self, sighting: Device) -> Device:
        """Fold a fresh advertisement sighting into the registry.

        Signal strength, name and address are refreshed; a serial number that
        was already learned (possibly from a GATT read) is preserved.

        Returns:
            The registry's record for the device
        """
        existing = self.lookup(sighting.key, sighting.address)
        if existing is None:
            self._devices[sighting.key] = sighting
            logger.debug(f"New device {sighting.name} ({sighting.key})")
            return sighting

        existing.rssi = sighting.rssi
        existing.name = sighting.name
        existing.address = sighting.address
        if existing.serial_number is None and sighting.serial_number is not None:
            self._rekey(existing, sighting.serial_number)
        return existing

    def update_serial(self, address: str, serial_number: str) -> Optional[Device]:
        """Record a serial number read from the device."""
        device = self.find_by_address(address)
        if device is None:
            return None
        if device.serial_number != serial_number:
            self._rekey(device, serial_number)
        return device

    def update_firmware(self, address: str, version: str) -> Optional[Device]:
        device = self.find_by_address(address)
        if device is not None:
            device.firmware_version = version
        return device

    def clear(self) -> None:
        self._devices.clear()

    def _rekey(self, device: Device, serial_number: str) -> None:
        for key, value in list(self._devices.items()):
            if value is device:
                del self._devices[key]
        device.serial_number = serial_number
        self._devices[device.key] = device
