"""
Connection and session management for Zone devices.

ConnectionManager owns the scan -> connect -> discovery -> ready pipeline,
the single outbound write path and the routing of inbound values. It is
event driven: the transport calls its `on_*` methods and every delay is a
cancellable `loop.call_later` handle, so nothing here blocks or awaits.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .core import (
    DEVICE_INFO_SERVICE_UUID,
    FIRMWARE_REVISION_CHAR_UUID,
    SERIAL_NUMBER_CHAR_UUID,
    UART_WRITE_CHAR_UUID,
    ZoneConfig,
)
from .devices import Device, DeviceRegistry, matches_filter, serial_from_manufacturer_data
from .errors import ErrorKind, FirmwareImageError, ZoneError
from .events import (
    BatteryLevelUpdated,
    CommandFailed,
    CommandSent,
    Connected,
    ConnectionFailed,
    Disconnected,
    DevicesUpdated,
    FirmwareFailed,
    FirmwareVersionUpdated,
    Listener,
    RadioStateChanged,
    ReplyReceived,
    SerialNumberUpdated,
    TransportErrorEvent,
    ZoneEvent,
)
from .firmware import TERMINAL_STATES, FirmwareState, FirmwareTransfer
from .protocol import (
    encode_battery_query,
    encode_led,
    encode_set_time,
    encode_start_workout,
    encode_stop_workout,
    format_hex,
    parse_battery_reply,
)
from .transport import GattCharacteristic, GattService, Transport

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    SERVICE_DISCOVERY = "service_discovery"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ConnectionManager:
    """Discovers, connects to and talks with one Zone device at a time."""

    def __init__(
        self,
        transport: Transport,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        config: Optional[ZoneConfig] = None,
    ) -> None:
        """Initialize manager and attach it to the transport.

        Args:
            transport: BLE transport issuing radio calls
            loop: Event loop for timers (the running loop if None)
            config: Timing and filter settings
        """
        self.config = config or ZoneConfig()
        self._loop = loop or asyncio.get_running_loop()
        self._transport = transport
        self._listeners: List[Listener] = []

        self.devices = DeviceRegistry()
        self.state = ConnectionState.IDLE
        self.radio_powered_on = False
        self.is_scanning = False

        self._pending: Dict[str, Device] = {}
        self._flush_handle: Optional[asyncio.TimerHandle] = None

        # Connection session
        self.device: Optional[Device] = None
        self.write_characteristic: Optional[GattCharacteristic] = None
        self.connected_at: Optional[float] = None
        self.post_connect_init_sent = False
        self.firmware: Optional[FirmwareTransfer] = None
        self._reconnecting = False
        self._disconnect_requested = False
        self._connect_timer: Optional[asyncio.TimerHandle] = None
        self._discovery_handle: Optional[asyncio.TimerHandle] = None
        self._init_handle: Optional[asyncio.TimerHandle] = None
        self._battery_handle: Optional[asyncio.TimerHandle] = None
        self._read_handles: Set[int] = set()
        self._notify_handles: Set[int] = set()

        transport.attach(self)

    # ========== Observers ==========

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register an event listener.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def emit(self, event: ZoneEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener error on {type(event).__name__}: {e}")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.SERVICE_DISCOVERY, ConnectionState.READY)

    @property
    def is_ready(self) -> bool:
        return self.is_connected and self.write_characteristic is not None

    @property
    def is_firmware_updating(self) -> bool:
        return self.firmware is not None and self.firmware.is_active

    # ========== Scanning ==========

    def start_scan(self) -> bool:
        """Start discovery, restarting it if already running.

        Returns:
            False if the radio is not powered on
        """
        if not self.radio_powered_on:
            logger.error("Bluetooth is not powered on")
            self.emit(TransportErrorEvent(ZoneError(ErrorKind.RADIO_OFF, "Bluetooth is not powered on")))
            return False

        if self.is_scanning:
            self._transport.stop_scan()
            self._cancel(self._flush_handle)
            self._flush_handle = None

        self.is_scanning = True
        if not self.is_connected and self.state != ConnectionState.CONNECTING:
            self.state = ConnectionState.SCANNING
        self._transport.start_scan()
        self._schedule_flush()
        logger.info("Started scanning for devices...")
        return True

    def stop_scan(self) -> None:
        """Stop discovery and surface anything still buffered."""
        if self.is_scanning:
            self._transport.stop_scan()
            logger.info("Stopped scanning")
        self.is_scanning = False
        self._cancel(self._flush_handle)
        self._flush_handle = None
        if self.state == ConnectionState.SCANNING:
            self.state = ConnectionState.IDLE
        self._flush_pending()

    def clear_devices(self) -> None:
        if self.is_scanning:
            self.stop_scan()
        self._pending.clear()
        self.devices.clear()
        logger.info("Device list cleared")

    def _schedule_flush(self) -> None:
        self._flush_handle = self._loop.call_later(
            self.config.scan_flush_interval, self._on_flush_timer
        )

    def _on_flush_timer(self) -> None:
        self._flush_pending()
        if self.is_scanning:
            self._schedule_flush()

    def _flush_pending(self) -> None:
        if not self._pending:
            return
        for sighting in self._pending.values():
            self.devices.merge(sighting)
        self._pending.clear()
        self.emit(DevicesUpdated(devices=tuple(self.devices.list())))

    # ========== Connection ==========

    def connect(self, device: Device, reconnect: bool = False) -> bool:
        """Start connecting to a device.

        Args:
            device: Target device
            reconnect: Attempt belongs to a reconnect loop; carried on the
                failure event so callers can suppress duplicate alerts

        Returns:
            False if a connection is already established
        """
        if self.is_connected:
            logger.warning("Already connected, disconnect first")
            return False
        self.stop_scan()
        self._cancel(self._connect_timer)
        logger.info(f"Attempting to connect to {device.name}...")

        self.device = device
        self.state = ConnectionState.CONNECTING
        self._reconnecting = reconnect
        self._disconnect_requested = False
        self._connect_timer = self._loop.call_later(
            self.config.connect_timeout, self._on_connect_timeout
        )
        self._transport.connect(device.address)
        return True

    def disconnect(self) -> bool:
        """Disconnect the current device.

        Returns:
            False if there is no established connection
        """
        if self.device is None or not self.is_connected:
            logger.warning("Not connected")
            return False
        logger.info(f"Disconnecting from {self.device.name}...")
        self._disconnect_requested = True
        self._transport.cancel_connect(self.device.address)
        return True

    def _on_connect_timeout(self) -> None:
        self._connect_timer = None
        if self.state != ConnectionState.CONNECTING or self.device is None:
            return
        device = self.device
        logger.error(f"Connection timeout for {device.name}")
        self._transport.cancel_connect(device.address)
        self.state = ConnectionState.FAILED
        self.emit(
            ConnectionFailed(
                device=device,
                error=ZoneError(ErrorKind.TIMEOUT, "Connection timeout"),
                reconnect=self._reconnecting,
            )
        )

    # ========== Transport events: central ==========

    def on_radio_state(self, powered_on: bool) -> None:
        logger.info(f"Bluetooth is powered {'on' if powered_on else 'off'}")
        self.radio_powered_on = powered_on
        if not powered_on:
            self.is_scanning = False
            self._cancel(self._flush_handle)
            self._flush_handle = None
            if self.is_connected and self.device is not None:
                self.on_disconnected(
                    self.device.address, ZoneError(ErrorKind.RADIO_OFF, "Bluetooth powered off")
                )
            elif self.state == ConnectionState.SCANNING:
                self.state = ConnectionState.IDLE
        self.emit(RadioStateChanged(powered_on=powered_on))

    def on_advertisement(
        self,
        address: str,
        name: Optional[str],
        rssi: int,
        manufacturer_data: Optional[bytes],
    ) -> None:
        if not self.is_scanning:
            return
        serial_number = serial_from_manufacturer_data(manufacturer_data)
        if not matches_filter(name, serial_number, self.config.name_filter, self.config.serial_prefix):
            return
        self._pending[address] = Device(
            address=address, name=name or "Unknown Device", rssi=rssi, serial_number=serial_number
        )

    def on_connected(self, address: str) -> None:
        device = self.device
        if self.state != ConnectionState.CONNECTING or device is None or device.address != address:
            logger.warning(f"Ignoring late connection from {address}")
            return
        logger.info(f"Successfully connected to {device.name}")

        self._cancel(self._connect_timer)
        self._connect_timer = None
        self.state = ConnectionState.SERVICE_DISCOVERY
        self.connected_at = self._loop.time()
        self.post_connect_init_sent = False
        self.write_characteristic = None
        self._read_handles.clear()
        self._notify_handles.clear()

        # Device information first so serial and firmware arrive early
        self._transport.discover_services([DEVICE_INFO_SERVICE_UUID])
        self._discovery_handle = self._loop.call_later(
            self.config.full_discovery_delay, self._discover_all_services
        )
        self.emit(Connected(device=device))

    def on_connect_failed(self, address: str, error: Optional[Exception]) -> None:
        device = self.device
        if self.state != ConnectionState.CONNECTING or device is None or device.address != address:
            return
        logger.error(f"Failed to connect to {device.name}: {error or 'Unknown error'}")
        self._cancel(self._connect_timer)
        self._connect_timer = None
        self.state = ConnectionState.FAILED
        self.emit(
            ConnectionFailed(
                device=device,
                error=ZoneError(ErrorKind.PERIPHERAL, str(error) if error else "Unknown error"),
                reconnect=self._reconnecting,
            )
        )

    def on_disconnected(self, address: str, error: Optional[Exception]) -> None:
        device = self.device
        if device is None or device.address != address or not self.is_connected:
            return
        expected = self._disconnect_requested
        if error:
            logger.warning(f"Disconnected from {device.name}: {error}")
        else:
            logger.info(f"Disconnected from {device.name}")

        self._teardown_session()
        if self.firmware is not None and self.firmware.is_active:
            self.firmware.fail("Device disconnected")
        self.firmware = None
        self.state = ConnectionState.DISCONNECTED
        self.emit(Disconnected(device=device, error=error, expected=expected))

    def _teardown_session(self) -> None:
        for handle in (self._discovery_handle, self._init_handle, self._battery_handle, self._connect_timer):
            self._cancel(handle)
        self._discovery_handle = None
        self._init_handle = None
        self._battery_handle = None
        self._connect_timer = None
        self.write_characteristic = None
        self.connected_at = None
        self.post_connect_init_sent = False
        self._disconnect_requested = False
        self._read_handles.clear()
        self._notify_handles.clear()

    # ========== Transport events: GATT ==========

    def _discover_all_services(self) -> None:
        self._discovery_handle = None
        if self.is_connected:
            self._transport.discover_services(None)

    def on_services_discovered(
        self, services: List[GattService], error: Optional[Exception] = None
    ) -> None:
        if error is not None:
            logger.error(f"Error discovering services: {error}")
            return
        if not self.is_connected:
            return
        logger.info(f"Discovered {len(services)} service(s)")
        for service in services:
            logger.debug(f"Service: {service.uuid}")
            self._transport.discover_characteristics(service)

    def on_characteristics_discovered(
        self,
        service: GattService,
        characteristics: List[GattCharacteristic],
        error: Optional[Exception] = None,
    ) -> None:
        if error is not None:
            logger.error(f"Error discovering characteristics for service {service.uuid}: {error}")
            return
        if not self.is_connected:
            return
        logger.info(f"Discovered {len(characteristics)} characteristic(s) for service {service.uuid}")

        for char in characteristics:
            logger.debug(f"Characteristic: {char.uuid}, Properties: {sorted(char.properties)}")

            if char.writable:
                self._offer_write_characteristic(char)

            if char.uuid in (SERIAL_NUMBER_CHAR_UUID, FIRMWARE_REVISION_CHAR_UUID):
                self._read_once(char)
            elif char.readable:
                self._read_once(char)

            if char.notifiable and char.handle not in self._notify_handles:
                self._notify_handles.add(char.handle)
                self._transport.set_notify(char, True)
                logger.debug(f"Enabled notifications for characteristic: {char.uuid}")

    def _offer_write_characteristic(self, char: GattCharacteristic) -> None:
        current = self.write_characteristic
        if char.uuid == UART_WRITE_CHAR_UUID or current is None:
            if current is None or current.handle != char.handle:
                logger.info(f"Found writable characteristic: {char.uuid}")
            self.write_characteristic = char
        # Re-arm on every readiness signal; fires once per connection
        self.state = ConnectionState.READY
        self._schedule_post_connect_init()

    def _read_once(self, char: GattCharacteristic) -> None:
        if char.handle in self._read_handles:
            return
        self._read_handles.add(char.handle)
        self._transport.read_value(char)

    def _schedule_post_connect_init(self) -> None:
        if self.post_connect_init_sent or not self.is_ready:
            return
        elapsed = self._loop.time() - self.connected_at if self.connected_at is not None else 0.0
        remaining = max(0.0, self.config.post_connect_init_delay - elapsed)
        self._cancel(self._init_handle)
        self._init_handle = self._loop.call_later(remaining, self._fire_post_connect_init)

    def _fire_post_connect_init(self) -> None:
        self._init_handle = None
        if not self.is_ready or self.post_connect_init_sent:
            return
        self.post_connect_init_sent = True
        self.send_command(encode_led())
        self._battery_handle = self._loop.call_later(
            self.config.battery_query_delay, self._fire_battery_query
        )

    def _fire_battery_query(self) -> None:
        self._battery_handle = None
        if self.is_connected:
            self.request_battery_level()

    def on_value(
        self,
        characteristic: GattCharacteristic,
        data: Optional[bytes],
        error: Optional[Exception] = None,
    ) -> None:
        if error is not None or data is None:
            logger.error(f"Error reading characteristic {characteristic.uuid}: {error}")
            self.emit(
                TransportErrorEvent(ZoneError(ErrorKind.READ_FAILED, f"{characteristic.uuid}: {error}"))
            )
            return
        device = self.device
        if device is None:
            return

        if characteristic.uuid == SERIAL_NUMBER_CHAR_UUID:
            serial_number = self._decode_string(data)
            if serial_number is None:
                logger.warning("Could not decode serial number data")
                return
            logger.info(f"Read serial number: {serial_number}")
            updated = self.devices.update_serial(device.address, serial_number)
            if updated is None:
                device.serial_number = serial_number
            self.emit(SerialNumberUpdated(device=updated or device))
            return

        if characteristic.uuid == FIRMWARE_REVISION_CHAR_UUID:
            version = self._decode_string(data)
            if version is None:
                logger.warning(f"Could not decode firmware revision data, raw: {format_hex(data)}")
                return
            logger.info(f"Read firmware revision: {version}")
            device.firmware_version = version
            self.devices.update_firmware(device.address, version)
            self.emit(FirmwareVersionUpdated(device=device, version=version))
            return

        logger.debug(f"Received data from {characteristic.uuid}: {format_hex(data, '0x')}")
        if characteristic.service_uuid == DEVICE_INFO_SERVICE_UUID:
            return
        self.emit(ReplyReceived(data=bytes(data)))

        if self.firmware is not None and self.firmware.handle_reply(data):
            if self.firmware.state in TERMINAL_STATES:
                self.firmware = None
            return

        percent = parse_battery_reply(data)
        if percent is not None:
            device.battery_percent = percent
            self.emit(BatteryLevelUpdated(device=device, percent=percent))

    def on_write_complete(
        self, characteristic: GattCharacteristic, error: Optional[Exception] = None
    ) -> None:
        if error is None:
            logger.debug(f"Successfully wrote to characteristic: {characteristic.uuid}")
            return
        logger.error(f"Error writing to characteristic {characteristic.uuid}: {error}")
        if self.firmware is not None:
            self.firmware.fail(str(error))
            self.firmware = None
        self.emit(TransportErrorEvent(ZoneError(ErrorKind.WRITE_FAILED, str(error))))

    def on_notify_state(
        self,
        characteristic: GattCharacteristic,
        enabled: bool,
        error: Optional[Exception] = None,
    ) -> None:
        if error is not None:
            logger.error(f"Error updating notification state for {characteristic.uuid}: {error}")
            self._notify_handles.discard(characteristic.handle)
            return
        logger.debug(f"Notification state updated for {characteristic.uuid}: {enabled}")

    @staticmethod
    def _decode_string(data: bytes) -> Optional[str]:
        try:
            return bytes(data).decode("utf-8").rstrip("\x00")
        except UnicodeDecodeError:
            return None

    # ========== Commands ==========

    def send_command(self, data: bytes) -> bool:
        """Write a command to the device.

        Returns:
            False (and a CommandFailed event) if there is no write channel
        """
        char = self.write_characteristic
        if char is None or not self.is_connected:
            logger.error("No write characteristic or device available")
            self.emit(
                CommandFailed(
                    data=bytes(data),
                    error=ZoneError(ErrorKind.NOT_CONNECTED, "No connected device or writable characteristic"),
                )
            )
            return False
        self._transport.write_value(char, bytes(data), char.write_with_response)
        logger.info(f"Sent command: {format_hex(data, '0x')}")
        self.emit(CommandSent(data=bytes(data)))
        return True

    def start_workout(self) -> bool:
        return self.send_command(encode_start_workout(self.config.extended_start))

    def stop_workout(self) -> bool:
        return self.send_command(encode_stop_workout())

    def request_battery_level(self) -> bool:
        return self.send_command(encode_battery_query())

    def send_led_command(self) -> bool:
        return self.send_command(encode_led())

    def set_device_time(self, epoch_seconds: Optional[int] = None) -> bool:
        return self.send_command(encode_set_time(epoch_seconds))

    # ========== Firmware ==========

    def start_firmware_update(self, image: bytes) -> bool:
        """Begin uploading a firmware image.

        Validation failures are reported as FirmwareFailed before anything
        is written.

        Returns:
            True if the header frame was sent
        """
        if self.is_firmware_updating:
            self.emit(FirmwareFailed(error="Firmware update already in progress"))
            return False
        try:
            transfer = FirmwareTransfer(image, self.send_command, self.emit)
        except FirmwareImageError as e:
            logger.error(f"Firmware update rejected: {e}")
            self.emit(FirmwareFailed(error=str(e)))
            return False
        if not self.is_ready:
            logger.error("Firmware update rejected: not connected")
            self.emit(FirmwareFailed(error="No connected device or writable characteristic"))
            return False

        self.firmware = transfer
        transfer.start()
        if transfer.state == FirmwareState.FAILED:
            self.firmware = None
            return False
        return True

    def cancel_firmware_update(self) -> None:
        if self.firmware is not None:
            self.firmware.cancel()
        self.firmware = None

    # ========== Helpers ==========

    @staticmethod
    def _cancel(handle: Optional[Any]) -> None:
        if handle is not None:
            handle.cancel()
