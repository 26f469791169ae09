"""
BLE transport boundary.

ConnectionManager issues fire-and-forget calls on a Transport and receives
the results as `on_*` method calls. BleakTransport implements the boundary
on top of bleak, turning its coroutines and callbacks into those calls on
the event loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Coroutine, Dict, FrozenSet, List, Optional, Protocol, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GattService:
    uuid: str
    handle: int


@dataclass(frozen=True)
class GattCharacteristic:
    """Characteristic as seen by the core.

    Attributes:
        uuid: Normalized 128-bit UUID string
        properties: bleak property names ("read", "write", "notify", ...)
        handle: Transport handle, unique per connection
        service_uuid: Owning service
    """

    uuid: str
    properties: FrozenSet[str]
    handle: int
    service_uuid: str = ""

    @property
    def writable(self) -> bool:
        return "write" in self.properties or "write-without-response" in self.properties

    @property
    def write_with_response(self) -> bool:
        return "write" in self.properties

    @property
    def readable(self) -> bool:
        return "read" in self.properties

    @property
    def notifiable(self) -> bool:
        return "notify" in self.properties or "indicate" in self.properties


class TransportSink(Protocol):
    """Inbound events a transport delivers (implemented by ConnectionManager)."""

    def on_radio_state(self, powered_on: bool) -> None: ...

    def on_advertisement(
        self, address: str, name: Optional[str], rssi: int, manufacturer_data: Optional[bytes]
    ) -> None: ...

    def on_connected(self, address: str) -> None: ...

    def on_connect_failed(self, address: str, error: Optional[Exception]) -> None: ...

    def on_disconnected(self, address: str, error: Optional[Exception]) -> None: ...

    def on_services_discovered(
        self, services: List[GattService], error: Optional[Exception] = None
    ) -> None: ...

    def on_characteristics_discovered(
        self,
        service: GattService,
        characteristics: List[GattCharacteristic],
        error: Optional[Exception] = None,
    ) -> None: ...

    def on_value(
        self, characteristic: GattCharacteristic, data: Optional[bytes], error: Optional[Exception] = None
    ) -> None: ...

    def on_write_complete(
        self, characteristic: GattCharacteristic, error: Optional[Exception] = None
    ) -> None: ...

    def on_notify_state(
        self, characteristic: GattCharacteristic, enabled: bool, error: Optional[Exception] = None
    ) -> None: ...


class Transport(Protocol):
    """Outbound calls the core makes. None of them block or raise."""

    def attach(self, sink: TransportSink) -> None: ...

    def start_scan(self) -> None: ...

    def stop_scan(self) -> None: ...

    def connect(self, address: str) -> None: ...

    def cancel_connect(self, address: str) -> None: ...

    def discover_services(self, uuids: Optional[List[str]] = None) -> None: ...

    def discover_characteristics(self, service: GattService) -> None: ...

    def read_value(self, characteristic: GattCharacteristic) -> None: ...

    def set_notify(self, characteristic: GattCharacteristic, enabled: bool) -> None: ...

    def write_value(
        self, characteristic: GattCharacteristic, data: bytes, with_response: bool
    ) -> None: ...


def manufacturer_bytes(advertisement: AdvertisementData) -> Optional[bytes]:
    """Rebuild raw manufacturer data (company id + payload) from bleak's dict."""
    for company_id, payload in advertisement.manufacturer_data.items():
        return company_id.to_bytes(2, "little") + bytes(payload)
    return None


class BleakTransport:
    """Transport backed by bleak's scanner and GATT client."""

    def __init__(self, connect_timeout: float = 20.0) -> None:
        """Initialize with no scanner or client.

        Args:
            connect_timeout: bleak's own connect timeout; keep it above the
                manager's so the manager's timer decides
        """
        self._sink: Optional[TransportSink] = None
        self._connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._seen: Dict[str, BLEDevice] = {}
        self._client: Optional[BleakClient] = None
        self._address: Optional[str] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._services: Dict[int, Any] = {}
        self._characteristics: Dict[int, Any] = {}
        self._tasks: Set[asyncio.Task] = set()

    def attach(self, sink: TransportSink) -> None:
        self._sink = sink

    @property
    def sink(self) -> TransportSink:
        if self._sink is None:
            raise RuntimeError("BleakTransport used before attach()")
        return self._sink

    async def power_on(self) -> None:
        """Report the adapter as available.

        bleak has no adapter state callback; the radio is treated as powered
        on until a scanner call fails.
        """
        self.sink.on_radio_state(True)

    async def close(self) -> None:
        """Stop scanning, drop the connection and wait for pending calls."""
        if self._scanner is not None:
            try:
                await self._scanner.stop()
            except BleakError as e:
                logger.debug(f"Scanner stop on close failed: {e}")
            self._scanner = None
        if self._client is not None and self._client.is_connected:
            await self._client.disconnect()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ========== Scanning ==========

    def start_scan(self) -> None:
        self._scanner = BleakScanner(detection_callback=self._on_detection)
        self._spawn(self._start_scanner(self._scanner))

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner))

    async def _start_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.start()
            logger.debug("Scanner started")
        except (BleakError, OSError) as e:
            logger.error(f"Scan failed to start: {e}")
            self.sink.on_radio_state(False)

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            logger.warning(f"Scan failed to stop: {e}")

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        self._seen[device.address] = device
        self.sink.on_advertisement(
            device.address,
            advertisement.local_name or device.name,
            advertisement.rssi,
            manufacturer_bytes(advertisement),
        )

    # ========== Connection ==========

    def connect(self, address: str) -> None:
        target = self._seen.get(address, address)
        self._address = address
        self._client = BleakClient(
            target,
            disconnected_callback=self._on_client_disconnect,
            timeout=self._connect_timeout,
        )
        self._connect_task = self._spawn(self._connect(self._client, address))

    def cancel_connect(self, address: str) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            logger.debug(f"Cancelling pending connection to {address}")
            self._connect_task.cancel()
            return
        client = self._client
        if client is not None and client.is_connected:
            self._spawn(self._disconnect(client))

    async def _connect(self, client: BleakClient, address: str) -> None:
        try:
            await client.connect()
        except asyncio.CancelledError:
            await self._disconnect(client)
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            self.sink.on_connect_failed(address, e)
            return
        self._index_services(client)
        self.sink.on_connected(address)

    async def _disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning(f"Disconnect failed: {e}")

    def _on_client_disconnect(self, client: BleakClient) -> None:
        if client is not self._client or self._address is None:
            return
        address = self._address
        self._services.clear()
        self._characteristics.clear()
        self.sink.on_disconnected(address, None)

    # ========== GATT ==========

    def _index_services(self, client: BleakClient) -> None:
        self._services.clear()
        self._characteristics.clear()
        for service in client.services:
            self._services[service.handle] = service
            for char in service.characteristics:
                self._characteristics[char.handle] = char

    def discover_services(self, uuids: Optional[List[str]] = None) -> None:
        wanted = {u.lower() for u in uuids} if uuids else None
        services = [
            GattService(uuid=s.uuid, handle=s.handle)
            for s in self._services.values()
            if wanted is None or s.uuid.lower() in wanted
        ]
        # bleak resolves services during connect; deliver on the next tick
        asyncio.get_running_loop().call_soon(self.sink.on_services_discovered, services)

    def discover_characteristics(self, service: GattService) -> None:
        bleak_service = self._services.get(service.handle)
        if bleak_service is None:
            error = BleakError(f"Unknown service {service.uuid}")
            asyncio.get_running_loop().call_soon(
                self.sink.on_characteristics_discovered, service, [], error
            )
            return
        characteristics = [
            GattCharacteristic(
                uuid=c.uuid,
                properties=frozenset(c.properties),
                handle=c.handle,
                service_uuid=service.uuid,
            )
            for c in bleak_service.characteristics
        ]
        asyncio.get_running_loop().call_soon(
            self.sink.on_characteristics_discovered, service, characteristics
        )

    def read_value(self, characteristic: GattCharacteristic) -> None:
        self._spawn(self._read(characteristic))

    def set_notify(self, characteristic: GattCharacteristic, enabled: bool) -> None:
        self._spawn(self._notify(characteristic, enabled))

    def write_value(
        self, characteristic: GattCharacteristic, data: bytes, with_response: bool
    ) -> None:
        self._spawn(self._write(characteristic, bytes(data), with_response))

    async def _read(self, characteristic: GattCharacteristic) -> None:
        try:
            data = await self._require_client().read_gatt_char(self._bleak_char(characteristic))
        except (BleakError, OSError) as e:
            self.sink.on_value(characteristic, None, e)
            return
        self.sink.on_value(characteristic, bytes(data))

    async def _notify(self, characteristic: GattCharacteristic, enabled: bool) -> None:
        def handle_notification(_sender: Any, data: bytearray) -> None:
            self.sink.on_value(characteristic, bytes(data))

        try:
            client = self._require_client()
            if enabled:
                await client.start_notify(self._bleak_char(characteristic), handle_notification)
            else:
                await client.stop_notify(self._bleak_char(characteristic))
        except (BleakError, OSError) as e:
            self.sink.on_notify_state(characteristic, enabled, e)
            return
        self.sink.on_notify_state(characteristic, enabled)

    async def _write(
        self, characteristic: GattCharacteristic, data: bytes, with_response: bool
    ) -> None:
        try:
            await self._require_client().write_gatt_char(
                self._bleak_char(characteristic), data, response=with_response
            )
        except (BleakError, OSError) as e:
            self.sink.on_write_complete(characteristic, e)
            return
        self.sink.on_write_complete(characteristic)

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise BleakError("Not connected")
        return self._client

    def _bleak_char(self, characteristic: GattCharacteristic) -> Any:
        char = self._characteristics.get(characteristic.handle)
        if char is None:
            raise BleakError(f"Unknown characteristic {characteristic.uuid}")
        return char

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
