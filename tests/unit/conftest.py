"""Shared fakes for driving the engine without a radio or a real event loop."""

from typing import Any, Callable, List, Optional, Tuple

import pytest

from zonectl.core import UART_SERVICE_UUID, UART_WRITE_CHAR_UUID, ZoneConfig
from zonectl.devices import Device
from zonectl.manager import ConnectionManager
from zonectl.transport import GattCharacteristic, GattService

ZONE_ADDRESS = "AA:BB:CC:DD:EE:01"
ZONE_SERIAL = 126000000001


def manufacturer_data(serial: int = ZONE_SERIAL) -> bytes:
    """Company id followed by the serial as a 48-bit little-endian integer."""
    return b"\x59\x00" + serial.to_bytes(6, "little")


class FakeHandle:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: Tuple[Any, ...]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Manual clock with call_later semantics; time moves only via advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._handles: List[FakeHandle] = []
        self._seq = 0

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeHandle:
        self._seq += 1
        handle = FakeHandle(self.now + max(0.0, delay), self._seq, callback, args)
        self._handles.append(handle)
        return handle

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> FakeHandle:
        return self.call_later(0.0, callback, *args)

    def advance(self, seconds: float) -> None:
        """Run every due callback in time order, including ones they schedule."""
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback(*handle.args)
        self._handles = [h for h in self._handles if not h.cancelled]
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled)


class FakeTransport:
    """Records outbound calls; tests play the radio through `sink`."""

    def __init__(self) -> None:
        self.sink: Any = None
        self.calls: List[Tuple[Any, ...]] = []

    def attach(self, sink: Any) -> None:
        self.sink = sink

    def start_scan(self) -> None:
        self.calls.append(("start_scan",))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, address: str) -> None:
        self.calls.append(("connect", address))

    def cancel_connect(self, address: str) -> None:
        self.calls.append(("cancel_connect", address))

    def discover_services(self, uuids: Optional[List[str]] = None) -> None:
        self.calls.append(("discover_services", uuids))

    def discover_characteristics(self, service: GattService) -> None:
        self.calls.append(("discover_characteristics", service))

    def read_value(self, characteristic: GattCharacteristic) -> None:
        self.calls.append(("read_value", characteristic))

    def set_notify(self, characteristic: GattCharacteristic, enabled: bool) -> None:
        self.calls.append(("set_notify", characteristic, enabled))

    def write_value(self, characteristic: GattCharacteristic, data: bytes, with_response: bool) -> None:
        self.calls.append(("write_value", characteristic, bytes(data), with_response))

    def named(self, name: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    @property
    def writes(self) -> List[bytes]:
        return [call[2] for call in self.named("write_value")]


UART_SERVICE = GattService(uuid=UART_SERVICE_UUID, handle=1)
UART_CHAR = GattCharacteristic(
    uuid=UART_WRITE_CHAR_UUID,
    properties=frozenset({"write", "notify"}),
    handle=10,
    service_uuid=UART_SERVICE_UUID,
)


@pytest.fixture
def loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def config(tmp_path) -> ZoneConfig:
    return ZoneConfig(output_dir=tmp_path)


@pytest.fixture
def manager(transport, loop, config) -> ConnectionManager:
    manager = ConnectionManager(transport, loop=loop, config=config)
    manager.on_radio_state(True)
    return manager


@pytest.fixture
def events(manager) -> list:
    received: list = []
    manager.add_listener(received.append)
    return received


@pytest.fixture
def zone_device() -> Device:
    return Device(address=ZONE_ADDRESS, name="ZoneBand", rssi=-50, serial_number=str(ZONE_SERIAL))


def make_ready(manager: ConnectionManager, transport: FakeTransport, device: Device) -> None:
    """Connect and expose the UART write characteristic."""
    manager.connect(device)
    transport.sink.on_connected(device.address)
    transport.sink.on_characteristics_discovered(UART_SERVICE, [UART_CHAR])


def of_type(events: list, kind: type) -> list:
    return [event for event in events if isinstance(event, kind)]
