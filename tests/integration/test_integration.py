#!/usr/bin/env python
"""Scan, connect and read battery from a real Zone band."""

import asyncio
import logging

import pytest

from zonectl.events import BatteryLevelUpdated, Connected, ConnectionFailed
from zonectl.manager import ConnectionManager
from zonectl.transport import BleakTransport

# Enable logging
logging.basicConfig(level=logging.INFO, format="%(message)s")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_connect_and_read_battery():
    """Connect to the first Zone band found and wait for its battery level."""
    transport = BleakTransport()
    manager = ConnectionManager(transport)
    events = []
    manager.add_listener(events.append)

    try:
        await transport.power_on()
        print("Scanning...")
        if not manager.start_scan():
            pytest.skip("Bluetooth not available - skipping integration test")
        await asyncio.sleep(5)
        manager.stop_scan()

        devices = manager.devices.list()
        if not devices:
            pytest.skip("Zone device not found - skipping integration test")

        device = devices[0]
        print(f"Connecting to {device.name} ({device.serial_number})...")
        manager.connect(device)

        for _ in range(150):
            if any(isinstance(e, (BatteryLevelUpdated, ConnectionFailed)) for e in events):
                break
            await asyncio.sleep(0.1)

        assert any(isinstance(e, Connected) for e in events), "Connection failed"
        battery = [e for e in events if isinstance(e, BatteryLevelUpdated)]
        print(f"Battery: {battery[-1].percent if battery else 'no reply'}")
        assert manager.post_connect_init_sent
    finally:
        if manager.is_connected:
            manager.disconnect()
            await asyncio.sleep(1)
        await transport.close()
