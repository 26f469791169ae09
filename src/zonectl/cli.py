"""
Main REPL application for Zone band control and workout recording.

Interactive command loop with async support, auto-completion, live
recording display and a one-shot scan mode.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory

from .commands import COMMANDS, CommandCompleter, get_command, resolve_path
from .core import SAMPLE_LENGTH_V1, SAMPLE_LENGTH_V2, ZoneConfig
from .devices import Device
from .display import DisplayManager
from .errors import FirmwareImageError
from .events import (
    BatteryLevelUpdated,
    CommandFailed,
    Connected,
    ConnectionFailed,
    Disconnected,
    DevicesUpdated,
    FirmwareCompleted,
    FirmwareFailed,
    FirmwareProgress,
    FirmwareVersionUpdated,
    RadioStateChanged,
    ReconnectAttempt,
    ReconnectGaveUp,
    RecordingStarted,
    RecordingStopped,
    SampleRecorded,
    SerialNumberUpdated,
    TransportErrorEvent,
    ZoneEvent,
)
from .manager import ConnectionManager
from .names import JsonFileStore, NameOverrides
from .protocol import load_firmware_image
from .session import WorkoutSession
from .transport import BleakTransport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_SCAN_SECONDS = 5.0


def select_device(devices: List[Device], choice: Optional[str]) -> Optional[Device]:
    """Pick a device by its 1-based listing number (first one if no choice)."""
    try:
        index = int(choice) - 1 if choice else 0
    except ValueError:
        return None
    if not 0 <= index < len(devices):
        return None
    return devices[index]


class ZoneCtrlREPL:
    """Interactive REPL for Zone band control."""

    def __init__(self, config: Optional[ZoneConfig] = None) -> None:
        """Initialize REPL state; BLE objects are created in setup()."""
        self.config = config or ZoneConfig()
        self.names = NameOverrides(JsonFileStore())
        self.display = DisplayManager(names=self.names)
        self.transport = BleakTransport()
        self.manager: Optional[ConnectionManager] = None
        self.session: Optional[WorkoutSession] = None
        self.running = False
        self._devices: List[Device] = []
        self._connect_result: Optional[asyncio.Future] = None
        self._last_progress_step = -1

        # Create prompt session with auto-completion
        self.prompt = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

    async def setup(self) -> None:
        """Create the manager and session on the running loop."""
        self.manager = ConnectionManager(self.transport, config=self.config)
        self.session = WorkoutSession(self.manager)
        self.manager.add_listener(self._on_event)
        await self.transport.power_on()

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()
        await self.setup()

        try:
            while self.running:
                try:
                    text = await self.prompt.prompt_async(self._get_prompt())

                    if text.strip():
                        await self._handle_input(text.strip())

                except KeyboardInterrupt:
                    # Just show new prompt on Ctrl+C
                    self.display.console.print()
                    continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False
            await self.transport.close()

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection state.

        Returns:
            FormattedText for prompt_toolkit
        """
        manager = self.manager
        if manager is not None and manager.is_connected and manager.device is not None:
            name = self.display.device_name(manager.device)
            marker = " ●REC" if self.session is not None and self.session.is_recording else ""
            return FormattedText([("class:prompt", f"[{name}{marker}] > ")])
        return FormattedText([("class:prompt", "[disconnected] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        arg_text = parts[1] if len(parts) > 1 else ""

        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        handler = getattr(self, cmd.handler, None)
        if handler is None:
            self.display.print_error(f"Handler not found: {cmd.handler}")
            return

        # firmware and rename take the rest of the line verbatim
        args = [arg_text] if cmd.name in ("firmware", "rename") and arg_text else arg_text.split()
        try:
            await handler(args)
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    # ========== Events ==========

    def _on_event(self, event: ZoneEvent) -> None:
        """Render manager and session events."""
        if isinstance(event, DevicesUpdated):
            self._devices = list(event.devices)
        elif isinstance(event, RadioStateChanged):
            if not event.powered_on:
                self.display.print_error("Bluetooth is not available")
        elif isinstance(event, Connected):
            self._resolve_connect(True)
            self.display.print_info(f"Connected to {self.display.device_name(event.device)}")
        elif isinstance(event, ConnectionFailed):
            self._resolve_connect(False)
            if not event.reconnect:
                self.display.print_error(
                    f"Could not connect to {self.display.device_name(event.device)}: {event.error}"
                )
        elif isinstance(event, Disconnected):
            if self.display.live_enabled:
                self.display.stop_live()
            if not event.expected:
                self.display.print_error(f"Lost connection to {self.display.device_name(event.device)}")
        elif isinstance(event, SerialNumberUpdated):
            self.display.print_info(f"Serial number: {event.device.serial_number}")
        elif isinstance(event, FirmwareVersionUpdated):
            self.display.print_info(f"Firmware: {event.version}")
        elif isinstance(event, BatteryLevelUpdated):
            self.display.update_live({"battery": event.percent})
            if not self.display.live_enabled:
                self.display.print_info(f"Battery: {event.percent}%")
        elif isinstance(event, FirmwareProgress):
            # Print every 10% so large images don't flood the console
            step = event.percent // 10
            if step != self._last_progress_step:
                self._last_progress_step = step
                self.display.print_firmware_progress(event.bytes_sent, event.total_bytes)
        elif isinstance(event, FirmwareCompleted):
            self._last_progress_step = -1
            self.display.print_info("Firmware Update: Completed")
        elif isinstance(event, FirmwareFailed):
            self._last_progress_step = -1
            self.display.print_error(f"Firmware Update: Failed - {event.error}")
        elif isinstance(event, RecordingStarted):
            self.display.update_live({"status": "RECORDING"})
            self.display.print_info(f"Recording started ({event.path or 'no file'})")
        elif isinstance(event, SampleRecorded):
            self.display.update_live({"samples": event.count, "last_sample": event.sample.payload})
        elif isinstance(event, RecordingStopped):
            self.display.update_live({"status": "STOPPED"})
            if event.sample_count == 0:
                self.display.print_info("No BLE data")
            else:
                self.display.print_info(
                    f"Recording stopped with {event.sample_count} sample(s). Use 'save' or 'discard'."
                )
        elif isinstance(event, ReconnectAttempt):
            self.display.print_info(f"Reconnecting ({event.attempt}/{event.max_attempts})...")
        elif isinstance(event, ReconnectGaveUp):
            self.display.print_error(
                f"Could not reconnect to {self.display.device_name(event.device)}"
            )
        elif isinstance(event, CommandFailed):
            self.display.print_error(str(event.error))
        elif isinstance(event, TransportErrorEvent):
            self.display.print_error(str(event.error))

    def _resolve_connect(self, ok: bool) -> None:
        if self._connect_result is not None and not self._connect_result.done():
            self._connect_result.set_result(ok)

    def _require_manager(self) -> ConnectionManager:
        if self.manager is None:
            raise RuntimeError("REPL not set up")
        return self.manager

    def _require_session(self) -> WorkoutSession:
        if self.session is None:
            raise RuntimeError("REPL not set up")
        return self.session

    def _require_connection(self) -> bool:
        if not self._require_manager().is_connected:
            self.display.print_error("Not connected. Use 'connect' first.")
            return False
        return True

    def get_status(self) -> dict:
        """Collect connection and recording status for display."""
        manager = self._require_manager()
        session = self._require_session()
        device = manager.device if manager.is_connected else None
        return {
            "connection": manager.state.name,
            "device": self.display.device_name(device) if device else None,
            "serial": device.serial_number if device else None,
            "firmware": device.firmware_version if device else None,
            "battery": device.battery_percent if device else None,
            "recording": session.state.name,
            "samples": session.sample_count,
        }

    # ========== Command Handlers ==========

    async def cmd_scan(self, args: list) -> None:
        """Scan for devices for a few seconds and list them."""
        manager = self._require_manager()
        try:
            seconds = float(args[0]) if args else DEFAULT_SCAN_SECONDS
        except ValueError:
            self.display.print_error(f"Invalid duration: {args[0]}")
            return

        if not manager.start_scan():
            return
        self.display.print_info(f"Scanning for Zone devices ({seconds:.0f}s)...")
        await asyncio.sleep(seconds)
        manager.stop_scan()
        await self.cmd_devices([])

    async def cmd_devices(self, args: list) -> None:
        """List discovered devices."""
        self._devices = self._require_manager().devices.list()
        if not self._devices:
            self.display.print_info("No devices found. Make sure the band is powered on and in range.")
            return
        self.display.print_devices(self._devices)

    async def cmd_clear(self, args: list) -> None:
        """Forget discovered devices."""
        self._require_manager().clear_devices()
        self._devices = []
        self.display.print_info("Device list cleared")

    async def cmd_connect(self, args: list) -> None:
        """Connect to a device from the last listing."""
        manager = self._require_manager()
        if manager.is_connected:
            self.display.print_info("Already connected")
            return
        if not self._devices:
            self.display.print_error("No devices. Use 'scan' first.")
            return

        device = select_device(self._devices, args[0] if args else None)
        if device is None:
            self.display.print_error(f"Choose a device number between 1 and {len(self._devices)}")
            return

        self._connect_result = asyncio.get_running_loop().create_future()
        self.display.print_info(f"Connecting to {self.display.device_name(device)}...")
        manager.connect(device)
        try:
            await asyncio.wait_for(self._connect_result, timeout=self.config.connect_timeout + 1.0)
        except asyncio.TimeoutError:
            self.display.print_error("Connection attempt did not finish")
        finally:
            self._connect_result = None

    async def cmd_disconnect(self, args: list) -> None:
        """Disconnect from device."""
        manager = self._require_manager()
        session = self._require_session()
        if not manager.is_connected:
            self.display.print_info("Not connected")
            return
        if session.is_recording:
            session.stop_workout()
        if self.display.live_enabled:
            self.display.stop_live()
        manager.disconnect()
        self.display.print_info("Disconnected")

    async def cmd_start(self, args: list) -> None:
        """Set time and start a workout."""
        if not self._require_connection():
            return
        ok = self._require_session().start_workout()
        self.display.print_result("start", ok)

    async def cmd_stop(self, args: list) -> None:
        """Stop the workout and offer to save it."""
        if not self._require_connection():
            return
        session = self._require_session()
        count = session.stop_workout()
        if count and session.has_unsaved_data:
            answer = await self.prompt.prompt_async("Save the workout data? [Y/n] ")
            if answer.strip().lower() in ("", "y", "yes"):
                await self.cmd_save([])
            else:
                await self.cmd_discard([])

    async def cmd_save(self, args: list) -> None:
        """Export the stopped recording."""
        path = self._require_session().save()
        if path is None:
            self.display.print_info("No BLE data")
        else:
            self.display.print_info(f"Saved to {path}")

    async def cmd_discard(self, args: list) -> None:
        """Delete the stopped recording."""
        self._require_session().discard()
        self.display.print_info("Recording discarded")

    async def cmd_time(self, args: list) -> None:
        """Set device clock."""
        if not self._require_connection():
            return
        self.display.print_result("set time", self._require_manager().set_device_time())

    async def cmd_battery(self, args: list) -> None:
        """Request battery level."""
        if not self._require_connection():
            return
        self.display.print_result("battery", self._require_manager().request_battery_level())

    async def cmd_led(self, args: list) -> None:
        """Send the blue LED command."""
        if not self._require_connection():
            return
        self.display.print_result("led", self._require_manager().send_led_command())

    async def cmd_firmware(self, args: list) -> None:
        """Upload a firmware file."""
        if not self._require_connection():
            return
        if not args:
            self.display.print_error("Usage: firmware <path>")
            return

        path = resolve_path(args[0])
        try:
            image = load_firmware_image(path.read_bytes())
        except OSError as e:
            self.display.print_error(f"Failed to load file: {e}")
            return
        except FirmwareImageError as e:
            self.display.print_error(str(e))
            return

        self.display.print_info(f"Firmware file loaded: {len(image)} bytes")
        self._last_progress_step = -1
        self._require_manager().start_firmware_update(image)

    async def cmd_cancel(self, args: list) -> None:
        """Cancel a firmware upload or reconnect loop."""
        manager = self._require_manager()
        session = self._require_session()
        if manager.is_firmware_updating:
            manager.cancel_firmware_update()
            self.display.print_info("Firmware update cancelled")
        elif session.is_reconnecting:
            session.cancel_reconnect()
            self.display.print_info("Reconnect cancelled")
        else:
            self.display.print_info("Nothing to cancel")

    async def cmd_rename(self, args: list) -> None:
        """Set or clear the custom name of the connected device."""
        if not self._require_connection():
            return
        device = self._require_manager().device
        if device is None:
            return
        self.names.rename(device, args[0] if args else None)
        self.display.print_info(f"Device name: {self.display.device_name(device)}")

    async def cmd_status(self, args: list) -> None:
        """Show connection and recording status."""
        self.display.print_status(self.get_status())

    async def cmd_live(self, args: list) -> None:
        """Toggle live display mode."""
        enabled = self.display.toggle_live()
        if enabled:
            status = self.get_status()
            self.display.update_live(
                {
                    "status": status["recording"],
                    "samples": status["samples"],
                    "battery": status["battery"],
                }
            )
        else:
            self.display.print_info("Live display disabled")

    async def cmd_info(self, args: list) -> None:
        """Show device and debug information."""
        manager = self._require_manager()
        session = self._require_session()

        self.display.console.print("[bold cyan]Device Information[/bold cyan]")
        device = manager.device
        if device is not None:
            self.display.console.print(f"  Name: {self.display.device_name(device)}")
            self.display.console.print(f"  Advertised name: {device.name}")
            self.display.console.print(f"  Address: {device.address}")
            self.display.console.print(f"  Serial: {device.serial_number or '-'}")
            self.display.console.print(f"  Firmware: {device.firmware_version or '-'}")
        else:
            self.display.console.print("  No device selected")

        self.display.console.print()
        self.display.console.print("[bold cyan]Settings[/bold cyan]")
        self.display.console.print(f"  Sample length: {self.config.sample_length} bytes")
        self.display.console.print(f"  Output directory: {session.output_dir}")
        self.display.console.print(f"  Connect timeout: {self.config.connect_timeout}s")

        self.display.console.print()
        self.display.console.print("[bold cyan]Debug Information[/bold cyan]")
        self.display.console.print(f"  State: {manager.state.name}")
        self.display.console.print(f"  Scanning: {manager.is_scanning}")
        self.display.console.print(
            f"  Write characteristic: {manager.write_characteristic.uuid if manager.write_characteristic else '-'}"
        )
        self.display.console.print(f"  Post-connect init sent: {manager.post_connect_init_sent}")
        self.display.console.print(f"  Firmware updating: {manager.is_firmware_updating}")
        self.display.console.print(f"  Recording: {session.state.name}")
        self.display.console.print(f"  Assembly buffer: {session.reassembler.pending} bytes")
        self.display.console.print(f"  Skipped bytes: {session.reassembler.skipped_bytes}")
        self.display.console.print(f"  Live enabled: {self.display.live_enabled}")

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        if self.display.live_enabled:
            self.display.stop_live()

        session = self._require_session()
        if session.is_recording or session.has_unsaved_data:
            session.stop_workout()
            if session.has_unsaved_data:
                path = session.save()
                self.display.print_info(f"Saved unsaved recording to {path}")

        manager = self._require_manager()
        if manager.is_connected:
            self.display.print_info("Disconnecting...")
            manager.disconnect()

        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def run_scan(config: ZoneConfig, seconds: float) -> None:
    """Scan once, print the devices found and exit."""
    display = DisplayManager(names=NameOverrides(JsonFileStore()))
    transport = BleakTransport()
    manager = ConnectionManager(transport, config=config)

    try:
        await transport.power_on()
        if not manager.start_scan():
            display.print_error("Bluetooth is not available")
            sys.exit(1)
        display.print_info(f"Scanning for Zone devices ({seconds:.0f}s)...")
        await asyncio.sleep(seconds)
        manager.stop_scan()
        devices = manager.devices.list()
        if devices:
            display.print_devices(devices)
        else:
            display.print_info("No devices found")
    finally:
        await transport.close()


def build_config(args: argparse.Namespace) -> ZoneConfig:
    """Defaults, then environment, then command-line flags."""
    config = ZoneConfig.from_env()
    overrides = {}
    if args.sample_length is not None:
        overrides["sample_length"] = args.sample_length
    if args.output_dir is not None:
        overrides["output_dir"] = Path(args.output_dir).expanduser()
    if args.extended_start:
        overrides["extended_start"] = True
    if overrides:
        config = replace(config, **overrides)
    return config


def main() -> None:
    """Entry point for the REPL application."""
    parser = argparse.ArgumentParser(
        description="Zone band control and workout recording",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  zonectl                          # Start interactive REPL
  zonectl --scan                   # List nearby Zone devices
  zonectl --scan --duration 10     # Scan for 10 seconds
  zonectl --sample-length {SAMPLE_LENGTH_V2}     # Newer firmware ({SAMPLE_LENGTH_V1} bytes by default)
        """,
    )

    parser.add_argument("--scan", action="store_true", help="Scan for devices and exit")
    parser.add_argument(
        "--duration",
        type=float,
        default=DEFAULT_SCAN_SECONDS,
        help="Scan duration in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--sample-length",
        type=int,
        default=None,
        help=f"Telemetry sample size in bytes ({SAMPLE_LENGTH_V1} or {SAMPLE_LENGTH_V2})",
    )
    parser.add_argument("--output-dir", default=None, help="Directory for recordings")
    parser.add_argument(
        "--extended-start",
        action="store_true",
        help="Send the 4-byte start command (40 08 08 07)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        if args.scan:
            asyncio.run(run_scan(config, args.duration))
        else:
            repl = ZoneCtrlREPL(config)
            asyncio.run(repl.run())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
