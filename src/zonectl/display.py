"""
Display manager for Rich-based REPL output and live updates.

Handles all console output including device tables, connection status,
firmware progress and the toggle-able live recording view.
"""

import logging
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from .devices import Device
from .names import NameOverrides

logger = logging.getLogger(__name__)


class DisplayManager:
    """Manages console output with Rich library."""

    def __init__(self, console: Optional[Console] = None, names: Optional[NameOverrides] = None):
        """Initialize display manager.

        Args:
            console: Rich Console instance (creates one if None)
            names: Custom device names (advertised names only if None)
        """
        self.console = console or Console()
        self.names = names
        self.live_enabled = False
        self._live: Optional[Live] = None
        self._live_data: dict[str, Any] = {}

    def device_name(self, device: Device) -> str:
        if self.names is None:
            return device.name
        return self.names.display_name(device)

    def print_banner(self) -> None:
        """Print startup banner."""
        panel = Panel(
            "[bold cyan]ZoneCtrl - Zone Band Control & Recording[/bold cyan]\n"
            "[dim]Type 'help' for commands, 'quit' to exit[/dim]",
            expand=False,
        )
        self.console.print(panel)

    def print_devices(self, devices: Iterable[Device]) -> None:
        """Display discovered devices as a numbered table.

        Args:
            devices: Devices in selection order
        """
        table = self.format_device_table(devices)
        self.console.print(table)

    def format_device_table(self, devices: Iterable[Device]) -> Table:
        table = Table(title="Zone Devices", show_header=True, header_style="bold cyan")
        table.add_column("#", style="magenta", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Serial", style="yellow")
        table.add_column("Signal", style="white", justify="right")
        table.add_column("Firmware", style="dim")

        for index, device in enumerate(devices, start=1):
            table.add_row(
                str(index),
                self.device_name(device),
                device.serial_number or "-",
                self.format_rssi(device.rssi),
                device.firmware_version or "-",
            )
        return table

    def print_status(self, data: dict) -> None:
        """Display one-time connection and recording status.

        Args:
            data: Dictionary from ZoneCtrlREPL.get_status()
        """
        table = self.format_status_table(data)
        self.console.print(table)

    def print_result(self, cmd: str, ok: bool) -> None:
        """Display command result.

        Args:
            cmd: Command name
            ok: Whether the command was sent
        """
        if ok:
            self.console.print(f"[green]✓[/green] {cmd} sent", highlight=False)
        else:
            self.console.print(f"[red]✗[/red] {cmd} failed", highlight=False)

    def print_error(self, message: str) -> None:
        """Print red error message.

        Args:
            message: Error message text
        """
        self.console.print(f"[red]Error:[/red] {message}", highlight=False)

    def print_info(self, message: str) -> None:
        """Print blue info message.

        Args:
            message: Info message text
        """
        self.console.print(f"[cyan]Info:[/cyan] {message}", highlight=False)

    def print_firmware_progress(self, bytes_sent: int, total_bytes: int) -> None:
        percent = int(bytes_sent * 100 / total_bytes) if total_bytes > 0 else 0
        self.console.print(
            f"[cyan]Firmware Update:[/cyan] {bytes_sent}/{total_bytes} ({percent}%)",
            highlight=False,
        )

    def print_help(self, commands: list) -> None:
        """Display command reference.

        Args:
            commands: List of Command objects
        """
        table = Table(title="Available Commands", show_header=True)
        table.add_column("Command", style="cyan")
        table.add_column("Aliases", style="magenta")
        table.add_column("Description", style="white")
        table.add_column("Usage", style="yellow")

        for cmd in commands:
            aliases = ", ".join(cmd.aliases) if cmd.aliases else "-"
            table.add_row(cmd.name, aliases, cmd.description, cmd.usage)

        self.console.print(table)
        self.console.print(
            "[dim]Keyboard shortcuts: Ctrl+C to interrupt, Ctrl+D to exit[/dim]"
        )

    def start_live(self) -> None:
        """Start live display refresh mode."""
        if self.live_enabled:
            return

        self.live_enabled = True
        self._live_data = {
            "status": "Waiting...",
            "samples": 0,
            "battery": None,
            "last_sample": b"",
        }
        renderable = self._create_live_table()
        self._live = Live(renderable, console=self.console, refresh_per_second=2)
        self._live.start()
        self.console.print("[dim]Live display enabled ['live' to disable][/dim]")

    def stop_live(self) -> None:
        """Stop live display refresh mode."""
        if not self.live_enabled:
            return

        self.live_enabled = False
        if self._live is not None:
            self._live.stop()
            self._live = None

    def update_live(self, data: dict) -> None:
        """Update live display with new recording values.

        Args:
            data: Any of status, samples, battery, last_sample
        """
        if not self.live_enabled or self._live is None:
            return

        self._live_data.update(data)

        try:
            self._live.update(self._create_live_table())
        except Exception as e:
            logger.error(f"Live update error: {e}")

    def toggle_live(self) -> bool:
        """Toggle live display on/off.

        Returns:
            New live display state (True = on, False = off)
        """
        if self.live_enabled:
            self.stop_live()
        else:
            self.start_live()
        return self.live_enabled

    def _create_live_table(self) -> Table:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Status", str(self._live_data.get("status", "UNKNOWN")))
        table.add_row("Samples", f"{self._live_data.get('samples', 0):,}")
        table.add_row("Battery", self.format_battery(self._live_data.get("battery")))
        table.add_row("Last sample", self.format_payload(self._live_data.get("last_sample", b"")))
        return table

    def format_status_table(self, data: dict) -> Table:
        """Create Rich Table for status display.

        Args:
            data: Dictionary with connection, device, serial, firmware,
                battery, recording and samples

        Returns:
            Rich Table object
        """
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Connection", data.get("connection", "UNKNOWN"))
        table.add_row("Device", data.get("device") or "-")
        table.add_row("Serial", data.get("serial") or "-")
        table.add_row("Firmware", data.get("firmware") or "-")
        table.add_row("Battery", self.format_battery(data.get("battery")))
        table.add_row("Recording", data.get("recording", "IDLE"))
        table.add_row("Samples", f"{data.get('samples', 0):,}")
        return table

    @staticmethod
    def format_rssi(rssi: int) -> str:
        """Format signal strength.

        Args:
            rssi: Received signal strength in dBm

        Returns:
            Formatted signal string
        """
        return f"{rssi} dBm"

    @staticmethod
    def format_battery(percent: Optional[int]) -> str:
        if percent is None:
            return "-"
        return f"{percent}%"

    @staticmethod
    def format_payload(payload: bytes, limit: int = 16) -> str:
        """Hex preview of a sample, truncated to limit bytes."""
        if not payload:
            return "-"
        shown = " ".join(f"{b:02X}" for b in payload[:limit])
        if len(payload) > limit:
            shown += f" … ({len(payload)} bytes)"
        return shown
