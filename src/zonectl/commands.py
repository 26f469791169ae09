"""
Command definitions and auto-completion for REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

from prompt_toolkit.completion import Completer, Completion, PathCompleter
from prompt_toolkit.document import Document


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


# Define all available commands
COMMANDS = [
    Command(
        name="scan",
        aliases=["sc"],
        description="Scan for Zone devices",
        usage="scan [seconds]",
        handler="cmd_scan",
    ),
    Command(
        name="devices",
        aliases=["ls"],
        description="List discovered devices",
        usage="devices",
        handler="cmd_devices",
    ),
    Command(
        name="clear",
        aliases=[],
        description="Forget all discovered devices",
        usage="clear",
        handler="cmd_clear",
    ),
    Command(
        name="connect",
        aliases=["c"],
        description="Connect to a discovered device",
        usage="connect <#>",
        handler="cmd_connect",
    ),
    Command(
        name="disconnect",
        aliases=["dc"],
        description="Disconnect from device",
        usage="disconnect",
        handler="cmd_disconnect",
    ),
    Command(
        name="start",
        aliases=["s"],
        description="Set device time and start a workout recording",
        usage="start",
        handler="cmd_start",
    ),
    Command(
        name="stop",
        aliases=["x"],
        description="Stop the workout recording",
        usage="stop",
        handler="cmd_stop",
    ),
    Command(
        name="save",
        aliases=[],
        description="Export the stopped recording to CSV",
        usage="save",
        handler="cmd_save",
    ),
    Command(
        name="discard",
        aliases=[],
        description="Delete the stopped recording",
        usage="discard",
        handler="cmd_discard",
    ),
    Command(
        name="time",
        aliases=["t"],
        description="Set device clock to now",
        usage="time",
        handler="cmd_time",
    ),
    Command(
        name="battery",
        aliases=["b"],
        description="Request battery level",
        usage="battery",
        handler="cmd_battery",
    ),
    Command(
        name="led",
        aliases=[],
        description="Send blue LED command",
        usage="led",
        handler="cmd_led",
    ),
    Command(
        name="firmware",
        aliases=["fw"],
        description="Upload a firmware file (binary or hex text)",
        usage="firmware <path>",
        handler="cmd_firmware",
    ),
    Command(
        name="cancel",
        aliases=[],
        description="Cancel firmware upload or reconnect loop",
        usage="cancel",
        handler="cmd_cancel",
    ),
    Command(
        name="rename",
        aliases=["rn"],
        description="Set a custom name for the connected device (blank clears)",
        usage="rename [name]",
        handler="cmd_rename",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Show connection and recording status",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="live",
        aliases=["l"],
        description="Toggle live recording display",
        usage="live",
        handler="cmd_live",
    ),
    Command(
        name="info",
        aliases=["i"],
        description="Show device and debug information",
        usage="info",
        handler="cmd_info",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


class CommandCompleter(Completer):
    """Auto-completion for commands and arguments."""

    def __init__(self) -> None:
        """Initialize completer."""
        self._command_names = set()
        self._command_aliases = set()
        self._paths = PathCompleter(expanduser=True)

        for cmd in COMMANDS:
            self._command_names.add(cmd.name)
            self._command_aliases.update(cmd.aliases)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands/arguments
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text:
            return

        # First part: complete command name
        if len(parts) <= 1 and not text.endswith(" "):
            partial_cmd = parts[0].lower() if parts else ""
            all_names = self._command_names | self._command_aliases

            for name in sorted(all_names):
                if name.startswith(partial_cmd):
                    completion = name[len(partial_cmd) :]
                    yield Completion(
                        completion,
                        start_position=0,
                        display=f"({name})",
                    )
            return

        # Second part: file paths for the firmware command
        first_cmd = parts[0].lower()
        if first_cmd in ("firmware", "fw"):
            partial = text[len(parts[0]) :].lstrip()
            path_document = Document(partial, cursor_position=len(partial))
            yield from self._paths.get_completions(path_document, complete_event)


def resolve_path(arg: str) -> Path:
    """Expand a user-supplied path argument."""
    return Path(arg).expanduser()
