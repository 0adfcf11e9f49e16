"""Operator console command registry and helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import shutil
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle

if TYPE_CHECKING:
    from .engine import SyncEngine

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]


@dataclass
class SlashCommandContext:
    """Context passed into each slash command handler."""

    config: ConfigurationBundle
    router: "CommandRouter"
    engine: Optional["SyncEngine"] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SlashCommand:
    """Metadata about a slash command."""

    name: str
    description: str
    handler: SlashCommandHandler
    usage: str = ""
    requires_engine: bool = True


class CommandRouter:
    """Registry + dispatcher for slash commands."""

    def __init__(
        self,
        config: ConfigurationBundle,
        engine: Optional["SyncEngine"] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self._commands: Dict[str, SlashCommand] = {}
        self.metadata = metadata or {}

    def register(self, command: SlashCommand) -> None:
        self._commands[command.name.lower()] = command

    def register_all(self, commands: Sequence[SlashCommand]) -> None:
        for command in commands:
            self.register(command)

    def dispatch(self, line: str) -> str:
        """Run a raw console line such as ``/conflicts resolve abc KEEP_LOCAL``."""
        parts = line.strip().split()
        if not parts:
            return ""
        name = parts[0].lstrip("/")
        return self.handle(name, parts[1:])

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self._commands.get(command_name.lower())
        if command is None:
            return f"[router] Unknown command '/{command_name}'. Use /help for the list."
        if command.requires_engine and self.engine is None:
            return (
                f"[router] '/{command_name}' needs a running sync engine "
                f"(configuration status: {self.config.status})."
            )
        context = SlashCommandContext(
            config=self.config,
            router=self,
            engine=self.engine,
            metadata=self.metadata,
        )
        return command.handler(context, args)

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands.keys())

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        return self._commands.get(command_name.lower())


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render a help table listing slash commands."""

    def _render(console: Console) -> None:
        table = Table(title="Slash Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        for cmd in commands:
            label = f"/{cmd.name}" + (f" {cmd.usage}" if cmd.usage else "")
            table.add_row(label, cmd.description)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(100, 24))
    # Clamp to a reasonable minimum so Rich does not choke on ultra-small widths.
    width = max(40, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "CommandRouter",
    "SlashCommand",
    "SlashCommandContext",
    "render_help_table",
    "render_rich",
]
