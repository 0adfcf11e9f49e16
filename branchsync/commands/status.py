"""Slash command for terminal sync status."""

from __future__ import annotations

from typing import List

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from ..timeutils import isoformat


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    engine = context.engine
    config = context.config
    status = engine.status()
    show_diagnostics = any(arg.strip().lower() in {"diag", "diagnostics", "--all"} for arg in args)

    def _render(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Data dir", str(config.data_dir))
        info.add_row("Config", config.status)
        info.add_row("Pending ops", str(status["pending"]))
        info.add_row("Dead letters", str(status["dead_letters"]))
        conflicts = status["conflicts"]
        info.add_row("Conflicts", f"{conflicts['unresolved']} open / {conflicts['total']} total")
        info.add_row("Storage monitor", status["storage_monitor"])
        console.print(Panel(info, title="Sync Status", border_style="green", padding=(0, 1)))

        if status["branches"]:
            table = Table(show_header=True, header_style="bold blue", box=box.SIMPLE, pad_edge=False)
            table.add_column("Branch", style="cyan", no_wrap=True)
            table.add_column("Online", no_wrap=True)
            table.add_column("Phase", no_wrap=True)
            table.add_column("Pending", justify="right")
            table.add_column("Last pull", overflow="fold")
            table.add_column("Last push", overflow="fold")
            for branch in status["branches"]:
                pull = isoformat(branch["last_pull_timestamp"])
                if branch["last_pull_failed"]:
                    pull += " (failed)"
                table.add_row(
                    branch["branch_id"],
                    "yes" if branch["is_online"] else "no",
                    branch["phase"],
                    str(branch["pending_operations"]),
                    pull,
                    isoformat(branch["last_push_timestamp"]),
                )
            console.print(Panel(table, title="Branches", border_style="blue", padding=(0, 1)))
        else:
            console.print(Panel("[dim]No branches configured or queued.", title="Branches", border_style="blue"))

        if show_diagnostics and config.diagnostics:
            diag_table = Table(show_header=True, header_style="bold red", box=box.SIMPLE, pad_edge=False)
            diag_table.add_column("Lvl", style="red", no_wrap=True)
            diag_table.add_column("Message", overflow="fold")
            for diag in config.diagnostics:
                diag_table.add_row(diag.level.upper(), diag.message)
            console.print(Panel(diag_table, title="Diagnostics", border_style="red", padding=(0, 1)))

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show branch sync state, queue depth and conflict counts.",
    handler=_handler,
    usage="[diag]",
)
