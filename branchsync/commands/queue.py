"""Slash command for inspecting the pending operation queue."""

from __future__ import annotations

from typing import List

from rich import box
from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from ..timeutils import isoformat

DEFAULT_MAX_ROWS = 20
DEAD_ALIASES = {"dead", "dead-letters"}


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    engine = context.engine
    normalized = [arg.strip() for arg in args if arg.strip()]
    show_all = any(arg.lower() in {"--all", "-a"} for arg in normalized)
    dead = any(arg.lower() in DEAD_ALIASES for arg in normalized)
    positional = [a for a in normalized if not a.startswith("-") and a.lower() not in DEAD_ALIASES]
    branch = positional[0] if positional else None

    if dead:
        operations = engine.operations.dead_letters()
        title = "Dead Letters"
    else:
        operations = engine.operations.list(branch)
        title = f"Pending Operations ({branch})" if branch else "Pending Operations"

    if not operations:
        return f"[queue] No {'dead-lettered' if dead else 'pending'} operations."

    max_rows = len(operations) if show_all else DEFAULT_MAX_ROWS

    def _render(console: Console) -> None:
        table = Table(title=title, show_header=True, header_style="bold cyan", box=box.SIMPLE)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Id", style="cyan", no_wrap=True)
        table.add_column("Type", no_wrap=True)
        table.add_column("Branch", no_wrap=True)
        table.add_column("Entity", overflow="fold")
        table.add_column("Queued", no_wrap=True)
        table.add_column("Retries", justify="right")
        table.add_column("Last error", overflow="fold")
        for index, op in enumerate(operations[:max_rows], start=1):
            table.add_row(
                str(index),
                op.id[:12],
                op.type.value,
                op.branch_id,
                f"{op.entity_type}:{op.entity_id or '-'}",
                isoformat(op.timestamp),
                str(op.retry_count),
                op.last_error or "",
            )
        console.print(table)
        if len(operations) > max_rows:
            console.print(
                f"[dim]Showing {max_rows}/{len(operations)}. Use '/queue --all' for the full list.[/dim]"
            )

    return render_rich(_render)


COMMAND = SlashCommand(
    name="queue",
    description="List queued operations in push order (or dead letters).",
    handler=_handler,
    usage="[<branch>|dead] [--all]",
)
