"""Slash command for running sync cycles."""

from __future__ import annotations

from typing import Dict, List

from rich.console import Console
from rich.table import Table

from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)
from ..sync.coordinator import SyncResult


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Run a sync cycle for one branch or all of them."""

    engine = context.engine
    target = args[0] if args else "all"

    if target.lower() == "all":
        results = engine.sync_all()
        if not results:
            return "[sync] No branches configured and nothing queued."
        return _render_results(results)

    return _render_results({target: engine.sync(target)})


def _render_results(results: Dict[str, SyncResult]) -> str:
    def _render(console: Console) -> None:
        table = Table(title="Sync Results", show_header=True, header_style="bold green")
        table.add_column("Branch", style="cyan", no_wrap=True)
        table.add_column("Pull", no_wrap=True)
        table.add_column("Pushed", justify="right")
        table.add_column("Pending", justify="right")
        table.add_column("Outcome", overflow="fold")
        for branch, result in results.items():
            if result.skipped:
                table.add_row(branch, "-", "-", "-", "skipped (already syncing)")
                continue
            pull = "ok" if result.pulled else f"failed: {result.pull_error}"
            outcome = result.phase.value
            if result.stopped_reason:
                outcome += f" (stopped: {result.stopped_reason})"
            if result.conflicts:
                outcome += f" conflicts: {', '.join(result.conflicts)}"
            table.add_row(branch, pull, str(result.pushed), str(result.pending), outcome)
        console.print(table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="sync",
    description="Pull then push queued operations for a branch (default: all).",
    handler=_handler,
    usage="[<branch>|all]",
)
