"""Slash command for listing and resolving sync conflicts."""

from __future__ import annotations

import json
from typing import List

from rich import box
from rich.console import Console
from rich.table import Table

from ..errors import ConflictNotFoundError, MalformedManualPayloadError
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)
from ..sync.conflict import ResolutionStrategy


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Manage sync conflicts."""

    if not args:
        return _list_conflicts(context, show_resolved=False)

    subcommand = args[0].lower()

    if subcommand == "list":
        return _list_conflicts(context, show_resolved="--all" in args[1:])
    elif subcommand == "resolve":
        if len(args) < 3:
            return "[conflicts] Usage: /conflicts resolve <id> <strategy> [json-payload]"
        return _resolve(context, args[1], args[2], " ".join(args[3:]))
    elif subcommand == "auto":
        return _auto_resolve(context)
    elif subcommand == "clear":
        removed = context.engine.clear_resolved_conflicts()
        return f"[conflicts] Cleared {removed} resolved conflict(s)."
    elif subcommand == "stats":
        return _show_stats(context)
    elif subcommand == "help":
        return _show_help()
    else:
        return f"[conflicts] Unknown subcommand '{subcommand}'. Use /conflicts help for usage."


def _list_conflicts(context: SlashCommandContext, show_resolved: bool) -> str:
    engine = context.engine
    conflicts = engine.conflicts() if show_resolved else engine.unresolved_conflicts()
    if not conflicts:
        return "[conflicts] No open conflicts." if not show_resolved else "[conflicts] No conflicts."

    def _render(console: Console) -> None:
        table = Table(title="Sync Conflicts", show_header=True, header_style="bold red", box=box.SIMPLE)
        table.add_column("Id", style="cyan", overflow="fold")
        table.add_column("Type", no_wrap=True)
        table.add_column("Entity", overflow="fold")
        table.add_column("Versions", no_wrap=True)
        table.add_column("Branch", no_wrap=True)
        table.add_column("Resolution", overflow="fold")
        for conflict in conflicts:
            if conflict.resolved and conflict.resolution_strategy:
                resolution = f"{conflict.resolution_strategy.value} by {conflict.resolved_by}"
            else:
                resolution = "[yellow]open[/yellow]"
            table.add_row(
                conflict.id,
                conflict.conflict_type.value,
                f"{conflict.entity_type}:{conflict.entity_id}",
                f"L{conflict.local_version} / R{conflict.remote_version}",
                conflict.branch_id or "-",
                resolution,
            )
        console.print(table)

    return render_rich(_render)


def _resolve(context: SlashCommandContext, conflict_id: str, raw_strategy: str, raw_payload: str) -> str:
    try:
        strategy = ResolutionStrategy.parse(raw_strategy)
    except ValueError as exc:
        choices = ", ".join(s.value for s in ResolutionStrategy)
        return f"[conflicts] {exc}. Choose one of: {choices}"

    payload = None
    if raw_payload:
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            return f"[conflicts] Payload is not valid JSON: {exc}"

    actor = context.metadata.get("actor_id", "operator")
    try:
        conflict = context.engine.resolve(conflict_id, strategy, actor, payload)
    except ConflictNotFoundError:
        return f"[conflicts] No conflict with id '{conflict_id}'."
    except MalformedManualPayloadError as exc:
        return f"[conflicts] Manual payload rejected: {exc}"
    return f"[conflicts] {conflict.id} resolved with {strategy.value}."


def _auto_resolve(context: SlashCommandContext) -> str:
    resolved = context.engine.auto_resolve(actor_id=context.metadata.get("actor_id", "auto-resolver"))
    remaining = len(context.engine.unresolved_conflicts())
    return f"[conflicts] Auto-resolved {len(resolved)} conflict(s); {remaining} still open."


def _show_stats(context: SlashCommandContext) -> str:
    stats = context.engine.conflict_manager.stats()

    def _render(console: Console) -> None:
        table = Table(title="Conflict Statistics", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")
        table.add_row("Total", str(stats.total))
        table.add_row("Resolved", str(stats.resolved))
        table.add_row("Unresolved", str(stats.unresolved))
        for name, count in sorted(stats.by_type.items()):
            table.add_row(name, str(count))
        console.print(table)

    return render_rich(_render)


def _show_help() -> str:
    strategies = ", ".join(s.value for s in ResolutionStrategy)
    return "\n".join(
        [
            "[conflicts] Usage:",
            "  /conflicts [list [--all]]          List open (or all) conflicts",
            "  /conflicts resolve <id> <strategy> Resolve one conflict; MANUAL takes a JSON payload",
            "  /conflicts auto                    Apply the configured default strategies",
            "  /conflicts clear                   Drop resolved conflicts",
            "  /conflicts stats                   Counts by type",
            f"  Strategies: {strategies}",
        ]
    )


COMMAND = SlashCommand(
    name="conflicts",
    description="List, resolve, auto-resolve or clear sync conflicts.",
    handler=_handler,
    usage="[list|resolve <id> <strategy>|auto|clear]",
)
