"""Slash command for the storage budget."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from ..timeutils import isoformat


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    monitor = context.engine.monitor
    if args and args[0].lower() == "check":
        monitor.force_check()

    stats = monitor.storage_stats()
    alerts = monitor.recent_alerts()

    def _render(console: Console) -> None:
        table = Table(title="Storage Budget", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")
        table.add_row("Usage", monitor.formatted_usage())
        if stats is not None:
            level = "critical" if stats.is_critical else "warning" if stats.is_near_limit else "ok"
            table.add_row("Level", level)
        else:
            table.add_row("Monitor", f"disabled ({monitor.disabled_reason})")
        table.add_row("Warning at", f"{monitor.settings.warning_percent:g}%")
        table.add_row("Critical at", f"{monitor.settings.critical_percent:g}%")
        table.add_row("Last check", isoformat(monitor.last_check_time))
        console.print(table)

        if alerts:
            alert_table = Table(title="Recent Alerts", show_header=True, header_style="bold yellow")
            alert_table.add_column("When", no_wrap=True)
            alert_table.add_column("Level", no_wrap=True)
            alert_table.add_column("Used", justify="right")
            alert_table.add_column("Message", overflow="fold")
            for alert in alerts:
                alert_table.add_row(
                    isoformat(alert.timestamp),
                    alert.level.value,
                    f"{alert.percentage:.1f}%",
                    alert.message,
                )
            console.print(alert_table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="storage",
    description="Show storage usage against the quota and recent alerts.",
    handler=_handler,
    usage="[check]",
)
