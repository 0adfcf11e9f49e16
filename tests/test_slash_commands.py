"""Tests for the slash command router and the operator console commands."""

from __future__ import annotations

from pathlib import Path

import pytest

from branchsync.commands import COMMANDS
from branchsync.configuration import ConfigurationBundle
from branchsync.engine import SyncEngine
from branchsync.slash_commands import (
    CommandRouter,
    SlashCommand,
    SlashCommandContext,
    render_help_table,
    render_rich,
)
from branchsync.storage import CallableUsageEstimator, MemoryStore
from branchsync.sync.remote import PushResult


@pytest.fixture(autouse=True)
def _wide_terminal(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("COLUMNS", "220")
    monkeypatch.setenv("LINES", "50")


def _router(tmp_path: Path, engine=None) -> CommandRouter:
    router = CommandRouter(
        ConfigurationBundle(data_dir=tmp_path, status="ready"),
        engine=engine,
        metadata={"actor_id": "cashier-7"},
    )
    router.register_all(COMMANDS)
    return router


def _open_conflict(engine, remote) -> str:
    engine.record_offline("UPDATE_MENU_ITEM", {"id": "m1", "price": 11, "version": 3}, "north")
    remote.script(PushResult.conflict({"id": "m1", "price": 12, "version": 3}))
    return engine.sync("north").conflicts[0]


def test_router_handles_registered_command(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    captured = {}

    def handler(context: SlashCommandContext, args: list[str]) -> str:
        captured["context"] = context
        return f"echo:{' '.join(args)}"

    router.register(SlashCommand(name="echo", description="Echo args", handler=handler, requires_engine=False))

    assert router.dispatch("/echo hello world") == "echo:hello world"
    assert captured["context"].config is config
    assert "echo" in router.command_names
    assert router.dispatch("   ") == ""


def test_unknown_command(tmp_path: Path):
    assert "Unknown command '/nope'" in _router(tmp_path).handle("nope", [])


def test_commands_needing_engine_are_refused_without_one(tmp_path: Path):
    result = _router(tmp_path).handle("queue", [])
    assert "needs a running sync engine" in result


def test_help_works_without_engine(tmp_path: Path):
    output = _router(tmp_path).handle("help", [])
    assert "/conflicts" in output
    assert "/sync" in output


def test_render_help_table_lists_commands():
    output = render_help_table(
        [SlashCommand(name="status", description="Show status", handler=lambda *_: "", usage="[diag]")]
    )
    assert "/status [diag]" in output
    assert "Show status" in output


def test_render_rich_produces_ansi():
    def _render(console):
        console.print("hello", style="bold red")

    assert "\x1b[" in render_rich(_render)


def test_queue_command(tmp_path: Path, engine):
    router = _router(tmp_path, engine)
    assert router.handle("queue", []) == "[queue] No pending operations."
    assert router.handle("queue", ["dead"]) == "[queue] No dead-lettered operations."

    engine.record_offline("CREATE_ORDER", {"id": "o1"}, "north")
    output = router.handle("queue", ["north"])

    assert "Pending Operations" in output
    assert "CREATE_ORDER" in output
    assert router.handle("queue", ["south"]) == "[queue] No pending operations."


def test_conflicts_list_and_resolve(tmp_path: Path, engine, remote):
    router = _router(tmp_path, engine)
    assert router.handle("conflicts", []) == "[conflicts] No open conflicts."

    conflict_id = _open_conflict(engine, remote)
    listing = router.handle("conflicts", ["list"])
    assert "CONCURRENT_UPDATE" in listing

    result = router.dispatch(f"/conflicts resolve {conflict_id} keep-remote")

    assert result == f"[conflicts] {conflict_id} resolved with KEEP_REMOTE."
    assert engine.conflict_manager.get(conflict_id).resolved_by == "cashier-7"
    assert engine.cache.get("menu_items", "m1")["price"] == 12
    assert router.handle("conflicts", ["clear"]) == "[conflicts] Cleared 1 resolved conflict(s)."


def test_conflicts_resolve_errors(tmp_path: Path, engine, remote):
    router = _router(tmp_path, engine)
    conflict_id = _open_conflict(engine, remote)

    assert "Usage" in router.handle("conflicts", ["resolve", conflict_id])
    assert "Choose one of" in router.handle("conflicts", ["resolve", conflict_id, "coin-flip"])
    assert router.handle("conflicts", ["resolve", "missing", "MERGE"]) == "[conflicts] No conflict with id 'missing'."
    assert "not valid JSON" in router.handle("conflicts", ["resolve", conflict_id, "MANUAL", "{price"])
    assert "Manual payload rejected" in router.handle("conflicts", ["resolve", conflict_id, "MANUAL", "[1]"])
    assert "Unknown subcommand" in router.handle("conflicts", ["frobnicate"])
    assert engine.conflict_manager.get(conflict_id).resolved is False


def test_conflicts_manual_payload(tmp_path: Path, engine, remote):
    router = _router(tmp_path, engine)
    conflict_id = _open_conflict(engine, remote)

    result = router.dispatch(f'/conflicts resolve {conflict_id} MANUAL {{"id":"m1","price":11.5}}')

    assert result.endswith("resolved with MANUAL.")
    assert engine.operations.list("north")[0].payload["price"] == 11.5


def test_conflicts_auto_and_stats(tmp_path: Path, engine, remote):
    router = _router(tmp_path, engine)
    _open_conflict(engine, remote)

    assert "Unresolved" in router.handle("conflicts", ["stats"])
    assert router.handle("conflicts", ["auto"]) == "[conflicts] Auto-resolved 1 conflict(s); 0 still open."
    assert "Strategies" in router.handle("conflicts", ["help"])


def test_sync_command(tmp_path: Path, engine, remote):
    router = _router(tmp_path, engine)
    engine.record_offline("CREATE_ORDER", {"id": "o1"}, "north")

    output = router.handle("sync", ["north"])

    assert "Sync Results" in output
    assert "north" in output
    assert remote.pushed_ids

    everything = router.handle("sync", [])
    assert "south" in everything


def test_sync_command_with_nothing_to_do(tmp_path: Path, remote, usage, clock):
    idle = SyncEngine(MemoryStore(), remote, CallableUsageEstimator(usage), clock=clock)
    assert _router(tmp_path, idle).handle("sync", ["all"]) == "[sync] No branches configured and nothing queued."


def test_storage_command(tmp_path: Path, engine, usage):
    router = _router(tmp_path, engine)
    usage.set_percent(85)

    output = router.handle("storage", ["check"])

    assert "Storage Budget" in output
    assert "warning" in output
    assert "Recent Alerts" in output


def test_status_command(tmp_path: Path, engine):
    engine.record_offline("CREATE_ORDER", {"id": "o1"}, "north")

    output = _router(tmp_path, engine).handle("status", [])

    assert "Sync Status" in output
    assert "north" in output
    assert "Pending ops" in output
