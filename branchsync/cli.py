"""Operator console for a branch terminal.

``python -m branchsync`` opens an interactive prompt; ``python -m branchsync
status`` (or any other command name plus arguments) runs one command and exits.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import sys
from typing import List, Optional, Sequence

from .commands import COMMANDS
from .configuration import ConfigurationBundle, Diagnostic, load_runtime_configuration
from .engine import SyncEngine
from .errors import SyncError
from .logging_utils import setup_logging
from .slash_commands import CommandRouter
from .sync.remote import RemoteSource, UnreachableRemote, load_remote

logger = logging.getLogger("branchsync")
REMOTE_ENV = "BRANCHSYNC_REMOTE"
LOG_LEVEL_ENV = "BRANCHSYNC_LOG_LEVEL"


def _log_path_within_data_dir(log_path: Path, data_dir: Path) -> bool:
    try:
        log_path.relative_to(data_dir)
        return True
    except ValueError:
        return False


def configure_logging(bundle: ConfigurationBundle, console: bool = False) -> Path:
    logging_cfg = (bundle.merged.get("logging", {}) or {}) if bundle.merged else {}
    level_name = (os.environ.get(LOG_LEVEL_ENV) or logging_cfg.get("level") or "WARNING").upper()
    log_path = setup_logging(
        bundle.data_dir,
        level_name,
        structured=bool(logging_cfg.get("structured", True)),
        console=console,
    )
    bundle.log_path = log_path
    if not _log_path_within_data_dir(log_path, bundle.data_dir):
        bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Data directory is not writable; logging to fallback path '{log_path}'.",
                source=log_path,
            )
        )
    return log_path


def resolve_remote(bundle: ConfigurationBundle) -> RemoteSource:
    runtime_cfg = (bundle.merged.get("runtime", {}) or {}) if bundle.merged else {}
    spec = os.environ.get(REMOTE_ENV) or runtime_cfg.get("remote") or ""
    if not spec:
        logger.info("No remote configured; running offline only")
        return UnreachableRemote()
    return load_remote(spec)


def build_router(bundle: ConfigurationBundle, engine: Optional[SyncEngine]) -> CommandRouter:
    router = CommandRouter(bundle, engine=engine, metadata={"actor_id": os.environ.get("USER", "operator")})
    router.register_all(COMMANDS)
    return router


def build_engine(bundle: ConfigurationBundle) -> Optional[SyncEngine]:
    if bundle.status != "ready":
        for diag in bundle.diagnostics:
            if diag.level == "error":
                logger.error("Configuration error: %s", diag.message)
        return None
    try:
        return SyncEngine.from_configuration(bundle, remote=resolve_remote(bundle))
    except (SyncError, OSError, ImportError, ValueError) as exc:
        logger.error("Could not start the sync engine: %s", exc)
        bundle.diagnostics.append(Diagnostic(level="error", message=f"Engine unavailable: {exc}"))
        return None


def run_interactive(router: CommandRouter) -> None:
    print("[branchsync] ready. Type /help for commands, 'exit' to quit.")
    while True:
        try:
            raw_line = input("> ")
        except (EOFError, KeyboardInterrupt):
            print("\n[Exiting branchsync]")
            break

        line = raw_line.strip()
        if line.lower() in {"quit", "exit", "/quit", "/exit"}:
            print("[Goodbye]")
            break
        if not line:
            continue
        if not line.startswith("/"):
            line = f"/{line}"
        logger.info("Console command: %s", line)
        print(router.dispatch(line))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``python -m branchsync`` and the ``branchsync`` script."""

    args: List[str] = list(sys.argv[1:] if argv is None else argv)
    bundle = load_runtime_configuration()
    configure_logging(bundle, console=False)
    engine = build_engine(bundle)
    router = build_router(bundle, engine)

    try:
        if args:
            print(router.handle(args[0].lstrip("/"), args[1:]))
            return 0 if engine is not None or args[0].lstrip("/") == "help" else 1
        if engine is not None:
            engine.start()
        run_interactive(router)
        return 0
    finally:
        if engine is not None:
            engine.close()


__all__ = ["build_engine", "build_router", "configure_logging", "main", "resolve_remote"]
