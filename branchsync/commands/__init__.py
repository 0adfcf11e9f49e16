"""Slash command registry."""

from __future__ import annotations

from .conflicts import COMMAND as CONFLICTS_COMMAND
from .help import COMMAND as HELP_COMMAND
from .queue import COMMAND as QUEUE_COMMAND
from .status import COMMAND as STATUS_COMMAND
from .storage import COMMAND as STORAGE_COMMAND
from .sync import COMMAND as SYNC_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    QUEUE_COMMAND,
    CONFLICTS_COMMAND,
    STORAGE_COMMAND,
    SYNC_COMMAND,
]

__all__ = ["COMMANDS"]
