"""Data-directory aware configuration loading for branchsync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DATA_DIR_ENV = "BRANCHSYNC_DATA_DIR"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

DEFAULT_CONFLICT_STRATEGIES: Dict[str, str] = {
    "VERSION_MISMATCH": "LAST_WRITE_WINS",
    "CONCURRENT_UPDATE": "LAST_WRITE_WINS",
    "DELETED_MODIFIED": "KEEP_REMOTE",
    "MODIFIED_DELETED": "KEEP_LOCAL",
    "DUPLICATE_ENTITY": "MERGE",
}


CONFIG_SCHEMA: SchemaSpec = {
    "runtime": {
        "type": dict,
        "schema": {
            "name": {"type": str, "default": "branchsync"},
            "terminal_id": {"type": str, "default": ""},
            "remote": {"type": str, "default": ""},
        },
        "default": {},
    },
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "branches": {"type": list, "item_type": str, "default_factory": list},
            "interval": {"type": (int, float), "default": 30},
            "backoff_base": {"type": (int, float), "default": 1.0},
            "backoff_cap": {"type": (int, float), "default": 32.0},
            "max_retries": {"type": (int, type(None)), "default": None},
            "max_workers": {"type": int, "default": 4},
            "connectivity_checks": {
                "type": list,
                "item_type": str,
                "default_factory": list,
            },
            "connectivity_timeout": {"type": (int, float), "default": 1.0},
        },
        "default": {},
    },
    "storage": {
        "type": dict,
        "schema": {
            "backend": {"type": str, "default": "sqlite"},
            "database": {"type": str, "default": "state/branchsync.db"},
            "quota_bytes": {"type": int, "default": 50 * 1024 * 1024},
            "estimator": {"type": str, "default": "database"},
            "check_interval": {"type": (int, float), "default": 300},
            "warning_percent": {"type": (int, float), "default": 80.0},
            "critical_percent": {"type": (int, float), "default": 95.0},
            "rearm_seconds": {"type": (int, float), "default": 300},
            "order_retention_seconds": {"type": (int, float), "default": 3600},
            "operation_log_limit": {"type": int, "default": 100},
        },
        "default": {},
    },
    "conflicts": {
        "type": dict,
        "schema": {
            "default_strategies": {
                "type": dict,
                "default_factory": lambda: dict(DEFAULT_CONFLICT_STRATEGIES),
            },
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """One problem found while reading or checking terminal settings."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """Effective terminal settings and the layers they were built from.

    ``defaults`` ship with the package under ``config/``; ``overrides`` live in
    the terminal's own ``<data_dir>/config``. ``merged`` is the validated
    result with every schema default filled in.
    """

    data_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None


def resolve_data_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = "~/.branchsync",
) -> Path:
    """Resolve the terminal data directory from the environment."""

    env_source = env or os.environ
    raw = env_source.get(DATA_DIR_ENV, default)
    return Path(raw).expanduser()


def load_runtime_configuration(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Build the terminal's settings: packaged defaults, then its own overrides.

    A missing or unusable data directory is reported rather than raised so
    the console can still start and explain what is wrong.
    """

    terminal_dir = data_dir or resolve_data_dir()
    diagnostics: List[Diagnostic] = []

    defaults, files_loaded = _read_layer(DEFAULT_CONFIG_DIR, "packaged defaults", diagnostics)

    status: ConfigurationStatus = "ready"
    overrides: Dict[str, Any] = {}
    if not terminal_dir.exists():
        diagnostics.append(Diagnostic("error", f"Terminal data directory '{terminal_dir}' does not exist."))
        status = "missing"
    elif not terminal_dir.is_dir():
        diagnostics.append(Diagnostic("error", f"Terminal data path '{terminal_dir}' is a file, not a directory."))
        status = "invalid"
    else:
        overrides, override_files = _read_layer(terminal_dir / "config", "terminal overrides", diagnostics)
        files_loaded += override_files

    merged = _overlay(deepcopy(defaults), overrides)
    _check_section(merged, CONFIG_SCHEMA, "config", diagnostics)

    if status == "ready" and any(d.level == "error" for d in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        data_dir=terminal_dir,
        status=status,
        merged=merged,
        defaults=defaults,
        overrides=overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


# Layers


def _read_layer(
    directory: Path,
    layer: str,
    diagnostics: List[Diagnostic],
) -> Tuple[Dict[str, Any], List[Path]]:
    """Overlay every ``*.yml``/``*.yaml`` file in ``directory`` in name order.

    Files that fail to parse or hold something other than a mapping are
    reported and skipped; an empty file counts as loaded.
    """

    settings: Dict[str, Any] = {}
    used: List[Path] = []

    if not directory.is_dir():
        if directory.exists():
            diagnostics.append(
                Diagnostic("error", f"{layer.capitalize()} path '{directory}' is not a directory.", directory)
            )
        else:
            diagnostics.append(Diagnostic("warning", f"No {layer} directory at '{directory}'.", directory))
        return settings, used

    candidates = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))
    for path in candidates:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(Diagnostic("error", f"Failed to parse {layer} file '{path}': {exc}", path))
            continue
        if document is not None and not isinstance(document, MutableMapping):
            diagnostics.append(
                Diagnostic("warning", f"Skipped {layer} file '{path}': top level is not a mapping.", path)
            )
            continue
        _overlay(settings, document or {})
        used.append(path)

    if not used:
        diagnostics.append(Diagnostic("info", f"No {layer} files under '{directory}'.", directory))
    return settings, used


def _overlay(base: MutableMapping[str, Any], layer: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """Apply ``layer`` on top of ``base`` in place; nested sections merge key by key."""

    for key, value in layer.items():
        current = base.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _overlay(current, value)
        else:
            base[key] = deepcopy(value)
    return base


# Schema checks


def _fallback(rule: SchemaSpec) -> Any:
    factory = rule.get("default_factory")
    if callable(factory):
        return factory()
    return deepcopy(rule.get("default"))


def _type_label(expected: Any) -> str:
    if isinstance(expected, tuple):
        return ", ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_section(
    section: Any,
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    """Validate ``section`` against ``schema`` in place.

    Unknown keys are warnings. Absent keys get their default; a wrong type is
    an error and the value falls back to the default.
    """

    if not isinstance(section, dict):
        diagnostics.append(Diagnostic("error", f"Settings section '{path}' must be a mapping."))
        return

    for key in [k for k in section if k not in schema]:
        diagnostics.append(Diagnostic("warning", f"Unknown setting '{path}.{key}' is ignored."))

    for key, rule in schema.items():
        where = f"{path}.{key}"
        if key not in section:
            if "default" in rule or "default_factory" in rule:
                section[key] = _fallback(rule)
            continue
        section[key] = _check_value(section[key], rule, where, diagnostics)


def _check_value(value: Any, rule: SchemaSpec, where: str, diagnostics: List[Diagnostic]) -> Any:
    expected = rule.get("type")
    if expected is None:
        return value

    if expected is dict:
        if not isinstance(value, dict):
            diagnostics.append(Diagnostic("error", f"'{where}' must be a mapping."))
            return _fallback(rule) or {}
        if "schema" in rule:
            _check_section(value, rule["schema"], where, diagnostics)
        return value

    if expected is list:
        if not isinstance(value, list):
            diagnostics.append(Diagnostic("error", f"'{where}' must be a list."))
            return _fallback(rule) or []
        item_type = rule.get("item_type")
        if item_type is None:
            return value
        kept: List[Any] = []
        for index, item in enumerate(value):
            if isinstance(item, item_type):
                kept.append(item)
            else:
                diagnostics.append(
                    Diagnostic("error", f"'{where}[{index}]' must be of type {item_type.__name__}; entry dropped.")
                )
        return kept

    if isinstance(value, expected) and not _is_bool_for_number(value, expected):
        return value
    diagnostics.append(Diagnostic("error", f"'{where}' must be of type {_type_label(expected)}; using the default."))
    return _fallback(rule)


def _is_bool_for_number(value: Any, expected: Any) -> bool:
    # bool is an int subclass; `interval: yes` should not pass as a number.
    if not isinstance(value, bool):
        return False
    allowed = expected if isinstance(expected, tuple) else (expected,)
    return bool not in allowed


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DATA_DIR_ENV",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFLICT_STRATEGIES",
    "Diagnostic",
    "load_runtime_configuration",
    "resolve_data_dir",
]
