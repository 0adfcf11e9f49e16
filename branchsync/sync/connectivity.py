"""TCP reachability checks used to decide whether a terminal is online."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import socket
import time
from typing import Any, Dict, List, Sequence, Tuple

logger = logging.getLogger("branchsync.sync.connectivity")

DEFAULT_PORT = 443


@dataclass
class ConnectivityProbe:
    """Online if any configured ``host:port`` target accepts a TCP connection."""

    targets: List[str] = field(default_factory=list)
    timeout: float = 1.0

    @property
    def enabled(self) -> bool:
        return bool(self.targets)

    def check(self) -> List[Dict[str, Any]]:
        return run_connectivity_checks(self.targets, timeout=self.timeout)

    def is_online(self) -> bool:
        results = self.check()
        online = any(result["reachable"] for result in results)
        if not online:
            logger.debug("No connectivity target reachable: %s", results)
        return online


def run_connectivity_checks(targets: Sequence[str], *, timeout: float) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for target in targets:
        host, port = parse_target(target)
        formatted = f"{host}:{port}"
        start = time.perf_counter()
        try:
            with socket.create_connection((host, port), timeout=timeout):
                latency = (time.perf_counter() - start) * 1000
                results.append({"target": formatted, "reachable": True, "latency_ms": round(latency, 2)})
        except OSError as exc:
            results.append({"target": formatted, "reachable": False, "detail": str(exc)})
    return results


def parse_target(target: str) -> Tuple[str, int]:
    stripped = target.strip()
    if not stripped:
        return ("localhost", DEFAULT_PORT)
    if stripped.count(":") == 1 and stripped.split(":", 1)[1].isdigit():
        host, raw_port = stripped.split(":", 1)
        return (host or "localhost", int(raw_port))
    return (stripped, DEFAULT_PORT)


__all__ = ["ConnectivityProbe", "parse_target", "run_connectivity_checks"]
