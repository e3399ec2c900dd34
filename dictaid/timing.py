"""Operation timing and the append-only performance log."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .config import APP_DIR

PERFORMANCE_LOG_PATH = APP_DIR / "performance.jsonl"
MAX_LOG_ENTRIES = 1000

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OperationStats:
    name: str
    count: int
    success_rate: float
    avg_ms: float
    min_ms: int
    max_ms: int


class PerformanceLog:
    """JSON-lines log of timed operations.

    Writes never raise: telemetry is not allowed to break a dictation.
    """

    def __init__(self, path: Path = PERFORMANCE_LOG_PATH, max_entries: int = MAX_LOG_ENTRIES) -> None:
        self.path = path
        self.max_entries = max_entries
        self._lock = threading.Lock()

    def record(self, name: str, duration_ms: int, success: bool, **metadata: Any) -> None:
        entry = {
            "operation": name,
            "duration_ms": duration_ms,
            "success": success,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": {k: v for k, v in metadata.items() if v is not None},
        }
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry, default=str) + "\n")
                self._trim()
        except OSError as exc:
            logger.warning("Could not write performance log: %s", exc)

    def _trim(self) -> None:
        lines = self.path.read_text(encoding="utf-8").splitlines()
        if len(lines) > self.max_entries:
            self.path.write_text("\n".join(lines[-self.max_entries:]) + "\n", encoding="utf-8")

    def entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        result = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                result.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed performance log line")
        return result

    def summarize(self) -> List[OperationStats]:
        grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for entry in self.entries():
            grouped[entry.get("operation", "unknown")].append(entry)

        stats = []
        for name, items in sorted(grouped.items()):
            durations = [int(item.get("duration_ms", 0)) for item in items]
            successes = sum(1 for item in items if item.get("success"))
            stats.append(
                OperationStats(
                    name=name,
                    count=len(items),
                    success_rate=successes / len(items),
                    avg_ms=sum(durations) / len(durations),
                    min_ms=min(durations),
                    max_ms=max(durations),
                )
            )
        return stats

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


@contextmanager
def measure(name: str, log: Optional[PerformanceLog] = None, **metadata: Any) -> Iterator[None]:
    """Time the enclosed block, log it, and record it when a log is given."""

    start = time.perf_counter()
    success = False
    try:
        yield
        success = True
    finally:
        duration_ms = int((time.perf_counter() - start) * 1000)
        details = ", ".join(f"{k}={v}" for k, v in metadata.items() if v is not None)
        suffix = f" [{details}]" if details else ""
        if success:
            logger.info("%s took %dms%s", name, duration_ms, suffix)
        else:
            logger.info("%s failed after %dms%s", name, duration_ms, suffix)
        if log is not None:
            log.record(name, duration_ms, success, **metadata)
