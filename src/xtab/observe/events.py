"""Event emission and sync tracing: NDJSON on stderr, JSON trace files."""

from __future__ import annotations

import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any


class Timer:
    """Context-manager timer that fills ``metrics.duration_ms``."""

    def __init__(self) -> None:
        self.start: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> "Timer":
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start) * 1000)


class EventEmitter:
    """Emits NDJSON lifecycle events (document writes, echoes, resets).

    Events go to ``stream`` (stderr by default) only when ``enabled``; the
    last ``keep`` events are always retained in ``history`` so sessions can be
    inspected without a stream.
    """

    def __init__(self, enabled: bool = False, *, stream: IO[str] | None = None, keep: int = 200) -> None:
        self.enabled = enabled
        self.stream = stream
        self.keep = keep
        self.history: list[dict[str, Any]] = []

    def emit(self, event: str, data: dict[str, Any] | None = None) -> None:
        payload = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data or {},
        }
        self.history.append(payload)
        if len(self.history) > self.keep:
            del self.history[: len(self.history) - self.keep]
        if not self.enabled:
            return
        out = self.stream if self.stream is not None else sys.stderr
        out.write(json.dumps(payload, default=str) + "\n")
        out.flush()

    def names(self) -> list[str]:
        return [e["event"] for e in self.history]


class TraceRecorder:
    """Records every sync decision (write, echo, ignore, reset) with its reason."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self._start = time.perf_counter()

    def record(self, category: str, data: dict[str, Any]) -> None:
        elapsed = int((time.perf_counter() - self._start) * 1000)
        self.entries.append({
            "category": category,
            "timestamp_ms": elapsed,
            **data,
        })

    def of(self, category: str) -> list[dict[str, Any]]:
        return [e for e in self.entries if e["category"] == category]

    def save(self, path: str | Path) -> str:
        """Save trace to a JSON file. Returns the path."""
        trace_path = Path(path)
        trace_data = {
            "trace_version": "1.0",
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_duration_ms": int((time.perf_counter() - self._start) * 1000),
            "entries": self.entries,
        }
        trace_path.write_text(json.dumps(trace_data, indent=2, default=str))
        return str(trace_path)
