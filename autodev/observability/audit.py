"""JSONL audit trail for proposals, safety verdicts, rollbacks and escalations."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("autodev.observability.audit")


@dataclass
class AuditLog:
    """Writes JSONL events and aggregate counters.

    With no paths configured, events are only kept in memory.
    """

    jsonl_path: Optional[Path] = None
    metrics_path: Optional[Path] = None
    max_events: int = 1000
    counters: dict[str, int] = field(default_factory=dict)
    _events: deque = field(default_factory=deque, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._events = deque(maxlen=self.max_events)

    def emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        with self._lock:
            self.counters[event_type] = self.counters.get(event_type, 0) + 1
            self._events.append(record)
            if self.jsonl_path is not None:
                self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                with self.jsonl_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def events(self, event_type: Optional[str] = None) -> list[dict[str, Any]]:
        with self._lock:
            records = list(self._events)
        if event_type is None:
            return records
        return [r for r in records if r["event_type"] == event_type]

    def flush_metrics(self, metrics: Optional[dict[str, Any]] = None) -> None:
        if self.metrics_path is None:
            return
        with self._lock:
            snapshot = {
                "timestamp": datetime.now(UTC).isoformat(),
                "counters": dict(sorted(self.counters.items())),
            }
        if metrics is not None:
            snapshot["metrics"] = metrics
        self.metrics_path.parent.mkdir(parents=True, exist_ok=True)
        self.metrics_path.write_text(
            json.dumps(snapshot, indent=2, ensure_ascii=True, default=str),
            encoding="utf-8",
        )

    def load_metrics(self) -> Optional[dict[str, Any]]:
        """Read the last flushed snapshot, or None if there is none to read."""
        if self.metrics_path is None or not self.metrics_path.exists():
            return None
        try:
            data = json.loads(self.metrics_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable metrics snapshot %s: %s", self.metrics_path, e)
            return None
        return data if isinstance(data, dict) else None

    def load_events(self, event_type: str, limit: int = 50) -> list[dict[str, Any]]:
        """Return the newest ``limit`` persisted events of one type, oldest first."""
        if self.jsonl_path is None or not self.jsonl_path.exists():
            return []
        tail: deque = deque(maxlen=limit)
        with self.jsonl_path.open(encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed audit line in %s", self.jsonl_path)
                    continue
                if record.get("event_type") == event_type:
                    tail.append(record)
        return list(tail)
