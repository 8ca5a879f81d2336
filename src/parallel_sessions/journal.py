"""Persist state changes and session snapshots."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

from .models import Session, StateChange


class EventJournal:
    """Append-only JSONL event log plus a YAML snapshot of the session table."""

    def __init__(self, logs_dir: Path) -> None:
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.events_path = self.logs_dir / "events.jsonl"
        self.snapshot_path = self.logs_dir / "sessions.yaml"
        self._lock = threading.Lock()

    def record_change(self, change: StateChange) -> None:
        self.record_event(change.to_event())

    def record_event(self, event: Mapping[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat(timespec="seconds"))
        with self._lock:
            with self.events_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def read_events(self) -> List[Dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: List[Dict[str, Any]] = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events

    def write_snapshot(self, sessions: Iterable[Session]) -> Path:
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "sessions": [session.to_dict() for session in sessions],
        }
        with self._lock:
            self.snapshot_path.write_text(
                yaml.safe_dump(payload, sort_keys=False),
                encoding="utf-8",
            )
        return self.snapshot_path

    def load_snapshot(self) -> Dict[str, Any]:
        if not self.snapshot_path.exists():
            return {"sessions": []}
        data = yaml.safe_load(self.snapshot_path.read_text(encoding="utf-8")) or {}
        data.setdefault("sessions", [])
        return data
