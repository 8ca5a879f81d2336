"""Domain records shared by the engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional


class SessionState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    BUSY = "busy"
    WAITING = "waiting"
    PAUSED = "paused"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True)
class Task:
    """Unit of work read from the task-tracking backend."""

    id: str
    title: str
    status: str = "open"
    description: str = ""
    issue_type: str = "task"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            status=str(data.get("status") or "open"),
            description=str(data.get("description") or ""),
            issue_type=str(data.get("issue_type") or data.get("type") or "task"),
        )


@dataclass(slots=True)
class DevServer:
    port: Optional[int] = None
    command: str = ""
    running: bool = False
    session_name: Optional[str] = None


@dataclass(slots=True)
class Session:
    """Live record for one task's workspace and tmux session."""

    task_id: str
    state: SessionState = SessionState.IDLE
    workspace_path: Optional[Path] = None
    session_name: Optional[str] = None
    branch: Optional[str] = None
    started_at: Optional[datetime] = None
    dev_server: Optional[DevServer] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "state": self.state.value,
            "workspace_path": str(self.workspace_path) if self.workspace_path else None,
            "session_name": self.session_name,
            "branch": self.branch,
            "started_at": self.started_at.isoformat(timespec="seconds") if self.started_at else None,
            "dev_server": (
                {
                    "port": self.dev_server.port,
                    "command": self.dev_server.command,
                    "running": self.dev_server.running,
                }
                if self.dev_server
                else None
            ),
        }


@dataclass(slots=True)
class StateChange:
    task_id: str
    previous: SessionState
    current: SessionState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    line: Optional[str] = None

    def to_event(self) -> Dict[str, Any]:
        return {
            "type": "state",
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "task_id": self.task_id,
            "previous": self.previous.value,
            "state": self.current.value,
            "line": self.line,
        }


@dataclass(slots=True)
class MergeResult:
    """Outcome of a git workflow operation.

    ``condition`` carries the typed alternate outcome (conflict or offline).
    It is ``None`` when the operation completed.
    """

    task_id: str
    operation: str
    merged: bool = False
    conflict_files: List[str] = field(default_factory=list)
    delegated: bool = False
    message: str = ""
    condition: Optional[Exception] = None
    pr_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.condition is None
