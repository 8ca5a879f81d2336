"""Orchestrate parallel coding-agent sessions in git worktrees and tmux."""

from .detector import DEFAULT_RULES, DetectionResult, PatternRule, StateDetector, build_rules
from .errors import (
    CaptureError,
    EngineError,
    GitConflictError,
    InvalidTransitionError,
    OfflineError,
    PortExhaustionError,
    ResourceError,
)
from .models import MergeResult, Session, SessionState, StateChange, Task
from .orchestrator import SessionOrchestrator

__all__ = [
    "CaptureError",
    "DEFAULT_RULES",
    "DetectionResult",
    "EngineError",
    "GitConflictError",
    "InvalidTransitionError",
    "MergeResult",
    "OfflineError",
    "PatternRule",
    "PortExhaustionError",
    "ResourceError",
    "Session",
    "SessionOrchestrator",
    "SessionState",
    "StateChange",
    "StateDetector",
    "Task",
    "build_rules",
]
