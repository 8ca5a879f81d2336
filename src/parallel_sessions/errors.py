"""Typed failure conditions raised or returned by the session engine."""

from __future__ import annotations

from typing import Optional, Sequence


class EngineError(RuntimeError):
    """Base class for every condition the engine surfaces to its caller."""


class CommandError(EngineError):
    """Raised by a command runner when an external command exits non-zero."""

    def __init__(
        self,
        name: str,
        args: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        *,
        timed_out: bool = False,
    ) -> None:
        self.name = name
        self.args_list = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        command = " ".join([name, *self.args_list])
        if timed_out:
            message = f"{command} timed out"
        else:
            detail = (stderr or stdout).strip()
            message = f"{command} exited with status {returncode}"
            if detail:
                message += f": {detail}"
        super().__init__(message)


class ResourceError(EngineError):
    """Workspace or tmux session could not be created or removed."""

    def __init__(
        self,
        op: str,
        task_id: str,
        cause: Optional[BaseException] = None,
        *,
        partial: bool = False,
        detail: Optional[str] = None,
    ) -> None:
        self.op = op
        self.task_id = task_id
        self.cause = cause
        self.partial = partial
        message = f"{op} failed for {task_id}"
        if detail:
            message += f": {detail}"
        elif cause is not None:
            message += f": {cause}"
        if partial:
            message += " (partial, run cleanup again)"
        super().__init__(message)


class CaptureError(EngineError):
    """Pane output could not be captured. Transient, never a state change."""

    def __init__(self, session_name: str, cause: Optional[BaseException] = None) -> None:
        self.session_name = session_name
        self.cause = cause
        super().__init__(f"capture failed for tmux session {session_name}: {cause}")


class GitConflictError(EngineError):
    """A merge would conflict; resolution has been handed to an agent session."""

    def __init__(self, task_id: str, files: Sequence[str], *, delegated: bool = False) -> None:
        self.task_id = task_id
        self.files = list(files)
        self.delegated = delegated
        message = f"Conflicts detected in: {', '.join(self.files) or 'unknown files'}"
        if delegated:
            message += ". Started agent session to resolve."
        super().__init__(message)


class OfflineError(EngineError):
    """A network-touching operation was skipped because the network is unavailable."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} skipped: offline")


class PortExhaustionError(EngineError):
    """No free port in the scan window. Fails only the dev-server start."""

    def __init__(self, task_id: str, base_port: int, window: int) -> None:
        self.task_id = task_id
        self.base_port = base_port
        self.window = window
        super().__init__(
            f"no available ports found for {task_id} (tried {window} ports starting from {base_port})"
        )


class InvalidTransitionError(EngineError):
    """A command is not allowed from the session's current state."""

    def __init__(self, task_id: str, current: object, command: str) -> None:
        self.task_id = task_id
        self.current = current
        self.command = command
        state = getattr(current, "value", current)
        super().__init__(f"cannot {command} {task_id} while {state}")


class GitWorkflowError(EngineError):
    """A git or PR step failed for a reason other than merge conflicts."""

    def __init__(self, op: str, task_id: str, cause: Optional[BaseException] = None, *, detail: Optional[str] = None) -> None:
        self.op = op
        self.task_id = task_id
        self.cause = cause
        message = f"{op} failed for {task_id}"
        if detail:
            message += f": {detail}"
        elif cause is not None:
            message += f": {cause}"
        super().__init__(message)


class TaskBackendError(EngineError):
    """The task-tracking CLI rejected a request or returned unreadable output."""

    def __init__(self, op: str, task_id: Optional[str], cause: Optional[BaseException] = None) -> None:
        self.op = op
        self.task_id = task_id
        self.cause = cause
        target = f" for {task_id}" if task_id else ""
        super().__init__(f"task backend {op} failed{target}: {cause}")


class ConfigError(EngineError):
    """Configuration file or override could not be applied."""
