"""Per-task session state machine and the command surface used by the UI."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import shlex
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Mapping, Optional, Set

from .devserver import DevServerManager
from .errors import (
    CommandError,
    EngineError,
    GitConflictError,
    InvalidTransitionError,
    ResourceError,
    TaskBackendError,
)
from .git_workflow import GitWorkflowCoordinator
from .journal import EventJournal
from .lifecycle import ResourceLifecycle
from .models import DevServer, MergeResult, Session, SessionState, StateChange, Task
from .monitor import SessionMonitor
from .services import GitClient, TaskClient, TmuxClient

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Dict[str, object]], None]

S = SessionState
TRANSITIONS: Mapping[SessionState, FrozenSet[SessionState]] = {
    S.IDLE: frozenset({S.INITIALIZING}),
    S.INITIALIZING: frozenset({S.BUSY, S.IDLE}),
    S.BUSY: frozenset({S.WAITING, S.PAUSED, S.DONE, S.ERROR, S.IDLE}),
    S.WAITING: frozenset({S.BUSY, S.PAUSED, S.DONE, S.ERROR, S.IDLE}),
    S.PAUSED: frozenset({S.BUSY, S.IDLE}),
    S.DONE: frozenset({S.IDLE}),
    S.ERROR: frozenset({S.IDLE}),
}
# states the detector may move a session between
DETECTED_STATES = frozenset({S.BUSY, S.WAITING, S.DONE, S.ERROR})
MONITORED_STATES = frozenset({S.BUSY, S.WAITING})
# states a recovered session keeps from the last snapshot
RECOVERABLE_STATES = frozenset({S.BUSY, S.WAITING, S.PAUSED, S.DONE, S.ERROR})
del S


def build_start_prompt(task: Task) -> str:
    kind = f" ({task.issue_type})" if task.issue_type else ""
    return (
        f"work on task {task.id}{kind}: {task.title}\n\n"
        "Before starting implementation:\n"
        "1. Read the full task description and acceptance criteria\n"
        "2. If anything is unclear or underspecified, ask questions before proceeding\n"
        "3. Once you understand the task, record your implementation plan on the task"
    )


@dataclass(slots=True)
class _TaskLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionOrchestrator:
    """Own every task's Session record and drive its resources through commands.

    Commands for one task are serialized; blocking work (git, tmux, task CLI)
    runs in the default executor so other sessions keep polling. Progress is
    reported through ``event_handler(event_type, payload)`` with ``state``,
    ``log`` and ``error`` events.
    """

    def __init__(
        self,
        *,
        lifecycle: ResourceLifecycle,
        monitor: SessionMonitor,
        git_workflow: GitWorkflowCoordinator,
        dev_servers: DevServerManager,
        tmux: TmuxClient,
        git: GitClient,
        tasks: Optional[TaskClient] = None,
        journal: Optional[EventJournal] = None,
        event_handler: Optional[EventHandler] = None,
        agent_command: str = "claude",
        base_branch: str = "main",
        wip_commit_on_pause: bool = True,
        interrupt_delay: float = 0.5,
    ) -> None:
        self._lifecycle = lifecycle
        self._monitor = monitor
        self._git_workflow = git_workflow
        self._dev_servers = dev_servers
        self._tmux = tmux
        self._git = git
        self._tasks = tasks
        self._journal = journal
        self._event_handler = event_handler or (lambda event_type, payload: None)
        self.agent_command = agent_command
        self.base_branch = base_branch
        self.wip_commit_on_pause = wip_commit_on_pause
        self.interrupt_delay = interrupt_delay
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._task_locks: Dict[str, _TaskLock] = {}
        self._monitor.set_handler(self._on_monitor_change)

    # ------------------------------------------------------------------ queries

    def get_session(self, task_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(task_id)

    def get_state(self, task_id: str) -> SessionState:
        session = self.get_session(task_id)
        return session.state if session else SessionState.IDLE

    def list_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    # ----------------------------------------------------------------- commands

    async def start(self, task_id: str, prompt: Optional[str] = None) -> Session:
        async with self._serialized(task_id):
            with self._lock:
                session = self._sessions.get(task_id)
                if session is not None and session.state != SessionState.IDLE:
                    raise InvalidTransitionError(task_id, session.state, "start")
                session = Session(task_id=task_id)
                self._sessions[task_id] = session
            self._set_state(session, SessionState.INITIALIZING)

            try:
                task = await self._call(self._load_task, task_id)
                workspace = await self._call(self._lifecycle.create, task_id, self.base_branch)
                session.workspace_path = workspace
                session.session_name = self._lifecycle.session_name(task_id)
                session.branch = self._lifecycle.branch_name(task_id)
                await self._call(self._launch_agent, task_id, session.session_name, prompt or build_start_prompt(task))
                await self._call(self._mark_in_progress, task_id)
            except Exception as exc:
                self._set_state(session, SessionState.IDLE)
                self._drop(task_id)
                self._emit_error(task_id, f"Start failed: {exc}", exc)
                if isinstance(exc, ResourceError):
                    raise
                raise ResourceError("start", task_id, exc) from exc

            session.started_at = datetime.now(timezone.utc)
            self._set_state(session, SessionState.BUSY)
            self._monitor.start(task_id, session_name=session.session_name)
            self._emit_log(task_id, f"Session started in {session.workspace_path}")
            return session

    async def start_with_prompt(self, task_id: str, prompt: str) -> Session:
        return await self.start(task_id, prompt=prompt)

    async def pause(self, task_id: str) -> Session:
        async with self._serialized(task_id):
            session = self._require(task_id, SessionState.PAUSED, "pause")
            self._monitor.stop(task_id)
            try:
                await self._call(self._interrupt_and_snapshot, session)
            except EngineError as exc:
                self._monitor.start(task_id, session_name=session.session_name, initial_state=session.state)
                self._emit_error(task_id, f"Pause failed: {exc}", exc)
                raise
            self._set_state(session, SessionState.PAUSED)
            self._emit_log(task_id, "Session paused")
            return session

    async def resume(self, task_id: str) -> Session:
        async with self._serialized(task_id):
            session = self._require(task_id, SessionState.BUSY, "resume")
            if session.state != SessionState.PAUSED:
                raise InvalidTransitionError(task_id, session.state, "resume")
            self._set_state(session, SessionState.BUSY)
            self._monitor.start(task_id, session_name=session.session_name)
            self._emit_log(task_id, "Session resumed")
            return session

    async def stop(self, task_id: str) -> None:
        async with self._serialized(task_id):
            session = self._require(task_id, SessionState.IDLE, "stop")
            name = session.session_name or self._lifecycle.session_name(task_id)
            try:
                await self._call(self._tmux.kill_session, name)
            except CommandError as exc:
                error = ResourceError("stop", task_id, exc)
                self._emit_error(task_id, str(error), error)
                raise error from exc
            self._monitor.stop(task_id)
            await self._call(self._dev_servers.stop, task_id)
            self._set_state(session, SessionState.IDLE)
            self._drop(task_id)
            self._emit_log(task_id, "Session stopped; worktree kept")

    async def cleanup(self, task_id: str) -> None:
        """Stop the session and delete its worktree. Also valid with no live session."""

        async with self._serialized(task_id):
            session = self.get_session(task_id)
            await self._call(self._dev_servers.stop, task_id)
            try:
                await self._call(self._lifecycle.delete, task_id)
            except ResourceError as exc:
                self._emit_error(task_id, f"Cleanup incomplete: {exc}", exc)
                raise
            self._monitor.stop(task_id)
            if session is not None:
                self._set_state(session, SessionState.IDLE)
                self._drop(task_id)
            self._emit_log(task_id, "Session cleaned up")

    async def update_from_main(self, task_id: str) -> MergeResult:
        return await self._run_git_operation(task_id, "update from main", self._git_workflow.update_from_main)

    async def merge_to_main(self, task_id: str) -> MergeResult:
        return await self._run_git_operation(task_id, "merge to main", self._git_workflow.merge_to_main)

    async def create_pr(self, task_id: str, draft: Optional[bool] = None) -> MergeResult:
        operation = functools.partial(self._git_workflow.create_pr, draft=draft)
        return await self._run_git_operation(task_id, "create PR", operation)

    async def toggle_dev_server(self, task_id: str) -> Optional[DevServer]:
        async with self._serialized(task_id):
            session = self.get_session(task_id)
            if session is None or session.state in (SessionState.IDLE, SessionState.INITIALIZING):
                raise InvalidTransitionError(task_id, self.get_state(task_id), "toggle dev server")
            try:
                server = await self._call(
                    self._dev_servers.toggle, task_id, session.workspace_path, session.session_name
                )
            except EngineError as exc:
                self._emit_error(task_id, f"Dev server: {exc}", exc)
                raise
            session.dev_server = server if server.running else None
            if server.running:
                self._emit_log(task_id, f"Dev server running on port {server.port}")
            else:
                self._emit_log(task_id, "Dev server stopped")
            return session.dev_server

    async def send_message(self, task_id: str, text: str) -> None:
        session = self.get_session(task_id)
        if session is None or session.session_name is None:
            raise InvalidTransitionError(task_id, SessionState.IDLE, "send message to")
        await self._call(self._tmux.send_keys, session.session_name, text)

    async def recover(self) -> List[Session]:
        """Register sessions left running by an earlier process.

        A task is recovered when both its tmux session and its worktree still
        exist. Its state comes from the last snapshot when there is one, and
        Busy otherwise. Tasks this orchestrator already tracks are left alone.
        """

        found = await self._call(self._discover)
        recovered: List[Session] = []
        for session in found:
            async with self._serialized(session.task_id):
                with self._lock:
                    if session.task_id in self._sessions:
                        continue
                    self._sessions[session.task_id] = session
                self._publish(StateChange(session.task_id, SessionState.IDLE, session.state))
                if session.state in MONITORED_STATES:
                    self._monitor.start(session.task_id, session_name=session.session_name, initial_state=session.state)
                self._emit_log(session.task_id, f"Recovered session in {session.workspace_path}")
                recovered.append(session)
        return recovered

    async def shutdown(self) -> None:
        await self._monitor.stop_all()
        if self._journal is not None:
            self._journal.write_snapshot(self.list_sessions())

    # ------------------------------------------------------------------ helpers

    async def _run_git_operation(self, task_id: str, label: str, operation: Callable[[str], MergeResult]) -> MergeResult:
        async with self._serialized(task_id):
            session = self.get_session(task_id)
            if session is not None and session.state == SessionState.INITIALIZING:
                raise InvalidTransitionError(task_id, session.state, label)
            try:
                result = await self._call(operation, task_id)
            except EngineError as exc:
                self._emit_error(task_id, f"{label.capitalize()} failed: {exc}", exc)
                raise
            if isinstance(result.condition, GitConflictError) and result.delegated:
                self._adopt_conflict_session(task_id)
            if result.condition is None:
                self._emit_log(task_id, result.message)
            else:
                self._emit("log", {"task_id": task_id, "text": result.message, "condition": result.condition})
            return result

    def _adopt_conflict_session(self, task_id: str) -> None:
        with self._lock:
            session = self._sessions.get(task_id)
            if session is not None and session.state != SessionState.IDLE:
                return
            session = Session(
                task_id=task_id,
                workspace_path=self._lifecycle.workspace_path(task_id),
                session_name=self._lifecycle.session_name(task_id),
                branch=self._lifecycle.branch_name(task_id),
                started_at=datetime.now(timezone.utc),
            )
            self._sessions[task_id] = session
        self._set_state(session, SessionState.INITIALIZING)
        self._set_state(session, SessionState.BUSY)
        self._monitor.start(task_id, session_name=session.session_name)

    def _on_monitor_change(self, change: StateChange) -> None:
        with self._lock:
            session = self._sessions.get(change.task_id)
            if session is None:
                return
            previous = session.state
            allowed = (
                previous in MONITORED_STATES
                and change.current in DETECTED_STATES
                and change.current in TRANSITIONS[previous]
            )
            if not allowed:
                logger.debug(
                    "ignoring detected %s for %s in %s", change.current.value, change.task_id, previous.value
                )
                return
            session.state = change.current
        self._publish(StateChange(change.task_id, previous, change.current, change.timestamp, change.line))

    def _require(self, task_id: str, target: SessionState, command: str) -> Session:
        session = self.get_session(task_id)
        current = session.state if session else SessionState.IDLE
        if session is None or target not in TRANSITIONS[current]:
            raise InvalidTransitionError(task_id, current, command)
        return session

    def _set_state(self, session: Session, target: SessionState) -> None:
        with self._lock:
            previous = session.state
            if previous == target:
                return
            if target not in TRANSITIONS[previous]:
                raise InvalidTransitionError(session.task_id, previous, f"move to {target.value}")
            session.state = target
        self._publish(StateChange(session.task_id, previous, target))

    def _publish(self, change: StateChange) -> None:
        if self._journal is not None:
            self._journal.record_change(change)
        self._emit(
            "state",
            {
                "task_id": change.task_id,
                "previous": change.previous.value,
                "state": change.current.value,
                "change": change,
            },
        )

    def _drop(self, task_id: str) -> None:
        with self._lock:
            self._sessions.pop(task_id, None)

    @contextlib.asynccontextmanager
    async def _serialized(self, task_id: str) -> AsyncIterator[None]:
        with self._lock:
            entry = self._task_locks.setdefault(task_id, _TaskLock())
            entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0 and task_id not in self._sessions:
                    del self._task_locks[task_id]

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    def _discover(self) -> List[Session]:
        snapshot: Dict[str, Mapping[str, Any]] = {}
        if self._journal is not None:
            for entry in self._journal.load_snapshot().get("sessions") or []:
                if isinstance(entry, Mapping) and entry.get("task_id"):
                    snapshot[str(entry["task_id"])] = entry
        try:
            live = set(self._tmux.list_sessions())
            worktrees: Set[Path] = {
                Path(entry["worktree"]).resolve() for entry in self._git.worktrees() if "worktree" in entry
            }
        except CommandError as exc:
            logger.warning("session recovery skipped: %s", exc)
            return []

        candidates = list(snapshot)
        prefix = self._tmux.prefix
        for name in sorted(live):
            if name.startswith(prefix):
                task_id = name[len(prefix):]
                if task_id and task_id not in candidates:
                    candidates.append(task_id)

        found: List[Session] = []
        for task_id in candidates:
            name = self._lifecycle.session_name(task_id)
            workspace = self._lifecycle.workspace_path(task_id)
            if name not in live or workspace.resolve() not in worktrees:
                continue
            entry = snapshot.get(task_id, {})
            try:
                state = SessionState(entry.get("state"))
            except ValueError:
                state = SessionState.BUSY
            if state not in RECOVERABLE_STATES:
                state = SessionState.BUSY
            found.append(
                Session(
                    task_id=task_id,
                    state=state,
                    workspace_path=workspace,
                    session_name=name,
                    branch=self._lifecycle.branch_name(task_id),
                    started_at=_parse_timestamp(entry.get("started_at")),
                )
            )
        return found

    def _load_task(self, task_id: str) -> Task:
        if self._tasks is not None:
            try:
                return self._tasks.show(task_id)
            except TaskBackendError as exc:
                logger.warning("could not read %s: %s", task_id, exc)
        return Task(id=task_id, title=task_id, issue_type="")

    def _launch_agent(self, task_id: str, session_name: str, prompt: str) -> None:
        try:
            self._tmux.send_keys(session_name, f"{self.agent_command} {shlex.quote(prompt)}")
        except CommandError as exc:
            raise ResourceError("launch agent", task_id, exc) from exc

    def _mark_in_progress(self, task_id: str) -> None:
        if self._tasks is None:
            return
        try:
            self._tasks.update_status(task_id, "in_progress")
        except TaskBackendError as exc:
            logger.warning("could not mark %s in progress: %s", task_id, exc)

    def _interrupt_and_snapshot(self, session: Session) -> None:
        name = session.session_name or self._lifecycle.session_name(session.task_id)
        try:
            self._tmux.send_interrupt(name)
        except CommandError as exc:
            raise ResourceError("pause", session.task_id, exc) from exc
        if self.interrupt_delay > 0:
            time.sleep(self.interrupt_delay)
        if not self.wip_commit_on_pause or session.workspace_path is None:
            return
        try:
            self._git.run("add", "-A", cwd=session.workspace_path)
            self._git.run("commit", "-m", "WIP: Paused session", cwd=session.workspace_path)
        except CommandError as exc:
            logger.debug("no WIP commit for %s: %s", session.task_id, exc)

    def _emit_log(self, task_id: str, text: str) -> None:
        self._emit("log", {"task_id": task_id, "text": text})

    def _emit_error(self, task_id: str, text: str, error: BaseException) -> None:
        logger.error("%s: %s", task_id, text)
        self._emit("error", {"task_id": task_id, "text": text, "error": error})

    def _emit(self, event_type: str, payload: Dict[str, object]) -> None:
        self._event_handler(event_type, payload)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None
