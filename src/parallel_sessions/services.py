"""Narrow clients for tmux, git, the task tracker, gh and network reachability."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from .errors import CaptureError, CommandError, GitWorkflowError, TaskBackendError
from .models import Task
from .runner import CommandRunner

logger = logging.getLogger(__name__)

SHELL_COMMANDS = frozenset({"bash", "zsh", "sh", "fish", "dash", "ksh", "tcsh"})


def sanitize_session_name(task_id: str, prefix: str = "") -> str:
    name = task_id.replace(".", "-").replace(":", "-")
    return f"{prefix}{name}"


class TmuxClient:
    """tmux session operations addressed by session name."""

    def __init__(self, runner: CommandRunner, *, prefix: str = "") -> None:
        self._runner = runner
        self.prefix = prefix

    def session_name(self, task_id: str) -> str:
        return sanitize_session_name(task_id, self.prefix)

    def has_session(self, name: str) -> bool:
        try:
            self._runner.run("tmux", ["has-session", "-t", name])
        except CommandError:
            return False
        return True

    def new_session(
        self,
        name: str,
        cwd: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        command: Optional[str] = None,
    ) -> None:
        args = ["new-session", "-d", "-s", name, "-c", str(cwd)]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        if command:
            args.append(command)
        self._runner.run("tmux", args)

    def kill_session(self, name: str) -> bool:
        if not self.has_session(name):
            return False
        self._runner.run("tmux", ["kill-session", "-t", name])
        return True

    def send_keys(self, name: str, text: str, *, enter: bool = True) -> None:
        payload = text.replace("\r\n", "\n")
        self._runner.run("tmux", ["send-keys", "-t", name, "-l", payload])
        if enter:
            self._runner.run("tmux", ["send-keys", "-t", name, "Enter"])

    def send_interrupt(self, name: str) -> None:
        self._runner.run("tmux", ["send-keys", "-t", name, "C-c"])

    def capture_pane(self, name: str, lines: int = 100, *, timeout: Optional[float] = None) -> str:
        args = ["capture-pane", "-t", name, "-p", "-S", f"-{lines}"]
        try:
            return self._runner.run("tmux", args, timeout=timeout)
        except CommandError as exc:
            raise CaptureError(name, exc) from exc

    def list_sessions(self) -> List[str]:
        try:
            output = self._runner.run("tmux", ["list-sessions", "-F", "#{session_name}"])
        except CommandError as exc:
            # no server running means no sessions
            logger.debug("list-sessions failed: %s", exc)
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def current_command(self, name: str) -> str:
        output = self._runner.run("tmux", ["display-message", "-p", "-t", name, "#{pane_current_command}"])
        return output.strip()

    def is_at_shell(self, name: str) -> bool:
        try:
            return self.current_command(name) in SHELL_COMMANDS
        except CommandError:
            return False


class GitClient:
    """git commands run against the project root or a worktree."""

    def __init__(self, runner: CommandRunner, root: Path) -> None:
        self._runner = runner
        self.root = Path(root)

    def run(self, *args: str, cwd: Optional[Path] = None, timeout: Optional[float] = None) -> str:
        return self._runner.run("git", list(args), cwd=cwd or self.root, timeout=timeout)

    def worktrees(self) -> List[Dict[str, str]]:
        output = self.run("worktree", "list", "--porcelain")
        entries: List[Dict[str, str]] = []
        current: Dict[str, str] = {}
        for line in output.splitlines():
            if not line.strip():
                if current:
                    entries.append(current)
                    current = {}
                continue
            key, _, value = line.partition(" ")
            if key == "branch":
                value = value.removeprefix("refs/heads/")
            current[key] = value or "true"
        if current:
            entries.append(current)
        return entries

    def has_worktree(self, path: Path) -> bool:
        target = Path(path).resolve()
        return any(Path(entry.get("worktree", "")).resolve() == target for entry in self.worktrees())

    def branch_exists(self, branch: str) -> bool:
        try:
            self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except CommandError:
            return False
        return True

    def current_branch(self, cwd: Optional[Path] = None) -> str:
        return self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd).strip()

    def is_dirty(self, cwd: Optional[Path] = None) -> bool:
        return bool(self.run("status", "--porcelain", "--untracked-files=no", cwd=cwd).strip())

    def unmerged_files(self, cwd: Optional[Path] = None) -> List[str]:
        output = self.run("diff", "--name-only", "--diff-filter=U", cwd=cwd)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def conflicting_files(self, base: str, branch: str, *, task_id: str) -> List[str]:
        """Dry-run merge of ``base`` and ``branch`` without touching any working tree."""

        args = ["merge-tree", "--write-tree", "--name-only", "--no-messages", base, branch]
        try:
            self.run(*args)
        except CommandError as exc:
            if exc.returncode != 1:
                raise GitWorkflowError("merge-check", task_id, exc) from exc
            lines = [line.strip() for line in exc.stdout.splitlines() if line.strip()]
            # first line is the tree id of the would-be merge
            return lines[1:]
        return []


class TaskClient:
    """Read and update tasks through the ``bd`` command line tool."""

    def __init__(self, runner: CommandRunner, *, command: str = "bd", cwd: Optional[Path] = None) -> None:
        self._runner = runner
        self.command = command
        self.cwd = cwd

    def list_tasks(self, status: Optional[str] = None) -> List[Task]:
        args = ["list", "--json"]
        if status:
            args.append(f"--status={status}")
        data = self._run_json("list", None, args)
        if not isinstance(data, list):
            raise TaskBackendError("list", None, ValueError("expected a JSON array"))
        return [_task_from("list", None, item) for item in data]

    def show(self, task_id: str) -> Task:
        data = self._run_json("show", task_id, ["show", task_id, "--json"])
        if isinstance(data, list):
            if not data:
                raise TaskBackendError("show", task_id, LookupError("task not found"))
            data = data[0]
        return _task_from("show", task_id, data)

    def update_status(self, task_id: str, status: str) -> None:
        self._run("update", task_id, ["update", task_id, f"--status={status}"])

    def close(self, task_id: str, reason: str = "Completed") -> None:
        self._run("close", task_id, ["close", task_id, f"--reason={reason}"])

    def _run(self, op: str, task_id: Optional[str], args: Sequence[str]) -> str:
        try:
            return self._runner.run(self.command, list(args), cwd=self.cwd)
        except CommandError as exc:
            raise TaskBackendError(op, task_id, exc) from exc

    def _run_json(self, op: str, task_id: Optional[str], args: Sequence[str]) -> Any:
        output = self._run(op, task_id, args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as exc:
            raise TaskBackendError(op, task_id, exc) from exc


def _task_from(op: str, task_id: Optional[str], data: Any) -> Task:
    if not isinstance(data, Mapping) or not data.get("id"):
        raise TaskBackendError(op, task_id, ValueError(f"not a task record: {data!r}"))
    return Task.from_mapping(data)


class PullRequestClient:
    def __init__(self, runner: CommandRunner, *, cwd: Path, command: str = "gh") -> None:
        self._runner = runner
        self.cwd = Path(cwd)
        self.command = command

    def create(self, *, title: str, body: str, head: str, base: str, draft: bool) -> str:
        args = ["pr", "create", "--title", title, "--body", body, "--head", head, "--base", base]
        if draft:
            args.append("--draft")
        output = self._runner.run(self.command, args, cwd=self.cwd)
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        return lines[-1] if lines else ""


class NetworkStatus:
    """Cached reachability check against a well-known HTTPS endpoint."""

    def __init__(
        self,
        *,
        url: str = "https://github.com",
        timeout: float = 5.0,
        ttl: float = 30.0,
        forced_offline: bool = False,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.ttl = ttl
        self.forced_offline = forced_offline
        self._checked_at: Optional[float] = None
        self._online = True

    def is_online(self) -> bool:
        if self.forced_offline:
            return False
        now = time.monotonic()
        if self._checked_at is not None and now - self._checked_at < self.ttl:
            return self._online
        self._online = self.check()
        self._checked_at = now
        return self._online

    def check(self) -> bool:
        try:
            response = requests.head(self.url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as exc:
            logger.info("network check failed: %s", exc)
            return False
        return 200 <= response.status_code < 400
