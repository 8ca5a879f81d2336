"""Paired worktree and tmux session resources for a task."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import CommandError, ResourceError
from .runner import CommandRunner
from .services import GitClient, TmuxClient

logger = logging.getLogger(__name__)


class ResourceLifecycle:
    """Create and remove the worktree + tmux session pair for a task as one unit."""

    def __init__(
        self,
        *,
        project_root: Path,
        git: GitClient,
        tmux: TmuxClient,
        runner: Optional[CommandRunner] = None,
        base_branch: str = "main",
        path_template: str = "../{project}-{task_id}",
        branch_template: str = "sessions/{task_id}",
        init_commands: Sequence[str] = (),
        continue_on_failure: bool = True,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self._git = git
        self._tmux = tmux
        self._runner = runner
        self.base_branch = base_branch
        self.path_template = path_template
        self.branch_template = branch_template
        self.init_commands = list(init_commands)
        self.continue_on_failure = continue_on_failure

    def workspace_path(self, task_id: str) -> Path:
        relative = self.path_template.format(project=self.project_root.name, task_id=task_id)
        path = Path(relative)
        if not path.is_absolute():
            path = self.project_root / path
        return Path(os.path.normpath(path))

    def branch_name(self, task_id: str) -> str:
        return self.branch_template.format(project=self.project_root.name, task_id=task_id)

    def session_name(self, task_id: str) -> str:
        return self._tmux.session_name(task_id)

    def exists(self, task_id: str) -> bool:
        return self._git.has_worktree(self.workspace_path(task_id)) and self._tmux.has_session(
            self.session_name(task_id)
        )

    def create(self, task_id: str, base_branch: Optional[str] = None) -> Path:
        path = self.workspace_path(task_id)
        branch = self.branch_name(task_id)
        session = self.session_name(task_id)
        base = base_branch or self.base_branch

        created_worktree = False
        created_branch = False
        if self._git.has_worktree(path):
            logger.debug("reusing worktree %s for %s", path, task_id)
        else:
            try:
                if self._git.branch_exists(branch):
                    self._git.run("worktree", "add", str(path), branch)
                else:
                    self._git.run("worktree", "add", "-b", branch, str(path), base)
                    created_branch = True
            except CommandError as exc:
                raise ResourceError("create worktree", task_id, exc) from exc
            created_worktree = True
            logger.info("created worktree %s on %s", path, branch)
            self._run_init_commands(task_id, path, created_branch)

        if self._tmux.has_session(session):
            logger.debug("reusing tmux session %s", session)
            return path

        try:
            self._tmux.new_session(session, path)
        except CommandError as exc:
            if created_worktree:
                self._rollback(task_id, path, branch if created_branch else None, exc)
            raise ResourceError("create tmux session", task_id, exc) from exc
        logger.info("created tmux session %s for %s", session, task_id)
        return path

    def delete(self, task_id: str) -> None:
        """Remove the session and worktree. Missing resources are not failures."""

        path = self.workspace_path(task_id)
        branch = self.branch_name(task_id)
        session = self.session_name(task_id)
        failures: List[str] = []
        causes: List[BaseException] = []

        try:
            if self._tmux.kill_session(session):
                logger.info("killed tmux session %s", session)
        except CommandError as exc:
            failures.append(f"kill tmux session {session}")
            causes.append(exc)

        try:
            if self._git.has_worktree(path):
                self._git.run("worktree", "remove", "--force", str(path))
                logger.info("removed worktree %s", path)
            elif path.exists():
                shutil.rmtree(path, ignore_errors=True)
        except CommandError as exc:
            failures.append(f"remove worktree {path}")
            causes.append(exc)

        if self._git.branch_exists(branch):
            try:
                self._git.run("branch", "-D", branch)
            except CommandError as exc:
                logger.warning("could not delete branch %s: %s", branch, exc)

        if failures:
            raise ResourceError(
                "delete",
                task_id,
                causes[0],
                partial=True,
                detail="; ".join(f"{item}: {cause}" for item, cause in zip(failures, causes)),
            )

    def _run_init_commands(self, task_id: str, path: Path, created_branch: bool) -> None:
        if not self.init_commands or self._runner is None:
            return
        for command in self.init_commands:
            try:
                self._runner.run("sh", ["-c", command], cwd=path, timeout=300)
            except CommandError as exc:
                logger.warning("init command %r failed in %s: %s", command, path, exc)
                if not self.continue_on_failure:
                    branch = self.branch_name(task_id) if created_branch else None
                    self._rollback(task_id, path, branch, exc)
                    raise ResourceError("init worktree", task_id, exc) from exc

    def _rollback(self, task_id: str, path: Path, branch: Optional[str], cause: BaseException) -> None:
        try:
            self._git.run("worktree", "remove", "--force", str(path))
            if branch:
                self._git.run("branch", "-D", branch)
        except CommandError as exc:
            logger.error("rollback of %s failed: %s", path, exc)
            raise ResourceError("create", task_id, cause, partial=True) from exc
        logger.info("rolled back worktree %s after failure", path)
