"""Merge, update and pull-request flows for task branches."""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Callable, List, Optional

from .errors import CommandError, EngineError, GitConflictError, GitWorkflowError, OfflineError, TaskBackendError
from .lifecycle import ResourceLifecycle
from .models import MergeResult, Task
from .services import GitClient, NetworkStatus, PullRequestClient, TaskClient, TmuxClient

logger = logging.getLogger(__name__)

UPDATE_FROM_MAIN = "update-from-main"
MERGE_TO_MAIN = "merge-to-main"
CREATE_PR = "create-pr"

ConflictDelegate = Callable[[str, str], str]


def build_conflict_prompt(base_branch: str, files: List[str]) -> str:
    return (
        f"There are merge conflicts with {base_branch} in: {', '.join(files)}. "
        "Please resolve these conflicts, then stage and commit the resolution."
    )


def build_pr_title(task: Task) -> str:
    prefix = f"[{task.issue_type}] " if task.issue_type else ""
    return f"{prefix}{task.title} ({task.id})"


def build_pr_body(task: Task) -> str:
    lines = ["## Summary", "", f"Resolves {task.id}: {task.title}", ""]
    if task.description:
        lines.extend(["## Description", "", task.description, ""])
    return "\n".join(lines)


class AgentConflictDelegate:
    """Hand a conflict prompt to the task's agent session, creating it if needed.

    When the pane sits at a shell prompt the agent is launched with the prompt
    as its argument; otherwise the prompt is typed into the running agent.
    """

    def __init__(self, lifecycle: ResourceLifecycle, tmux: TmuxClient, *, agent_command: str = "claude") -> None:
        self._lifecycle = lifecycle
        self._tmux = tmux
        self.agent_command = agent_command

    def __call__(self, task_id: str, prompt: str) -> str:
        self._lifecycle.create(task_id)
        session = self._lifecycle.session_name(task_id)
        if self._tmux.is_at_shell(session):
            self._tmux.send_keys(session, f"{self.agent_command} {shlex.quote(prompt)}")
        else:
            self._tmux.send_keys(session, prompt)
        logger.info("sent conflict resolution prompt to %s", session)
        return session


class GitWorkflowCoordinator:
    def __init__(
        self,
        *,
        git: GitClient,
        lifecycle: ResourceLifecycle,
        network: NetworkStatus,
        delegate: ConflictDelegate,
        pull_requests: Optional[PullRequestClient] = None,
        tasks: Optional[TaskClient] = None,
        base_branch: str = "main",
        remote: str = "origin",
        fetch_enabled: bool = True,
        push_enabled: bool = True,
        pr_enabled: bool = True,
        draft_by_default: bool = True,
        close_task: bool = True,
    ) -> None:
        self._git = git
        self._lifecycle = lifecycle
        self._network = network
        self._delegate = delegate
        self._pull_requests = pull_requests
        self._tasks = tasks
        self.base_branch = base_branch
        self.remote = remote
        self.fetch_enabled = fetch_enabled
        self.push_enabled = push_enabled
        self.pr_enabled = pr_enabled
        self.draft_by_default = draft_by_default
        self.close_task = close_task

    def update_from_main(self, task_id: str) -> MergeResult:
        offline = self._offline_result(task_id, UPDATE_FROM_MAIN)
        if offline is not None:
            return offline
        workspace, branch = self._require_worktree(task_id, UPDATE_FROM_MAIN)
        self._fetch_base()

        files = self._git.conflicting_files(self.base_branch, branch, task_id=task_id)
        if files and self._start_worktree_merge(task_id, workspace, branch, UPDATE_FROM_MAIN):
            return self._delegate_conflicts(task_id, UPDATE_FROM_MAIN, files)
        if not files:
            try:
                self._git.run("merge", self.base_branch, "-m", self._update_message(branch), cwd=workspace)
            except CommandError as exc:
                raise GitWorkflowError(UPDATE_FROM_MAIN, task_id, exc) from exc
        message = f"Updated {branch} from {self.base_branch}"
        logger.info("%s", message)
        return MergeResult(task_id=task_id, operation=UPDATE_FROM_MAIN, merged=True, message=message)

    def merge_to_main(self, task_id: str) -> MergeResult:
        offline = self._offline_result(task_id, MERGE_TO_MAIN)
        if offline is not None:
            return offline
        workspace, branch = self._require_worktree(task_id, MERGE_TO_MAIN)
        self._fetch_base()

        files = self._git.conflicting_files(self.base_branch, branch, task_id=task_id)
        if files and self._start_worktree_merge(task_id, workspace, branch, MERGE_TO_MAIN):
            return self._delegate_conflicts(task_id, MERGE_TO_MAIN, files)

        root = self._git.root
        try:
            if self._git.is_dirty(root):
                raise GitWorkflowError(
                    MERGE_TO_MAIN, task_id, detail="project root has uncommitted changes"
                )
            current = self._git.current_branch(root)
            if current != self.base_branch:
                raise GitWorkflowError(
                    MERGE_TO_MAIN,
                    task_id,
                    detail=f"project root is on {current}, expected {self.base_branch}",
                )
            self._git.run("merge", "--no-ff", "-m", self._merge_message(task_id), branch)
        except CommandError as exc:
            raise GitWorkflowError(MERGE_TO_MAIN, task_id, exc) from exc

        if self.push_enabled:
            try:
                self._git.run("push", self.remote, self.base_branch)
            except CommandError as exc:
                logger.warning("push of %s failed: %s", self.base_branch, exc)
        if self.close_task and self._tasks is not None:
            try:
                self._tasks.close(task_id, reason=f"Merged {branch} into {self.base_branch}")
            except TaskBackendError as exc:
                logger.warning("could not close %s: %s", task_id, exc)

        message = f"Merged {branch} into {self.base_branch}"
        logger.info("%s", message)
        return MergeResult(task_id=task_id, operation=MERGE_TO_MAIN, merged=True, message=message)

    def create_pr(self, task_id: str, draft: Optional[bool] = None) -> MergeResult:
        offline = self._offline_result(task_id, CREATE_PR)
        if offline is not None:
            return offline
        if not self.pr_enabled or self._pull_requests is None:
            raise GitWorkflowError(CREATE_PR, task_id, detail="pull requests are disabled")
        workspace, branch = self._require_worktree(task_id, CREATE_PR)

        try:
            unresolved = self._git.unmerged_files(cwd=workspace)
        except CommandError as exc:
            raise GitWorkflowError(CREATE_PR, task_id, exc) from exc
        if unresolved:
            condition = GitConflictError(task_id, unresolved)
            return MergeResult(
                task_id=task_id,
                operation=CREATE_PR,
                conflict_files=unresolved,
                message=f"Resolve conflicts before creating a PR: {', '.join(unresolved)}",
                condition=condition,
            )

        task = self._load_task(task_id)
        self._commit_pending(workspace, task)

        synced = self.update_from_main(task_id)
        if synced.condition is not None:
            synced.operation = CREATE_PR
            return synced

        try:
            self._git.run("push", "-u", self.remote, branch, cwd=workspace)
            url = self._pull_requests.create(
                title=build_pr_title(task),
                body=build_pr_body(task),
                head=branch,
                base=self.base_branch,
                draft=self.draft_by_default if draft is None else draft,
            )
        except CommandError as exc:
            raise GitWorkflowError(CREATE_PR, task_id, exc) from exc
        logger.info("created pull request for %s: %s", task_id, url)
        return MergeResult(task_id=task_id, operation=CREATE_PR, message=f"PR created: {url}", pr_url=url)

    def abort_merge(self, task_id: str) -> None:
        workspace = self._lifecycle.workspace_path(task_id)
        try:
            self._git.run("merge", "--abort", cwd=workspace)
        except CommandError as exc:
            raise GitWorkflowError("abort-merge", task_id, exc) from exc

    def _offline_result(self, task_id: str, operation: str) -> Optional[MergeResult]:
        if self._network.is_online():
            return None
        condition = OfflineError(operation)
        logger.info(str(condition))
        return MergeResult(task_id=task_id, operation=operation, message=str(condition), condition=condition)

    def _require_worktree(self, task_id: str, operation: str) -> tuple[Path, str]:
        workspace = self._lifecycle.workspace_path(task_id)
        if not self._git.has_worktree(workspace):
            raise GitWorkflowError(operation, task_id, detail=f"no worktree at {workspace}")
        return workspace, self._lifecycle.branch_name(task_id)

    def _fetch_base(self) -> None:
        if not self.fetch_enabled:
            return
        try:
            self._git.run("fetch", self.remote, f"{self.base_branch}:{self.base_branch}")
        except CommandError as exc:
            logger.warning("fetch of %s failed: %s", self.base_branch, exc)

    def _start_worktree_merge(self, task_id: str, workspace: Path, branch: str, operation: str) -> bool:
        """Begin the real merge of the base branch so conflict markers land in the worktree.

        Returns ``False`` when the merge applied cleanly after all. A merge that
        fails without leaving unmerged paths (local changes in the way, a lock
        file) is raised as ``GitWorkflowError``.
        """

        try:
            self._git.run("merge", self.base_branch, "-m", self._update_message(branch), cwd=workspace)
        except CommandError as exc:
            try:
                unmerged = self._git.unmerged_files(cwd=workspace)
            except CommandError as status_exc:
                raise GitWorkflowError(operation, task_id, status_exc) from exc
            if not unmerged:
                raise GitWorkflowError(operation, task_id, exc) from exc
            return True
        logger.info("%s merged cleanly into %s's worktree", self.base_branch, task_id)
        return False

    def _delegate_conflicts(self, task_id: str, operation: str, files: List[str]) -> MergeResult:
        prompt = build_conflict_prompt(self.base_branch, files)
        failure: Optional[EngineError] = None
        try:
            self._delegate(task_id, prompt)
        except EngineError as exc:
            logger.error("could not start conflict resolution for %s: %s", task_id, exc)
            failure = exc
        delegated = failure is None
        condition = GitConflictError(task_id, files, delegated=delegated)
        logger.info("%s for %s: %s", operation, task_id, condition)
        return MergeResult(
            task_id=task_id,
            operation=operation,
            conflict_files=list(files),
            delegated=delegated,
            message=str(condition) if delegated else f"{condition}. Agent session not started: {failure}",
            condition=condition,
        )

    def _load_task(self, task_id: str) -> Task:
        if self._tasks is not None:
            try:
                return self._tasks.show(task_id)
            except TaskBackendError as exc:
                logger.warning("could not read %s from task backend: %s", task_id, exc)
        return Task(id=task_id, title=task_id, issue_type="")

    def _commit_pending(self, workspace: Path, task: Task) -> None:
        try:
            self._git.run("add", "-A", cwd=workspace)
            if self._git.is_dirty(workspace):
                self._git.run("commit", "-m", f"Complete {task.id}: {task.title}", cwd=workspace)
        except CommandError as exc:
            logger.warning("could not commit pending work in %s: %s", workspace, exc)

    def _update_message(self, subject: str) -> str:
        return f"Merge {self.base_branch} into {subject}"

    def _merge_message(self, task_id: str) -> str:
        task = self._load_task(task_id)
        return f"Merge {task.id}: {task.title}"
