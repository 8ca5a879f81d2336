from pathlib import Path

import git
import pytest

from parallel_sessions.errors import CommandError, ResourceError
from parallel_sessions.lifecycle import ResourceLifecycle
from parallel_sessions.services import GitClient, TmuxClient

from conftest import FakeRunner


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner(real_git=True)


def _lifecycle(git_repo: Path, runner: FakeRunner, **kwargs) -> ResourceLifecycle:
    return ResourceLifecycle(
        project_root=git_repo,
        git=GitClient(runner, git_repo),
        tmux=TmuxClient(runner),
        runner=runner,
        **kwargs,
    )


def test_paths_follow_templates(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)

    assert lifecycle.workspace_path("az-1") == git_repo.parent.resolve() / "demo-az-1"
    assert lifecycle.branch_name("az-1") == "sessions/az-1"
    assert lifecycle.session_name("az-1.2") == "az-1-2"


def test_create_makes_worktree_and_session(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)

    path = lifecycle.create("az-1")

    assert path.is_dir()
    assert git.Repo(path).active_branch.name == "sessions/az-1"
    assert runner.sessions["az-1"]["cwd"] == str(path)
    assert lifecycle.exists("az-1")


def test_create_twice_reuses_resources(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)

    first = lifecycle.create("az-1")
    second = lifecycle.create("az-1")

    assert first == second
    assert len(runner.commands("tmux", "new-session")) == 1
    assert len([args for args in runner.commands("git", "worktree") if args[1] == "add"]) == 1
    worktrees = [entry for entry in GitClient(runner, git_repo).worktrees() if entry.get("branch") == "sessions/az-1"]
    assert len(worktrees) == 1


def test_create_reuses_branch_left_by_removed_worktree(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)
    path = lifecycle.create("az-1")
    repo = git.Repo(git_repo)
    repo.git.worktree("remove", "--force", str(path))
    runner.sessions.clear()

    again = lifecycle.create("az-1")

    assert again == path
    assert git.Repo(again).active_branch.name == "sessions/az-1"


def test_tmux_failure_rolls_back_new_worktree(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)
    runner.fail("tmux", "new-session", stderr="server exited")

    with pytest.raises(ResourceError) as excinfo:
        lifecycle.create("az-1")

    assert excinfo.value.partial is False
    assert not lifecycle.workspace_path("az-1").exists()
    assert "sessions/az-1" not in [head.name for head in git.Repo(git_repo).heads]


def test_failed_rollback_is_reported_as_partial(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)
    runner.fail("tmux", "new-session")
    real_run = runner.run

    def run(name, args, **kwargs):
        if name == "git" and list(args[:2]) == ["worktree", "remove"]:
            raise CommandError("git", args, 128, stderr="locked")
        return real_run(name, args, **kwargs)

    runner.run = run

    with pytest.raises(ResourceError) as excinfo:
        lifecycle.create("az-1")

    assert excinfo.value.partial is True


def test_delete_removes_both_resources(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)
    path = lifecycle.create("az-1")

    lifecycle.delete("az-1")

    assert not path.exists()
    assert "az-1" not in runner.sessions
    assert "sessions/az-1" not in [head.name for head in git.Repo(git_repo).heads]


def test_delete_of_missing_resources_is_quiet(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)

    lifecycle.delete("never-created")


def test_delete_reports_partial_failure_after_trying_both(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner)
    path = lifecycle.create("az-1")
    runner.fail("tmux", "kill-session", stderr="permission denied")

    with pytest.raises(ResourceError) as excinfo:
        lifecycle.delete("az-1")

    assert excinfo.value.partial is True
    assert "kill tmux session" in str(excinfo.value)
    assert not path.exists()


def test_init_commands_run_in_new_worktree(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner, init_commands=["make setup"])

    path = lifecycle.create("az-1")

    assert ("sh", ["-c", "make setup"], str(path)) in runner.calls


def test_failing_init_command_can_abort_create(git_repo: Path, runner):
    lifecycle = _lifecycle(git_repo, runner, init_commands=["false"], continue_on_failure=False)
    runner.fail("sh", "-c")

    with pytest.raises(ResourceError):
        lifecycle.create("az-1")

    assert not lifecycle.workspace_path("az-1").exists()
    assert runner.sessions == {}
