import json

import pytest
import requests

from parallel_sessions.errors import CaptureError, GitWorkflowError, TaskBackendError
from parallel_sessions.services import (
    GitClient,
    NetworkStatus,
    TaskClient,
    TmuxClient,
    sanitize_session_name,
)


def test_session_names_are_tmux_safe():
    assert sanitize_session_name("az-1.2") == "az-1-2"
    assert sanitize_session_name("proj:7", "ps-") == "ps-proj-7"


def test_new_session_passes_env_and_command(fake_runner, tmp_path):
    tmux = TmuxClient(fake_runner)

    tmux.new_session("az-1-dev", tmp_path, env={"PORT": "4001"}, command="npm run dev")

    args = fake_runner.commands("tmux", "new-session")[0]
    assert args[-1] == "npm run dev"
    assert args[args.index("-e") + 1] == "PORT=4001"
    assert fake_runner.sessions["az-1-dev"]["cwd"] == str(tmp_path)


def test_send_keys_sends_literal_text_then_enter(fake_runner):
    fake_runner.sessions["az-1"] = {"cwd": "/tmp", "env": [], "keys": []}
    tmux = TmuxClient(fake_runner)

    tmux.send_keys("az-1", "yes\r\nplease")

    assert fake_runner.commands("tmux", "send-keys") == [
        ["send-keys", "-t", "az-1", "-l", "yes\nplease"],
        ["send-keys", "-t", "az-1", "Enter"],
    ]


def test_capture_failure_is_a_capture_error(fake_runner):
    tmux = TmuxClient(fake_runner)

    with pytest.raises(CaptureError):
        tmux.capture_pane("missing")


def test_list_sessions_without_server_is_empty(fake_runner):
    fake_runner.fail("tmux", "list-sessions", stderr="no server running")

    assert TmuxClient(fake_runner).list_sessions() == []


def test_is_at_shell(fake_runner):
    tmux = TmuxClient(fake_runner)
    fake_runner.pane_command["az-1"] = "zsh"
    fake_runner.pane_command["az-2"] = "node"

    assert tmux.is_at_shell("az-1") is True
    assert tmux.is_at_shell("az-2") is False


def test_worktree_porcelain_is_parsed(fake_runner, tmp_path):
    fake_runner.respond(
        "git",
        "worktree",
        f"worktree {tmp_path}\nHEAD abc\nbranch refs/heads/main\n\nworktree {tmp_path}-az-1\nHEAD def\ndetached\n",
    )
    git = GitClient(fake_runner, tmp_path)

    entries = git.worktrees()

    assert entries[0]["branch"] == "main"
    assert entries[1]["detached"] == "true"
    assert git.has_worktree(tmp_path) is True


def test_branch_exists_uses_exit_status(fake_runner, tmp_path):
    fake_runner.fail("git", "rev-parse")

    assert GitClient(fake_runner, tmp_path).branch_exists("sessions/az-1") is False


def test_conflicting_files_reads_dry_run_output(fake_runner, tmp_path):
    git = GitClient(fake_runner, tmp_path)
    fake_runner.fail("git", "merge-tree", returncode=1, stdout="0123abcd\na.ts\nb.ts\n")

    assert git.conflicting_files("main", "sessions/az-1", task_id="az-1") == ["a.ts", "b.ts"]

    fake_runner.respond("git", "merge-tree", "0123abcd\n")
    assert git.conflicting_files("main", "sessions/az-1", task_id="az-1") == []

    fake_runner.fail("git", "merge-tree", returncode=129, stderr="unknown option")
    with pytest.raises(GitWorkflowError):
        git.conflicting_files("main", "sessions/az-1", task_id="az-1")


def test_task_client_reads_json(fake_runner):
    fake_runner.respond(
        "bd",
        "show",
        json.dumps([{"id": "az-1", "title": "Add login", "issue_type": "feature", "description": "OAuth"}]),
    )
    fake_runner.respond("bd", "list", json.dumps([{"id": "az-1", "title": "A"}, {"id": "az-2", "title": "B"}]))
    tasks = TaskClient(fake_runner)

    task = tasks.show("az-1")
    listed = tasks.list_tasks(status="open")

    assert (task.title, task.issue_type, task.description) == ("Add login", "feature", "OAuth")
    assert [item.id for item in listed] == ["az-1", "az-2"]
    assert ["list", "--json", "--status=open"] in fake_runner.commands("bd")


def test_task_client_wraps_failures(fake_runner):
    fake_runner.fail("bd", "update", stderr="no such issue")
    fake_runner.respond("bd", "show", "not json")
    tasks = TaskClient(fake_runner)

    with pytest.raises(TaskBackendError):
        tasks.update_status("az-1", "in_progress")
    with pytest.raises(TaskBackendError):
        tasks.show("az-1")


def test_task_client_rejects_records_without_id(fake_runner):
    tasks = TaskClient(fake_runner)

    fake_runner.respond("bd", "show", "")
    with pytest.raises(TaskBackendError):
        tasks.show("az-1")

    fake_runner.respond("bd", "show", json.dumps([{"title": "no id"}]))
    with pytest.raises(TaskBackendError):
        tasks.show("az-1")

    fake_runner.respond("bd", "list", json.dumps([{"id": "az-1"}, "az-2"]))
    with pytest.raises(TaskBackendError):
        tasks.list_tasks()


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


def test_network_status_is_cached(monkeypatch):
    calls = []

    def head(url, **kwargs):
        calls.append(url)
        return _Response(301)

    monkeypatch.setattr("parallel_sessions.services.requests.head", head)
    network = NetworkStatus(ttl=60)

    assert network.is_online() is True
    assert network.is_online() is True
    assert calls == ["https://github.com"]


def test_network_errors_mean_offline(monkeypatch):
    def head(url, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr("parallel_sessions.services.requests.head", head)

    assert NetworkStatus(ttl=0).is_online() is False


def test_server_errors_mean_offline(monkeypatch):
    monkeypatch.setattr("parallel_sessions.services.requests.head", lambda url, **kwargs: _Response(503))

    assert NetworkStatus().check() is False


def test_forced_offline_never_checks(monkeypatch):
    def head(url, **kwargs):
        raise AssertionError("should not reach the network")

    monkeypatch.setattr("parallel_sessions.services.requests.head", head)

    assert NetworkStatus(forced_offline=True).is_online() is False
