from unittest.mock import AsyncMock, Mock

from typer.testing import CliRunner

from parallel_sessions.cli import app, build_engine
from parallel_sessions.config import EngineConfig
from parallel_sessions.detector import DEFAULT_WINDOW
from parallel_sessions.errors import GitConflictError
from parallel_sessions.models import MergeResult

from conftest import FakeRunner


def test_detect_reads_stdin():
    runner = CliRunner()

    result = runner.invoke(app, ["detect"], input="Building...\nDo you want to proceed? [y/n]\n")

    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert lines[0] == "waiting"
    assert "line 1: Do you want to proceed? [y/n]" in lines[1]


def test_detect_reads_file(tmp_path):
    capture = tmp_path / "pane.txt"
    capture.write_text("npm ERR! missing script: dev\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["detect", str(capture)])

    assert result.exit_code == 0
    assert result.stdout.splitlines()[0] == "error"


def test_bad_config_exits_with_code_two(tmp_path):
    (tmp_path / ".parallel-sessions.yaml").write_text("unknown_section: 1\n", encoding="utf-8")

    result = CliRunner().invoke(app, ["sessions", "--project", str(tmp_path)])

    assert result.exit_code == 2


def test_merge_reports_conflict(monkeypatch, tmp_path):
    orchestrator = Mock()
    orchestrator.merge_to_main = AsyncMock(
        return_value=MergeResult(
            task_id="az-1",
            operation="merge-to-main",
            message="Conflicts detected in: a.ts. Started agent session to resolve.",
            condition=GitConflictError("az-1", ["a.ts"], delegated=True),
        )
    )
    orchestrator.recover = AsyncMock(return_value=[])
    orchestrator.shutdown = AsyncMock()
    monkeypatch.setattr("parallel_sessions.cli._load", lambda project, config, logs: Mock(orchestrator=orchestrator))

    result = CliRunner().invoke(app, ["merge", "az-1", "--project", str(tmp_path)])

    assert result.exit_code == 1
    assert "Conflicts detected in: a.ts" in result.stdout
    orchestrator.merge_to_main.assert_awaited_once_with("az-1")
    orchestrator.shutdown.assert_awaited_once()


def test_pr_passes_draft_override(monkeypatch, tmp_path):
    orchestrator = Mock()
    orchestrator.create_pr = AsyncMock(
        return_value=MergeResult(task_id="az-1", operation="create-pr", message="PR created: https://x/pull/1")
    )
    orchestrator.recover = AsyncMock(return_value=[])
    orchestrator.shutdown = AsyncMock()
    monkeypatch.setattr("parallel_sessions.cli._load", lambda project, config, logs: Mock(orchestrator=orchestrator))

    result = CliRunner().invoke(app, ["pr", "az-1", "--ready", "--project", str(tmp_path)])

    assert result.exit_code == 0
    orchestrator.create_pr.assert_awaited_once_with("az-1", draft=False)


def test_build_engine_wires_components(tmp_path):
    fake = FakeRunner()
    config = EngineConfig()
    config.session.tmux_prefix = "ps-"

    engine = build_engine(tmp_path, config, runner=fake, logs_dir=tmp_path / "logs")

    assert engine.lifecycle.session_name("az-1") == "ps-az-1"
    assert engine.lifecycle.workspace_path("az-1") == tmp_path.resolve().parent / f"{tmp_path.name}-az-1"
    assert engine.orchestrator.get_state("az-1").value == "idle"
    assert (tmp_path / "logs").is_dir()


def test_sessions_lists_tmux_sessions(monkeypatch, tmp_path):
    fake = FakeRunner()
    fake.sessions["az-1"] = {"cwd": "/tmp", "env": [], "keys": []}
    fake.sessions["az-2"] = {"cwd": "/tmp", "env": [], "keys": []}
    monkeypatch.setattr("parallel_sessions.cli.SystemCommandRunner", lambda: fake)
    monkeypatch.setattr("parallel_sessions.cli.configure_logging", lambda level, log_file: None)

    result = CliRunner().invoke(app, ["sessions", "--project", str(tmp_path)])

    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["az-1", "az-2"]


def test_detector_window_does_not_follow_capture_lines(tmp_path):
    config = EngineConfig()
    config.monitor.capture_lines = 200

    engine = build_engine(tmp_path, config, runner=FakeRunner())

    assert engine.monitor.capture_lines == 200
    assert engine.detector.window == DEFAULT_WINDOW


def _running_project(monkeypatch, tmp_path):
    fake = FakeRunner()
    fake.sessions["az-1"] = {"cwd": "", "env": [], "keys": []}
    workspace = tmp_path.resolve().parent / f"{tmp_path.name}-az-1"
    listing = f"worktree {tmp_path}\nbranch refs/heads/main\n\nworktree {workspace}\nbranch refs/heads/sessions/az-1\n"
    fake.respond("git", "worktree", lambda args: listing if args[1] == "list" else "")
    monkeypatch.setattr("parallel_sessions.cli.SystemCommandRunner", lambda: fake)
    monkeypatch.setattr("parallel_sessions.cli.configure_logging", lambda level, log_file: None)
    return fake, workspace


def test_status_shows_sessions_from_earlier_runs(monkeypatch, tmp_path):
    _, workspace = _running_project(monkeypatch, tmp_path)

    result = CliRunner().invoke(app, ["status", "--project", str(tmp_path)])

    assert result.exit_code == 0
    assert f"az-1\tbusy\t{workspace}" in result.stdout.splitlines()
    snapshot = (tmp_path / ".parallel-sessions" / "sessions.yaml").read_text(encoding="utf-8")
    assert "task_id: az-1" in snapshot


def test_stop_uses_recovered_session(monkeypatch, tmp_path):
    fake, _ = _running_project(monkeypatch, tmp_path)

    result = CliRunner().invoke(app, ["stop", "az-1", "--project", str(tmp_path)])

    assert result.exit_code == 0
    assert "stopped az-1" in result.stdout
    assert "Session stopped; worktree kept" in result.stdout
    assert "az-1" not in fake.sessions


def test_stop_without_session(monkeypatch, tmp_path):
    fake, _ = _running_project(monkeypatch, tmp_path)

    result = CliRunner().invoke(app, ["stop", "az-9", "--project", str(tmp_path)])

    assert result.exit_code == 0
    assert "no tmux session az-9" in result.stdout
    assert "az-1" in fake.sessions
