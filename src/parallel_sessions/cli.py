"""Typer CLI entrypoint for the parallel session engine."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Dict, List, Optional

import typer

from .config import EngineConfig, configure_logging, load_config
from .detector import StateDetector, build_rules
from .devserver import DevServerManager
from .errors import EngineError
from .git_workflow import AgentConflictDelegate, GitWorkflowCoordinator
from .journal import EventJournal
from .lifecycle import ResourceLifecycle
from .models import MergeResult, Session, StateChange
from .monitor import SessionMonitor
from .orchestrator import EventHandler, SessionOrchestrator
from .ports import PortAllocator
from .runner import CommandRunner, SystemCommandRunner
from .services import GitClient, NetworkStatus, PullRequestClient, TaskClient, TmuxClient

app = typer.Typer(add_completion=False, no_args_is_help=True)

DEFAULT_LOGS_DIR = ".parallel-sessions"


@dataclass(slots=True)
class Engine:
    config: EngineConfig
    tmux: TmuxClient
    git: GitClient
    lifecycle: ResourceLifecycle
    detector: StateDetector
    monitor: SessionMonitor
    workflow: GitWorkflowCoordinator
    orchestrator: SessionOrchestrator


def build_engine(
    project_root: Path,
    config: Optional[EngineConfig] = None,
    *,
    runner: Optional[CommandRunner] = None,
    event_handler: Optional[EventHandler] = None,
    logs_dir: Optional[Path] = None,
) -> Engine:
    """Wire every component for ``project_root``."""

    project_root = Path(project_root).resolve()
    config = config or load_config(project_root)
    runner = runner or SystemCommandRunner()

    tmux = TmuxClient(runner, prefix=config.session.tmux_prefix)
    git = GitClient(runner, project_root)
    tasks = TaskClient(runner, command=config.task_command, cwd=project_root)
    lifecycle = ResourceLifecycle(
        project_root=project_root,
        git=git,
        tmux=tmux,
        runner=runner,
        base_branch=config.git.base_branch,
        path_template=config.worktree.path_template,
        branch_template=config.worktree.branch_template,
        init_commands=config.worktree.init_commands,
        continue_on_failure=config.worktree.continue_on_failure,
    )
    detector = StateDetector(build_rules(config.patterns.as_mapping()))
    monitor = SessionMonitor(
        tmux,
        detector,
        interval=config.monitor.poll_interval,
        capture_timeout=config.monitor.capture_timeout,
        capture_lines=config.monitor.capture_lines,
    )
    network = NetworkStatus(
        url=config.network.check_url,
        timeout=config.network.timeout,
        forced_offline=config.network.offline,
    )
    workflow = GitWorkflowCoordinator(
        git=git,
        lifecycle=lifecycle,
        network=network,
        delegate=AgentConflictDelegate(lifecycle, tmux, agent_command=config.session.agent_command),
        pull_requests=PullRequestClient(runner, cwd=project_root),
        tasks=tasks,
        base_branch=config.git.base_branch,
        remote=config.git.remote,
        fetch_enabled=config.git.fetch_enabled,
        push_enabled=config.git.push_enabled,
        pr_enabled=config.pr.enabled,
        draft_by_default=config.pr.draft_by_default,
        close_task=config.merge.close_task,
    )
    ports = PortAllocator(base_port=config.dev_server.base_port, window=config.dev_server.window)
    dev_servers = DevServerManager(
        tmux,
        ports,
        command=config.dev_server.command,
        base_port=config.dev_server.base_port,
        cwd=config.dev_server.cwd,
        port_env=config.dev_server.port_env,
    )
    journal = EventJournal(logs_dir) if logs_dir is not None else None
    orchestrator = SessionOrchestrator(
        lifecycle=lifecycle,
        monitor=monitor,
        git_workflow=workflow,
        dev_servers=dev_servers,
        tmux=tmux,
        git=git,
        tasks=tasks,
        journal=journal,
        event_handler=event_handler,
        agent_command=config.session.agent_command,
        base_branch=config.git.base_branch,
        wip_commit_on_pause=config.session.wip_commit_on_pause,
        interrupt_delay=config.session.interrupt_delay,
    )
    return Engine(
        config=config,
        tmux=tmux,
        git=git,
        lifecycle=lifecycle,
        detector=detector,
        monitor=monitor,
        workflow=workflow,
        orchestrator=orchestrator,
    )


def _echo_event(event_type: str, payload: Dict[str, object]) -> None:
    task_id = payload.get("task_id")
    if event_type == "state":
        typer.echo(f"[{task_id}] {payload.get('previous')} -> {payload.get('state')}")
    elif event_type == "error":
        typer.echo(f"[{task_id}] error: {payload.get('text')}", err=True)
    else:
        typer.echo(f"[{task_id}] {payload.get('text')}")


def _load(project: Path, config_path: Optional[Path], logs_dir: Optional[Path]) -> Engine:
    try:
        config = load_config(project, config_path)
    except EngineError as exc:
        typer.echo(f"config error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    configure_logging(config.log_level, Path(config.log_file) if config.log_file else None)
    logs_dir = logs_dir or Path(project) / DEFAULT_LOGS_DIR
    return build_engine(project, config, event_handler=_echo_event, logs_dir=logs_dir)


def _report(result: MergeResult) -> None:
    typer.echo(result.message)
    if result.condition is not None:
        raise typer.Exit(code=1)


ProjectOption = Annotated[Path, typer.Option("--project", "-p", help="Git project root")]
ConfigOption = Annotated[Optional[Path], typer.Option("--config", help="Path to a YAML config file")]
LogsOption = Annotated[Optional[Path], typer.Option("--log-dir", help="Directory for the event journal")]


@app.command()
def detect(
    source: Annotated[Optional[Path], typer.Argument(help="File with captured pane text (stdin if omitted)")] = None,
) -> None:
    """Classify captured terminal text."""

    text = source.read_text(encoding="utf-8") if source else sys.stdin.read()
    result = StateDetector().detect(text)
    typer.echo(result.state.value)
    if result.line is not None:
        typer.echo(f"line {result.line_number}: {result.line.strip()} (priority {result.priority}, confidence {result.confidence:.2f})")


@app.command()
def start(
    task_ids: Annotated[List[str], typer.Argument(help="Task identifiers to start")],
    prompt: Annotated[Optional[str], typer.Option("--prompt", help="Prompt sent to the agent instead of the task summary")] = None,
    watch: Annotated[bool, typer.Option("--watch/--no-watch", help="Keep monitoring until interrupted")] = False,
    project: ProjectOption = Path("."),
    config_path: ConfigOption = None,
    log_dir: LogsOption = None,
) -> None:
    """Create worktrees and tmux sessions and launch the agent."""

    engine = _load(project, config_path, log_dir)
    orchestrator = engine.orchestrator

    async def run() -> int:
        failures = 0
        try:
            await orchestrator.recover()
            for task_id in task_ids:
                try:
                    await orchestrator.start(task_id, prompt=prompt)
                except EngineError:
                    failures += 1
            if watch and failures < len(task_ids):
                await _wait_forever()
        finally:
            await orchestrator.shutdown()
        return failures

    try:
        failures = asyncio.run(run())
    except KeyboardInterrupt:
        failures = 0
    if failures:
        raise typer.Exit(code=1)


@app.command()
def watch(
    task_ids: Annotated[List[str], typer.Argument(help="Tasks whose tmux sessions should be monitored")],
    project: ProjectOption = Path("."),
    config_path: ConfigOption = None,
) -> None:
    """Stream detected state changes of already running sessions."""

    engine = _load(project, config_path, None)
    monitor = engine.monitor

    def on_change(change: StateChange) -> None:
        typer.echo(f"[{change.task_id}] {change.previous.value} -> {change.current.value}")

    monitor.set_handler(on_change)

    async def run() -> None:
        for task_id in task_ids:
            monitor.start(task_id)
        try:
            await _wait_forever()
        finally:
            await monitor.stop_all()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


@app.command()
def stop(
    task_id: str,
    project: ProjectOption = Path("."),
    config_path: ConfigOption = None,
) -> None:
    """Kill a task's tmux session and keep its worktree."""

    engine = _load(project, config_path, None)
    orchestrator = engine.orchestrator
    name = engine.lifecycle.session_name(task_id)

    async def run() -> bool:
        try:
            await orchestrator.recover()
            if orchestrator.get_session(task_id) is None:
                return await asyncio.get_running_loop().run_in_executor(None, engine.tmux.kill_session, name)
            await orchestrator.stop(task_id)
            return True
        finally:
            await orchestrator.shutdown()

    try:
        killed = asyncio.run(run())
    except EngineError as exc:
        typer.echo(f"stop failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"stopped {name}" if killed else f"no tmux session {name}")


@app.command()
def cleanup(
    task_id: str,
    project: ProjectOption = Path("."),
    config_path: ConfigOption = None,
) -> None:
    """Remove a task's tmux session, worktree and branch."""

    engine = _load(project, config_path, None)
    orchestrator = engine.orchestrator

    async def run() -> None:
        try:
            await orchestrator.recover()
            await orchestrator.cleanup(task_id)
        finally:
            await orchestrator.shutdown()

    try:
        asyncio.run(run())
    except EngineError as exc:
        raise typer.Exit(code=1) from exc


@app.command()
def status(project: ProjectOption = Path("."), config_path: ConfigOption = None, log_dir: LogsOption = None) -> None:
    """Show sessions left running by earlier invocations."""

    engine = _load(project, config_path, log_dir)
    orchestrator = engine.orchestrator

    async def run() -> List[Session]:
        try:
            await orchestrator.recover()
            return orchestrator.list_sessions()
        finally:
            await orchestrator.shutdown()

    for session in sorted(asyncio.run(run()), key=lambda item: item.task_id):
        typer.echo(f"{session.task_id}\t{session.state.value}\t{session.workspace_path}")


def _git_command(project: Path, config_path: Optional[Path], task_id: str, operation: str, **kwargs: object) -> None:
    engine = _load(project, config_path, None)
    orchestrator = engine.orchestrator

    async def run() -> MergeResult:
        try:
            await orchestrator.recover()
            return await getattr(orchestrator, operation)(task_id, **kwargs)
        finally:
            await orchestrator.shutdown()

    try:
        result = asyncio.run(run())
    except EngineError as exc:
        raise typer.Exit(code=1) from exc
    _report(result)


@app.command()
def update(task_id: str, project: ProjectOption = Path("."), config_path: ConfigOption = None) -> None:
    """Merge the base branch into the task branch."""

    _git_command(project, config_path, task_id, "update_from_main")


@app.command()
def merge(task_id: str, project: ProjectOption = Path("."), config_path: ConfigOption = None) -> None:
    """Merge the task branch into the base branch."""

    _git_command(project, config_path, task_id, "merge_to_main")


@app.command()
def pr(
    task_id: str,
    draft: Annotated[Optional[bool], typer.Option("--draft/--ready", help="Override the configured draft default")] = None,
    project: ProjectOption = Path("."),
    config_path: ConfigOption = None,
) -> None:
    """Push the task branch and open a pull request."""

    _git_command(project, config_path, task_id, "create_pr", draft=draft)


@app.command()
def sessions(project: ProjectOption = Path("."), config_path: ConfigOption = None) -> None:
    """List running tmux sessions."""

    engine = _load(project, config_path, None)
    for name in engine.tmux.list_sessions():
        typer.echo(name)


async def _wait_forever() -> None:
    await asyncio.Event().wait()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
