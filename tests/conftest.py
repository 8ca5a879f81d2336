from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import git
import pytest

from parallel_sessions.errors import CommandError
from parallel_sessions.runner import SystemCommandRunner

Response = Union[str, Callable[[List[str]], str], CommandError]


class FakeRunner:
    """Records every command. Simulates tmux in memory and optionally runs git for real."""

    def __init__(self, *, real_git: bool = False) -> None:
        self.calls: List[Tuple[str, List[str], Optional[str]]] = []
        self.timeouts: List[Optional[float]] = []
        self.sessions: Dict[str, Dict[str, object]] = {}
        self.pane_text: Dict[str, str] = {}
        self.pane_command: Dict[str, str] = {}
        self.responses: Dict[Tuple[str, str], Response] = {}
        self._system = SystemCommandRunner() if real_git else None

    def respond(self, name: str, subcommand: str, response: Response) -> None:
        self.responses[(name, subcommand)] = response

    def fail(self, name: str, subcommand: str, returncode: int = 1, stdout: str = "", stderr: str = "boom") -> None:
        self.responses[(name, subcommand)] = CommandError(name, [subcommand], returncode, stdout, stderr)

    def commands(self, name: str, subcommand: Optional[str] = None) -> List[List[str]]:
        return [
            args
            for call_name, args, _ in self.calls
            if call_name == name and (subcommand is None or (args and args[0] == subcommand))
        ]

    def run(self, name, args, *, cwd=None, timeout=None, env=None) -> str:
        args = [str(arg) for arg in args]
        self.calls.append((name, args, str(cwd) if cwd is not None else None))
        self.timeouts.append(timeout)
        scripted = self.responses.get((name, args[0] if args else ""))
        if isinstance(scripted, CommandError):
            raise scripted
        if callable(scripted):
            return scripted(args)
        if isinstance(scripted, str):
            return scripted
        if name == "tmux":
            return self._tmux(args)
        if name == "git" and self._system is not None:
            return self._system.run(name, args, cwd=cwd, timeout=timeout, env=env)
        return ""

    def _tmux(self, args: List[str]) -> str:
        command = args[0]
        if command == "has-session":
            name = args[args.index("-t") + 1]
            if name not in self.sessions:
                raise CommandError("tmux", args, 1, stderr=f"can't find session: {name}")
            return ""
        if command == "new-session":
            name = args[args.index("-s") + 1]
            if name in self.sessions:
                raise CommandError("tmux", args, 1, stderr=f"duplicate session: {name}")
            env = [args[i + 1] for i, arg in enumerate(args) if arg == "-e"]
            self.sessions[name] = {"cwd": args[args.index("-c") + 1], "env": env, "keys": []}
            return ""
        if command == "kill-session":
            name = args[args.index("-t") + 1]
            if self.sessions.pop(name, None) is None:
                raise CommandError("tmux", args, 1, stderr=f"can't find session: {name}")
            return ""
        if command == "send-keys":
            name = args[args.index("-t") + 1]
            if name not in self.sessions:
                raise CommandError("tmux", args, 1, stderr=f"can't find session: {name}")
            self.sessions[name]["keys"].append(args[-1])
            return ""
        if command == "capture-pane":
            name = args[args.index("-t") + 1]
            if name not in self.sessions:
                raise CommandError("tmux", args, 1, stderr=f"can't find pane: {name}")
            return self.pane_text.get(name, "")
        if command == "list-sessions":
            return "\n".join(self.sessions)
        if command == "display-message":
            name = args[args.index("-t") + 1]
            return self.pane_command.get(name, "bash")
        return ""


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    root = tmp_path / "demo"
    root.mkdir()
    repo = git.Repo.init(root, initial_branch="main")
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Test User")
        writer.set_value("user", "email", "test@example.com")
    readme = root / "README.md"
    readme.write_text("# demo\n", encoding="utf-8")
    repo.index.add([str(readme)])
    repo.index.commit("Initial commit")
    return root
