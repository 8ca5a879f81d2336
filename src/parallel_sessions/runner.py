"""Single entry point for every external process the engine starts."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from subprocess import PIPE
from typing import Mapping, Optional, Protocol, Sequence, Union

import git
import libtmux
from libtmux import exc as tmux_exc

from .errors import CommandError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class CommandRunner(Protocol):
    def run(
        self,
        name: str,
        args: Sequence[str],
        *,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Run ``name args`` and return stdout, raising CommandError on failure."""
        ...


class SystemCommandRunner:
    """Run git through GitPython, tmux through libtmux and anything else via subprocess.

    A tmux command given a timeout runs as a plain subprocess so it can be killed.
    """

    def __init__(self) -> None:
        self._server: Optional[libtmux.Server] = None

    def run(
        self,
        name: str,
        args: Sequence[str],
        *,
        cwd: Optional[PathLike] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> str:
        args = [str(arg) for arg in args]
        logger.debug("run %s %s cwd=%s", name, " ".join(args), cwd)
        if name == "git":
            return self._run_git(args, cwd=cwd, timeout=timeout, env=env)
        if name == "tmux":
            if timeout is not None:
                # libtmux has no per-command timeout
                return self._run_process(name, args, cwd=cwd, timeout=timeout, env=env)
            return self._run_tmux(args)
        return self._run_process(name, args, cwd=cwd, timeout=timeout, env=env)

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[PathLike],
        timeout: Optional[float],
        env: Optional[Mapping[str, str]],
    ) -> str:
        runner = git.Git(str(cwd) if cwd is not None else None)
        try:
            status, stdout, stderr = runner.execute(
                ["git", *args],
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=timeout,
                env=dict(env) if env else None,
            )
        except git.GitCommandNotFound as exc:
            raise CommandError("git", args, 127, stderr=str(exc)) from exc
        if status != 0:
            raise CommandError("git", args, status, stdout, stderr)
        return stdout

    def _run_tmux(self, args: Sequence[str]) -> str:
        if self._server is None:
            self._server = libtmux.Server()
        try:
            result = self._server.cmd(*args)
        except tmux_exc.LibTmuxException as exc:
            raise CommandError("tmux", args, 127, stderr=str(exc)) from exc
        stdout = "\n".join(result.stdout or [])
        stderr = "\n".join(result.stderr or [])
        if result.returncode != 0:
            raise CommandError("tmux", args, result.returncode, stdout, stderr)
        return stdout

    def _run_process(
        self,
        name: str,
        args: Sequence[str],
        *,
        cwd: Optional[PathLike],
        timeout: Optional[float],
        env: Optional[Mapping[str, str]],
    ) -> str:
        command = [name, *args]
        process_env = None
        if env:
            process_env = {**os.environ, **env}
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                stdout=PIPE,
                stderr=PIPE,
                text=True,
                check=False,
                timeout=timeout,
                env=process_env,
            )
        except FileNotFoundError as exc:
            raise CommandError(name, args, 127, stderr=str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(name, args, -1, timed_out=True) from exc
        if result.returncode != 0:
            raise CommandError(name, args, result.returncode, result.stdout or "", result.stderr or "")
        return result.stdout or ""
