"""Auxiliary dev servers, one tmux session per task."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence

from .errors import CommandError, ConfigError, ResourceError
from .models import DevServer
from .ports import PortAllocator
from .services import TmuxClient

logger = logging.getLogger(__name__)


class DevServerManager:
    def __init__(
        self,
        tmux: TmuxClient,
        ports: PortAllocator,
        *,
        command: str = "",
        base_port: int = 3000,
        cwd: str = ".",
        port_env: Sequence[str] = ("PORT",),
    ) -> None:
        self._tmux = tmux
        self._ports = ports
        self.command = command
        self.base_port = base_port
        self.cwd = cwd
        self.port_env = list(port_env) or ["PORT"]
        self._lock = threading.Lock()
        self._servers: Dict[str, DevServer] = {}

    @staticmethod
    def session_name_for(session_name: str) -> str:
        return f"{session_name}-dev"

    def status(self, task_id: str) -> Optional[DevServer]:
        with self._lock:
            return self._servers.get(task_id)

    def is_running(self, task_id: str) -> bool:
        server = self.status(task_id)
        return bool(server and server.running)

    def toggle(self, task_id: str, workspace: Path, session_name: str) -> DevServer:
        if self.is_running(task_id):
            return self.stop(task_id) or DevServer()
        return self.start(task_id, workspace, session_name)

    def start(self, task_id: str, workspace: Path, session_name: str) -> DevServer:
        if not self.command:
            raise ConfigError("dev_server.command is not configured")
        port = self._ports.allocate(task_id, self.base_port)
        dev_session = self.session_name_for(session_name)
        env = {name: str(port) for name in self.port_env}
        try:
            if self._tmux.has_session(dev_session):
                self._tmux.kill_session(dev_session)
            self._tmux.new_session(dev_session, Path(workspace) / self.cwd, env=env, command=self.command)
        except CommandError as exc:
            self._ports.release(task_id)
            raise ResourceError("start dev server", task_id, exc) from exc
        server = DevServer(port=port, command=self.command, running=True, session_name=dev_session)
        with self._lock:
            self._servers[task_id] = server
        logger.info("dev server for %s listening on port %s", task_id, port)
        return server

    def stop(self, task_id: str) -> Optional[DevServer]:
        with self._lock:
            server = self._servers.pop(task_id, None)
        if server is not None and server.session_name:
            try:
                self._tmux.kill_session(server.session_name)
            except CommandError as exc:
                logger.warning("could not stop dev server session %s: %s", server.session_name, exc)
        self._ports.release(task_id)
        if server is not None:
            server.running = False
            logger.info("dev server for %s stopped", task_id)
        return server
