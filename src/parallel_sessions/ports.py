"""In-process registry of dev-server ports."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Dict, Optional

from .errors import PortExhaustionError

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT = 3000
DEFAULT_WINDOW = 100
MAX_PORT = 65535


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except (OSError, OverflowError):
            return False
    return True


class PortAllocator:
    """Hand out one port per task from a bounded window above a base port."""

    def __init__(
        self,
        *,
        base_port: int = DEFAULT_BASE_PORT,
        window: int = DEFAULT_WINDOW,
        is_free: Callable[[int], bool] = is_port_free,
    ) -> None:
        self.base_port = base_port
        self.window = window
        self._is_free = is_free
        self._lock = threading.Lock()
        self._by_task: Dict[str, int] = {}
        self._by_port: Dict[int, str] = {}

    def allocate(self, task_id: str, base_port: Optional[int] = None) -> int:
        base = self.base_port if base_port is None else base_port
        with self._lock:
            existing = self._by_task.get(task_id)
            if existing is not None:
                return existing
            for port in range(base, min(base + self.window, MAX_PORT + 1)):
                if port in self._by_port:
                    continue
                if not self._is_free(port):
                    logger.debug("port %s in use by another process", port)
                    continue
                self._by_task[task_id] = port
                self._by_port[port] = task_id
                logger.info("allocated port %s to %s", port, task_id)
                return port
        raise PortExhaustionError(task_id, base, self.window)

    def release(self, task_id: str) -> Optional[int]:
        with self._lock:
            port = self._by_task.pop(task_id, None)
            if port is not None:
                self._by_port.pop(port, None)
                logger.info("released port %s from %s", port, task_id)
            return port

    def port_for(self, task_id: str) -> Optional[int]:
        with self._lock:
            return self._by_task.get(task_id)

    def allocations(self) -> Dict[int, str]:
        with self._lock:
            return dict(self._by_port)
