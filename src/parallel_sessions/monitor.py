"""One polling task per session, feeding detector results to a single consumer."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional

from .detector import DetectionResult, StateDetector
from .errors import CaptureError
from .models import SessionState, StateChange
from .services import TmuxClient

logger = logging.getLogger(__name__)

StateChangeHandler = Callable[[StateChange], None]


class SessionMonitor:
    """Poll tmux panes on a fixed interval and report detected state changes.

    ``start`` replaces any poller already running for the task, so a task never
    has two pollers. Capture problems are logged and retried on the next tick.
    """

    def __init__(
        self,
        tmux: TmuxClient,
        detector: StateDetector,
        on_change: Optional[StateChangeHandler] = None,
        *,
        interval: float = 0.5,
        capture_timeout: float = 0.4,
        capture_lines: int = 100,
    ) -> None:
        if capture_timeout >= interval:
            raise ValueError("capture_timeout must be shorter than interval")
        self._tmux = tmux
        self._detector = detector
        self._on_change = on_change
        self.interval = interval
        self.capture_timeout = capture_timeout
        self.capture_lines = capture_lines
        self._lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._states: Dict[str, SessionState] = {}
        self._detections: Dict[str, DetectionResult] = {}
        self._retired: List[asyncio.Task[None]] = []

    def set_handler(self, handler: Optional[StateChangeHandler]) -> None:
        self._on_change = handler

    def start(
        self,
        task_id: str,
        *,
        session_name: Optional[str] = None,
        initial_state: SessionState = SessionState.BUSY,
    ) -> None:
        """Must be called from the running event loop."""

        name = session_name or self._tmux.session_name(task_id)
        with self._lock:
            self._retired = [task for task in self._retired if not task.done()]
            previous = self._tasks.pop(task_id, None)
            if previous is not None and not previous.done():
                previous.cancel()
                self._retired.append(previous)
            self._states[task_id] = initial_state
            task = asyncio.get_running_loop().create_task(
                self._poll(task_id, name), name=f"monitor:{task_id}"
            )
            self._tasks[task_id] = task
        logger.debug("monitoring %s via tmux session %s", task_id, name)

    def stop(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            self._states.pop(task_id, None)
            self._detections.pop(task_id, None)
            if task is None:
                return False
            if not task.done():
                task.cancel()
                self._retired.append(task)
        logger.debug("stopped monitoring %s", task_id)
        return True

    async def stop_all(self) -> None:
        with self._lock:
            tasks = list(self._tasks.values()) + self._retired
            self._tasks.clear()
            self._retired = []
            self._states.clear()
            self._detections.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("stopped %d monitor task(s)", len(tasks))

    def get_state(self, task_id: str) -> SessionState:
        with self._lock:
            return self._states.get(task_id, SessionState.IDLE)

    def last_detection(self, task_id: str) -> Optional[DetectionResult]:
        with self._lock:
            return self._detections.get(task_id)

    def is_monitoring(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            return task is not None and not task.done()

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if not task.done())

    def pending_count(self) -> int:
        """Cancelled pollers that have not finished unwinding yet."""

        with self._lock:
            return sum(1 for task in self._retired if not task.done())

    def _capture(self, session_name: str) -> str:
        return self._tmux.capture_pane(session_name, self.capture_lines, timeout=self.capture_timeout)

    async def _poll(self, task_id: str, session_name: str) -> None:
        loop = asyncio.get_running_loop()
        current = asyncio.current_task()
        # at most one capture per task occupies an executor worker
        pending: Optional[asyncio.Future[str]] = None
        try:
            while True:
                await asyncio.sleep(self.interval)
                if pending is None:
                    pending = loop.run_in_executor(None, self._capture, session_name)
                done, _ = await asyncio.wait({pending}, timeout=self.capture_timeout)
                if not done:
                    logger.debug("capture still running for %s", task_id)
                    continue
                finished, pending = pending, None
                try:
                    text = finished.result()
                except CaptureError as exc:
                    logger.debug("capture skipped for %s: %s", task_id, exc)
                    continue
                if not self._handle_capture(task_id, current, text):
                    return
        finally:
            if pending is not None:
                pending.add_done_callback(_discard_result)

    def _handle_capture(self, task_id: str, current: Optional[asyncio.Task], text: str) -> bool:
        """Record a detection; ``False`` once this poller has been replaced."""

        result = self._detector.detect(text)
        with self._lock:
            if self._tasks.get(task_id) is not current:
                return False
            self._detections[task_id] = result
            previous = self._states.get(task_id, SessionState.IDLE)
            if result.state == previous:
                return True
            self._states[task_id] = result.state
        change = StateChange(task_id=task_id, previous=previous, current=result.state, line=result.line)
        logger.info("%s: %s -> %s", task_id, previous.value, result.state.value)
        if self._on_change is not None:
            try:
                self._on_change(change)
            except Exception:
                logger.exception("state change handler failed for %s", task_id)
        return True


def _discard_result(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
