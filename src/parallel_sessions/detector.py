"""Classify captured pane text into a session state."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError
from .models import SessionState

PRIORITY_ERROR = 100
PRIORITY_WAITING = 90
PRIORITY_DONE = 80
PRIORITY_BUSY = 60

DEFAULT_WINDOW = 100

STATE_PRIORITIES = {
    SessionState.ERROR: PRIORITY_ERROR,
    SessionState.WAITING: PRIORITY_WAITING,
    SessionState.DONE: PRIORITY_DONE,
    SessionState.BUSY: PRIORITY_BUSY,
}


@dataclass(frozen=True, slots=True)
class PatternRule:
    state: SessionState
    pattern: "re.Pattern[str]"
    priority: int


@dataclass(frozen=True, slots=True)
class DetectionResult:
    state: SessionState
    line: Optional[str] = None
    line_number: Optional[int] = None
    priority: Optional[int] = None
    pattern: Optional[str] = None
    confidence: float = 1.0


_I = re.IGNORECASE
_M = re.MULTILINE

# (state, regex, flags). On one line the highest priority wins, then table order.
_DEFAULT_PATTERNS: Sequence[Tuple[SessionState, str, int]] = (
    # prompts and confirmations
    (SessionState.WAITING, r"\[y/n\]", _I),
    (SessionState.WAITING, r"\[yes/no\]", _I),
    (SessionState.WAITING, r"Do you want to", _I),
    (SessionState.WAITING, r"Would you like", _I),
    (SessionState.WAITING, r"Continue\?", _I),
    (SessionState.WAITING, r"Proceed\?", _I),
    (SessionState.WAITING, r"Approve\?", _I),
    # numbered choice menus
    (SessionState.WAITING, r"^\s*\d+\.\s+Other\b", _I | _M),
    (SessionState.WAITING, r"Other\s*\(describe", _I),
    (SessionState.WAITING, r"select.*option", _I),
    (SessionState.WAITING, r"choose.*option", _I),
    (SessionState.WAITING, r"enter.*number", _I),
    (SessionState.WAITING, r"type.*number.*select", _I),
    (SessionState.WAITING, r"Press Enter", _I),
    (SessionState.WAITING, r"Press any key", _I),
    (SessionState.WAITING, r"waiting for.*input", _I),
    (SessionState.WAITING, r"waiting for.*response", _I),
    (SessionState.WAITING, r"AskUserQuestion", _I),
    # generic failures
    (SessionState.ERROR, r"Error:", 0),
    (SessionState.ERROR, r"Exception:", 0),
    (SessionState.ERROR, r"Failed:", 0),
    (SessionState.ERROR, r"FAILED", 0),
    (SessionState.ERROR, r"panic:", _I),
    (SessionState.ERROR, r"fatal error", _I),
    (SessionState.ERROR, r"stack trace:", _I),
    (SessionState.ERROR, r"^\s*at\s+.*:\d+:\d+", _M),
    # filesystem
    (SessionState.ERROR, r"ENOENT", 0),
    (SessionState.ERROR, r"EACCES", 0),
    (SessionState.ERROR, r"EEXIST", 0),
    (SessionState.ERROR, r"EISDIR", 0),
    (SessionState.ERROR, r"ENOTDIR", 0),
    (SessionState.ERROR, r"EMFILE", 0),
    (SessionState.ERROR, r"ENOSPC", 0),
    (SessionState.ERROR, r"permission denied", _I),
    (SessionState.ERROR, r"file not found", _I),
    (SessionState.ERROR, r"no such file", _I),
    (SessionState.ERROR, r"access denied", _I),
    # network
    (SessionState.ERROR, r"ECONNREFUSED", 0),
    (SessionState.ERROR, r"ECONNRESET", 0),
    (SessionState.ERROR, r"ETIMEDOUT", 0),
    (SessionState.ERROR, r"ENETUNREACH", 0),
    (SessionState.ERROR, r"connection refused", _I),
    (SessionState.ERROR, r"connection reset", _I),
    (SessionState.ERROR, r"network.*unreachable", _I),
    (SessionState.ERROR, r"timeout", _I),
    # api and auth
    (SessionState.ERROR, r"rate limit", _I),
    (SessionState.ERROR, r"429.*too many requests", _I),
    (SessionState.ERROR, r"401.*unauthorized", _I),
    (SessionState.ERROR, r"403.*forbidden", _I),
    (SessionState.ERROR, r"authentication failed", _I),
    (SessionState.ERROR, r"invalid.*token", _I),
    (SessionState.ERROR, r"unauthorized", _I),
    # commands
    (SessionState.ERROR, r"command not found", _I),
    (SessionState.ERROR, r"command failed", _I),
    (SessionState.ERROR, r"exit status [1-9]", _I),
    (SessionState.ERROR, r"exit code [1-9]", _I),
    # builds
    (SessionState.ERROR, r"compilation failed", _I),
    (SessionState.ERROR, r"build failed", _I),
    (SessionState.ERROR, r"syntax error", _I),
    (SessionState.ERROR, r"type error", _I),
    (SessionState.ERROR, r"parse error", _I),
    (SessionState.ERROR, r"cannot find module", _I),
    (SessionState.ERROR, r"module not found", _I),
    # tests
    (SessionState.ERROR, r"test.*failed", _I),
    (SessionState.ERROR, r"tests? FAILED", _I),
    (SessionState.ERROR, r"\d+ failing", _I),
    (SessionState.ERROR, r"assertion.*failed", _I),
    (SessionState.ERROR, r"expected.*but got", _I),
    # runtime
    (SessionState.ERROR, r"null pointer", _I),
    (SessionState.ERROR, r"undefined is not", _I),
    (SessionState.ERROR, r"cannot read property", _I),
    (SessionState.ERROR, r"segmentation fault", _I),
    (SessionState.ERROR, r"out of memory", _I),
    (SessionState.ERROR, r"stack overflow", _I),
    # completion
    (SessionState.DONE, r"Task completed", _I),
    (SessionState.DONE, r"Successfully", _I),
    (SessionState.DONE, r"Done\.", _I),
    (SessionState.DONE, r"Done!", _I),
    (SessionState.DONE, r"Finished", _I),
    (SessionState.DONE, r"All tasks complete", _I),
    (SessionState.DONE, r"All done", _I),
    (SessionState.DONE, r"completed successfully", _I),
    # git output, e.g. "[main abc1234] message"
    (SessionState.DONE, r"^\[[\w-]+\s+[a-f0-9]{7}\]", _M),
    (SessionState.DONE, r"committed.*file.*changed", _I),
    (SessionState.DONE, r"pushed to.*origin", _I),
    (SessionState.DONE, r"pull request created", _I),
    (SessionState.DONE, r"PR created", _I),
    (SessionState.DONE, r"successfully merged", _I),
    (SessionState.DONE, r"All tests pass", _I),
    (SessionState.DONE, r"tests? passed", _I),
    (SessionState.DONE, r"\d+ passing", _I),
    (SessionState.DONE, r"✓.*completed", 0),
    (SessionState.DONE, r"✓.*passed", 0),
    (SessionState.DONE, r"✓.*success", 0),
    (SessionState.DONE, r"build.*successful", _I),
    (SessionState.DONE, r"build.*complete", _I),
    (SessionState.DONE, r"compiled successfully", _I),
    # work in progress
    (SessionState.BUSY, r"Processing\.\.\.", _I),
    (SessionState.BUSY, r"Working on", _I),
    (SessionState.BUSY, r"In progress", _I),
    (SessionState.BUSY, r"Loading", _I),
    (SessionState.BUSY, r"Building", _I),
    (SessionState.BUSY, r"Compiling", _I),
    (SessionState.BUSY, r"Installing", _I),
    (SessionState.BUSY, r"Downloading", _I),
    (SessionState.BUSY, r"Reading file", _I),
    (SessionState.BUSY, r"Writing file", _I),
    (SessionState.BUSY, r"Creating file", _I),
    (SessionState.BUSY, r"Editing file", _I),
    (SessionState.BUSY, r"Modifying", _I),
    (SessionState.BUSY, r"Running tests?", _I),
    (SessionState.BUSY, r"Executing tests?", _I),
    (SessionState.BUSY, r"Running command", _I),
    (SessionState.BUSY, r"Executing", _I),
)


def _compile(state: SessionState, source: str, flags: int) -> PatternRule:
    return PatternRule(state=state, pattern=re.compile(source, flags), priority=STATE_PRIORITIES[state])


DEFAULT_RULES: Tuple[PatternRule, ...] = tuple(
    _compile(state, source, flags) for state, source, flags in _DEFAULT_PATTERNS
)


def build_rules(extra_patterns: Optional[Mapping[str, Iterable[str]]] = None) -> Tuple[PatternRule, ...]:
    """Return the default table plus user supplied ``waiting``/``done``/``error`` regexes.

    User patterns are case-insensitive and carry the priority of their state.
    """

    if not extra_patterns:
        return DEFAULT_RULES
    extras: List[PatternRule] = []
    for key, sources in extra_patterns.items():
        try:
            state = SessionState(str(key).lower())
        except ValueError as exc:
            raise ConfigError(f"unknown pattern state {key!r}") from exc
        if state not in (SessionState.WAITING, SessionState.DONE, SessionState.ERROR):
            raise ConfigError(f"custom patterns are not supported for state {state.value!r}")
        for source in sources or []:
            try:
                extras.append(_compile(state, source, re.IGNORECASE))
            except re.error as exc:
                raise ConfigError(f"invalid {state.value} pattern {source!r}: {exc}") from exc
    return DEFAULT_RULES + tuple(extras)


class StateDetector:
    """Pick the highest priority rule matching the tail of the captured output.

    Ties go to the most recent line. No match on non-blank text means the agent
    is still working (busy); blank text means idle.
    """

    def __init__(self, rules: Sequence[PatternRule] = DEFAULT_RULES, *, window: int = DEFAULT_WINDOW) -> None:
        self._rules = tuple(rules)
        self._window = window

    @property
    def rules(self) -> Tuple[PatternRule, ...]:
        return self._rules

    @property
    def window(self) -> int:
        return self._window

    def detect(self, text: str) -> DetectionResult:
        lines = (text or "").split("\n")
        start = max(0, len(lines) - self._window)
        retained = lines[start:]

        best: Optional[DetectionResult] = None
        for index, line in enumerate(retained):
            if not line.strip():
                continue
            rule = self._match_line(line)
            if rule is None:
                continue
            if best is None or rule.priority >= (best.priority or 0):
                best = DetectionResult(
                    state=rule.state,
                    line=line,
                    line_number=start + index,
                    priority=rule.priority,
                    pattern=rule.pattern.pattern,
                    confidence=0.5 + 0.5 * index / len(retained),
                )

        if best is not None:
            return best
        if any(line.strip() for line in retained):
            return DetectionResult(state=SessionState.BUSY, confidence=0.3)
        return DetectionResult(state=SessionState.IDLE, confidence=1.0)

    def _match_line(self, line: str) -> Optional[PatternRule]:
        matched: Optional[PatternRule] = None
        for rule in self._rules:
            if (matched is None or rule.priority > matched.priority) and rule.pattern.search(line):
                matched = rule
        return matched
