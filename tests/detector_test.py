import pytest

from parallel_sessions.detector import (
    DEFAULT_RULES,
    PRIORITY_ERROR,
    PRIORITY_WAITING,
    StateDetector,
    build_rules,
)
from parallel_sessions.errors import ConfigError
from parallel_sessions.models import SessionState


@pytest.fixture
def detector() -> StateDetector:
    return StateDetector()


def test_prompt_after_progress_is_waiting(detector):
    result = detector.detect("Processing files...\nDo you want to continue? [y/n]")

    assert result.state == SessionState.WAITING
    assert result.line == "Do you want to continue? [y/n]"
    assert result.priority == PRIORITY_WAITING
    assert result.line_number == 1


def test_error_beats_earlier_completion(detector):
    result = detector.detect("Task completed\nError: build failed")

    assert result.state == SessionState.ERROR
    assert result.priority == PRIORITY_ERROR


def test_error_beats_later_completion_and_prompt(detector):
    text = "Error: cannot find module 'x'\nWould you like to retry?\nAll tests pass\nDone!"

    assert detector.detect(text).state == SessionState.ERROR


def test_error_on_same_line_as_prompt_wins(detector):
    assert detector.detect("Error: Do you want to retry? [y/n]").state == SessionState.ERROR


@pytest.mark.parametrize("text", ["", "   ", "\n\n  \n\t"])
def test_blank_text_is_idle(detector, text):
    result = detector.detect(text)

    assert result.state == SessionState.IDLE
    assert result.line is None


def test_unmatched_text_is_busy(detector):
    result = detector.detect("hello world\nsome ordinary output")

    assert result.state == SessionState.BUSY
    assert result.line is None
    assert result.confidence == pytest.approx(0.3)


def test_only_last_hundred_lines_count(detector):
    lines = ["Error: first line failure"] + [f"line {index}" for index in range(149)]
    assert len(lines) == 150

    assert detector.detect("\n".join(lines)).state == SessionState.BUSY


def test_pattern_inside_window_is_seen(detector):
    lines = [f"line {index}" for index in range(149)] + ["Error: last line failure"]

    result = detector.detect("\n".join(lines))

    assert result.state == SessionState.ERROR
    assert result.line_number == 149


def test_more_recent_line_wins_priority_tie(detector):
    result = detector.detect("Press Enter to continue\nsomething\nWould you like to proceed")

    assert result.state == SessionState.WAITING
    assert result.line == "Would you like to proceed"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("  3. Other", SessionState.WAITING),
        ("AskUserQuestion: pick one", SessionState.WAITING),
        ("npm ERR! ENOENT: no such file", SessionState.ERROR),
        ("bash: foo: command not found", SessionState.ERROR),
        ("2 failing", SessionState.ERROR),
        ("[main abc1234] Add feature", SessionState.DONE),
        ("12 passing (3s)", SessionState.DONE),
        ("Compiling project", SessionState.BUSY),
        ("Reading file src/app.py", SessionState.BUSY),
    ],
)
def test_default_table_examples(detector, line, expected):
    assert detector.detect(line).state == expected


def test_error_patterns_are_case_sensitive_where_specified(detector):
    assert detector.detect("error: lowercase is not the generic marker").state == SessionState.BUSY


def test_confidence_rises_with_recency(detector):
    early = detector.detect("Done!\n" + "\n".join(f"x{index}" for index in range(9)))
    late = detector.detect("\n".join(f"x{index}" for index in range(9)) + "\nDone!")

    assert early.state == late.state == SessionState.DONE
    assert late.confidence > early.confidence


def test_custom_patterns_extend_default_table():
    rules = build_rules({"waiting": [r"awaiting approval"], "error": [r"kaboom"]})
    detector = StateDetector(rules)

    assert len(rules) == len(DEFAULT_RULES) + 2
    assert detector.detect("AWAITING APPROVAL from reviewer").state == SessionState.WAITING
    assert detector.detect("kaboom happened\nAll done").state == SessionState.ERROR


def test_build_rules_without_extras_reuses_default_table():
    assert build_rules(None) is DEFAULT_RULES
    assert build_rules({}) is DEFAULT_RULES


def test_build_rules_rejects_bad_input():
    with pytest.raises(ConfigError):
        build_rules({"waiting": ["("]})
    with pytest.raises(ConfigError):
        build_rules({"busy": ["x"]})
    with pytest.raises(ConfigError):
        build_rules({"sleeping": ["x"]})
