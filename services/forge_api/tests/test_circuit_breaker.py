from __future__ import annotations

from services.forge_api.app.agent_runtime.circuit_breaker import CircuitBreaker, FailureTracker, error_signature
from services.forge_api.app.agent_runtime.errors import CircuitTripped, DiagnosticRegression
from services.forge_api.app.diagnostics import Marker


def _err(line: int, msg: str, col: int = 1) -> Marker:
    return Marker(line=line, column=col, severity="error", message=msg)


def test_signature_is_sorted_by_position_and_ignores_warnings() -> None:
    markers = [
        _err(9, "b"),
        Marker(line=1, column=1, severity="warning", message="unused"),
        _err(2, "a"),
    ]
    assert error_signature(markers) == "L2:a|L9:b"


def test_no_errors_resets_tracker() -> None:
    breaker = CircuitBreaker()
    assert isinstance(breaker.check("rewrite_file", "a.py", [_err(1, "x")]), DiagnosticRegression)
    assert breaker.tracker.count == 1
    assert breaker.check("rewrite_file", "a.py", []) is None
    assert breaker.tracker.count == 0
    assert breaker.tracker.resource_path is None


def test_same_error_three_times_trips_with_stop_feedback() -> None:
    breaker = CircuitBreaker()
    markers = [_err(3, "invalid syntax")]

    first = breaker.check("rewrite_file", "app.py", markers)
    assert isinstance(first, DiagnosticRegression)
    assert "attempt #" not in first.message
    assert "File: app.py" in first.message
    assert "L3: invalid syntax" in first.message

    second = breaker.check("rewrite_file", "app.py", markers)
    assert isinstance(second, DiagnosticRegression)
    assert "This is attempt #2 to fix this issue." in second.message

    third = breaker.check("rewrite_file", "app.py", markers)
    assert isinstance(third, CircuitTripped)
    assert third.to_response()["feedback"] == "STOP"
    assert "3 times" in third.message
    # Tracker is cleared after tripping.
    assert breaker.tracker.count == 0


def test_different_signature_or_path_restarts_count() -> None:
    breaker = CircuitBreaker()
    breaker.check("rewrite_file", "a.py", [_err(1, "x")])
    breaker.check("rewrite_file", "a.py", [_err(1, "x")])
    assert breaker.tracker.count == 2

    breaker.check("rewrite_file", "a.py", [_err(2, "y")])
    assert breaker.tracker.count == 1

    breaker.check("rewrite_file", "b.py", [_err(2, "y")])
    assert breaker.tracker.count == 1
    assert breaker.tracker.resource_path == "b.py"


def test_failure_tracker_is_single_slot() -> None:
    t = FailureTracker()
    assert t.record("a", "s") == 1
    assert t.record("a", "s") == 2
    assert t.record("b", "s") == 1
    assert t.record("a", "s") == 1
    t.reset()
    assert (t.resource_path, t.signature, t.count) == (None, None, 0)


def test_reset_between_user_prompts() -> None:
    breaker = CircuitBreaker()
    breaker.check("rewrite_file", "a.py", [_err(1, "x")])
    breaker.check("rewrite_file", "a.py", [_err(1, "x")])
    breaker.reset()
    out = breaker.check("rewrite_file", "a.py", [_err(1, "x")])
    assert isinstance(out, DiagnosticRegression)
    assert breaker.snapshot() == {"path": "a.py", "signature": "L1:x", "count": 1}
