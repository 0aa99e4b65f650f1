from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from ..diagnostics import Marker
from .errors import CircuitTripped, DiagnosticRegression


MAX_ATTEMPTS = 3


def error_signature(markers: Iterable[Marker]) -> str:
    errors = sorted((m for m in markers if m.severity == "error"), key=lambda m: (m.line, m.column))
    return "|".join(f"L{m.line}:{m.message}" for m in errors)


@dataclass
class FailureTracker:
    """Single slot: tracking a new (path, signature) pair replaces the previous one."""

    resource_path: str | None = None
    signature: str | None = None
    count: int = 0

    def reset(self) -> None:
        self.resource_path = None
        self.signature = None
        self.count = 0

    def record(self, path: str, signature: str) -> int:
        if self.resource_path == path and self.signature == signature:
            self.count += 1
        else:
            self.resource_path = path
            self.signature = signature
            self.count = 1
        return self.count


def _format_errors(markers: list[Marker]) -> str:
    return "\n".join(f"L{m.line}: {m.message}" for m in markers)


class CircuitBreaker:
    def __init__(self, tracker: FailureTracker | None = None, *, max_attempts: int = MAX_ATTEMPTS) -> None:
        self.tracker = tracker or FailureTracker()
        self.max_attempts = max_attempts

    def reset(self) -> None:
        self.tracker.reset()

    def check(self, tool_name: str, path: str, markers: list[Marker]) -> DiagnosticRegression | CircuitTripped | None:
        """Return the error to feed back instead of the tool's success result, or None."""

        errors = sorted((m for m in markers if m.severity == "error"), key=lambda m: (m.line, m.column))
        if not errors:
            self.tracker.reset()
            return None

        attempt = self.tracker.record(path, error_signature(errors))
        if attempt >= self.max_attempts:
            self.tracker.reset()
            return CircuitTripped(
                f"The AI has failed to fix the same error in '{path}' {self.max_attempts} times. "
                "The automatic feedback loop has been stopped to prevent an infinite loop. "
                "Please review the errors manually or try a different approach.",
                tool=tool_name,
                path=path,
            )

        hint = ""
        if attempt > 1:
            hint = (
                f" This is attempt #{attempt} to fix this issue. The previous attempt failed. "
                "Please analyze the problem differently."
            )
        message = (
            f"The tool '{tool_name}' ran, but the code now has syntax errors.{hint}\n\n"
            f"File: {path}\nErrors:\n{_format_errors(errors)}"
        )
        return DiagnosticRegression(message, tool=tool_name, path=path)

    def snapshot(self) -> dict[str, Any]:
        return {"path": self.tracker.resource_path, "signature": self.tracker.signature, "count": self.tracker.count}
