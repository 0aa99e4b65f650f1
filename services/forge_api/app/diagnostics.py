from __future__ import annotations

import ast
from dataclasses import dataclass
import json
from typing import Literal, Protocol

from .workspace import WorkspaceGateway


Severity = Literal["error", "warning", "info"]


@dataclass(frozen=True)
class Marker:
    line: int
    column: int
    severity: Severity
    message: str

    def to_dict(self) -> dict[str, object]:
        return {"line": self.line, "column": self.column, "severity": self.severity, "message": self.message}


class DiagnosticsProvider(Protocol):
    def get_markers(self, path: str) -> list[Marker]: ...


def python_markers(text: str, filename: str = "<file>") -> list[Marker]:
    try:
        ast.parse(text, filename=filename)
    except SyntaxError as e:
        return [Marker(line=int(e.lineno or 1), column=int(e.offset or 0), severity="error", message=str(e.msg))]
    return []


def json_markers(text: str) -> list[Marker]:
    if not text.strip():
        return []
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        return [Marker(line=int(e.lineno), column=int(e.colno), severity="error", message=str(e.msg))]
    return []


class SyntaxDiagnostics:
    """Syntax-only checks for Python and JSON files read back through the workspace."""

    def __init__(self, workspace: WorkspaceGateway) -> None:
        self.workspace = workspace

    def get_markers(self, path: str) -> list[Marker]:
        lower = path.lower()
        if not (lower.endswith(".py") or lower.endswith(".json")):
            return []
        text = self.workspace.read_file(path)
        if lower.endswith(".py"):
            return python_markers(text, filename=path)
        return json_markers(text)


class EditorDiagnostics:
    """Checks the editor buffer (for selection edits) and falls back to the disk copy."""

    def __init__(self, editor, fallback: DiagnosticsProvider | None = None) -> None:
        self.editor = editor
        self.fallback = fallback

    def get_markers(self, path: str) -> list[Marker]:
        buffered = self.editor.content(path)
        if buffered is None:
            return self.fallback.get_markers(path) if self.fallback is not None else []
        lower = path.lower()
        if lower.endswith(".py"):
            return python_markers(buffered, filename=path)
        if lower.endswith(".json"):
            return json_markers(buffered)
        return []
