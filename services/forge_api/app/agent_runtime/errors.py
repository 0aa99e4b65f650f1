from __future__ import annotations

from typing import Any


class ToolError(Exception):
    """Base for every failure that is fed back to the model as a tool result."""

    code = "tool_error"

    def __init__(self, message: str, *, tool: str | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tool = tool
        self.path = path

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message}


class UnknownTool(ToolError):
    code = "unknown_tool"


class PreconditionUnmet(ToolError):
    code = "precondition_unmet"


class HandlerFault(ToolError):
    code = "handler_fault"


class DiagnosticRegression(ToolError):
    code = "diagnostic_regression"


class CircuitTripped(ToolError):
    code = "circuit_tripped"

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "feedback": "STOP"}


class ProviderFault(Exception):
    """Network, credential or model-side failure; triggers credential rotation."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class WorkspaceError(Exception):
    def __init__(self, reason: str, path: str = "") -> None:
        super().__init__(f"{reason}: {path}" if path else reason)
        self.reason = reason
        self.path = path
