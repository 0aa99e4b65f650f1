from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import json
from typing import Any, Awaitable, Callable, Union

from ..agent_log import append_agent_event, maybe_log_text
from ..diagnostics import DiagnosticsProvider, EditorDiagnostics, SyntaxDiagnostics
from ..editor import EditorSession
from ..settings import Settings
from ..workspace import WorkspaceGateway, normalize_rel_path
from .checkpoints import CheckpointManager
from .circuit_breaker import CircuitBreaker
from .errors import HandlerFault, PreconditionUnmet, ToolError, UnknownTool
from .state import ToolInvocation, ToolOutcome


NO_WORKSPACE_MESSAGE = "No project folder is open. Please ask the user to open a folder before using this tool."


@dataclass
class ToolContext:
    """Collaborators a handler may touch. `workspace` is None when no folder is open."""

    settings: Settings
    editor: EditorSession
    workspace: WorkspaceGateway | None = None
    extras: dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[ToolContext, dict[str, Any]], Union[dict[str, Any], Awaitable[dict[str, Any]]]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    handler: ToolHandler
    requires_workspace: bool
    mutates_state: bool
    needs_diagnostics: bool = False
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def schema(self) -> dict[str, Any]:
        # OpenAI chat.completions tool schema.
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor) -> None:
        if self._frozen:
            raise RuntimeError("tool_registry_frozen")
        if descriptor.name in self._tools:
            raise ValueError(f"duplicate_tool: {descriptor.name}")
        self._tools[descriptor.name] = descriptor

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def schemas(self, *, include: Callable[[ToolDescriptor], bool] | None = None) -> list[dict[str, Any]]:
        return [d.schema() for d in self._tools.values() if include is None or include(d)]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def _diagnostics_path(args: dict[str, Any], editor: EditorSession) -> str | None:
    path = normalize_rel_path(str(args.get("filename") or ""))
    if path:
        return path
    if editor.selection is not None:
        return editor.selection.path
    return editor.active_path


class ToolDispatcher:
    """Runs one invocation against the registry with checkpointing and diagnostics feedback."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        settings: Settings,
        editor: EditorSession,
        checkpoints: CheckpointManager,
        breaker: CircuitBreaker,
        diagnostics: DiagnosticsProvider | None = None,
        extras: dict[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.editor = editor
        self.checkpoints = checkpoints
        self.breaker = breaker
        self.diagnostics = diagnostics
        self.extras = dict(extras or {})

    def _diagnostics_for(self, workspace: WorkspaceGateway | None) -> DiagnosticsProvider | None:
        if self.diagnostics is not None:
            return self.diagnostics
        return EditorDiagnostics(self.editor, SyntaxDiagnostics(workspace) if workspace is not None else None)

    def _error(self, inv: ToolInvocation, err: ToolError) -> ToolOutcome:
        append_agent_event(
            self.settings,
            {
                "type": "agent.tool.error",
                "tool": {"id": inv.id, "name": inv.name},
                "code": err.code,
                "path": err.path,
                "error": str(err.message)[:2000],
            },
        )
        return ToolOutcome(id=inv.id, name=inv.name, response=err.to_response(), ok=False)

    async def dispatch(self, inv: ToolInvocation, workspace: WorkspaceGateway | None) -> ToolOutcome:
        append_agent_event(
            self.settings,
            {
                "type": "agent.tool.call",
                "tool": {"id": inv.id, "name": inv.name},
                "args": maybe_log_text(json.dumps(inv.args, ensure_ascii=False, default=str)),
            },
        )
        descriptor = self.registry.get(inv.name)
        if descriptor is None:
            return self._error(inv, UnknownTool(f"Unknown tool '{inv.name}'.", tool=inv.name))

        if descriptor.requires_workspace and workspace is None:
            return self._error(inv, PreconditionUnmet(NO_WORKSPACE_MESSAGE, tool=inv.name))

        if descriptor.mutates_state:
            try:
                await asyncio.to_thread(self.checkpoints.create_automatic)
            except Exception as e:
                # Checkpoint failures never block the edit.
                append_agent_event(self.settings, {"type": "checkpoint.error", "tool": inv.name, "error": str(e)[:2000]})

        ctx = ToolContext(settings=self.settings, editor=self.editor, workspace=workspace, extras=self.extras)
        try:
            if inspect.iscoroutinefunction(descriptor.handler):
                response = await descriptor.handler(ctx, dict(inv.args))
            else:
                response = await asyncio.to_thread(descriptor.handler, ctx, dict(inv.args))
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            path = getattr(e, "path", None) or str(inv.args.get("filename") or "") or None
            return self._error(inv, HandlerFault(f"Error executing tool '{inv.name}': {message}", tool=inv.name, path=path))

        response = dict(response or {})
        if descriptor.needs_diagnostics:
            path = _diagnostics_path(inv.args, self.editor)
            provider = self._diagnostics_for(workspace)
            if path and provider is not None:
                try:
                    markers = await asyncio.to_thread(provider.get_markers, path)
                except Exception as e:
                    append_agent_event(self.settings, {"type": "diagnostics.error", "path": path, "error": str(e)[:2000]})
                    markers = []
                feedback = self.breaker.check(inv.name, path, markers)
                if feedback is not None:
                    return self._error(inv, feedback)

        append_agent_event(
            self.settings,
            {
                "type": "agent.tool.result",
                "tool": {"id": inv.id, "name": inv.name},
                "result": maybe_log_text(json.dumps(response, ensure_ascii=False, default=str)),
            },
        )
        return ToolOutcome(id=inv.id, name=inv.name, response=response, ok=True)
