from __future__ import annotations

import os
from typing import Any

from .agent_runtime.checkpoints import CheckpointManager, JsonFileSnapshotStore, SnapshotStore, checkpoints_path
from .agent_runtime.circuit_breaker import CircuitBreaker
from .agent_runtime.core import TurnController
from .agent_runtime.providers import ModelProvider, OpenAIProvider
from .agent_runtime.registry import ToolDispatcher
from .agent_runtime.state import History, history_path
from .agent_runtime.tools import build_registry
from .credentials import CredentialRing
from .diagnostics import DiagnosticsProvider
from .editor import EditorSession
from .settings import Settings
from .workspace import LocalWorkspace, WorkspaceGateway


class ForgeSession:
    """Owns every collaborator of the single user session and wires them together."""

    def __init__(
        self,
        settings: Settings,
        *,
        provider: ModelProvider | None = None,
        workspace: WorkspaceGateway | None = None,
        store: SnapshotStore | None = None,
        diagnostics: DiagnosticsProvider | None = None,
        extras: dict[str, Any] | None = None,
        persist_history: bool = True,
    ) -> None:
        self.settings = settings
        if workspace is None and settings.workspace_root and os.path.isdir(settings.workspace_root):
            workspace = LocalWorkspace(settings.workspace_root)
        self.workspace = workspace
        self.editor = EditorSession()
        self.checkpoints = CheckpointManager(
            store or JsonFileSnapshotStore(checkpoints_path(settings)),
            self.editor,
            settings=settings,
            workspace=workspace,
        )
        self.breaker = CircuitBreaker()
        self.registry = build_registry()
        self.dispatcher = ToolDispatcher(
            self.registry,
            settings=settings,
            editor=self.editor,
            checkpoints=self.checkpoints,
            breaker=self.breaker,
            diagnostics=diagnostics,
            extras=extras,
        )
        self.credentials = CredentialRing(settings.api_keys)
        self.provider = provider or OpenAIProvider(settings.agent_model, base_url=settings.openai_base_url)
        self.history = History(history_path(settings.state_dir) if persist_history else None)
        self.controller = TurnController(
            settings=settings,
            provider=self.provider,
            dispatcher=self.dispatcher,
            credentials=self.credentials,
            history=self.history,
            breaker=self.breaker,
            workspace=workspace,
        )

    def open_file(self, path: str, *, focus: bool = True) -> str:
        if self.workspace is None:
            raise LookupError("no_workspace")
        content = self.workspace.read_file(path)
        self.editor.open(path, content, focus=focus)
        return content
