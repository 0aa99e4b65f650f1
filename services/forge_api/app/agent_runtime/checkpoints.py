from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import os
import threading
from typing import Any, Protocol

from ..agent_log import append_agent_event
from ..editor import EditorSession
from ..settings import Settings
from ..state_files import read_json, write_json
from ..workspace import WorkspaceGateway
from .errors import PreconditionUnmet
from .state import now_ms


@dataclass(frozen=True)
class CheckpointRecord:
    id: int
    name: str
    workspace_snapshot: dict[str, Any]
    timestamp: int

    def summary(self) -> dict[str, Any]:
        files = self.workspace_snapshot.get("open_files") or []
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp,
            "files": [str(f.get("path") or "") for f in files],
            "active_file": self.workspace_snapshot.get("active_file"),
        }


class SnapshotStore(Protocol):
    def put(self, name: str, workspace_snapshot: dict[str, Any], timestamp: int) -> CheckpointRecord: ...

    def get(self, checkpoint_id: int) -> CheckpointRecord | None: ...

    def list(self) -> list[CheckpointRecord]: ...

    def delete(self, checkpoint_id: int) -> bool: ...


class MemorySnapshotStore:
    def __init__(self) -> None:
        self._records: dict[int, CheckpointRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def put(self, name: str, workspace_snapshot: dict[str, Any], timestamp: int) -> CheckpointRecord:
        with self._lock:
            rec = CheckpointRecord(id=self._next_id, name=name, workspace_snapshot=workspace_snapshot, timestamp=timestamp)
            self._records[rec.id] = rec
            self._next_id += 1
            return rec

    def get(self, checkpoint_id: int) -> CheckpointRecord | None:
        with self._lock:
            return self._records.get(int(checkpoint_id))

    def list(self) -> list[CheckpointRecord]:
        with self._lock:
            return [self._records[k] for k in sorted(self._records)]

    def delete(self, checkpoint_id: int) -> bool:
        with self._lock:
            return self._records.pop(int(checkpoint_id), None) is not None


class JsonFileSnapshotStore:
    """Checkpoints persisted to one JSON document: {"next_id": N, "checkpoints": [...]}."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> tuple[int, dict[int, CheckpointRecord]]:
        raw = read_json(self.path)
        records: dict[int, CheckpointRecord] = {}
        for item in raw.get("checkpoints") or []:
            try:
                rec = CheckpointRecord(
                    id=int(item["id"]),
                    name=str(item.get("name") or ""),
                    workspace_snapshot=dict(item.get("workspace_snapshot") or {}),
                    timestamp=int(item.get("timestamp") or 0),
                )
            except (KeyError, TypeError, ValueError):
                continue
            records[rec.id] = rec
        next_id = max([int(raw.get("next_id") or 1), *(k + 1 for k in records)])
        return next_id, records

    def _save(self, next_id: int, records: dict[int, CheckpointRecord]) -> None:
        write_json(self.path, {"next_id": next_id, "checkpoints": [asdict(records[k]) for k in sorted(records)]})

    def put(self, name: str, workspace_snapshot: dict[str, Any], timestamp: int) -> CheckpointRecord:
        with self._lock:
            next_id, records = self._load()
            rec = CheckpointRecord(id=next_id, name=name, workspace_snapshot=workspace_snapshot, timestamp=timestamp)
            records[rec.id] = rec
            self._save(next_id + 1, records)
            return rec

    def get(self, checkpoint_id: int) -> CheckpointRecord | None:
        return self._load()[1].get(int(checkpoint_id))

    def list(self) -> list[CheckpointRecord]:
        records = self._load()[1]
        return [records[k] for k in sorted(records)]

    def delete(self, checkpoint_id: int) -> bool:
        with self._lock:
            next_id, records = self._load()
            if records.pop(int(checkpoint_id), None) is None:
                return False
            self._save(next_id, records)
            return True


def checkpoints_path(settings: Settings) -> str:
    return os.path.join(settings.state_dir, "checkpoints.json")


class CheckpointManager:
    def __init__(
        self,
        store: SnapshotStore,
        editor: EditorSession,
        *,
        settings: Settings | None = None,
        workspace: WorkspaceGateway | None = None,
    ) -> None:
        self.store = store
        self.editor = editor
        self.settings = settings
        self.workspace = workspace

    def _log(self, event: dict[str, Any]) -> None:
        if self.settings is not None:
            append_agent_event(self.settings, event)

    def create_automatic(self) -> CheckpointRecord | None:
        if not self.editor.has_open_files():
            return None
        name = f"Auto-Checkpoint @ {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        rec = self.store.put(name, self.editor.snapshot(), now_ms())
        self._log({"type": "checkpoint.auto", "id": rec.id, "files": len(rec.workspace_snapshot.get("open_files") or [])})
        return rec

    def create_manual(self, name: str) -> CheckpointRecord:
        if not self.editor.has_open_files():
            raise PreconditionUnmet("No files are open; nothing to checkpoint.")
        label = str(name or "").strip() or f"Checkpoint @ {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        rec = self.store.put(label, self.editor.snapshot(), now_ms())
        self._log({"type": "checkpoint.manual", "id": rec.id, "name": label})
        return rec

    def list(self) -> list[CheckpointRecord]:
        return self.store.list()

    def get(self, checkpoint_id: int) -> CheckpointRecord | None:
        return self.store.get(checkpoint_id)

    def delete(self, checkpoint_id: int) -> bool:
        ok = self.store.delete(checkpoint_id)
        if ok:
            self._log({"type": "checkpoint.delete", "id": int(checkpoint_id)})
        return ok

    def restore(self, checkpoint_id: int) -> dict[str, Any] | None:
        rec = self.store.get(checkpoint_id)
        if rec is None:
            return None
        snapshot = rec.workspace_snapshot
        if self.workspace is not None:
            for item in snapshot.get("open_files") or []:
                self.workspace.write_file(str(item.get("path") or ""), str(item.get("content") or ""))
        self.editor.restore(snapshot)
        self._log({"type": "checkpoint.restore", "id": rec.id})
        return snapshot
