from __future__ import annotations

from dataclasses import dataclass
import os
import threading
from typing import Any, Callable

from .agent_runtime.errors import HandlerFault


EditorListener = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class Selection:
    path: str
    start: int
    end: int

    def is_empty(self) -> bool:
        return self.end <= self.start


class EditorSession:
    """Open files, active file and selection for the single user session.

    Mutating tools call `open()` after writing; listeners receive an `editor.open` event.
    Handlers run on worker threads, so state is only touched under `_lock` and events
    are delivered after it is released.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._files: dict[str, str] = {}
        self.active_path: str | None = None
        self.selection: Selection | None = None
        self._listeners: list[EditorListener] = []

    def subscribe(self, listener: EditorListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, *events: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                listener(event)

    @property
    def open_paths(self) -> list[str]:
        with self._lock:
            return list(self._files.keys())

    def has_open_files(self) -> bool:
        with self._lock:
            return bool(self._files)

    def is_open(self, path: str) -> bool:
        with self._lock:
            return path in self._files

    def content(self, path: str) -> str | None:
        with self._lock:
            return self._files.get(path)

    def open(self, path: str, content: str, *, focus: bool = True) -> None:
        with self._lock:
            self._files[path] = str(content or "")
            if focus or self.active_path is None:
                self.active_path = path
        self._emit({"type": "editor.open", "path": path, "focus": bool(focus)})

    def update(self, path: str, content: str) -> None:
        # Keeps an already-open buffer in sync with the disk; does not open new tabs.
        with self._lock:
            if path in self._files:
                self._files[path] = str(content or "")

    def _close_locked(self, path: str) -> None:
        self._files.pop(path, None)
        if self.selection and self.selection.path == path:
            self.selection = None
        if self.active_path == path:
            self.active_path = next(iter(self._files), None)

    def close(self, path: str) -> None:
        with self._lock:
            self._close_locked(path)
        self._emit({"type": "editor.close", "path": path})

    def rename(self, old_path: str, new_path: str) -> None:
        # Renaming a folder moves every open file beneath it.
        prefix = old_path.rstrip("/") + "/"
        moved: dict[str, str] = {}
        with self._lock:
            for path in list(self._files):
                if path == old_path:
                    moved[path] = new_path
                elif path.startswith(prefix):
                    moved[path] = new_path.rstrip("/") + "/" + path[len(prefix) :]
            for src, dst in moved.items():
                self._files[dst] = self._files.pop(src)
                if self.active_path == src:
                    self.active_path = dst
            if self.selection and self.selection.path in moved:
                self.selection = None
        self._emit(*({"type": "editor.open", "path": dst, "focus": False} for dst in moved.values()))

    def close_under(self, folder: str) -> None:
        prefix = folder.rstrip("/") + "/"
        with self._lock:
            closed = [p for p in self._files if p == folder or p.startswith(prefix)]
            for path in closed:
                self._close_locked(path)
        self._emit(*({"type": "editor.close", "path": p} for p in closed))

    def active(self) -> tuple[str, str] | None:
        with self._lock:
            if self.active_path is None or self.active_path not in self._files:
                return None
            return self.active_path, self._files[self.active_path]

    def select(self, path: str, start: int, end: int) -> None:
        with self._lock:
            if path not in self._files:
                raise HandlerFault(f"File '{path}' is not open in the editor.", path=path)
            text = self._files[path]
            lo = max(0, min(int(start), len(text)))
            hi = max(lo, min(int(end), len(text)))
            self.active_path = path
            self.selection = Selection(path=path, start=lo, end=hi)

    def selected_text(self) -> str:
        with self._lock:
            sel = self.selection
            if sel is None or sel.is_empty():
                raise HandlerFault("No text is currently selected.")
            return self._files[sel.path][sel.start : sel.end]

    def replace_selection(self, text: str) -> str:
        with self._lock:
            sel = self.selection
            if sel is None or sel.is_empty():
                raise HandlerFault("No text is selected to replace.")
            original = self._files[sel.path]
            updated = original[: sel.start] + str(text or "") + original[sel.end :]
            self._files[sel.path] = updated
            self.selection = Selection(path=sel.path, start=sel.start, end=sel.start + len(str(text or "")))
            return updated

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "open_files": [{"path": p, "content": c} for p, c in self._files.items()],
                "active_file": self.active_path,
            }

    def restore(self, snapshot: dict[str, Any]) -> None:
        files: dict[str, str] = {}
        for item in snapshot.get("open_files") or []:
            files[str(item.get("path") or "")] = str(item.get("content") or "")
        active = snapshot.get("active_file")
        with self._lock:
            self._files = files
            self.selection = None
            self.active_path = active if active in files else next(iter(files), None)
            current = self.active_path
        self._emit(*({"type": "editor.open", "path": p, "focus": p == current} for p in files))


def language_for(path: str) -> str:
    ext = os.path.splitext(path)[1].lstrip(".")
    return ext or "text"
