from __future__ import annotations

from dataclasses import dataclass
import os
import re
from typing import Any

from .agent_runtime.errors import WorkspaceError
from .state_files import read_json, read_yaml, write_json
from .workspace import WorkspaceGateway, normalize_rel_path


DEFAULT_EXCLUDES = [".git/", "node_modules/", ".venv/", "__pycache__/", ".forge/"]

INDEXED_EXTENSIONS = re.compile(
    r"\.(js|jsx|ts|tsx|html|css|scss|md|json|py|java|c|cpp|h|cs|go|rb|php|swift|kt|rs|toml|yaml|sh|txt)$"
)

_FUNCTION_RE = re.compile(r"(?:function|def|func|fn)\s+([a-zA-Z0-9_]+)\s*\(?")
_CLASS_RE = re.compile(r"class\s+([a-zA-Z0-9_]+)")
_VARIABLE_RE = re.compile(r"(?:const|let|var|val|final)\s+([a-zA-Z0-9_]+)\s*=")
_TODO_RE = re.compile(r"(?://|#|\*)\s*TODO[:\s](.*)")
_ARROW_FUNC_RE = re.compile(r"(?:const|let)\s+([a-zA-Z0-9_]+)\s*=\s*(?:async)?\s*\(.*?\)\s*=>")
_PY_METHOD_RE = re.compile(r"def\s+([a-zA-Z0-9_]+)\(self")


@dataclass(frozen=True)
class IndexerConfig:
    excludes: list[str]


def load_indexer_config(state_dir: str) -> IndexerConfig:
    raw = read_yaml(os.path.join(state_dir, "indexer.yaml"))
    excludes = raw.get("excludes")
    if not isinstance(excludes, list) or not excludes:
        excludes = list(DEFAULT_EXCLUDES)
    return IndexerConfig(excludes=[str(x) for x in excludes])


def parse_file_content(content: str, path: str) -> list[dict[str, str]]:
    seen: set[tuple[str, str, str]] = set()
    out: list[dict[str, str]] = []

    def add(kind: str, key: str, value: str) -> None:
        v = str(value or "").strip()
        if not v or (kind, key, v) in seen:
            return
        seen.add((kind, key, v))
        out.append({"type": kind, key: v})

    for m in _FUNCTION_RE.finditer(content):
        add("function", "name", m.group(1))
    for m in _CLASS_RE.finditer(content):
        add("class", "name", m.group(1))
    for m in _VARIABLE_RE.finditer(content):
        add("variable", "name", m.group(1))
    for m in _TODO_RE.finditer(content):
        add("todo", "content", m.group(1))

    ext = path.rsplit(".", 1)[-1] if "." in path else ""
    if ext in ("js", "ts", "jsx", "tsx"):
        for m in _ARROW_FUNC_RE.finditer(content):
            add("function", "name", m.group(1))
    if ext == "py":
        for m in _PY_METHOD_RE.finditer(content):
            add("method", "name", m.group(1))

    add("file", "name", path.rsplit("/", 1)[-1])
    return out


def _ignored(path: str, patterns: list[str]) -> bool:
    """Match whole path segments: `build/` skips `build/x.py` and `src/build/y.py`, never `builder.py`.

    A single-segment pattern matches at any depth; `a/b` patterns are anchored at the root.
    A trailing slash limits the pattern to directories.
    """

    parts = path.split("/")
    for raw in patterns:
        pat = normalize_rel_path(raw).strip("/")
        if not pat:
            continue
        dir_only = str(raw).rstrip().endswith("/")
        if "/" in pat:
            if path.startswith(pat + "/") or (not dir_only and path == pat):
                return True
        elif pat in (parts[:-1] if dir_only else parts):
            return True
    return False


def build_index(
    workspace: WorkspaceGateway,
    existing: dict[str, Any] | None = None,
    last_index_ts: int = 0,
    ignore: list[str] | None = None,
) -> tuple[dict[str, Any], dict[str, int]]:
    """Walk the workspace and (re)index changed text files.

    Files whose mtime is not newer than `last_index_ts` and that are already indexed are
    skipped. Index entries for files no longer present are dropped.
    """

    index: dict[str, Any] = {"files": dict((existing or {}).get("files") or {})}
    stats = {"indexed": 0, "skipped": 0, "deleted": 0}
    patterns = list(ignore or [])
    present: set[str] = set()

    for path in workspace.iter_files():
        if _ignored(path, patterns):
            continue
        present.add(path)
        if not INDEXED_EXTENSIONS.search(path.rsplit("/", 1)[-1]):
            continue
        try:
            if last_index_ts and path in index["files"] and workspace.mtime_ms(path) <= last_index_ts:
                stats["skipped"] += 1
                continue
            content = workspace.read_file(path)
        except (OSError, ValueError, WorkspaceError):
            continue
        index["files"][path] = parse_file_content(content, path)
        stats["indexed"] += 1

    for path in list(index["files"]):
        if path not in present:
            del index["files"][path]
            stats["deleted"] += 1
    return index, stats


def query_index(index: dict[str, Any], query: str) -> list[dict[str, str]]:
    q = str(query or "").lower()
    results: list[dict[str, str]] = []
    for path, defs in ((index or {}).get("files") or {}).items():
        for d in defs or []:
            name = str(d.get("name") or "")
            content = str(d.get("content") or "")
            if (name and q in name.lower()) or (content and q in content.lower()):
                results.append({"file": path, "type": str(d.get("type") or ""), "name": name or content})
    return results


def index_path(state_dir: str) -> str:
    return os.path.join(state_dir, "code_index.json")


def load_index(state_dir: str) -> tuple[dict[str, Any] | None, int]:
    raw = read_json(index_path(state_dir))
    if not raw.get("files") and "last_index_ts" not in raw:
        return None, 0
    return {"files": dict(raw.get("files") or {})}, int(raw.get("last_index_ts") or 0)


def save_index(state_dir: str, index: dict[str, Any], ts: int) -> None:
    write_json(index_path(state_dir), {"files": index.get("files") or {}, "last_index_ts": int(ts)})
