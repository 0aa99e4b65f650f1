from __future__ import annotations

from dataclasses import dataclass, field
import os
import shutil
from typing import Any, Literal, Protocol

from .agent_runtime.errors import WorkspaceError


_BLOCKED_DIRS = (".git", "node_modules", "__pycache__", ".venv", ".forge")
SEARCH_MAX_RESULTS = 500
SEARCH_MAX_FILE_BYTES = 1_000_000


@dataclass
class TreeNode:
    type: Literal["file", "dir"]
    name: str
    path: str
    children: list["TreeNode"] = field(default_factory=list)


class WorkspaceGateway(Protocol):
    """Project-relative file operations. Implementations raise WorkspaceError on bad paths."""

    root: str

    def read_file(self, path: str) -> str: ...

    def write_file(self, path: str, content: str, *, create: bool = True) -> None: ...

    def exists(self, path: str) -> bool: ...

    def delete(self, path: str, *, recursive: bool = False) -> None: ...

    def rename(self, old_path: str, new_path: str) -> None: ...

    def create_dir(self, path: str) -> None: ...

    def list_tree(self) -> TreeNode: ...

    def search(self, term: str) -> list[dict[str, Any]]: ...

    def iter_files(self) -> list[str]: ...

    def mtime_ms(self, path: str) -> int: ...


def normalize_rel_path(rel_path: str) -> str:
    p = str(rel_path or "").strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.rstrip("/")


def safe_resolve(root: str, rel_path: str) -> str:
    """Resolve a project-relative path to an absolute one inside `root`."""

    raw = str(rel_path or "").strip().replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise WorkspaceError("invalid_path", raw)
    p = normalize_rel_path(raw)
    if (not p) or ("\0" in p) or p == ".." or p.startswith("../") or "/../" in p or p.endswith("/.."):
        raise WorkspaceError("invalid_path", raw)
    if p == ".git" or p.startswith(".git/") or "/.git/" in p or p.endswith("/.git"):
        raise WorkspaceError("blocked_git", p)

    root_abs = os.path.abspath(root)
    abs_path = os.path.abspath(os.path.join(root_abs, p))
    if abs_path != root_abs and not abs_path.startswith(root_abs + os.sep):
        raise WorkspaceError("outside_root", p)
    return abs_path


def is_blocked_for_tree(rel_path: str) -> bool:
    parts = normalize_rel_path(rel_path).split("/")
    return any(part in _BLOCKED_DIRS for part in parts)


def format_tree(node: TreeNode, indent: str = "") -> str:
    lines: list[str] = []
    for child in node.children:
        suffix = "/" if child.type == "dir" else ""
        lines.append(f"{indent}{child.name}{suffix}")
        if child.type == "dir" and child.children:
            lines.append(format_tree(child, indent + "  "))
    return "\n".join(line for line in lines if line)


class LocalWorkspace:
    """WorkspaceGateway over a directory on the local disk."""

    def __init__(self, root: str) -> None:
        root_abs = os.path.abspath(root)
        if not os.path.isdir(root_abs):
            raise WorkspaceError("not_a_directory", root_abs)
        self.root = root_abs

    def resolve(self, path: str) -> str:
        return safe_resolve(self.root, path)

    def read_file(self, path: str) -> str:
        abs_path = self.resolve(path)
        if not os.path.isfile(abs_path):
            raise WorkspaceError("not_found", normalize_rel_path(path))
        with open(abs_path, "r", encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    def write_file(self, path: str, content: str, *, create: bool = True) -> None:
        abs_path = self.resolve(path)
        if not create and not os.path.isfile(abs_path):
            raise WorkspaceError("not_found", normalize_rel_path(path))
        if os.path.isdir(abs_path):
            raise WorkspaceError("is_a_directory", normalize_rel_path(path))
        os.makedirs(os.path.dirname(abs_path), exist_ok=True)
        tmp = abs_path + ".tmp"
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            f.write(str(content or ""))
        os.replace(tmp, abs_path)

    def exists(self, path: str) -> bool:
        return os.path.exists(self.resolve(path))

    def delete(self, path: str, *, recursive: bool = False) -> None:
        abs_path = self.resolve(path)
        if abs_path == self.root:
            raise WorkspaceError("invalid_path", normalize_rel_path(path))
        if os.path.isdir(abs_path):
            if not recursive:
                raise WorkspaceError("is_a_directory", normalize_rel_path(path))
            shutil.rmtree(abs_path)
            return
        if not os.path.exists(abs_path):
            raise WorkspaceError("not_found", normalize_rel_path(path))
        os.remove(abs_path)

    def rename(self, old_path: str, new_path: str) -> None:
        src = self.resolve(old_path)
        dst = self.resolve(new_path)
        if not os.path.exists(src):
            raise WorkspaceError("not_found", normalize_rel_path(old_path))
        if os.path.exists(dst):
            raise WorkspaceError("already_exists", normalize_rel_path(new_path))
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        os.rename(src, dst)

    def create_dir(self, path: str) -> None:
        os.makedirs(self.resolve(path), exist_ok=True)

    def list_tree(self) -> TreeNode:
        return self._read_tree("")

    def _read_tree(self, rel: str) -> TreeNode:
        abs_dir = os.path.join(self.root, rel) if rel else self.root
        node = TreeNode(type="dir", name=os.path.basename(rel) if rel else ".", path=rel or ".")
        try:
            entries = list(os.scandir(abs_dir))
        except OSError:
            return node
        children: list[TreeNode] = []
        for e in entries:
            child_rel = f"{rel}/{e.name}" if rel else e.name
            if e.is_dir(follow_symlinks=False):
                if is_blocked_for_tree(child_rel):
                    continue
                children.append(self._read_tree(child_rel))
            else:
                children.append(TreeNode(type="file", name=e.name, path=child_rel))
        # Stable sort: dirs first then name.
        children.sort(key=lambda c: (0 if c.type == "dir" else 1, c.name))
        node.children = children
        return node

    def iter_files(self) -> list[str]:
        out: list[str] = []

        def walk(node: TreeNode) -> None:
            for child in node.children:
                if child.type == "dir":
                    walk(child)
                else:
                    out.append(child.path)

        walk(self.list_tree())
        return out

    def mtime_ms(self, path: str) -> int:
        return int(os.path.getmtime(self.resolve(path)) * 1000)

    def search(self, term: str) -> list[dict[str, Any]]:
        needle = str(term or "")
        if not needle:
            return []
        results: list[dict[str, Any]] = []
        for rel in self.iter_files():
            abs_path = os.path.join(self.root, rel)
            try:
                if os.path.getsize(abs_path) > SEARCH_MAX_FILE_BYTES:
                    continue
                with open(abs_path, "r", encoding="utf-8") as f:
                    text = f.read()
            except (OSError, UnicodeDecodeError):
                continue
            for i, line in enumerate(text.splitlines(), start=1):
                if needle in line:
                    results.append({"file": rel, "line": i, "content": line.strip()[:500]})
                    if len(results) >= SEARCH_MAX_RESULTS:
                        return results
        return results
