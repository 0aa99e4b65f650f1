from __future__ import annotations

import ast
import json
import re
from typing import Any

import yaml

from ..editor import language_for
from ..indexer import build_index, load_index, load_indexer_config, query_index, save_index
from ..settings import state_dir_for
from ..terminal import git_file_history, run_terminal_command
from ..web import DuckDuckGoSearcher, read_url
from ..workspace import WorkspaceGateway, format_tree, normalize_rel_path
from .diff_patch import create_and_apply
from .registry import ToolContext, ToolDescriptor, ToolRegistry
from .state import now_ms


READ_FILE_MAX_CHARS = 30000

_FENCE_RE = re.compile(r"^```(?:\w+)?\n([\s\S]+)\n```$")


def strip_markdown_code_block(content: Any) -> str:
    text = str(content or "")
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def fence(path: str, content: str) -> str:
    return f"```{language_for(path)}\n{content}\n```"


def _ws(ctx: ToolContext) -> WorkspaceGateway:
    # requires_workspace tools are never dispatched without one.
    assert ctx.workspace is not None
    return ctx.workspace


def _path_arg(args: dict[str, Any], key: str) -> str:
    p = normalize_rel_path(str(args.get(key) or ""))
    if not p:
        raise ValueError(f"Missing required parameter '{key}'.")
    return p


# Read-only workspace tools


def tool_get_project_structure(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"structure": format_tree(_ws(ctx).list_tree())}


def tool_read_file(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    content = _ws(ctx).read_file(path)
    ctx.editor.open(path, content, focus=False)
    if len(content) > READ_FILE_MAX_CHARS:
        content = content[:READ_FILE_MAX_CHARS] + "\n\n... (file content truncated because it was too long)"
    return {"content": fence(path, content)}


def tool_search_code(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    term = str(args.get("search_term") or "")
    if not term:
        raise ValueError("Missing required parameter 'search_term'.")
    return {"results": _ws(ctx).search(term)}


def tool_build_or_update_codebase_index(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    ws = _ws(ctx)
    state_dir = state_dir_for(ws.root)
    existing, last_ts = load_index(state_dir)
    started = now_ms()
    index, stats = build_index(ws, existing, last_ts, load_indexer_config(state_dir).excludes)
    save_index(state_dir, index, started)
    return {
        "message": (
            f"Codebase index updated. {stats['indexed']} files indexed, "
            f"{stats['skipped']} unchanged, {stats['deleted']} removed."
        ),
        "stats": stats,
    }


def tool_query_codebase(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    index, _ = load_index(state_dir_for(_ws(ctx).root))
    if index is None:
        raise RuntimeError("No codebase index. Please run 'build_or_update_codebase_index'.")
    return {"results": query_index(index, str(args.get("query") or ""))}


def _analyze_python(content: str) -> dict[str, Any]:
    tree = ast.parse(content)
    analysis: dict[str, list[dict[str, Any]]] = {"functions": [], "classes": [], "imports": []}
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            analysis["functions"].append({"name": node.name, "start": node.lineno, "end": getattr(node, "end_lineno", node.lineno)})
        elif isinstance(node, ast.ClassDef):
            analysis["classes"].append({"name": node.name, "start": node.lineno, "end": getattr(node, "end_lineno", node.lineno)})
        elif isinstance(node, ast.Import):
            for alias in node.names:
                analysis["imports"].append({"source": alias.name, "specifiers": [alias.asname or alias.name]})
        elif isinstance(node, ast.ImportFrom):
            analysis["imports"].append(
                {"source": "." * node.level + (node.module or ""), "specifiers": [a.asname or a.name for a in node.names]}
            )
    for key in analysis:
        analysis[key].sort(key=lambda item: int(item.get("start") or 0))
    return analysis


def tool_analyze_code(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    if not path.endswith(".py"):
        raise ValueError("This tool can only analyze .py files. Use read_file for others.")
    return {"analysis": _analyze_python(_ws(ctx).read_file(path))}


def tool_get_file_history(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    ws = _ws(ctx)
    if not ws.exists(path):
        raise FileNotFoundError(f"File not found: {path}")
    return {"history": git_file_history(path, ws.root)}


def tool_run_terminal_command(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"output": run_terminal_command(str(args.get("command") or ""), _ws(ctx).root)}


# Mutating workspace tools


def tool_create_file(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    content = strip_markdown_code_block(args.get("content"))
    _ws(ctx).write_file(path, content)
    ctx.editor.open(path, content, focus=False)
    return {"message": f"File '{path}' created successfully."}


def tool_rewrite_file(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    target = strip_markdown_code_block(args.get("content"))
    ws = _ws(ctx)
    original = ws.read_file(path)
    result = create_and_apply(original, target, ctx.settings.rewrite_threshold)
    ws.write_file(path, result.content, create=False)
    ctx.editor.open(path, result.content, focus=False)
    return {
        "message": f"File '{path}' rewritten successfully.",
        "method": result.method,
        "hunks": result.hunks,
    }


def tool_insert_content(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    try:
        line_number = int(args.get("line_number") or 1)
    except (TypeError, ValueError):
        raise ValueError("Parameter 'line_number' must be an integer.")
    content = strip_markdown_code_block(args.get("content"))
    ws = _ws(ctx)
    lines = ws.read_file(path).split("\n")
    lines.insert(max(0, line_number - 1), content)
    updated = "\n".join(lines)
    ws.write_file(path, updated, create=False)
    ctx.editor.open(path, updated, focus=False)
    return {"message": f"Content inserted into '{path}' at line {line_number}."}


def tool_delete_file(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    _ws(ctx).delete(path)
    if ctx.editor.is_open(path):
        ctx.editor.close(path)
    return {"message": f"File '{path}' deleted successfully."}


def tool_rename_file(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    old_path = _path_arg(args, "old_path")
    new_path = _path_arg(args, "new_path")
    _ws(ctx).rename(old_path, new_path)
    ctx.editor.rename(old_path, new_path)
    return {"message": f"File '{old_path}' renamed to '{new_path}' successfully."}


def tool_create_folder(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "folder_path")
    _ws(ctx).create_dir(path)
    return {"message": f"Folder '{path}' created successfully."}


def tool_delete_folder(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "folder_path")
    _ws(ctx).delete(path, recursive=True)
    ctx.editor.close_under(path)
    return {"message": f"Folder '{path}' deleted successfully."}


def tool_rename_folder(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    old_path = _path_arg(args, "old_folder_path")
    new_path = _path_arg(args, "new_folder_path")
    _ws(ctx).rename(old_path, new_path)
    ctx.editor.rename(old_path, new_path)
    return {"message": f"Folder '{old_path}' renamed to '{new_path}' successfully."}


def format_source(path: str, content: str) -> str:
    """Reformat JSON (2-space indent) or YAML (block style, key order kept)."""

    lower = path.lower()
    if lower.endswith(".json"):
        return json.dumps(json.loads(content), indent=2, ensure_ascii=False) + "\n"
    if lower.endswith((".yaml", ".yml")):
        # safe_dump drops comments.
        if any(line.lstrip().startswith("#") for line in content.splitlines()):
            raise ValueError(f"'{path}' contains comments; formatting it would remove them.")
        docs = list(yaml.safe_load_all(content))
        return yaml.safe_dump_all(docs, sort_keys=False, allow_unicode=True, default_flow_style=False)
    raise ValueError(f"No formatter is available for '{path}'. Supported: .json, .yaml, .yml.")


def tool_format_code(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    path = _path_arg(args, "filename")
    ws = _ws(ctx)
    buffered = ctx.editor.content(path)
    original = buffered if buffered is not None else ws.read_file(path)
    formatted = format_source(path, original)
    if formatted == original:
        return {"message": f"'{path}' is already formatted.", "changed": False}
    ws.write_file(path, formatted, create=False)
    ctx.editor.open(path, formatted, focus=False)
    return {"message": f"Formatted '{path}'.", "changed": True}


# Web and editor tools (no workspace required)


async def tool_read_url(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    return await read_url(str(args.get("url") or ""), client=ctx.extras.get("http_client"))


async def tool_duckduckgo_search(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    searcher = ctx.extras.get("searcher")
    if searcher is None:
        searcher = DuckDuckGoSearcher(client=ctx.extras.get("http_client"))
        ctx.extras["searcher"] = searcher
    return {"results": await searcher.search(str(args.get("query") or ""))}


def tool_get_open_file_content(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    active = ctx.editor.active()
    if active is None:
        raise RuntimeError("No file is currently open in the editor.")
    path, content = active
    return {"filename": path, "content": fence(path, content)}


def tool_get_selected_text(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    return {"selected_text": ctx.editor.selected_text()}


def tool_replace_selected_text(ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
    ctx.editor.replace_selection(strip_markdown_code_block(args.get("new_text")))
    return {"message": "Replaced the selected text."}


def _params(properties: dict[str, str], required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {k: {"type": v} for k, v in properties.items()},
        "required": list(required if required is not None else properties.keys()),
        "additionalProperties": False,
    }


_NO_ROOT = "Do NOT include the root directory name in the path."

# name, handler, requires_workspace, mutates_state, needs_diagnostics, description, parameters
_TOOL_TABLE: list[tuple[str, Any, bool, bool, bool, str, dict[str, Any]]] = [
    (
        "get_project_structure",
        tool_get_project_structure,
        True,
        False,
        False,
        "Gets the entire file and folder structure of the project. Use it before reading or creating files to get correct paths.",
        _params({}),
    ),
    (
        "read_file",
        tool_read_file,
        True,
        False,
        False,
        f"Reads a file's content. {_NO_ROOT} Example: to read 'src/app.py', the path is 'src/app.py'.",
        _params({"filename": "string"}),
    ),
    (
        "search_code",
        tool_search_code,
        True,
        False,
        False,
        "Searches for a specific string in all files in the project (like grep).",
        _params({"search_term": "string"}),
    ),
    (
        "build_or_update_codebase_index",
        tool_build_or_update_codebase_index,
        True,
        False,
        False,
        "Scans the codebase to build or refresh a searchable symbol index. Only changed files are re-read.",
        _params({}),
    ),
    (
        "query_codebase",
        tool_query_codebase,
        True,
        False,
        False,
        "Searches the pre-built codebase index for functions, classes, variables, methods, TODOs and file names.",
        _params({"query": "string"}),
    ),
    (
        "analyze_code",
        tool_analyze_code,
        True,
        False,
        False,
        f"Analyzes a Python file's structure (functions, classes, imports). {_NO_ROOT}",
        _params({"filename": "string"}),
    ),
    (
        "get_file_history",
        tool_get_file_history,
        True,
        False,
        False,
        f"Gets a file's git history. {_NO_ROOT}",
        _params({"filename": "string"}),
    ),
    (
        "run_terminal_command",
        tool_run_terminal_command,
        True,
        False,
        False,
        "Executes a shell command in the project folder and returns the output.",
        _params({"command": "string"}),
    ),
    (
        "create_file",
        tool_create_file,
        True,
        True,
        False,
        f"Creates a new file. {_NO_ROOT} Example: to create 'app.py' in the root, the path is 'app.py'.",
        _params({"filename": "string", "content": "string"}),
    ),
    (
        "rewrite_file",
        tool_rewrite_file,
        True,
        True,
        True,
        f"Rewrites a file with new content. {_NO_ROOT}",
        _params({"filename": "string", "content": "string"}),
    ),
    (
        "insert_content",
        tool_insert_content,
        True,
        True,
        True,
        f"Inserts content into a file before the given 1-based line number. {_NO_ROOT}",
        {
            "type": "object",
            "properties": {
                "filename": {"type": "string"},
                "line_number": {"type": "integer"},
                "content": {"type": "string"},
            },
            "required": ["filename", "line_number", "content"],
            "additionalProperties": False,
        },
    ),
    (
        "delete_file",
        tool_delete_file,
        True,
        True,
        False,
        f"Deletes a file. {_NO_ROOT}",
        _params({"filename": "string"}),
    ),
    (
        "rename_file",
        tool_rename_file,
        True,
        True,
        False,
        f"Renames a file. {_NO_ROOT}",
        _params({"old_path": "string", "new_path": "string"}),
    ),
    (
        "create_folder",
        tool_create_folder,
        True,
        True,
        False,
        f"Creates a new folder. {_NO_ROOT}",
        _params({"folder_path": "string"}),
    ),
    (
        "delete_folder",
        tool_delete_folder,
        True,
        True,
        False,
        f"Deletes a folder and all its contents. {_NO_ROOT}",
        _params({"folder_path": "string"}),
    ),
    (
        "rename_folder",
        tool_rename_folder,
        True,
        True,
        False,
        f"Renames a folder. {_NO_ROOT}",
        _params({"old_folder_path": "string", "new_folder_path": "string"}),
    ),
    (
        "format_code",
        tool_format_code,
        True,
        True,
        False,
        f"Reformats a JSON or YAML file in place. {_NO_ROOT}",
        _params({"filename": "string"}),
    ),
    (
        "read_url",
        tool_read_url,
        False,
        False,
        False,
        'Reads and extracts the main content and all links from a URL. Returns {"content", "links"}.',
        _params({"url": "string"}),
    ),
    (
        "duckduckgo_search",
        tool_duckduckgo_search,
        False,
        False,
        False,
        "Performs a web search using DuckDuckGo and returns the results.",
        _params({"query": "string"}),
    ),
    (
        "get_open_file_content",
        tool_get_open_file_content,
        False,
        False,
        False,
        "Gets the content of the currently open file in the editor.",
        _params({}),
    ),
    (
        "get_selected_text",
        tool_get_selected_text,
        False,
        False,
        False,
        "Gets the text currently selected by the user in the editor.",
        _params({}),
    ),
    (
        "replace_selected_text",
        tool_replace_selected_text,
        False,
        False,
        True,
        "Replaces the currently selected text in the editor with new text.",
        _params({"new_text": "string"}),
    ),
]

# Tools offered to the model in plan mode (research only).
PLAN_MODE_TOOLS = {"read_url", "duckduckgo_search", "get_open_file_content", "get_selected_text"}


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for name, handler, requires_ws, mutates, needs_diag, description, parameters in _TOOL_TABLE:
        registry.register(
            ToolDescriptor(
                name=name,
                handler=handler,
                requires_workspace=requires_ws,
                mutates_state=mutates,
                needs_diagnostics=needs_diag,
                description=description,
                parameters=parameters,
            )
        )
    return registry.freeze()


def tool_schemas_for_mode(registry: ToolRegistry, mode: str) -> list[dict[str, Any]]:
    if mode == "plan":
        return registry.schemas(include=lambda d: d.name in PLAN_MODE_TOOLS)
    return registry.schemas()
