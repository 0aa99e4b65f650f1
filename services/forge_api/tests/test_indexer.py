from __future__ import annotations

import os

from services.forge_api.app.indexer import (
    build_index,
    load_index,
    load_indexer_config,
    parse_file_content,
    query_index,
    save_index,
)
from services.forge_api.app.workspace import LocalWorkspace


def test_parse_python_and_js_definitions() -> None:
    py = "class Foo:\n    def bar(self):\n        pass\n\ndef baz():\n    # TODO: handle errors\n    x = 1\n"
    entries = parse_file_content(py, "pkg/mod.py")
    assert {"type": "class", "name": "Foo"} in entries
    assert {"type": "function", "name": "baz"} in entries
    assert {"type": "method", "name": "bar"} in entries
    assert {"type": "todo", "content": "handle errors"} in entries
    assert entries[-1] == {"type": "file", "name": "mod.py"}

    js = "const add = (a, b) => a + b;\nlet total = 0;\n"
    js_entries = parse_file_content(js, "src/util.js")
    assert {"type": "function", "name": "add"} in js_entries
    assert {"type": "variable", "name": "total"} in js_entries


def test_incremental_build_skips_unchanged_and_drops_deleted(tmp_path) -> None:
    ws = LocalWorkspace(str(tmp_path))
    ws.write_file("a.py", "def alpha():\n    pass\n")
    ws.write_file("b.py", "def beta():\n    pass\n")
    ws.write_file("image.bin", "\x00\x01")

    index, stats = build_index(ws)
    assert stats == {"indexed": 2, "skipped": 0, "deleted": 0}
    assert sorted(index["files"]) == ["a.py", "b.py"]

    # Pretend the last index ran after every current mtime.
    last_ts = max(ws.mtime_ms("a.py"), ws.mtime_ms("b.py")) + 1000
    ws.delete("b.py")
    ws.write_file("c.py", "class Gamma:\n    pass\n")
    future = (last_ts + 5000) / 1000.0
    os.utime(ws.resolve("c.py"), (future, future))

    index2, stats2 = build_index(ws, index, last_ts)
    assert stats2 == {"indexed": 1, "skipped": 1, "deleted": 1}
    assert sorted(index2["files"]) == ["a.py", "c.py"]


def test_ignore_patterns_are_honored(tmp_path) -> None:
    ws = LocalWorkspace(str(tmp_path))
    ws.write_file("build/gen.py", "def generated():\n    pass\n")
    ws.write_file("src/app.py", "def app():\n    pass\n")
    index, _ = build_index(ws, ignore=["build/"])
    assert list(index["files"]) == ["src/app.py"]


def test_save_load_and_query(tmp_path) -> None:
    state_dir = str(tmp_path / ".forge")
    assert load_index(state_dir) == (None, 0)

    index = {"files": {"a.py": parse_file_content("def load_user():\n    pass\n", "a.py")}}
    save_index(state_dir, index, 1234)
    loaded, ts = load_index(state_dir)
    assert ts == 1234
    assert query_index(loaded, "USER") == [{"file": "a.py", "type": "function", "name": "load_user"}]


def test_indexer_config_reads_yaml_excludes(tmp_path) -> None:
    state_dir = tmp_path / ".forge"
    state_dir.mkdir()
    assert ".git/" in load_indexer_config(str(state_dir)).excludes
    (state_dir / "indexer.yaml").write_text("excludes:\n  - dist/\n  - vendor/\n", encoding="utf-8")
    assert load_indexer_config(str(state_dir)).excludes == ["dist/", "vendor/"]


def test_ignore_patterns_match_whole_segments(tmp_path) -> None:
    ws = LocalWorkspace(str(tmp_path))
    ws.write_file("builder.py", "def make():\n    pass\n")
    ws.write_file("build/gen.py", "def generated():\n    pass\n")
    ws.write_file("pkg/vendor/dep.js", "function dep() {}\n")
    ws.write_file("docs/api/ref.md", "# ref\n")
    ws.write_file("docs/apikeys.md", "# keys\n")

    index, _ = build_index(ws, ignore=["build/", "vendor/", "docs/api/"])
    assert sorted(index["files"]) == ["builder.py", "docs/apikeys.md"]
