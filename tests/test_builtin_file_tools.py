from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

from ama_daemon.config.loader import DaemonConfig, load_config, load_config_dicts
from ama_daemon.tools import build_tool_registry
from ama_daemon.tools.protocol import ToolResponse


def _run(
    tool: str,
    args: Dict[str, Any],
    project_cwd: Optional[Path],
    *,
    config: Optional[DaemonConfig] = None,
) -> ToolResponse:
    registry = build_tool_registry(config or load_config(env={}))
    return asyncio.run(registry.execute(tool, args, str(project_cwd) if project_cwd is not None else None))


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "notes.txt").write_text("a\nb\nc", encoding="utf-8")
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")
    return root


def test_read_file_entire(tmp_path: Path) -> None:
    root = _project(tmp_path)

    resp = _run("readFile", {"relative_file_path": "notes.txt"}, root)

    assert resp.success is True
    assert resp.data is not None
    assert resp.data["content"] == "a\nb\nc"
    assert resp.data["totalLines"] == 3
    assert resp.data["truncated"] is False
    assert resp.metadata.tool == "readFile"


def test_read_file_line_range(tmp_path: Path) -> None:
    root = _project(tmp_path)

    resp = _run(
        "readFile",
        {
            "relative_file_path": "notes.txt",
            "should_read_entire_file": False,
            "start_line_one_indexed": 2,
            "end_line_one_indexed": 10,
        },
        root,
    )

    assert resp.success is True
    assert resp.data is not None
    assert resp.data["content"] == "b\nc"


def test_read_file_range_validation(tmp_path: Path) -> None:
    root = _project(tmp_path)

    missing = _run("readFile", {"relative_file_path": "notes.txt", "should_read_entire_file": False}, root)
    assert missing.error is not None and missing.error.code == "MISSING_LINE_RANGE"

    inverted = _run(
        "readFile",
        {
            "relative_file_path": "notes.txt",
            "should_read_entire_file": False,
            "start_line_one_indexed": 3,
            "end_line_one_indexed": 1,
        },
        root,
    )
    assert inverted.error is not None and inverted.error.code == "INVALID_LINE_RANGE"

    past_end = _run(
        "readFile",
        {
            "relative_file_path": "notes.txt",
            "should_read_entire_file": False,
            "start_line_one_indexed": 9,
            "end_line_one_indexed": 12,
        },
        root,
    )
    assert past_end.error is not None and past_end.error.code == "INVALID_LINE_RANGE"


def test_read_file_errors(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "sub").mkdir()

    outside = _run("readFile", {"relative_file_path": "../secret.txt"}, root)
    assert outside.success is False
    assert outside.error is not None and outside.error.code == "ACCESS_DENIED"
    # 失败时 handler 的结构化结果仍保留在 data 中
    assert outside.data is not None and outside.data["error"] == "ACCESS_DENIED"

    missing = _run("readFile", {"relative_file_path": "nope.txt"}, root)
    assert missing.error is not None and missing.error.code == "FILE_NOT_FOUND"

    directory = _run("readFile", {"relative_file_path": "sub"}, root)
    assert directory.error is not None and directory.error.code == "NOT_A_FILE"


def test_read_file_size_and_line_caps(tmp_path: Path) -> None:
    root = _project(tmp_path)

    too_large = _run(
        "readFile",
        {"relative_file_path": "notes.txt"},
        root,
        config=load_config_dicts([{"read_file": {"max_file_bytes": 2}}]),
    )
    assert too_large.error is not None and too_large.error.code == "FILE_TOO_LARGE"

    capped = _run(
        "readFile",
        {"relative_file_path": "notes.txt"},
        root,
        config=load_config_dicts([{"read_file": {"max_lines": 2}}]),
    )
    assert capped.data is not None
    assert capped.data["content"] == "a\nb"
    assert capped.data["truncated"] is True


def test_edit_file_create_modify_and_noop(tmp_path: Path) -> None:
    root = _project(tmp_path)

    created = _run("editFile", {"target_file": "pkg/mod.py", "content": "x = 1\n"}, root)
    assert created.success is True
    assert created.data is not None
    assert created.data["isNewFile"] is True
    assert created.data["linesAdded"] == 1
    assert (root / "pkg" / "mod.py").read_text(encoding="utf-8") == "x = 1\n"

    same = _run("editFile", {"target_file": "pkg/mod.py", "content": "x = 1\n"}, root)
    assert same.data is not None
    assert same.data["noChange"] is True

    modified = _run("editFile", {"target_file": "pkg/mod.py", "content": "x = 2\ny = 3\n"}, root)
    assert modified.data is not None
    assert modified.data["isNewFile"] is False
    assert modified.data["old_string"] == "x = 1\n"
    assert (modified.data["linesAdded"], modified.data["linesRemoved"]) == (2, 1)
    assert modified.data["beforeHash"] != modified.data["afterHash"]


def test_edit_file_requires_project_context(tmp_path: Path) -> None:
    resp = _run("editFile", {"target_file": str(tmp_path / "x.txt"), "content": "x"}, None)

    assert resp.success is False
    assert resp.error is not None and resp.error.code == "ACCESS_DENIED"
    assert not (tmp_path / "x.txt").exists()


def test_edit_file_outside_project_is_denied(tmp_path: Path) -> None:
    root = _project(tmp_path)

    resp = _run("editFile", {"target_file": "../secret.txt", "content": "pwned"}, root)

    assert resp.error is not None and resp.error.code == "ACCESS_DENIED"
    assert (tmp_path / "secret.txt").read_text(encoding="utf-8") == "nope"


def test_string_replace_fuzzy_match(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "app.py").write_text("def f():\n    return 1\n", encoding="utf-8")

    resp = _run(
        "stringReplace",
        {"file_path": "app.py", "old_string": "def f():\nreturn 1", "new_string": "def f():\n    return 2"},
        root,
    )

    assert resp.success is True
    assert resp.data is not None
    assert resp.data["old_string"] == "def f():\n    return 1"
    assert resp.data["strategy"] == "line_trimmed"
    assert (root / "app.py").read_text(encoding="utf-8") == "def f():\n    return 2\n"


def test_apply_patch_is_an_alias(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "t.txt").write_text("foo bar foo", encoding="utf-8")

    ambiguous = _run("applyPatch", {"file_path": "t.txt", "old_string": "foo", "new_string": "baz"}, root)
    assert ambiguous.error is not None and ambiguous.error.code == "STRING_NOT_UNIQUE"
    assert (root / "t.txt").read_text(encoding="utf-8") == "foo bar foo"

    replaced = _run(
        "applyPatch",
        {"file_path": "t.txt", "old_string": "foo", "new_string": "baz", "replaceAll": True},
        root,
    )
    assert replaced.success is True
    assert (root / "t.txt").read_text(encoding="utf-8") == "baz bar baz"


def test_string_replace_preserves_crlf_line_endings(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "win.txt").write_bytes(b"alpha\r\nbeta\r\ngamma\r\n")

    resp = _run("stringReplace", {"file_path": "win.txt", "old_string": "beta", "new_string": "BETA"}, root)

    assert resp.success is True
    assert (root / "win.txt").read_bytes() == b"alpha\r\nBETA\r\ngamma\r\n"

    multiline = _run(
        "applyPatch",
        {"file_path": "win.txt", "old_string": "alpha\r\nBETA", "new_string": "alpha\r\nbeta"},
        root,
    )
    assert multiline.success is True
    assert (root / "win.txt").read_bytes() == b"alpha\r\nbeta\r\ngamma\r\n"


def test_string_replace_errors_and_new_file(tmp_path: Path) -> None:
    root = _project(tmp_path)

    identical = _run("stringReplace", {"file_path": "notes.txt", "old_string": "a", "new_string": "a"}, root)
    assert identical.error is not None and identical.error.code == "STRINGS_IDENTICAL"

    not_found = _run("stringReplace", {"file_path": "notes.txt", "old_string": "zzz", "new_string": "y"}, root)
    assert not_found.error is not None and not_found.error.code == "STRING_NOT_FOUND"

    missing = _run("stringReplace", {"file_path": "ghost.txt", "old_string": "x", "new_string": "y"}, root)
    assert missing.error is not None and missing.error.code == "FILE_NOT_FOUND"

    created = _run("stringReplace", {"file_path": "fresh/new.txt", "old_string": "", "new_string": "hello\n"}, root)
    assert created.data is not None and created.data["isNewFile"] is True
    assert (root / "fresh" / "new.txt").read_text(encoding="utf-8") == "hello\n"


def test_delete_file(tmp_path: Path) -> None:
    root = _project(tmp_path)
    (root / "dir").mkdir()

    deleted = _run("deleteFile", {"path": "notes.txt"}, root)
    assert deleted.success is True
    assert deleted.data is not None and deleted.data["content"] == "a\nb\nc"
    assert not (root / "notes.txt").exists()

    again = _run("deleteFile", {"path": "notes.txt"}, root)
    assert again.error is not None and again.error.code == "FILE_NOT_FOUND"

    directory = _run("deleteFile", {"path": "dir"}, root)
    assert directory.error is not None and directory.error.code == "NOT_A_FILE"
    assert (root / "dir").is_dir()

    outside = _run("deleteFile", {"path": "../secret.txt"}, root)
    assert outside.error is not None and outside.error.code == "ACCESS_DENIED"
    assert (tmp_path / "secret.txt").exists()
