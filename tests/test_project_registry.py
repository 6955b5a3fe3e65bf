from __future__ import annotations

import json
from pathlib import Path

import pytest

from ama_daemon.core.errors import UserError
from ama_daemon.projects import ProjectRegistry


def test_register_persists_and_reloads(tmp_path: Path) -> None:
    store = tmp_path / "projects.json"
    workdir = tmp_path / "my-app"
    workdir.mkdir()

    registry = ProjectRegistry(store)
    project = registry.register("p1", str(workdir / "." / "sub" / ".."))

    assert project.cwd == str(workdir)
    assert project.name == "my-app"
    assert project.active is True

    reloaded = ProjectRegistry(store)
    assert reloaded.get_cwd("p1") == str(workdir)
    assert [p.id for p in reloaded.list()] == ["p1"]
    assert json.loads(store.read_text(encoding="utf-8"))[0]["id"] == "p1"


def test_register_overwrites_and_unregister(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path / "projects.json")
    registry.register("p1", str(tmp_path / "a"), "first")
    registry.register("p1", str(tmp_path / "b"))

    assert registry.get_cwd("p1") == str(tmp_path / "b")
    assert len(registry.list()) == 1

    assert registry.unregister("p1") is True
    assert registry.unregister("p1") is False
    assert registry.get("p1") is None


def test_register_rejects_empty_values(tmp_path: Path) -> None:
    registry = ProjectRegistry(tmp_path / "projects.json")

    with pytest.raises(UserError) as excinfo:
        registry.register("", str(tmp_path))
    assert excinfo.value.code == "VALIDATION_ERROR"

    with pytest.raises(UserError):
        registry.register("p1", "  ")


def test_corrupt_file_is_backed_up(tmp_path: Path) -> None:
    store = tmp_path / "projects.json"
    store.write_text("{not json", encoding="utf-8")

    registry = ProjectRegistry(store)

    assert registry.list() == []
    assert not store.exists()
    backups = list(tmp_path.glob("projects.json.backup.*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"


def test_non_array_file_is_backed_up(tmp_path: Path) -> None:
    store = tmp_path / "projects.json"
    store.write_text('{"id": "p1"}', encoding="utf-8")

    assert ProjectRegistry(store).list() == []
    assert len(list(tmp_path.glob("projects.json.backup.*"))) == 1


def test_malformed_entries_are_skipped(tmp_path: Path) -> None:
    store = tmp_path / "projects.json"
    store.write_text(
        json.dumps([{"id": "ok", "cwd": "/work/ok"}, {"id": "missing-cwd"}, "junk"]),
        encoding="utf-8",
    )

    registry = ProjectRegistry(store)

    assert [p.id for p in registry.list()] == ["ok"]
    assert store.exists()


def test_is_path_allowed(tmp_path: Path) -> None:
    workdir = tmp_path / "proj"
    workdir.mkdir()
    registry = ProjectRegistry(tmp_path / "projects.json")
    registry.register("p1", str(workdir))

    assert registry.is_path_allowed("p1", "src/file.py") is True
    assert registry.is_path_allowed("p1", "../elsewhere") is False
    assert registry.is_path_allowed("unknown", "src/file.py") is False
