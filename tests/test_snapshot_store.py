from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Tuple

import pytest

from ama_daemon.config.loader import load_config_dicts
from ama_daemon.daemon.app import build_app
from ama_daemon.daemon.credentials import StaticCredentialProvider
from ama_daemon.projects import ProjectRegistry
from ama_daemon.snapshot import SnapshotStore

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not available")


def _setup(tmp_path: Path) -> Tuple[SnapshotStore, Path]:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "a.txt").write_text("one\n", encoding="utf-8")
    (root / "src" / "b.txt").write_text("keep\n", encoding="utf-8")
    registry = ProjectRegistry(tmp_path / "data" / "projects.json")
    registry.register("p1", str(root))
    return SnapshotStore(registry, tmp_path / "data" / "snapshot"), root


def test_track_patch_diff_and_restore(tmp_path: Path) -> None:
    store, root = _setup(tmp_path)

    async def _main() -> None:
        first = await store.track("p1")
        assert first is not None
        assert (tmp_path / "data" / "snapshot" / "p1" / "HEAD").exists()

        # 未变化时 tree hash 稳定
        assert await store.track("p1") == first

        (root / "a.txt").write_text("two\n", encoding="utf-8")
        (root / "new.txt").write_text("fresh\n", encoding="utf-8")

        patch = await store.patch("p1", first)
        assert patch.hash == first
        assert sorted(patch.files) == sorted([str(root / "a.txt"), str(root / "new.txt")])

        diff = await store.diff("p1", first)
        assert "a.txt" in diff
        assert "+two" in diff

        second = await store.track("p1")
        assert second is not None and second != first
        changes = {d.file: d for d in await store.diff_full("p1", first, second)}
        assert set(changes) == {"a.txt", "new.txt"}
        assert (changes["a.txt"].before, changes["a.txt"].after) == ("one\n", "two\n")
        assert (changes["a.txt"].additions, changes["a.txt"].deletions) == (1, 1)
        assert changes["new.txt"].before == ""

        assert await store.restore("p1", first) is True
        assert (root / "a.txt").read_text(encoding="utf-8") == "one\n"
        assert not (root / "new.txt").exists()
        assert (root / "src" / "b.txt").read_text(encoding="utf-8") == "keep\n"

        # 再次 restore 不改变结果
        assert await store.restore("p1", first) is True
        assert await store.track("p1") == first

    asyncio.run(_main())


def test_revert_checks_out_or_deletes_files(tmp_path: Path) -> None:
    store, root = _setup(tmp_path)

    async def _main() -> None:
        base = await store.track("p1")
        assert base is not None
        (root / "a.txt").write_text("changed\n", encoding="utf-8")
        (root / "created.txt").write_text("temp\n", encoding="utf-8")

        patch = await store.patch("p1", base)
        assert await store.revert("p1", [patch, patch]) is True

        assert (root / "a.txt").read_text(encoding="utf-8") == "one\n"
        assert not (root / "created.txt").exists()

    asyncio.run(_main())


def test_failures_degrade_instead_of_raising(tmp_path: Path) -> None:
    store, _ = _setup(tmp_path)

    async def _main() -> None:
        assert await store.track("ghost") is None
        assert await store.track("../escape") is None
        assert await store.restore("p1", "--help") is False
        assert (await store.patch("p1", "not-a-hash")).files == []
        assert await store.diff("p1", "zzzz") == ""
        assert await store.diff_full("p1", "abcd", "-x") == []

    asyncio.run(_main())


def test_snapshot_rpc_methods(tmp_path: Path) -> None:
    config = load_config_dicts([{"paths": {"data_dir": str(tmp_path / "data")}}])
    app = build_app(config, credentials=StaticCredentialProvider("token"))
    root = tmp_path / "ws"
    root.mkdir()
    (root / "main.py").write_text("print(1)\n", encoding="utf-8")
    app.projects.register("p1", str(root))

    async def _main() -> None:
        tracked = await app.rpc.call("snapshot_track", {"projectId": "p1"})
        assert tracked["success"] is True
        assert (app.paths.snapshot_dir / "p1" / "HEAD").exists()
        snapshot = tracked["hash"]

        (root / "main.py").write_text("print(2)\n", encoding="utf-8")
        patch = await app.rpc.call("daemon:snapshot_patch", {"projectId": "p1", "hash": snapshot})
        assert patch["patch"]["files"] == [str(root / "main.py")]

        diff = await app.rpc.call("snapshot_diff", {"projectId": "p1", "hash": snapshot})
        assert "print(2)" in diff["diff"]

        restored = await app.rpc.call("snapshot_restore", {"projectId": "p1", "snapshot": snapshot})
        assert restored == {"success": True}
        assert (root / "main.py").read_text(encoding="utf-8") == "print(1)\n"

        (root / "main.py").write_text("print(3)\n", encoding="utf-8")
        reverted = await app.rpc.call("snapshot_revert", {"projectId": "p1", "patches": [patch["patch"]]})
        assert reverted == {"success": True}
        assert (root / "main.py").read_text(encoding="utf-8") == "print(1)\n"

        legacy = await app.rpc.call("snapshot_restore", {"projectId": "p1", "hash": snapshot})
        assert legacy == {"success": True}

    asyncio.run(_main())
