"""
SnapshotStore：每个项目一个影子 git 仓库（`<data_dir>/snapshot/<projectId>`）。

说明：
- 影子仓库只作为内容寻址存储：`--git-dir` 指向数据目录，`--work-tree` 指向项目目录；
  不创建 commit，每次 `track` 产出一个独立的 tree hash。
- 所有 git 调用走 argv（不经过 shell）；退出码决定成功与否。
- 公开方法永不抛出：失败时记录日志并降级为 None / [] / False / ""。
- 同一项目上的操作由 per-project `asyncio.Lock` 串行化。
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ama_daemon.core.errors import SnapshotError
from ama_daemon.core.executor import run_command
from ama_daemon.projects.registry import ProjectRegistry

logger = logging.getLogger(__name__)

_TREE_HASH_RE = re.compile(r"^[0-9a-fA-F]{4,64}$")
_GIT_OUTPUT_LIMIT = 50 * 1024 * 1024


class GitResult(BaseModel):
    """一次 git 调用的结果。"""

    model_config = ConfigDict(extra="forbid")

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 1
    ok: bool = False


class SnapshotPatch(BaseModel):
    """某个快照之后发生变化的文件（绝对路径）。"""

    model_config = ConfigDict(extra="forbid")

    hash: str
    files: List[str]


class FileDiff(BaseModel):
    """两个快照之间单个文件的前后内容与增删行数（二进制文件内容为空）。"""

    model_config = ConfigDict(extra="forbid")

    file: str
    before: str
    after: str
    additions: int
    deletions: int


class SnapshotStore:
    """
    影子仓库快照存储。

    参数：
    - registry：项目注册表（projectId → 工作树）
    - snapshot_dir：影子仓库根目录（通常为 `DaemonPaths.snapshot_dir`，即 `<data_dir>/snapshot`）
    - timeout_ms：单次 git 调用的超时预算
    """

    def __init__(self, registry: ProjectRegistry, snapshot_dir: Path, *, timeout_ms: int = 60000) -> None:
        """创建快照存储（不做任何 I/O）。"""

        self._registry = registry
        self._root = Path(snapshot_dir)
        self._timeout_ms = timeout_ms
        self._locks: Dict[str, asyncio.Lock] = {}

    def git_dir(self, project_id: str) -> Path:
        """返回项目的影子仓库目录。"""

        return self._root / project_id

    def _lock(self, project_id: str) -> asyncio.Lock:
        """返回（必要时创建）项目级锁。"""

        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def _worktree(self, project_id: str) -> str:
        """
        解析项目工作树。

        异常：
        - SnapshotError：projectId 非法或项目未注册
        """

        if not project_id or project_id in (".", "..") or "/" in project_id or os.sep in project_id:
            raise SnapshotError(f"invalid project id: {project_id!r}")
        cwd = self._registry.get_cwd(project_id)
        if cwd is None:
            raise SnapshotError(f"project not found: {project_id}")
        return cwd

    @staticmethod
    def _check_hash(value: str) -> str:
        """校验 tree hash（避免被当作 git 选项）。"""

        if not _TREE_HASH_RE.match(value or ""):
            raise SnapshotError(f"invalid snapshot hash: {value!r}")
        return value

    async def _git(self, project_id: str, worktree: str, args: Sequence[str]) -> GitResult:
        """在影子仓库上执行一条 git 命令（git 不存在时返回失败结果）。"""

        argv = [
            "git",
            "-c",
            "core.autocrlf=false",
            "--git-dir",
            str(self.git_dir(project_id)),
            "--work-tree",
            worktree,
            *args,
        ]
        try:
            result = await run_command(
                argv,
                cwd=worktree,
                timeout_ms=self._timeout_ms,
                max_output_bytes=_GIT_OUTPUT_LIMIT,
                keep="head",
            )
        except FileNotFoundError:
            return GitResult(stderr="git executable not found", exit_code=127)
        except OSError as exc:
            return GitResult(stderr=str(exc), exit_code=1)
        exit_code = -1 if result.exit_code is None else result.exit_code
        return GitResult(stdout=result.stdout, stderr=result.stderr, exit_code=exit_code, ok=result.ok)

    async def _require(self, project_id: str, worktree: str, args: Sequence[str]) -> GitResult:
        """执行 git 命令；失败时抛出 SnapshotError。"""

        result = await self._git(project_id, worktree, args)
        if not result.ok:
            raise SnapshotError(f"git {args[0]} failed (exit {result.exit_code}): {result.stderr.strip()}")
        return result

    async def _ensure_initialized(self, project_id: str, worktree: str) -> None:
        """首次使用时初始化影子仓库。"""

        git_dir = self.git_dir(project_id)
        if (git_dir / "HEAD").exists():
            return
        git_dir.mkdir(parents=True, exist_ok=True)
        await self._require(project_id, worktree, ["init", "-q"])
        await self._require(project_id, worktree, ["config", "core.autocrlf", "false"])
        logger.info("snapshot store initialized: project=%s git_dir=%s", project_id, git_dir)

    async def _write_current_tree(self, project_id: str, worktree: str) -> str:
        """暂存工作树全部内容并写出 tree 对象，返回 tree hash。"""

        await self._require(project_id, worktree, ["add", "--all", "."])
        tree = (await self._require(project_id, worktree, ["write-tree"])).stdout.strip()
        if not tree:
            raise SnapshotError("git write-tree returned an empty hash")
        return tree

    async def track(self, project_id: str) -> Optional[str]:
        """
        记录当前工作树状态。

        返回：
        - tree hash；失败时为 None
        """

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                await self._ensure_initialized(project_id, worktree)
                tree = await self._write_current_tree(project_id, worktree)
            except (SnapshotError, OSError) as exc:
                logger.warning("snapshot track failed: project=%s error=%s", project_id, exc)
                return None
        logger.info("snapshot tracked: project=%s hash=%s", project_id, tree)
        return tree

    async def patch(self, project_id: str, hash: str) -> SnapshotPatch:
        """
        列出相对快照发生变化的文件。

        返回：
        - SnapshotPatch（失败时 files 为空）
        """

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                self._check_hash(hash)
                await self._require(project_id, worktree, ["add", "--all", "."])
                result = await self._require(project_id, worktree, ["diff", "--no-ext-diff", "--name-only", hash, "--", "."])
            except (SnapshotError, OSError) as exc:
                logger.warning("snapshot patch failed: project=%s hash=%s error=%s", project_id, hash, exc)
                return SnapshotPatch(hash=hash, files=[])
        files = [os.path.join(worktree, line.strip()) for line in result.stdout.splitlines() if line.strip()]
        return SnapshotPatch(hash=hash, files=files)

    async def restore(self, project_id: str, hash: str) -> bool:
        """
        把工作树完整回退到快照（含删除快照之后新建的文件）。

        返回：
        - 是否成功
        """

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                self._check_hash(hash)
                # 先记录当前状态，用于找出快照之后新增的文件
                current = await self._write_current_tree(project_id, worktree)
                await self._require(project_id, worktree, ["read-tree", hash])
                await self._require(project_id, worktree, ["checkout-index", "-a", "-f"])
                added = await self._require(
                    project_id, worktree, ["diff-tree", "-r", "--name-only", "--diff-filter=A", hash, current]
                )
            except (SnapshotError, OSError) as exc:
                logger.error("snapshot restore failed: project=%s hash=%s error=%s", project_id, hash, exc)
                return False
            self._delete_files(worktree, (line.strip() for line in added.stdout.splitlines() if line.strip()))
        logger.info("snapshot restored: project=%s hash=%s", project_id, hash)
        return True

    @staticmethod
    def _delete_files(worktree: str, rel_paths: Iterable[str]) -> None:
        """删除工作树中的文件（逐个尝试；失败只记日志）。"""

        for rel in rel_paths:
            full = os.path.join(worktree, rel)
            try:
                os.unlink(full)
                logger.info("deleted file created after snapshot: %s", full)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("failed to delete %s: %s", full, exc)

    async def revert(self, project_id: str, patches: List[SnapshotPatch]) -> bool:
        """
        按 patch 列表逐文件回退（每个文件只处理第一次出现）。

        说明：
        - 文件在快照中存在：从快照 checkout；
        - 文件在快照中不存在：删除。
        """

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                for item in patches:
                    self._check_hash(item.hash)
            except SnapshotError as exc:
                logger.error("snapshot revert failed: project=%s error=%s", project_id, exc)
                return False

            seen: set[str] = set()
            for item in patches:
                for file in item.files:
                    if file in seen:
                        continue
                    seen.add(file)
                    rel = os.path.relpath(file, worktree) if os.path.isabs(file) else file
                    if rel == ".." or rel.startswith(".." + os.sep):
                        logger.warning("skipping revert outside project: %s", file)
                        continue
                    checkout = await self._git(project_id, worktree, ["checkout", item.hash, "--", rel])
                    if checkout.ok:
                        logger.info("reverted %s to %s", rel, item.hash)
                        continue
                    listed = await self._git(project_id, worktree, ["ls-tree", item.hash, "--", rel])
                    if listed.ok and listed.stdout.strip():
                        logger.warning("file exists in snapshot but checkout failed, keeping: %s", rel)
                    else:
                        self._delete_files(worktree, [rel])
        return True

    async def diff(self, project_id: str, hash: str) -> str:
        """返回快照与当前工作树之间的 unified diff（失败时为空字符串）。"""

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                self._check_hash(hash)
                await self._require(project_id, worktree, ["add", "--all", "."])
                result = await self._require(project_id, worktree, ["diff", "--no-ext-diff", hash, "--", "."])
            except (SnapshotError, OSError) as exc:
                logger.warning("snapshot diff failed: project=%s hash=%s error=%s", project_id, hash, exc)
                return ""
        return result.stdout.strip()

    async def diff_full(self, project_id: str, from_hash: str, to_hash: str) -> List[FileDiff]:
        """返回两个快照之间每个变化文件的前后内容与增删行数。"""

        async with self._lock(project_id):
            try:
                worktree = self._worktree(project_id)
                self._check_hash(from_hash)
                self._check_hash(to_hash)
                numstat = await self._require(
                    project_id,
                    worktree,
                    ["diff", "--no-ext-diff", "--no-renames", "--numstat", from_hash, to_hash, "--", "."],
                )
            except (SnapshotError, OSError) as exc:
                logger.warning("snapshot diff_full failed: project=%s error=%s", project_id, exc)
                return []

            diffs: List[FileDiff] = []
            for line in numstat.stdout.splitlines():
                parts = line.split("\t", 2)
                if len(parts) != 3:
                    continue
                additions, deletions, file = parts
                before = after = ""
                if not (additions == "-" and deletions == "-"):
                    before = (await self._git(project_id, worktree, ["show", f"{from_hash}:{file}"])).stdout
                    after = (await self._git(project_id, worktree, ["show", f"{to_hash}:{file}"])).stdout
                diffs.append(
                    FileDiff(
                        file=file,
                        before=before,
                        after=after,
                        additions=int(additions) if additions.isdigit() else 0,
                        deletions=int(deletions) if deletions.isdigit() else 0,
                    )
                )
        return diffs
