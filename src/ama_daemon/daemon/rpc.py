"""
RPC handlers：服务端调用的稳定方法集合（项目注册表、工作区上下文、状态、快照）。

说明：
- 方法名是封闭集合 `RpcMethod`；兼容旧的 `daemon:` 前缀（派发前剥离）。
- 参数校验失败 → `RpcError(VALIDATION_ERROR)`；项目不存在 → `RpcError(PROJECT_NOT_FOUND)`；
  未知方法 → `UnknownMethodError`。
- 快照方法本身永不抛出（SnapshotStore 失败降级为 false/空结果）。
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.core.errors import ErrorCode, RpcError, UnknownMethodError, UserError
from ama_daemon.core.utils import now_ms
from ama_daemon.projects.registry import ProjectRegistry
from ama_daemon.snapshot.store import SnapshotPatch, SnapshotStore

logger = logging.getLogger(__name__)

LEGACY_METHOD_PREFIX = "daemon:"


class RpcMethod(str, Enum):
    """RPC 方法名（封闭集合）。"""

    GET_WORKSPACE_FOLDERS = "get_workspace_folders"
    GET_CONTEXT = "get_context"
    REGISTER_PROJECT = "register_project"
    UNREGISTER_PROJECT = "unregister_project"
    GET_PROJECT = "get_project"
    LIST_PROJECTS = "list_projects"
    STATUS = "status"
    SNAPSHOT_TRACK = "snapshot_track"
    SNAPSHOT_PATCH = "snapshot_patch"
    SNAPSHOT_RESTORE = "snapshot_restore"
    SNAPSHOT_DIFF = "snapshot_diff"
    SNAPSHOT_REVERT = "snapshot_revert"


def resolve_method(method: str) -> RpcMethod:
    """
    解析方法名（剥离 `daemon:` 前缀）。

    异常：
    - UnknownMethodError：不在 `RpcMethod` 中
    """

    name = method[len(LEGACY_METHOD_PREFIX) :] if method.startswith(LEGACY_METHOD_PREFIX) else method
    try:
        return RpcMethod(name)
    except ValueError:
        raise UnknownMethodError(method) from None


class _ContextArgs(BaseModel):
    """get_context 参数。"""

    model_config = ConfigDict(extra="ignore")

    cwd: str = Field(min_length=1)


class _RegisterProjectArgs(BaseModel):
    """register_project 参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project_id: str = Field(min_length=1, alias="projectId")
    cwd: str = Field(min_length=1)
    name: Optional[str] = None


class _ProjectArgs(BaseModel):
    """只带 projectId 的参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    project_id: str = Field(min_length=1, alias="projectId")


class _SnapshotHashArgs(_ProjectArgs):
    """snapshot_patch / snapshot_diff 参数。"""

    hash: str = Field(min_length=1)


class _SnapshotRestoreArgs(_ProjectArgs):
    """snapshot_restore 参数。"""

    snapshot: str = Field(min_length=1)


class _SnapshotRevertArgs(_ProjectArgs):
    """snapshot_revert 参数。"""

    patches: List[SnapshotPatch] = Field(default_factory=list)


def list_context_files(cwd: str, *, ignore: List[str], max_files: int) -> List[str]:
    """
    递归列出目录下的文件（相对路径，显式栈迭代遍历）。

    参数：
    - cwd：根目录
    - ignore：跳过的目录/文件名
    - max_files：最多返回的文件数

    说明：
    - 不可读的目录直接跳过；不跟随 symlink 目录。
    """

    ignored = set(ignore)
    files: List[str] = []
    stack = [cwd]
    while stack and len(files) < max_files:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            continue
        subdirs: List[str] = []
        for entry in entries:
            if entry.name in ignored:
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                continue
            if is_dir:
                subdirs.append(entry.path)
                continue
            files.append(os.path.relpath(entry.path, cwd))
            if len(files) >= max_files:
                break
        stack.extend(reversed(subdirs))
    return files


StatusProvider = Callable[[], Dict[str, Any]]
_Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class RpcHandlers:
    """
    RPC 方法实现集合。

    参数：
    - projects：项目注册表
    - snapshots：快照存储
    - config：有效配置
    - status_provider：返回连接状态的回调（由 Connection 注入；缺省视为已连接）
    """

    def __init__(
        self,
        *,
        projects: ProjectRegistry,
        snapshots: SnapshotStore,
        config: DaemonConfig,
        status_provider: Optional[StatusProvider] = None,
    ) -> None:
        """创建 handler 集合并建立方法表（覆盖 `RpcMethod` 的每个成员）。"""

        self._projects = projects
        self._snapshots = snapshots
        self._config = config
        self._status_provider = status_provider
        self._table: Dict[RpcMethod, _Handler] = {
            RpcMethod.GET_WORKSPACE_FOLDERS: self.get_workspace_folders,
            RpcMethod.GET_CONTEXT: self.get_context,
            RpcMethod.REGISTER_PROJECT: self.register_project,
            RpcMethod.UNREGISTER_PROJECT: self.unregister_project,
            RpcMethod.GET_PROJECT: self.get_project,
            RpcMethod.LIST_PROJECTS: self.list_projects,
            RpcMethod.STATUS: self.status,
            RpcMethod.SNAPSHOT_TRACK: self.snapshot_track,
            RpcMethod.SNAPSHOT_PATCH: self.snapshot_patch,
            RpcMethod.SNAPSHOT_RESTORE: self.snapshot_restore,
            RpcMethod.SNAPSHOT_DIFF: self.snapshot_diff,
            RpcMethod.SNAPSHOT_REVERT: self.snapshot_revert,
        }

    @property
    def projects(self) -> ProjectRegistry:
        """项目注册表。"""

        return self._projects

    def set_status_provider(self, provider: Optional[StatusProvider]) -> None:
        """设置连接状态回调（Connection 创建后注入）。"""

        self._status_provider = provider

    async def call(self, method: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        派发一次 RPC 调用。

        异常：
        - UnknownMethodError：未知方法
        - RpcError：参数校验失败 / 项目不存在
        """

        handler = self._table[resolve_method(method)]
        try:
            return await handler(dict(args or {}))
        except ValidationError as exc:
            raise RpcError(
                code=ErrorCode.VALIDATION_ERROR,
                message=f"Invalid arguments for {method}: {exc.errors()[0].get('msg', 'invalid')}",
                details={"method": method},
            ) from exc
        except UserError as exc:
            raise RpcError(code=exc.code, message=exc.message, details=exc.details) from exc

    def _require_project(self, project_id: str) -> str:
        """返回项目 cwd；不存在时抛出 PROJECT_NOT_FOUND。"""

        cwd = self._projects.get_cwd(project_id)
        if cwd is None:
            raise RpcError(
                code=ErrorCode.PROJECT_NOT_FOUND,
                message=f"Project not found: {project_id}",
                details={"projectId": project_id},
            )
        return cwd

    async def get_workspace_folders(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """列出已注册项目（工作区目录）。"""

        return {"folders": [p.model_dump() for p in self._projects.list()]}

    async def get_context(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """返回目录下的递归文件清单。"""

        a = _ContextArgs.model_validate(args)
        limits = self._config.context
        files = await asyncio.to_thread(list_context_files, a.cwd, ignore=limits.ignore, max_files=limits.max_files)
        return {"files": files, "cwd": a.cwd}

    async def register_project(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """注册项目。"""

        a = _RegisterProjectArgs.model_validate(args)
        project = self._projects.register(a.project_id, a.cwd, a.name)
        return {"success": True, "projectId": project.id, "cwd": project.cwd}

    async def unregister_project(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """移除项目。"""

        a = _ProjectArgs.model_validate(args)
        self._projects.unregister(a.project_id)
        return {"success": True, "projectId": a.project_id}

    async def get_project(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """查询单个项目。"""

        a = _ProjectArgs.model_validate(args)
        self._require_project(a.project_id)
        project = self._projects.get(a.project_id)
        return {"project": project.model_dump() if project is not None else None}

    async def list_projects(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """列出全部项目。"""

        return {"projects": [p.model_dump() for p in self._projects.list()]}

    async def status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """返回 daemon 状态（连接状态、重连次数、时间戳、平台）。"""

        connection = self._status_provider() if self._status_provider is not None else {"connected": True}
        return {
            **connection,
            "timestamp": now_ms(),
            "platform": sys.platform,
            "arch": platform.machine(),
        }

    async def snapshot_track(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """记录快照。"""

        a = _ProjectArgs.model_validate(args)
        self._require_project(a.project_id)
        tree = await self._snapshots.track(a.project_id)
        return {"success": tree is not None, "hash": tree}

    async def snapshot_patch(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """列出快照之后变化的文件。"""

        a = _SnapshotHashArgs.model_validate(args)
        self._require_project(a.project_id)
        patch = await self._snapshots.patch(a.project_id, a.hash)
        return {"success": True, "patch": patch.model_dump()}

    async def snapshot_restore(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """回退到快照（参数 `snapshot`，兼容 `hash`）。"""

        if "snapshot" not in args and "hash" in args:
            args = {**args, "snapshot": args["hash"]}
        a = _SnapshotRestoreArgs.model_validate(args)
        self._require_project(a.project_id)
        return {"success": await self._snapshots.restore(a.project_id, a.snapshot)}

    async def snapshot_diff(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """返回快照与当前状态的 unified diff。"""

        a = _SnapshotHashArgs.model_validate(args)
        self._require_project(a.project_id)
        return {"success": True, "diff": await self._snapshots.diff(a.project_id, a.hash)}

    async def snapshot_revert(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """按 patch 列表逐文件回退。"""

        a = _SnapshotRevertArgs.model_validate(args)
        self._require_project(a.project_id)
        return {"success": await self._snapshots.revert(a.project_id, a.patches)}
