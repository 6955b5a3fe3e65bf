"""
ProjectRegistry：`projectId → cwd` 映射。

说明：
- 持久化为 JSON 数组（`[{id, cwd, name, active}]`），写入使用原子替换。
- 文件损坏（非数组或 JSON 解析失败）时：备份为 `<file>.backup.<ms>` 并删除原文件，从空注册表开始。
- 单事件循环内使用，无需显式加锁。
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ama_daemon.core.errors import UserError
from ama_daemon.core.utils import atomic_write_text, now_ms
from ama_daemon.sandbox import is_path_within_project

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "projects.json"


class Project(BaseModel):
    """已注册项目。"""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    cwd: str = Field(min_length=1)
    name: str = ""
    active: bool = True


class ProjectRegistry:
    """
    项目注册表。

    参数：
    - path：注册表 JSON 文件路径（通常是 `<data_dir>/projects.json`）
    """

    def __init__(self, path: Path) -> None:
        """创建注册表并立即从磁盘加载。"""

        self._path = Path(path)
        self._projects: Dict[str, Project] = {}
        self._load()

    @property
    def path(self) -> Path:
        """注册表文件路径。"""

        return self._path

    def _backup_corrupt_file(self, reason: str) -> None:
        """把损坏的注册表文件备份后删除。"""

        backup = self._path.with_name(f"{self._path.name}.backup.{now_ms()}")
        logger.error("invalid project registry (%s); backing up to %s", reason, backup)
        try:
            shutil.copyfile(self._path, backup)
            self._path.unlink()
        except OSError:
            logger.exception("failed to back up corrupt project registry: %s", self._path)

    def _load(self) -> None:
        """从磁盘加载（文件不存在时为空注册表）。"""

        self._projects.clear()
        if not self._path.exists():
            return
        try:
            parsed = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._backup_corrupt_file(f"parse failed: {exc}")
            return
        if not isinstance(parsed, list):
            self._backup_corrupt_file(f"expected array, got {type(parsed).__name__}")
            return
        for item in parsed:
            try:
                project = Project.model_validate(item)
            except ValidationError:
                logger.warning("skipping malformed project registry entry: %r", item)
                continue
            self._projects[project.id] = project

    def _save(self) -> None:
        """原子写回磁盘。"""

        payload = [p.model_dump() for p in self._projects.values()]
        atomic_write_text(self._path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

    def register(self, project_id: str, cwd: str, name: Optional[str] = None) -> Project:
        """
        注册（或覆盖）项目。

        参数：
        - project_id：项目 ID
        - cwd：项目目录（规范化为绝对路径）
        - name：展示名（默认取目录名）

        异常：
        - UserError：project_id 或 cwd 为空
        """

        if not str(project_id or "").strip():
            raise UserError("projectId must be a non-empty string", code="VALIDATION_ERROR")
        if not str(cwd or "").strip():
            raise UserError("cwd must be a non-empty string", code="VALIDATION_ERROR")
        normalized = os.path.normpath(os.path.abspath(os.path.expanduser(cwd)))
        project = Project(id=project_id, cwd=normalized, name=name or os.path.basename(normalized), active=True)
        self._projects[project_id] = project
        self._save()
        logger.info("project registered: id=%s cwd=%s", project_id, normalized)
        return project

    def unregister(self, project_id: str) -> bool:
        """移除项目；返回是否存在过。"""

        existed = self._projects.pop(project_id, None) is not None
        self._save()
        if existed:
            logger.info("project unregistered: id=%s", project_id)
        return existed

    def get(self, project_id: str) -> Optional[Project]:
        """按 ID 查询项目。"""

        return self._projects.get(project_id)

    def get_cwd(self, project_id: str) -> Optional[str]:
        """按 ID 查询项目 cwd。"""

        project = self._projects.get(project_id)
        return project.cwd if project is not None else None

    def list(self) -> List[Project]:
        """按注册顺序列出项目。"""

        return list(self._projects.values())

    def is_path_allowed(self, project_id: str, target_path: str) -> bool:
        """判断路径是否位于项目目录内（未知项目返回 False）。"""

        cwd = self.get_cwd(project_id)
        if cwd is None:
            return False
        return is_path_within_project(target_path, cwd)
