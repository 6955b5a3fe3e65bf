"""项目注册表（projectId → 本地 cwd 映射，持久化为 JSON 数组）。"""

from __future__ import annotations

from ama_daemon.projects.registry import Project, ProjectRegistry

__all__ = ["Project", "ProjectRegistry"]
