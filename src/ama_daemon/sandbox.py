"""
路径沙箱：把工具提供的路径约束在项目根目录（sandbox root）内。

约束：
- containment 判定基于“root → target 的相对路径”：为空（即 root 本身），或首段不是 `..` 且不是绝对路径。
- root 与 target 都先做 symlink 解析（项目内指向项目外的 symlink 必须被拒绝）。
- 没有 project root 时不做任何解析，直接拒绝（mutating 工具必须有项目上下文）。
- 本模块不抛异常：所有失败都投影为 `valid=False`。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# 会修改文件系统/执行命令的工具：缺少 projectCwd 时一律拒绝
MUTATING_TOOLS = frozenset({"editFile", "deleteFile", "stringReplace", "applyPatch", "runTerminalCommand"})


@dataclass(frozen=True)
class PathValidation:
    """路径校验结果（valid=True 时 resolved_path 为已解析的绝对路径）。"""

    valid: bool
    resolved_path: Optional[Path] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProjectContextCheck:
    """项目上下文检查结果（mutating 工具是否允许执行）。"""

    allowed: bool
    error: Optional[str] = None


def _safe_realpath(path: Path) -> Path:
    """
    解析 symlink 得到真实路径。

    说明：
    - 目标存在：直接 resolve
    - 目标不存在（例如即将创建的新文件）：解析父目录，再拼接 basename
    """

    if path.exists() or path.is_symlink():
        return path.resolve()
    return path.parent.resolve() / path.name


def _resolve_target(path: str, root: Path) -> Path:
    """把相对/绝对路径解析为 root 下的绝对路径（尚未做 symlink 解析）。"""

    p = Path(os.path.expanduser(path)) if path.startswith("~") else Path(path)
    if not p.is_absolute():
        p = root / p
    return Path(os.path.normpath(p))


def _is_contained(resolved_target: Path, resolved_root: Path) -> bool:
    """按相对路径规则判断 containment。"""

    try:
        rel = os.path.relpath(resolved_target, resolved_root)
    except ValueError:
        # Windows：不同盘符无法计算相对路径
        return False
    if rel == os.curdir:
        return True
    first = rel.split(os.sep, 1)[0]
    return first != os.pardir and not os.path.isabs(rel)


def is_path_within_project(path: str, project_cwd: str) -> bool:
    """
    判断 path 解析后是否位于 project_cwd 内（含 symlink 解析）。

    参数：
    - path：相对（相对 project_cwd）或绝对路径
    - project_cwd：项目根目录

    返回：
    - bool：解析失败时返回 False
    """

    try:
        root = Path(project_cwd)
        resolved_root = _safe_realpath(Path(os.path.abspath(root)))
        resolved_target = _safe_realpath(_resolve_target(path, Path(os.path.abspath(root))))
        return _is_contained(resolved_target, resolved_root)
    except (OSError, ValueError, RuntimeError):
        logger.debug("path resolution failed: path=%r root=%r", path, project_cwd, exc_info=True)
        return False


def validate_path(path: str, project_cwd: Optional[str]) -> PathValidation:
    """
    校验并解析路径。

    参数：
    - path：工具参数中的路径
    - project_cwd：sandbox root；为空表示“无项目上下文”

    返回：
    - PathValidation：valid=True 时 resolved_path 为 symlink 解析后的绝对路径；
      否则 error 以 `ACCESS_DENIED:` 开头
    """

    if not project_cwd or not str(project_cwd).strip():
        return PathValidation(valid=False, error="ACCESS_DENIED: No project context provided")

    root_abs = Path(os.path.abspath(project_cwd))
    try:
        resolved_root = _safe_realpath(root_abs)
        resolved_target = _safe_realpath(_resolve_target(str(path), root_abs))
    except (OSError, ValueError, RuntimeError) as exc:
        return PathValidation(valid=False, error=f'ACCESS_DENIED: Unable to resolve path "{path}": {exc}')

    if not _is_contained(resolved_target, resolved_root):
        return PathValidation(
            valid=False,
            error=f'ACCESS_DENIED: Path "{path}" is outside project directory "{project_cwd}"',
        )
    return PathValidation(valid=True, resolved_path=resolved_target)


def require_project_cwd(tool_name: str, project_cwd: Optional[str]) -> ProjectContextCheck:
    """mutating 工具必须携带 projectCwd；只读工具总是放行。"""

    if tool_name in MUTATING_TOOLS and not (project_cwd and str(project_cwd).strip()):
        return ProjectContextCheck(
            allowed=False,
            error=f'ACCESS_DENIED: Tool "{tool_name}" requires a project context (projectCwd) but none was provided',
        )
    return ProjectContextCheck(allowed=True)


def effective_root(project_cwd: Optional[str]) -> str:
    """只读工具的根目录：优先 projectCwd，否则退化为进程工作目录。"""

    if project_cwd and str(project_cwd).strip():
        return str(project_cwd)
    return os.getcwd()
