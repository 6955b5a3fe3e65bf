"""
内置工具：glob（按 glob 模式匹配文件）。

说明：
- 搜索根目录必须在项目内；模式中不允许 `..` 段或绝对路径。
- 跳过 `node_modules` 与 `.git`；结果上限见 `glob.result_limit`（超出时 truncated=true）。
- sortByMtime=true 时按修改时间倒序（需要额外 stat）。
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext

_SKIP_PARTS = frozenset({"node_modules", ".git"})


class _GlobArgs(BaseModel):
    """glob 输入参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    pattern: str
    path: Optional[str] = None
    sort_by_mtime: bool = Field(default=False, alias="sortByMtime")


GLOB_SPEC = ToolSpec(
    name=ToolName.GLOB,
    description="Find files by glob pattern (e.g. '**/*.py') under the project or a sub-directory.",
)


def _scan(root: Path, pattern: str, limit: int, sort_by_mtime: bool) -> Tuple[List[str], bool]:
    """执行 glob 扫描（仅文件），返回 (相对路径列表, truncated)。"""

    files: List[Path] = []
    truncated = False
    for match in root.glob(pattern):
        rel_parts = match.relative_to(root).parts
        if _SKIP_PARTS.intersection(rel_parts):
            continue
        if not match.is_file():
            continue
        if len(files) >= limit:
            truncated = True
            break
        files.append(match)

    if sort_by_mtime:

        def _mtime(p: Path) -> float:
            """读取 mtime（失败时视为 0）。"""

            try:
                return p.stat().st_mtime
            except OSError:
                return 0.0

        files.sort(key=_mtime, reverse=True)
    else:
        files.sort()
    return [f.relative_to(root).as_posix() for f in files], truncated


async def glob_files(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 glob。"""

    a = _GlobArgs.model_validate(args)
    if not a.pattern:
        return error_result(ErrorCode.VALIDATION_ERROR, "Missing required parameter: pattern")
    pure = PurePosixPath(a.pattern.replace("\\", "/"))
    if pure.is_absolute() or ".." in pure.parts:
        return error_result(ErrorCode.ACCESS_DENIED, f'ACCESS_DENIED: Pattern "{a.pattern}" must stay inside the search directory')

    validation = ctx.validate(a.path or ".")
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    root = validation.resolved_path
    if not root.is_dir():
        return error_result(ErrorCode.DIR_NOT_FOUND, f"Directory not found: {a.path or '.'}")

    limit = ctx.config.glob.result_limit
    try:
        files, truncated = await asyncio.to_thread(_scan, root, a.pattern, limit, a.sort_by_mtime)
    except (OSError, ValueError, NotImplementedError) as exc:
        return error_result(ErrorCode.GLOB_ERROR, f"Failed to glob {a.pattern!r}: {exc}")

    message = f"Found {len(files)} files matching {a.pattern}"
    if truncated:
        message += f" (truncated at {limit})"
    return ok_result(message, files=files, count=len(files), truncated=truncated)
