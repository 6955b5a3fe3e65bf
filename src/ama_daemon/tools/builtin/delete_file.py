"""内置工具：deleteFile（删除单个文件；拒绝目录）。"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

from ama_daemon.core.errors import ErrorCode
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext


class _DeleteFileArgs(BaseModel):
    """deleteFile 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    path: str


DELETE_FILE_SPEC = ToolSpec(
    name=ToolName.DELETE_FILE,
    description="Delete a single file inside the project.",
    mutating=True,
)


def _read_and_unlink(path: Path) -> str:
    """读取文件内容后删除（返回被删除的内容，便于上层回显/撤销）。"""

    content = path.read_text(encoding="utf-8", errors="replace")
    path.unlink()
    return content


async def delete_file(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 deleteFile。"""

    a = _DeleteFileArgs.model_validate(args)
    validation = ctx.validate(a.path)
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    path = validation.resolved_path

    if not path.exists():
        return error_result(ErrorCode.FILE_NOT_FOUND, f"File not found: {a.path}")
    if not path.is_file():
        return error_result(ErrorCode.NOT_A_FILE, f"Path is not a file: {a.path}")

    try:
        content = await asyncio.to_thread(_read_and_unlink, path)
    except OSError as exc:
        return error_result(ErrorCode.DELETE_ERROR, f"Failed to delete file: {a.path} ({exc})")
    return ok_result(f"Deleted file: {a.path}", path=a.path, content=content)
