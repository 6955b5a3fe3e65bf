"""
内置工具：editFile（整文件写入）。

说明：
- 自动创建缺失的父目录。
- 新内容与现有内容逐字节相同时为 no-op（不写盘，返回 noChange=true）。
- 返回 Edit/Patch result：`{success, isNewFile, old_string, new_string, linesAdded, linesRemoved}`，
  并附带 `checkpointId/beforeHash/afterHash`（sha256）便于上层做回滚对账。
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from ama_daemon.core.errors import ErrorCode
from ama_daemon.core.utils import sha256_text
from ama_daemon.patching import calculate_diff_stats
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext


class _EditFileArgs(BaseModel):
    """editFile 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    target_file: str
    content: str
    providedNewFile: Optional[bool] = None
    toolCallId: Optional[str] = None


EDIT_FILE_SPEC = ToolSpec(
    name=ToolName.EDIT_FILE,
    description="Write the full content of a file, creating it (and parent directories) when missing.",
    mutating=True,
)


def _read_existing(path: Path) -> Optional[bytes]:
    """读取现有文件字节；不存在时返回 None。"""

    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _write(path: Path, data: bytes) -> None:
    """写入文件（先创建父目录）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def edit_file(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 editFile。"""

    a = _EditFileArgs.model_validate(args)
    validation = ctx.validate(a.target_file)
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    path = validation.resolved_path
    if path.is_dir():
        return error_result(ErrorCode.NOT_A_FILE, f"Path is a directory: {a.target_file}")

    existing = None if a.providedNewFile else await asyncio.to_thread(_read_existing, path)
    is_new_file = existing is None
    new_bytes = a.content.encode("utf-8")
    old_text = "" if existing is None else existing.decode("utf-8", errors="replace")

    stats = calculate_diff_stats(old_text, a.content)
    result: Dict[str, Any] = {
        "isNewFile": is_new_file,
        "old_string": old_text,
        "new_string": a.content,
        "linesAdded": stats.lines_added,
        "linesRemoved": stats.lines_removed,
        "checkpointId": a.toolCallId or str(uuid.uuid4()),
        "beforeHash": sha256_text(old_text),
        "afterHash": sha256_text(a.content),
    }

    if existing is not None and existing == new_bytes:
        return ok_result(f"No changes: {a.target_file} already has the requested content", noChange=True, **result)

    try:
        await asyncio.to_thread(_write, path, new_bytes)
    except OSError as exc:
        return error_result(ErrorCode.WRITE_ERROR, f"Failed to edit file: {a.target_file} ({exc})")

    message = f"Created new file: {a.target_file}" if is_new_file else f"Modified file: {a.target_file}"
    return ok_result(message, noChange=False, **result)
