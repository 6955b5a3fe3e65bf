"""
内置工具：readFile。

说明：
- 支持整文件读取或 1-indexed 行区间读取（含两端）。
- 文件大小与返回行数均有上限（见 `read_file.*` 配置）；超过行数上限时截断并标记 truncated。
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from ama_daemon.core.errors import ErrorCode
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext


class _ReadFileArgs(BaseModel):
    """readFile 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    relative_file_path: str
    should_read_entire_file: bool = True
    start_line_one_indexed: Optional[int] = None
    end_line_one_indexed: Optional[int] = None


READ_FILE_SPEC = ToolSpec(
    name=ToolName.READ_FILE,
    description="Read a file (entire file or a 1-indexed inclusive line range).",
)


def _read_text(path: Path, max_bytes: int) -> tuple[Optional[str], Optional[int]]:
    """读取文本；超过 max_bytes 时返回 (None, size)。"""

    size = path.stat().st_size
    if size > max_bytes:
        return None, size
    return path.read_text(encoding="utf-8", errors="replace"), size


def _check_range(args: _ReadFileArgs) -> Optional[Dict[str, Any]]:
    """校验行区间参数（仅在非整文件读取时需要）。"""

    start = args.start_line_one_indexed
    end = args.end_line_one_indexed
    if start is None or end is None:
        return error_result(
            ErrorCode.MISSING_LINE_RANGE,
            "start_line_one_indexed and end_line_one_indexed are required when should_read_entire_file is false",
        )
    if start < 1 or end < 1:
        return error_result(ErrorCode.INVALID_LINE_RANGE, "line numbers must be positive integers (1-indexed)")
    if end < start:
        return error_result(
            ErrorCode.INVALID_LINE_RANGE,
            "end_line_one_indexed must be greater than or equal to start_line_one_indexed",
        )
    return None


async def read_file(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """
    执行 readFile。

    返回：
    - success=True：content / totalLines / truncated
    - success=False：error 为 ACCESS_DENIED / FILE_NOT_FOUND / NOT_A_FILE / FILE_TOO_LARGE /
      MISSING_LINE_RANGE / INVALID_LINE_RANGE / READ_ERROR
    """

    a = _ReadFileArgs.model_validate(args)
    rel = a.relative_file_path
    if not a.should_read_entire_file:
        range_error = _check_range(a)
        if range_error is not None:
            return range_error

    validation = ctx.validate(rel)
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    path = validation.resolved_path

    if not path.exists():
        return error_result(ErrorCode.FILE_NOT_FOUND, f"File not found: {rel}")
    if not path.is_file():
        return error_result(ErrorCode.NOT_A_FILE, f"Path is not a file: {rel}")

    limits = ctx.config.read_file
    try:
        text, size = await asyncio.to_thread(_read_text, path, limits.max_file_bytes)
    except OSError as exc:
        return error_result(ErrorCode.READ_ERROR, f"Failed to read file: {rel} ({exc})")
    if text is None:
        return error_result(
            ErrorCode.FILE_TOO_LARGE,
            f"File too large ({size} bytes). Maximum is {limits.max_file_bytes} bytes. Use line ranges to read portions.",
        )

    lines = text.replace("\r\n", "\n").split("\n")
    total = len(lines)
    if a.should_read_entire_file:
        truncated = total > limits.max_lines
        content = "\n".join(lines[: limits.max_lines])
        message = (
            f"Read first {limits.max_lines} of {total} lines from: {rel} (truncated)"
            if truncated
            else f"Successfully read entire file: {rel} ({total} lines)"
        )
        return ok_result(message, content=content, totalLines=total, truncated=truncated)

    start_index = int(a.start_line_one_indexed or 1) - 1
    if start_index >= total:
        return error_result(
            ErrorCode.INVALID_LINE_RANGE,
            "start_line_one_indexed must be less than or equal to the total number of lines in the file",
        )
    normalized_end = min(int(a.end_line_one_indexed or total), total)
    capped_end = min(normalized_end, start_index + limits.max_lines)
    return ok_result(
        f"Successfully read lines {start_index + 1}-{capped_end} from file: {rel} "
        f"({capped_end - start_index} lines of {total} total)",
        content="\n".join(lines[start_index:capped_end]),
        totalLines=total,
        truncated=capped_end < normalized_end,
    )
