"""
内置工具：applyPatch / stringReplace（模糊 old_string → new_string 替换）。

说明：
- 两个工具名共用同一实现；内容变更全部经过 `ama_daemon.patching.apply`。
- 文件不存在且 old_string 为空：创建新文件，内容为 new_string。
- 返回的 old_string 为实际被替换的区域（模糊匹配后的原文），而不是入参字面量。
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode
from ama_daemon.patching import PatchError, PatchErrorKind, apply, calculate_diff_stats
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext

_PATCH_ERROR_CODES = {
    PatchErrorKind.NOT_FOUND: ErrorCode.STRING_NOT_FOUND,
    PatchErrorKind.NOT_UNIQUE: ErrorCode.STRING_NOT_UNIQUE,
    PatchErrorKind.IDENTICAL: ErrorCode.STRINGS_IDENTICAL,
}


class _StringReplaceArgs(BaseModel):
    """applyPatch / stringReplace 输入参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    file_path: str
    old_string: str
    new_string: str
    replace_all: bool = Field(default=False, alias="replaceAll")


APPLY_PATCH_SPEC = ToolSpec(
    name=ToolName.APPLY_PATCH,
    description="Replace old_string with new_string in a file using progressively looser matching strategies.",
    mutating=True,
)

STRING_REPLACE_SPEC = ToolSpec(
    name=ToolName.STRING_REPLACE,
    description="Alias of applyPatch.",
    mutating=True,
)


def _read(path: Path) -> str:
    """按原样读取文本（保留 CRLF 等原始换行符）。"""

    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _write(path: Path, text: str) -> None:
    """写入文本（先创建父目录；不做换行符转换）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


async def string_replace(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 applyPatch / stringReplace。"""

    a = _StringReplaceArgs.model_validate(args)
    if not a.file_path:
        return error_result(ErrorCode.VALIDATION_ERROR, "Missing required parameter: file_path")
    if a.old_string == a.new_string:
        return error_result(ErrorCode.STRINGS_IDENTICAL, "old_string and new_string must be different")

    validation = ctx.validate(a.file_path)
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    path = validation.resolved_path

    if not path.exists():
        if a.old_string != "":
            return error_result(ErrorCode.FILE_NOT_FOUND, f"File not found: {a.file_path}")
        try:
            await asyncio.to_thread(_write, path, a.new_string)
        except OSError as exc:
            return error_result(ErrorCode.WRITE_ERROR, f"Failed to write file: {a.file_path} ({exc})")
        stats = calculate_diff_stats("", a.new_string)
        return ok_result(
            f"Created new file: {a.file_path}",
            isNewFile=True,
            old_string="",
            new_string=a.new_string,
            linesAdded=stats.lines_added,
            linesRemoved=stats.lines_removed,
        )
    if not path.is_file():
        return error_result(ErrorCode.NOT_A_FILE, f"Path is not a file: {a.file_path}")

    try:
        content = await asyncio.to_thread(_read, path)
    except (OSError, UnicodeDecodeError) as exc:
        return error_result(ErrorCode.READ_ERROR, f"Failed to read file: {a.file_path} ({exc})")

    try:
        outcome = apply(content, a.old_string, a.new_string, a.replace_all)
    except PatchError as exc:
        return error_result(_PATCH_ERROR_CODES[exc.kind], str(exc))

    try:
        await asyncio.to_thread(_write, path, outcome.content)
    except OSError as exc:
        return error_result(ErrorCode.WRITE_ERROR, f"Failed to write file: {a.file_path} ({exc})")

    stats = calculate_diff_stats(outcome.matched, a.new_string)
    return ok_result(
        f"Replaced {outcome.occurrences} occurrence(s) in {a.file_path} ({outcome.strategy} match)",
        isNewFile=False,
        old_string=outcome.matched,
        new_string=a.new_string,
        linesAdded=stats.lines_added,
        linesRemoved=stats.lines_removed,
        occurrences=outcome.occurrences,
        strategy=outcome.strategy,
    )
