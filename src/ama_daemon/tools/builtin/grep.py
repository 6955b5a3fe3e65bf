"""
内置工具：grep（基于 ripgrep 的正则搜索）。

说明：
- 通过 argv 调用 `rg`（不经过 shell）；`rg` 不存在时降级为 `grep -rn`。
- 上限：匹配条数、单行字符数（超出以 `...` 截断）、总输出字节数；默认排除依赖/构建目录。
- 硬超时：子进程被终止并返回 `TIMEOUT`。
- rg 退出码 1 表示“无匹配”，不是错误。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode
from ama_daemon.core.executor import CommandResult, run_command
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext

TRUNCATION_MESSAGE = (
    "[Results truncated due to size limits. Use more specific patterns or file filters to narrow your search.]"
)


class _GrepOptions(BaseModel):
    """grep 可选参数。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    include_pattern: Optional[str] = Field(default=None, alias="includePattern")
    exclude_pattern: Optional[str] = Field(default=None, alias="excludePattern")
    case_sensitive: bool = Field(default=False, alias="caseSensitive")
    path: Optional[str] = None


class _GrepArgs(BaseModel):
    """grep 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    query: str
    options: _GrepOptions = Field(default_factory=_GrepOptions)


GREP_SPEC = ToolSpec(
    name=ToolName.GREP,
    description="Search file contents with a regular expression (ripgrep).",
)


def _rg_argv(a: _GrepArgs, search_dir: Path, *, exclude_globs: List[str], max_columns: int) -> List[str]:
    """构造 rg argv。"""

    argv = ["rg", "-n", "--with-filename", "--no-heading", "--color=never", f"--max-columns={max_columns}"]
    if not a.options.case_sensitive:
        argv.append("-i")
    if a.options.include_pattern:
        argv += ["--glob", a.options.include_pattern]
    if a.options.exclude_pattern:
        argv += ["--glob", f"!{a.options.exclude_pattern}"]
    for pattern in exclude_globs:
        argv += ["--glob", f"!{pattern}"]
    argv += ["--regexp", a.query, str(search_dir)]
    return argv


def _grep_argv(a: _GrepArgs, search_dir: Path, *, exclude_globs: List[str]) -> List[str]:
    """构造 grep 降级 argv（排除 glob 投影为 --exclude-dir）。"""

    argv = ["grep", "-rn"]
    if not a.options.case_sensitive:
        argv.append("-i")
    if a.options.include_pattern:
        argv.append(f"--include={a.options.include_pattern}")
    if a.options.exclude_pattern:
        argv.append(f"--exclude={a.options.exclude_pattern}")
    for pattern in exclude_globs:
        argv.append(f"--exclude-dir={pattern.split('/', 1)[0]}")
    argv += ["-e", a.query, str(search_dir)]
    return argv


def _parse_matches(stdout: str, ctx: ToolContext) -> tuple[List[Dict[str, Any]], bool]:
    """
    解析 `file:line:content` 输出并施加上限。

    返回：
    - (detailed_matches, truncated)
    """

    limits = ctx.config.grep
    detailed: List[Dict[str, Any]] = []
    total_bytes = 0
    truncated = False
    for line in stdout.splitlines():
        if not line:
            continue
        first = line.find(":")
        second = line.find(":", first + 1)
        if first <= 0 or second <= first:
            continue
        try:
            line_number = int(line[first + 1 : second])
        except ValueError:
            continue
        if len(detailed) >= limits.max_matches:
            truncated = True
            break
        content = line[second + 1 :].strip()
        if len(content) > limits.max_line_chars:
            content = content[: limits.max_line_chars] + "..."
        entry = {"file": ctx.display_path(line[:first]), "lineNumber": line_number, "content": content}
        size = len(f"{entry['file']}:{line_number}:{content}".encode("utf-8")) + 1
        if total_bytes + size > limits.max_output_bytes:
            truncated = True
            break
        total_bytes += size
        detailed.append(entry)
    return detailed, truncated


def _result(query: str, detailed: List[Dict[str, Any]], truncated: bool) -> Dict[str, Any]:
    """组装成功结果。"""

    matches = [f"{m['file']}:{m['lineNumber']}:{m['content']}" for m in detailed]
    if not matches:
        return ok_result(f"No matches found for pattern: {query}", matches=[], detailedMatches=[], query=query, matchCount=0, truncated=False)
    message = f"Found {len(matches)} matches for pattern: {query}"
    if truncated:
        message += f"\n{TRUNCATION_MESSAGE}"
    return ok_result(message, matches=matches, detailedMatches=detailed, query=query, matchCount=len(matches), truncated=truncated)


async def grep(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 grep。"""

    a = _GrepArgs.model_validate(args)
    if not a.query.strip():
        return error_result(ErrorCode.VALIDATION_ERROR, "Missing required parameter: query")

    validation = ctx.validate(a.options.path or ".")
    if not validation.valid or validation.resolved_path is None:
        return error_result(ErrorCode.ACCESS_DENIED, validation.error or "Path validation failed")
    search_dir = validation.resolved_path
    if not search_dir.exists():
        return error_result(ErrorCode.DIR_NOT_FOUND, f"Directory not found: {a.options.path or '.'}")

    limits = ctx.config.grep
    # 子进程输出按“上限 + 余量”截取：解析阶段还会按行/条数再截断
    capture_bytes = limits.max_output_bytes * 2
    result: CommandResult
    try:
        result = await run_command(
            _rg_argv(a, search_dir, exclude_globs=limits.exclude_globs, max_columns=max(limits.max_line_chars * 2, 1000)),
            cwd=ctx.root,
            timeout_ms=limits.timeout_ms,
            max_output_bytes=capture_bytes,
            keep="head",
        )
    except FileNotFoundError:
        try:
            result = await run_command(
                _grep_argv(a, search_dir, exclude_globs=limits.exclude_globs),
                cwd=ctx.root,
                timeout_ms=limits.timeout_ms,
                max_output_bytes=capture_bytes,
                keep="head",
            )
        except FileNotFoundError:
            return error_result(ErrorCode.GREP_EXEC_ERROR, "Neither ripgrep (rg) nor grep is available")

    if result.timeout:
        return error_result(ErrorCode.TIMEOUT, f"Search timed out after {limits.timeout_ms}ms: {a.query}")
    if result.exit_code == 1:
        return _result(a.query, [], False)
    if result.exit_code != 0:
        return error_result(ErrorCode.GREP_EXEC_ERROR, f"Grep error: {result.stderr.strip() or f'exit code {result.exit_code}'}")

    detailed, truncated = _parse_matches(result.stdout, ctx)
    return _result(a.query, detailed, truncated or result.truncated)
