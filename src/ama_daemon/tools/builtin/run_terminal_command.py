"""
内置工具：runTerminalCommand。

说明：
- 执行前先过 `evaluate_command_safety`；命中拒绝列表返回 `BLOCKED_COMMAND`（前台/后台一致）。
- 前台：`sh -c <command>`，cwd 为项目根目录；超时终止进程组并返回 `TIMEOUT`；输出按上限保留尾部。
- 后台（is_background）：脱离会话启动后立即返回 pid。
- 失败以结果形式返回（不抛出）。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from ama_daemon.core.errors import ErrorCode
from ama_daemon.core.executor import run_command, spawn_detached
from ama_daemon.safety.command_guard import evaluate_command_safety
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result, ok_result
from ama_daemon.tools.registry import ToolContext

logger = logging.getLogger(__name__)


class _RunTerminalCommandArgs(BaseModel):
    """runTerminalCommand 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    command: str
    is_background: bool = False
    explanation: Optional[str] = None


RUN_TERMINAL_COMMAND_SPEC = ToolSpec(
    name=ToolName.RUN_TERMINAL_COMMAND,
    description="Run a shell command in the project directory (destructive commands are blocked).",
    mutating=True,
)


async def run_terminal_command(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 runTerminalCommand。"""

    a = _RunTerminalCommandArgs.model_validate(args)
    safety = evaluate_command_safety(a.command)
    if not safety.safe:
        logger.warning("blocked command: %r (%s)", a.command, safety.reason)
        return error_result(ErrorCode.BLOCKED_COMMAND, safety.reason or "Blocked by safety policy")

    argv = ["sh", "-c", a.command]
    if a.is_background:
        try:
            pid = spawn_detached(argv, cwd=ctx.root)
        except OSError as exc:
            return error_result(ErrorCode.COMMAND_FAILED, f"Failed to start background command: {exc}")
        logger.info("background command started: pid=%s command=%r", pid, a.command)
        return ok_result(f"Background command started: {a.command}", isBackground=True, pid=pid)

    limits = ctx.config.terminal
    try:
        result = await run_command(
            argv,
            cwd=ctx.root,
            timeout_ms=limits.timeout_ms,
            max_output_bytes=limits.max_output_bytes,
            keep="tail",
        )
    except OSError as exc:
        return error_result(ErrorCode.COMMAND_FAILED, f"Error while executing the terminal command: {exc}")

    if result.timeout:
        return error_result(
            ErrorCode.TIMEOUT,
            f"Command timed out after {limits.timeout_ms}ms",
            stdout=result.stdout,
            stderr=result.stderr,
        )

    payload = {
        "stdout": result.stdout.strip(),
        "stderr": result.stderr.strip(),
        "exitCode": result.exit_code,
        "truncated": result.truncated,
    }
    if result.exit_code == 0:
        return ok_result(f"Command executed successfully: {a.command}", **payload)
    return error_result(ErrorCode.COMMAND_FAILED, f"Command failed with exit code {result.exit_code}: {a.command}", **payload)
