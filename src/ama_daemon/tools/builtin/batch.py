"""内置工具：batch（把 `tool_calls` 交给 BatchExecutor 并发执行）。"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode
from ama_daemon.tools.batch import BatchCall, BatchExecutor
from ama_daemon.tools.protocol import ToolName, ToolSpec, error_result
from ama_daemon.tools.registry import ToolContext


class _BatchArgs(BaseModel):
    """batch 输入参数。"""

    model_config = ConfigDict(extra="ignore")

    tool_calls: List[BatchCall] = Field(min_length=1)


BATCH_SPEC = ToolSpec(
    name=ToolName.BATCH,
    description="Execute several independent tool calls concurrently (bounded pool; batch cannot be nested).",
)


async def batch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    """执行 batch；部分失败时 success=false 且 error=BATCH_PARTIAL_FAILURE（results 仍完整返回）。"""

    a = _BatchArgs.model_validate(args)
    if ctx.registry is None:
        return error_result(ErrorCode.TOOL_EXECUTION_ERROR, "batch requires a tool registry")

    limits = ctx.config.batch
    executor = BatchExecutor(
        ctx.registry,
        max_calls=limits.max_calls,
        max_concurrency=limits.max_concurrency,
        per_call_timeout_ms=limits.per_call_timeout_ms,
    )
    result = (await executor.run(a.tool_calls, ctx.project_cwd)).to_jsonable()
    if not result["success"]:
        result["error"] = ErrorCode.BATCH_PARTIAL_FAILURE.value
    return result
