"""
Batch 执行器：有界并发执行一组工具调用。

规则：
- `batch` 自身永远不可嵌套（DISALLOWED_TOOLS）。
- 超过 `max_calls` 的调用逐条标记 “maximum exceeded” 错误，不影响其余调用。
- 剩余调用由 `max_concurrency` 个 worker 从共享游标取任务执行（唯一的显式并发限制点）。
- 每个调用有独立超时；一个调用超时不会取消兄弟调用。
- 聚合 success 仅当全部调用成功时为 True；`totalCalls == successful + failed == len(results)`。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover
    from ama_daemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DISALLOWED_TOOLS = frozenset({"batch"})


class BatchCall(BaseModel):
    """batch 中的单个调用：`{tool, parameters}`。"""

    model_config = ConfigDict(extra="ignore")

    tool: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class BatchEntryResult(BaseModel):
    """单个调用的执行结果。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tool: str
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0, alias="durationMs")
    timed_out: bool = Field(default=False, alias="timedOut")


class BatchResult(BaseModel):
    """batch 聚合结果。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    success: bool
    message: str
    total_calls: int = Field(alias="totalCalls")
    successful: int
    failed: int
    results: List[BatchEntryResult]

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 camelCase 的 JSONable dict。"""

        return self.model_dump(by_alias=True, exclude_none=True)


class BatchExecutor:
    """
    有界并发的 batch 执行器。

    参数：
    - registry：工具注册表（实际派发由它完成）
    - max_calls：单个 batch 最多执行的调用数
    - max_concurrency：worker 数
    - per_call_timeout_ms：单个调用的超时预算
    """

    def __init__(
        self,
        registry: "ToolRegistry",
        *,
        max_calls: int,
        max_concurrency: int,
        per_call_timeout_ms: int,
    ) -> None:
        """创建执行器。"""

        self._registry = registry
        self._max_calls = max_calls
        self._max_concurrency = max(1, max_concurrency)
        self._per_call_timeout_ms = per_call_timeout_ms

    def _rejection(self, index: int, call: BatchCall) -> Optional[str]:
        """返回该调用的拒绝原因（可执行时返回 None）。"""

        if index >= self._max_calls:
            return f"Maximum of {self._max_calls} tools allowed in batch"
        if call.tool in DISALLOWED_TOOLS:
            return f"Tool '{call.tool}' is not allowed in batch. Disallowed tools: {', '.join(sorted(DISALLOWED_TOOLS))}"
        if self._registry.get_spec(call.tool) is None:
            available = [n for n in self._registry.names() if n not in DISALLOWED_TOOLS]
            return f"Tool '{call.tool}' not found. Available tools for batching: {', '.join(available)}"
        return None

    async def _run_one(self, call: BatchCall, project_cwd: Optional[str]) -> BatchEntryResult:
        """执行单个调用（超时/失败均投影为条目结果）。"""

        start = time.monotonic()
        response = await self._registry.execute(
            call.tool,
            call.parameters,
            project_cwd,
            timeout_ms=self._per_call_timeout_ms,
        )
        return BatchEntryResult(
            tool=call.tool,
            success=response.success,
            result=response.data,
            error=None if response.error is None else response.error.message,
            duration_ms=int((time.monotonic() - start) * 1000),
            timed_out=response.metadata.timed_out,
        )

    async def run(self, calls: List[BatchCall], project_cwd: Optional[str] = None) -> BatchResult:
        """
        执行 batch。

        参数：
        - calls：调用列表（按输入顺序返回结果）
        - project_cwd：sandbox root（透传给每个调用）
        """

        results: List[Optional[BatchEntryResult]] = [None] * len(calls)
        runnable: List[int] = []
        for index, call in enumerate(calls):
            reason = self._rejection(index, call)
            if reason is None:
                runnable.append(index)
            else:
                results[index] = BatchEntryResult(tool=call.tool, success=False, error=reason)

        cursor = 0

        async def _worker() -> None:
            """从共享游标取任务直到耗尽。"""

            nonlocal cursor
            while cursor < len(runnable):
                index = runnable[cursor]
                cursor += 1
                results[index] = await self._run_one(calls[index], project_cwd)

        workers = [asyncio.create_task(_worker()) for _ in range(min(self._max_concurrency, len(runnable)))]
        try:
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for w in workers:
                w.cancel()
            raise

        entries = [r for r in results if r is not None]
        successful = sum(1 for r in entries if r.success)
        failed = len(entries) - successful
        if failed == 0:
            message = f"All {len(entries)} tools executed successfully."
        else:
            message = f"Executed {successful}/{len(entries)} tools successfully. {failed} failed."
        logger.debug("batch finished: total=%s successful=%s failed=%s", len(entries), successful, failed)
        return BatchResult(
            success=failed == 0,
            message=message,
            total_calls=len(entries),
            successful=successful,
            failed=failed,
            results=entries,
        )
