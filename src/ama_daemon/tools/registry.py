"""
ToolRegistry：工具注册表与派发（execute）。

本模块提供：
- 注册：`register/get_spec/list_specs`（工具名来自封闭集合 `ToolName`；`ensure_complete` 做完备性检查）
- 执行：`execute(name, args, project_cwd) -> ToolResponse`
  - 未知工具 → `UNKNOWN_TOOL`
  - mutating 工具缺少 projectCwd → `ACCESS_DENIED`
  - 参数校验失败 → `VALIDATION_ERROR`
  - per-tool 超时（race-against-timer）→ `TOOL_TIMEOUT`
  - 其它异常 → 异常自带 code 或 `TOOL_EXECUTION_ERROR`（不向上抛出）
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.core.errors import ErrorCode, FrameworkError
from ama_daemon.sandbox import PathValidation, effective_root, require_project_cwd, validate_path
from ama_daemon.tools.protocol import ToolErrorInfo, ToolMetadata, ToolName, ToolResponse, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], "ToolContext"], Awaitable[Dict[str, Any]]]


@dataclass
class ToolContext:
    """
    Tool 执行上下文（派发层注入）。

    字段：
    - project_cwd：sandbox root；None 表示无项目上下文（只读工具退化为进程 cwd）
    - config：有效配置（上限/超时/忽略集合）
    - registry：所属注册表（batch 工具需要回调派发）
    """

    project_cwd: Optional[str]
    config: DaemonConfig
    registry: Optional["ToolRegistry"] = field(default=None, repr=False)

    @property
    def root(self) -> str:
        """工具的有效根目录。"""

        return effective_root(self.project_cwd)

    def validate(self, path: str) -> PathValidation:
        """把工具参数中的路径约束在有效根目录内。"""

        return validate_path(path, self.root)

    def display_path(self, path: str) -> str:
        """返回相对有效根目录的展示路径（失败时原样返回）。"""

        try:
            return os.path.relpath(path, os.path.realpath(self.root))
        except ValueError:
            return path


class ToolRegistry:
    """
    工具注册表。

    说明：
    - 每个 `ToolName` 恰好对应一个 handler；重复注册需要显式 override。
    - handler 是 `async (args, ctx) -> dict`；返回 dict 中 `success: False` 视为失败。
    """

    def __init__(self, *, config: DaemonConfig) -> None:
        """创建注册表（config 用于超时表与工具上限）。"""

        self._config = config
        self._specs: Dict[ToolName, ToolSpec] = {}
        self._handlers: Dict[ToolName, ToolHandler] = {}

    @property
    def config(self) -> DaemonConfig:
        """有效配置。"""

        return self._config

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        异常：
        - ValueError：重复注册且未设置 override
        """

        if spec.name in self._specs and not override:
            raise ValueError(f"tool already registered: {spec.name.value}")
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def get_spec(self, name: str) -> Optional[ToolSpec]:
        """按名称查询 ToolSpec（未知名称返回 None）。"""

        try:
            return self._specs.get(ToolName(name))
        except ValueError:
            return None

    def list_specs(self) -> List[ToolSpec]:
        """按 `ToolName` 声明顺序返回已注册工具。"""

        return [self._specs[n] for n in ToolName if n in self._specs]

    def names(self) -> List[str]:
        """已注册工具名列表。"""

        return [spec.name.value for spec in self.list_specs()]

    def ensure_complete(self) -> None:
        """
        完备性检查：`ToolName` 的每个成员都必须有 handler。

        异常：
        - RuntimeError：存在未注册的工具
        """

        missing = [n.value for n in ToolName if n not in self._handlers]
        if missing:
            raise RuntimeError(f"tool registry incomplete; missing handlers: {', '.join(missing)}")

    async def execute(
        self,
        name: str,
        args: Optional[Dict[str, Any]],
        project_cwd: Optional[str] = None,
        *,
        timeout_ms: Optional[int] = None,
    ) -> ToolResponse:
        """
        执行一次工具调用。

        参数：
        - name：工具名
        - args：工具参数
        - project_cwd：sandbox root（可选）
        - timeout_ms：覆盖超时预算（batch 内部调用使用 per-call 预算）

        返回：
        - ToolResponse（永不抛出）
        """

        start = time.monotonic()

        def _response(
            *,
            success: bool,
            data: Optional[Dict[str, Any]] = None,
            code: Optional[str] = None,
            message: str = "",
            timed_out: bool = False,
        ) -> ToolResponse:
            """组装 ToolResponse（失败时带 error）。"""

            duration_ms = int((time.monotonic() - start) * 1000)
            return ToolResponse(
                success=success,
                data=data,
                error=None if success else ToolErrorInfo(code=code or ErrorCode.TOOL_EXECUTION_ERROR.value, message=message),
                metadata=ToolMetadata(tool=name, duration_ms=duration_ms, timed_out=timed_out),
            )

        try:
            tool = ToolName(name)
        except ValueError:
            tool = None
        handler = self._handlers.get(tool) if tool is not None else None
        if tool is None or handler is None:
            return _response(
                success=False,
                code=ErrorCode.UNKNOWN_TOOL.value,
                message=f"Unknown tool: {name}. Available tools: {', '.join(self.names())}",
            )

        check = require_project_cwd(tool.value, project_cwd)
        if not check.allowed:
            return _response(success=False, code=ErrorCode.ACCESS_DENIED.value, message=check.error or "")

        budget_ms = timeout_ms if timeout_ms is not None else self._config.timeouts.for_tool(tool.value)
        ctx = ToolContext(project_cwd=project_cwd, config=self._config, registry=self)
        try:
            result = await asyncio.wait_for(handler(dict(args or {}), ctx), timeout=budget_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning("tool timed out: tool=%s timeout_ms=%s", tool.value, budget_ms)
            return _response(
                success=False,
                code=ErrorCode.TOOL_TIMEOUT.value,
                message=f"Tool '{tool.value}' timed out after {budget_ms}ms",
                timed_out=True,
            )
        except ValidationError as exc:
            return _response(success=False, code=ErrorCode.VALIDATION_ERROR.value, message=f"Invalid arguments for {tool.value}: {exc}")
        except FrameworkError as exc:
            return _response(success=False, code=exc.code, message=exc.message)
        except Exception as exc:
            logger.exception("tool failed: tool=%s", tool.value)
            return _response(success=False, code=ErrorCode.TOOL_EXECUTION_ERROR.value, message=str(exc) or type(exc).__name__)

        if not isinstance(result, dict):
            result = {"result": result}
        if result.get("success") is False:
            return _response(
                success=False,
                data=result,
                code=str(result.get("error") or ErrorCode.TOOL_EXECUTION_ERROR.value),
                message=str(result.get("message") or "Tool execution failed"),
            )
        return _response(success=True, data=result)
