"""
Dispatcher：把一帧入站消息变成一帧 `tool_result`。

说明：
- tool_call：`projectCwd` 缺省时通过项目注册表由 `projectId` 解析；执行走 `ToolRegistry.execute`
  （其内部已有 per-tool 超时与异常归一化）。`projectId` 未注册时直接返回 PROJECT_NOT_FOUND。
- rpc_call：per-method 超时；`FrameworkError` 投影为 `{error, errorCode}`。
- 最外层兜底：任何意外异常都转换为通用错误，并保留调用方的 `id`。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.core.errors import ErrorCode, FrameworkError, MessageValidationError
from ama_daemon.daemon.protocol import RpcCallMessage, ToolCallMessage, ToolResultMessage, parse_inbound
from ama_daemon.daemon.rpc import RpcHandlers, resolve_method
from ama_daemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    入站消息派发器。

    参数：
    - tools：工具注册表
    - rpc：RPC handler 集合（同时提供项目注册表用于 projectId → cwd 解析）
    - config：有效配置（RPC 超时表）
    """

    def __init__(self, *, tools: ToolRegistry, rpc: RpcHandlers, config: DaemonConfig) -> None:
        """创建派发器。"""

        self._tools = tools
        self._rpc = rpc
        self._config = config

    async def handle_raw(self, raw: Union[str, bytes]) -> Optional[ToolResultMessage]:
        """
        处理一帧原始入站消息。

        返回：
        - ToolResultMessage：需要回写的结果
        - None：畸形帧且无法恢复 id（已记录日志并丢弃）
        """

        try:
            message = parse_inbound(raw)
        except MessageValidationError as exc:
            if exc.message_id is None:
                logger.warning("dropping malformed frame: %s", exc.message)
                return None
            logger.warning("rejecting malformed message: id=%s error=%s", exc.message_id, exc.message)
            return ToolResultMessage.fail(exc.message_id, exc.message, code=exc.code, details=exc.details or None)
        return await self.handle(message)

    async def handle(self, message: Union[ToolCallMessage, RpcCallMessage]) -> ToolResultMessage:
        """处理一条已校验的消息（永不抛出，CancelledError 除外）。"""

        try:
            if isinstance(message, ToolCallMessage):
                return await self._handle_tool_call(message)
            return await self._handle_rpc_call(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("unexpected dispatch failure: id=%s", message.id)
            code = ErrorCode.TOOL_EXECUTION_ERROR if isinstance(message, ToolCallMessage) else ErrorCode.RPC_ERROR
            return ToolResultMessage.fail(message.id, str(exc) or type(exc).__name__, code=code.value)

    async def _handle_tool_call(self, message: ToolCallMessage) -> ToolResultMessage:
        """执行工具调用并投影为 tool_result。"""

        project_cwd = message.project_cwd
        if not project_cwd and message.project_id:
            project_cwd = self._rpc.projects.get_cwd(message.project_id)
            if project_cwd is None:
                logger.warning("tool_call references unknown project: id=%s project=%s", message.id, message.project_id)
                return ToolResultMessage.fail(
                    message.id,
                    f"Project not found: {message.project_id}",
                    code=ErrorCode.PROJECT_NOT_FOUND.value,
                    details={"projectId": message.project_id},
                )
        logger.info("tool_call: id=%s tool=%s", message.id, message.tool)

        response = await self._tools.execute(message.tool, message.args, project_cwd)
        if response.success:
            return ToolResultMessage.ok(message.id, response.data)
        error = response.error
        logger.info(
            "tool failed: id=%s tool=%s code=%s",
            message.id,
            message.tool,
            error.code if error is not None else None,
        )
        return ToolResultMessage.fail(
            message.id,
            error.message if error is not None else "Tool execution failed",
            code=error.code if error is not None else ErrorCode.TOOL_EXECUTION_ERROR.value,
            details=response.data,
        )

    async def _handle_rpc_call(self, message: RpcCallMessage) -> ToolResultMessage:
        """执行 RPC 调用（per-method 超时）并投影为 tool_result。"""

        logger.info("rpc_call: id=%s method=%s", message.id, message.method)
        try:
            method = resolve_method(message.method)
            budget_ms = self._config.timeouts.for_method(method.value)
            try:
                result = await asyncio.wait_for(self._rpc.call(message.method, message.args), timeout=budget_ms / 1000.0)
            except asyncio.TimeoutError:
                logger.warning("rpc timed out: id=%s method=%s timeout_ms=%s", message.id, method.value, budget_ms)
                return ToolResultMessage.fail(
                    message.id,
                    f"RPC '{method.value}' timed out after {budget_ms}ms",
                    code=ErrorCode.TIMEOUT.value,
                )
        except FrameworkError as exc:
            logger.info("rpc failed: id=%s method=%s code=%s", message.id, message.method, exc.code)
            return ToolResultMessage.fail(message.id, exc.message, code=exc.code)
        return ToolResultMessage.ok(message.id, result)
