"""
Daemon 内部错误分类（异常类型 + 稳定错误码）。

说明：
- 对外（wire 协议）只暴露 `errorCode`（英文大写下划线），不暴露异常类型/堆栈。
- 工具 handler 失败时优先返回 `{success: false, error: <code>}` 结果；异常只用于内部控制流
  （例如未知 RPC 方法、消息校验失败），并在派发边界统一归一化。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class ErrorCode(str, Enum):
    """稳定错误码（wire 协议 `errorCode` 字段的取值集合）。"""

    ACCESS_DENIED = "ACCESS_DENIED"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    NOT_A_FILE = "NOT_A_FILE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    DIR_NOT_FOUND = "DIR_NOT_FOUND"
    NOT_A_DIRECTORY = "NOT_A_DIRECTORY"
    INVALID_LINE_RANGE = "INVALID_LINE_RANGE"
    MISSING_LINE_RANGE = "MISSING_LINE_RANGE"
    INVALID_MAX_DEPTH = "INVALID_MAX_DEPTH"
    STRING_NOT_FOUND = "STRING_NOT_FOUND"
    STRING_NOT_UNIQUE = "STRING_NOT_UNIQUE"
    STRINGS_IDENTICAL = "STRINGS_IDENTICAL"
    READ_ERROR = "READ_ERROR"
    WRITE_ERROR = "WRITE_ERROR"
    DELETE_ERROR = "DELETE_ERROR"
    GLOB_ERROR = "GLOB_ERROR"
    LIST_ERROR = "LIST_ERROR"
    TIMEOUT = "TIMEOUT"
    TOOL_TIMEOUT = "TOOL_TIMEOUT"
    BLOCKED_COMMAND = "BLOCKED_COMMAND"
    COMMAND_FAILED = "COMMAND_FAILED"
    BATCH_PARTIAL_FAILURE = "BATCH_PARTIAL_FAILURE"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    UNKNOWN_METHOD = "UNKNOWN_METHOD"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    GREP_EXEC_ERROR = "GREP_EXEC_ERROR"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    RPC_ERROR = "RPC_ERROR"


class AmaDaemonError(Exception):
    """Daemon 内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（CLI 输出与日志使用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(AmaDaemonError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线；通常取 `ErrorCode` 的值）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = str(code.value if isinstance(code, ErrorCode) else code)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class UnknownMethodError(FrameworkError):
    """请求了不存在的 RPC 方法。"""

    def __init__(self, method: str) -> None:
        """创建未知方法错误。"""

        super().__init__(code=ErrorCode.UNKNOWN_METHOD, message=f"Unknown method: {method}", details={"method": method})
        self.method = method


class RpcError(FrameworkError):
    """RPC handler 失败（参数校验失败、项目不存在等）。"""


class MessageValidationError(FrameworkError):
    """
    入站消息解析/校验失败。

    字段：
    - `message_id`：若能从畸形帧中恢复出 `id`，则用于回写关联错误；否则为 None（直接丢弃 + 日志）
    """

    def __init__(self, message: str, *, message_id: str | None = None, details: Dict[str, Any] | None = None) -> None:
        """创建消息校验错误。"""

        super().__init__(code=ErrorCode.VALIDATION_ERROR, message=message, details=details or {})
        self.message_id = message_id


class SnapshotError(AmaDaemonError):
    """快照 git plumbing 调用失败（store 内部使用；对外降级为空结果）。"""
