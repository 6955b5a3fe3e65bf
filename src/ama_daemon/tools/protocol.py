"""
Tool 协议（ToolName / ToolSpec / ToolResponse）。

本模块只定义派发层需要的最小协议：
- ToolName：封闭的工具名集合（每个工具一个枚举值；注册表按它做完备性检查）
- ToolSpec：注册表条目（描述 + 是否 mutating）
- ToolResponse：派发层统一输出 `{success, data, error{code,message}, metadata{tool,durationMs,timedOut}}`
- `ok_result` / `error_result`：handler 返回值（普通 dict）的便捷构造
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ama_daemon.core.errors import ErrorCode


class ToolName(str, Enum):
    """工具名（wire 协议中的 `tool` 字段取值）。"""

    READ_FILE = "readFile"
    EDIT_FILE = "editFile"
    APPLY_PATCH = "applyPatch"
    STRING_REPLACE = "stringReplace"
    DELETE_FILE = "deleteFile"
    GREP = "grep"
    GLOB = "glob"
    LIST_DIRECTORY = "listDirectory"
    RUN_TERMINAL_COMMAND = "runTerminalCommand"
    BATCH = "batch"


class ToolSpec(BaseModel):
    """
    Tool 注册信息。

    字段：
    - name：工具名（封闭集合）
    - description：工具说明
    - mutating：是否修改文件系统/执行命令（缺少 projectCwd 时拒绝）
    """

    model_config = ConfigDict(extra="forbid")

    name: ToolName
    description: str
    mutating: bool = False


class ToolErrorInfo(BaseModel):
    """失败信息（稳定错误码 + 可读消息）。"""

    model_config = ConfigDict(extra="forbid")

    code: str
    message: str


class ToolMetadata(BaseModel):
    """执行元信息。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tool: str
    duration_ms: int = Field(default=0, ge=0, alias="durationMs")
    timed_out: bool = Field(default=False, alias="timedOut")


class ToolResponse(BaseModel):
    """
    派发层统一结果。

    说明：
    - success=True：data 为 handler 返回的 dict
    - success=False：error 必有；data 可能仍携带 handler 的失败结果（便于排查）
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ToolErrorInfo] = None
    metadata: ToolMetadata

    def to_jsonable(self) -> Dict[str, Any]:
        """投影为 camelCase 的 JSONable dict。"""

        return self.model_dump(by_alias=True, exclude_none=True)


def ok_result(message: str, **data: Any) -> Dict[str, Any]:
    """构造成功结果：`{success: True, message, **data}`。"""

    return {"success": True, "message": message, **data}


def error_result(code: ErrorCode | str, message: str, **extra: Any) -> Dict[str, Any]:
    """构造失败结果：`{success: False, error: <code>, message, **extra}`。"""

    code_str = code.value if isinstance(code, ErrorCode) else str(code)
    return {"success": False, "error": code_str, "message": message, **extra}
