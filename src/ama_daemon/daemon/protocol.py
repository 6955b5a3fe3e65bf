"""
Wire 协议：JSON over WebSocket。

入站（服务端 → daemon）是封闭的二元联合：
- `{"type":"tool_call","id","tool","args","projectId"?,"projectCwd"?}`
- `{"type":"rpc_call","id","method","args"}`

出站（daemon → 服务端）：
- `{"type":"tool_result","id","result"?,"error"?,"errorCode"?,"details"?}`（result 与 error 二选一）
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ama_daemon.core.errors import MessageValidationError


class ToolCallMessage(BaseModel):
    """工具调用请求。"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: Literal["tool_call"]
    id: str = Field(min_length=1)
    tool: str = Field(min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    project_cwd: Optional[str] = Field(default=None, alias="projectCwd")


class RpcCallMessage(BaseModel):
    """RPC 调用请求。"""

    model_config = ConfigDict(extra="ignore")

    type: Literal["rpc_call"]
    id: str = Field(min_length=1)
    method: str = Field(min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)


InboundMessage = Annotated[Union[ToolCallMessage, RpcCallMessage], Field(discriminator="type")]

_INBOUND_ADAPTER: TypeAdapter[Union[ToolCallMessage, RpcCallMessage]] = TypeAdapter(InboundMessage)


class ToolResultMessage(BaseModel):
    """调用结果（tool_call 与 rpc_call 共用）。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: Literal["tool_result"] = "tool_result"
    id: str
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    details: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "ToolResultMessage":
        """校验 result / error 只能出现其一（details 只能伴随 error）。"""

        if self.error is not None and self.result is not None:
            raise ValueError("tool_result must not carry both result and error")
        if self.error is None and (self.error_code is not None or self.details is not None):
            raise ValueError("errorCode/details require error")
        return self

    @classmethod
    def ok(cls, message_id: str, result: Any) -> "ToolResultMessage":
        """构造成功结果。"""

        return cls(id=message_id, result=result)

    @classmethod
    def fail(
        cls,
        message_id: str,
        error: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "ToolResultMessage":
        """构造失败结果。"""

        return cls(id=message_id, error=error or "Unknown error", error_code=code, details=details)

    def to_wire(self) -> str:
        """序列化为 JSON 文本帧。"""

        return self.model_dump_json(by_alias=True, exclude_none=True)


def _salvage_id(obj: Any) -> Optional[str]:
    """从畸形帧中尽力恢复 `id`（非空字符串才算）。"""

    if isinstance(obj, dict):
        value = obj.get("id")
        if isinstance(value, str) and value:
            return value
    return None


def parse_inbound(raw: Union[str, bytes]) -> Union[ToolCallMessage, RpcCallMessage]:
    """
    解析并校验一帧入站消息。

    参数：
    - raw：文本或二进制帧（UTF-8 JSON）

    返回：
    - ToolCallMessage 或 RpcCallMessage

    异常：
    - MessageValidationError：JSON 解析失败或 schema 不匹配；能恢复 id 时 `message_id` 非空
    """

    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        obj = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MessageValidationError(f"Invalid JSON frame: {exc}") from exc

    try:
        return _INBOUND_ADAPTER.validate_python(obj)
    except ValidationError as exc:
        errors = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        raise MessageValidationError(
            f"Invalid message: {'; '.join(e['loc'] + ': ' + e['msg'] for e in errors)}",
            message_id=_salvage_id(obj),
            details={"errors": errors},
        ) from exc
