from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from ama_daemon.core.errors import MessageValidationError
from ama_daemon.daemon.protocol import RpcCallMessage, ToolCallMessage, ToolResultMessage, parse_inbound


def test_parse_tool_call() -> None:
    raw = json.dumps(
        {
            "type": "tool_call",
            "id": "t-1",
            "tool": "readFile",
            "args": {"relative_file_path": "a.txt"},
            "projectId": "p1",
            "projectCwd": "/work/p1",
        }
    )

    msg = parse_inbound(raw)

    assert isinstance(msg, ToolCallMessage)
    assert msg.tool == "readFile"
    assert msg.project_id == "p1"
    assert msg.project_cwd == "/work/p1"


def test_parse_rpc_call_from_bytes() -> None:
    msg = parse_inbound(b'{"type": "rpc_call", "id": "r-1", "method": "status"}')

    assert isinstance(msg, RpcCallMessage)
    assert msg.args == {}


def test_invalid_json_has_no_id() -> None:
    with pytest.raises(MessageValidationError) as excinfo:
        parse_inbound("{not json")

    assert excinfo.value.message_id is None
    assert excinfo.value.code == "VALIDATION_ERROR"


def test_schema_violation_salvages_id() -> None:
    with pytest.raises(MessageValidationError) as excinfo:
        parse_inbound(json.dumps({"type": "tool_call", "id": "t-9"}))

    assert excinfo.value.message_id == "t-9"
    assert excinfo.value.details["errors"]


def test_unknown_type_is_rejected() -> None:
    with pytest.raises(MessageValidationError) as excinfo:
        parse_inbound(json.dumps({"type": "ping", "id": "x"}))
    assert excinfo.value.message_id == "x"


def test_result_wire_format() -> None:
    ok = json.loads(ToolResultMessage.ok("t-1", {"content": "hi"}).to_wire())
    assert ok == {"type": "tool_result", "id": "t-1", "result": {"content": "hi"}}

    fail = json.loads(ToolResultMessage.fail("t-2", "boom", code="TOOL_TIMEOUT").to_wire())
    assert fail == {"type": "tool_result", "id": "t-2", "error": "boom", "errorCode": "TOOL_TIMEOUT"}


def test_result_cannot_carry_both_outcomes() -> None:
    with pytest.raises(ValidationError):
        ToolResultMessage(id="x", result={"a": 1}, error="nope")
    with pytest.raises(ValidationError):
        ToolResultMessage(id="x", error_code="CODE")
