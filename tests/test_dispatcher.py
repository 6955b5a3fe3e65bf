from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from ama_daemon.config.loader import load_config_dicts
from ama_daemon.daemon.app import DaemonApp, build_app
from ama_daemon.daemon.credentials import StaticCredentialProvider
from ama_daemon.daemon.dispatcher import Dispatcher
from ama_daemon.projects import ProjectRegistry


def _app(tmp_path: Path, **overlay: Any) -> DaemonApp:
    config = load_config_dicts([{"paths": {"data_dir": str(tmp_path / "data")}, **overlay}])
    return build_app(config, credentials=StaticCredentialProvider("token"))


def _handle(app: DaemonApp, frame: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    result = asyncio.run(app.dispatcher.handle_raw(json.dumps(frame)))
    return None if result is None else json.loads(result.to_wire())


def _workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "hello.txt").write_text("hello world", encoding="utf-8")
    return root


def test_tool_call_resolves_project_by_id(tmp_path: Path) -> None:
    app = _app(tmp_path)
    root = _workspace(tmp_path)
    app.projects.register("p1", str(root))

    out = _handle(
        app,
        {"type": "tool_call", "id": "t-1", "tool": "readFile", "args": {"relative_file_path": "hello.txt"}, "projectId": "p1"},
    )

    assert out is not None
    assert out["id"] == "t-1"
    assert out["result"]["content"] == "hello world"
    assert "error" not in out


def test_tool_call_failure_carries_code_and_details(tmp_path: Path) -> None:
    app = _app(tmp_path)
    root = _workspace(tmp_path)

    out = _handle(
        app,
        {
            "type": "tool_call",
            "id": "t-2",
            "tool": "readFile",
            "args": {"relative_file_path": "../outside.txt"},
            "projectCwd": str(root),
        },
    )

    assert out is not None
    assert out["errorCode"] == "ACCESS_DENIED"
    assert out["details"]["success"] is False
    assert "result" not in out


def test_mutating_tool_with_unknown_project_is_rejected(tmp_path: Path) -> None:
    app = _app(tmp_path)

    out = _handle(
        app,
        {"type": "tool_call", "id": "t-3", "tool": "editFile", "args": {"target_file": "x", "content": ""}, "projectId": "ghost"},
    )

    assert out is not None
    assert out["errorCode"] == "PROJECT_NOT_FOUND"
    assert out["details"] == {"projectId": "ghost"}


def test_read_only_tool_with_unknown_project_does_not_fall_back_to_cwd(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    app = _app(tmp_path)
    daemon_cwd = tmp_path / "daemon-cwd"
    daemon_cwd.mkdir()
    (daemon_cwd / "secret.txt").write_text("TOP SECRET", encoding="utf-8")
    monkeypatch.chdir(daemon_cwd)

    out = _handle(
        app,
        {"type": "tool_call", "id": "t-6", "tool": "readFile", "args": {"relative_file_path": "secret.txt"}, "projectId": "nope"},
    )

    assert out is not None
    assert out["error"] == "Project not found: nope"
    assert out["errorCode"] == "PROJECT_NOT_FOUND"
    assert "result" not in out


def test_unknown_tool(tmp_path: Path) -> None:
    app = _app(tmp_path)

    out = _handle(app, {"type": "tool_call", "id": "t-4", "tool": "eraseEverything", "args": {}})

    assert out is not None
    assert out["errorCode"] == "UNKNOWN_TOOL"


def test_malformed_frames(tmp_path: Path) -> None:
    app = _app(tmp_path)

    assert asyncio.run(app.dispatcher.handle_raw("{broken")) is None

    out = _handle(app, {"type": "tool_call", "id": "t-5"})
    assert out is not None
    assert out["id"] == "t-5"
    assert out["errorCode"] == "VALIDATION_ERROR"


def test_rpc_project_lifecycle(tmp_path: Path) -> None:
    app = _app(tmp_path)
    root = _workspace(tmp_path)

    registered = _handle(
        app,
        {"type": "rpc_call", "id": "r-1", "method": "register_project", "args": {"projectId": "p1", "cwd": str(root)}},
    )
    assert registered is not None
    assert registered["result"] == {"success": True, "projectId": "p1", "cwd": str(root)}

    listed = _handle(app, {"type": "rpc_call", "id": "r-2", "method": "daemon:list_projects"})
    assert listed is not None
    assert [p["id"] for p in listed["result"]["projects"]] == ["p1"]

    folders = _handle(app, {"type": "rpc_call", "id": "r-3", "method": "get_workspace_folders"})
    assert folders is not None
    assert folders["result"]["folders"][0]["cwd"] == str(root)

    project = _handle(app, {"type": "rpc_call", "id": "r-4", "method": "get_project", "args": {"projectId": "p1"}})
    assert project is not None
    assert project["result"]["project"]["name"] == "workspace"

    removed = _handle(app, {"type": "rpc_call", "id": "r-5", "method": "unregister_project", "args": {"projectId": "p1"}})
    assert removed is not None and removed["result"]["success"] is True

    missing = _handle(app, {"type": "rpc_call", "id": "r-6", "method": "get_project", "args": {"projectId": "p1"}})
    assert missing is not None
    assert missing["errorCode"] == "PROJECT_NOT_FOUND"

    # 注册表已持久化
    assert ProjectRegistry(app.paths.projects_file).list() == []


def test_rpc_errors(tmp_path: Path) -> None:
    app = _app(tmp_path)

    unknown = _handle(app, {"type": "rpc_call", "id": "r-1", "method": "format_disk"})
    assert unknown is not None
    assert unknown["errorCode"] == "UNKNOWN_METHOD"
    assert "format_disk" in unknown["error"]

    invalid = _handle(app, {"type": "rpc_call", "id": "r-2", "method": "register_project", "args": {"projectId": "p1"}})
    assert invalid is not None
    assert invalid["errorCode"] == "VALIDATION_ERROR"

    snapshot = _handle(app, {"type": "rpc_call", "id": "r-3", "method": "snapshot_track", "args": {"projectId": "ghost"}})
    assert snapshot is not None
    assert snapshot["errorCode"] == "PROJECT_NOT_FOUND"


def test_rpc_status_and_context(tmp_path: Path) -> None:
    app = _app(tmp_path)
    root = _workspace(tmp_path)
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("", encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "app.ts").write_text("", encoding="utf-8")

    status = _handle(app, {"type": "rpc_call", "id": "r-1", "method": "status"})
    assert status is not None
    assert status["result"]["connected"] is False
    assert status["result"]["state"] == "disconnected"
    assert status["result"]["reconnectAttempts"] == 0
    assert isinstance(status["result"]["timestamp"], int)
    assert status["result"]["platform"]

    context = _handle(app, {"type": "rpc_call", "id": "r-2", "method": "get_context", "args": {"cwd": str(root)}})
    assert context is not None
    assert sorted(context["result"]["files"]) == ["hello.txt", "src/app.ts"]


class _SlowRpc:
    """只实现 Dispatcher 用到的接口；每次调用都挂起。"""

    def __init__(self, projects: ProjectRegistry) -> None:
        self.projects = projects

    async def call(self, method: str, args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        await asyncio.sleep(5)
        return {}


def test_rpc_timeout(tmp_path: Path) -> None:
    app = _app(tmp_path, timeouts={"rpc": {"status": 50}})
    dispatcher = Dispatcher(tools=app.tools, rpc=_SlowRpc(app.projects), config=app.config)  # type: ignore[arg-type]

    result = asyncio.run(dispatcher.handle_raw(json.dumps({"type": "rpc_call", "id": "r-9", "method": "status"})))

    assert result is not None
    out = json.loads(result.to_wire())
    assert out["errorCode"] == "TIMEOUT"
    assert out["error"] == "RPC 'status' timed out after 50ms"
