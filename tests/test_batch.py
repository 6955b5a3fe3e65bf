from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Dict

from ama_daemon.config.loader import load_config, load_config_dicts
from ama_daemon.tools import build_tool_registry
from ama_daemon.tools.batch import BatchCall, BatchExecutor
from ama_daemon.tools.protocol import ToolName, ToolSpec
from ama_daemon.tools.registry import ToolContext


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    (root / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "b.txt").write_text("beta", encoding="utf-8")
    return root


def test_batch_tool_runs_calls_in_input_order(tmp_path: Path) -> None:
    root = _project(tmp_path)
    registry = build_tool_registry(load_config(env={}))

    resp = asyncio.run(
        registry.execute(
            "batch",
            {
                "tool_calls": [
                    {"tool": "readFile", "parameters": {"relative_file_path": "b.txt"}},
                    {"tool": "readFile", "parameters": {"relative_file_path": "a.txt"}},
                ]
            },
            str(root),
        )
    )

    assert resp.success is True
    assert resp.data is not None
    assert resp.data["totalCalls"] == 2
    assert resp.data["message"] == "All 2 tools executed successfully."
    assert [r["result"]["content"] for r in resp.data["results"]] == ["beta", "alpha"]


def test_batch_partial_failure_keeps_all_results(tmp_path: Path) -> None:
    root = _project(tmp_path)
    registry = build_tool_registry(load_config(env={}))

    resp = asyncio.run(
        registry.execute(
            "batch",
            {
                "tool_calls": [
                    {"tool": "readFile", "parameters": {"relative_file_path": "a.txt"}},
                    {"tool": "readFile", "parameters": {"relative_file_path": "missing.txt"}},
                    {"tool": "batch", "parameters": {"tool_calls": []}},
                    {"tool": "noSuchTool", "parameters": {}},
                ]
            },
            str(root),
        )
    )

    assert resp.success is False
    assert resp.error is not None and resp.error.code == "BATCH_PARTIAL_FAILURE"
    assert resp.data is not None
    assert (resp.data["successful"], resp.data["failed"]) == (1, 3)
    assert resp.data["message"] == "Executed 1/4 tools successfully. 3 failed."
    results = resp.data["results"]
    assert results[0]["success"] is True
    assert "File not found" in results[1]["error"]
    assert results[2]["error"] == "Tool 'batch' is not allowed in batch. Disallowed tools: batch"
    assert results[3]["error"].startswith("Tool 'noSuchTool' not found. Available tools for batching: readFile")


def test_batch_rejects_calls_beyond_cap(tmp_path: Path) -> None:
    root = _project(tmp_path)
    registry = build_tool_registry(load_config(env={}))
    executor = BatchExecutor(registry, max_calls=2, max_concurrency=2, per_call_timeout_ms=5000)
    calls = [BatchCall(tool="readFile", parameters={"relative_file_path": "a.txt"}) for _ in range(4)]

    result = asyncio.run(executor.run(calls, str(root)))

    assert result.total_calls == 4
    assert [r.success for r in result.results] == [True, True, False, False]
    assert result.results[2].error == "Maximum of 2 tools allowed in batch"


def test_batch_requires_at_least_one_call() -> None:
    registry = build_tool_registry(load_config(env={}))

    resp = asyncio.run(registry.execute("batch", {"tool_calls": []}, None))

    assert resp.error is not None and resp.error.code == "VALIDATION_ERROR"


def test_hanging_call_times_out_without_blocking_others(tmp_path: Path) -> None:
    root = _project(tmp_path)
    registry = build_tool_registry(load_config(env={}))

    async def _hang(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
        await asyncio.sleep(30)
        return {"success": True}

    registry.register(ToolSpec(name=ToolName.GLOB, description="hangs"), _hang, override=True)
    executor = BatchExecutor(registry, max_calls=25, max_concurrency=5, per_call_timeout_ms=100)
    calls = [
        BatchCall(tool="glob", parameters={"pattern": "*"}),
        BatchCall(tool="readFile", parameters={"relative_file_path": "a.txt"}),
    ]

    start = time.monotonic()
    result = asyncio.run(executor.run(calls, str(root)))
    elapsed = time.monotonic() - start

    assert elapsed < 5
    assert result.results[0].success is False
    assert result.results[0].timed_out is True
    assert result.results[1].success is True
    assert result.to_jsonable()["results"][0]["timedOut"] is True


def test_concurrency_is_bounded() -> None:
    config = load_config_dicts([{"batch": {"max_concurrency": 2}}])
    registry = build_tool_registry(config)
    active = 0
    peak = 0

    async def _track(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return {"success": True}

    registry.register(ToolSpec(name=ToolName.GLOB, description="tracked"), _track, override=True)

    resp = asyncio.run(
        registry.execute("batch", {"tool_calls": [{"tool": "glob", "parameters": {}} for _ in range(6)]}, None)
    )

    assert resp.success is True
    assert peak == 2
