"""
AMA Daemon CLI（run / start / stop / status / link / unlink / projects）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON（`run` 除外：前台运行，日志写 stderr）
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from ama_daemon.config.loader import DaemonConfig, load_config
from ama_daemon.core.errors import FrameworkError, FrameworkIssue
from ama_daemon.daemon.manager import DaemonManager
from ama_daemon.daemon.paths import get_daemon_paths
from ama_daemon.projects.registry import ProjectRegistry

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _load_effective_config(overlay_paths: List[str]) -> Tuple[Optional[DaemonConfig], Optional[FrameworkIssue]]:
    """
    加载默认配置 + overlays + 环境变量覆盖。

    返回：
    - (config, issue)：失败时 config 为 None
    """

    paths = [Path(p).expanduser() for p in overlay_paths]
    try:
        return load_config(paths), None
    except ValidationError as exc:
        return None, FrameworkIssue(code="CLI_CONFIG_INVALID", message="Config is invalid.", details={"reason": str(exc)})
    except (OSError, ValueError, yaml.YAMLError) as exc:
        return None, FrameworkIssue(code="CLI_CONFIG_LOAD_FAILED", message="Config load failed.", details={"reason": str(exc)})


def _issue_payload(issue: FrameworkIssue) -> Dict[str, Any]:
    """把 FrameworkIssue 投影为 CLI 错误 payload。"""

    return {"ok": False, "error": {"code": issue.code, "message": issue.message, "details": issue.details}}


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="ama-daemon",
        description="AMA Daemon CLI（run/start/stop/status/link/unlink/projects）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    run_p = root_sub.add_parser("run", help="Run the daemon in the foreground")
    _add_common_flags(run_p)

    start_p = root_sub.add_parser("start", help="Start the daemon in the background")
    _add_common_flags(start_p)

    stop_p = root_sub.add_parser("stop", help="Stop the background daemon")
    _add_common_flags(stop_p)

    status_p = root_sub.add_parser("status", help="Show background daemon status")
    _add_common_flags(status_p)

    link_p = root_sub.add_parser("link", help="Register a project directory")
    link_p.add_argument("project_id", help="Project id")
    link_p.add_argument("path", nargs="?", default=".", help="Project directory (default: .)")
    link_p.add_argument("--name", default=None, help="Display name (default: directory name)")
    _add_common_flags(link_p)

    unlink_p = root_sub.add_parser("unlink", help="Unregister a project")
    unlink_p.add_argument("project_id", help="Project id")
    _add_common_flags(unlink_p)

    projects_p = root_sub.add_parser("projects", help="List registered projects")
    _add_common_flags(projects_p)

    return parser


def _configure_logging(config: DaemonConfig) -> None:
    """前台运行时配置 stdlib logging（stderr）。"""

    logging.basicConfig(level=getattr(logging, config.logging.level), format=_LOG_FORMAT, stream=sys.stderr)


def _handle_run(config: DaemonConfig) -> int:
    """前台运行 daemon。"""

    from ama_daemon.daemon.app import run_foreground

    _configure_logging(config)
    return run_foreground(config)


def _handle_start(args: argparse.Namespace, manager: DaemonManager) -> int:
    """后台启动 daemon。"""

    pid = manager.start()
    _dump_json_to_stdout(
        {"ok": True, "pid": pid, "log_file": str(manager.paths.log_file)},
        pretty=bool(args.pretty),
    )
    return 0


def _handle_stop(args: argparse.Namespace, manager: DaemonManager) -> int:
    """停止后台 daemon。"""

    stopped = manager.stop()
    _dump_json_to_stdout({"ok": True, "stopped": stopped}, pretty=bool(args.pretty))
    return 0


def _handle_status(args: argparse.Namespace, manager: DaemonManager) -> int:
    """查询后台 daemon 状态。"""

    running = manager.is_running()
    _dump_json_to_stdout(
        {
            "ok": True,
            "running": running,
            "pid": manager.get_pid() if running else None,
            "pid_file": str(manager.paths.pid_file),
            "log_file": str(manager.paths.log_file),
        },
        pretty=bool(args.pretty),
    )
    return 0


def _handle_projects(args: argparse.Namespace, registry: ProjectRegistry) -> int:
    """执行 link / unlink / projects。"""

    pretty = bool(args.pretty)
    if args.command == "link":
        project_dir = Path(args.path).expanduser().resolve()
        if not project_dir.is_dir():
            _dump_json_to_stdout(
                _issue_payload(
                    FrameworkIssue(
                        code="CLI_PROJECT_DIR_NOT_FOUND",
                        message="Project directory is not found or not a directory.",
                        details={"path": str(project_dir)},
                    )
                ),
                pretty=pretty,
            )
            return 2
        project = registry.register(args.project_id, str(project_dir), args.name)
        _dump_json_to_stdout({"ok": True, "project": project.model_dump()}, pretty=pretty)
        return 0
    if args.command == "unlink":
        existed = registry.unregister(args.project_id)
        _dump_json_to_stdout({"ok": True, "projectId": args.project_id, "removed": existed}, pretty=pretty)
        return 0
    _dump_json_to_stdout({"ok": True, "projects": [p.model_dump() for p in registry.list()]}, pretty=pretty)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    config, issue = _load_effective_config(list(args.config))
    if issue is not None or config is None:
        _dump_json_to_stdout(_issue_payload(issue), pretty=bool(args.pretty))  # type: ignore[arg-type]
        return 2

    if args.command == "run":
        return _handle_run(config)

    paths = get_daemon_paths(data_dir=config.paths.resolved_data_dir())
    extra: List[str] = []
    for p in args.config:
        extra += ["--config", str(Path(p).expanduser().resolve())]
    manager = DaemonManager(paths, extra_args=extra)
    try:
        if args.command == "start":
            return _handle_start(args, manager)
        if args.command == "stop":
            return _handle_stop(args, manager)
        if args.command == "status":
            return _handle_status(args, manager)
        return _handle_projects(args, ProjectRegistry(paths.projects_file))
    except FrameworkError as exc:
        _dump_json_to_stdout(_issue_payload(exc.to_issue()), pretty=bool(args.pretty))
        return 1
    except OSError as exc:
        _dump_json_to_stdout(
            _issue_payload(FrameworkIssue(code="CLI_IO_ERROR", message=str(exc), details={"command": args.command})),
            pretty=bool(args.pretty),
        )
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
