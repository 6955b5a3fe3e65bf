"""
Daemon 传输层：wire 协议、RPC handlers、派发器、WebSocket 连接与后台进程管理。

常用入口：
- `build_app(config)`：组装 registry / 项目注册表 / 快照 / 派发器 / 连接
- `run_foreground(config)`：前台运行直到 SIGINT/SIGTERM
"""

from __future__ import annotations

from ama_daemon.daemon.app import DaemonApp, build_app, run_foreground

__all__ = ["DaemonApp", "build_app", "run_foreground"]
