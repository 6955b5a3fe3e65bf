"""
组装与前台运行。

说明：
- `build_app` 只做对象组装（不做网络 I/O），测试可注入凭据与连接工厂。
- `run_foreground` 安装 SIGINT/SIGTERM 处理并运行连接循环，直到 stop。
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.daemon.connection import ConnectFn, Connection
from ama_daemon.daemon.credentials import CredentialProvider, FileCredentialProvider
from ama_daemon.daemon.dispatcher import Dispatcher
from ama_daemon.daemon.paths import DaemonPaths, get_daemon_paths
from ama_daemon.daemon.rpc import RpcHandlers
from ama_daemon.projects.registry import ProjectRegistry
from ama_daemon.snapshot.store import SnapshotStore
from ama_daemon.tools import build_tool_registry
from ama_daemon.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class DaemonApp:
    """已组装的 daemon 组件集合。"""

    config: DaemonConfig
    paths: DaemonPaths
    tools: ToolRegistry
    projects: ProjectRegistry
    snapshots: SnapshotStore
    rpc: RpcHandlers
    dispatcher: Dispatcher
    credentials: CredentialProvider
    connection: Connection


def build_app(
    config: DaemonConfig,
    *,
    credentials: Optional[CredentialProvider] = None,
    connect: Optional[ConnectFn] = None,
) -> DaemonApp:
    """
    组装 daemon。

    参数：
    - config：有效配置
    - credentials：凭据提供者（默认读取 `<data_dir>/credentials.json`）
    - connect：WebSocket 连接工厂（默认 websockets）
    """

    paths = get_daemon_paths(data_dir=config.paths.resolved_data_dir())
    tools = build_tool_registry(config)
    projects = ProjectRegistry(paths.projects_file)
    snapshots = SnapshotStore(projects, paths.snapshot_dir, timeout_ms=config.timeouts.for_method("snapshot_track"))
    rpc = RpcHandlers(projects=projects, snapshots=snapshots, config=config)
    dispatcher = Dispatcher(tools=tools, rpc=rpc, config=config)
    if credentials is None:
        credentials = FileCredentialProvider(paths.credentials_file, refresh_url=config.server.refresh_url)
    connection = Connection(config=config, credentials=credentials, dispatcher=dispatcher, connect=connect)
    rpc.set_status_provider(connection.status)
    return DaemonApp(
        config=config,
        paths=paths,
        tools=tools,
        projects=projects,
        snapshots=snapshots,
        rpc=rpc,
        dispatcher=dispatcher,
        credentials=credentials,
        connection=connection,
    )


async def _serve(app: DaemonApp) -> None:
    """运行连接循环；收到 SIGINT/SIGTERM 时显式 stop。"""

    loop = asyncio.get_running_loop()
    runner = app.connection.start()

    def _request_stop() -> None:
        """信号回调：调度一次 stop。"""

        logger.info("shutdown signal received")
        loop.create_task(app.connection.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal handlers unavailable for %s", sig)
    try:
        await runner
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                continue


def run_foreground(config: DaemonConfig) -> int:
    """
    前台运行 daemon。

    返回：
    - 0：正常退出（显式 stop）
    - 1：没有可用凭据（保持断开，不发起连接）
    """

    app = build_app(config)
    if not app.credentials.get_token():
        logger.error("no credentials found at %s; staying disconnected", app.paths.credentials_file)
        return 1
    logger.info("daemon starting: server=%s data_dir=%s", config.server.stream_url, app.paths.data_dir)
    asyncio.run(_serve(app))
    return 0
