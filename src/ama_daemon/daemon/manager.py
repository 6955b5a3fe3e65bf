"""
DaemonManager：后台 daemon 进程的生命周期（pid 文件 + 日志文件）。

说明：
- `start()` 以脱离会话的方式启动 `python -m ama_daemon run`，stdout/stderr 追加写入 `daemon.log`，
  并写入 pid 文件；已在运行时先停止旧进程。
- `stop()` 发送 SIGTERM 并删除 pid 文件。
- 存活探测使用 `os.kill(pid, 0)`。
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ama_daemon.daemon.paths import DaemonPaths

logger = logging.getLogger(__name__)

DAEMON_ENV_FLAG = "AMA_DAEMON"


def _pid_alive(pid: int) -> bool:
    """
    判断 pid 是否存活（best-effort）。

    参数：
    - pid：进程号
    """

    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class DaemonManager:
    """
    后台 daemon 管理器。

    参数：
    - paths：daemon 路径集合（pid / log）
    - command：启动命令（默认 `[sys.executable, "-m", "ama_daemon", "run"]`）
    - extra_args：追加到启动命令后的参数（例如 `--config` overlays）
    """

    def __init__(
        self,
        paths: DaemonPaths,
        *,
        command: Optional[Sequence[str]] = None,
        extra_args: Optional[Sequence[str]] = None,
    ) -> None:
        """创建管理器（不做 I/O）。"""

        self._paths = paths
        self._command: List[str] = list(command or [sys.executable, "-m", "ama_daemon", "run"])
        self._extra_args: List[str] = list(extra_args or [])

    @property
    def paths(self) -> DaemonPaths:
        """路径集合。"""

        return self._paths

    def get_pid(self) -> Optional[int]:
        """读取 pid 文件（不存在或内容非法时返回 None）。"""

        try:
            raw = self._paths.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("failed to read pid file %s: %s", self._paths.pid_file, exc)
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def is_running(self) -> bool:
        """pid 文件存在且进程存活。"""

        pid = self.get_pid()
        return pid is not None and _pid_alive(pid)

    def start(self) -> int:
        """
        启动后台 daemon，返回新进程 pid。

        说明：
        - 已在运行时先 stop（与 CLI `start` 的“重启”语义一致）。
        """

        self._paths.data_dir.mkdir(parents=True, exist_ok=True)
        if self.is_running():
            self.stop()

        env: Dict[str, str] = dict(os.environ)
        env[DAEMON_ENV_FLAG] = "1"
        with open(self._paths.log_file, "ab") as log_f:
            proc = subprocess.Popen(  # noqa: S603
                [*self._command, *self._extra_args],
                cwd=os.getcwd(),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_f,
                stderr=log_f,
                start_new_session=True,
                close_fds=True,
            )
        self._paths.pid_file.write_text(str(proc.pid), encoding="utf-8")
        logger.info("daemon started: pid=%s log=%s", proc.pid, self._paths.log_file)
        return int(proc.pid)

    def stop(self) -> bool:
        """
        停止后台 daemon。

        返回：
        - True：已发送 SIGTERM 并删除 pid 文件
        - False：没有 pid 文件或进程已不存在（残留 pid 文件会被清理）
        """

        pid = self.get_pid()
        if pid is None:
            return False
        stopped = True
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            stopped = False
        except PermissionError as exc:
            logger.error("not permitted to stop daemon pid=%s: %s", pid, exc)
            return False
        self._remove_pid_file()
        logger.info("daemon stop requested: pid=%s signalled=%s", pid, stopped)
        return stopped

    def _remove_pid_file(self) -> None:
        """删除 pid 文件（不存在时忽略）。"""

        try:
            Path(self._paths.pid_file).unlink()
        except FileNotFoundError:
            return
