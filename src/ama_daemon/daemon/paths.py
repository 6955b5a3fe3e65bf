"""
daemon 本地路径布局（pid / 日志 / 项目注册表 / 凭据 / 快照影子仓库），全部位于 data_dir 下。
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class DaemonPaths:
    """daemon 数据目录与关键文件路径集合。"""

    data_dir: Path
    pid_file: Path
    log_file: Path
    projects_file: Path
    credentials_file: Path
    snapshot_dir: Path


def get_daemon_paths(*, data_dir: Path) -> DaemonPaths:
    """
    获取 daemon 相关路径（均位于 data_dir 下，默认 `~/.ama`）。

    参数：
    - data_dir：应用数据目录
    """

    root = Path(data_dir).expanduser().resolve()
    return DaemonPaths(
        data_dir=root,
        pid_file=root / "daemon.pid",
        log_file=root / "daemon.log",
        projects_file=root / "projects.json",
        credentials_file=root / "credentials.json",
        snapshot_dir=root / "snapshot",
    )
