"""
AMA Daemon：本机工具执行运行时（远端 agent 通过 WebSocket 下发结构化命令）。

模块划分：
- `ama_daemon.sandbox`：路径沙箱（项目根目录约束 + symlink 逃逸检测）
- `ama_daemon.patching`：模糊文本补丁引擎（9 种匹配策略）
- `ama_daemon.tools`：工具注册表、内置工具与 batch 执行器
- `ama_daemon.snapshot`：基于 git shadow store 的快照/回滚
- `ama_daemon.daemon`：连接状态机、消息协议、派发与 RPC handlers
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
