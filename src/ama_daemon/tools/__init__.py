"""
工具层：封闭工具集合、注册表派发与 batch 执行器。

常用入口：
- `build_tool_registry(config)`：创建并注册全部内置工具
"""

from __future__ import annotations

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.tools.registry import ToolRegistry


def build_tool_registry(config: DaemonConfig) -> ToolRegistry:
    """创建注册表并注册全部内置工具（完备性已校验）。"""

    from ama_daemon.tools.builtin import register_builtin_tools

    registry = ToolRegistry(config=config)
    register_builtin_tools(registry)
    return registry
