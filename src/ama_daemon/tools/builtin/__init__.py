"""
内置工具集合与注册入口。

说明：
- `_BUILTIN_TOOL_ENTRIES` 覆盖 `ToolName` 的每个成员（applyPatch / stringReplace 共用同一实现）。
- `register_builtin_tools` 注册后做完备性检查。
"""

from __future__ import annotations

from typing import List, Tuple

from ama_daemon.tools.builtin.batch import BATCH_SPEC, batch
from ama_daemon.tools.builtin.delete_file import DELETE_FILE_SPEC, delete_file
from ama_daemon.tools.builtin.edit_file import EDIT_FILE_SPEC, edit_file
from ama_daemon.tools.builtin.glob_files import GLOB_SPEC, glob_files
from ama_daemon.tools.builtin.grep import GREP_SPEC, grep
from ama_daemon.tools.builtin.list_directory import LIST_DIRECTORY_SPEC, list_directory
from ama_daemon.tools.builtin.read_file import READ_FILE_SPEC, read_file
from ama_daemon.tools.builtin.run_terminal_command import RUN_TERMINAL_COMMAND_SPEC, run_terminal_command
from ama_daemon.tools.builtin.string_replace import APPLY_PATCH_SPEC, STRING_REPLACE_SPEC, string_replace
from ama_daemon.tools.protocol import ToolSpec
from ama_daemon.tools.registry import ToolHandler, ToolRegistry

_BUILTIN_TOOL_ENTRIES: List[Tuple[ToolSpec, ToolHandler]] = [
    (READ_FILE_SPEC, read_file),
    (EDIT_FILE_SPEC, edit_file),
    (APPLY_PATCH_SPEC, string_replace),
    (STRING_REPLACE_SPEC, string_replace),
    (DELETE_FILE_SPEC, delete_file),
    (GREP_SPEC, grep),
    (GLOB_SPEC, glob_files),
    (LIST_DIRECTORY_SPEC, list_directory),
    (RUN_TERMINAL_COMMAND_SPEC, run_terminal_command),
    (BATCH_SPEC, batch),
]


def register_builtin_tools(registry: ToolRegistry, *, override: bool = False) -> None:
    """
    把内置工具注册到 registry。

    参数：
    - registry：目标注册表
    - override：是否覆盖已注册的同名工具

    异常：
    - RuntimeError：注册后仍有 `ToolName` 成员缺少 handler
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler, override=override)
    registry.ensure_complete()
