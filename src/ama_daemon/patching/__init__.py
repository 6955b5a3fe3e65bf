"""
模糊文本补丁引擎（纯函数，无 IO）。

对外入口：
- `apply(content, old, new, replace_all=False) -> ReplaceOutcome`
- `PatchError` / `PatchErrorKind`：结构化失败类型
- `calculate_diff_stats`：新增/删除行数统计
"""

from __future__ import annotations

from ama_daemon.patching.diff import DiffStats, calculate_diff_stats
from ama_daemon.patching.engine import PatchError, PatchErrorKind, ReplaceOutcome, apply

__all__ = ["DiffStats", "PatchError", "PatchErrorKind", "ReplaceOutcome", "apply", "calculate_diff_stats"]
