"""文本差异统计（基于 difflib）。"""

from __future__ import annotations

import difflib
from dataclasses import dataclass


@dataclass(frozen=True)
class DiffStats:
    """新增/删除行数。"""

    lines_added: int
    lines_removed: int


def calculate_diff_stats(old_content: str, new_content: str) -> DiffStats:
    """按行比较两段文本，返回新增/删除行数（replace 视为删除 + 新增）。"""

    old_lines = old_content.splitlines()
    new_lines = new_content.splitlines()
    added = 0
    removed = 0
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag in ("replace", "delete"):
            removed += i2 - i1
        if tag in ("replace", "insert"):
            added += j2 - j1
    return DiffStats(lines_added=added, lines_removed=removed)
