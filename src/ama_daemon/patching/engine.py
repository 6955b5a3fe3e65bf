"""
模糊补丁引擎：`apply(content, old, new, replace_all) -> ReplaceOutcome`。

规则：
- 按 `REPLACERS` 顺序尝试；第一个“至少产出一个出现在 content 中的候选”的策略胜出，后续策略不再尝试。
- 胜出策略的所有候选在 content 中的出现位置合并为互不重叠的 span 集合：
  - 恰好 1 个 span：替换它
  - 多于 1 个 span：`NOT_UNIQUE`（除非 replace_all，此时替换全部 span）
- 纯函数：不做任何 IO（写回磁盘由调用方负责）。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple

from ama_daemon.patching.replacers import REPLACERS


class PatchErrorKind(str, Enum):
    """补丁失败类型（结构化；调用方按 kind 映射错误码，不做字符串匹配）。"""

    NOT_FOUND = "NOT_FOUND"
    NOT_UNIQUE = "NOT_UNIQUE"
    IDENTICAL = "IDENTICAL"


_MESSAGES = {
    PatchErrorKind.NOT_FOUND: (
        "old_string not found in content. It must match the file contents exactly, "
        "including whitespace, indentation, and line endings."
    ),
    PatchErrorKind.NOT_UNIQUE: (
        "Found multiple matches for old_string. Provide more surrounding lines in old_string "
        "to identify the correct match, or set replaceAll."
    ),
    PatchErrorKind.IDENTICAL: "No changes to apply: old_string and new_string are identical.",
}


class PatchError(Exception):
    """补丁失败（`kind` 为 `PatchErrorKind`）。"""

    def __init__(self, kind: PatchErrorKind, *, strategy: str | None = None, occurrences: int = 0) -> None:
        """创建补丁错误（消息由 kind 决定）。"""

        super().__init__(_MESSAGES[kind])
        self.kind = kind
        self.strategy = strategy
        self.occurrences = occurrences


@dataclass(frozen=True)
class ReplaceOutcome:
    """
    补丁成功结果。

    字段：
    - content：替换后的完整内容
    - matched：实际被替换的原文（模糊匹配后的区域；replace_all 时为第一个 span）
    - occurrences：被替换的 span 数
    - strategy：胜出策略名
    """

    content: str
    matched: str
    occurrences: int
    strategy: str


def _find_spans(content: str, candidate: str) -> List[Tuple[int, int]]:
    """枚举 candidate 在 content 中的所有（不重叠）出现位置。"""

    spans: List[Tuple[int, int]] = []
    start = 0
    while True:
        index = content.find(candidate, start)
        if index == -1:
            return spans
        spans.append((index, index + len(candidate)))
        start = index + len(candidate)


def _non_overlapping(spans: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """按起点排序（同起点优先更长者），贪心保留互不重叠的 span。"""

    kept: List[Tuple[int, int]] = []
    for start, end in sorted(set(spans), key=lambda s: (s[0], -(s[1] - s[0]))):
        if kept and start < kept[-1][1]:
            continue
        kept.append((start, end))
    return kept


def _splice(content: str, spans: List[Tuple[int, int]], new: str) -> str:
    """从右向左替换 span（保持左侧偏移不变）。"""

    out = content
    for start, end in reversed(spans):
        out = out[:start] + new + out[end:]
    return out


def apply(content: str, old: str, new: str, replace_all: bool = False) -> ReplaceOutcome:
    """
    在 content 中定位 old 并替换为 new。

    参数：
    - content：文件当前内容
    - old：待替换文本（允许与文件存在空白/缩进/转义差异）
    - new：替换文本
    - replace_all：是否替换全部出现

    返回：
    - ReplaceOutcome

    异常：
    - PatchError(IDENTICAL)：old == new
    - PatchError(NOT_FOUND)：所有策略都没有候选出现在 content 中
    - PatchError(NOT_UNIQUE)：胜出策略匹配到多个位置且未设置 replace_all
    """

    if old == new:
        raise PatchError(PatchErrorKind.IDENTICAL)

    if old == "":
        # 空 old_string：只对空内容有定义（整体写入）；非空内容无法定位
        if content == "":
            return ReplaceOutcome(content=new, matched="", occurrences=1, strategy="exact")
        raise PatchError(PatchErrorKind.NOT_UNIQUE, strategy="exact")

    for name, replacer in REPLACERS:
        spans: List[Tuple[int, int]] = []
        for candidate in replacer(content, old):
            if not candidate:
                continue
            spans.extend(_find_spans(content, candidate))
        if not spans:
            continue

        kept = _non_overlapping(spans)
        if len(kept) > 1 and not replace_all:
            raise PatchError(PatchErrorKind.NOT_UNIQUE, strategy=name, occurrences=len(kept))
        first_start, first_end = kept[0]
        return ReplaceOutcome(
            content=_splice(content, kept, new),
            matched=content[first_start:first_end],
            occurrences=len(kept),
            strategy=name,
        )

    raise PatchError(PatchErrorKind.NOT_FOUND)
