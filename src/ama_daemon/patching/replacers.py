"""
匹配策略（replacer）：按固定顺序由严格到宽松。

约定：
- 每个策略是生成器 `(content, find) -> Iterator[str]`，产出“content 中可能存在的候选文本”。
- 策略只负责产出候选；候选是否真的出现在 content 中、是否唯一，由 `engine.apply` 判定。
"""

from __future__ import annotations

import re
from typing import Callable, Iterator, List, Tuple

from ama_daemon.patching.similarity import line_similarity

Replacer = Callable[[str, str], Iterator[str]]

SINGLE_CANDIDATE_SIMILARITY_THRESHOLD = 0.0
MULTIPLE_CANDIDATES_SIMILARITY_THRESHOLD = 0.3
CONTEXT_MATCH_RATIO = 0.5

_WS_RE = re.compile(r"\s+")
_ESCAPE_RE = re.compile(r"\\(n|t|r|'|\"|`|\\|\n|\$)")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "'": "'", '"': '"', "`": "`", "\\": "\\", "\n": "\n", "$": "$"}


def _block_text(content: str, lines: List[str], start: int, end: int) -> str:
    """返回 content 中第 start..end 行（含两端）对应的原始文本。"""

    offset = sum(len(line) + 1 for line in lines[:start])
    length = sum(len(line) for line in lines[start : end + 1]) + (end - start)
    return content[offset : offset + length]


def _search_lines(find: str) -> List[str]:
    """按行切分 find，并去掉末尾因换行产生的空行。"""

    lines = find.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def simple_replacer(content: str, find: str) -> Iterator[str]:
    """策略 1：字面量精确匹配。"""

    yield find


def line_trimmed_replacer(content: str, find: str) -> Iterator[str]:
    """策略 2：逐行 strip 后比较（容忍行首尾空白差异）。"""

    original = content.split("\n")
    search = _search_lines(find)
    if not search:
        return
    for i in range(len(original) - len(search) + 1):
        if all(original[i + j].strip() == search[j].strip() for j in range(len(search))):
            yield _block_text(content, original, i, i + len(search) - 1)


def block_anchor_replacer(content: str, find: str) -> Iterator[str]:
    """
    策略 3：首/尾行作为锚点，中间行用编辑距离打分。

    规则：
    - find 至少 3 行
    - 候选块：首行 strip 相等，且其后（至少隔一行）第一个 strip 相等的尾行
    - 单候选：相似度 >= 0.0 即接受；多候选：取最高分，且 >= 0.3 才接受
    """

    original = content.split("\n")
    if len(find.split("\n")) < 3:
        return
    search = _search_lines(find)
    first = search[0].strip()
    last = search[-1].strip()
    search_size = len(search)

    candidates: List[Tuple[int, int]] = []
    for i, line in enumerate(original):
        if line.strip() != first:
            continue
        for j in range(i + 2, len(original)):
            if original[j].strip() == last:
                candidates.append((i, j))
                break
    if not candidates:
        return

    def _similarity(start: int, end: int) -> float:
        """中间行平均相似度（按 min(search, actual) - 2 行平均；maxLen 为 0 的行跳过）。"""

        actual_size = end - start + 1
        lines_to_check = min(search_size - 2, actual_size - 2)
        if lines_to_check <= 0:
            return 1.0
        total = 0.0
        for k in range(1, min(search_size - 1, actual_size - 1)):
            a = original[start + k].strip()
            b = search[k].strip()
            if max(len(a), len(b)) == 0:
                continue
            total += line_similarity(a, b) / lines_to_check
        return total

    if len(candidates) == 1:
        start, end = candidates[0]
        if _similarity(start, end) >= SINGLE_CANDIDATE_SIMILARITY_THRESHOLD:
            yield _block_text(content, original, start, end)
        return

    best: Tuple[int, int] | None = None
    best_score = -1.0
    for start, end in candidates:
        score = _similarity(start, end)
        if score > best_score:
            best_score = score
            best = (start, end)
    if best is not None and best_score >= MULTIPLE_CANDIDATES_SIMILARITY_THRESHOLD:
        yield _block_text(content, original, best[0], best[1])


def _normalize_ws(text: str) -> str:
    """把连续空白折叠为单个空格并去掉首尾空白。"""

    return _WS_RE.sub(" ", text).strip()


def whitespace_normalized_replacer(content: str, find: str) -> Iterator[str]:
    """策略 4：空白折叠后比较（单行整行相等 / 行内按词正则匹配 / 多行块）。"""

    normalized_find = _normalize_ws(find)
    lines = content.split("\n")
    for line in lines:
        normalized_line = _normalize_ws(line)
        if normalized_line == normalized_find:
            yield line
            continue
        if normalized_find and normalized_find in normalized_line:
            words = find.strip().split()
            if not words:
                continue
            pattern = r"\s+".join(re.escape(word) for word in words)
            match = re.search(pattern, line)
            if match:
                yield match.group(0)

    find_lines = find.split("\n")
    if len(find_lines) > 1:
        for i in range(len(lines) - len(find_lines) + 1):
            block = "\n".join(lines[i : i + len(find_lines)])
            if _normalize_ws(block) == normalized_find:
                yield block


def _remove_indentation(text: str) -> str:
    """去掉所有非空行共同的最小缩进（空行保持原样）。"""

    lines = text.split("\n")
    non_empty = [line for line in lines if line.strip()]
    if not non_empty:
        return text
    min_indent = min(len(line) - len(line.lstrip()) for line in non_empty)
    return "\n".join(line if not line.strip() else line[min_indent:] for line in lines)


def indentation_flexible_replacer(content: str, find: str) -> Iterator[str]:
    """策略 5：两侧都去掉公共缩进后逐块比较。"""

    normalized_find = _remove_indentation(find)
    content_lines = content.split("\n")
    size = len(find.split("\n"))
    for i in range(len(content_lines) - size + 1):
        block = "\n".join(content_lines[i : i + size])
        if _remove_indentation(block) == normalized_find:
            yield block


def _unescape(text: str) -> str:
    """还原常见转义序列（`\\n` `\\t` `\\r` `\\'` `\\"` `` \\` `` `\\\\` `\\$` 以及反斜杠续行）。"""

    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(0)), text)


def escape_normalized_replacer(content: str, find: str) -> Iterator[str]:
    """策略 6：find 以转义字面量提供时，先反转义再比较。"""

    unescaped = _unescape(find)
    if unescaped in content:
        yield unescaped

    lines = content.split("\n")
    size = len(unescaped.split("\n"))
    for i in range(len(lines) - size + 1):
        block = "\n".join(lines[i : i + size])
        if _unescape(block) == unescaped:
            yield block


def trimmed_boundary_replacer(content: str, find: str) -> Iterator[str]:
    """策略 7：只去掉整个块首尾空白后比较（find 本身已 trim 时跳过）。"""

    trimmed = find.strip()
    if trimmed == find:
        return
    if trimmed in content:
        yield trimmed

    lines = content.split("\n")
    size = len(find.split("\n"))
    for i in range(len(lines) - size + 1):
        block = "\n".join(lines[i : i + size])
        if block.strip() == trimmed:
            yield block


def context_aware_replacer(content: str, find: str) -> Iterator[str]:
    """
    策略 8：首/尾行锚定 + 中间非空行至少 50% 精确相等。

    说明：
    - 块长度必须与 find 行数一致；中间行全为空时视为通过。
    """

    if len(find.split("\n")) < 3:
        return
    find_lines = _search_lines(find)
    content_lines = content.split("\n")
    first = find_lines[0].strip()
    last = find_lines[-1].strip()

    for i, line in enumerate(content_lines):
        if line.strip() != first:
            continue
        for j in range(i + 2, len(content_lines)):
            if content_lines[j].strip() != last:
                continue
            block = content_lines[i : j + 1]
            if len(block) == len(find_lines):
                matching = 0
                non_empty = 0
                for k in range(1, len(block) - 1):
                    a = block[k].strip()
                    b = find_lines[k].strip()
                    if a or b:
                        non_empty += 1
                        if a == b:
                            matching += 1
                if non_empty == 0 or matching / non_empty >= CONTEXT_MATCH_RATIO:
                    yield "\n".join(block)
            break


def multi_occurrence_replacer(content: str, find: str) -> Iterator[str]:
    """策略 9：精确匹配，但逐个枚举每一次出现。"""

    if not find:
        return
    start = 0
    while True:
        index = content.find(find, start)
        if index == -1:
            return
        yield find
        start = index + len(find)


# 固定顺序（由严格到宽松）；engine 取第一个产出有效候选的策略
REPLACERS: Tuple[Tuple[str, Replacer], ...] = (
    ("exact", simple_replacer),
    ("line_trimmed", line_trimmed_replacer),
    ("block_anchor", block_anchor_replacer),
    ("whitespace_normalized", whitespace_normalized_replacer),
    ("indentation_flexible", indentation_flexible_replacer),
    ("escape_normalized", escape_normalized_replacer),
    ("trimmed_boundary", trimmed_boundary_replacer),
    ("context_aware", context_aware_replacer),
    ("multi_occurrence", multi_occurrence_replacer),
)
