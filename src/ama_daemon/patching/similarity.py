"""编辑距离与行相似度（block-anchor 策略打分使用）。"""

from __future__ import annotations


def levenshtein(a: str, b: str) -> int:
    """
    计算两个字符串的 Levenshtein 编辑距离（插入/删除/替换代价均为 1）。

    说明：
    - 使用两行滚动数组，空间 O(min(len(a), len(b)))。
    """

    if not a or not b:
        return max(len(a), len(b))
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[len(b)]


def line_similarity(a: str, b: str) -> float:
    """返回 `1 - levenshtein(a, b) / max(len(a), len(b))`；两者皆空时为 1.0。"""

    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / max_len
