"""
命令安全检测（Guard）。

说明：
- 基于正则的拒绝列表：破坏性命令（删除根/家目录、写裸设备、格式化、fork bomb、远程脚本直通 shell 等）
  与危险参数（`--no-preserve-root`、`git push --force`）。
- 只做最小危险模式检测，不是 OS 级隔离；命中即拒绝执行（`BLOCKED_COMMAND`）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple

BLOCKED_PATTERNS: Tuple[re.Pattern[str], ...] = (
    # rm（可带任意 flag）作用于 / ~ /* *
    re.compile(r"\brm\s+(-\w+\s+)*(/ |/\s*$|~|/\*|\*)"),
    re.compile(r"\bdd\s+.*of=/dev/"),
    re.compile(r"\bmkfs\b"),
    re.compile(r":\(\)\s*\{.*\|.*&\s*\}\s*;?\s*:"),
    re.compile(r"\bchmod\s+.*-R.*\s+/\s*$"),
    re.compile(r"\bchown\s+.*-R.*\s+/\s*$"),
    re.compile(r"\b(curl|wget)\s+.*\|\s*(ba)?sh"),
    re.compile(r"\bmv\s+(/|\*)\s"),
    re.compile(r"\bcat\s+/dev/(u?random|zero)\s*>\s*/dev/"),
    re.compile(r"\bformat\s+[A-Z]:", re.IGNORECASE),
    re.compile(r"\bdiskpart\b", re.IGNORECASE),
    re.compile(r"\bcipher\s+/w:", re.IGNORECASE),
)

DANGEROUS_FLAGS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"--no-preserve-root"),
    re.compile(r"\bgit\s+push\s+.*--force\b"),
    re.compile(r"\bgit\s+push\s+-f\b"),
)


@dataclass(frozen=True)
class CommandSafety:
    """命令安全评估输出（safe=False 时 reason 给出命中类别）。"""

    safe: bool
    reason: Optional[str] = None


def evaluate_command_safety(command: str) -> CommandSafety:
    """
    对 shell 命令字符串做危险模式检测。

    参数：
    - command：待执行的命令（`sh -c` 语义）

    返回：
    - CommandSafety
    """

    trimmed = command.strip()
    if not trimmed:
        return CommandSafety(safe=False, reason="Empty command")
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(trimmed):
            return CommandSafety(safe=False, reason="Blocked by safety policy: matches destructive pattern")
    for flag in DANGEROUS_FLAGS:
        if flag.search(trimmed):
            return CommandSafety(safe=False, reason="Blocked by safety policy: dangerous flag detected")
    return CommandSafety(safe=True)
