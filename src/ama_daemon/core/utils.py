"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

import hashlib
import os
from datetime import datetime, timezone
from pathlib import Path


def now_ms() -> int:
    """返回当前 Unix 时间戳（毫秒）。"""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def sha256_text(text: str) -> str:
    """计算 UTF-8 文本的 sha256（hex）。"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def atomic_write_text(path: Path, text: str) -> None:
    """
    原子写入文本文件（先写 tmp，再 replace）。

    参数：
    - path：目标路径（父目录不存在时自动创建）
    - text：写入内容（UTF-8）
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp.{os.getpid()}")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)
