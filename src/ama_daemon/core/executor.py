"""
异步子进程执行（grep / runTerminalCommand / git 共用）。

说明：
- 只接受 argv（不经过 shell 字符串拼接）；需要 shell 语义的调用方显式传 `["sh", "-c", cmd]`。
- stdout/stderr 分别有界缓存：`keep="head"` 保留头部（搜索结果），`keep="tail"` 保留尾部（命令输出）。
- 超时或外层取消（race-against-timer）时终止整个进程组：SIGTERM → (grace) → SIGKILL。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from typing import Literal, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SEC = 0.5
_READ_CHUNK = 64 * 1024


class CommandResult(BaseModel):
    """
    命令执行结果（结构化）。

    字段说明：
    - ok：exit_code == 0 且未超时
    - exit_code：进程退出码；超时被终止时为 None
    - stdout/stderr：捕获到的输出（可能被截断）
    - timeout：是否因超时被终止
    - truncated：stdout/stderr 是否发生截断
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False


class _BoundedBuffer:
    """有界字节缓冲（保留头部或尾部）。"""

    def __init__(self, max_bytes: int, *, keep: Literal["head", "tail"]) -> None:
        """创建缓冲区（max_bytes 为保留上限）。"""

        self._max_bytes = max(0, int(max_bytes))
        self._keep = keep
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        """追加字节；超出上限时按 keep 策略丢弃。"""

        if not chunk:
            return
        if self._keep == "head":
            room = self._max_bytes - len(self._buf)
            if room <= 0:
                self.truncated = True
                return
            if len(chunk) > room:
                self.truncated = True
            self._buf.extend(chunk[:room])
            return

        self._buf.extend(chunk)
        overflow = len(self._buf) - self._max_bytes
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True

    def text(self) -> str:
        """解码为 UTF-8 文本（非法字节替换为 U+FFFD）。"""

        return bytes(self._buf).decode("utf-8", errors="replace")


async def _pump(stream: Optional[asyncio.StreamReader], buf: _BoundedBuffer) -> None:
    """持续读取流直到 EOF。"""

    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        buf.append(chunk)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """终止子进程（POSIX 下终止整个进程组）。"""

    if proc.returncode is not None:
        return
    try:
        if os.name == "nt":
            proc.terminate()
        else:
            os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_SEC)
        return
    except asyncio.TimeoutError:
        pass
    try:
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    await proc.wait()


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Optional[str] = None,
    timeout_ms: int,
    max_output_bytes: int = 1024 * 1024,
    keep: Literal["head", "tail"] = "tail",
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """
    执行 argv 命令并等待结束。

    参数：
    - argv：命令与参数
    - cwd：工作目录
    - timeout_ms：超时预算；超时后终止进程组并返回 timeout=True
    - max_output_bytes：stdout/stderr 各自的保留上限
    - keep：截断时保留头部或尾部
    - env：完整环境变量（None 表示继承当前进程）

    异常：
    - FileNotFoundError：可执行文件不存在（调用方据此做降级，例如 rg → grep）
    - asyncio.CancelledError：外层取消时先终止子进程再向上传播
    """

    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=(os.name != "nt"),
    )
    out = _BoundedBuffer(max_output_bytes, keep=keep)
    err = _BoundedBuffer(max_output_bytes, keep=keep)

    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(_pump(proc.stdout, out), _pump(proc.stderr, err), proc.wait()),
            timeout=timeout_ms / 1000.0,
        )
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("command timed out after %sms: %s", timeout_ms, argv[0] if argv else "")
        await _terminate(proc)
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    exit_code = None if timed_out else proc.returncode
    return CommandResult(
        ok=(not timed_out and exit_code == 0),
        exit_code=exit_code,
        stdout=out.text(),
        stderr=err.text(),
        duration_ms=int((time.monotonic() - start) * 1000),
        timeout=timed_out,
        truncated=out.truncated or err.truncated,
    )


def spawn_detached(argv: Sequence[str], *, cwd: Optional[str] = None) -> int:
    """
    后台启动进程（脱离当前会话；输出丢弃），返回 pid。

    说明：
    - 不等待、不回收；用于 runTerminalCommand 的 is_background 模式。
    """

    proc = subprocess.Popen(  # noqa: S603
        list(argv),
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=(os.name != "nt"),
        close_fds=True,
    )
    return int(proc.pid)
