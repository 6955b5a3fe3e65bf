"""
Connection：到远端 agent 服务的持久 WebSocket 连接（状态机 + 重连退避）。

状态：`DISCONNECTED → CONNECTING → CONNECTED → RECONNECTING → CONNECTING → …`，只有显式 stop 终止。

规则：
- 没有凭据时保持 DISCONNECTED，不发起连接。
- 连接建立后重连计数归零。
- 非 stop 导致的断开：若 close code 表示鉴权失败，先尝试刷新凭据；成功则立即重连（计数归零），
  失败或其它 close code 进入指数退避（倍增、封顶、±jitter）。
- 每帧入站消息在独立 task 中处理，不阻塞后续接收；发送由锁串行化。

依赖全部可注入（connect / sleep / rng），便于确定性测试。
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ama_daemon.config.loader import DaemonConfig
from ama_daemon.daemon.credentials import CredentialProvider
from ama_daemon.daemon.dispatcher import Dispatcher

logger = logging.getLogger(__name__)

_AUTH_REJECT_STATUSES = (401, 403)


class ConnectionState(str, Enum):
    """连接状态。"""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class WebSocketLike(Protocol):
    """Connection 使用到的 WebSocket 子集（websockets ClientConnection 满足）。"""

    close_code: Optional[int]

    def __aiter__(self) -> Any:
        """逐帧迭代入站消息。"""

    async def send(self, message: str) -> None:
        """发送一帧文本。"""

    async def close(self) -> None:
        """关闭连接。"""


ConnectFn = Callable[[str, Dict[str, str]], Awaitable[WebSocketLike]]
SleepFn = Callable[[float], Awaitable[Any]]


async def _default_connect(url: str, headers: Dict[str, str]) -> WebSocketLike:
    """使用 websockets 建立客户端连接。"""

    return await ws_connect(url, additional_headers=headers)


class Connection:
    """
    daemon 与远端服务之间的连接。

    参数：
    - config：有效配置（server / reconnect）
    - credentials：凭据提供者
    - dispatcher：入站消息派发器
    - connect：建立连接的工厂（默认 websockets）
    - sleep：退避等待函数（默认 asyncio.sleep，单位秒）
    - rng：jitter 随机源
    """

    def __init__(
        self,
        *,
        config: DaemonConfig,
        credentials: CredentialProvider,
        dispatcher: Dispatcher,
        connect: Optional[ConnectFn] = None,
        sleep: Optional[SleepFn] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """创建连接（不做 I/O；调用 `start()` 或 `run()` 后才连接）。"""

        self._config = config
        self._credentials = credentials
        self._dispatcher = dispatcher
        self._connect = connect or _default_connect
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._stopping = False
        self._ws: Optional[WebSocketLike] = None
        self._send_lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task[None]] = set()
        self._runner: Optional[asyncio.Task[None]] = None
        self._backoff: Optional[asyncio.Future[Any]] = None

    @property
    def state(self) -> ConnectionState:
        """当前状态。"""

        return self._state

    @property
    def reconnect_attempts(self) -> int:
        """连续重连次数（连接成功或鉴权刷新成功后归零）。"""

        return self._reconnect_attempts

    def status(self) -> Dict[str, Any]:
        """返回连接状态快照（供 `status` RPC 使用）。"""

        return {
            "connected": self._state == ConnectionState.CONNECTED,
            "state": self._state.value,
            "reconnectAttempts": self._reconnect_attempts,
        }

    def next_reconnect_delay(self) -> int:
        """
        计算下一次重连等待（毫秒）。

        说明：
        - base = min(initial * multiplier^attempts, max)
        - delay = base ± jitter_ratio * base，结果截断到 [0, max]
        """

        policy = self._config.reconnect
        base = min(policy.initial_delay_ms * (policy.multiplier**self._reconnect_attempts), policy.max_delay_ms)
        jitter = base * policy.jitter_ratio * (self._rng.random() * 2 - 1)
        return int(min(max(base + jitter, 0), policy.max_delay_ms))

    def start(self) -> asyncio.Task[None]:
        """在后台启动连接循环；返回 runner task。"""

        if self._runner is None or self._runner.done():
            self._stopping = False
            self._runner = asyncio.create_task(self.run())
        return self._runner

    async def stop(self) -> None:
        """显式关闭：取消退避计时、关闭 socket、取消在途调用，状态直接回到 DISCONNECTED。"""

        self._stopping = True
        if self._backoff is not None and not self._backoff.done():
            self._backoff.cancel()
        ws = self._ws
        if ws is not None:
            await self._close_quietly(ws)
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._runner is not None and self._runner is not asyncio.current_task():
            await asyncio.gather(self._runner, return_exceptions=True)
        self._state = ConnectionState.DISCONNECTED
        logger.info("connection stopped")

    async def _close_quietly(self, ws: WebSocketLike) -> None:
        """关闭 socket；关闭过程中的网络错误只记录 debug 日志。"""

        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            logger.debug("error while closing websocket: %s", exc)

    async def run(self) -> None:
        """连接主循环：直到 stop 或没有凭据为止。"""

        url = self._config.server.stream_url
        while not self._stopping:
            token = self._credentials.get_token()
            if not token:
                logger.info("no auth token available; staying disconnected")
                break

            self._state = ConnectionState.CONNECTING
            close_code: Optional[int] = None
            try:
                ws = await self._connect(url, {"Authorization": f"Bearer {token}"})
            except InvalidStatus as exc:
                status_code = exc.response.status_code
                logger.warning("connection rejected: url=%s status=%s", url, status_code)
                if status_code in _AUTH_REJECT_STATUSES:
                    close_code = self._config.server.auth_failure_close_code
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("connection failed: url=%s error=%s", url, exc)
            else:
                if self._stopping:
                    # stop() 在握手期间被调用：此时没有可关闭的 socket，由这里负责关闭
                    await self._close_quietly(ws)
                    break
                close_code = await self._serve(ws)

            if self._stopping:
                break
            await self.on_close(close_code)
        self._state = ConnectionState.DISCONNECTED

    async def _serve(self, ws: WebSocketLike) -> Optional[int]:
        """连接已建立：接收消息直到断开，返回 close code。"""

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        logger.info("connected to server")
        try:
            async for raw in ws:
                self._spawn(raw)
        except ConnectionClosed as exc:
            logger.debug("connection closed: %s", exc)
        finally:
            self._ws = None
        logger.info("disconnected from server: code=%s", ws.close_code)
        return ws.close_code

    async def on_close(self, code: Optional[int]) -> None:
        """
        处理一次非 stop 导致的断开（在返回后由主循环重新连接）。

        说明：
        - 鉴权失败 close code 且有 token：先刷新凭据；成功则计数归零并立即返回。
        - 其它情况：计算退避、计数 +1、进入 RECONNECTING 并等待。
        """

        if self._stopping:
            return
        if code == self._config.server.auth_failure_close_code and self._credentials.get_token():
            try:
                refreshed = await self._credentials.refresh_token()
            except Exception:
                logger.exception("credential refresh raised")
                refreshed = False
            if refreshed:
                logger.info("credentials refreshed after auth failure; reconnecting immediately")
                self._reconnect_attempts = 0
                return

        delay_ms = self.next_reconnect_delay()
        self._reconnect_attempts += 1
        self._state = ConnectionState.RECONNECTING
        logger.info("reconnecting in %.1fs (attempt %s)", delay_ms / 1000.0, self._reconnect_attempts)
        self._backoff = asyncio.ensure_future(self._sleep(delay_ms / 1000.0))
        try:
            await self._backoff
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        finally:
            self._backoff = None

    def _spawn(self, raw: Union[str, bytes]) -> None:
        """为一帧入站消息创建独立处理 task。"""

        task = asyncio.create_task(self._handle(raw))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _handle(self, raw: Union[str, bytes]) -> None:
        """派发一帧消息并回写结果。"""

        result = await self._dispatcher.handle_raw(raw)
        if result is not None:
            await self.send(result.to_wire())

    async def send(self, text: str) -> bool:
        """
        发送一帧文本（发送锁串行化）。

        返回：
        - 是否已发送（未连接或连接已关闭时为 False）
        """

        async with self._send_lock:
            ws = self._ws
            if ws is None:
                logger.warning("dropping outbound frame: not connected")
                return False
            try:
                await ws.send(text)
            except ConnectionClosed as exc:
                logger.warning("dropping outbound frame: connection closed (%s)", exc)
                return False
        return True
