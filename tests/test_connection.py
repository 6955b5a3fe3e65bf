from __future__ import annotations

import asyncio
import json
import random
from pathlib import Path
from typing import Any, Dict, List, Optional

from ama_daemon.config.loader import DaemonConfig, load_config_dicts
from ama_daemon.daemon.app import build_app
from ama_daemon.daemon.connection import Connection, ConnectionState
from ama_daemon.daemon.credentials import StaticCredentialProvider
from ama_daemon.daemon.dispatcher import Dispatcher


class _MidRandom(random.Random):
    """random() 恒为 0.5（jitter 为 0）。"""

    def random(self) -> float:
        return 0.5


class _ScriptedCredentials:
    def __init__(self, token: Optional[str], *, refreshed: Optional[str] = None) -> None:
        self.token = token
        self.refreshed = refreshed
        self.refresh_calls = 0

    def get_token(self) -> Optional[str]:
        return self.token

    async def refresh_token(self) -> bool:
        self.refresh_calls += 1
        if self.refreshed is None:
            return False
        self.token = self.refreshed
        return True


class _FakeWebSocket:
    """按脚本产出入站帧；`block=True` 时产出完毕后挂起直到 close()。"""

    def __init__(self, frames: List[str], *, close_code: int = 1006, block: bool = False) -> None:
        self.frames = list(frames)
        self.final_code = close_code
        self.block = block
        self.sent: List[str] = []
        self.close_code: Optional[int] = None
        self._closed = asyncio.Event()

    def __aiter__(self) -> Any:
        return self._iterate()

    async def _iterate(self) -> Any:
        for frame in self.frames:
            yield frame
        if self.block:
            await self._closed.wait()
        if self.close_code is None:
            self.close_code = self.final_code

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        if self.close_code is None:
            self.close_code = 1000
        self._closed.set()


def _config(tmp_path: Path, **reconnect: Any) -> DaemonConfig:
    return load_config_dicts([{"paths": {"data_dir": str(tmp_path / "data")}, "reconnect": reconnect}])


def _dispatcher(config: DaemonConfig) -> Dispatcher:
    return build_app(config, credentials=StaticCredentialProvider("unused")).dispatcher


def test_no_token_stays_disconnected(tmp_path: Path) -> None:
    config = _config(tmp_path)
    attempts: List[str] = []

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        attempts.append(url)
        raise OSError("should not be called")

    conn = Connection(
        config=config,
        credentials=StaticCredentialProvider(None),
        dispatcher=_dispatcher(config),
        connect=_connect,
    )
    asyncio.run(conn.run())

    assert attempts == []
    assert conn.state == ConnectionState.DISCONNECTED
    assert conn.status() == {"connected": False, "state": "disconnected", "reconnectAttempts": 0}


def test_backoff_doubles_and_caps(tmp_path: Path) -> None:
    config = _config(tmp_path, initial_delay_ms=100, max_delay_ms=500, multiplier=2.0)
    credentials = _ScriptedCredentials("token")
    delays: List[float] = []
    attempts = 0

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        nonlocal attempts
        attempts += 1
        if attempts == 5:
            credentials.token = None
        raise OSError("connection refused")

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    conn = Connection(
        config=config,
        credentials=credentials,
        dispatcher=_dispatcher(config),
        connect=_connect,
        sleep=_sleep,
        rng=_MidRandom(),
    )
    asyncio.run(conn.run())

    assert delays == [0.1, 0.2, 0.4, 0.5, 0.5]
    assert conn.reconnect_attempts == 5
    assert conn.state == ConnectionState.DISCONNECTED


def test_jitter_stays_within_ratio(tmp_path: Path) -> None:
    config = _config(tmp_path, initial_delay_ms=1000, max_delay_ms=60000, jitter_ratio=0.25)
    conn = Connection(
        config=config,
        credentials=StaticCredentialProvider("token"),
        dispatcher=_dispatcher(config),
        rng=random.Random(1234),
    )

    delays = [conn.next_reconnect_delay() for _ in range(50)]

    assert all(750 <= d <= 1250 for d in delays)
    assert len(set(delays)) > 1


def test_auth_failure_refreshes_and_reconnects_immediately(tmp_path: Path) -> None:
    config = _config(tmp_path, initial_delay_ms=100)
    credentials = _ScriptedCredentials("old", refreshed="new")
    headers_seen: List[str] = []
    delays: List[float] = []

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        headers_seen.append(headers["Authorization"])
        if len(headers_seen) == 1:
            return _FakeWebSocket([], close_code=config.server.auth_failure_close_code)
        credentials.token = None
        raise OSError("server down")

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    conn = Connection(
        config=config,
        credentials=credentials,
        dispatcher=_dispatcher(config),
        connect=_connect,
        sleep=_sleep,
        rng=_MidRandom(),
    )
    asyncio.run(conn.run())

    assert headers_seen == ["Bearer old", "Bearer new"]
    assert credentials.refresh_calls == 1
    # 刷新成功后立即重连：只有第二次失败产生了一次退避
    assert delays == [0.1]


def test_auth_failure_without_refresh_backs_off(tmp_path: Path) -> None:
    config = _config(tmp_path, initial_delay_ms=100)
    credentials = _ScriptedCredentials("old")
    delays: List[float] = []

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        credentials.token = None
        return _FakeWebSocket([], close_code=config.server.auth_failure_close_code)

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    conn = Connection(
        config=config,
        credentials=credentials,
        dispatcher=_dispatcher(config),
        connect=_connect,
        sleep=_sleep,
        rng=_MidRandom(),
    )
    asyncio.run(conn.run())

    # token 已被清空：不会尝试刷新，直接退避
    assert credentials.refresh_calls == 0
    assert delays == [0.1]


def test_messages_round_trip_and_stop(tmp_path: Path) -> None:
    config = _config(tmp_path)
    ws = _FakeWebSocket(
        [
            json.dumps({"type": "rpc_call", "id": "r-1", "method": "status"}),
            "{garbage",
            json.dumps({"type": "tool_call", "id": "t-1", "tool": "nope", "args": {}}),
        ],
        block=True,
    )

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        assert url == "ws://localhost:3000/agent-streams"
        return ws

    app = build_app(config, credentials=StaticCredentialProvider("token"), connect=_connect)

    async def _main() -> None:
        app.connection.start()
        for _ in range(200):
            if len(ws.sent) >= 2:
                break
            await asyncio.sleep(0.01)
        assert app.connection.state == ConnectionState.CONNECTED
        await app.connection.stop()

    asyncio.run(_main())

    replies = {m["id"]: m for m in (json.loads(s) for s in ws.sent)}
    assert set(replies) == {"r-1", "t-1"}
    assert replies["r-1"]["result"]["connected"] is True
    assert replies["t-1"]["errorCode"] == "UNKNOWN_TOOL"
    assert app.connection.state == ConnectionState.DISCONNECTED


def test_stop_interrupts_backoff(tmp_path: Path) -> None:
    config = _config(tmp_path, initial_delay_ms=60000, max_delay_ms=60000)

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        raise OSError("refused")

    conn = Connection(
        config=config,
        credentials=StaticCredentialProvider("token"),
        dispatcher=_dispatcher(config),
        connect=_connect,
        rng=_MidRandom(),
    )

    async def _main() -> None:
        runner = conn.start()
        for _ in range(200):
            if conn.state == ConnectionState.RECONNECTING:
                break
            await asyncio.sleep(0.01)
        assert conn.state == ConnectionState.RECONNECTING
        await asyncio.wait_for(conn.stop(), timeout=2)
        assert runner.done()

    asyncio.run(_main())

    assert conn.state == ConnectionState.DISCONNECTED
    assert conn.reconnect_attempts == 1


def test_stop_during_handshake_closes_late_socket(tmp_path: Path) -> None:
    config = _config(tmp_path)
    ws = _FakeWebSocket([], block=True)
    handshake_started = asyncio.Event()

    async def _connect(url: str, headers: Dict[str, str]) -> Any:
        handshake_started.set()
        await asyncio.sleep(0.2)
        return ws

    conn = Connection(
        config=config,
        credentials=StaticCredentialProvider("token"),
        dispatcher=_dispatcher(config),
        connect=_connect,
    )

    async def _main() -> None:
        runner = conn.start()
        await asyncio.wait_for(handshake_started.wait(), timeout=2)
        assert conn.state == ConnectionState.CONNECTING
        await asyncio.wait_for(conn.stop(), timeout=2)
        assert runner.done()

    asyncio.run(_main())

    assert ws.close_code == 1000
    assert conn.state == ConnectionState.DISCONNECTED


def test_send_without_socket_is_dropped(tmp_path: Path) -> None:
    config = _config(tmp_path)
    conn = Connection(config=config, credentials=StaticCredentialProvider("token"), dispatcher=_dispatcher(config))

    assert asyncio.run(conn.send("{}")) is False
