"""
凭据提供者（外部协作者接口）。

连接层只依赖两个操作：
- `get_token() -> str | None`
- `await refresh_token() -> bool`

实现：
- `StaticCredentialProvider`：固定 token（测试 / 手工注入）。
- `FileCredentialProvider`：读取 `<data_dir>/credentials.json`（`{access_token, refresh_token}`）；
  刷新时用 httpx 向配置的 refresh_url POST refresh token，并原子写回新 token。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx

from ama_daemon.core.utils import atomic_write_text

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """连接层所需的凭据接口。"""

    def get_token(self) -> Optional[str]:
        """返回当前 access token（没有时为 None）。"""

    async def refresh_token(self) -> bool:
        """刷新 access token；返回是否成功。"""


class StaticCredentialProvider:
    """固定 token 的凭据提供者（refresh 永远失败，除非显式配置了下一个 token）。"""

    def __init__(self, token: Optional[str], *, refreshed_token: Optional[str] = None) -> None:
        """
        参数：
        - token：初始 token
        - refreshed_token：refresh 成功后切换到的 token（None 表示 refresh 失败）
        """

        self._token = token
        self._refreshed_token = refreshed_token
        self.refresh_calls = 0

    def get_token(self) -> Optional[str]:
        """返回当前 token。"""

        return self._token

    async def refresh_token(self) -> bool:
        """切换到 refreshed_token（若有）。"""

        self.refresh_calls += 1
        if self._refreshed_token is None:
            return False
        self._token = self._refreshed_token
        return True


class FileCredentialProvider:
    """
    基于 `credentials.json` 的凭据提供者。

    参数：
    - path：凭据文件路径
    - refresh_url：刷新端点（None 时 refresh 直接失败）
    - timeout_sec：刷新请求超时
    - transport：可选的 httpx transport（测试注入 `httpx.MockTransport`）
    """

    def __init__(
        self,
        path: Path,
        *,
        refresh_url: Optional[str] = None,
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """创建凭据提供者（不做 I/O）。"""

        self._path = Path(path)
        self._refresh_url = refresh_url
        self._timeout_sec = timeout_sec
        self._transport = transport

    def _read(self) -> Dict[str, Any]:
        """读取凭据文件（不存在或损坏时返回空 dict）。"""

        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("failed to read credentials %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def get_token(self) -> Optional[str]:
        """返回 `access_token`。"""

        token = self._read().get("access_token")
        return str(token) if token else None

    async def refresh_token(self) -> bool:
        """
        使用 refresh token 换取新 token 并写回文件。

        返回：
        - True：成功（文件已更新）
        - False：未配置端点 / 没有 refresh token / 请求失败 / 响应缺少 access_token
        """

        if not self._refresh_url:
            return False
        current = self._read()
        refresh = current.get("refresh_token")
        if not refresh:
            return False
        try:
            async with httpx.AsyncClient(timeout=self._timeout_sec, transport=self._transport) as client:
                resp = await client.post(self._refresh_url, json={"refresh_token": refresh})
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("credential refresh failed: %s", exc)
            return False
        if not isinstance(payload, dict) or not payload.get("access_token"):
            logger.warning("credential refresh response missing access_token")
            return False
        updated = {
            "access_token": payload["access_token"],
            "refresh_token": payload.get("refresh_token") or refresh,
        }
        atomic_write_text(self._path, json.dumps(updated, indent=2) + "\n")
        logger.info("credentials refreshed")
        return True
