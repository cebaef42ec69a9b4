"""
节点 JSON-RPC 客户端。

每次调用都返回统一的 RpcResult；传输错误与 JSON-RPC error 对象都视为失败，
由调用方决定是否重试。
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import Credentials, RpcResult


class RpcClient:
    def __init__(
        self,
        credentials: Callable[[], Credentials | None],
        on_refused: Callable[[], None] | None = None,
        settings: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._on_refused = on_refused
        self._settings = settings or app_config
        self._http = httpx.AsyncClient(transport=transport, timeout=self._settings.rpc_timeout)

    def set_refused_callback(self, on_refused: Callable[[], None] | None) -> None:
        self._on_refused = on_refused

    def _url(self, port: int) -> str:
        return f"http://{self._settings.rpc_host}:{port}/"

    async def call(self, method: str, params: list[Any] | None = None) -> RpcResult:
        creds = self._credentials()
        if creds is None or not creds.complete:
            return RpcResult(success=False, error="缺少 RPC 凭据")

        payload = {
            "jsonrpc": "1.0",
            "id": self._settings.rpc_id,
            "method": method,
            "params": list(params or []),
        }
        try:
            r = await self._http.post(
                self._url(creds.rpc_port),
                json=payload,
                auth=(creds.rpc_user, creds.rpc_password),
            )
        except httpx.ConnectError as e:
            # 127.0.0.1 上连接失败即端口无人监听
            if self._on_refused is not None:
                self._on_refused()
            return RpcResult(success=False, error=f"连接被拒绝: {e}")
        except httpx.HTTPError as e:
            logger.debug(f"RPC {method} 传输错误：{e}")
            return RpcResult(success=False, error=str(e) or type(e).__name__)
        except (httpx.InvalidURL, OSError, OverflowError) as e:
            # 端口越界等在 httpx 之下抛出的错误
            logger.warning(f"RPC {method} 无法发送：{e}")
            return RpcResult(success=False, error=str(e) or type(e).__name__)

        try:
            body = r.json()
        except ValueError:
            return RpcResult(success=False, body=r.text, error=f"HTTP {r.status_code}: 非 JSON 响应")

        if isinstance(body, dict) and body.get("error"):
            return RpcResult(success=False, body=body, error=str(body["error"]))
        if r.status_code >= 400:
            return RpcResult(success=False, body=body, error=f"HTTP {r.status_code}")
        return RpcResult(success=True, body=body)

    async def close(self) -> None:
        await self._http.aclose()
