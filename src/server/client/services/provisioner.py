"""
二进制准备服务。

保证已安装的节点二进制存在且与清单中的 SHA256 一致；缺失时下载并安装。
是否应用更新由生命周期控制器决定，这里只负责比较与下载。
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sys
from pathlib import Path
from typing import Callable

import httpx
from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import ClientStatus, ResolvedClient

StatusCallback = Callable[[ClientStatus], None]


def _hash_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


async def file_sha256(path: Path) -> str:
    """在线程中计算文件的 SHA256（十六进制小写）。"""
    return await asyncio.to_thread(_hash_file, path)


class InvalidHashError(ValueError):
    def __init__(self, expected: str, actual: str):
        super().__init__(f"SHA256 不匹配: expected={expected}, actual={actual}")
        self.expected = expected
        self.actual = actual


class BinaryProvisioner:
    def __init__(
        self,
        on_status: StatusCallback | None = None,
        settings: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._on_status = on_status
        self._settings = settings or app_config
        self._transport = transport

    def set_status_callback(self, on_status: StatusCallback | None) -> None:
        self._on_status = on_status

    def _publish(self, status: ClientStatus) -> None:
        if self._on_status is not None:
            self._on_status(status)

    @staticmethod
    def is_installed(client: ResolvedClient) -> bool:
        return client.paths.binary.exists()

    async def installed_hash(self, client: ResolvedClient) -> str:
        return await file_sha256(client.paths.binary)

    async def needs_update(self, client: ResolvedClient) -> bool:
        """已安装二进制的校验和与清单不一致即视为有更新（逐字节比较十六进制串）。"""
        return await self.installed_hash(client) != client.config.download.sha256

    async def ensure_installed(self, client: ResolvedClient) -> bool:
        """若未安装则创建目录并下载。返回二进制是否可用。"""
        if self.is_installed(client):
            return True
        client.paths.clients_dir.mkdir(parents=True, exist_ok=True)
        return await self.download(client)

    async def _stream_to_file(self, url: str, target: Path) -> str:
        h = hashlib.sha256()
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.download_timeout,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", url) as r:
                r.raise_for_status()
                with open(target, "wb") as f:
                    async for chunk in r.aiter_bytes():
                        if chunk:
                            f.write(chunk)
                            h.update(chunk)
        return h.hexdigest()

    async def download(self, client: ResolvedClient) -> bool:
        """下载、校验并安装二进制。校验失败时保留原有二进制不动。"""
        paths = client.paths
        expected = client.config.download.sha256
        self._publish(ClientStatus.DOWNLOAD_CLIENT)
        try:
            logger.info("删除旧的下载文件")
            paths.clients_dir.mkdir(parents=True, exist_ok=True)
            paths.download.unlink(missing_ok=True)

            logger.info(f"开始下载节点客户端：{client.config.download.url}")
            actual = await self._stream_to_file(client.config.download.url, paths.download)
            if actual != expected:
                raise InvalidHashError(expected, actual)

            os.replace(paths.download, paths.binary)
            if sys.platform != "win32":
                os.chmod(paths.binary, 0o755)
            logger.info(f"节点客户端下载完成：{paths.binary}")
            return True
        except InvalidHashError as e:
            logger.warning(f"下载的客户端校验失败：{e}")
            paths.download.unlink(missing_ok=True)
            self._publish(ClientStatus.INVALID_HASH)
            return False
        except Exception as e:
            logger.error(f"下载节点客户端失败：{e}")
            try:
                paths.download.unlink(missing_ok=True)
            except OSError:
                pass
            self._publish(ClientStatus.DOWNLOAD_FAILED)
            return False
