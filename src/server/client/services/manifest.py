"""
清单解析服务。

根据当前平台与 CPU 架构确定应使用的节点二进制、版本与校验和：
优先拉取远程清单，失败时静默回退到随应用打包的本地清单。
"""

from __future__ import annotations

import json
import platform
import sys
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import ClientConfig, ClientPaths, ResolvedClient

# platform.machine() -> 清单使用的架构名
_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}


class UnsupportedPlatformError(RuntimeError):
    """清单中没有当前平台/架构的条目。"""

    def __init__(self, platform_id: str, arch: str):
        super().__init__(f"不支持的平台: {platform_id} {arch}")
        self.platform_id = platform_id
        self.arch = arch


def current_platform() -> str:
    return sys.platform


def current_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def load_bundled_manifest(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def lookup_client(manifest: dict[str, Any], client_name: str, platform_id: str, arch: str) -> ClientConfig:
    """查找 manifest[client][platform][arch]，缺失时抛出 UnsupportedPlatformError。"""
    try:
        entry = manifest[client_name][platform_id][arch]
    except (KeyError, TypeError):
        raise UnsupportedPlatformError(platform_id, arch)
    if not entry:
        raise UnsupportedPlatformError(platform_id, arch)
    return ClientConfig.model_validate(entry)


class ManifestResolver:
    def __init__(
        self,
        settings: Config | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        platform_id: str | None = None,
        arch: str | None = None,
    ) -> None:
        self._settings = settings or app_config
        self._transport = transport
        self._platform = platform_id or current_platform()
        self._arch = arch or current_arch()

    async def _fetch_remote(self) -> dict[str, Any] | None:
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self._settings.manifest_timeout,
                follow_redirects=True,
            ) as client:
                r = await client.get(self._settings.manifest_url)
                r.raise_for_status()
                data = r.json()
            if not isinstance(data, dict):
                raise ValueError("远程清单格式错误")
            return data
        except Exception as e:
            logger.info(f"获取远程客户端清单失败，使用本地清单：{e}")
            return None

    async def resolve(self, skip_remote: bool = False) -> ResolvedClient:
        """解析当前平台的客户端配置及本地路径。重启时跳过远程拉取。"""
        logger.debug(f"运行平台: {self._platform} {self._arch}")
        manifest = None if skip_remote else await self._fetch_remote()
        if manifest is None:
            manifest = load_bundled_manifest(self._settings.get_bundled_manifest_path())

        client_config = lookup_client(manifest, self._settings.client_name, self._platform, self._arch)
        clients_dir = self._settings.get_clients_dir()
        return ResolvedClient(
            config=client_config,
            paths=ClientPaths(
                clients_dir=clients_dir,
                binary=clients_dir / client_config.bin,
                download=clients_dir / "download",
            ),
        )
