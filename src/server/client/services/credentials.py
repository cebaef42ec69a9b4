"""
节点 RPC 凭据加载。

从节点自己的 key=value 配置文件中读取 rpcuser / rpcpassword / rpcport。
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Sequence

from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import Credentials

_MAX_PORT = 65535


def _default_node_dir(settings: Config) -> Path:
    folder = settings.node_folder_name
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(appdata) / folder
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / folder
    return Path.home() / f".{folder}"


def _datadir_from_argv(argv: Sequence[str]) -> str | None:
    for arg in argv:
        if "-datadir=" in arg.lower():
            return arg.split("=", 1)[1].strip()
    return None


def get_config_location(settings: Config | None = None, argv: Sequence[str] | None = None) -> Path:
    """节点配置文件位置：命令行 -datadir= > 配置 node_datadir > 平台默认目录。"""
    settings = settings or app_config
    argv = sys.argv if argv is None else argv
    name = settings.node_config_name

    datadir = _datadir_from_argv(argv)
    if datadir:
        return Path(datadir) / name
    if settings.node_datadir:
        return Path(settings.node_datadir) / name
    return _default_node_dir(settings) / name


def parse_credentials(text: str) -> Credentials:
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, val = line.partition("=")
        values[key.strip()] = val.strip()

    port: int | None = None
    try:
        port = int(values.get("rpcport", ""))
    except ValueError:
        port = None
    if port is not None and not 0 < port <= _MAX_PORT:
        logger.warning(f"rpcport 超出范围：{port}")
        port = None

    return Credentials(
        rpc_user=values.get("rpcuser") or None,
        rpc_password=values.get("rpcpassword") or None,
        rpc_port=port or None,
    )


def load_credentials(path: Path) -> Credentials | None:
    """读取配置文件。文件不存在或读取失败返回 None；字段不全时返回不完整的 Credentials。"""
    try:
        if not path.exists():
            return None
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"读取节点配置失败：{e}")
        return None
    return parse_credentials(text)
