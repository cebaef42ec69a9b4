"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.normalise_log_level: 日志级别统一为大写
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


class Config(BaseSettings):
    # 节点客户端清单
    client_name: str = "Lindad"
    manifest_url: str = "https://raw.githubusercontent.com/thelindaprojectinc/altitude/master/clientBinaries.json"
    manifest_timeout: float = 10.0
    bundled_manifest_path: str = ""

    # 本地目录
    data_dir: str = ""
    node_datadir: str = ""
    node_config_name: str = "Linda.conf"
    node_folder_name: str = "Linda"

    # RPC 与进程
    rpc_host: str = "127.0.0.1"
    rpc_timeout: float = 10.0
    rpc_id: str = "Tunnel"
    kill_grace_seconds: float = 10.0
    poll_interval: float = 1.0
    download_timeout: float = 300.0
    forward_argv: bool = False
    autostart: bool = True

    # 日志与命令通道
    log_level: str = "INFO"
    log_to_file: bool = True
    require_token: bool = True

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> str:
        if value is None or value == "":
            return "INFO"
        return str(value).strip().upper()

    def get_data_dir(self) -> Path:
        """获取数据目录，默认位于工作目录下的 data。"""
        if self.data_dir:
            return Path(self.data_dir).absolute()
        return (Path.cwd() / "data").absolute()

    def get_clients_dir(self) -> Path:
        return self.get_data_dir() / "clients"

    def get_settings_file(self) -> Path:
        return self.get_data_dir() / "settings.json"

    def get_bundled_manifest_path(self) -> Path:
        if self.bundled_manifest_path:
            return Path(self.bundled_manifest_path)
        return Path(__file__).resolve().parent / "client" / "assets" / "client_binaries.json"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except Exception:
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按键名/别名返回字段值。"""
                self._load()
                data = self._data or {}
                key_alias = getattr(field, "alias", None) or field_name
                if isinstance(data, dict):
                    if key_alias in data:
                        return data[key_alias], key_alias, True
                    if field_name in data:
                        return data[field_name], field_name, True
                return None, None, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()
