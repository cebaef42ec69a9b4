"""
用户设置持久化：跳过的核心更新哈希与节点网络相关选项。
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from ..schemas import AppSettings


class SettingsStore:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AppSettings:
        """读取设置；文件缺失或损坏时返回默认值。"""
        if not self._path.exists():
            return AppSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return AppSettings.model_validate(data if isinstance(data, dict) else {})
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"读取用户设置失败，使用默认设置：{e}")
            return AppSettings()

    def save(self, settings: AppSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps(settings.model_dump(by_alias=True), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        tmp.replace(self._path)

    def set_skip_core_update(self, sha256: str) -> None:
        settings = self.load()
        settings.skip_core_update = sha256
        self.save(settings)
        logger.info(f"已记录跳过的核心更新：{sha256}")
