"""
日志初始化：stderr 输出，可选按大小轮转的文件日志。
"""

from __future__ import annotations

import sys

from loguru import logger

from src.server.config import Config


def setup_logging(cfg: Config) -> None:
    logger.remove()
    logger.add(sys.stderr, level=cfg.log_level)
    if cfg.log_to_file:
        log_dir = cfg.get_data_dir() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "supervisor.log",
            level=cfg.log_level,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
            enqueue=True,
        )
