from __future__ import annotations

import os
import secrets
import threading
from pathlib import Path
from typing import Optional

from fastapi import HTTPException, Request, status
from loguru import logger

from src.server.config import config


_SECRET_FILE_NAME = "client.secret"
_CLIENT_SECRET: Optional[str] = None
_LOCK = threading.Lock()

TOKEN_HEADER = "X-Client-Token"
TOKEN_QUERY = "token"


def _get_secret_file_path() -> Path:
    return config.get_data_dir() / _SECRET_FILE_NAME


def load_or_create_secret() -> str:
    """Load the command channel secret from the data dir; create if missing.

    Returns the secret string.
    """
    path = _get_secret_file_path()
    if path.exists():
        try:
            secret = path.read_text(encoding="utf-8").strip()
            if not secret:
                raise ValueError("secret file is empty")
            return secret
        except Exception as e:
            logger.warning(f"读取命令通道密钥失败，将重新生成: {e}")
    secret = secrets.token_urlsafe(48)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(secret + "\n", encoding="utf-8")
        os.chmod(path, 0o600)
    except Exception as e:
        logger.warning(f"写入命令通道密钥文件失败: {e}")
    logger.warning(f"Client secret generated at {path}. Keep it safe.")
    return secret


def init_secret() -> None:
    global _CLIENT_SECRET
    with _LOCK:
        if _CLIENT_SECRET is None:
            _CLIENT_SECRET = load_or_create_secret()


def reset_secret() -> None:
    global _CLIENT_SECRET
    with _LOCK:
        _CLIENT_SECRET = None


def get_secret() -> str:
    if _CLIENT_SECRET is None:
        init_secret()
    assert _CLIENT_SECRET is not None
    return _CLIENT_SECRET


def verify_token(token: Optional[str]) -> bool:
    if not config.require_token:
        return True
    try:
        # constant-time compare
        return secrets.compare_digest(get_secret(), (token or ""))
    except Exception:
        return False


def require_token(request: Request) -> None:
    if not verify_token(request.headers.get(TOKEN_HEADER)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
