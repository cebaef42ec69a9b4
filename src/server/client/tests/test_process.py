"""
进程管理测试（使用当前 Python 解释器作为假节点）：
 - 启动参数计算
 - 非主动停止的退出会通知 on_exit
 - 优雅停止、RPC 失败立即强杀、超时强杀三条路径
"""

import asyncio
import os
import signal
import sys
import time
from pathlib import Path

import pytest

from src.server.config import Config
from src.server.client.schemas import AppSettings
from src.server.client.services.process import NodeProcess, build_startup_args

PYTHON = Path(sys.executable)
SLEEPER = ["-c", "import time; time.sleep(30)"]

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX 信号语义")


def test_build_startup_args_from_settings():
    settings = AppSettings(
        blockIncomingConnections=True,
        onlynet="ipv4, onion",
        proxy="127.0.0.1:9050",
        tor="127.0.0.1:9051",
    )
    args = build_startup_args(["-rescan"], settings, argv=["app", "-datadir=/tmp/x"], forward_argv=True)
    assert args == [
        "-rescan",
        "-datadir=/tmp/x",
        "-listen=0",
        "-onlynet=ipv4",
        "-onlynet=onion",
        "-proxy=127.0.0.1:9050",
        "-tor=127.0.0.1:9051",
    ]


def test_build_startup_args_defaults():
    assert build_startup_args(None, AppSettings(), argv=["app", "-x"], forward_argv=False) == []


@pytest.mark.asyncio
async def test_unexpected_exit_is_reported():
    exits = []
    proc = NodeProcess(on_exit=exits.append, settings=Config(kill_grace_seconds=5))
    await proc.spawn(PYTHON, ["-c", "import sys; sys.exit(3)"])
    assert proc.running is True
    for _ in range(200):
        if exits:
            break
        await asyncio.sleep(0.01)
    assert exits == [3]


@pytest.mark.asyncio
async def test_spawn_twice_is_rejected():
    proc = NodeProcess(settings=Config(kill_grace_seconds=1))
    await proc.spawn(PYTHON, SLEEPER)
    try:
        with pytest.raises(RuntimeError):
            await proc.spawn(PYTHON, SLEEPER)
    finally:
        await proc.stop(_never_succeeds)


async def _never_succeeds() -> bool:
    return False


@pytest.mark.asyncio
async def test_graceful_stop():
    exits = []
    proc = NodeProcess(on_exit=exits.append, settings=Config(kill_grace_seconds=5))
    await proc.spawn(PYTHON, SLEEPER)

    async def request_stop() -> bool:
        os.kill(proc.pid, signal.SIGTERM)
        return True

    started = time.monotonic()
    await proc.stop(request_stop)
    assert time.monotonic() - started < 3
    assert proc.running is False
    assert exits == []


@pytest.mark.asyncio
async def test_failed_rpc_stop_kills_immediately():
    proc = NodeProcess(settings=Config(kill_grace_seconds=5))
    await proc.spawn(PYTHON, SLEEPER)
    started = time.monotonic()
    await proc.stop(_never_succeeds)
    assert time.monotonic() - started < 3
    assert proc.running is False


@pytest.mark.asyncio
async def test_grace_period_forces_kill():
    proc = NodeProcess(settings=Config(kill_grace_seconds=0.3))
    await proc.spawn(PYTHON, SLEEPER)

    async def ignored() -> bool:
        return True

    started = time.monotonic()
    await proc.stop(ignored)
    elapsed = time.monotonic() - started
    assert 0.25 <= elapsed < 3
    assert proc.running is False


@pytest.mark.asyncio
async def test_stop_without_process_returns():
    proc = NodeProcess(settings=Config())
    await proc.stop(_never_succeeds)
    assert proc.running is False
