"""
节点进程管理服务。

负责以计算好的启动参数拉起节点二进制、监听其退出，
以及“先 RPC 优雅停止、超时再强制结束”的关闭流程。
同一时刻最多持有一个子进程句柄。
"""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import AppSettings


def build_startup_args(
    commands: Sequence[str] | None,
    settings: AppSettings,
    argv: Sequence[str] = (),
    forward_argv: bool = False,
) -> list[str]:
    """根据命令、透传参数与用户设置计算节点启动参数。"""
    args = [str(c) for c in (commands or [])]
    if forward_argv and len(argv) > 1:
        args.extend(argv[1:])
    if settings.block_incoming_connections:
        args.append("-listen=0")
    if settings.onlynet:
        for net in settings.onlynet.split(","):
            net = net.strip()
            if net:
                args.append(f"-onlynet={net}")
    if settings.proxy:
        args.append(f"-proxy={settings.proxy}")
    if settings.tor:
        args.append(f"-tor={settings.tor}")
    return args


class NodeProcess:
    def __init__(
        self,
        on_exit: Callable[[int | None], None] | None = None,
        settings: Config | None = None,
    ) -> None:
        self._on_exit = on_exit
        self._settings = settings or app_config
        self._proc: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        """是否持有本进程拉起的子进程句柄。"""
        return self._proc is not None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def set_exit_callback(self, on_exit: Callable[[int | None], None] | None) -> None:
        self._on_exit = on_exit

    async def spawn(self, binary: Path, args: Sequence[str]) -> int:
        if self._proc is not None:
            raise RuntimeError("已有节点进程在运行，拒绝重复启动")
        logger.info(f"启动节点客户端：{binary} {' '.join(args)}")
        proc = await asyncio.create_subprocess_exec(
            str(binary),
            *args,
            cwd=str(binary.parent),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        self._proc = proc
        self._stopping = False
        self._watcher = asyncio.create_task(self._watch(proc))
        return proc.pid

    async def _watch(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        logger.info(f"节点进程已退出：pid={proc.pid}, returncode={returncode}")
        if self._stopping or self._proc is not proc:
            return
        if self._on_exit is not None:
            self._on_exit(returncode)

    def kill(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    def release(self) -> None:
        """释放子进程句柄。"""
        self._proc = None
        self._watcher = None
        self._stopping = False

    async def stop(self, request_stop: Callable[[], Awaitable[bool]]) -> None:
        """先发送 RPC stop；RPC 失败或超过宽限期仍未退出则强制结束。"""
        proc, watcher = self._proc, self._watcher
        if proc is None or watcher is None:
            return
        self._stopping = True

        async def graceful() -> None:
            if not await request_stop():
                logger.info("RPC stop 失败，强制结束节点进程")
                self.kill()

        graceful_task = asyncio.create_task(graceful())
        try:
            done, _ = await asyncio.wait({watcher}, timeout=self._settings.kill_grace_seconds)
            if not done:
                logger.info("节点未能优雅退出，强制结束")
                self.kill()
                await asyncio.shield(watcher)
        finally:
            graceful_task.cancel()
            self.release()
