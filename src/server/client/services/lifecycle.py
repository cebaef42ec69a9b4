"""
文件功能：
    节点客户端生命周期控制器：把清单解析、二进制准备、凭据加载、进程管理与
    RPC 轮询串成启动/更新/关闭流程，并在每次状态变化时推送通知。

公开接口：
    - ClientSupervisor: 控制器，持有状态、子进程句柄与待决的更新决定
    - UpdateDecision: 单槽位的“等待用户更新决定”
    - UpdateDecisionPendingError: 已有等待中的更新决定时再次等待

内部方法：
    - ClientSupervisor._wait_for_credentials: 每秒重试读取凭据
    - ClientSupervisor._wait_for_client_ready: 每秒调用 getinfo 直到就绪
    - ClientSupervisor._superseded: 判断当前流程是否已被关闭/重启/意外退出取代

说明：
    - 所有步骤运行在同一个事件循环中，按顺序挂起，不并行执行。
    - restart / apply-update / shutdown 由同一把 asyncio.Lock 串行化。
    - 被取代的启动流程由 stop() 取消；轮询循环也会在每轮检查序列号自行退出。
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any, Sequence

from loguru import logger

from src.server.config import Config, config as app_config
from ..schemas import (
    CallClientRequest,
    ClientCommand,
    ClientFault,
    ClientStatus,
    Credentials,
    ResolvedClient,
    RpcHealth,
    RpcResult,
    StatusPayload,
)
from .credentials import get_config_location, load_credentials
from .events import EventHub
from .manifest import ManifestResolver, UnsupportedPlatformError
from .process import NodeProcess, build_startup_args
from .provisioner import BinaryProvisioner
from .rpc import RpcClient
from .settings_store import SettingsStore

# 这些状态出现时，进行中的轮询放弃
_INTERRUPTED = frozenset(
    {ClientStatus.SHUTTING_DOWN, ClientStatus.RESTARTING, ClientStatus.CLOSED_UNEXPECTEDLY}
)
# 进入这些状态时强制推送 RPC 未就绪
_RPC_DOWN = _INTERRUPTED | {ClientStatus.STOPPED}
# 处于这些状态时子进程退出不算意外
_EXPECTED_EXIT = frozenset(
    {ClientStatus.SHUTTING_DOWN, ClientStatus.RESTARTING, ClientStatus.STOPPED}
)

_LOADING_CODE = -28


class UpdateDecisionPendingError(RuntimeError):
    pass


class UpdateDecision:
    """等待前端的一次性更新决定（True 应用 / False 跳过），无超时。"""

    def __init__(self) -> None:
        self._future: asyncio.Future[bool] | None = None

    @property
    def pending(self) -> bool:
        return self._future is not None and not self._future.done()

    async def wait(self) -> bool:
        if self.pending:
            raise UpdateDecisionPendingError("已有等待中的更新决定")
        self._future = asyncio.get_running_loop().create_future()
        try:
            return await self._future
        finally:
            self._future = None

    def resolve(self, apply: bool) -> bool:
        if not self.pending:
            return False
        assert self._future is not None
        self._future.set_result(apply)
        return True

    def cancel(self) -> None:
        if self.pending:
            assert self._future is not None
            self._future.cancel()


def _loading_message(body: Any) -> str:
    """仅当 JSON-RPC 错误码为 -28（仍在加载）时提取提示信息。"""
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict) and error.get("code") == _LOADING_CODE:
        return str(error.get("message") or "")
    return ""


class ClientSupervisor:
    def __init__(
        self,
        settings: Config | None = None,
        hub: EventHub | None = None,
        store: SettingsStore | None = None,
        resolver: ManifestResolver | None = None,
        provisioner: BinaryProvisioner | None = None,
        process: NodeProcess | None = None,
        rpc: RpcClient | None = None,
        argv: Sequence[str] | None = None,
    ) -> None:
        self._settings = settings or app_config
        self._argv = list(sys.argv if argv is None else argv)
        self._hub = hub or EventHub()
        self._store = store or SettingsStore(self._settings.get_settings_file())
        self._resolver = resolver or ManifestResolver(self._settings)
        self._provisioner = provisioner or BinaryProvisioner(settings=self._settings)
        self._provisioner.set_status_callback(self._set_status)
        self._process = process or NodeProcess(settings=self._settings)
        self._process.set_exit_callback(self._on_process_exit)
        self._rpc = rpc or RpcClient(lambda: self._credentials, settings=self._settings)
        self._rpc.set_refused_callback(self._on_rpc_refused)

        self._config_location = get_config_location(self._settings, self._argv)
        logger.info(f"节点配置文件位置：{self._config_location}")

        self._status = ClientStatus.INITIALISING
        self._fault: ClientFault | None = None
        self._rpc_health = RpcHealth()
        self._client: ResolvedClient | None = None
        self._credentials: Credentials | None = None
        self._decision = UpdateDecision()
        self._generation = 0
        self._start_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # 只读状态
    # ------------------------------------------------------------------

    @property
    def hub(self) -> EventHub:
        return self._hub

    @property
    def status(self) -> ClientStatus:
        return self._status

    @property
    def fault(self) -> ClientFault | None:
        return self._fault

    @property
    def rpc_health(self) -> RpcHealth:
        return self._rpc_health.model_copy()

    @property
    def owns_process(self) -> bool:
        return self._process.running

    @property
    def update_pending(self) -> bool:
        return self._decision.pending

    def status_payload(self) -> StatusPayload:
        return StatusPayload(status=self._status, fault=self._fault)

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    def _set_status(self, status: ClientStatus, fault: ClientFault | None = None) -> None:
        self._status = status
        self._fault = fault
        logger.info(f"节点状态：{status.value}")
        self._hub.publish("STATUS", self.status_payload())
        if status in _RPC_DOWN:
            self._rpc_health = RpcHealth(ready=False, message="")
            self.send_rpc_status()

    def send_status(self) -> None:
        self._hub.publish("STATUS", self.status_payload())

    def send_rpc_status(self) -> None:
        self._hub.publish("RPC", self._rpc_health)

    def _fail(self, exc: BaseException) -> None:
        self._set_status(
            ClientStatus.INTERNAL_ERROR,
            ClientFault(type=type(exc).__name__, message=str(exc)),
        )

    # ------------------------------------------------------------------
    # 回调
    # ------------------------------------------------------------------

    def _on_process_exit(self, returncode: int | None) -> None:
        if self._status in _EXPECTED_EXIT:
            return
        logger.warning(f"节点进程意外退出，当前状态：{self._status.value}，returncode={returncode}")
        self._process.release()
        self._set_status(ClientStatus.CLOSED_UNEXPECTEDLY)

    def _on_rpc_refused(self) -> None:
        if self._status == ClientStatus.RUNNING_EXTERNAL:
            logger.info("外部节点已停止响应")
            self._set_status(ClientStatus.STOPPED)

    # ------------------------------------------------------------------
    # 启动流程
    # ------------------------------------------------------------------

    def _superseded(self, token: int) -> bool:
        return token != self._generation or self._status in _INTERRUPTED

    async def _load_credentials(self) -> Credentials | None:
        credentials = await asyncio.to_thread(load_credentials, self._config_location)
        self._credentials = credentials if credentials is not None and credentials.complete else None
        return credentials

    async def call_client(self, method: str, params: list[Any] | None = None) -> RpcResult:
        return await self._rpc.call(method, params)

    async def start_client(
        self,
        restart: bool = False,
        update: bool = False,
        commands: Sequence[str] | None = None,
    ) -> None:
        token = self._generation
        try:
            self._set_status(ClientStatus.INITIALISING)
            client = await self._resolver.resolve(skip_remote=restart)
            self._client = client

            self._set_status(ClientStatus.CHECK_EXISTS)
            credentials = await self._load_credentials()
            if credentials is not None:
                logger.info("节点配置文件存在")
                if not credentials.complete:
                    logger.info("无法从配置文件中获取 RPC 凭据")
                    self._set_status(ClientStatus.NO_CREDENTIALS)
                    return
                logger.info("检查节点是否已在运行")
                if (await self.call_client("help")).success:
                    logger.info("节点已在运行，跳过启动")
                    if self._process.running:
                        self._set_status(ClientStatus.RUNNING)
                    else:
                        self._set_status(ClientStatus.RUNNING_EXTERNAL)
                    await self._wait_for_client_ready(token)
                    return

            logger.info(f"检查客户端是否存在：{client.paths.binary}")
            if not self._provisioner.is_installed(client):
                if not await self._provisioner.ensure_installed(client):
                    return
            elif await self._provisioner.needs_update(client):
                if not await self._handle_update(client, update):
                    return

            self._set_status(ClientStatus.STARTING)
            args = build_startup_args(
                commands,
                self._store.load(),
                argv=self._argv,
                forward_argv=self._settings.forward_argv,
            )
            await self._process.spawn(client.paths.binary, args)
            if not await self._wait_for_credentials(token):
                return
            await self._wait_for_client_ready(token)
        except UnsupportedPlatformError as e:
            logger.info(str(e))
            self._set_status(ClientStatus.UNSUPPORTED_PLATFORM)
        except Exception as e:
            logger.exception(f"启动节点客户端出错：{e}")
            self._fail(e)

    async def _handle_update(self, client: ResolvedClient, update: bool) -> bool:
        """已安装的二进制与清单不一致。返回 False 表示流程中止。"""
        logger.info("发现客户端更新")
        expected = client.config.download.sha256
        if not update and self._store.load().skip_core_update == expected:
            logger.info("用户已选择跳过此更新")
            return True
        if update:
            return await self._provisioner.download(client)

        self._set_status(ClientStatus.UPDATE_AVAILABLE)
        if await self._decision.wait():
            return await self._provisioner.download(client)
        logger.info("跳过更新")
        return True

    async def _wait_for_credentials(self, token: int) -> bool:
        while True:
            if self._superseded(token):
                return False
            credentials = await self._load_credentials()
            if credentials is not None:
                logger.info("节点配置文件存在")
                if not credentials.complete:
                    logger.info("无法从配置文件中获取 RPC 凭据")
                    self._set_status(ClientStatus.NO_CREDENTIALS)
                    return False
                self._set_status(ClientStatus.RUNNING)
                return True
            logger.info(f"配置文件尚不存在，{self._settings.poll_interval}s 后重试")
            await asyncio.sleep(self._settings.poll_interval)

    async def _wait_for_client_ready(self, token: int) -> bool:
        while True:
            if self._superseded(token):
                self._rpc_health = RpcHealth(ready=False, message="")
                self.send_rpc_status()
                return False
            result = await self.call_client("getinfo")
            if result.success:
                self._rpc_health = RpcHealth(ready=True, message="")
                self.send_rpc_status()
                logger.info("RPC 已就绪")
                return True
            message = _loading_message(result.body)
            self._rpc_health = RpcHealth(ready=False, message=message)
            self.send_rpc_status()
            logger.info(f"RPC 未就绪，{self._settings.poll_interval}s 后重试 {message}")
            await asyncio.sleep(self._settings.poll_interval)

    # ------------------------------------------------------------------
    # 关闭流程
    # ------------------------------------------------------------------

    async def _request_stop(self) -> bool:
        return (await self.call_client("stop")).success

    async def _cancel_start(self) -> None:
        task = self._start_task
        self._start_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    async def stop(self, shutting_down: bool = True) -> None:
        self._set_status(ClientStatus.SHUTTING_DOWN if shutting_down else ClientStatus.RESTARTING)
        self._generation += 1
        self._decision.cancel()
        await self._cancel_start()

        if not self._process.running:
            return
        logger.info("停止节点客户端")
        await self._process.stop(self._request_stop)
        self._set_status(ClientStatus.STOPPED)

    # ------------------------------------------------------------------
    # 命令
    # ------------------------------------------------------------------

    def launch(
        self,
        restart: bool = False,
        update: bool = False,
        commands: Sequence[str] | None = None,
    ) -> asyncio.Task:
        """在后台启动一次启动流程（可能因等待更新决定或轮询而长期挂起）。"""
        self._generation += 1
        task = asyncio.create_task(self.start_client(restart, update, commands))
        self._start_task = task
        return task

    async def restart(self, commands: Sequence[str] | None = None, update: bool = False) -> asyncio.Task:
        async with self._lock:
            await self.stop(shutting_down=False)
            return self.launch(restart=True, update=update, commands=commands)

    async def shutdown(self) -> None:
        async with self._lock:
            await self.stop(shutting_down=True)
        for task in list(self._background):
            task.cancel()
        await self._rpc.close()

    async def check_client_update(self) -> bool | None:
        """仅检查更新，不改变生命周期状态；出错时不推送。"""
        try:
            client = await self._resolver.resolve(skip_remote=False)
            has_update = await self._provisioner.needs_update(client)
        except Exception as e:
            logger.debug(f"检查客户端更新失败：{e}")
            return None
        self._hub.publish("CHECKUPDATE", has_update)
        return has_update

    def apply_update_decision(self, apply: bool, persist: bool = False) -> bool:
        if not apply and persist and self._client is not None:
            self._store.set_skip_core_update(self._client.config.download.sha256)
        return self._decision.resolve(apply)

    async def _call_and_publish(self, method: str, params: list[Any], call_id: Any) -> RpcResult:
        result = await self.call_client(method, params)
        self._hub.publish(
            "CALLCLIENT",
            {"callId": call_id, "method": method, "result": result.model_dump(mode="json")},
        )
        return result

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"后台任务失败：{task.get_coro().__qualname__}")

    def handle_command(self, cmd: ClientCommand | str, data: Any = None) -> asyncio.Task | None:
        """处理前端命令。耗时命令以后台任务执行并返回该任务。"""
        cmd = ClientCommand(cmd)
        logger.debug(f"收到命令 {cmd.value}: {data}")
        if cmd == ClientCommand.STATUS:
            self.send_status()
        elif cmd == ClientCommand.RPC:
            self.send_rpc_status()
        elif cmd == ClientCommand.RESTART:
            return self._spawn(self.restart(_as_commands(data), update=False))
        elif cmd == ClientCommand.CHECKUPDATE:
            return self._spawn(self.check_client_update())
        elif cmd == ClientCommand.APPLYUPDATE:
            return self._spawn(self.restart(_as_commands(data), update=True))
        elif cmd == ClientCommand.UPDATE:
            self.apply_update_decision(True)
        elif cmd == ClientCommand.NOUPDATE:
            self.apply_update_decision(False, persist=data is True)
        elif cmd == ClientCommand.CALLCLIENT:
            call = CallClientRequest.model_validate(data or {})
            return self._spawn(self._call_and_publish(call.method, call.params, call.call_id))
        return None


def _as_commands(data: Any) -> list[str]:
    if not data:
        return []
    if isinstance(data, (list, tuple)):
        return [str(d) for d in data]
    return [str(data)]
