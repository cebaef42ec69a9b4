"""
文件功能：
    定义节点客户端监管相关的公开数据模型（Pydantic）与枚举。

公开接口：
    - ClientStatus: 监管器状态枚举（封闭集合，另含 INTERNAL_ERROR 故障状态）
    - ClientCommand: 前端可下发的命令枚举
    - DownloadInfo / ClientConfig: 清单中某平台/架构对应的二进制信息
    - ClientPaths / ResolvedClient: 一次解析得到的本地路径与配置
    - Credentials: 从节点配置文件解析出的 RPC 凭据
    - RpcResult: 每次 RPC 调用的统一结果
    - RpcHealth: RPC 就绪状态
    - ClientFault / StatusPayload: 状态推送内容
    - AppSettings: 用户持久化设置
    - CommandRequest / CallClientRequest: 命令通道请求体
    - ClientEvent: 出站通知信封

内部方法：
    无
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ClientStatus(str, Enum):
    INITIALISING = "initialising"
    CHECK_EXISTS = "check_exists"
    DOWNLOAD_CLIENT = "download_client"
    UPDATE_AVAILABLE = "update_available"
    STARTING = "starting"
    RUNNING = "running"
    RUNNING_EXTERNAL = "running_external"
    STOPPED = "stopped"
    NO_CREDENTIALS = "no_credentials"
    INVALID_HASH = "invalid_hash"
    DOWNLOAD_FAILED = "download_failed"
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    SHUTTING_DOWN = "shutting_down"
    RESTARTING = "restarting"
    CLOSED_UNEXPECTEDLY = "closed_unexpectedly"
    # 未归类异常，携带 ClientFault
    INTERNAL_ERROR = "internal_error"


class ClientCommand(str, Enum):
    STATUS = "STATUS"
    RPC = "RPC"
    RESTART = "RESTART"
    CHECKUPDATE = "CHECKUPDATE"
    APPLYUPDATE = "APPLYUPDATE"
    UPDATE = "UPDATE"
    NOUPDATE = "NOUPDATE"
    CALLCLIENT = "CALLCLIENT"


class DownloadInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    sha256: str


class ClientConfig(BaseModel):
    """清单中某个平台/架构的条目。"""

    model_config = ConfigDict(frozen=True)

    bin: str = Field(description="安装后的二进制文件名")
    download: DownloadInfo


class ClientPaths(BaseModel):
    model_config = ConfigDict(frozen=True)

    clients_dir: Path = Field(description="客户端数据目录")
    binary: Path = Field(description="已安装二进制路径")
    download: Path = Field(description="下载暂存路径")


class ResolvedClient(BaseModel):
    model_config = ConfigDict(frozen=True)

    config: ClientConfig
    paths: ClientPaths


class Credentials(BaseModel):
    """节点 RPC 凭据；三项均非空才可信。"""

    rpc_user: str | None = None
    rpc_password: str | None = None
    rpc_port: int | None = None

    @property
    def complete(self) -> bool:
        return bool(self.rpc_user) and bool(self.rpc_password) and bool(self.rpc_port)


class RpcResult(BaseModel):
    success: bool
    body: Any = None
    error: str | None = None


class RpcHealth(BaseModel):
    ready: bool = False
    message: str = ""


class ClientFault(BaseModel):
    type: str = Field(description="异常类型名")
    message: str = Field(description="异常信息")


class StatusPayload(BaseModel):
    status: ClientStatus
    fault: ClientFault | None = None


class AppSettings(BaseModel):
    """用户持久化设置，字段别名与前端设置文件保持一致。"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    skip_core_update: str = Field(default="", alias="skipCoreUpdate")
    block_incoming_connections: bool = Field(default=False, alias="blockIncomingConnections")
    onlynet: str = ""
    proxy: str = ""
    tor: str = ""


class CommandRequest(BaseModel):
    cmd: ClientCommand
    data: Any = None


class CallClientRequest(BaseModel):
    method: str
    params: list[Any] = Field(default_factory=list)
    call_id: str | None = Field(default=None, alias="callId")

    model_config = ConfigDict(populate_by_name=True)


class ClientEvent(BaseModel):
    channel: str = Field(description="STATUS / RPC / CHECKUPDATE / CALLCLIENT")
    data: Any = None
