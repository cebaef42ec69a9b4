"""
节点客户端监管服务模块集合。

此包包含清单解析、二进制准备、凭据加载、进程管理、RPC 与生命周期控制，按功能拆分以提高可维护性。
"""

from .lifecycle import ClientSupervisor, UpdateDecision, UpdateDecisionPendingError
from .manifest import ManifestResolver, UnsupportedPlatformError
from .provisioner import BinaryProvisioner
from .process import NodeProcess, build_startup_args
from .rpc import RpcClient
from .events import EventHub
from .settings_store import SettingsStore

__all__ = [
    "ClientSupervisor",
    "UpdateDecision",
    "UpdateDecisionPendingError",
    "ManifestResolver",
    "UnsupportedPlatformError",
    "BinaryProvisioner",
    "NodeProcess",
    "build_startup_args",
    "RpcClient",
    "EventHub",
    "SettingsStore",
]
