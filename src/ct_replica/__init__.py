"""
ct-replica 只读副本加载引擎

定期把启用了变更跟踪的 SQL Server 源库复制到只读副本，
支持全量（Historic）和基于变更跟踪的增量（Delta）两种模式，
运行进度记录在目标库的 LoadStatusLog 表中，可断点续跑。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "LoadOrchestrator",
    "LoadStatusStore",
    "ReplicaConfig",
    "LoadRun",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "LoadOrchestrator":
        from ct_replica.core.orchestrator import LoadOrchestrator
        return LoadOrchestrator
    elif name == "LoadStatusStore":
        from ct_replica.storage.load_status import LoadStatusStore
        return LoadStatusStore
    elif name == "ReplicaConfig":
        from ct_replica.models.replica_config import ReplicaConfig
        return ReplicaConfig
    elif name == "LoadRun":
        from ct_replica.models.load_run import LoadRun
        return LoadRun
    elif name == "load_config":
        from ct_replica.config import load_config
        return load_config
    raise AttributeError(f"module 'ct_replica' has no attribute '{name}'")
