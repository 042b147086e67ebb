"""
异常定义
"""

from typing import Optional, Sequence


class ReplicaError(Exception):
    """所有复制引擎异常的基类"""
    pass


class ConfigError(ReplicaError):
    """配置错误"""
    pass


class RetryExhaustedError(ReplicaError):
    """
    瞬时故障重试耗尽

    属性:
        attempts: 总尝试次数
        last_error: 最后一次的底层异常
    """

    def __init__(self, attempts: int, last_error: BaseException, operation: str = ""):
        self.attempts = attempts
        self.last_error = last_error
        self.operation = operation
        target = f" ({operation})" if operation else ""
        super().__init__(f"重试 {attempts} 次后仍失败{target}: {last_error}")


class ChangeTrackingError(ReplicaError):
    """变更跟踪查询无法构建或执行"""
    pass


class ColumnMappingError(ReplicaError):
    """列映射未覆盖全部源列"""
    pass


class DecryptionError(ReplicaError):
    """敏感字段无法解密"""

    def __init__(self, message: str, table: Optional[str] = None, field: Optional[str] = None):
        self.table = table
        self.field = field
        super().__init__(message)


class LoadStatusError(ReplicaError):
    """运行记录读写失败"""
    pass


class EntityLoadError(ReplicaError):
    """
    一个或多个实体管道失败

    属性:
        failures: {实体名: 异常}
        produced_delta: 成功的实体中是否有产生增量行的
    """

    def __init__(self, failures: dict[str, BaseException], produced_delta: bool = False):
        self.failures = failures
        self.produced_delta = produced_delta
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} 个实体加载失败: {names}")

    @property
    def entities(self) -> Sequence[str]:
        return sorted(self.failures)

