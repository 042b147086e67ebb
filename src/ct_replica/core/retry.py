"""
瞬时故障重试 - 固定间隔、有限次数
"""

import asyncio
import socket
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from ct_replica.errors import RetryExhaustedError
from ct_replica.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# SQL Server / Azure SQL 瞬时错误号
SQLSERVER_TRANSIENT_ERRORS = frozenset({
    -2,     # 超时
    20,     # 连接已断开
    64,     # 网络名称不再可用
    233,    # 连接初始化失败
    1205,   # 死锁牺牲品
    4060,   # 无法打开数据库
    10053,  # 传输层错误
    10054,  # 连接被重置
    10060,  # 网络超时
    10928,  # 资源限制
    10929,  # 资源限制
    40197,  # 服务处理错误
    40501,  # 服务繁忙
    40613,  # 数据库不可用
    49918,  # 资源不足
    49919,
    49920,
})

# MySQL 瞬时错误码
MYSQL_TRANSIENT_ERRORS = frozenset({
    1205,  # 锁等待超时
    1213,  # 死锁
    2003,  # 无法连接
    2006,  # 服务器已断开
    2013,  # 查询期间丢失连接
})

_TRANSIENT_KEYWORDS = (
    "timeout", "timed out", "deadlock", "connection reset",
    "connection refused", "connection closed", "broken pipe",
    "network", "temporarily unavailable", "transport",
)


class RetryPolicy(BaseModel):
    """
    重试策略

    属性:
        max_attempts: 总尝试次数（含第一次）
        delay_ms: 两次尝试之间的固定间隔（毫秒）
    """
    max_attempts: int = Field(default=5, ge=1, description="总尝试次数")
    delay_ms: int = Field(default=100, ge=0, description="固定间隔（毫秒）")

    @property
    def delay(self) -> float:
        return self.delay_ms / 1000.0


DEFAULT_RETRY_POLICY = RetryPolicy()


def _error_number(error: BaseException) -> Optional[int]:
    """提取驱动异常中的错误号"""
    for attr in ("number", "msg_no"):
        number = getattr(error, attr, None)
        if isinstance(number, int) and number != 0:
            return number
    # pymysql 把错误码放在 args[0]
    if error.args and isinstance(error.args[0], int):
        return error.args[0]
    return None


def is_transient(error: BaseException) -> bool:
    """
    判断异常是否为可重试的瞬时故障

    依次检查：网络/超时类内置异常、驱动错误号、错误信息关键字。

    参数:
        error: 异常对象

    返回:
        是否可重试
    """
    if isinstance(error, RetryExhaustedError):
        return False
    if isinstance(error, (TimeoutError, ConnectionError, socket.timeout)):
        return True

    number = _error_number(error)
    if number is not None and (
        number in SQLSERVER_TRANSIENT_ERRORS or number in MYSQL_TRANSIENT_ERRORS
    ):
        return True

    message = str(error).lower()
    return any(keyword in message for keyword in _TRANSIENT_KEYWORDS)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str = "",
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    执行操作，瞬时故障时按固定间隔重试

    非瞬时故障立即抛出原异常；重试耗尽抛出 RetryExhaustedError，
    __cause__ 为最后一次的底层异常。

    参数:
        operation: 每次尝试调用的协程工厂
        description: 用于日志和异常的操作描述
        policy: 重试策略
        sleep: 等待函数

    返回:
        操作结果
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_transient(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "retry_exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(e),
                )
                raise RetryExhaustedError(attempt, e, description) from e

            logger.warning(
                "transient_fault_retry",
                operation=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=str(e),
            )
            await sleep(policy.delay)
