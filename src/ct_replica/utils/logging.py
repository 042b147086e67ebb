"""
日志配置模块 - 使用 structlog 提供结构化日志
"""

import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, WrappedLogger


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """添加 UTC ISO 时间戳"""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _render_error_cause(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    展开 error 字段中的异常

    重试耗尽等包装异常会附带 __cause__，一并输出底层原因。
    """
    error = event_dict.get("error")
    if isinstance(error, BaseException):
        event_dict["error"] = f"{type(error).__name__}: {error}"
        cause = error.__cause__
        if cause is not None:
            event_dict["cause"] = f"{type(cause).__name__}: {cause}"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    配置结构化日志

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        json_format: 是否使用 JSON 格式输出（服务部署时使用）
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _render_error_cause,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors: list[Any] = shared + [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared + [
            _add_timestamp,
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                sort_keys=False,
                pad_level=False,
            ),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """
    获取结构化日志记录器

    参数:
        name: 日志记录器名称，通常为 __name__

    返回:
        BoundLogger: 结构化日志记录器

    示例:
        >>> from ct_replica.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("entity_written", entity="Accounts", rows=120)
        2024-01-01T10:30:00 [info] entity_written entity=Accounts rows=120
    """
    return structlog.get_logger(name)


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """
    在代码块内为所有日志绑定上下文字段

    asyncio 任务在创建时复制上下文，因此在块内派生的实体任务
    也会携带这些字段。

    示例:
        >>> with bound_context(load_id=42):
        ...     logger.info("tick_started")  # 自动包含 load_id
    """
    tokens = structlog.contextvars.bind_contextvars(**kwargs)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
