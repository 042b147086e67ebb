"""
目标写入器抽象基类
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from ct_replica.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_transient
from ct_replica.utils.logging import get_logger
from ct_replica.utils.schema import check_mapping_covers, projected_columns

logger = get_logger(__name__)


class BaseTargetWriter(ABC):
    """
    只读副本写入器抽象基类

    所有目标数据库写入器（SQL Server、MySQL）的基类，
    定义批量加载接口和运行记录所需的单语句接口。
    语句使用 %s 占位符。

    属性:
        LOAD_STATUS_DDL: 创建 LoadStatusLog 表的方言 DDL
        RECENT_RUNS_SQL: 最近 N 条运行记录的方言查询（{columns}、{table} 占位）
    """

    LOAD_STATUS_DDL: str = ""
    RECENT_RUNS_SQL: str = "SELECT {columns} FROM {table} ORDER BY Load_Id DESC LIMIT %s"

    def __init__(self, config: Any, retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY):
        """
        初始化写入器

        参数:
            config: 目标数据库连接配置
            retry_policy: 瞬时故障重试策略
        """
        self.config = config
        self.retry_policy = retry_policy

    @abstractmethod
    async def table_exists(self, table: str) -> bool:
        """检查目标表是否存在"""
        raise NotImplementedError

    @abstractmethod
    async def get_columns(self, table: str) -> List[str]:
        """按序号列出目标表列名"""
        raise NotImplementedError

    @abstractmethod
    async def truncate(self, table: str) -> None:
        """清空目标表"""
        raise NotImplementedError

    @abstractmethod
    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """执行单条查询"""
        raise NotImplementedError

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        执行单条写语句

        返回:
            受影响行数
        """
        raise NotImplementedError

    @abstractmethod
    async def _bulk_copy(
        self,
        table: str,
        columns: List[str],
        rows: List[tuple],
    ) -> int:
        """
        单次批量加载尝试

        表锁、触发器和事务由实现负责，失败时事务回滚。

        参数:
            table: 目标表名
            columns: 目标列名
            rows: 与列顺序一致的行值

        返回:
            写入行数
        """
        raise NotImplementedError

    async def write_with_retry(
        self,
        destination_table: str,
        column_mapping: Dict[str, str],
        rows: List[Dict[str, Any]],
    ) -> int:
        """
        批量写入，瞬时故障按策略重试

        参数:
            destination_table: 目标表名
            column_mapping: {源列名: 目标列名}，必须覆盖全部投影列和 CDC_Type
            rows: 行字典列表

        返回:
            写入行数

        异常:
            ColumnMappingError: 映射未覆盖投影列（不做任何 I/O）
            RetryExhaustedError: 重试耗尽
        """
        check_mapping_covers(destination_table, column_mapping, projected_columns(rows))

        if not rows:
            logger.info("bulk_write_empty", table=destination_table)
            return 0

        source_columns = list(column_mapping)
        target_columns = [column_mapping[c] for c in source_columns]
        values = [tuple(row.get(c) for c in source_columns) for row in rows]

        count = await retry_transient(
            lambda: self._bulk_copy(destination_table, target_columns, values),
            description=f"bulk_copy:{destination_table}",
            policy=self.retry_policy,
        )
        logger.info("bulk_write_complete", table=destination_table, count=count)
        return count
