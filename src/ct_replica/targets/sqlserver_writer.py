"""
SQL Server 目标写入器实现
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from ct_replica.core.connection import SqlServerSession
from ct_replica.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_transient
from ct_replica.models.replica_config import SqlServerConnection
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.utils.logging import get_logger
from ct_replica.utils.sql import qualified_name

logger = get_logger(__name__)


class SqlServerTargetWriter(BaseTargetWriter):
    """
    SQL Server 目标写入器

    使用 python-tds 的批量复制（TDS bulk load）写入，
    以表锁方式执行并触发目标表触发器。
    """

    RECENT_RUNS_SQL = "SELECT TOP (%s) {columns} FROM {table} ORDER BY Load_Id DESC"

    LOAD_STATUS_DDL = """
CREATE TABLE LoadStatusLog (
    Load_Id INT IDENTITY(1,1) PRIMARY KEY,
    Load_First_CT_Version BIGINT NOT NULL,
    Load_From_Datetime DATETIME2 NOT NULL,
    Load_Last_CT_Version BIGINT NOT NULL,
    Load_To_Datetime DATETIME2 NOT NULL,
    Load_Status_Code CHAR(1) NOT NULL,
    Load_Type_Code CHAR(1) NOT NULL
)
"""

    def __init__(
        self,
        config: SqlServerConnection,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        session: Optional[SqlServerSession] = None,
    ):
        super().__init__(config, retry_policy)
        if not isinstance(config, SqlServerConnection):
            raise ValueError("SqlServerTargetWriter 需要 SqlServerConnection 配置")
        self.conn_config: SqlServerConnection = config
        self._session = session or SqlServerSession(config)

    async def _query(self, description: str, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await retry_transient(
            lambda: asyncio.to_thread(self._session.query, sql, params),
            description=description,
            policy=self.retry_policy,
        )

    async def _execute(self, description: str, sql: str, params: Sequence[Any] = ()) -> int:
        return await retry_transient(
            lambda: asyncio.to_thread(self._session.execute, sql, params),
            description=description,
            policy=self.retry_policy,
        )

    async def table_exists(self, table: str) -> bool:
        rows = await self._query(
            f"table_exists:{table}",
            "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s",
            (table, self.conn_config.schema_name),
        )
        return len(rows) > 0

    async def get_columns(self, table: str) -> List[str]:
        rows = await self._query(
            f"get_columns:{table}",
            "SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS "
            "WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s ORDER BY ORDINAL_POSITION",
            (table, self.conn_config.schema_name),
        )
        return [row["COLUMN_NAME"] for row in rows]

    async def truncate(self, table: str) -> None:
        await self._execute(
            f"truncate:{table}",
            f"TRUNCATE TABLE {qualified_name(self.conn_config.schema_name, table)}",
        )
        logger.debug("sqlserver_truncated", table=table)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await self._query("query", sql, params)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await self._execute("execute", sql, params)

    async def _bulk_copy(
        self,
        table: str,
        columns: List[str],
        rows: List[tuple],
    ) -> int:
        return await asyncio.to_thread(self._session.bulk_copy, table, columns, rows)
