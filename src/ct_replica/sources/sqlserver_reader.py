"""
SQL Server 源读取器实现
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Set

from ct_replica.core.connection import SqlServerSession
from ct_replica.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_transient
from ct_replica.models.load_run import NO_BASELINE
from ct_replica.models.replica_config import SqlServerConnection
from ct_replica.sources.base import BaseSourceReader
from ct_replica.utils.logging import get_logger
from ct_replica.utils.sql import qualified_name

logger = get_logger(__name__)

_LIST_TABLES_SQL = "SELECT name FROM sys.objects WHERE [type] = 'U' ORDER BY name"

_COLUMNS_SQL = """
SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS
WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s
ORDER BY ORDINAL_POSITION
"""

_PRIMARY_KEYS_SQL = """
SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
WHERE OBJECTPROPERTY(OBJECT_ID(CONSTRAINT_SCHEMA + '.' + QUOTENAME(CONSTRAINT_NAME)), 'IsPrimaryKey') = 1
  AND TABLE_NAME = %s AND TABLE_SCHEMA = %s
ORDER BY ORDINAL_POSITION
"""

_CURRENT_VERSION_SQL = "SELECT CHANGE_TRACKING_CURRENT_VERSION() AS version"

_VALID_CHANGE_TABLES_SQL = """
SELECT name FROM sys.objects
WHERE object_id IN (
    SELECT object_id FROM sys.change_tracking_tables WHERE min_valid_version <= %s
) AND [type] = 'U'
"""


class SqlServerSourceReader(BaseSourceReader):
    """
    SQL Server 源读取器

    阻塞的 python-tds 调用放入工作线程执行，每条语句独立连接。

    示例:
        ```python
        reader = SqlServerSourceReader(config.source)
        version = await reader.current_change_version()
        ```
    """

    def __init__(
        self,
        config: SqlServerConnection,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        session: Optional[SqlServerSession] = None,
    ):
        self.config = config
        self.retry_policy = retry_policy
        self._session = session or SqlServerSession(config)

    async def _run(self, description: str, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """在工作线程中执行查询，瞬时故障重试"""
        return await retry_transient(
            lambda: asyncio.to_thread(self._session.query, sql, params),
            description=description,
            policy=self.retry_policy,
        )

    async def list_tables(self) -> List[str]:
        rows = await self._run("list_tables", _LIST_TABLES_SQL)
        return [row["name"] for row in rows]

    async def get_columns(self, table: str) -> List[str]:
        rows = await self._run(
            f"get_columns:{table}", _COLUMNS_SQL, (table, self.config.schema_name)
        )
        return [row["COLUMN_NAME"] for row in rows]

    async def get_primary_keys(self, table: str) -> List[str]:
        rows = await self._run(
            f"get_primary_keys:{table}", _PRIMARY_KEYS_SQL, (table, self.config.schema_name)
        )
        return [row["COLUMN_NAME"] for row in rows]

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {qualified_name(self.config.schema_name, table)}"
        rows = await self._run(f"fetch_all:{table}", sql)
        logger.debug("source_snapshot_fetched", table=table, count=len(rows))
        return rows

    async def current_change_version(self) -> int:
        rows = await self._run("current_change_version", _CURRENT_VERSION_SQL)
        if not rows or rows[0].get("version") is None:
            logger.warning("change_tracking_disabled", database=self.config.database)
            return NO_BASELINE
        return int(rows[0]["version"])

    async def tables_with_valid_changes(self, marker: int) -> Set[str]:
        floor = max(marker, 0)
        rows = await self._run(
            "tables_with_valid_changes", _VALID_CHANGE_TABLES_SQL, (floor,)
        )
        return {row["name"] for row in rows}

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await self._run("query", sql, params)
