"""
MySQL 目标写入器实现
"""

from typing import Any, Dict, List, Sequence

import aiomysql

from ct_replica.core.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_transient
from ct_replica.models.replica_config import MySQLConnection
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.utils.logging import get_logger
from ct_replica.utils.sql import quote_mysql_identifier

logger = get_logger(__name__)


class MySQLTargetWriter(BaseTargetWriter):
    """
    MySQL 目标数据库写入器

    使用 aiomysql 实现异步写入。批量加载在 LOCK TABLES ... WRITE 下
    分批 executemany，整个加载在一个事务中提交。
    """

    LOAD_STATUS_DDL = """
CREATE TABLE LoadStatusLog (
    Load_Id INT AUTO_INCREMENT PRIMARY KEY,
    Load_First_CT_Version BIGINT NOT NULL,
    Load_From_Datetime DATETIME(6) NOT NULL,
    Load_Last_CT_Version BIGINT NOT NULL,
    Load_To_Datetime DATETIME(6) NOT NULL,
    Load_Status_Code CHAR(1) NOT NULL,
    Load_Type_Code CHAR(1) NOT NULL
)
"""

    def __init__(
        self,
        config: MySQLConnection,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        """
        初始化 MySQL 写入器

        参数:
            config: MySQL 连接配置
            retry_policy: 瞬时故障重试策略
        """
        super().__init__(config, retry_policy)
        if not isinstance(config, MySQLConnection):
            raise ValueError("MySQLTargetWriter 需要 MySQLConnection 配置")

        self.conn_config: MySQLConnection = config
        self._batch_size = config.batch_size

    async def _connect(self) -> aiomysql.Connection:
        """每个操作独立建立连接"""
        return await aiomysql.connect(
            host=self.conn_config.host,
            port=self.conn_config.port,
            user=self.conn_config.username,
            password=self.conn_config.password,
            db=self.conn_config.database,
            charset=self.conn_config.charset,
            autocommit=False,
        )

    async def _run_query(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        conn = await self._connect()
        try:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, tuple(params))
                rows = await cursor.fetchall()
            await conn.commit()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    async def _run_execute(self, sql: str, params: Sequence[Any]) -> int:
        conn = await self._connect()
        try:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, tuple(params))
                affected = cursor.rowcount
            await conn.commit()
            return affected
        except Exception:
            await conn.rollback()
            raise
        finally:
            conn.close()

    async def table_exists(self, table: str) -> bool:
        rows = await self.query(
            "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s",
            (table, self.conn_config.database),
        )
        return len(rows) > 0

    async def get_columns(self, table: str) -> List[str]:
        rows = await self.query(
            "SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS "
            "WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s ORDER BY ORDINAL_POSITION",
            (table, self.conn_config.database),
        )
        return [row["COLUMN_NAME"] for row in rows]

    async def truncate(self, table: str) -> None:
        await self.execute(f"TRUNCATE TABLE {quote_mysql_identifier(table)}")
        logger.debug("mysql_truncated", table=table)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await retry_transient(
            lambda: self._run_query(sql, params),
            description="mysql_query",
            policy=self.retry_policy,
        )

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return await retry_transient(
            lambda: self._run_execute(sql, params),
            description="mysql_execute",
            policy=self.retry_policy,
        )

    def _build_insert_sql(self, table: str, columns: List[str]) -> str:
        """构建 INSERT 语句"""
        if not columns:
            raise ValueError("columns 不能为空")
        column_sql = ", ".join(quote_mysql_identifier(c) for c in columns)
        placeholders = ", ".join("%s" for _ in columns)
        return f"INSERT INTO {quote_mysql_identifier(table)} ({column_sql}) VALUES ({placeholders})"

    async def _bulk_copy(
        self,
        table: str,
        columns: List[str],
        rows: List[tuple],
    ) -> int:
        """
        表锁下分批写入

        失败时回滚整个加载，无论成败都释放表锁。
        """
        sql = self._build_insert_sql(table, columns)
        batch_size = self._batch_size

        conn = await self._connect()
        try:
            async with conn.cursor() as cursor:
                await cursor.execute(f"LOCK TABLES {quote_mysql_identifier(table)} WRITE")
                try:
                    for i in range(0, len(rows), batch_size):
                        await cursor.executemany(sql, rows[i:i + batch_size])
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
                finally:
                    await cursor.execute("UNLOCK TABLES")
        finally:
            conn.close()

        logger.debug(
            "mysql_bulk_copy",
            table=table,
            count=len(rows),
            batch_size=batch_size,
        )
        return len(rows)
