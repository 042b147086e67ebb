"""
测试配置和共享工具 (unittest 兼容)
"""

import asyncio
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from ct_replica.core.retry import RetryPolicy
from ct_replica.models.replica_config import ReplicaConfig
from ct_replica.sources.base import BaseSourceReader
from ct_replica.targets.base import BaseTargetWriter

# 测试中不等待
NO_DELAY_POLICY = RetryPolicy(max_attempts=5, delay_ms=0)


# ============================================================================
# 源库 Fake
# ============================================================================

class FakeSourceReader(BaseSourceReader):
    """
    内存源库

    属性:
        tables: {表名: 行列表}
        columns: {表名: 列名}（未给出时取第一行的键）
        primary_keys: {表名: 主键列}
        version: 当前变更跟踪版本
        valid_change_tables: 保留期内的表
        changes: {表名: 变更查询结果行（含 __ct_ 别名列）}
        failures: {表名: 读取时抛出的异常}
    """

    def __init__(
        self,
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        columns: Optional[Dict[str, List[str]]] = None,
        primary_keys: Optional[Dict[str, List[str]]] = None,
        version: int = 100,
        valid_change_tables: Optional[Set[str]] = None,
        changes: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        failures: Optional[Dict[str, BaseException]] = None,
    ):
        self.tables = tables or {}
        self.columns = columns or {}
        self.primary_keys = primary_keys or {}
        self.version = version
        self.valid_change_tables = valid_change_tables or set()
        self.changes = changes or {}
        self.failures = failures or {}
        self.queries: List[str] = []
        self.valid_change_floors: List[int] = []

    async def list_tables(self) -> List[str]:
        return sorted(self.tables)

    async def get_columns(self, table: str) -> List[str]:
        if table in self.columns:
            return list(self.columns[table])
        rows = self.tables.get(table) or []
        return list(rows[0]) if rows else []

    async def get_primary_keys(self, table: str) -> List[str]:
        return list(self.primary_keys.get(table, []))

    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        if table in self.failures:
            raise self.failures[table]
        return [dict(row) for row in self.tables.get(table, [])]

    async def current_change_version(self) -> int:
        return self.version

    async def tables_with_valid_changes(self, marker: int) -> Set[str]:
        self.valid_change_floors.append(marker)
        return set(self.valid_change_tables)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        self.queries.append(sql)
        for table, rows in self.changes.items():
            if f"CHANGES [dbo].[{table}]," in sql:
                if table in self.failures:
                    raise self.failures[table]
                return [dict(row) for row in rows]
        return []


# ============================================================================
# 目标库 Fake
# ============================================================================

class FakeTargetDatabase:
    """
    目标库状态（多个写入器实例共享）

    LoadStatusLog 由内存 sqlite3 承载，实体表写入保存在内存中。

    属性:
        tables: {表名: 列名}
        written: {表名: 写入的行}
        truncated: 被清空的表（按顺序）
        bulk_failures: {表名: 依次抛出的异常}
        copy_delay: 每次批量加载的耗时（秒）
    """

    def __init__(
        self,
        tables: Optional[Dict[str, List[str]]] = None,
        copy_delay: float = 0.0,
    ):
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.tables = tables or {}
        self.written: Dict[str, List[Dict[str, Any]]] = {}
        self.truncated: List[str] = []
        self.bulk_calls: List[str] = []
        self.bulk_failures: Dict[str, List[BaseException]] = {}
        self.copy_delay = copy_delay
        self.active_copies = 0
        self.max_active_copies = 0

    def close(self) -> None:
        self.conn.close()

    def load_status_rows(self) -> List[Dict[str, Any]]:
        rows = self.conn.execute("SELECT * FROM LoadStatusLog ORDER BY Load_Id").fetchall()
        return [dict(row) for row in rows]


def _sqlite_params(params: Sequence[Any]) -> tuple:
    return tuple(p.isoformat() if isinstance(p, datetime) else p for p in params)


class FakeTargetWriter(BaseTargetWriter):
    """基于 FakeTargetDatabase 的写入器"""

    LOAD_STATUS_DDL = """
CREATE TABLE LoadStatusLog (
    Load_Id INTEGER PRIMARY KEY AUTOINCREMENT,
    Load_First_CT_Version INTEGER NOT NULL,
    Load_From_Datetime TEXT NOT NULL,
    Load_Last_CT_Version INTEGER NOT NULL,
    Load_To_Datetime TEXT NOT NULL,
    Load_Status_Code TEXT NOT NULL,
    Load_Type_Code TEXT NOT NULL
)
"""

    def __init__(self, db: FakeTargetDatabase, retry_policy: RetryPolicy = NO_DELAY_POLICY):
        super().__init__(config=None, retry_policy=retry_policy)
        self.db = db

    async def table_exists(self, table: str) -> bool:
        if table == "LoadStatusLog":
            row = self.db.conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            ).fetchone()
            return row is not None
        return table in self.db.tables

    async def get_columns(self, table: str) -> List[str]:
        return list(self.db.tables.get(table, []))

    async def truncate(self, table: str) -> None:
        self.db.truncated.append(table)
        self.db.written[table] = []

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cursor = self.db.conn.execute(sql.replace("%s", "?"), _sqlite_params(params))
        return [dict(row) for row in cursor.fetchall()]

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self.db.conn.execute(sql.replace("%s", "?"), _sqlite_params(params))
        self.db.conn.commit()
        return cursor.rowcount

    async def _bulk_copy(self, table: str, columns: List[str], rows: List[tuple]) -> int:
        self.db.bulk_calls.append(table)
        failures = self.db.bulk_failures.get(table)
        if failures:
            raise failures.pop(0)

        self.db.active_copies += 1
        self.db.max_active_copies = max(self.db.max_active_copies, self.db.active_copies)
        try:
            await asyncio.sleep(self.db.copy_delay)
            self.db.written.setdefault(table, []).extend(dict(zip(columns, row)) for row in rows)
        finally:
            self.db.active_copies -= 1
        return len(rows)


# ============================================================================
# 配置工厂函数
# ============================================================================

def create_test_config_dict(**overrides: Any) -> dict[str, Any]:
    """返回测试配置字典"""
    config = {
        "source": {
            "type": "sqlserver",
            "host": "source.local",
            "database": "Operational",
            "username": "reader",
            "password": "secret",
        },
        "target": {
            "type": "sqlserver",
            "host": "replica.local",
            "database": "Replica",
            "username": "loader",
            "password": "secret",
        },
        "tables": {
            "full_load": "Accounts,Orders,Products",
            "reference": "Products",
            "transactional": "Accounts,Orders",
        },
        "max_parallel_degree": 2,
        "tick_interval_ms": 10,
        "log_level": "DEBUG",
    }
    config.update(overrides)
    return config


def create_test_config(**overrides: Any) -> ReplicaConfig:
    return ReplicaConfig(**create_test_config_dict(**overrides))


def create_test_config_yaml() -> str:
    """返回测试配置 YAML 字符串"""
    return """
source:
  host: "source.local"
  database: "Operational"
  username: "reader"
  password: "${TEST_SOURCE_PASSWORD:-secret}"

target:
  type: "mysql"
  host: "replica.local"
  database: "Replica"
  username: "loader"
  password: "secret"
  batch_size: 500

tables:
  full_load: "Accounts, Orders ,Products"
  reference: ["Products"]
  transactional: "Accounts,Orders"

max_parallel_degree: -1
tick_interval_ms: 5000
log_level: "debug"
"""


# ============================================================================
# 测试数据工厂函数
# ============================================================================

def get_sample_accounts() -> list[dict[str, Any]]:
    """返回样本账户数据"""
    return [
        {"AccountId": 1, "Name": "张三", "EmailAddress": None, "PhoneNumber": None},
        {"AccountId": 2, "Name": "李四", "EmailAddress": None, "PhoneNumber": None},
    ]


def target_columns_for(source_columns: List[str]) -> List[str]:
    """目标表列：源列加 CDC_Type"""
    return list(source_columns) + ["CDC_Type"]


def setup_logging():
    """设置测试日志级别"""
    from ct_replica.utils.logging import configure_logging
    configure_logging(log_level="DEBUG", json_format=False)
