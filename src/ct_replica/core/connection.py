"""
SQL Server 会话 - python-tds 连接的事务包装
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Sequence

import pytds
from pytds import tds_base, tds_types

from ct_replica.errors import ColumnMappingError
from ct_replica.models.replica_config import SqlServerConnection
from ct_replica.utils.logging import get_logger

logger = get_logger(__name__)

COLUMN_TYPES_SQL = (
    "SELECT COLUMN_NAME, DATA_TYPE, CHARACTER_MAXIMUM_LENGTH, NUMERIC_PRECISION, "
    "NUMERIC_SCALE, DATETIME_PRECISION, IS_NULLABLE "
    "FROM INFORMATION_SCHEMA.COLUMNS WHERE TABLE_NAME = %s AND TABLE_SCHEMA = %s"
)

_FIXED_TYPES = {
    "bit": tds_types.BitType,
    "tinyint": tds_types.TinyIntType,
    "smallint": tds_types.SmallIntType,
    "int": tds_types.IntType,
    "bigint": tds_types.BigIntType,
    "real": tds_types.RealType,
    "float": tds_types.FloatType,
    "smallmoney": tds_types.SmallMoneyType,
    "money": tds_types.MoneyType,
    "date": tds_types.DateType,
    "smalldatetime": tds_types.SmallDateTimeType,
    "datetime": tds_types.DateTimeType,
    "uniqueidentifier": tds_types.UniqueIdentifierType,
    "text": tds_types.TextType,
    "ntext": tds_types.NTextType,
    "image": tds_types.ImageType,
    "xml": tds_types.XmlType,
    "sql_variant": tds_types.VariantType,
}

_SIZED_TYPES = {
    "char": tds_types.CharType,
    "varchar": tds_types.VarCharType,
    "nchar": tds_types.NCharType,
    "nvarchar": tds_types.NVarCharType,
    "binary": tds_types.BinaryType,
    "varbinary": tds_types.VarBinaryType,
}

# CHARACTER_MAXIMUM_LENGTH = -1
_MAX_TYPES = {
    "varchar": tds_types.VarCharMaxType,
    "nvarchar": tds_types.NVarCharMaxType,
    "varbinary": tds_types.VarBinaryMaxType,
}

_PRECISION_TYPES = {
    "time": tds_types.TimeType,
    "datetime2": tds_types.DateTime2Type,
    "datetimeoffset": tds_types.DateTimeOffsetType,
}


def sql_type_for(column: Dict[str, Any]) -> "tds_types.SqlTypeMetaclass":
    """
    INFORMATION_SCHEMA.COLUMNS 行转换为 python-tds 类型

    参数:
        column: 含 DATA_TYPE、长度、精度等字段的行

    返回:
        批量复制使用的列类型

    异常:
        ColumnMappingError: 不支持批量复制的列类型
    """
    data_type = str(column["DATA_TYPE"]).lower()

    if data_type in _SIZED_TYPES:
        length = column.get("CHARACTER_MAXIMUM_LENGTH")
        if length == -1 and data_type in _MAX_TYPES:
            return _MAX_TYPES[data_type]()
        return _SIZED_TYPES[data_type](size=length)
    if data_type in ("decimal", "numeric"):
        return tds_types.DecimalType(
            precision=column.get("NUMERIC_PRECISION") or 18,
            scale=column.get("NUMERIC_SCALE") or 0,
        )
    if data_type in _PRECISION_TYPES:
        precision = column.get("DATETIME_PRECISION")
        return _PRECISION_TYPES[data_type](precision=7 if precision is None else precision)
    if data_type in _FIXED_TYPES:
        return _FIXED_TYPES[data_type]()

    raise ColumnMappingError(
        f"列 {column['COLUMN_NAME']} 的类型 {data_type} 不支持批量复制"
    )


def bulk_columns(table: str, names: List[str], schema_rows: List[Dict[str, Any]]) -> List[tds_base.Column]:
    """
    按目标列名构造批量复制的列定义（列名不区分大小写）

    异常:
        ColumnMappingError: 目标表缺少列或列类型不支持
    """
    by_name = {str(row["COLUMN_NAME"]).lower(): row for row in schema_rows}
    missing = [name for name in names if name.lower() not in by_name]
    if missing:
        raise ColumnMappingError(f"目标表 {table} 缺少列: {missing}")

    columns = []
    for name in names:
        row = by_name[name.lower()]
        flags = tds_base.Column.fNullable if row.get("IS_NULLABLE") == "YES" else 0
        columns.append(tds_base.Column(name=row["COLUMN_NAME"], type=sql_type_for(row), flags=flags))
    return columns


class SqlServerSession:
    """
    SQL Server 会话

    每次调用都打开独立连接并在一个事务内完成，成功提交、失败回滚，
    结束后关闭连接。所有方法都是阻塞的，由调用方放入工作线程执行。

    属性:
        config: 连接配置

    示例:
        ```python
        session = SqlServerSession(config.source)
        rows = session.query("SELECT name FROM sys.objects WHERE type = %s", ("U",))
        ```
    """

    def __init__(self, config: SqlServerConnection):
        self.config = config

    def _connect(self) -> "pytds.Connection":
        """建立新连接（登录超时只作用于建立连接，语句无超时）"""
        return pytds.connect(
            server=self.config.host,
            port=self.config.port,
            database=self.config.database,
            user=self.config.username,
            password=self.config.password,
            login_timeout=self.config.login_timeout,
            timeout=None,
            as_dict=True,
            autocommit=False,
        )

    @contextmanager
    def transaction(self) -> Iterator["pytds.Connection"]:
        """事务上下文管理器"""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """
        执行查询并返回全部行

        参数:
            sql: SQL 语句（%s 占位符）
            params: 参数

        返回:
            行字典列表
        """
        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, tuple(params))
                if cursor.description is None:
                    return []
                return [dict(row) for row in cursor.fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        执行写语句

        返回:
            受影响行数
        """
        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, tuple(params))
                return cursor.rowcount

    def bulk_copy(
        self,
        table: str,
        columns: List[str],
        rows: Iterable[Sequence[Any]],
    ) -> int:
        """
        批量复制

        以表锁方式写入并触发触发器，整个复制在连接事务内完成。
        列类型取自目标表的 INFORMATION_SCHEMA.COLUMNS。

        参数:
            table: 目标表名（未加引号）
            columns: 目标列名，与行内值顺序一致
            rows: 行值序列

        返回:
            写入行数

        异常:
            ColumnMappingError: 目标表缺少列或列类型不支持
        """
        data = [tuple(row) for row in rows]
        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(COLUMN_TYPES_SQL, (table, self.config.schema_name))
                metadata = bulk_columns(table, columns, [dict(row) for row in cursor.fetchall()])
                cursor.copy_to(
                    table_or_view=table,
                    schema=self.config.schema_name,
                    columns=metadata,
                    data=data,
                    tablock=True,
                    fire_triggers=True,
                    keep_nulls=True,
                )
        logger.debug(
            "sqlserver_bulk_copy",
            host=self.config.host,
            table=table,
            count=len(data),
        )
        return len(data)
