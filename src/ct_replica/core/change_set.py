"""
变更集解析 - 基于 SQL Server 变更跟踪读取增量行
"""

from typing import Any, Dict, List, Sequence, Set

from ct_replica.errors import ChangeTrackingError
from ct_replica.models.entity import ChangeOperation, RowChangeRecord
from ct_replica.sources.base import BaseSourceReader
from ct_replica.utils.logging import get_logger
from ct_replica.utils.sql import qualified_name, quote_identifier

logger = get_logger(__name__)

# 变更表列在结果集中的别名前缀
CT_ALIAS_PREFIX = "__ct_"
OPERATION_ALIAS = CT_ALIAS_PREFIX + "operation"


def build_change_query(
    entity: str,
    pk_columns: Sequence[str],
    marker: int,
    schema: str = "dbo",
) -> str:
    """
    构建变更查询

    CHANGETABLE(CHANGES ...) 与在线表按主键左连接。主键值和操作代码
    从变更表取出并加别名，已删除的行也能保留主键。

    参数:
        entity: 表名
        pk_columns: 主键列（任意个数）
        marker: 起始变更跟踪版本
        schema: 架构名

    返回:
        SQL 语句

    异常:
        ChangeTrackingError: 无主键或版本号无效

    示例:
        >>> print(build_change_query("Orders", ["Id"], 42))  # doctest: +NORMALIZE_WHITESPACE
        SELECT CT.[Id] AS [__ct_Id], CT.SYS_CHANGE_OPERATION AS [__ct_operation], T.*
        FROM CHANGETABLE(CHANGES [dbo].[Orders], 42) AS CT
        LEFT JOIN [dbo].[Orders] AS T ON CT.[Id] = T.[Id]
    """
    if not pk_columns:
        raise ChangeTrackingError(f"表 {entity} 没有主键，无法读取变更")
    if marker < 0:
        raise ChangeTrackingError(f"表 {entity} 的变更版本无效: {marker}")

    table = qualified_name(schema, entity)
    key_select = ", ".join(
        f"CT.{quote_identifier(pk)} AS {quote_identifier(CT_ALIAS_PREFIX + pk)}"
        for pk in pk_columns
    )
    join_on = " AND ".join(
        f"CT.{quote_identifier(pk)} = T.{quote_identifier(pk)}" for pk in pk_columns
    )
    return (
        f"SELECT {key_select}, CT.SYS_CHANGE_OPERATION AS {quote_identifier(OPERATION_ALIAS)}, T.*\n"
        f"FROM CHANGETABLE(CHANGES {table}, {int(marker)}) AS CT\n"
        f"LEFT JOIN {table} AS T ON {join_on}"
    )


def to_change_record(row: Dict[str, Any], pk_columns: Sequence[str]) -> RowChangeRecord:
    """
    将变更查询结果行转换为 RowChangeRecord

    变更表的主键值覆盖在线表的同名列（删除行在线表一侧全为 NULL）。
    """
    data = dict(row)
    operation = ChangeOperation.from_tracking_code(data.pop(OPERATION_ALIAS, None))
    for pk in pk_columns:
        data[pk] = data.pop(CT_ALIAS_PREFIX + pk, data.get(pk))
    return RowChangeRecord(operation=operation, data=data)


class ChangeSetResolver:
    """
    变更集解析器

    示例:
        ```python
        resolver = ChangeSetResolver(source)
        pending = await resolver.list_entities_with_pending_changes(run.first_ct_version)
        records = await resolver.fetch_changes("Orders", run.first_ct_version)
        ```
    """

    def __init__(self, source: BaseSourceReader, schema: str = "dbo"):
        self.source = source
        self.schema = schema

    async def list_entities_with_pending_changes(self, marker_floor: int) -> Set[str]:
        """
        列出变更仍在保留期内的实体

        参数:
            marker_floor: 版本下限，-1 按 0 查询

        返回:
            表名集合
        """
        floor = max(marker_floor, 0)
        tables = await self.source.tables_with_valid_changes(floor)
        logger.debug("pending_change_tables", marker=floor, tables=sorted(tables))
        return set(tables)

    async def fetch_changes(self, entity: str, marker: int) -> List[RowChangeRecord]:
        """
        读取实体自 marker 以来的变更行

        参数:
            entity: 表名
            marker: 起始变更跟踪版本

        返回:
            带操作标记的行（I 折叠为 N）

        异常:
            ChangeTrackingError: 无主键或版本号无效
        """
        pk_columns = await self.source.get_primary_keys(entity)
        sql = build_change_query(entity, pk_columns, marker, self.schema)
        rows = await self.source.query(sql)
        records = [to_change_record(row, pk_columns) for row in rows]

        logger.debug(
            "changes_fetched",
            entity=entity,
            marker=marker,
            count=len(records),
        )
        return records
