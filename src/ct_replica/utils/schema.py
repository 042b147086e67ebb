"""
列映射工具
"""

from typing import Any, Dict, Iterable, List, Sequence

from ct_replica.errors import ColumnMappingError
from ct_replica.models.entity import OPERATION_TAG_COLUMN


def build_column_mapping(
    table: str,
    source_columns: Sequence[str],
    target_columns: Sequence[str],
) -> Dict[str, str]:
    """
    构建源列到目标列的映射

    源列附加 CDC_Type 后，按名称（不区分大小写）匹配目标列。

    参数:
        table: 表名（用于错误信息）
        source_columns: 源表列名
        target_columns: 目标表列名

    返回:
        {源列名: 目标列名}，保持源列顺序

    异常:
        ColumnMappingError: 存在目标表中找不到的源列

    示例:
        >>> build_column_mapping("T", ["Id"], ["id", "CDC_Type"])
        {'Id': 'id', 'CDC_Type': 'CDC_Type'}
    """
    by_lower = {name.lower(): name for name in target_columns}
    projected = list(source_columns)
    if OPERATION_TAG_COLUMN.lower() not in {c.lower() for c in projected}:
        projected.append(OPERATION_TAG_COLUMN)

    mapping: Dict[str, str] = {}
    missing: List[str] = []
    for column in projected:
        target = by_lower.get(column.lower())
        if target is None:
            missing.append(column)
        else:
            mapping[column] = target

    if missing:
        raise ColumnMappingError(f"目标表 {table} 缺少列: {missing}")
    return mapping


def projected_columns(rows: Iterable[Dict[str, Any]]) -> List[str]:
    """行集合中出现的全部列名，按首次出现顺序"""
    seen: Dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


def check_mapping_covers(
    table: str,
    column_mapping: Dict[str, str],
    columns: Iterable[str],
) -> None:
    """
    校验映射覆盖全部投影列

    异常:
        ColumnMappingError: 有列未被映射
    """
    uncovered = [c for c in columns if c not in column_mapping]
    if OPERATION_TAG_COLUMN not in column_mapping:
        uncovered.append(OPERATION_TAG_COLUMN)
    if uncovered:
        raise ColumnMappingError(f"列映射未覆盖 {table} 的列: {sorted(set(uncovered))}")
