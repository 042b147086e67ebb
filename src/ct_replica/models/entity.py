"""
实体与行变更模型
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ct_replica.models.load_run import LoadType

# 目标表中承载操作标记的附加列
OPERATION_TAG_COLUMN = "CDC_Type"


class EntityClass(str, Enum):
    """实体分类"""
    FULL_LOAD_ONLY = "full_load"
    REFERENCE = "reference"
    TRANSACTIONAL = "transactional"


class ChangeOperation(str, Enum):
    """行操作标记（写入 CDC_Type 列的值）"""
    NEW = "N"
    UPDATE = "U"
    DELETE = "D"

    @classmethod
    def from_tracking_code(cls, code: Optional[str]) -> "ChangeOperation":
        """
        将 SYS_CHANGE_OPERATION 代码转换为操作标记

        'I'（插入）折叠为 New，其余原样对应。

        参数:
            code: 变更跟踪操作代码 (I/U/D)

        返回:
            ChangeOperation
        """
        normalized = (code or "").strip().upper()
        if normalized == "I":
            return cls.NEW
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"未知的变更跟踪操作代码: {code!r}")


class EntitySpec(BaseModel):
    """
    实体定义

    属性:
        name: 表名
        classes: 所属分类集合（全量表可以同时是参考表或事务表）
        sensitive_fields: 需要解密的字段
    """
    name: str = Field(..., min_length=1, description="表名")
    classes: frozenset[EntityClass] = Field(default_factory=frozenset, description="分类")
    sensitive_fields: tuple[str, ...] = Field(default=(), description="敏感字段")

    def is_full_load(self) -> bool:
        return EntityClass.FULL_LOAD_ONLY in self.classes

    def is_reference(self) -> bool:
        return EntityClass.REFERENCE in self.classes

    def is_transactional(self) -> bool:
        return EntityClass.TRANSACTIONAL in self.classes

    def is_sensitive(self) -> bool:
        return bool(self.sensitive_fields)


class RowChangeRecord(BaseModel):
    """
    带操作标记的源数据行

    属性:
        operation: 操作标记
        data: 行数据（列名 -> 值）
    """
    operation: ChangeOperation = Field(..., description="操作标记")
    data: Dict[str, Any] = Field(default_factory=dict, description="行数据")

    def to_row(self) -> Dict[str, Any]:
        """转换为写入用的字典，附加 CDC_Type 列"""
        row = dict(self.data)
        row[OPERATION_TAG_COLUMN] = self.operation.value
        return row


class EntityLoadResult(BaseModel):
    """单个实体管道的执行结果"""
    entity: str = Field(..., description="表名")
    mode: LoadType = Field(..., description="运行模式")
    rows_written: int = Field(default=0, ge=0, description="写入行数")
    produced_delta: bool = Field(default=False, description="是否产生了增量行")
    writer_invoked: bool = Field(default=False, description="是否调用了写入器")
    skipped: bool = Field(default=False, description="是否跳过")
