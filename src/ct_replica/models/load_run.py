"""
加载运行记录模型 - 对应目标库 LoadStatusLog 表的一行
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# 变更跟踪基线缺失的哨兵值，表示必须执行全量加载
NO_BASELINE = -1


class LoadStatus(str, Enum):
    """运行状态（持久化为单字符代码）"""
    PREPARING = "P"  # 准备中，运行进行中
    READY = "R"  # 已完成，等待下游确认
    SUCCESSFUL = "S"  # 下游已确认
    FAILED = "F"  # 失败
    BACKTRACK = "B"  # 回溯，按原起点重放
    INITIALIZE = "I"  # 初始化，下一轮全量加载


class LoadType(str, Enum):
    """运行类型"""
    HISTORIC = "H"
    DELTA = "D"


class LoadRun(BaseModel):
    """
    一次编排运行

    属性:
        load_id: 自增主键（未入库前为 None）
        first_ct_version: 起始变更跟踪版本，-1 表示无基线
        from_datetime: 运行窗口开始时间
        last_ct_version: 结束变更跟踪版本
        to_datetime: 运行窗口结束时间
        status: 运行状态
        load_type: 运行类型

    数据库表结构:
        ```sql
        CREATE TABLE LoadStatusLog (
            Load_Id INT IDENTITY(1,1) PRIMARY KEY,
            Load_First_CT_Version BIGINT NOT NULL,
            Load_From_Datetime DATETIME2 NOT NULL,
            Load_Last_CT_Version BIGINT NOT NULL,
            Load_To_Datetime DATETIME2 NOT NULL,
            Load_Status_Code CHAR(1) NOT NULL,
            Load_Type_Code CHAR(1) NOT NULL
        );
        ```
    """
    model_config = ConfigDict(from_attributes=True)

    load_id: Optional[int] = Field(default=None, description="运行 ID")
    first_ct_version: int = Field(default=NO_BASELINE, ge=NO_BASELINE, description="起始版本")
    from_datetime: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="窗口开始时间"
    )
    last_ct_version: int = Field(default=NO_BASELINE, ge=NO_BASELINE, description="结束版本")
    to_datetime: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="窗口结束时间"
    )
    status: LoadStatus = Field(default=LoadStatus.PREPARING, description="运行状态")
    load_type: LoadType = Field(default=LoadType.HISTORIC, description="运行类型")

    @model_validator(mode="after")
    def validate_type_matches_baseline(self) -> "LoadRun":
        """无基线的运行只能是全量类型"""
        if self.first_ct_version == NO_BASELINE and self.load_type == LoadType.DELTA:
            raise ValueError("起始版本为 -1 的运行不能是 Delta 类型")
        return self

    def has_baseline(self) -> bool:
        """是否存在可用的变更跟踪基线"""
        return self.first_ct_version != NO_BASELINE

    def is_terminal(self) -> bool:
        """是否已结束（不再是 Preparing）"""
        return self.status != LoadStatus.PREPARING

    @classmethod
    def from_row(cls, row: dict) -> "LoadRun":
        """从 LoadStatusLog 行构造"""
        return cls(
            load_id=row["Load_Id"],
            first_ct_version=row["Load_First_CT_Version"],
            from_datetime=_parse_datetime(row["Load_From_Datetime"]),
            last_ct_version=row["Load_Last_CT_Version"],
            to_datetime=_parse_datetime(row["Load_To_Datetime"]),
            status=LoadStatus(str(row["Load_Status_Code"]).strip()),
            load_type=LoadType(str(row["Load_Type_Code"]).strip()),
        )


def _parse_datetime(value: object) -> datetime:
    """驱动可能返回 datetime 或 ISO 字符串"""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
