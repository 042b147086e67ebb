"""
复制配置模型 - 使用 Pydantic 进行配置验证
"""

import os
import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ct_replica.models.entity import EntityClass, EntitySpec

# 无界并行度
UNBOUNDED_PARALLELISM = -1


class TargetType(str, Enum):
    """目标数据库类型"""
    SQLSERVER = "sqlserver"
    MYSQL = "mysql"


class SqlServerConnection(BaseModel):
    """
    SQL Server 连接配置

    属性:
        host: 主机地址
        port: 端口
        database: 数据库名
        username: 用户名
        password: 密码
        login_timeout: 登录超时(秒)，只作用于建立连接，不作用于语句
    """
    model_config = ConfigDict(title="SQL Server Connection")

    type: Literal["sqlserver"] = Field(default="sqlserver", description="连接类型")
    host: str = Field(..., description="主机地址")
    port: int = Field(default=1433, ge=1, le=65535, description="端口")
    database: str = Field(..., description="数据库名")
    username: str = Field(..., description="用户名")
    password: str = Field(..., description="密码")
    login_timeout: int = Field(default=15, ge=1, description="登录超时(秒)")
    schema_name: str = Field(default="dbo", description="表所在架构")


class MySQLConnection(BaseModel):
    """MySQL 连接配置"""
    model_config = ConfigDict(title="MySQL Connection")

    type: Literal["mysql"] = Field(default="mysql", description="连接类型")
    host: str = Field(..., description="主机地址")
    port: int = Field(default=3306, ge=1, le=65535, description="端口")
    database: str = Field(..., description="数据库名")
    username: str = Field(..., description="用户名")
    password: str = Field(..., description="密码")
    charset: str = Field(default="utf8mb4", description="字符集")
    batch_size: int = Field(default=1000, ge=1, le=100000, description="executemany 批量大小")


class TableClassification(BaseModel):
    """
    表分类配置

    每项可以是逗号分隔字符串或列表。

    属性:
        full_load: 全量加载表（Historic 模式范围）
        reference: 参考表（Delta 模式下总是全量）
        transactional: 事务表（Delta 模式下按变更跟踪增量）
    """
    full_load: List[str] = Field(default_factory=list, description="全量加载表")
    reference: List[str] = Field(default_factory=list, description="参考表")
    transactional: List[str] = Field(default_factory=list, description="事务表")

    @field_validator("full_load", "reference", "transactional", mode="before")
    @classmethod
    def split_table_list(cls, v: Any) -> List[str]:
        """支持 "A,B,C" 形式的表清单"""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        return [str(name).strip() for name in v if str(name).strip()]

    @model_validator(mode="after")
    def validate_disjoint(self) -> "TableClassification":
        """参考表与事务表必须互斥"""
        overlap = set(self.reference) & set(self.transactional)
        if overlap:
            raise ValueError(
                f"以下表同时出现在 reference 和 transactional 中: {sorted(overlap)}"
            )
        return self

    def classes_for(self, table: str) -> frozenset[EntityClass]:
        """获取表所属分类"""
        classes = set()
        if table in self.full_load:
            classes.add(EntityClass.FULL_LOAD_ONLY)
        if table in self.reference:
            classes.add(EntityClass.REFERENCE)
        if table in self.transactional:
            classes.add(EntityClass.TRANSACTIONAL)
        return frozenset(classes)


class DecryptionConfig(BaseModel):
    """
    敏感字段解密配置

    属性:
        enabled: 是否启用
        key_path: PEM 私钥路径（密钥标识）
        key_password: 私钥口令（可选）
        fields: {表名: [字段名]}
    """
    enabled: bool = Field(default=False, description="是否启用解密")
    key_path: Optional[str] = Field(default=None, description="PEM 私钥路径")
    key_password: Optional[str] = Field(default=None, description="私钥口令")
    fields: Dict[str, List[str]] = Field(
        default_factory=lambda: {"Accounts": ["EmailAddress", "PhoneNumber"]},
        description="需要解密的字段"
    )

    @model_validator(mode="after")
    def validate_key(self) -> "DecryptionConfig":
        if self.enabled and not self.key_path:
            raise ValueError("启用解密时必须提供 key_path")
        return self


class ReplicaConfig(BaseModel):
    """
    复制配置根对象

    属性:
        source: 源 SQL Server 配置
        target: 目标数据库配置
        tables: 表分类
        max_parallel_degree: 实体并行度，必须显式给出（-1 表示无界）
        tick_interval_ms: 调度间隔（毫秒）
        datetime_format: 时间显示格式
        decryption: 敏感字段解密
        log_level: 日志级别
        log_json: 是否输出 JSON 日志
    """
    source: SqlServerConnection = Field(..., description="源数据库配置")
    target: Union[SqlServerConnection, MySQLConnection] = Field(
        ..., discriminator="type", description="目标数据库配置"
    )
    tables: TableClassification = Field(default_factory=TableClassification, description="表分类")
    max_parallel_degree: int = Field(..., description="实体并行度，-1 表示无界")
    tick_interval_ms: int = Field(default=60000, ge=1, description="调度间隔（毫秒）")
    datetime_format: str = Field(default="%Y-%m-%d %H:%M:%S", description="时间显示格式")
    decryption: DecryptionConfig = Field(default_factory=DecryptionConfig, description="解密配置")
    log_level: str = Field(default="INFO", description="日志级别")
    log_json: bool = Field(default=False, description="JSON 日志")

    @field_validator("max_parallel_degree")
    @classmethod
    def validate_parallelism(cls, v: int) -> int:
        """并行度必须为 -1 或正数"""
        if v != UNBOUNDED_PARALLELISM and v < 1:
            raise ValueError("max_parallel_degree 必须为 -1（无界）或 >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"日志级别必须是以下之一: {valid_levels}")
        return v.upper()

    @property
    def tick_interval(self) -> float:
        """调度间隔（秒）"""
        return self.tick_interval_ms / 1000.0

    @property
    def target_type(self) -> TargetType:
        return TargetType(self.target.type)

    def is_unbounded(self) -> bool:
        return self.max_parallel_degree == UNBOUNDED_PARALLELISM

    def sensitive_fields_for(self, table: str) -> tuple[str, ...]:
        """获取表的敏感字段（未启用解密时为空）"""
        if not self.decryption.enabled:
            return ()
        return tuple(self.decryption.fields.get(table, ()))

    def entity_spec(self, table: str) -> EntitySpec:
        """构建表的实体定义"""
        return EntitySpec(
            name=table,
            classes=self.tables.classes_for(table),
            sensitive_fields=self.sensitive_fields_for(table),
        )


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        return re.sub(pattern, replacer, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
