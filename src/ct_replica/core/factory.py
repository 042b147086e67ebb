"""
读取器/写入器工厂
"""

from typing import Optional

from ct_replica.models.replica_config import ReplicaConfig, TargetType
from ct_replica.sources.base import BaseSourceReader
from ct_replica.sources.sqlserver_reader import SqlServerSourceReader
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.targets.mysql_writer import MySQLTargetWriter
from ct_replica.targets.sqlserver_writer import SqlServerTargetWriter
from ct_replica.utils.decryption import FieldDecryptor


def create_source_reader(config: ReplicaConfig) -> BaseSourceReader:
    """创建源读取器"""
    return SqlServerSourceReader(config.source)


def create_target_writer(config: ReplicaConfig) -> BaseTargetWriter:
    """
    按目标类型创建写入器

    异常:
        ValueError: 不支持的目标类型
    """
    if config.target_type == TargetType.SQLSERVER:
        return SqlServerTargetWriter(config.target)
    elif config.target_type == TargetType.MYSQL:
        return MySQLTargetWriter(config.target)
    raise ValueError(f"不支持的目标类型: {config.target_type}")


def create_decryptor(config: ReplicaConfig) -> Optional[FieldDecryptor]:
    """启用解密时加载私钥"""
    if not config.decryption.enabled:
        return None
    return FieldDecryptor.from_file(
        config.decryption.key_path,
        config.decryption.key_password,
    )
