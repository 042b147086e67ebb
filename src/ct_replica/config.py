"""
配置加载模块 - 支持 YAML 和环境变量
"""

from pathlib import Path

import yaml

from ct_replica.errors import ConfigError
from ct_replica.models.replica_config import ReplicaConfig, expand_env_vars

__all__ = [
    "ConfigError",
    "load_config",
    "load_config_from_string",
    "generate_config_template",
    "save_config_template",
]


def load_config(path: str | Path) -> ReplicaConfig:
    """
    加载 YAML 配置文件

    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件路径

    返回:
        ReplicaConfig: 验证后的配置对象

    异常:
        ConfigError: 配置文件不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("replica.yaml")
        print(config.source.database)
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}") from e

    return load_config_from_string(content)


def load_config_from_string(content: str) -> ReplicaConfig:
    """
    从字符串加载配置

    参数:
        content: YAML 配置字符串

    返回:
        ReplicaConfig: 验证后的配置对象
    """
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("配置文件必须是一个对象")

    try:
        expanded_config = expand_env_vars(raw_config)
        return ReplicaConfig(**expanded_config)
    except ValueError as e:
        raise ConfigError(f"配置验证失败: {e}") from e


def generate_config_template() -> str:
    """
    生成配置模板

    返回:
        str: YAML 配置模板
    """
    return '''# ct-replica 复制引擎配置

# 源数据库（必须启用变更跟踪）
source:
  host: "sql.example.com"
  port: 1433
  database: "Operational"
  username: "${SOURCE_USER}"
  password: "${SOURCE_PASSWORD}"

# 只读副本
target:
  type: "sqlserver"           # sqlserver | mysql
  host: "replica.example.com"
  port: 1433
  database: "Replica"
  username: "${TARGET_USER}"
  password: "${TARGET_PASSWORD}"

# 表分类（逗号分隔或列表），reference 与 transactional 必须互斥
tables:
  full_load: "Accounts,Orders,Products"
  reference: "Products"
  transactional: "Accounts,Orders"

# 实体并行度: -1 无界, 1 顺序执行
max_parallel_degree: 4

tick_interval_ms: 60000       # 调度间隔
datetime_format: "%d/%m/%Y %H:%M:%S"

# 敏感字段解密
decryption:
  enabled: false
  key_path: "/secrets/replica.pem"
  key_password: "${KEY_PASSWORD:-}"
  fields:
    Accounts: ["EmailAddress", "PhoneNumber"]

log_level: "INFO"             # 日志级别 (DEBUG, INFO, WARNING, ERROR)
log_json: false
'''


def save_config_template(path: str | Path) -> None:
    """
    保存配置模板到文件

    参数:
        path: 输出文件路径
    """
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
