"""
源读取器抽象基类
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence, Set


class BaseSourceReader(ABC):
    """
    启用了变更跟踪的源数据库读取器

    所有语句在瞬时故障时按固定间隔重试。
    """

    @abstractmethod
    async def list_tables(self) -> List[str]:
        """列出全部用户表"""
        raise NotImplementedError

    @abstractmethod
    async def get_columns(self, table: str) -> List[str]:
        """按序号列出表的列名"""
        raise NotImplementedError

    @abstractmethod
    async def get_primary_keys(self, table: str) -> List[str]:
        """
        获取主键列

        参数:
            table: 表名

        返回:
            主键列名（复合主键按键序），无主键时为空列表
        """
        raise NotImplementedError

    @abstractmethod
    async def fetch_all(self, table: str) -> List[Dict[str, Any]]:
        """读取表的全部行"""
        raise NotImplementedError

    @abstractmethod
    async def current_change_version(self) -> int:
        """
        当前变更跟踪版本

        返回:
            版本号，未启用变更跟踪时为 -1
        """
        raise NotImplementedError

    @abstractmethod
    async def tables_with_valid_changes(self, marker: int) -> Set[str]:
        """
        仍在变更跟踪保留期内的表

        参数:
            marker: 版本下限，min_valid_version <= marker 的表被返回

        返回:
            表名集合
        """
        raise NotImplementedError

    @abstractmethod
    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """执行任意参数化查询"""
        raise NotImplementedError
