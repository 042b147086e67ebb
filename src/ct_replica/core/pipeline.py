"""
实体加载管道 - 单表的全量/增量/跳过决策与写入
"""

from typing import List, Optional, Set

from ct_replica.core.change_set import ChangeSetResolver
from ct_replica.errors import DecryptionError
from ct_replica.models.entity import (
    ChangeOperation,
    EntityLoadResult,
    EntitySpec,
    RowChangeRecord,
)
from ct_replica.models.load_run import LoadType
from ct_replica.sources.base import BaseSourceReader
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.utils.decryption import FieldDecryptor
from ct_replica.utils.logging import get_logger
from ct_replica.utils.schema import build_column_mapping

logger = get_logger(__name__)


class EntityLoadPipeline:
    """
    单实体加载管道

    Historic 模式:
        全量表先清空，再写入全部行（标记 N），即使源表为空也调用写入器。
    Delta 模式:
        先清空目标表；事务表且有待处理变更时只读取变更行，
        参考表总是读取全部行；都不属于的实体直接跳过。
        只有行集非空时才调用写入器。

    异常不在管道内捕获，由编排器的并发汇总收集。

    属性:
        source: 源读取器
        target: 目标写入器
        resolver: 变更集解析器
        decryptor: 敏感字段解密器（未启用解密时为 None）
    """

    def __init__(
        self,
        source: BaseSourceReader,
        target: BaseTargetWriter,
        resolver: Optional[ChangeSetResolver] = None,
        decryptor: Optional[FieldDecryptor] = None,
    ):
        self.source = source
        self.target = target
        self.resolver = resolver or ChangeSetResolver(source)
        self.decryptor = decryptor

    async def run(
        self,
        entity: EntitySpec,
        mode: LoadType,
        marker: int,
        pending: Set[str],
    ) -> EntityLoadResult:
        """
        加载单个实体

        参数:
            entity: 实体定义
            mode: 本轮运行模式
            marker: 起始变更跟踪版本
            pending: 有待处理变更的实体集合

        返回:
            EntityLoadResult
        """
        name = entity.name
        result = EntityLoadResult(entity=name, mode=mode)

        if not self._in_scope(entity, mode):
            logger.debug("entity_outside_scope", entity=name, mode=mode.value)
            result.skipped = True
            return result

        if not await self.target.table_exists(name):
            logger.warning("target_table_missing", entity=name)
            result.skipped = True
            return result

        await self.target.truncate(name)

        records: List[RowChangeRecord]
        if mode == LoadType.HISTORIC:
            records = await self._snapshot(name)
        elif entity.is_transactional():
            if name in pending:
                records = await self.resolver.fetch_changes(name, marker)
                result.produced_delta = len(records) > 0
            else:
                logger.debug("no_pending_changes", entity=name)
                records = []
        else:
            records = await self._snapshot(name)

        if records and entity.is_sensitive():
            records = self._decrypt(entity, records)

        if mode == LoadType.HISTORIC or records:
            result.rows_written = await self._write(name, records)
            result.writer_invoked = True

        logger.info(
            "entity_loaded",
            entity=name,
            mode=mode.value,
            rows=result.rows_written,
            delta=result.produced_delta,
        )
        return result

    @staticmethod
    def _in_scope(entity: EntitySpec, mode: LoadType) -> bool:
        if mode == LoadType.HISTORIC:
            return entity.is_full_load()
        return entity.is_transactional() or entity.is_reference()

    async def _snapshot(self, name: str) -> List[RowChangeRecord]:
        """全部源行，标记为 N"""
        rows = await self.source.fetch_all(name)
        return [RowChangeRecord(operation=ChangeOperation.NEW, data=row) for row in rows]

    def _decrypt(self, entity: EntitySpec, records: List[RowChangeRecord]) -> List[RowChangeRecord]:
        if self.decryptor is None:
            raise DecryptionError(f"{entity.name} 配置了敏感字段但没有可用的解密器", table=entity.name)
        return self.decryptor.decrypt_records(entity.name, records, entity.sensitive_fields)

    async def _write(self, name: str, records: List[RowChangeRecord]) -> int:
        source_columns = await self.source.get_columns(name)
        target_columns = await self.target.get_columns(name)
        mapping = build_column_mapping(name, source_columns, target_columns)
        rows = [record.to_row() for record in records]
        return await self.target.write_with_retry(name, mapping, rows)
