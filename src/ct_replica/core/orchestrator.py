"""
加载编排器 - 模式状态机、实体并发、调度循环
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ct_replica.core.change_set import ChangeSetResolver
from ct_replica.core.factory import create_decryptor, create_source_reader, create_target_writer
from ct_replica.core.pipeline import EntityLoadPipeline
from ct_replica.errors import EntityLoadError
from ct_replica.models.entity import EntityLoadResult
from ct_replica.models.load_run import LoadRun, LoadStatus, LoadType, NO_BASELINE
from ct_replica.models.replica_config import ReplicaConfig
from ct_replica.sources.base import BaseSourceReader
from ct_replica.storage.load_status import LoadStatusStore
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.utils.decryption import FieldDecryptor
from ct_replica.utils.logging import bound_context, get_logger

logger = get_logger(__name__)

SourceFactory = Callable[[ReplicaConfig], BaseSourceReader]
TargetFactory = Callable[[ReplicaConfig], BaseTargetWriter]
DecryptorFactory = Callable[[ReplicaConfig], Optional[FieldDecryptor]]


class OrchestratorContext(BaseModel):
    """
    单轮调度的上下文

    属性:
        config: 本轮重新读取的配置
        source_entities: 源库中的用户表
        decryptor: 敏感字段解密器
        started_at: 本轮开始时间
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: ReplicaConfig
    source_entities: Set[str] = Field(default_factory=set)
    decryptor: Optional[FieldDecryptor] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def scope(self, mode: LoadType) -> List[str]:
        """
        本轮需要处理的实体

        Historic: 全量表 ∩ 源表
        Delta: (参考表 ∪ 事务表) ∩ 源表
        """
        tables = self.config.tables
        if mode == LoadType.HISTORIC:
            configured = set(tables.full_load)
        else:
            configured = set(tables.reference) | set(tables.transactional)

        missing = configured - self.source_entities
        if missing:
            logger.warning("configured_tables_missing_in_source", tables=sorted(missing))
        return sorted(configured & self.source_entities)


class DeltaAccumulator:
    """记录产生了增量行的实体（并发任务共享）"""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._entities: Set[str] = set()

    async def record(self, entity: str) -> None:
        async with self._lock:
            self._entities.add(entity)

    @property
    def produced(self) -> bool:
        return bool(self._entities)

    @property
    def entities(self) -> List[str]:
        return sorted(self._entities)


def decide_mode(last: Optional[LoadRun]) -> Optional[LoadType]:
    """
    根据最近一次运行决定本轮模式

    参数:
        last: 最近一次运行

    返回:
        本轮模式，None 表示本轮不执行
            - 无记录 / Initialize: Historic
            - Successful / BackTrack: Delta（没有可用基线时退回 Historic）
            - Failed: 重放，起始版本为 -1 时 Historic，否则 Delta
            - Ready: 等待下游确认，不执行
            - Preparing: 有运行未结束，不执行
    """
    if last is None or last.status == LoadStatus.INITIALIZE:
        return LoadType.HISTORIC
    if last.status in (LoadStatus.READY, LoadStatus.PREPARING):
        return None
    if last.status == LoadStatus.SUCCESSFUL:
        return LoadType.DELTA if last.last_ct_version != NO_BASELINE else LoadType.HISTORIC
    # Failed / BackTrack 从原起点重放
    return LoadType.DELTA if last.has_baseline() else LoadType.HISTORIC


class LoadOrchestrator:
    """
    加载编排器

    每轮调度：重新读取配置 -> 读取最近运行 -> 决定模式 -> 创建运行 ->
    按并行度并发执行实体管道 -> 汇总结果并结束运行。
    各轮严格串行，停止信号只在两轮之间检查。

    示例:
        ```python
        orchestrator = LoadOrchestrator(lambda: load_config("replica.yaml"))
        await orchestrator.run_forever()
        ```
    """

    def __init__(
        self,
        config_loader: Callable[[], ReplicaConfig],
        source_factory: SourceFactory = create_source_reader,
        target_factory: TargetFactory = create_target_writer,
        decryptor_factory: DecryptorFactory = create_decryptor,
    ):
        """
        初始化编排器

        参数:
            config_loader: 每轮调用一次的配置加载函数
            source_factory: 源读取器工厂（每个实体独立实例）
            target_factory: 目标写入器工厂（每个实体独立实例）
            decryptor_factory: 解密器工厂
        """
        self._config_loader = config_loader
        self._source_factory = source_factory
        self._target_factory = target_factory
        self._decryptor_factory = decryptor_factory
        self._stop_event = asyncio.Event()
        self._tick_interval: Optional[float] = None

    async def prepare(self) -> OrchestratorContext:
        """
        准备本轮上下文

        异常:
            ConfigError: 配置无效（包括参考表与事务表重叠）
        """
        config = self._config_loader()
        self._tick_interval = config.tick_interval
        source = self._source_factory(config)
        tables = await source.list_tables()
        decryptor = self._decryptor_factory(config)
        return OrchestratorContext(
            config=config,
            source_entities=set(tables),
            decryptor=decryptor,
        )

    async def run_tick(self) -> Optional[LoadRun]:
        """
        执行一轮调度

        准备阶段的异常被记录后放弃本轮；运行记录已创建时以 Failed 结束。

        返回:
            结束后的运行，本轮未执行时为 None
        """
        try:
            context = await self.prepare()
            store = LoadStatusStore(
                self._target_factory(context.config),
                self._source_factory(context.config),
            )
            await store.ensure_table()
            last = await store.get_last_run()
        except Exception as e:
            logger.error("tick_setup_failed", error=e)
            return None

        mode = decide_mode(last)
        if mode is None:
            if last is not None and last.status == LoadStatus.PREPARING:
                logger.warning("tick_skipped_run_in_progress", load_id=last.load_id)
            else:
                logger.info("tick_skipped_awaiting_ack", load_id=last.load_id if last else None)
            return None

        try:
            run = await store.create_run()
        except Exception as e:
            logger.error("tick_setup_failed", error=e, mode=mode.value)
            return None

        with bound_context(load_id=run.load_id):
            if run.load_type != mode:
                logger.warning(
                    "load_mode_adjusted",
                    requested=mode.value,
                    effective=run.load_type.value,
                )
            return await self._execute_run(context, store, run)

    async def _execute_run(
        self,
        context: OrchestratorContext,
        store: LoadStatusStore,
        run: LoadRun,
    ) -> Optional[LoadRun]:
        logger.info(
            "load_run_started",
            tick_started_at=context.started_at.isoformat(),
            mode=run.load_type.value,
            first_ct_version=run.first_ct_version,
            last_ct_version=run.last_ct_version,
        )

        status = LoadStatus.FAILED
        load_type = run.load_type
        try:
            results, accumulator = await self._fan_out(context, run)
            load_type = LoadType.DELTA if accumulator.produced else LoadType.HISTORIC
            status = LoadStatus.READY
            logger.info(
                "load_run_entities_complete",
                entities=len(results),
                delta_entities=accumulator.entities,
            )
        except EntityLoadError as e:
            load_type = LoadType.DELTA if e.produced_delta else LoadType.HISTORIC
            logger.error("load_run_entities_failed", entities=e.entities)
        except Exception as e:
            logger.error("load_run_failed", error=e)

        try:
            await store.complete_run(run.load_id, status, load_type)
        except Exception as e:
            logger.error("load_run_complete_failed", error=e, status=status.value)
            return None

        logger.info(
            "load_run_finished",
            status=status.value,
            load_type=load_type.value,
            elapsed_s=round((datetime.now(timezone.utc) - context.started_at).total_seconds(), 3),
        )
        return run.model_copy(update={"status": status, "load_type": load_type})

    async def _fan_out(
        self,
        context: OrchestratorContext,
        run: LoadRun,
    ) -> Tuple[List[EntityLoadResult], DeltaAccumulator]:
        """
        并发执行实体管道

        每个实体一个任务，由信号量限制并发数；等待全部完成后汇总异常，
        单个实体失败不会取消其他实体。

        异常:
            EntityLoadError: 至少一个实体失败
        """
        config = context.config
        mode = run.load_type
        entities = context.scope(mode)

        pending: Set[str] = set()
        if mode == LoadType.DELTA:
            resolver = ChangeSetResolver(self._source_factory(config), config.source.schema_name)
            pending = await resolver.list_entities_with_pending_changes(run.first_ct_version)

        if config.is_unbounded():
            limit = max(len(entities), 1)
        else:
            limit = config.max_parallel_degree
        semaphore = asyncio.Semaphore(limit)
        accumulator = DeltaAccumulator()

        async def load_entity(name: str) -> EntityLoadResult:
            async with semaphore:
                source = self._source_factory(config)
                pipeline = EntityLoadPipeline(
                    source=source,
                    target=self._target_factory(config),
                    resolver=ChangeSetResolver(source, config.source.schema_name),
                    decryptor=context.decryptor,
                )
                result = await pipeline.run(
                    config.entity_spec(name), mode, run.first_ct_version, pending
                )
                if result.produced_delta:
                    await accumulator.record(name)
                return result

        logger.info(
            "entity_fan_out",
            mode=mode.value,
            entities=entities,
            parallelism=config.max_parallel_degree,
        )
        outcomes = await asyncio.gather(
            *(load_entity(name) for name in entities),
            return_exceptions=True,
        )

        results: List[EntityLoadResult] = []
        failures: Dict[str, BaseException] = {}
        for name, outcome in zip(entities, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("entity_load_failed", entity=name, error=outcome)
                failures[name] = outcome
            else:
                results.append(outcome)

        if failures:
            raise EntityLoadError(failures, produced_delta=accumulator.produced)
        return results, accumulator

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        固定间隔调度循环

        参数:
            stop_event: 外部停止信号，默认使用内部事件（见 stop()）
        """
        if stop_event is not None:
            self._stop_event = stop_event

        logger.info("scheduler_started")
        while not self._stop_event.is_set():
            await self.run_tick()
            if self._stop_event.is_set():
                break
            interval = self._tick_interval if self._tick_interval is not None else 60.0
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler_stopped")

    def stop(self) -> None:
        """请求在当前轮结束后停止"""
        self._stop_event.set()
