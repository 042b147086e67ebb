"""
运行记录存储 - 目标库 LoadStatusLog 表
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

from ct_replica.errors import LoadStatusError
from ct_replica.models.load_run import NO_BASELINE, LoadRun, LoadStatus, LoadType
from ct_replica.sources.base import BaseSourceReader
from ct_replica.targets.base import BaseTargetWriter
from ct_replica.utils.logging import get_logger

logger = get_logger(__name__)

TABLE_NAME = "LoadStatusLog"

_COLUMNS = (
    "Load_Id, Load_First_CT_Version, Load_From_Datetime, Load_Last_CT_Version, "
    "Load_To_Datetime, Load_Status_Code, Load_Type_Code"
)

_LAST_RUN_SQL = (
    f"SELECT {_COLUMNS} FROM {TABLE_NAME} "
    f"WHERE Load_Id = (SELECT MAX(Load_Id) FROM {TABLE_NAME})"
)

_INSERT_SQL = (
    f"INSERT INTO {TABLE_NAME} (Load_First_CT_Version, Load_From_Datetime, "
    f"Load_Last_CT_Version, Load_To_Datetime, Load_Status_Code, Load_Type_Code) "
    f"VALUES (%s, %s, %s, %s, %s, %s)"
)

_MAX_ID_SQL = f"SELECT MAX(Load_Id) AS load_id FROM {TABLE_NAME}"

_COMPLETE_SQL = (
    f"UPDATE {TABLE_NAME} SET Load_To_Datetime = %s, Load_Status_Code = %s, "
    f"Load_Type_Code = %s WHERE Load_Id = %s"
)

_SET_STATUS_SQL = f"UPDATE {TABLE_NAME} SET Load_Status_Code = %s WHERE Load_Id = %s"


def _utcnow() -> datetime:
    """不带时区的 UTC 当前时间（与 DATETIME2 列一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoadStatusStore:
    """
    运行记录存储

    LoadStatusLog 只追加：每次运行插入一行（Preparing），
    结束时更新一次为终态，从不删除。Load_Id 最大的行决定下一轮从哪里开始。

    属性:
        target: 承载 LoadStatusLog 的目标写入器
        source: 用于读取当前变更跟踪版本的源读取器

    示例:
        ```python
        store = LoadStatusStore(target, source)
        run = await store.create_run()
        ...
        await store.complete_run(run.load_id, LoadStatus.READY, LoadType.DELTA)
        ```
    """

    def __init__(
        self,
        target: BaseTargetWriter,
        source: Optional[BaseSourceReader] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.target = target
        self.source = source
        self._clock = clock

    async def ensure_table(self) -> bool:
        """
        确保 LoadStatusLog 表存在

        返回:
            本次是否新建了表
        """
        if await self.target.table_exists(TABLE_NAME):
            return False
        await self.target.execute(self.target.LOAD_STATUS_DDL)
        logger.info("load_status_table_created", table=TABLE_NAME)
        return True

    async def get_last_run(self) -> Optional[LoadRun]:
        """
        获取最近一次运行

        返回:
            Load_Id 最大的运行，无记录时为 None
        """
        rows = await self.target.query(_LAST_RUN_SQL)
        if not rows:
            return None
        return LoadRun.from_row(rows[0])

    async def list_runs(self, limit: int = 20) -> List[LoadRun]:
        """最近的运行记录（新的在前）"""
        if limit < 1:
            return []
        sql = self.target.RECENT_RUNS_SQL.format(columns=_COLUMNS, table=TABLE_NAME)
        rows = await self.target.query(sql, (limit,))
        return [LoadRun.from_row(row) for row in rows]

    async def create_run(self) -> LoadRun:
        """
        创建 Preparing 状态的新运行

        起点按上一次运行的状态计算：
            - Failed / BackTrack: 沿用上一次的起始版本和开始时间（重放）
            - Successful: 从上一次的结束版本和结束时间继续
            - 无记录 / Initialize: 冷启动，起始版本 -1，类型 Historic
        结束版本总是源库当前版本。

        返回:
            带 load_id 的 LoadRun

        异常:
            LoadStatusError: 上一次运行仍为 Preparing 或 Ready
        """
        if self.source is None:
            raise LoadStatusError("创建运行需要源读取器")

        prior = await self.get_last_run()
        current_version = await self.source.current_change_version()
        now = self._clock()

        if prior is None or prior.status == LoadStatus.INITIALIZE:
            first_version = NO_BASELINE
            from_datetime = now
        elif prior.status in (LoadStatus.FAILED, LoadStatus.BACKTRACK):
            first_version = prior.first_ct_version
            from_datetime = prior.from_datetime
        elif prior.status == LoadStatus.SUCCESSFUL:
            first_version = prior.last_ct_version
            from_datetime = prior.to_datetime
        else:
            raise LoadStatusError(
                f"上一次运行 {prior.load_id} 状态为 {prior.status.value}，不能创建新运行"
            )

        load_type = LoadType.HISTORIC if first_version == NO_BASELINE else LoadType.DELTA
        run = LoadRun(
            first_ct_version=first_version,
            from_datetime=from_datetime,
            last_ct_version=current_version,
            to_datetime=now,
            status=LoadStatus.PREPARING,
            load_type=load_type,
        )
        run.load_id = await self._insert(run)

        logger.info(
            "load_run_created",
            load_id=run.load_id,
            prior_status=prior.status.value if prior else None,
            first_ct_version=run.first_ct_version,
            last_ct_version=run.last_ct_version,
            load_type=run.load_type.value,
        )
        return run

    async def _insert(self, run: LoadRun) -> int:
        await self.target.execute(_INSERT_SQL, (
            run.first_ct_version,
            run.from_datetime,
            run.last_ct_version,
            run.to_datetime,
            run.status.value,
            run.load_type.value,
        ))
        rows = await self.target.query(_MAX_ID_SQL)
        if not rows or rows[0]["load_id"] is None:
            raise LoadStatusError("插入运行记录后无法读取 Load_Id")
        return int(rows[0]["load_id"])

    async def complete_run(
        self,
        load_id: int,
        status: LoadStatus,
        load_type: LoadType,
    ) -> None:
        """
        结束运行

        参数:
            load_id: 运行 ID
            status: 终态
            load_type: 最终类型

        异常:
            LoadStatusError: 运行不存在或状态不是终态
        """
        if status == LoadStatus.PREPARING:
            raise LoadStatusError("不能以 Preparing 结束运行")

        affected = await self.target.execute(
            _COMPLETE_SQL, (self._clock(), status.value, load_type.value, load_id)
        )
        if affected == 0:
            raise LoadStatusError(f"运行记录不存在: {load_id}")

        logger.info(
            "load_run_completed",
            load_id=load_id,
            status=status.value,
            load_type=load_type.value,
        )

    async def mark_last_run(self, status: LoadStatus) -> LoadRun:
        """
        运维状态变更

        只允许两种变更：Ready -> Successful（下游确认），
        任意终态 -> BackTrack（下一轮重放）。

        参数:
            status: LoadStatus.SUCCESSFUL 或 LoadStatus.BACKTRACK

        返回:
            更新后的运行

        异常:
            LoadStatusError: 无记录或变更不允许
        """
        last = await self.get_last_run()
        if last is None:
            raise LoadStatusError("LoadStatusLog 中没有运行记录")

        if status == LoadStatus.SUCCESSFUL:
            if last.status != LoadStatus.READY:
                raise LoadStatusError(
                    f"只有 Ready 运行可以确认，运行 {last.load_id} 状态为 {last.status.value}"
                )
        elif status == LoadStatus.BACKTRACK:
            if not last.is_terminal():
                raise LoadStatusError(f"运行 {last.load_id} 仍在进行中")
        else:
            raise LoadStatusError(f"不支持的状态变更: {status.value}")

        await self.target.execute(_SET_STATUS_SQL, (status.value, last.load_id))
        logger.info(
            "load_run_marked",
            load_id=last.load_id,
            previous=last.status.value,
            status=status.value,
        )
        return last.model_copy(update={"status": status})

    async def reinitialize(self) -> LoadRun:
        """
        追加 Initialize 记录，下一轮冷启动

        返回:
            新插入的运行
        """
        last = await self.get_last_run()
        if last is not None and not last.is_terminal():
            logger.warning("reinitialize_over_preparing_run", load_id=last.load_id)

        now = self._clock()
        run = LoadRun(
            first_ct_version=NO_BASELINE,
            from_datetime=now,
            last_ct_version=NO_BASELINE,
            to_datetime=now,
            status=LoadStatus.INITIALIZE,
            load_type=LoadType.HISTORIC,
        )
        run.load_id = await self._insert(run)
        logger.info("load_run_reinitialized", load_id=run.load_id)
        return run
