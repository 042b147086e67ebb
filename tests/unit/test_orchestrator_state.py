"""
编排器状态机单元测试 (unittest)
"""

import asyncio
import unittest
from unittest import IsolatedAsyncioTestCase

from ct_replica.core.orchestrator import DeltaAccumulator, OrchestratorContext, decide_mode
from ct_replica.models.load_run import LoadRun, LoadStatus, LoadType

from conftest import create_test_config


def last_run(status: LoadStatus, first: int = 10, last: int = 20) -> LoadRun:
    load_type = LoadType.HISTORIC if first == -1 else LoadType.DELTA
    return LoadRun(
        load_id=1,
        first_ct_version=first,
        last_ct_version=last,
        status=status,
        load_type=load_type,
    )


class TestDecideMode(unittest.TestCase):
    """模式决策测试"""

    def test_cold_start(self):
        """测试无记录和 Initialize 为 Historic"""
        self.assertEqual(decide_mode(None), LoadType.HISTORIC)
        self.assertEqual(decide_mode(last_run(LoadStatus.INITIALIZE, -1, -1)), LoadType.HISTORIC)

    def test_successful_and_backtrack(self):
        """测试 Successful 和 BackTrack 为 Delta"""
        self.assertEqual(decide_mode(last_run(LoadStatus.SUCCESSFUL)), LoadType.DELTA)
        self.assertEqual(decide_mode(last_run(LoadStatus.BACKTRACK)), LoadType.DELTA)

    def test_without_baseline_falls_back(self):
        """测试没有基线时退回 Historic"""
        self.assertEqual(decide_mode(last_run(LoadStatus.SUCCESSFUL, -1, -1)), LoadType.HISTORIC)
        self.assertEqual(decide_mode(last_run(LoadStatus.BACKTRACK, -1, 20)), LoadType.HISTORIC)

    def test_failed_replay(self):
        """测试 Failed 按起始版本重放"""
        self.assertEqual(decide_mode(last_run(LoadStatus.FAILED, -1, 20)), LoadType.HISTORIC)
        self.assertEqual(decide_mode(last_run(LoadStatus.FAILED, 10, 20)), LoadType.DELTA)

    def test_no_op_states(self):
        """测试 Ready 和 Preparing 不执行"""
        self.assertIsNone(decide_mode(last_run(LoadStatus.READY)))
        self.assertIsNone(decide_mode(last_run(LoadStatus.PREPARING)))


class TestOrchestratorContext(unittest.TestCase):
    """上下文范围测试"""

    def setUp(self):
        self.context = OrchestratorContext(
            config=create_test_config(),
            source_entities={"Accounts", "Orders", "Logs"},
        )

    def test_historic_scope(self):
        """测试 Historic 范围为全量表与源表交集"""
        self.assertEqual(self.context.scope(LoadType.HISTORIC), ["Accounts", "Orders"])

    def test_delta_scope(self):
        """测试 Delta 范围为参考表和事务表与源表交集"""
        self.context.source_entities.add("Products")
        self.assertEqual(
            self.context.scope(LoadType.DELTA), ["Accounts", "Orders", "Products"]
        )


class TestDeltaAccumulator(IsolatedAsyncioTestCase):
    """增量累加器测试"""

    async def test_concurrent_records(self):
        """测试并发记录"""
        accumulator = DeltaAccumulator()
        self.assertFalse(accumulator.produced)

        await asyncio.gather(*(accumulator.record(f"T{i % 3}") for i in range(30)))

        self.assertTrue(accumulator.produced)
        self.assertEqual(accumulator.entities, ["T0", "T1", "T2"])


if __name__ == "__main__":
    unittest.main()
