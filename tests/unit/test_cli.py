"""
CLI 单元测试 (unittest + click CliRunner)
"""

import asyncio
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from ct_replica.cli.main import cli
from ct_replica.models.load_run import LoadRun, LoadStatus, LoadType
from ct_replica.storage.load_status import TABLE_NAME, LoadStatusStore

from conftest import FakeSourceReader, FakeTargetDatabase, FakeTargetWriter, create_test_config_yaml


class CliTestCase(unittest.TestCase):
    """CLI 测试基类：临时目录中的配置文件"""

    def setUp(self):
        self.runner = CliRunner()
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "replica.yaml"
        self.config_path.write_text(create_test_config_yaml(), encoding="utf-8")

    def tearDown(self):
        self.temp_dir.cleanup()

    def invoke(self, *args):
        return self.runner.invoke(cli, list(args))


class TestConfigCommands(CliTestCase):
    """init / validate 命令测试"""

    def test_init_writes_template(self):
        """测试生成配置模板"""
        output = Path(self.temp_dir.name) / "new.yaml"
        result = self.invoke("init", str(output))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue(output.exists())
        self.assertIn("max_parallel_degree", output.read_text(encoding="utf-8"))

    def test_init_refuses_overwrite(self):
        """测试拒绝覆盖已有文件"""
        result = self.runner.invoke(cli, ["init", str(self.config_path)], input="n\n")

        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("batch_size", self.config_path.read_text(encoding="utf-8"))

    def test_validate_ok(self):
        """测试验证通过"""
        result = self.invoke("validate", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("配置验证通过", result.output)
        self.assertIn("无界", result.output)

    def test_validate_overlap(self):
        """测试参考表与事务表重叠时报错"""
        self.config_path.write_text(
            create_test_config_yaml().replace('reference: ["Products"]', 'reference: ["Orders"]'),
            encoding="utf-8",
        )
        result = self.invoke("validate", str(self.config_path))

        self.assertEqual(result.exit_code, 1)

    def test_missing_config_file(self):
        """测试配置文件不存在"""
        result = self.invoke("validate", str(Path(self.temp_dir.name) / "missing.yaml"))
        self.assertNotEqual(result.exit_code, 0)


class TestRunStatusCommands(CliTestCase):
    """status / ack / backtrack / reinit 命令测试"""

    def setUp(self):
        super().setUp()
        self.db = FakeTargetDatabase()
        self.source = FakeSourceReader(version=50)
        self.patches = [
            patch("ct_replica.cli.main.create_target_writer", lambda cfg: FakeTargetWriter(self.db)),
            patch("ct_replica.cli.main.create_source_reader", lambda cfg: self.source),
        ]
        for p in self.patches:
            p.start()
        asyncio.run(self._store().ensure_table())

    def tearDown(self):
        for p in self.patches:
            p.stop()
        self.db.close()
        super().tearDown()

    def _store(self) -> LoadStatusStore:
        return LoadStatusStore(FakeTargetWriter(self.db), self.source)

    def _seed(self, first: int, last: int, status: str):
        self.db.conn.execute(
            f"INSERT INTO {TABLE_NAME} (Load_First_CT_Version, Load_From_Datetime, "
            "Load_Last_CT_Version, Load_To_Datetime, Load_Status_Code, Load_Type_Code) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (first, "2024-03-01T08:00:00", last, "2024-03-01T09:30:00", status, "D"),
        )
        self.db.conn.commit()

    def test_status_empty(self):
        """测试无运行记录"""
        result = self.invoke("status", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("无运行记录", result.output)

    def test_status_lists_runs(self):
        """测试列出运行历史"""
        self._seed(10, 20, "S")
        self._seed(20, 30, "R")

        result = self.invoke("status", "-c", str(self.config_path), "--limit", "5")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("#2 [R] 待确认", result.output)
        self.assertIn("版本=10..20", result.output)
        self.assertIn("2024-03-01 09:30:00", result.output)
        self.assertLess(result.output.index("#2"), result.output.index("#1"))

    def test_ack_ready_run(self):
        """测试确认 Ready 运行"""
        self._seed(20, 30, "R")

        result = self.invoke("ack", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.db.load_status_rows()[-1]["Load_Status_Code"], "S")

    def test_ack_rejected(self):
        """测试非 Ready 运行不能确认"""
        self._seed(20, 30, "F")

        result = self.invoke("ack", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 1)
        self.assertEqual(self.db.load_status_rows()[-1]["Load_Status_Code"], "F")

    def test_ack_database_unreachable(self):
        """测试目标库不可达时输出错误并以 1 退出"""
        unreachable = MagicMock(side_effect=ConnectionRefusedError("replica.local:1433"))
        with patch("ct_replica.cli.main.create_target_writer", unreachable):
            result = self.invoke("ack", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 1)
        self.assertIsInstance(result.exception, SystemExit)
        self.assertIn("更新运行状态失败", result.output)

    def test_backtrack(self):
        """测试回溯最近运行"""
        self._seed(20, 30, "S")

        result = self.invoke("backtrack", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.db.load_status_rows()[-1]["Load_Status_Code"], "B")

    def test_reinit(self):
        """测试追加初始化记录"""
        self._seed(20, 30, "S")

        result = self.invoke("reinit", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        last = self.db.load_status_rows()[-1]
        self.assertEqual(last["Load_Status_Code"], "I")
        self.assertEqual(last["Load_First_CT_Version"], -1)
        self.assertEqual(last["Load_Last_CT_Version"], -1)


class TestOnceCommand(CliTestCase):
    """once 命令测试"""

    def _patch_orchestrator(self, result):
        orchestrator = MagicMock()
        orchestrator.run_tick = AsyncMock(return_value=result)
        return patch(
            "ct_replica.core.orchestrator.LoadOrchestrator",
            MagicMock(return_value=orchestrator),
        )

    def _run(self, status: LoadStatus) -> LoadRun:
        now = datetime(2024, 3, 1, 9, 0)
        return LoadRun(
            load_id=7,
            first_ct_version=-1,
            from_datetime=now,
            last_ct_version=30,
            to_datetime=now,
            status=status,
            load_type=LoadType.HISTORIC,
        )

    def test_once_ready(self):
        """测试单轮成功"""
        with self._patch_orchestrator(self._run(LoadStatus.READY)):
            result = self.invoke("once", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("运行 7: 状态 R 类型 H", result.output)

    def test_once_failed_exit_code(self):
        """测试单轮失败时退出码为 1"""
        with self._patch_orchestrator(self._run(LoadStatus.FAILED)):
            result = self.invoke("once", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 1)

    def test_once_no_op(self):
        """测试本轮未执行"""
        with self._patch_orchestrator(None):
            result = self.invoke("once", "-c", str(self.config_path))

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("本轮未执行新的运行", result.output)


if __name__ == "__main__":
    unittest.main()
