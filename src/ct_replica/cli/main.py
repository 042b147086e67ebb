"""
CLI 命令行入口 - 使用 Click 框架
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from ct_replica import __version__
from ct_replica.config import ConfigError, load_config, save_config_template
from ct_replica.core.factory import create_source_reader, create_target_writer
from ct_replica.errors import LoadStatusError
from ct_replica.models.load_run import LoadStatus
from ct_replica.models.replica_config import ReplicaConfig
from ct_replica.storage.load_status import LoadStatusStore
from ct_replica.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

_STATUS_LABELS = {
    LoadStatus.PREPARING: "准备中",
    LoadStatus.READY: "待确认",
    LoadStatus.SUCCESSFUL: "已确认",
    LoadStatus.FAILED: "失败",
    LoadStatus.BACKTRACK: "回溯",
    LoadStatus.INITIALIZE: "初始化",
}


@click.group()
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="日志级别（默认取配置文件）",
)
@click.version_option(version=__version__, prog_name="ct-replica")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """
    SQL Server 变更跟踪只读副本加载引擎 CLI

    定期将源库表复制到只读副本，支持全量（Historic）和
    基于变更跟踪的增量（Delta）两种模式。
    """
    configure_logging(log_level=log_level or "INFO", json_format=False)

    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


def _load(ctx: click.Context, config_path: str) -> ReplicaConfig:
    """加载配置并按配置重新设置日志"""
    cfg = load_config(config_path)
    configure_logging(
        log_level=ctx.obj.get("log_level") or cfg.log_level,
        json_format=cfg.log_json,
    )
    return cfg


def _make_store(cfg: ReplicaConfig) -> LoadStatusStore:
    return LoadStatusStore(create_target_writer(cfg), create_source_reader(cfg))


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="配置文件路径",
)


@cli.command()
@click.argument("output_path", type=click.Path(), default="replica.yaml")
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        ct-replica init replica.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(exists=True))
def validate(config_path: str) -> None:
    """
    验证配置文件

    示例:
        ct-replica validate replica.yaml
    """
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    tables = config.tables
    parallelism = "无界" if config.is_unbounded() else str(config.max_parallel_degree)
    click.echo("✓ 配置验证通过")
    click.echo(f"  源数据库: {config.source.host}/{config.source.database}")
    click.echo(f"  目标数据库: {config.target.type} {config.target.host}/{config.target.database}")
    click.echo(f"  全量表: {len(tables.full_load)}  参考表: {len(tables.reference)}  事务表: {len(tables.transactional)}")
    click.echo(f"  并行度: {parallelism}")
    click.echo(f"  解密: {'启用' if config.decryption.enabled else '未启用'}")


@cli.command()
@config_option
@click.pass_context
def run(ctx: click.Context, config: str) -> None:
    """
    启动调度循环，直到收到 SIGINT/SIGTERM

    示例:
        ct-replica run -c replica.yaml
    """
    try:
        cfg = _load(ctx, config)
        click.echo("ct-replica 调度循环")
        click.echo("=" * 40)
        click.echo(f"配置: {config}")
        click.echo(f"间隔: {cfg.tick_interval_ms} ms")
        click.echo("按 Ctrl+C 停止...")
        asyncio.run(_run_scheduler(config))
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\n调度已停止")
        sys.exit(0)

    click.echo("✓ 调度已停止")


@cli.command()
@config_option
@click.pass_context
def once(ctx: click.Context, config: str) -> None:
    """
    执行一轮调度

    示例:
        ct-replica once -c replica.yaml
    """
    try:
        _load(ctx, config)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)

    result = asyncio.run(_run_once(config))
    if result is None:
        click.echo("本轮未执行新的运行")
        return

    click.echo(f"运行 {result.load_id}: 状态 {result.status.value} 类型 {result.load_type.value}")
    if result.status == LoadStatus.FAILED:
        sys.exit(1)


@cli.command()
@config_option
@click.option("--limit", "-n", type=int, default=20, show_default=True, help="显示条数")
@click.pass_context
def status(ctx: click.Context, config: str, limit: int) -> None:
    """
    查看运行历史

    示例:
        ct-replica status -c replica.yaml --limit 5
    """
    try:
        cfg = _load(ctx, config)
        runs = asyncio.run(_make_store(cfg).list_runs(limit))
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 获取状态失败: {e}", err=True)
        sys.exit(1)

    click.echo("ct-replica 运行历史")
    click.echo("=" * 40)
    if not runs:
        click.echo("（无运行记录）")
        return

    fmt = cfg.datetime_format
    for r in runs:
        click.echo(
            f"  #{r.load_id} [{r.status.value}] {_STATUS_LABELS[r.status]} "
            f"类型={r.load_type.value} 版本={r.first_ct_version}..{r.last_ct_version} "
            f"{r.from_datetime.strftime(fmt)} -> {r.to_datetime.strftime(fmt)}"
        )


@cli.command()
@config_option
@click.pass_context
def ack(ctx: click.Context, config: str) -> None:
    """
    确认最近一次 Ready 运行（Ready -> Successful）

    下游消费完成后调用，下一轮从该运行的结束版本继续。

    示例:
        ct-replica ack -c replica.yaml
    """
    _mark(ctx, config, LoadStatus.SUCCESSFUL)


@cli.command()
@config_option
@click.pass_context
def backtrack(ctx: click.Context, config: str) -> None:
    """
    回溯最近一次运行，下一轮从其起始版本重放

    示例:
        ct-replica backtrack -c replica.yaml
    """
    _mark(ctx, config, LoadStatus.BACKTRACK)


@cli.command()
@config_option
@click.pass_context
def reinit(ctx: click.Context, config: str) -> None:
    """
    追加 Initialize 记录，下一轮执行全量加载

    示例:
        ct-replica reinit -c replica.yaml
    """
    try:
        cfg = _load(ctx, config)
        store = _make_store(cfg)
        run_ = asyncio.run(_reinitialize(store))
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 重新初始化失败: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ 已追加初始化记录 #{run_.load_id}，下一轮执行全量加载")


def _mark(ctx: click.Context, config: str, target_status: LoadStatus) -> None:
    try:
        cfg = _load(ctx, config)
        updated = asyncio.run(_make_store(cfg).mark_last_run(target_status))
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(1)
    except LoadStatusError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"✗ 更新运行状态失败: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ 运行 #{updated.load_id} 已标记为 {_STATUS_LABELS[target_status]}")


# ============================================================================
# 异步执行函数
# ============================================================================

async def _run_scheduler(config_path: str) -> None:
    """运行调度循环，信号触发停止"""
    from ct_replica.core.orchestrator import LoadOrchestrator

    orchestrator = LoadOrchestrator(lambda: load_config(config_path))
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.stop)
        except NotImplementedError:
            # Windows 事件循环不支持，依赖 KeyboardInterrupt
            logger.debug("signal_handler_unsupported", signal=sig.name)

    await orchestrator.run_forever()


async def _run_once(config_path: str):
    """执行一轮调度"""
    from ct_replica.core.orchestrator import LoadOrchestrator

    orchestrator = LoadOrchestrator(lambda: load_config(config_path))
    return await orchestrator.run_tick()


async def _reinitialize(store: LoadStatusStore):
    await store.ensure_table()
    return await store.reinitialize()


if __name__ == "__main__":
    cli()
