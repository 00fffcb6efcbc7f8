#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
命令行界面
为驱动注入流程提供 run / editions / recover 三个命令
"""

from pathlib import Path
from typing import List, Optional

import click

from driverinjector import __version__
from driverinjector.core.config_manager import ConfigManager, EXPORT_POLICIES
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import DriverInjectorError, ExitCode
from driverinjector.core.servicing.models import ImageEdition
from driverinjector.core.servicing.operation_manager import OperationManager
from driverinjector.utils.logger import setup_logger


def _echo_progress(description: str, line: str):
    """DISM进度行覆盖显示在同一行"""
    if line.startswith("[") and "%" in line:
        click.echo(f"\r  {line}", nl=False)
    else:
        click.echo(f"  {line}")


def _prompt_index(editions: List[ImageEdition]) -> Optional[int]:
    click.echo()
    click.secho("install 镜像中的版本:", bold=True)
    for edition in editions:
        click.echo(f"  [{edition.index}] {edition.name}")
    return click.prompt("请输入要保留的版本索引", type=int)


def _build_manager(ctx: click.Context, interactive: bool = False, **overrides) -> OperationManager:
    config_manager: ConfigManager = ctx.obj["config_manager"]
    if interactive:
        overrides["edition_mode"] = "interactive"
    elif overrides.get("edition"):
        overrides["edition_mode"] = "explicit"
    try:
        config = config_manager.build_servicing_config(**overrides)
    except ValueError as e:
        raise click.UsageError(str(e))

    dism = DismManager(config, progress_callback=_echo_progress)
    return OperationManager(config, dism=dism, index_prompt=_prompt_index if interactive else None)


@click.group()
@click.version_option(__version__, prog_name="driverinjector")
@click.option("--config", "-c", "config_file", type=click.Path(dir_okay=False, path_type=Path),
              help="配置文件路径（JSON）")
@click.option("--verbose", "-v", is_flag=True, help="控制台输出调试信息")
@click.pass_context
def cli(ctx, config_file, verbose):
    """离线向 Windows 安装介质注入驱动"""
    ctx.ensure_object(dict)
    config_manager = ConfigManager(config_file)
    ctx.obj["config_manager"] = config_manager

    log_dir = config_manager.get_log_dir()
    setup_logger(
        log_dir / "driverinjector.log",
        verbose=verbose,
        enable_system_log=bool(config_manager.get("logging.system_log", True)),
        context={"app_version": __version__}
    )


def _path_option(*names, **kwargs):
    return click.option(*names, type=click.Path(file_okay=False, path_type=Path), **kwargs)


@cli.command()
@_path_option("--platform-drivers", "-p", help="WinPE/WinRE 平台驱动目录")
@_path_option("--model-drivers", "-m", help="机型驱动目录")
@_path_option("--source", "-s", "install_source", help="安装介质根目录（包含 sources）")
@_path_option("--workspace", "-w", help="挂载目录和临时文件所在目录")
@click.option("--edition", "-e", help="要保留的版本名称，例如 \"Windows 11 Pro\"")
@click.option("--interactive", "-i", is_flag=True, help="列出版本并手动选择索引")
@click.option("--split/--no-split", default=None, help="导出后拆分为 .swm 分卷")
@click.option("--split-size", "split_size_mb", type=click.IntRange(min=1), help="分卷大小（MB）")
@click.option("--export-policy", type=click.Choice(EXPORT_POLICIES),
              help="modified: 仅在注入驱动后导出；always: 没有驱动时也导出选定版本")
@click.pass_context
def run(ctx, platform_drivers, model_drivers, install_source, workspace, edition, interactive,
        split, split_size_mb, export_policy):
    """执行完整的驱动注入流程"""
    if edition and interactive:
        raise click.UsageError("--edition 和 --interactive 不能同时使用")

    manager = _build_manager(
        ctx,
        interactive=interactive,
        platform_drivers=platform_drivers,
        model_drivers=model_drivers,
        install_source=install_source,
        workspace=workspace,
        edition=edition,
        split=split,
        split_size_mb=split_size_mb,
        export_policy=export_policy,
    )
    result = manager.run()

    click.echo()
    if result.success:
        click.secho(f"✅ {result.message}", fg="green")
    elif result.exit_code == ExitCode.NO_DRIVERS:
        click.secho(f"⚠️ {result.message}", fg="yellow")
    else:
        click.secho(f"❌ {result.message}", fg="red", err=True)
    if not result.workspace_clean:
        click.secho("⚠️ 工作空间未完全清理，请查看日志后执行 recover", fg="yellow", err=True)

    ctx.exit(int(result.exit_code))


@cli.command()
@_path_option("--source", "-s", "install_source", help="安装介质根目录（包含 sources）")
@click.pass_context
def editions(ctx, install_source):
    """列出 install 镜像中的版本"""
    manager = _build_manager(ctx, install_source=install_source)
    try:
        found = manager.list_editions()
    except DriverInjectorError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        ctx.exit(int(e.exit_code))
        return

    for edition in found:
        click.echo(f"[{edition.index}] {edition.name}")


@cli.command()
@_path_option("--workspace", "-w", help="挂载目录和临时文件所在目录")
@click.pass_context
def recover(ctx, workspace):
    """放弃上次中断后残留的挂载并清理工作空间"""
    manager = _build_manager(ctx, workspace=workspace)
    if manager.recover():
        click.secho("✅ 工作空间已恢复", fg="green")
        ctx.exit(0)
    click.secho("❌ 恢复未完成，请查看日志", fg="red", err=True)
    ctx.exit(int(ExitCode.SERVICING_FAILED))


def main():
    """控制台入口"""
    cli(obj={})


if __name__ == "__main__":
    main()
