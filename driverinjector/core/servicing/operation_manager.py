#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
操作接口模块
串联 预检 → 驱动清点 → 版本选择 → 镜像处理 → 收尾，并保证工作空间最终被清理
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import (
    DriverInjectorError, ExitCode, NoDriversFound, ServicingFailure
)
from driverinjector.core.servicing.edition_selector import (
    EditionSelector, IndexPrompt, strategy_from_config
)
from driverinjector.core.servicing.finalizer import Finalizer
from driverinjector.core.servicing.inventory import DriverInventory, InventoryResult
from driverinjector.core.servicing.models import (
    EditionSelection, FinalizeResult, ImageEdition, PipelineResult, WorkspaceState
)
from driverinjector.core.servicing.mount_session import MountSession
from driverinjector.core.servicing.pipeline import ServicingPipeline
from driverinjector.core.servicing.preflight import PreflightValidator, check_admin_privileges
from driverinjector.utils.file_utils import force_remove_tree, is_directory_empty
from driverinjector.utils.logger import get_logger, log_error, log_system_event, update_log_context


@dataclass
class RunResult:
    """一次完整运行的结果"""
    exit_code: ExitCode
    message: str
    inventory: Optional[InventoryResult] = None
    selection: Optional[EditionSelection] = None
    pipeline: Optional[PipelineResult] = None
    finalize: Optional[FinalizeResult] = None
    workspace_clean: bool = True
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == ExitCode.SUCCESS


class OperationManager:
    """操作管理器

    负责一次完整的驱动注入运行
    """

    def __init__(self, config: ServicingConfig, dism: Optional[DismManager] = None,
                 admin_check: Callable[[], bool] = check_admin_privileges,
                 index_prompt: Optional[IndexPrompt] = None):
        self.config = config
        self.dism = dism or DismManager(config)
        self.admin_check = admin_check
        self.index_prompt = index_prompt
        self.workspace = WorkspaceState(config.mount_dir, config.winre_mount_dir, config.temp_dir)
        self.finalizer = Finalizer(config, self.dism)
        self.logger = get_logger("OperationManager")

    def run(self) -> RunResult:
        """执行完整流程，返回结果而不抛出可预期的错误"""
        self.logger.info("🚀 开始驱动注入流程")
        log_system_event("驱动注入", f"安装介质: {self.config.install_source_dir}")

        try:
            self.workspace.prepare()
        except OSError as e:
            log_error(e, "创建挂载目录")
            return RunResult(ExitCode.VALIDATION_FAILED, f"无法创建挂载目录: {e}")

        preflight = PreflightValidator(self.config, self.admin_check).validate()
        if not preflight.passed:
            # 预检失败时不清理：挂载目录里可能是上次残留的挂载
            return RunResult(ExitCode.VALIDATION_FAILED, preflight.message)

        result = RunResult(ExitCode.SUCCESS, "完成")
        try:
            self._run_validated(result)
        except ServicingFailure as e:
            log_system_event("镜像处理失败",
                             f"步骤: {e.step}，镜像: {e.container}，索引: {e.index}。{e.detail}", "error")
            result.exit_code = e.exit_code
            result.message = str(e)
        except DriverInjectorError as e:
            level = "warning" if isinstance(e, NoDriversFound) else "error"
            log_system_event("驱动注入终止", str(e), level)
            result.exit_code = e.exit_code
            result.message = str(e)
        except OSError as e:
            log_error(e, "驱动注入流程")
            result.exit_code = ExitCode.SERVICING_FAILED
            result.message = f"发生I/O错误: {e}"
        finally:
            update_log_context(container="-", index="-")
            cleaned = self.finalizer.cleanup_workspace(self.workspace)
            result.workspace_clean = cleaned and self.workspace.is_clean()

        if result.pipeline:
            result.warnings.extend(result.pipeline.warnings)
        self._log_summary(result)
        return result

    def _run_validated(self, result: RunResult):
        inventory = DriverInventory(self.config).scan()
        result.inventory = inventory
        if not inventory.has_any and self.config.export_policy != "always":
            raise NoDriversFound(
                f"驱动目录中没有找到驱动: {self.config.platform_drivers_dir}, {self.config.model_drivers_dir}"
            )

        selection = self.resolve_edition()
        result.selection = selection

        pipeline = ServicingPipeline(self.config, self.dism, inventory, selection)
        try:
            pipeline.run()
        finally:
            result.pipeline = pipeline.result

        if result.pipeline.install_mutated or self.config.export_policy == "always":
            result.finalize = self.finalizer.finalize(selection)
        else:
            self.logger.info("install 镜像未修改，跳过导出")

    def list_editions(self) -> List[ImageEdition]:
        """列出 install 镜像中的版本"""
        try:
            return EditionSelector(self.dism).list_editions(self.config.install_image)
        finally:
            self._remove_capture_files()

    def _remove_capture_files(self):
        try:
            force_remove_tree(self.config.temp_dir, delay=0.5)
        except (OSError, ValueError) as e:
            self.logger.warning(f"⚠️ 无法删除临时输出目录 {self.config.temp_dir}: {e}")

    def resolve_edition(self) -> EditionSelection:
        selector = EditionSelector(self.dism)
        container = selector.read_container(self.config.install_image)
        strategy = strategy_from_config(self.config, self.index_prompt)
        return selector.select(container.editions, strategy)

    def recover(self) -> bool:
        """放弃工作空间中残留的挂载并清理，用于中断后的人工恢复"""
        self.logger.info("🔧 开始恢复工作空间...")
        recovered = True

        # 先卸载内层的 Winre，再卸载外层
        for mount_point in reversed(self.workspace.mount_points):
            if not mount_point.exists() or is_directory_empty(mount_point):
                continue
            self.logger.info(f"放弃残留挂载: {mount_point}")
            success, message = self.dism.unmount_image(mount_point, commit=False)
            if not success:
                self.logger.error(f"无法卸载 {mount_point}: {message}")
                recovered = False
                continue
            MountSession.release(mount_point)

        success, message = self.dism.cleanup_mountpoints()
        if not success:
            self.logger.warning(f"⚠️ 清理残留挂载点失败: {message}")

        if recovered:
            recovered = self.finalizer.cleanup_workspace(self.workspace)
        return recovered

    def _log_summary(self, result: RunResult):
        self.logger.info("📊 运行结果:")
        if result.inventory:
            self.logger.info(f"   平台驱动: {result.inventory.platform.inf_count} 个，"
                             f"机型驱动: {result.inventory.model.inf_count} 个")
        if result.selection:
            self.logger.info(f"   目标版本: {result.selection.edition}")
        if result.pipeline:
            boot = ", ".join(str(i) for i in result.pipeline.boot_indices_serviced) or "无"
            self.logger.info(f"   boot 索引: {boot}")
            self.logger.info(f"   Winre: {'已处理' if result.pipeline.recovery_serviced else '未处理'}")
            self.logger.info(f"   机型驱动注入: {'是' if result.pipeline.model_drivers_injected else '否'}")
        if result.finalize and result.finalize.final_image:
            self.logger.info(f"   最终镜像: {result.finalize.final_image}")
        for warning in result.warnings:
            self.logger.info(f"   ⚠️ {warning}")

        if result.success:
            self.logger.info(f"✅ {result.message}")
        else:
            self.logger.error(f"❌ {result.message} (退出码 {int(result.exit_code)})")
