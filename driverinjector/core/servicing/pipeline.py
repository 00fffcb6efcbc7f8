#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像处理流程模块
按固定顺序处理 boot.wim、install.wim 以及嵌套在其中的 Winre.wim

顺序：
    1. boot.wim 各索引：挂载 → 注入平台驱动（允许未签名） → 提交
    2. install.wim 选定索引：挂载
    3. Winre.wim：挂载 → 注入平台驱动（允许未签名） → 清理组件 → 提交
    4. install.wim：注入机型驱动（仅签名）
    5. install.wim：提交（耗时最长，不重试，不回滚）
"""

import time
from typing import List, Optional

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import ServicingFailure
from driverinjector.core.servicing.inventory import InventoryResult
from driverinjector.core.servicing.models import (
    ContainerKind, EditionSelection, PipelineResult, ServicingStep
)
from driverinjector.core.servicing.mount_session import MountSession
from driverinjector.utils.logger import get_logger, log_system_event, update_log_context


class ServicingPipeline:
    """镜像处理流程

    每个 (镜像, 阶段) 对应一个方法，run() 负责组合；
    DISM调用失败抛出 ServicingFailure，由调用方决定后续清理。
    """

    def __init__(self, config: ServicingConfig, dism: DismManager,
                 inventory: InventoryResult, selection: EditionSelection):
        self.config = config
        self.dism = dism
        self.inventory = inventory
        self.selection = selection
        self.result = PipelineResult()
        self.logger = get_logger("ServicingPipeline")

    @property
    def has_platform_drivers(self) -> bool:
        return not self.inventory.platform.is_empty

    @property
    def has_model_drivers(self) -> bool:
        return not self.inventory.model.is_empty

    def run(self) -> PipelineResult:
        """执行完整流程"""
        self.service_boot_image()

        if not self.inventory.has_any:
            self.logger.info("两个驱动目录都为空，不修改 install 镜像")
            return self.result

        install_session = self.mount_install_image()
        sessions = [install_session]
        try:
            if self.has_platform_drivers:
                recovery_session = self._new_session(
                    self.config.recovery_image, 1, self.config.winre_mount_dir, ContainerKind.RECOVERY
                )
                sessions.append(recovery_session)
                self.service_recovery_image(recovery_session)
            else:
                self._warn("平台驱动为空，跳过 Winre 镜像")

            self.inject_model_drivers(install_session)
            self.commit_install_image(install_session)
        except ServicingFailure:
            self._release_after_failure(list(reversed(sessions)))
            raise

        return self.result

    # ---- boot.wim ----

    def service_boot_image(self):
        """依次处理 boot.wim 的各个索引"""
        if not self.has_platform_drivers:
            self._warn("平台驱动为空，跳过 boot 镜像")
            return

        for index in self.config.boot_indices:
            self.service_boot_index(index)

    def service_boot_index(self, index: int):
        """boot.wim 单个索引：挂载 → 注入 → 提交"""
        update_log_context(container="boot", index=index)
        session = self._new_session(self.config.boot_image, index, self.config.mount_dir,
                                    ContainerKind.BOOT)
        try:
            session.open()
            self._record("boot", index, ServicingStep.MOUNT)
            session.inject(self.inventory.platform, allow_unsigned=True)
            self._record("boot", index, ServicingStep.INJECT)
            session.commit()
            self._record("boot", index, ServicingStep.COMMIT)
        except ServicingFailure:
            self._release_after_failure([session])
            raise

        self.result.boot_indices_serviced.append(index)

    # ---- install.wim ----

    def mount_install_image(self) -> MountSession:
        """挂载 install.wim 中选定的版本"""
        index = self.selection.index
        update_log_context(container="install", index=index)
        self.logger.info(f"挂载 install 镜像: {self.selection.edition}")
        session = self._new_session(self.config.install_image, index, self.config.mount_dir,
                                    ContainerKind.INSTALL)
        session.open()
        self._record("install", index, ServicingStep.MOUNT)
        self.result.install_mounted = True
        return session

    def service_recovery_image(self, session: MountSession):
        """Winre.wim：挂载 → 注入 → 清理组件 → 提交，必须在 install 挂载期间完成"""
        update_log_context(container="recovery", index=session.index)
        session.open()
        self._record("recovery", session.index, ServicingStep.MOUNT)
        session.inject(self.inventory.platform, allow_unsigned=True)
        self._record("recovery", session.index, ServicingStep.INJECT)
        if session.cleanup():
            self._record("recovery", session.index, ServicingStep.CLEANUP)
        else:
            self._warn("Winre 镜像组件清理失败，已忽略")
        session.commit()
        self._record("recovery", session.index, ServicingStep.COMMIT)
        self.result.recovery_serviced = True

    def inject_model_drivers(self, session: MountSession):
        """向 install 镜像注入机型驱动，只接受已签名驱动"""
        if not self.has_model_drivers:
            self._warn("机型驱动为空，跳过 install 镜像驱动注入")
            return

        update_log_context(container="install", index=session.index)
        session.inject(self.inventory.model, allow_unsigned=False)
        self._record("install", session.index, ServicingStep.INJECT)
        self.result.model_drivers_injected = True

    def commit_install_image(self, session: MountSession):
        """提交 install 镜像，通常需要5-30分钟，期间不要中断"""
        update_log_context(container="install", index=session.index)
        self.logger.info("正在提交 install 镜像，通常需要5-30分钟，请勿中断...")
        start_time = time.time()
        try:
            session.commit()
        except ServicingFailure as e:
            log_system_event("install提交失败",
                             f"{e}。镜像可能处于不一致状态，需要人工检查后重新运行", "error")
            raise

        self.logger.info(f"install 镜像提交完成，耗时 {time.time() - start_time:.0f} 秒")
        self._record("install", session.index, ServicingStep.COMMIT)
        self.result.install_committed = True

    # ---- 辅助方法 ----

    def _new_session(self, image_file, index, mount_dir, kind) -> MountSession:
        return MountSession(self.dism, image_file, index, mount_dir, kind)

    def _release_after_failure(self, sessions: List[MountSession]):
        """由内向外放弃仍挂载的会话；提交失败的会话保持原状，等待人工处理"""
        if not self.config.discard_on_failure:
            return

        for session in sessions:
            if not session.mounted:
                continue
            if session.failed_step == ServicingStep.COMMIT:
                self.logger.error(f"提交失败的镜像保持挂载状态，需要人工处理: {session!r}")
                return
            if not session.discard():
                # 内层仍挂载时外层无法安全卸载
                return

    def _record(self, container: str, index: Optional[int], step: ServicingStep):
        self.result.steps.append(f"{container}:{index}:{step.name.lower()}")

    def _warn(self, message: str):
        self.logger.warning(f"⚠️ {message}")
        self.result.warnings.append(message)
