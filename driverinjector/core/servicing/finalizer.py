#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
收尾模块
导出单版本 install 镜像、替换原文件、按需拆分，以及清理工作空间
"""

import os
from pathlib import Path
from typing import List

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import CleanupFailure, FinalizeFailure
from driverinjector.core.servicing.models import (
    EditionSelection, FinalizeResult, ServicingStep, WorkspaceState
)
from driverinjector.core.servicing.mount_session import MountSession
from driverinjector.utils.file_utils import force_remove_file, force_remove_tree, format_size
from driverinjector.utils.logger import get_logger, log_servicing_step


class Finalizer:
    """收尾处理器"""

    def __init__(self, config: ServicingConfig, dism: DismManager):
        self.config = config
        self.dism = dism
        self.logger = get_logger("Finalizer")

    def finalize(self, selection: EditionSelection) -> FinalizeResult:
        """导出 → 替换 → 可选拆分

        只能在 install 镜像提交之后调用。

        Raises:
            FinalizeFailure: 任一步骤失败
        """
        result = FinalizeResult()

        self.export_edition(selection)
        result.exported = True

        self.swap_exported_image()
        result.final_image = self.config.install_image

        if self.config.split:
            result.split_parts = self.split_install_image()
            result.final_image = self.config.split_image

        return result

    def export_edition(self, selection: EditionSelection):
        """把选定索引导出为只含一个版本的新镜像"""
        source = self.config.install_image
        dest = self.config.export_image
        log_servicing_step(ServicingStep.EXPORT.value, f"{selection.edition} → {dest.name}")

        if dest.exists():
            # 上一次运行在导出和替换之间被中断留下的文件
            self.logger.warning(f"⚠️ 删除残留的导出文件: {dest}")
            self._remove_file(ServicingStep.EXPORT, dest)

        success, message = self.dism.export_image(source, selection.index, dest,
                                                  self.config.export_compression)
        if not success:
            raise FinalizeFailure(ServicingStep.EXPORT.value, message)
        if not dest.is_file():
            raise FinalizeFailure(ServicingStep.EXPORT.value, f"导出文件未生成: {dest}")

        self.logger.info(f"导出完成: {dest.name} ({format_size(dest.stat().st_size)})")

    def swap_exported_image(self):
        """删除原多版本镜像，把导出文件重命名到原位置"""
        original = self.config.install_image
        exported = self.config.export_image
        log_servicing_step(ServicingStep.SWAP.value, f"{exported.name} → {original.name}")

        self._remove_file(ServicingStep.SWAP, original)
        try:
            os.replace(exported, original)
        except OSError as e:
            raise FinalizeFailure(ServicingStep.SWAP.value, f"重命名失败: {e}") from e

    def split_install_image(self) -> List[Path]:
        """拆分为 .swm 分卷并删除未拆分的镜像"""
        image = self.config.install_image
        swm = self.config.split_image
        log_servicing_step(ServicingStep.SPLIT.value,
                           f"{image.name} → {swm.name}（每卷 {self.config.split_size_mb} MB）")

        for stale in self._split_parts():
            self._remove_file(ServicingStep.SPLIT, stale)

        success, message = self.dism.split_image(image, swm, self.config.split_size_mb)
        if not success:
            raise FinalizeFailure(ServicingStep.SPLIT.value, message)

        parts = self._split_parts()
        if not parts:
            raise FinalizeFailure(ServicingStep.SPLIT.value, f"未生成分卷文件: {swm}")

        self._remove_file(ServicingStep.SPLIT, image)
        total = sum(part.stat().st_size for part in parts)
        self.logger.info(f"拆分完成: {len(parts)} 个分卷，共 {format_size(total)}")
        return parts

    def _split_parts(self) -> List[Path]:
        """install.swm, install2.swm, install3.swm ..."""
        swm = self.config.split_image
        parts = [path for path in swm.parent.glob(f"{swm.stem}*{swm.suffix}")
                 if path.stem == swm.stem or path.stem[len(swm.stem):].isdigit()]

        def part_number(path: Path) -> int:
            suffix = path.stem[len(swm.stem):]
            return int(suffix) if suffix else 1

        return sorted(parts, key=part_number)

    def _remove_file(self, step: ServicingStep, path: Path):
        try:
            force_remove_file(path)
        except OSError as e:
            raise FinalizeFailure(step.value, f"无法删除 {path}: {e}") from e

    def cleanup_workspace(self, workspace: WorkspaceState) -> bool:
        """删除挂载目录和临时输出文件；失败只记录日志

        仍被挂载会话占用的目录不会删除，否则会改动已挂载镜像的内容。

        Returns:
            bool: 工作空间是否已完全清理
        """
        self.logger.info("🧹 清理工作空间...")
        clean = True

        for directory in workspace.mount_points + [workspace.temp_dir]:
            session = MountSession.session_for(directory)
            if session is not None:
                self.logger.error(
                    f"挂载目录仍有镜像挂载，已跳过删除: {directory}。"
                    f"请执行 dism /Unmount-Image /MountDir:{directory} /Discard "
                    f"或 dism /Cleanup-Mountpoints 后再运行"
                )
                clean = False
                continue

            try:
                self._remove_directory(directory)
            except CleanupFailure as e:
                self.logger.warning(f"⚠️ {e}")
                clean = False

        if clean:
            self.logger.info("工作空间已清理")
        return clean

    def _remove_directory(self, directory: Path):
        try:
            force_remove_tree(directory, delay=0.5)
        except (OSError, ValueError) as e:
            raise CleanupFailure(f"无法删除 {directory}: {e}") from e
