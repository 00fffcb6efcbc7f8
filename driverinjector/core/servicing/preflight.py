#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
预检模块
在任何挂载操作之前确认目录、挂载点和基础镜像都处于预期状态
"""

import ctypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.errors import PreflightFailure
from driverinjector.utils.file_utils import count_entries, format_size
from driverinjector.utils.logger import get_logger, log_servicing_step


@dataclass(frozen=True)
class PreflightResult:
    """预检结论：是否通过，以及第一个失败的检查项"""
    passed: bool
    failed_check: Optional[str] = None
    message: str = "检查通过"

    def raise_for_failure(self):
        if not self.passed:
            raise PreflightFailure(self.failed_check, self.message)


def check_admin_privileges() -> bool:
    """检查是否具有管理员权限"""
    try:
        return ctypes.windll.shell32.IsUserAnAdmin() != 0
    except AttributeError:
        # 非Windows平台
        return hasattr(os, "geteuid") and os.geteuid() == 0


class PreflightValidator:
    """预检器

    只做只读检查；任何一项失败都终止本次运行。
    """

    def __init__(self, config: ServicingConfig, admin_check: Callable[[], bool] = check_admin_privileges):
        self.config = config
        self.admin_check = admin_check
        self.logger = get_logger("PreflightValidator")

    def _required_directories(self) -> List[Tuple[str, Path]]:
        return [
            ("platform_drivers_dir", self.config.platform_drivers_dir),
            ("model_drivers_dir", self.config.model_drivers_dir),
            ("install_source_dir", self.config.install_source_dir),
            ("mount_dir", self.config.mount_dir),
            ("winre_mount_dir", self.config.winre_mount_dir),
        ]

    def validate(self) -> PreflightResult:
        """执行全部检查，返回第一个失败项

        Returns:
            PreflightResult: 检查结论
        """
        self.logger.info("🔍 开始预检...")
        log_servicing_step("预检", f"安装介质: {self.config.install_source_dir}")

        # 检查1：目录存在
        for check, path in self._required_directories():
            if not path.is_dir():
                return self._fail(check, f"目录不存在: {path}")

        # 检查2：挂载目录为空
        for check, path in (("mount_dir_empty", self.config.mount_dir),
                            ("winre_mount_dir_empty", self.config.winre_mount_dir)):
            entries = count_entries(path)
            if entries:
                return self._fail(
                    check,
                    f"挂载目录不为空（{entries} 个条目）: {path}。"
                    f"如果上次运行被中断，请先执行 recover 或 dism /Unmount-Image /MountDir:{path} /Discard"
                )

        # 检查3：基础镜像
        if not self.config.install_image.is_file():
            return self._fail("install_image", f"安装镜像不存在: {self.config.install_image}")

        if not self.config.boot_image.is_file():
            return self._fail("boot_image", f"启动镜像不存在: {self.config.boot_image}")

        # 检查4：管理员权限
        if self.config.require_admin and not self.admin_check():
            return self._fail("admin", "DISM挂载操作需要管理员权限，请以管理员身份运行")

        self._warn_low_disk_space()

        self.logger.info("✅ 预检全部通过")
        return PreflightResult(True)

    def _fail(self, check: str, message: str) -> PreflightResult:
        self.logger.error(f"预检失败 [{check}]: {message}")
        return PreflightResult(False, check, message)

    def _warn_low_disk_space(self):
        """可用空间不足只给出警告"""
        try:
            usage = psutil.disk_usage(str(self.config.workspace_dir))
        except OSError as e:
            self.logger.warning(f"无法获取磁盘空间: {e}")
            return

        free_gb = usage.free / (1024 ** 3)
        self.logger.info(f"工作空间可用磁盘空间: {format_size(usage.free)}")
        if free_gb < self.config.min_free_gb:
            self.logger.warning(
                f"⚠️ 可用空间 {free_gb:.1f} GB 低于建议值 {self.config.min_free_gb:.0f} GB，"
                f"提交和导出 install.{self.config.image_extension} 时可能失败"
            )
