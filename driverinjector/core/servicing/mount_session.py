#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像挂载会话模块
封装一次独占的 挂载 → 修改 → 提交/放弃 周期
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import ServicingFailure
from driverinjector.core.servicing.models import (
    ContainerKind, DriverSet, MountStatus, ServicingStep
)
from driverinjector.utils.file_utils import is_directory_empty
from driverinjector.utils.logger import get_logger, log_servicing_step

logger = get_logger("MountSession")


def _mount_key(path: Path) -> str:
    return os.path.normcase(str(path.resolve()))


class MountSession:
    """一个 (镜像, 索引) 到挂载目录的独占绑定

    状态转换：UNMOUNTED → MOUNTED → MODIFIED → COMMITTED，
    任一DISM调用失败进入 FAILED。同一挂载目录同一时间只能有一个打开的会话。
    """

    # 挂载目录 → 当前占用它的会话
    _registry: Dict[str, "MountSession"] = {}

    def __init__(self, dism: DismManager, image_file: Path, index: int, mount_dir: Path,
                 kind: ContainerKind):
        self.dism = dism
        self.image_file = image_file
        self.index = index
        self.mount_dir = mount_dir
        self.kind = kind
        self.status = MountStatus.UNMOUNTED
        self.failed_step: Optional[ServicingStep] = None
        # FAILED 状态下镜像是否仍挂载在目录上
        self.mounted = False

    def __repr__(self) -> str:
        return (f"MountSession({self.image_file.name}, index={self.index}, "
                f"mount_dir={self.mount_dir}, status={self.status.value})")

    @classmethod
    def open_sessions(cls) -> List["MountSession"]:
        """当前仍占用挂载目录的会话（包括失败后残留的挂载）"""
        return list(cls._registry.values())

    @classmethod
    def session_for(cls, mount_dir: Path) -> Optional["MountSession"]:
        return cls._registry.get(_mount_key(mount_dir))

    @classmethod
    def release(cls, mount_dir: Path) -> Optional["MountSession"]:
        """挂载目录已在会话之外被卸载（例如 recover）时，移除占用它的会话"""
        session = cls.session_for(mount_dir)
        if session is not None:
            session._release()
        return session

    def _failure(self, step: ServicingStep, message: str) -> ServicingFailure:
        self.status = MountStatus.FAILED
        self.failed_step = step
        log_servicing_step(f"{self.kind.value} {step.value}",
                           f"{self.image_file} 索引 {self.index}: {message}", "error")
        return ServicingFailure(step.value, self.image_file, self.index, message)

    def _require_mounted(self, step: ServicingStep):
        if self.status not in (MountStatus.MOUNTED, MountStatus.MODIFIED):
            raise ServicingFailure(step.value, self.image_file, self.index,
                                   f"会话状态为 {self.status.value}，镜像未挂载")

    def open(self) -> "MountSession":
        """挂载镜像，要求挂载目录未被占用且为空"""
        if self.status != MountStatus.UNMOUNTED:
            raise ServicingFailure(ServicingStep.MOUNT.value, self.image_file, self.index,
                                   f"会话状态为 {self.status.value}，不能重复挂载")

        owner = self.session_for(self.mount_dir)
        if owner is not None:
            raise self._failure(ServicingStep.MOUNT, f"挂载目录已被占用: {owner!r}")

        try:
            self.mount_dir.mkdir(parents=True, exist_ok=True)
            empty = is_directory_empty(self.mount_dir)
        except OSError as e:
            raise self._failure(ServicingStep.MOUNT, f"无法准备挂载目录 {self.mount_dir}: {e}") from e
        if not empty:
            raise self._failure(ServicingStep.MOUNT, f"挂载目录不为空: {self.mount_dir}")

        if not self.image_file.is_file():
            raise self._failure(ServicingStep.MOUNT, f"镜像文件不存在: {self.image_file}")

        log_servicing_step(f"{self.kind.value} {ServicingStep.MOUNT.value}",
                           f"{self.image_file} 索引 {self.index} → {self.mount_dir}")
        success, message = self.dism.mount_image(self.image_file, self.index, self.mount_dir)
        if not success:
            raise self._failure(ServicingStep.MOUNT, message)

        self.status = MountStatus.MOUNTED
        self.mounted = True
        self._registry[_mount_key(self.mount_dir)] = self
        return self

    def inject(self, drivers: DriverSet, allow_unsigned: bool) -> None:
        """递归添加驱动目录中的全部驱动"""
        self._require_mounted(ServicingStep.INJECT)

        signed_note = "允许未签名" if allow_unsigned else "仅签名驱动"
        log_servicing_step(f"{self.kind.value} {ServicingStep.INJECT.value}",
                           f"{drivers.root} ({drivers.inf_count} 个 .inf，{signed_note})")
        success, message = self.dism.add_driver(self.mount_dir, drivers.root,
                                                recurse=True, force_unsigned=allow_unsigned)
        if not success:
            raise self._failure(ServicingStep.INJECT, message)

        self.status = MountStatus.MODIFIED

    def cleanup(self) -> bool:
        """清理被替换的组件；失败只返回False，不改变会话状态"""
        self._require_mounted(ServicingStep.CLEANUP)

        log_servicing_step(f"{self.kind.value} {ServicingStep.CLEANUP.value}", str(self.mount_dir))
        success, message = self.dism.cleanup_image(self.mount_dir)
        if not success:
            logger.warning(f"⚠️ 组件清理失败，继续提交: {message}")
        return success

    def commit(self) -> None:
        """保存更改并卸载，失败时不重试"""
        self._require_mounted(ServicingStep.COMMIT)

        log_servicing_step(f"{self.kind.value} {ServicingStep.COMMIT.value}",
                           f"{self.image_file} 索引 {self.index}")
        success, message = self.dism.unmount_image(self.mount_dir, commit=True)
        if not success:
            raise self._failure(ServicingStep.COMMIT, message)

        self.status = MountStatus.COMMITTED
        self._release()

    def discard(self) -> bool:
        """放弃更改并卸载，成功后挂载目录重新可用"""
        if not self.mounted:
            return True

        log_servicing_step(f"{self.kind.value} {ServicingStep.DISCARD.value}", str(self.mount_dir))
        success, message = self.dism.unmount_image(self.mount_dir, commit=False)
        if not success:
            logger.error(f"放弃更改失败，镜像仍挂载在 {self.mount_dir}: {message}")
            return False

        if self.status != MountStatus.FAILED:
            self.status = MountStatus.UNMOUNTED
        self._release()
        return True

    def _release(self):
        self.mounted = False
        self._registry.pop(_mount_key(self.mount_dir), None)
