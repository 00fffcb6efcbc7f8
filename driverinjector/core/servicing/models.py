#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
镜像处理数据模型
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from driverinjector.utils.file_utils import is_directory_empty


class ContainerKind(Enum):
    """镜像容器类型"""
    BOOT = "boot"
    INSTALL = "install"
    RECOVERY = "recovery"


class MountStatus(Enum):
    """挂载会话状态"""
    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"
    MODIFIED = "modified"
    COMMITTED = "committed"
    FAILED = "failed"


class ServicingStep(Enum):
    """一次DISM调用对应的处理步骤"""
    MOUNT = "挂载"
    INJECT = "注入驱动"
    CLEANUP = "清理组件"
    COMMIT = "提交"
    DISCARD = "放弃更改"
    EXPORT = "导出"
    SWAP = "替换"
    SPLIT = "拆分"


class EditionSource(Enum):
    """版本的选择来源"""
    EXPLICIT = "explicit"
    DEFAULT = "default"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class ImageEdition:
    """镜像中的一个索引（版本）"""
    index: int
    name: str
    description: str = ""

    def __str__(self) -> str:
        return f"{self.index}: {self.name}"


@dataclass
class ImageContainer:
    """多索引镜像文件"""
    path: Path
    kind: ContainerKind
    editions: List[ImageEdition] = field(default_factory=list)

    @property
    def indices(self) -> List[int]:
        return [edition.index for edition in self.editions]


@dataclass(frozen=True)
class DriverSet:
    """从根目录递归发现的驱动包集合"""
    root: Path
    inf_count: int
    package_dirs: List[Path] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.inf_count == 0


@dataclass(frozen=True)
class EditionSelection:
    """已解析的目标版本"""
    edition: ImageEdition
    source: EditionSource

    @property
    def index(self) -> int:
        return self.edition.index

    @property
    def name(self) -> str:
        return self.edition.name


@dataclass
class WorkspaceState:
    """工作空间：install/boot 共用挂载目录、Winre 挂载目录以及临时输出目录"""
    mount_dir: Path
    winre_mount_dir: Path
    temp_dir: Path

    @property
    def mount_points(self) -> List[Path]:
        return [self.mount_dir, self.winre_mount_dir]

    def prepare(self):
        """创建挂载目录（幂等），在预检之前执行一次"""
        for mount_point in self.mount_points:
            mount_point.mkdir(parents=True, exist_ok=True)

    def is_clean(self) -> bool:
        """两个挂载目录都不存在或都为空"""
        return all(not path.exists() or is_directory_empty(path) for path in self.mount_points)


@dataclass
class PipelineResult:
    """镜像处理流程的执行结果"""
    boot_indices_serviced: List[int] = field(default_factory=list)
    install_mounted: bool = False
    install_committed: bool = False
    recovery_serviced: bool = False
    model_drivers_injected: bool = False
    warnings: List[str] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)

    @property
    def install_mutated(self) -> bool:
        return self.install_committed


@dataclass
class FinalizeResult:
    """收尾阶段的执行结果"""
    exported: bool = False
    final_image: Optional[Path] = None
    split_parts: List[Path] = field(default_factory=list)
