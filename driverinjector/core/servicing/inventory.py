#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
驱动清点模块
递归统计两个驱动目录中的 .inf 描述文件
"""

from dataclasses import dataclass
from pathlib import Path

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.servicing.models import DriverSet
from driverinjector.utils.logger import get_logger

DRIVER_DESCRIPTOR_SUFFIX = ".inf"


@dataclass(frozen=True)
class InventoryResult:
    platform: DriverSet
    model: DriverSet

    @property
    def has_any(self) -> bool:
        return not (self.platform.is_empty and self.model.is_empty)


def scan_driver_root(root: Path) -> DriverSet:
    """统计根目录下（递归）的驱动描述文件

    Args:
        root: 驱动根目录

    Returns:
        DriverSet: 描述文件数量及其所在目录（按路径排序）
    """
    if not root.is_dir():
        return DriverSet(root, 0, [])

    inf_files = [
        path for path in root.rglob("*")
        if path.is_file() and path.suffix.lower() == DRIVER_DESCRIPTOR_SUFFIX
    ]
    package_dirs = sorted({path.parent for path in inf_files})
    return DriverSet(root, len(inf_files), package_dirs)


class DriverInventory:
    """驱动清点器"""

    def __init__(self, config: ServicingConfig):
        self.config = config
        self.logger = get_logger("DriverInventory")

    def scan(self) -> InventoryResult:
        platform = scan_driver_root(self.config.platform_drivers_dir)
        model = scan_driver_root(self.config.model_drivers_dir)

        self.logger.info(f"平台驱动(WinPE/WinRE): {platform.inf_count} 个 .inf，"
                         f"{len(platform.package_dirs)} 个驱动包 - {platform.root}")
        self.logger.info(f"机型驱动: {model.inf_count} 个 .inf，"
                         f"{len(model.package_dirs)} 个驱动包 - {model.root}")

        return InventoryResult(platform, model)
