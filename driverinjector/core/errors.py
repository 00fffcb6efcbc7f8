#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
错误类型定义
按失败发生的阶段区分：预检、版本解析、镜像处理、收尾、清理
"""

from enum import IntEnum
from pathlib import Path
from typing import Optional


class ExitCode(IntEnum):
    """进程退出码"""
    SUCCESS = 0
    VALIDATION_FAILED = 1   # 预检或版本解析失败，尚未产生任何副作用
    SERVICING_FAILED = 2    # DISM挂载/注入/提交失败
    FINALIZE_FAILED = 3     # 导出/替换/拆分失败，已提交的修改不受影响
    NO_DRIVERS = 4          # 两个驱动目录都没有驱动，主动停止


class DriverInjectorError(Exception):
    """所有可预期错误的基类"""

    exit_code = ExitCode.VALIDATION_FAILED


class PreflightFailure(DriverInjectorError):
    """预检失败：目录缺失、挂载目录非空、基础镜像缺失等"""

    def __init__(self, check: str, message: str):
        super().__init__(message)
        self.check = check


class ResolutionFailure(DriverInjectorError):
    """版本（SKU）解析失败：未找到、不唯一或索引无效"""


class NoDriversFound(DriverInjectorError):
    """两个驱动目录中都没有找到驱动描述文件"""

    exit_code = ExitCode.NO_DRIVERS


class ServicingFailure(DriverInjectorError):
    """DISM调用返回非零退出码，或调用过程中发生I/O错误"""

    exit_code = ExitCode.SERVICING_FAILED

    def __init__(self, step: str, container: Optional[Path], index: Optional[int], message: str):
        self.step = step
        self.container = container
        self.index = index
        self.detail = message
        super().__init__(self._format())

    def _format(self) -> str:
        location = self.container.name if self.container is not None else "-"
        if self.index is not None:
            location += f" (索引 {self.index})"
        return f"{self.step} 失败 [{location}]: {self.detail}"


class FinalizeFailure(DriverInjectorError):
    """导出、替换或拆分镜像失败"""

    exit_code = ExitCode.FINALIZE_FAILED

    def __init__(self, step: str, message: str):
        super().__init__(f"{step} 失败: {message}")
        self.step = step


class CleanupFailure(DriverInjectorError):
    """工作空间清理失败，只记录日志，不影响运行结果"""
