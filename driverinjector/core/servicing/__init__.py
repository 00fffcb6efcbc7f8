# -*- coding: utf-8 -*-
"""
镜像处理模块
负责预检、驱动清点、版本选择、挂载会话、处理流程和收尾
"""

from .preflight import PreflightValidator, PreflightResult
from .inventory import DriverInventory, InventoryResult
from .edition_selector import EditionSelector
from .mount_session import MountSession
from .pipeline import ServicingPipeline
from .finalizer import Finalizer
from .operation_manager import OperationManager, RunResult

__all__ = [
    'PreflightValidator',
    'PreflightResult',
    'DriverInventory',
    'InventoryResult',
    'EditionSelector',
    'MountSession',
    'ServicingPipeline',
    'Finalizer',
    'OperationManager',
    'RunResult'
]
