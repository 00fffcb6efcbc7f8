#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
日志工具模块
一次运行对应一个日志文件；每条记录都带上当前处理的镜像和索引
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Dict, Any

from driverinjector.utils.system_logger import ContextFilter, create_system_logger

APP_LOGGER_NAME = "DriverInjector"

FILE_FORMAT = ('%(asctime)s - %(name)s - %(levelname)s - [%(container)s:%(index)s] '
               '%(funcName)s:%(lineno)d - %(message)s')
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# 单个日志文件上限2M，保留3个备份
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 3


class RunLogger:
    """运行日志管理器

    持有应用日志记录器的处理器和上下文过滤器，重复调用 setup 时先移除旧处理器。
    """

    def __init__(self, name: str = APP_LOGGER_NAME):
        self.logger = logging.getLogger(name)
        self.context_filter = ContextFilter({"container": "-", "index": "-"})

    def setup(self, log_file_path: Path, verbose: bool = False, enable_system_log: bool = True,
              app_name: str = APP_LOGGER_NAME, context: Dict[str, Any] = None) -> logging.Logger:
        """安装文件、控制台和系统日志三个处理器

        Args:
            log_file_path: 日志文件路径，父目录不存在时自动创建
            verbose: 控制台是否输出DEBUG级别
            enable_system_log: 是否把警告及以上级别写入Windows事件日志
            app_name: 事件日志中的事件源名称
            context: 附加到每条记录的固定字段
        """
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)
            handler.close()

        self.logger.setLevel(logging.DEBUG)
        self.context_filter.update_context(**(context or {}))

        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        self._add_handler(self._file_handler(log_file_path), logging.DEBUG)
        self._add_handler(self._console_handler(), logging.DEBUG if verbose else logging.INFO)

        if enable_system_log:
            event_handler = create_system_logger(app_name, fallback_dir=log_file_path.parent)
            if event_handler:
                event_handler.setFormatter(logging.Formatter('%(name)s - %(levelname)s - %(message)s'))
                self._add_handler(event_handler, logging.WARNING)
                self.logger.debug("Windows事件日志已启用")

        self.logger.debug(f"日志文件: {log_file_path}")
        return self.logger

    def _add_handler(self, handler: logging.Handler, level: int):
        handler.setLevel(level)
        handler.addFilter(self.context_filter)
        self.logger.addHandler(handler)

    @staticmethod
    def _file_handler(log_file_path: Path) -> logging.Handler:
        handler = RotatingFileHandler(log_file_path, maxBytes=MAX_LOG_BYTES,
                                      backupCount=LOG_BACKUP_COUNT, encoding='utf-8')
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    @staticmethod
    def _console_handler() -> logging.Handler:
        # DISM路径和版本名可能包含中文
        if hasattr(sys.stdout, 'reconfigure'):
            try:
                sys.stdout.reconfigure(encoding='utf-8')
            except (OSError, ValueError):
                pass
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        return handler


_run_logger: Optional[RunLogger] = None


def setup_logger(log_file_path: Path, verbose: bool = False, enable_system_log: bool = True,
                 app_name: str = APP_LOGGER_NAME, context: Dict[str, Any] = None) -> logging.Logger:
    """初始化应用日志，返回应用日志记录器"""
    global _run_logger

    _run_logger = RunLogger()
    return _run_logger.setup(log_file_path, verbose, enable_system_log, app_name, context)


def update_log_context(**kwargs):
    """切换当前处理的镜像/索引，例如 update_log_context(container="boot", index=2)"""
    if _run_logger:
        _run_logger.context_filter.update_context(**kwargs)


def _log_at(level: str, message: str, **kwargs):
    logger = logging.getLogger(APP_LOGGER_NAME)
    levelno = {"error": logging.ERROR, "warning": logging.WARNING}.get(level.lower(), logging.INFO)
    # 记录调用方所在函数而不是本辅助函数
    logger.log(levelno, message, stacklevel=3, **kwargs)


def log_command(command: str, description: str = ""):
    """记录即将执行的外部命令"""
    _log_at("info", f"执行命令: {command}" + (f" ({description})" if description else ""))


def log_error(error: Exception, context: str = ""):
    """记录异常及堆栈"""
    suffix = f" (上下文: {context})" if context else ""
    _log_at("error", f"发生错误: {error}{suffix}", exc_info=True)


def log_servicing_step(step_name: str, details: str = "", level: str = "info"):
    """记录一次镜像处理步骤

    Args:
        step_name: 步骤名称，如 "boot 挂载"
        details: 镜像路径、索引等细节
        level: info, warning 或 error
    """
    _log_at(level, f"处理步骤: {step_name}" + (f" - {details}" if details else ""))


def log_system_event(event_type: str, message: str, level: str = "info"):
    """记录运行级事件；warning 及以上同时进入Windows事件日志"""
    _log_at(level, f"[{event_type}] {message}")


def get_logger(name: str = APP_LOGGER_NAME) -> logging.Logger:
    """组件日志记录器，挂在应用日志记录器之下以共享处理器"""
    if name == APP_LOGGER_NAME:
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_LOGGER_NAME}.{name}")
