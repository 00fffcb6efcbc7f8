#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Windows事件日志
把警告和错误写入“应用程序”日志，便于在无人值守的部署机上排查失败的运行
"""

import logging
from pathlib import Path
from typing import Optional, Dict, Any

# pywin32 只在Windows上安装
try:
    import win32evtlog
    import win32evtlogutil
    WIN32_AVAILABLE = True
except ImportError:
    WIN32_AVAILABLE = False

FALLBACK_LOG_NAME = "system_log_fallback.log"


def event_type_for(levelno: int) -> int:
    """日志级别对应的事件类型"""
    if levelno >= logging.ERROR:
        return win32evtlog.EVENTLOG_ERROR_TYPE
    if levelno >= logging.WARNING:
        return win32evtlog.EVENTLOG_WARNING_TYPE
    return win32evtlog.EVENTLOG_INFORMATION_TYPE


class SystemLogHandler(logging.Handler):
    """写入Windows事件日志的处理器

    事件源注册失败（通常是权限不足）时处理器不可用；
    单条事件写入失败时改写到日志目录下的回退文件。
    """

    def __init__(self, app_name: str = "DriverInjector", log_type: str = "Application",
                 fallback_dir: Optional[Path] = None):
        super().__init__()
        self.app_name = app_name
        self.log_type = log_type
        self.fallback_file = (fallback_dir or Path.cwd() / "logs") / FALLBACK_LOG_NAME
        self.fallback_formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S'
        )
        self.enabled = WIN32_AVAILABLE and self._ensure_event_source()

    def _ensure_event_source(self) -> bool:
        try:
            win32evtlogutil.AddSourceToRegistry(self.app_name, self.log_type)
        except Exception as e:
            if "already exists" in str(e).lower():
                return True
            logging.getLogger("DriverInjector").debug(f"无法注册事件源 {self.app_name}: {e}")
            return False
        return True

    def emit(self, record: logging.LogRecord):
        if not self.enabled:
            return

        text = self.format(record)
        if record.exc_info:
            text = f"{text}\n异常信息: {self.formatException(record.exc_info)}"

        try:
            win32evtlogutil.ReportEvent(
                self.app_name,
                0,
                eventCategory=0,
                eventType=event_type_for(record.levelno),
                strings=[text]
            )
        except Exception:
            self._write_fallback(record)

    def _write_fallback(self, record: logging.LogRecord):
        try:
            self.fallback_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.fallback_file, 'a', encoding='utf-8') as f:
                f.write(self.fallback_formatter.format(record) + "\n")
        except OSError:
            self.handleError(record)


class ContextFilter(logging.Filter):
    """给每条记录补上运行上下文字段（当前镜像、索引等）

    记录上已有同名属性时保留原值。
    """

    def __init__(self, context: Dict[str, Any] = None):
        super().__init__()
        self.context = dict(context or {})

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True

    def update_context(self, **kwargs):
        self.context.update(kwargs)


def create_system_logger(app_name: str = "DriverInjector",
                         fallback_dir: Optional[Path] = None) -> Optional[SystemLogHandler]:
    """创建事件日志处理器；非Windows或事件源不可用时返回None"""
    if not WIN32_AVAILABLE:
        return None
    handler = SystemLogHandler(app_name, fallback_dir=fallback_dir)
    return handler if handler.enabled else None
