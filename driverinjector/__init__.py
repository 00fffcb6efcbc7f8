# -*- coding: utf-8 -*-
"""
DriverInjector
离线向Windows安装介质注入驱动（boot.wim、install.wim、Winre.wim）
"""

__version__ = "1.0.0"
