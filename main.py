#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
驱动注入工具主入口
用于在部署前向 Windows 安装介质离线注入驱动
"""

from driverinjector.ui.cli import main


if __name__ == "__main__":
    main()
