# -*- coding: utf-8 -*-
"""
工具模块
日志、编码和文件操作辅助函数
"""
