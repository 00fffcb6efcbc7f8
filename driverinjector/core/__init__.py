# -*- coding: utf-8 -*-
"""
核心模块
配置、DISM调用封装和镜像处理流程
"""
