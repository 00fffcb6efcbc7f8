# -*- coding: utf-8 -*-
"""
命令行界面模块
"""
