#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
编码处理工具
DISM输出在中文系统上通常是GBK编码，这里统一做安全解码
"""

import locale


def safe_decode(data: bytes, fallback_encoding: str = 'gbk') -> str:
    """
    安全解码字节数据

    Args:
        data: 要解码的字节数据
        fallback_encoding: 备用编码，默认为gbk

    Returns:
        str: 解码后的字符串
    """
    if not data:
        return ""

    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        pass

    # DISM在控制台重定向时可能输出UTF-16
    if data[:2] in (b'\xff\xfe', b'\xfe\xff'):
        try:
            return data.decode('utf-16')
        except UnicodeDecodeError:
            pass

    system_encoding = get_system_encoding()
    if system_encoding.lower().replace('-', '') != 'utf8':
        try:
            return data.decode(system_encoding)
        except (UnicodeDecodeError, LookupError):
            pass

    try:
        return data.decode(fallback_encoding, errors='replace')
    except LookupError:
        # latin-1不会失败
        return data.decode('latin-1', errors='replace')


def get_system_encoding() -> str:
    """获取系统编码"""
    return locale.getpreferredencoding(False) or 'utf-8'
