#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
版本选择模块
枚举 install.wim 中的版本（SKU），并按配置的策略解析出唯一的目标索引
"""

import fnmatch
from pathlib import Path
from typing import Callable, List, Optional

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.errors import ResolutionFailure
from driverinjector.core.servicing.models import (
    ContainerKind, EditionSelection, EditionSource, ImageContainer, ImageEdition
)
from driverinjector.utils.logger import get_logger

logger = get_logger("EditionSelector")

IndexPrompt = Callable[[List[ImageEdition]], Optional[int]]


def parse_wim_info(output: str) -> List[ImageEdition]:
    """解析 dism /Get-WimInfo 的输出

    Args:
        output: DISM原始输出（/English）

    Returns:
        List[ImageEdition]: 按输出顺序排列的版本列表
    """
    editions = []
    current = {}

    def flush():
        if "index" in current:
            editions.append(ImageEdition(current["index"], current.get("name", ""),
                                         current.get("description", "")))

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if ":" not in line:
            continue
        key, value = [part.strip() for part in line.split(":", 1)]
        key = key.lower()
        if key == "index":
            flush()
            current = {}
            try:
                current["index"] = int(value)
            except ValueError:
                continue
        elif key == "name" and "index" in current:
            current["name"] = value
        elif key == "description" and "index" in current:
            current["description"] = value

    flush()
    return editions


def match_editions(pattern: str, editions: List[ImageEdition]) -> List[ImageEdition]:
    """按名称模式匹配版本（不区分大小写）

    完整名称相同的版本优先；否则接受通配符匹配（* ?）或以 " <pattern>" 结尾的名称，
    因此 "Pro" 能匹配 "Windows 11 Pro"，但不会匹配 "Windows 11 Pro N"。
    """
    needle = pattern.strip().lower()
    if not needle:
        return []

    exact = [edition for edition in editions if edition.name.lower() == needle]
    if exact:
        return exact

    matches = []
    for edition in editions:
        name = edition.name.lower()
        if any(ch in needle for ch in "*?["):
            if fnmatch.fnmatchcase(name, needle):
                matches.append(edition)
        elif name.endswith(" " + needle):
            matches.append(edition)
    return matches


class EditionStrategy:
    """版本解析策略基类"""

    source = EditionSource.DEFAULT

    def resolve(self, editions: List[ImageEdition]) -> ImageEdition:
        raise NotImplementedError


class PatternEditionStrategy(EditionStrategy):
    """按名称模式匹配，必须恰好命中一个版本"""

    def __init__(self, pattern: str):
        self.pattern = pattern

    def resolve(self, editions: List[ImageEdition]) -> ImageEdition:
        matches = match_editions(self.pattern, editions)
        if not matches:
            raise ResolutionFailure(f"未找到版本: {self.pattern}")
        if len(matches) > 1:
            names = ", ".join(str(edition) for edition in matches)
            raise ResolutionFailure(f"版本名称不唯一: {self.pattern} 匹配到 {names}")
        return matches[0]


class ExplicitEditionStrategy(PatternEditionStrategy):
    """使用调用方指定的版本名称"""

    source = EditionSource.EXPLICIT


class DefaultEditionStrategy(PatternEditionStrategy):
    """未指定版本时使用默认名称模式（默认 "Pro"）"""

    source = EditionSource.DEFAULT


class InteractiveEditionStrategy(EditionStrategy):
    """把版本列表交给回调，由用户选择索引"""

    source = EditionSource.INTERACTIVE

    def __init__(self, prompt: IndexPrompt):
        self.prompt = prompt

    def resolve(self, editions: List[ImageEdition]) -> ImageEdition:
        selected = self.prompt(editions)
        matches = [edition for edition in editions if edition.index == selected]
        if len(matches) != 1:
            raise ResolutionFailure(f"无效的索引: {selected}")
        return matches[0]


def strategy_from_config(config: ServicingConfig, prompt: Optional[IndexPrompt] = None) -> EditionStrategy:
    """根据配置选择版本解析策略"""
    if config.edition_mode == "explicit":
        return ExplicitEditionStrategy(config.edition)
    if config.edition_mode == "interactive":
        if prompt is None:
            raise ResolutionFailure("交互模式需要提供索引选择回调")
        return InteractiveEditionStrategy(prompt)
    return DefaultEditionStrategy(config.default_edition_pattern)


class EditionSelector:
    """版本选择器"""

    def __init__(self, dism: DismManager):
        self.dism = dism

    def read_container(self, image_file: Path, kind: ContainerKind = ContainerKind.INSTALL) -> ImageContainer:
        """读取镜像文件及其全部版本"""
        success, output = self.dism.get_wim_info(image_file)
        if not success:
            raise ResolutionFailure(f"无法读取镜像信息 {image_file}: {output}")

        container = ImageContainer(image_file, kind, parse_wim_info(output))
        if not container.editions:
            raise ResolutionFailure(f"镜像中没有可用的版本: {image_file}")

        logger.info(f"{image_file.name} 包含 {len(container.editions)} 个版本，索引 {container.indices}:")
        for edition in container.editions:
            logger.info(f"  {edition}")
        return container

    def list_editions(self, image_file: Path) -> List[ImageEdition]:
        """枚举 install 镜像中的全部版本"""
        return self.read_container(image_file).editions

    def select(self, editions: List[ImageEdition], strategy: EditionStrategy) -> EditionSelection:
        """解析目标版本，失败时抛出 ResolutionFailure"""
        edition = strategy.resolve(editions)
        logger.info(f"已选择版本: {edition} ({strategy.source.value})")
        return EditionSelection(edition, strategy.source)
