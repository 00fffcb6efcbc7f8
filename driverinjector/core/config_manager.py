#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
配置管理模块
负责加载、合并和保存驱动注入流程的配置，并生成贯穿各组件的 ServicingConfig
"""

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
import logging

logger = logging.getLogger("DriverInjector")

EDITION_MODES = ("explicit", "default", "interactive")
EXPORT_POLICIES = ("modified", "always")


@dataclass(frozen=True)
class ServicingConfig:
    """一次运行所需的全部路径和选项"""

    platform_drivers_dir: Path
    model_drivers_dir: Path
    install_source_dir: Path
    workspace_dir: Path
    image_extension: str = "wim"
    boot_indices: Tuple[int, ...] = (1, 2)
    recovery_image_relpath: str = "Windows/System32/Recovery/Winre.wim"
    edition_mode: str = "default"
    edition: Optional[str] = None
    default_edition_pattern: str = "Pro"
    export_policy: str = "modified"
    export_compression: str = "max"
    split: bool = False
    split_size_mb: int = 3800
    discard_on_failure: bool = True
    require_admin: bool = True
    min_free_gb: float = 20.0
    poll_interval: float = 2.0
    dism_path: Optional[Path] = None

    def __post_init__(self):
        if self.edition_mode not in EDITION_MODES:
            raise ValueError(f"不支持的版本选择模式: {self.edition_mode}")
        if self.edition_mode == "explicit" and not self.edition:
            raise ValueError("explicit 模式需要指定版本名称")
        if self.export_policy not in EXPORT_POLICIES:
            raise ValueError(f"不支持的导出策略: {self.export_policy}")
        if self.split_size_mb <= 0:
            raise ValueError(f"拆分大小必须为正数: {self.split_size_mb}")
        if not self.boot_indices:
            raise ValueError("boot_indices 不能为空")

    @property
    def sources_dir(self) -> Path:
        return self.install_source_dir / "sources"

    @property
    def install_image(self) -> Path:
        return self.sources_dir / f"install.{self.image_extension}"

    @property
    def boot_image(self) -> Path:
        return self.sources_dir / f"boot.{self.image_extension}"

    @property
    def export_image(self) -> Path:
        return self.sources_dir / f"install_export.{self.image_extension}"

    @property
    def split_image(self) -> Path:
        return self.sources_dir / "install.swm"

    @property
    def mount_dir(self) -> Path:
        """install.wim 和 boot.wim 共用的挂载目录"""
        return self.workspace_dir / "mount"

    @property
    def winre_mount_dir(self) -> Path:
        """嵌套的 Winre.wim 挂载目录"""
        return self.workspace_dir / "winre_mount"

    @property
    def temp_dir(self) -> Path:
        """DISM输出捕获文件所在目录"""
        return self.workspace_dir / "temp"

    @property
    def recovery_image(self) -> Path:
        return self.mount_dir / Path(self.recovery_image_relpath)


class ConfigManager:
    """配置管理器类"""

    def __init__(self, config_file: Optional[Path] = None):
        self.project_root = Path.cwd()
        self.config_file = Path(config_file) if config_file else \
            self.project_root / "config" / "driverinjector_config.json"
        self.default_config = self._get_default_config()
        self.config = self._load_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """获取默认配置"""
        return {
            "paths": {
                "platform_drivers": "drivers/platform",  # WinPE/WinRE驱动
                "model_drivers": "drivers/model",        # 机型驱动
                "install_source": "media",               # 安装介质根目录（含sources）
                "workspace": "workspace"                 # 挂载目录和临时文件
            },
            "image": {
                "extension": "wim",
                "boot_indices": [1, 2],
                "recovery_relpath": "Windows/System32/Recovery/Winre.wim"
            },
            "edition": {
                "mode": "default",          # explicit, default, interactive
                "name": "",
                "default_pattern": "Pro"
            },
            "export": {
                "policy": "modified",       # modified, always
                "compression": "max",
                "split": False,
                "split_size_mb": 3800        # FAT32单文件上限以内
            },
            "dism": {
                "path": "",
                "poll_interval": 2.0,
                "discard_on_failure": True
            },
            "checks": {
                "require_admin": True,
                "min_free_gb": 20
            },
            "logging": {
                "log_dir": "logs",
                "system_log": True
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """从文件加载配置，文件损坏时抛出异常而不是静默回退"""
        if not self.config_file.exists():
            logger.debug(f"配置文件不存在，使用默认配置: {self.config_file}")
            return copy.deepcopy(self.default_config)

        with open(self.config_file, 'r', encoding='utf-8') as f:
            loaded = json.load(f)
        logger.info(f"配置文件加载成功: {self.config_file}")
        return self._merge_config(self.default_config, loaded)

    def _merge_config(self, default: Dict, loaded: Dict) -> Dict:
        """合并配置，确保所有必要的键都存在"""
        result = copy.deepcopy(default)
        for key, value in loaded.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def save_config(self) -> bool:
        """保存配置到文件"""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, ensure_ascii=False, indent=2)
            logger.info(f"配置文件保存成功: {self.config_file}")
            return True
        except OSError as e:
            logger.error(f"保存配置文件失败: {str(e)}")
            return False

    def get(self, key_path: str, default: Any = None) -> Any:
        """获取配置值，支持点号分隔的路径

        Args:
            key_path: 配置键路径，如 'export.split_size_mb'
            default: 默认值
        """
        value = self.config
        try:
            for key in key_path.split('.'):
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key_path: str, value: Any) -> None:
        """设置配置值

        Args:
            key_path: 配置键路径，如 'edition.name'
            value: 要设置的值
        """
        keys = key_path.split('.')
        config = self.config
        for key in keys[:-1]:
            config = config.setdefault(key, {})
        config[keys[-1]] = value
        logger.debug(f"配置更新: {key_path} = {value}")

    def _resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def build_servicing_config(self, **overrides) -> ServicingConfig:
        """根据当前配置生成 ServicingConfig

        overrides 中值为 None 的项会被忽略，其余覆盖配置文件中的值。
        """
        for key_path, value in {
            "paths.platform_drivers": overrides.get("platform_drivers"),
            "paths.model_drivers": overrides.get("model_drivers"),
            "paths.install_source": overrides.get("install_source"),
            "paths.workspace": overrides.get("workspace"),
            "edition.mode": overrides.get("edition_mode"),
            "edition.name": overrides.get("edition"),
            "export.policy": overrides.get("export_policy"),
            "export.split": overrides.get("split"),
            "export.split_size_mb": overrides.get("split_size_mb"),
            "dism.path": overrides.get("dism_path"),
        }.items():
            if value is not None:
                self.set(key_path, str(value) if isinstance(value, Path) else value)

        edition_name = self.get("edition.name") or None
        edition_mode = self.get("edition.mode", "default")
        # 指定了版本名称时总是按名称匹配
        if edition_name and edition_mode == "default":
            edition_mode = "explicit"

        dism_path = self.get("dism.path")
        return ServicingConfig(
            platform_drivers_dir=self._resolve_path(self.get("paths.platform_drivers")),
            model_drivers_dir=self._resolve_path(self.get("paths.model_drivers")),
            install_source_dir=self._resolve_path(self.get("paths.install_source")),
            workspace_dir=self._resolve_path(self.get("paths.workspace")),
            image_extension=self.get("image.extension", "wim").lstrip("."),
            boot_indices=tuple(int(i) for i in self.get("image.boot_indices", [1, 2])),
            recovery_image_relpath=self.get("image.recovery_relpath"),
            edition_mode=edition_mode,
            edition=edition_name,
            default_edition_pattern=self.get("edition.default_pattern", "Pro"),
            export_policy=self.get("export.policy", "modified"),
            export_compression=self.get("export.compression", "max"),
            split=bool(self.get("export.split", False)),
            split_size_mb=int(self.get("export.split_size_mb", 3800)),
            discard_on_failure=bool(self.get("dism.discard_on_failure", True)),
            require_admin=bool(self.get("checks.require_admin", True)),
            min_free_gb=float(self.get("checks.min_free_gb", 20)),
            poll_interval=float(self.get("dism.poll_interval", 2.0)),
            dism_path=Path(dism_path) if dism_path else None,
        )

    def get_log_dir(self) -> Path:
        return self._resolve_path(self.get("logging.log_dir", "logs"))
