"""
Pytest configuration and shared fixtures for driverinjector tests.

DISM is replaced by FakeDism, which records every command and simulates the
filesystem side effects of mount/unmount/export/split so the whole workflow
can run on any platform.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.core.dism_manager import DismManager
from driverinjector.core.servicing.mount_session import MountSession
from driverinjector.utils.logger import APP_LOGGER_NAME

WIM_INFO_TEMPLATE = """Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Details for image : {image}

Index : 1
Name : Windows 11 Home
Description : Windows 11 Home
Size : 17,562,523,164 bytes

Index : 2
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 17,840,003,471 bytes

Index : 3
Name : Windows 11 Pro N
Description : Windows 11 Pro N
Size : 17,105,326,224 bytes

Index : 4
Name : Windows 11 Education
Description : Windows 11 Education
Size : 17,821,112,930 bytes

The operation completed successfully.
"""

# 1 字节代表 1 MB，便于验证分卷数量
BYTES_PER_MB = 1


def _arg_value(args: List[str], prefix: str) -> Optional[str]:
    for arg in args:
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


class FakeDism(DismManager):
    """记录调用并模拟文件系统效果的DISM替身

    Attributes:
        calls: 每次调用的参数列表
        fail_on: 子命令名 → 需要失败的第几次调用集合（从1开始），None 表示每次都失败
    """

    def __init__(self, config: ServicingConfig):
        super().__init__(config)
        self.calls: List[List[str]] = []
        self.fail_on: Dict[str, Optional[Set[int]]] = {}
        self.wim_info = WIM_INFO_TEMPLATE
        self._counts: Dict[str, int] = {}

    def fail(self, command: str, *occurrences: int):
        """让指定子命令失败，可只指定第几次调用失败"""
        self.fail_on[command] = set(occurrences) if occurrences else None

    def commands(self) -> List[str]:
        return [self._command_name(args) for args in self.calls]

    def calls_for(self, command: str) -> List[List[str]]:
        return [args for args in self.calls if self._command_name(args) == command]

    @staticmethod
    def _command_name(args: List[str]) -> str:
        for arg in args:
            if arg.startswith("/") and not arg.startswith(("/Image:", "/English")):
                return arg.lstrip("/").split(":", 1)[0]
        return ""

    def _should_fail(self, command: str) -> bool:
        self._counts[command] = self._counts.get(command, 0) + 1
        if command not in self.fail_on:
            return False
        occurrences = self.fail_on[command]
        return occurrences is None or self._counts[command] in occurrences

    def run_dism_command(self, args: List[str], description: str = "") -> Tuple[bool, str, str]:
        args = [str(arg) for arg in args]
        self.calls.append(args)
        command = self._command_name(args)

        if self._should_fail(command):
            return False, "", f"Error: 0xc1420127 {command} failed"

        handler = getattr(self, f"_do_{command.replace('-', '_').lower()}", None)
        if handler is not None:
            return handler(args)
        return True, "The operation completed successfully.", ""

    def _do_mount_image(self, args):
        image = Path(_arg_value(args, "/ImageFile:"))
        mount_dir = Path(_arg_value(args, "/MountDir:"))
        (mount_dir / "Windows").mkdir(parents=True, exist_ok=True)
        if image == self.config.install_image:
            recovery = self.config.recovery_image
            recovery.parent.mkdir(parents=True, exist_ok=True)
            recovery.write_bytes(b"winre")
        return True, "The operation completed successfully.", ""

    def _do_unmount_image(self, args):
        mount_dir = Path(_arg_value(args, "/MountDir:"))
        for child in sorted(mount_dir.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if child.is_dir():
                child.rmdir()
            else:
                child.unlink()
        return True, "The operation completed successfully.", ""

    def _do_export_image(self, args):
        dest = Path(_arg_value(args, "/DestinationImageFile:"))
        dest.write_bytes(b"exported-" + _arg_value(args, "/SourceIndex:").encode())
        return True, "The operation completed successfully.", ""

    def _do_split_image(self, args):
        image = Path(_arg_value(args, "/ImageFile:"))
        swm = Path(_arg_value(args, "/SWMFile:"))
        part_size = int(_arg_value(args, "/FileSize:")) * BYTES_PER_MB
        data = image.read_bytes()
        for number, offset in enumerate(range(0, len(data), part_size), start=1):
            name = swm.name if number == 1 else f"{swm.stem}{number}{swm.suffix}"
            (swm.parent / name).write_bytes(data[offset:offset + part_size])
        return True, "The operation completed successfully.", ""

    def _do_get_wiminfo(self, args):
        image = _arg_value(args, "/WimFile:")
        return True, self.wim_info.format(image=image), ""


def write_inf(root: Path, *relative_dirs: str):
    """在每个相对目录下创建一个 .inf 文件"""
    for relative in relative_dirs:
        package = root / relative
        package.mkdir(parents=True, exist_ok=True)
        (package / f"{package.name}.inf").write_text("[Version]\nSignature=\"$WINDOWS NT$\"\n")


@pytest.fixture(autouse=True)
def clear_mount_registry():
    """每个测试前后清空挂载会话注册表"""
    MountSession._registry.clear()
    yield
    MountSession._registry.clear()


@pytest.fixture(autouse=True)
def quiet_logging():
    """避免测试之间残留的日志处理器写入已删除的临时目录"""
    logger = logging.getLogger(APP_LOGGER_NAME)
    handlers = logger.handlers[:]
    yield
    for handler in logger.handlers[:]:
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()


@pytest.fixture
def media(tmp_path) -> Path:
    """安装介质：sources 下有 install.wim 和 boot.wim"""
    root = tmp_path / "media"
    sources = root / "sources"
    sources.mkdir(parents=True)
    (sources / "install.wim").write_bytes(b"original-install-image")
    (sources / "boot.wim").write_bytes(b"original-boot-image")
    return root


@pytest.fixture
def driver_dirs(tmp_path) -> Tuple[Path, Path]:
    platform = tmp_path / "drivers" / "platform"
    model = tmp_path / "drivers" / "model"
    platform.mkdir(parents=True)
    model.mkdir(parents=True)
    return platform, model


@pytest.fixture
def make_config(tmp_path, media, driver_dirs):
    """构造 ServicingConfig，关键字参数覆盖默认值"""
    platform, model = driver_dirs

    def factory(**overrides) -> ServicingConfig:
        values = dict(
            platform_drivers_dir=platform,
            model_drivers_dir=model,
            install_source_dir=media,
            workspace_dir=tmp_path / "workspace",
            require_admin=False,
            poll_interval=0,
            min_free_gb=0,
        )
        values.update(overrides)
        return ServicingConfig(**values)

    return factory


@pytest.fixture
def config(make_config) -> ServicingConfig:
    return make_config()


@pytest.fixture
def workspace(config):
    """预先创建两个挂载目录"""
    config.mount_dir.mkdir(parents=True, exist_ok=True)
    config.winre_mount_dir.mkdir(parents=True, exist_ok=True)
    return config


@pytest.fixture
def dism(config) -> FakeDism:
    return FakeDism(config)
