#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
DISM调用模块
负责启动DISM进程、轮询进度输出，并封装驱动注入流程用到的各个子命令
"""

import itertools
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple
import logging

from driverinjector.core.config_manager import ServicingConfig
from driverinjector.utils.encoding import safe_decode
from driverinjector.utils.logger import log_command

logger = logging.getLogger("DriverInjector")

ProgressCallback = Callable[[str, str], None]

# Windows下不弹出控制台窗口
_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)


class DismManager:
    """DISM工具封装

    每个公开操作对应一次同步的DISM调用，只以进程退出码判断成败；
    输出文本仅用于日志和进度显示。
    """

    def __init__(self, config: ServicingConfig, progress_callback: Optional[ProgressCallback] = None):
        self.config = config
        self.progress_callback = progress_callback
        self._capture_counter = itertools.count(1)

    def _emit_progress(self, description: str, line: str):
        if self.progress_callback:
            self.progress_callback(description, line)

    def get_dism_path(self) -> Optional[Path]:
        """获取DISM工具路径：配置优先，其次系统PATH"""
        if self.config.dism_path:
            return self.config.dism_path

        system_dism = shutil.which("dism.exe") or shutil.which("dism")
        if system_dism:
            return Path(system_dism)

        return None

    def _new_capture_files(self) -> Tuple[Path, Path]:
        self.config.temp_dir.mkdir(parents=True, exist_ok=True)
        seq = next(self._capture_counter)
        return (self.config.temp_dir / f"dism_{seq:03d}.out",
                self.config.temp_dir / f"dism_{seq:03d}.err")

    def run_dism_command(self, args: List[str], description: str = "") -> Tuple[bool, str, str]:
        """运行DISM命令并阻塞到进程退出

        标准输出写入临时捕获文件，每隔 poll_interval 秒检查一次进程状态，
        并把新增的输出行交给进度回调。

        Args:
            args: DISM命令参数
            description: 命令描述（用于日志）

        Returns:
            Tuple[bool, str, str]: (成功状态, 标准输出, 错误输出)
        """
        dism_path = self.get_dism_path()
        if not dism_path:
            logger.error("找不到DISM工具")
            return False, "", "找不到DISM工具"

        cmd = [str(dism_path)] + [str(arg) for arg in args]
        log_command(" ".join(cmd), description)

        out_path, err_path = self._new_capture_files()
        start_time = time.time()

        try:
            with open(out_path, "wb") as out_file, open(err_path, "wb") as err_file:
                process = subprocess.Popen(
                    cmd,
                    stdout=out_file,
                    stderr=err_file,
                    stdin=subprocess.DEVNULL,
                    creationflags=_CREATION_FLAGS
                )
                offset = 0
                while process.poll() is None:
                    offset = self._tail_output(out_path, offset, description)
                    time.sleep(self.config.poll_interval)
                return_code = process.wait()

            self._tail_output(out_path, offset, description)
            stdout = safe_decode(out_path.read_bytes())
            stderr = safe_decode(err_path.read_bytes())
        except OSError as e:
            error_msg = f"执行DISM命令时发生错误: {str(e)}"
            logger.error(error_msg)
            return False, "", error_msg

        duration = time.time() - start_time
        success = return_code == 0
        if success:
            logger.info(f"DISM命令执行成功，耗时 {duration:.1f} 秒")
            if stdout:
                logger.debug(f"DISM标准输出: {stdout[-500:]}")
        else:
            logger.error(f"DISM命令执行失败，返回码: {return_code}，耗时 {duration:.1f} 秒")
            if stderr:
                logger.error(f"错误输出: {stderr[-500:]}")
            if stdout:
                logger.error(f"标准输出: {stdout[-500:]}")
            if not stderr:
                stderr = stdout or f"返回码 {return_code}"

        return success, stdout, stderr

    def _tail_output(self, out_path: Path, offset: int, description: str) -> int:
        """读取捕获文件中新增的内容并推送最后一行进度"""
        try:
            with open(out_path, "rb") as f:
                f.seek(offset)
                chunk = f.read()
        except OSError:
            return offset

        if not chunk:
            return offset

        lines = [line.strip() for line in safe_decode(chunk).replace("\r", "\n").split("\n")]
        lines = [line for line in lines if line]
        if lines:
            self._emit_progress(description, lines[-1])
        return offset + len(chunk)

    # ---- DISM子命令 ----

    def _run(self, args: List[str], description: str) -> Tuple[bool, str]:
        success, stdout, stderr = self.run_dism_command(args, description)
        if success:
            return True, f"{description}成功"
        return False, stderr.strip() or f"{description}失败"

    def mount_image(self, image_file: Path, index: int, mount_dir: Path) -> Tuple[bool, str]:
        """挂载镜像的指定索引到挂载目录"""
        args = [
            "/Mount-Image",
            f"/ImageFile:{image_file}",
            f"/Index:{index}",
            f"/MountDir:{mount_dir}"
        ]
        return self._run(args, f"挂载 {image_file.name} 索引 {index}")

    def add_driver(self, image_root: Path, driver_dir: Path, recurse: bool = True,
                   force_unsigned: bool = False) -> Tuple[bool, str]:
        """向已挂载的镜像添加驱动"""
        args = [
            f"/Image:{image_root}",
            "/Add-Driver",
            f"/Driver:{driver_dir}"
        ]
        if recurse:
            args.append("/Recurse")
        if force_unsigned:
            args.append("/ForceUnsigned")
        return self._run(args, f"添加驱动 {driver_dir}")

    def cleanup_image(self, image_root: Path) -> Tuple[bool, str]:
        """清理已挂载镜像中被替换的组件，回收空间"""
        args = [
            f"/Image:{image_root}",
            "/Cleanup-Image",
            "/StartComponentCleanup",
            "/ResetBase"
        ]
        return self._run(args, "清理镜像组件")

    def unmount_image(self, mount_dir: Path, commit: bool = True) -> Tuple[bool, str]:
        """卸载镜像，commit=True保存更改，否则放弃"""
        args = [
            "/Unmount-Image",
            f"/MountDir:{mount_dir}",
            "/Commit" if commit else "/Discard"
        ]
        action = "提交并卸载" if commit else "放弃更改并卸载"
        return self._run(args, f"{action} {mount_dir}")

    def export_image(self, source_file: Path, source_index: int, dest_file: Path,
                     compression: str = "max") -> Tuple[bool, str]:
        """把指定索引导出为新的镜像文件"""
        args = [
            "/Export-Image",
            f"/SourceImageFile:{source_file}",
            f"/SourceIndex:{source_index}",
            f"/DestinationImageFile:{dest_file}",
            f"/Compress:{compression}",
            "/CheckIntegrity"
        ]
        return self._run(args, f"导出索引 {source_index} 到 {dest_file.name}")

    def split_image(self, image_file: Path, swm_file: Path, part_size_mb: int) -> Tuple[bool, str]:
        """把镜像拆分为固定大小的 .swm 分卷"""
        args = [
            "/Split-Image",
            f"/ImageFile:{image_file}",
            f"/SWMFile:{swm_file}",
            f"/FileSize:{part_size_mb}"
        ]
        return self._run(args, f"拆分 {image_file.name}")

    def get_wim_info(self, image_file: Path) -> Tuple[bool, str]:
        """获取镜像信息，成功时返回DISM原始输出"""
        args = ["/English", "/Get-WimInfo", f"/WimFile:{image_file}"]
        success, stdout, stderr = self.run_dism_command(args, f"读取 {image_file.name} 信息")
        return (True, stdout) if success else (False, stderr.strip())

    def cleanup_mountpoints(self) -> Tuple[bool, str]:
        """清理系统中残留的损坏挂载点"""
        return self._run(["/Cleanup-Mountpoints"], "清理残留挂载点")
