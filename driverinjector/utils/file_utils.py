"""
文件操作工具函数
处理Windows文件系统特殊情况，如文件锁定、只读属性等
"""

import os
import shutil
import stat
import sys
import time
from pathlib import Path
from typing import Optional, Callable, Union

PathLike = Union[str, Path]


def is_directory_empty(directory_path: PathLike) -> bool:
    """目录是否不包含任何条目（目录不存在时视为非空）"""
    path = Path(directory_path)
    if not path.is_dir():
        return False
    return not any(path.iterdir())


def count_entries(directory_path: PathLike) -> int:
    """递归统计目录下的条目数量"""
    path = Path(directory_path)
    if not path.is_dir():
        return 0
    return sum(1 for _ in path.rglob("*"))


def force_remove_file(file_path: PathLike, max_retries: int = 3, delay: float = 1.0) -> bool:
    """
    强制删除文件，处理Windows文件锁定问题

    Args:
        file_path: 要删除的文件路径
        max_retries: 最大重试次数
        delay: 重试间隔（秒）

    Returns:
        bool: 是否成功删除

    Raises:
        OSError: 删除失败时的最后一个异常
    """
    for attempt in range(max_retries):
        try:
            os.remove(file_path)
            return True
        except FileNotFoundError:
            return True
        except PermissionError:
            if attempt == max_retries - 1:
                # 最后一次尝试：移除只读属性后再删
                os.chmod(file_path, stat.S_IWRITE)
                os.remove(file_path)
                return True
            time.sleep(delay)

    return False


def force_remove_tree(directory_path: PathLike, max_retries: int = 3, delay: float = 1.0,
                      progress_callback: Optional[Callable[[str], None]] = None) -> bool:
    """
    强制删除目录树，处理Windows文件锁定问题

    Args:
        directory_path: 要删除的目录路径
        max_retries: 最大重试次数
        delay: 重试间隔（秒）
        progress_callback: 进度回调函数，接收描述信息

    Returns:
        bool: 目录是否已不存在

    Raises:
        ValueError: 尝试删除受保护的目录
        OSError: 多次尝试后仍无法删除
    """
    path = Path(directory_path)
    if not path.exists():
        return True

    if not _is_safe_to_delete(path):
        raise ValueError(f"拒绝删除受保护的目录: {path}")

    def on_exc(func, failed_path, exc):
        """shutil.rmtree的错误处理回调：去掉只读属性后重试一次"""
        if isinstance(exc, PermissionError):
            os.chmod(failed_path, stat.S_IWRITE)
            func(failed_path)
        else:
            raise exc

    if sys.version_info >= (3, 12):
        rmtree_kwargs = {"onexc": on_exc}
    else:
        rmtree_kwargs = {"onerror": lambda func, p, exc_info: on_exc(func, p, exc_info[1])}

    last_error = None
    for attempt in range(max_retries):
        try:
            shutil.rmtree(path, **rmtree_kwargs)
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            last_error = e
            if attempt == max_retries - 1:
                break
            if progress_callback:
                progress_callback(f"重试删除 {path} (尝试 {attempt + 2}/{max_retries})")
            time.sleep(delay)

    raise last_error


def _is_safe_to_delete(path: Path) -> bool:
    """
    安全检查：防止误删系统目录或磁盘根目录

    Args:
        path: 要检查的目录路径

    Returns:
        bool: 是否可以安全删除
    """
    resolved = path.resolve()

    if resolved == Path.home().resolve() or resolved == Path.cwd().resolve():
        return False

    # 确保不是根目录或系统盘根目录
    if len(resolved.parts) <= 2:
        return False

    dangerous_names = {
        "windows", "system32", "syswow64", "program files", "program files (x86)",
        "programdata", "users", "$recycle.bin", "system volume information"
    }
    if len(resolved.parts) <= 3 and resolved.name.lower() in dangerous_names:
        return False

    return True


def format_size(size_bytes: int) -> str:
    """字节数格式化为MB/GB"""
    if size_bytes >= 1024 ** 3:
        return f"{size_bytes / 1024 ** 3:.2f} GB"
    return f"{size_bytes / 1024 ** 2:.1f} MB"
