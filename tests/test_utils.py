"""Tests for file, encoding and logging helpers."""
import logging
from unittest.mock import patch

import pytest

from driverinjector.utils import system_logger
from driverinjector.utils.encoding import safe_decode
from driverinjector.utils.file_utils import (
    count_entries, force_remove_file, force_remove_tree, format_size, is_directory_empty
)
from driverinjector.utils.logger import APP_LOGGER_NAME, get_logger, setup_logger, update_log_context
from driverinjector.utils.system_logger import ContextFilter


class TestFileUtils:
    """Tests for file_utils."""

    def test_is_directory_empty(self, tmp_path):
        assert is_directory_empty(tmp_path)
        (tmp_path / "a").write_text("x")
        assert not is_directory_empty(tmp_path)

    def test_missing_directory_is_not_empty(self, tmp_path):
        assert not is_directory_empty(tmp_path / "missing")

    def test_count_entries(self, tmp_path):
        (tmp_path / "a" / "b").mkdir(parents=True)
        (tmp_path / "a" / "b" / "c.txt").write_text("x")

        assert count_entries(tmp_path) == 3
        assert count_entries(tmp_path / "missing") == 0

    def test_force_remove_file(self, tmp_path):
        target = tmp_path / "f.txt"
        target.write_text("x")

        assert force_remove_file(target)
        assert not target.exists()
        assert force_remove_file(target)

    def test_force_remove_tree(self, tmp_path):
        root = tmp_path / "tree"
        (root / "sub").mkdir(parents=True)
        (root / "sub" / "f.txt").write_text("x")

        assert force_remove_tree(root)
        assert not root.exists()

    def test_force_remove_tree_refuses_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        with pytest.raises(ValueError):
            force_remove_tree(tmp_path)

    def test_force_remove_tree_gives_up(self, tmp_path):
        root = tmp_path / "locked"
        root.mkdir()
        messages = []
        with patch("driverinjector.utils.file_utils.shutil.rmtree", side_effect=OSError("in use")), \
                patch("driverinjector.utils.file_utils.time.sleep") as sleep:
            with pytest.raises(OSError, match="in use"):
                force_remove_tree(root, max_retries=2, progress_callback=messages.append)

        # 最后一次失败后直接抛出，不再等待或报告下一次尝试
        assert len(messages) == 1
        assert messages[0].endswith("(尝试 2/2)")
        assert sleep.call_count == 1

    @pytest.mark.parametrize("size, expected", [
        (0, "0.0 MB"),
        (5 * 1024 ** 2, "5.0 MB"),
        (3 * 1024 ** 3, "3.00 GB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected


class TestSafeDecode:
    """Tests for safe_decode."""

    def test_utf8(self):
        assert safe_decode("操作成功完成。".encode("utf-8")) == "操作成功完成。"

    def test_utf16_with_bom(self):
        assert safe_decode("Index : 1".encode("utf-16")) == "Index : 1"

    def test_gbk_fallback(self):
        with patch("driverinjector.utils.encoding.get_system_encoding", return_value="utf-8"):
            assert safe_decode("错误".encode("gbk")) == "错误"

    def test_empty(self):
        assert safe_decode(b"") == ""


class TestLogging:
    """Tests for logger setup and the context filter."""

    def test_context_filter_sets_defaults(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        assert ContextFilter({"container": "boot", "index": 1}).filter(record)
        assert record.container == "boot"
        assert record.index == 1

    def test_context_is_written_to_file(self, tmp_path):
        log_file = tmp_path / "logs" / "driverinjector.log"
        setup_logger(log_file, enable_system_log=False)

        update_log_context(container="install", index=2)
        get_logger("Test").info("hello")
        update_log_context(container="-", index="-")
        for handler in logging.getLogger(APP_LOGGER_NAME).handlers:
            handler.flush()

        assert "[install:2]" in log_file.read_text(encoding="utf-8")

    def test_get_logger_is_child_of_app_logger(self):
        assert get_logger("Finalizer").name == f"{APP_LOGGER_NAME}.Finalizer"
        assert get_logger().name == APP_LOGGER_NAME

    def test_system_logger_unavailable_without_pywin32(self, tmp_path):
        with patch.object(system_logger, "WIN32_AVAILABLE", False):
            assert system_logger.create_system_logger("DriverInjector", tmp_path) is None
