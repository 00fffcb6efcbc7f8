"""Tests for export, swap, split and workspace cleanup."""
from unittest.mock import patch

import pytest

from driverinjector.core.errors import ExitCode, FinalizeFailure
from driverinjector.core.servicing.finalizer import Finalizer
from driverinjector.core.servicing.models import (
    ContainerKind, EditionSelection, EditionSource, ImageEdition, WorkspaceState
)
from driverinjector.core.servicing.mount_session import MountSession

from conftest import FakeDism

PRO = EditionSelection(ImageEdition(2, "Windows 11 Pro"), EditionSource.DEFAULT)


@pytest.fixture
def finalizer(config, dism):
    return Finalizer(config, dism)


def workspace_of(config):
    return WorkspaceState(config.mount_dir, config.winre_mount_dir, config.temp_dir)


class TestExportAndSwap:
    """Tests for exporting the selected edition and swapping it in."""

    def test_finalize_replaces_install_image(self, finalizer, config, dism):
        result = finalizer.finalize(PRO)

        assert result.exported
        assert result.final_image == config.install_image
        assert config.install_image.read_bytes() == b"exported-2"
        assert not config.export_image.exists()
        assert dism.calls_for("Export-Image")[0] == [
            "/Export-Image",
            f"/SourceImageFile:{config.install_image}",
            "/SourceIndex:2",
            f"/DestinationImageFile:{config.export_image}",
            "/Compress:max",
            "/CheckIntegrity",
        ]

    def test_export_failure_keeps_original(self, finalizer, config, dism):
        dism.fail("Export-Image")

        with pytest.raises(FinalizeFailure) as exc_info:
            finalizer.finalize(PRO)

        assert exc_info.value.exit_code == ExitCode.FINALIZE_FAILED
        assert config.install_image.read_bytes() == b"original-install-image"

    def test_export_without_output_file(self, finalizer, config, dism):
        with patch.object(FakeDism, "_do_export_image", return_value=(True, "", "")):
            with pytest.raises(FinalizeFailure, match="导出文件未生成"):
                finalizer.export_edition(PRO)

        assert config.install_image.read_bytes() == b"original-install-image"

    def test_stale_export_is_replaced(self, finalizer, config):
        config.export_image.write_bytes(b"stale")

        finalizer.export_edition(PRO)

        assert config.export_image.read_bytes() == b"exported-2"

    def test_swap_rename_failure(self, finalizer, config):
        finalizer.export_edition(PRO)

        with patch("driverinjector.core.servicing.finalizer.os.replace",
                   side_effect=OSError("locked")):
            with pytest.raises(FinalizeFailure, match="重命名失败"):
                finalizer.swap_exported_image()


class TestSplit:
    """Tests for splitting the final image into .swm parts."""

    def test_split_parts_cover_whole_image(self, make_config):
        """4500 MB at 3800 MB per part gives two parts with the same total size."""
        config = make_config(split=True, split_size_mb=3800)
        config.install_image.write_bytes(b"x" * 4500)
        finalizer = Finalizer(config, FakeDism(config))

        parts = finalizer.split_install_image()

        assert [p.name for p in parts] == ["install.swm", "install2.swm"]
        assert sum(p.stat().st_size for p in parts) == 4500
        assert parts[0].stat().st_size == 3800
        assert not config.install_image.exists()

    def test_finalize_with_split(self, make_config):
        config = make_config(split=True, split_size_mb=4)
        finalizer = Finalizer(config, FakeDism(config))

        result = finalizer.finalize(PRO)

        assert result.final_image == config.split_image
        assert [p.name for p in result.split_parts] == ["install.swm", "install2.swm", "install3.swm"]
        assert b"".join(p.read_bytes() for p in result.split_parts) == b"exported-2"

    def test_split_failure_keeps_image(self, make_config):
        config = make_config(split=True)
        dism = FakeDism(config)
        dism.fail("Split-Image")

        with pytest.raises(FinalizeFailure):
            Finalizer(config, dism).split_install_image()

        assert config.install_image.exists()

    def test_stale_parts_removed_first(self, make_config):
        config = make_config(split=True, split_size_mb=3800)
        stale = config.sources_dir / "install7.swm"
        stale.write_bytes(b"old")

        parts = Finalizer(config, FakeDism(config)).split_install_image()

        assert not stale.exists()
        assert [p.name for p in parts] == ["install.swm"]

    def test_parts_sorted_numerically(self, make_config):
        config = make_config(split=True, split_size_mb=1)
        config.install_image.write_bytes(b"abcdefghijkl")

        parts = Finalizer(config, FakeDism(config)).split_install_image()

        assert [p.name for p in parts][:3] == ["install.swm", "install2.swm", "install3.swm"]
        assert parts[-1].name == "install12.swm"


class TestCleanupWorkspace:
    """Tests for workspace cleanup."""

    def test_removes_workspace_directories(self, finalizer, workspace):
        (workspace.temp_dir).mkdir(parents=True)
        (workspace.temp_dir / "dism_001.out").write_text("log")

        assert finalizer.cleanup_workspace(workspace_of(workspace))

        assert not workspace.mount_dir.exists()
        assert not workspace.winre_mount_dir.exists()
        assert not workspace.temp_dir.exists()

    def test_missing_directories_are_fine(self, finalizer, config):
        assert finalizer.cleanup_workspace(workspace_of(config))

    def test_skips_directory_with_open_session(self, finalizer, workspace, dism):
        """A still mounted image must not be deleted from under DISM."""
        session = MountSession(dism, workspace.install_image, 2, workspace.mount_dir,
                               ContainerKind.INSTALL)
        session.open()

        assert finalizer.cleanup_workspace(workspace_of(workspace)) is False

        assert workspace.mount_dir.exists()
        assert any(workspace.mount_dir.iterdir())
        assert not workspace.winre_mount_dir.exists()

    def test_removal_error_is_reported(self, finalizer, workspace):
        with patch("driverinjector.core.servicing.finalizer.force_remove_tree",
                   side_effect=OSError("access denied")):
            assert finalizer.cleanup_workspace(workspace_of(workspace)) is False
