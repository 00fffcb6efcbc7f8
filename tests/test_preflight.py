"""Tests for the preflight validator."""
import shutil
from unittest.mock import patch

import pytest

from driverinjector.core.errors import ExitCode, PreflightFailure
from driverinjector.core.servicing.preflight import PreflightResult, PreflightValidator


class TestPreflightValidator:
    """Tests for PreflightValidator.validate."""

    def test_all_checks_pass(self, workspace):
        """A prepared workspace with both images passes."""
        result = PreflightValidator(workspace).validate()

        assert result.passed
        assert result.failed_check is None

    @pytest.mark.parametrize("attribute, check", [
        ("platform_drivers_dir", "platform_drivers_dir"),
        ("model_drivers_dir", "model_drivers_dir"),
        ("mount_dir", "mount_dir"),
        ("winre_mount_dir", "winre_mount_dir"),
    ])
    def test_missing_directory(self, workspace, attribute, check):
        """Each required directory is checked for existence."""
        shutil.rmtree(getattr(workspace, attribute))

        result = PreflightValidator(workspace).validate()

        assert not result.passed
        assert result.failed_check == check
        assert "目录不存在" in result.message

    def test_missing_install_source(self, make_config, tmp_path):
        """A missing installation media root fails before image checks."""
        config = make_config(install_source_dir=tmp_path / "nowhere")
        config.mount_dir.mkdir(parents=True)
        config.winre_mount_dir.mkdir(parents=True)

        result = PreflightValidator(config).validate()

        assert result.failed_check == "install_source_dir"

    def test_mount_dir_not_empty(self, workspace):
        """A leftover file in the shared mount dir is rejected."""
        (workspace.mount_dir / "Windows").mkdir()

        result = PreflightValidator(workspace).validate()

        assert result.failed_check == "mount_dir_empty"
        assert "recover" in result.message

    def test_winre_mount_dir_not_empty(self, workspace):
        """A leftover file in the recovery mount dir is rejected."""
        (workspace.winre_mount_dir / "leftover.txt").write_text("x")

        result = PreflightValidator(workspace).validate()

        assert result.failed_check == "winre_mount_dir_empty"

    def test_missing_install_image(self, workspace):
        workspace.install_image.unlink()

        result = PreflightValidator(workspace).validate()

        assert result.failed_check == "install_image"

    def test_missing_boot_image(self, workspace):
        workspace.boot_image.unlink()

        result = PreflightValidator(workspace).validate()

        assert result.failed_check == "boot_image"

    def test_first_failure_wins(self, workspace):
        """Directory checks run before image checks."""
        workspace.boot_image.unlink()
        shutil.rmtree(workspace.model_drivers_dir)

        result = PreflightValidator(workspace).validate()

        assert result.failed_check == "model_drivers_dir"

    def test_admin_required(self, make_config):
        """Without elevation the run is refused when admin is required."""
        config = make_config(require_admin=True)
        config.mount_dir.mkdir(parents=True)
        config.winre_mount_dir.mkdir(parents=True)

        result = PreflightValidator(config, admin_check=lambda: False).validate()

        assert result.failed_check == "admin"

    def test_admin_not_checked_when_disabled(self, workspace):
        result = PreflightValidator(workspace, admin_check=lambda: False).validate()

        assert result.passed

    def test_low_disk_space_only_warns(self, make_config, caplog):
        """Free space below the threshold is logged but does not fail."""
        config = make_config(min_free_gb=10 ** 6)
        config.mount_dir.mkdir(parents=True)
        config.winre_mount_dir.mkdir(parents=True)

        with caplog.at_level("WARNING", logger="DriverInjector"):
            result = PreflightValidator(config).validate()

        assert result.passed
        assert any("低于建议值" in record.message for record in caplog.records)

    def test_disk_usage_error_is_ignored(self, workspace):
        with patch("driverinjector.core.servicing.preflight.psutil.disk_usage",
                   side_effect=OSError("no such device")):
            result = PreflightValidator(workspace).validate()

        assert result.passed

    def test_validate_is_read_only(self, workspace):
        """Validation never creates or removes anything."""
        before = sorted(p.name for p in workspace.workspace_dir.rglob("*"))

        PreflightValidator(workspace).validate()

        assert sorted(p.name for p in workspace.workspace_dir.rglob("*")) == before


class TestPreflightResult:
    """Tests for PreflightResult.raise_for_failure."""

    def test_passed_result_does_not_raise(self):
        PreflightResult(True).raise_for_failure()

    def test_failed_result_raises(self):
        result = PreflightResult(False, "boot_image", "启动镜像不存在")

        with pytest.raises(PreflightFailure, match="启动镜像不存在") as exc_info:
            result.raise_for_failure()

        assert exc_info.value.check == "boot_image"
        assert exc_info.value.exit_code == ExitCode.VALIDATION_FAILED
