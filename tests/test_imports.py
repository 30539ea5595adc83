"""Basic smoke tests to verify imports work correctly."""


def test_core_imports():
    """Test that core modules can be imported."""
    from dbtools.core.backup_engine import BackupEngine
    from dbtools.core.config_manager import ConfigManager
    from dbtools.core.restore_engine import RestoreEngine

    assert BackupEngine is not None
    assert ConfigManager is not None
    assert RestoreEngine is not None


def test_utils_imports():
    """Test that utility modules can be imported."""
    from dbtools.utils.health import HealthChecker
    from dbtools.utils.maintenance import Maintenance
    from dbtools.utils.retention_manager import RetentionManager

    assert RetentionManager is not None
    assert HealthChecker is not None
    assert Maintenance is not None


def test_cli_import():
    from dbtools.cli import cli, main

    assert cli is not None
    assert main is not None
