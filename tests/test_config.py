"""Configuration loading, environment overrides and validation."""

import pytest

from dbtools.core.config_manager import ConfigManager
from dbtools.core.exceptions import ConfigurationError


def test_defaults_when_file_missing(tmp_path):
    config = ConfigManager(config_path=tmp_path / "missing.yaml", environ={})
    assert config.compression_algorithm == "pigz"
    assert config.parallel_jobs == 2
    assert config.get_setting("retention.keep_min") == 2
    assert config.get_setting("does.not.exist", "fallback") == "fallback"


def test_yaml_merges_over_defaults(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("backup:\n  dir: /srv/backups\ncompression:\n  algorithm: zstd\n")
    config = ConfigManager(config_path=path, environ={})
    assert str(config.backup_dir) == "/srv/backups"
    assert config.compression_algorithm == "zstd"
    assert config.get_setting("backup.parallel_jobs") == 2


def test_environment_overrides(tmp_path):
    env = {"PARALLEL_JOBS": "4", "ENCRYPT_BACKUPS": "1", "ENCRYPTION_KEY_FILE": "/etc/k.key", "DRY_RUN": "1"}
    config = ConfigManager(config_path=tmp_path / "missing.yaml", environ=env)
    assert config.parallel_jobs == 4
    assert config.encryption_enabled
    assert str(config.key_file) == "/etc/k.key"
    assert config.dry_run


def test_config_path_from_environment(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text("retention:\n  days: 30\n")
    config = ConfigManager(environ={"DBTOOLS_CONFIG": str(path)})
    assert config.get_setting("retention.days") == 30


@pytest.mark.parametrize(
    "env",
    [
        {"COMPRESS_ALGO": "bzip2"},
        {"PARALLEL_JOBS": "many"},
        {"PARALLEL_JOBS": "0"},
        {"ENCRYPT_BACKUPS": "1"},
        {"NOTIFY_ON": "sometimes"},
    ],
)
def test_invalid_values_rejected(tmp_path, env):
    with pytest.raises(ConfigurationError):
        ConfigManager(config_path=tmp_path / "missing.yaml", environ=env)


def test_unparseable_yaml(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("backup: [unclosed\n")
    with pytest.raises(ConfigurationError):
        ConfigManager(config_path=path, environ={})
