"""Configuration Manager for dbtools"""

import copy
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/dbtools/settings.yaml")

COMPRESSION_ALGORITHMS = ("gzip", "pigz", "zstd", "xz")

DEFAULT_SETTINGS: dict[str, Any] = {
    "backup": {
        "dir": "/var/backups/mysql",
        "method": "xtrabackup",  # xtrabackup or mysqldump
        "parallel_jobs": 2,
        "fail_on_partial": False,
        "min_free_space_mb": 0,
    },
    "compression": {
        "algorithm": "pigz",
        "level": 6,
    },
    "encryption": {
        "enabled": False,
        "key_file": "",
    },
    "checksum": {
        "enabled": True,
    },
    "retention": {
        "days": 7,
        "keep_min": 2,
        "prune_after_backup": True,
        "dry_run": False,
    },
    "mysql": {
        "login_path": "dbtools",
        "host": None,
        "port": None,
        "user": None,
        "password": None,
        "socket": None,
        "datadir": "/var/lib/mysql",
        "binlog_dir": "/var/lib/mysql",
        "binlog_index": "binlog.index",
        "service_names": ["mysql", "mysqld", "mariadb"],
        "system_user": "mysql",
    },
    "tools": {
        "mysql": None,
        "mysqldump": None,
        "mysqlbinlog": None,
        "xtrabackup": None,
    },
    "xtrabackup": {
        "parallel": 2,
        "compress": True,
        "compress_threads": 2,
        "memory": "1G",
    },
    "restore": {
        "drop_first": False,
    },
    "notifications": {
        "notify_on": "error",  # always, error, never
        "email": "",
        "email_from": "dbtools@localhost",
        "smtp_host": "localhost",
        "smtp_port": 25,
        "webhook": "",
        "timeout": 10,
    },
    "logging": {
        "level": "INFO",
        "use_syslog": False,
    },
    "lock": {
        "path": "/var/run/dbtools.lock",
        "timeout": 300,
        "poll_interval": 5,
        "use_flock": True,
    },
    "timeouts": {
        "mysqldump": 3600,
        "mysql_restore": 7200,
        "mysqlbinlog": 3600,
        "xtrabackup": 14400,
        "query": 300,
    },
    "sizes": {
        "top_n": 30,
    },
    "state_dir": "/var/lib/dbtools",
}

# Environment variable -> (dotted setting key, type)
ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "BACKUP_DIR": ("backup.dir", str),
    "BACKUP_METHOD": ("backup.method", str),
    "PARALLEL_JOBS": ("backup.parallel_jobs", int),
    "RETENTION_DAYS": ("retention.days", int),
    "CLEAN_KEEP_MIN": ("retention.keep_min", int),
    "COMPRESS_ALGO": ("compression.algorithm", str),
    "COMPRESS_LEVEL": ("compression.level", int),
    "ENCRYPT_BACKUPS": ("encryption.enabled", bool),
    "ENCRYPTION_KEY_FILE": ("encryption.key_file", str),
    "CHECKSUM_ENABLED": ("checksum.enabled", bool),
    "DRY_RUN": ("retention.dry_run", bool),
    "DROP_FIRST": ("restore.drop_first", bool),
    "LOG_LEVEL": ("logging.level", str),
    "LOGIN_PATH": ("mysql.login_path", str),
    "NOTIFY_EMAIL": ("notifications.email", str),
    "NOTIFY_WEBHOOK": ("notifications.webhook", str),
    "NOTIFY_ON": ("notifications.notify_on", str),
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce(raw: str, kind: type, name: str) -> Any:
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind is int:
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from e
    return raw


class ConfigManager:
    """Loads settings.yaml and exposes validated settings to the rest of dbtools"""

    def __init__(
        self,
        config_path: str | Path | None = None,
        overrides: dict[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        env = os.environ if environ is None else environ
        self.config_path = Path(config_path or env.get("DBTOOLS_CONFIG") or DEFAULT_CONFIG_PATH)

        loaded = self._load_yaml(self.config_path)
        self.settings = _deep_merge(DEFAULT_SETTINGS, loaded)
        self._apply_env_overrides(env)
        if overrides:
            self.settings = _deep_merge(self.settings, overrides)

        self._validate()

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            logging.getLogger("ConfigManager").debug(f"No config file at {file_path}, using defaults")
            return {}

        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{file_path} must contain a mapping at the top level")
        return data

    def _apply_env_overrides(self, env: Mapping[str, str]) -> None:
        for var, (key, kind) in ENV_OVERRIDES.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            self.set_setting(key, _coerce(raw, kind, var))

    def _validate(self) -> None:
        algorithm = self.compression_algorithm
        if algorithm not in COMPRESSION_ALGORITHMS:
            raise ConfigurationError(
                f"Unknown compression algorithm '{algorithm}' (use one of: {', '.join(COMPRESSION_ALGORITHMS)})"
            )
        if self.parallel_jobs < 1:
            raise ConfigurationError(f"backup.parallel_jobs must be >= 1, got {self.parallel_jobs}")
        if self.get_setting("backup.method") not in ("xtrabackup", "mysqldump"):
            raise ConfigurationError("backup.method must be 'xtrabackup' or 'mysqldump'")
        if self.get_setting("notifications.notify_on") not in ("always", "error", "never"):
            raise ConfigurationError("notifications.notify_on must be 'always', 'error' or 'never'")
        if self.encryption_enabled and not self.key_file:
            raise ConfigurationError("encryption.enabled is set but encryption.key_file is empty")

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'backup.dir')
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        keys = key.split(".")
        value: Any = self.settings

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def set_setting(self, key: str, value: Any) -> None:
        """Set a setting in memory using dot notation"""
        keys = key.split(".")
        node = self.settings
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    @property
    def backup_dir(self) -> Path:
        return Path(self.get_setting("backup.dir"))

    @property
    def parallel_jobs(self) -> int:
        try:
            return int(self.get_setting("backup.parallel_jobs", 2))
        except (TypeError, ValueError) as e:
            raise ConfigurationError("backup.parallel_jobs must be an integer") from e

    @property
    def compression_algorithm(self) -> str:
        return str(self.get_setting("compression.algorithm", "pigz")).lower()

    @property
    def compression_level(self) -> int:
        return int(self.get_setting("compression.level", 6))

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.get_setting("encryption.enabled", False))

    @property
    def key_file(self) -> Path | None:
        key_file = self.get_setting("encryption.key_file")
        return Path(key_file) if key_file else None

    @property
    def checksum_enabled(self) -> bool:
        return bool(self.get_setting("checksum.enabled", True))

    @property
    def dry_run(self) -> bool:
        return bool(self.get_setting("retention.dry_run", False))

    @property
    def lock_path(self) -> Path:
        path = Path(self.get_setting("lock.path"))
        if not os.access(path.parent, os.W_OK):
            return Path(tempfile.gettempdir()) / "dbtools.lock"
        return path

    def get_timeout(self, name: str) -> int:
        """Get a subprocess timeout (seconds) from settings"""
        return int(self.get_setting(f"timeouts.{name}", 3600))

    def save(self, file_path: Path | None = None) -> None:
        """Save the current settings to YAML"""
        target = file_path or self.config_path
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w") as f:
            yaml.dump(self.settings, f, default_flow_style=False, sort_keys=False)
