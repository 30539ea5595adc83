"""Logging setup for dbtools"""

import logging
import logging.handlers
from pathlib import Path

LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB max per log file
LOG_BACKUP_COUNT = 5  # Number of rotated log files to keep
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

COMPONENT_LOGGERS = (
    "BackupEngine",
    "BackupDispatcher",
    "RestoreEngine",
    "PITREngine",
    "RetentionManager",
    "NotificationManager",
    "InstanceLock",
    "Pipeline",
    "MySQLClient",
    "XtraBackup",
    "Maintenance",
    "HealthChecker",
    "ConfigManager",
    "Checksum",
    "MetadataStore",
)


def setup_logging(log_dir: Path | None, level: str = "INFO", use_syslog: bool = False) -> logging.Logger:
    """Set up logging with automatic rotation for every dbtools component

    Args:
        log_dir: Directory for the rotating log file (None for console only)
        level: DEBUG, INFO, WARN/WARNING or ERROR
        use_syslog: Also send records to the local syslog daemon

    Returns:
        The 'dbtools' root logger the component loggers propagate to
    """
    level_name = level.upper()
    if level_name == "WARN":
        level_name = "WARNING"
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger("dbtools")
    root.setLevel(numeric_level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not root.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(numeric_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        if log_dir is not None:
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
                fh = logging.handlers.RotatingFileHandler(
                    log_dir / "dbtools.log",
                    maxBytes=LOG_MAX_BYTES,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                fh.setLevel(logging.INFO)
                fh.setFormatter(formatter)
                root.addHandler(fh)
            except OSError as e:
                root.warning(f"File logging disabled, cannot write to {log_dir}: {e}")

        if use_syslog:
            try:
                sh = logging.handlers.SysLogHandler(address="/dev/log")
                sh.setFormatter(logging.Formatter("dbtools: %(name)s %(levelname)s %(message)s"))
                root.addHandler(sh)
            except OSError as e:
                root.warning(f"Syslog unavailable: {e}")

    # Component loggers use plain names (logging.getLogger("BackupEngine")), route them to the same handlers
    for name in COMPONENT_LOGGERS:
        component = logging.getLogger(name)
        component.setLevel(numeric_level)
        if not component.handlers:
            for handler in root.handlers:
                component.addHandler(handler)
            component.propagate = False

    return root
