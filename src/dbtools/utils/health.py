"""Health checks for the backup host: server login, storage, recency and tooling"""

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..core.exceptions import DBToolsError
from ..core.metadata import MetadataStore
from ..core.mysql_client import MySQLClient
from ..core.pipeline import check_key_permissions
from ..core.xtrabackup import XtraBackup

if TYPE_CHECKING:
    from ..core.config_manager import ConfigManager

# Free space tiers for the backup directory
DISK_OK_GB = 10
DISK_LOW_GB = 5
# Newest backup older than this is reported as outdated
BACKUP_MAX_AGE_HOURS = 48

OK = "ok"
WARNING = "warning"
ERROR = "error"
INFO = "info"


@dataclass
class HealthCheck:
    name: str
    status: str
    detail: str
    issue: bool = False


@dataclass
class HealthReport:
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def issues(self) -> int:
        return sum(1 for c in self.checks if c.issue)

    @property
    def healthy(self) -> bool:
        return self.issues == 0

    def add(self, name: str, status: str, detail: str, issue: bool = False) -> None:
        self.checks.append(HealthCheck(name, status, detail, issue))


class HealthChecker:
    """Runs every check and collects them into a HealthReport"""

    def __init__(self, config: "ConfigManager", mysql: MySQLClient | None = None, xtrabackup: XtraBackup | None = None):
        self.config = config
        self.backup_dir = config.backup_dir
        self.mysql = mysql or MySQLClient(config)
        self.xtrabackup = xtrabackup or XtraBackup(config, self.mysql)
        self.logger = logging.getLogger("HealthChecker")

    def run(self) -> HealthReport:
        report = HealthReport()
        with self.mysql:
            connected = self.mysql.ping()
            if connected:
                report.add("MySQL Connection", OK, "OK")
            else:
                report.add("MySQL Connection", ERROR, "FAILED", issue=True)

            self._check_backup_dir(report)
            self._check_disk_space(report)
            self._check_last_backup(report)

            if connected and self.mysql.binlog_enabled():
                report.add("Binary Logging", OK, "Enabled (PITR available)")
            else:
                report.add("Binary Logging", WARNING, "Disabled (PITR unavailable)")

        self._check_tooling(report)
        self._check_encryption(report)

        if self.config.get_setting("notifications.email") or self.config.get_setting("notifications.webhook"):
            report.add("Notifications", OK, "Configured")
        else:
            report.add("Notifications", INFO, "Not configured")

        if report.healthy:
            self.logger.info("✅ All health checks passed")
        else:
            self.logger.warning(f"{report.issues} issue(s) detected")
        return report

    def _check_backup_dir(self, report: HealthReport) -> None:
        if self.backup_dir.is_dir() and os.access(self.backup_dir, os.W_OK):
            report.add("Backup Directory", OK, f"OK ({self.backup_dir})")
        else:
            report.add("Backup Directory", ERROR, f"Not writable ({self.backup_dir})", issue=True)

    def _check_disk_space(self, report: HealthReport) -> None:
        try:
            free = shutil.disk_usage(self.backup_dir).free
        except OSError as e:
            report.add("Disk Space", ERROR, f"Cannot read disk usage: {e}", issue=True)
            return
        free_gb = free / (1024**3)
        if free_gb > DISK_OK_GB:
            report.add("Disk Space", OK, f"{free_gb:.1f}GB available")
        elif free_gb > DISK_LOW_GB:
            report.add("Disk Space", WARNING, f"{free_gb:.1f}GB available (getting low)", issue=True)
        else:
            report.add("Disk Space", ERROR, f"{free_gb:.1f}GB available (critically low!)", issue=True)

    def _check_last_backup(self, report: HealthReport) -> None:
        artifacts = [
            a for a in MetadataStore(self.backup_dir).artifacts() if a.category not in ("binlog-index",)
        ]
        if not artifacts:
            report.add("Last Backup", WARNING, "No backups found", issue=True)
            return
        newest = max(artifacts, key=lambda a: a.path.stat().st_mtime)
        age_hours = int((time.time() - newest.path.stat().st_mtime) // 3600)
        if age_hours < BACKUP_MAX_AGE_HOURS:
            report.add("Last Backup", OK, f"{age_hours}h ago ({newest.path.name})")
        else:
            report.add("Last Backup", WARNING, f"{age_hours}h ago (outdated!)", issue=True)

    def _check_tooling(self, report: HealthReport) -> None:
        algorithm = self.config.compression_algorithm
        if shutil.which("pigz") or algorithm in ("zstd", "xz"):
            report.add("Compression", OK, f"Using {algorithm}")
        else:
            report.add("Compression", WARNING, "pigz not found, using gzip (slower)")

        if self.xtrabackup.available():
            report.add("XtraBackup", OK, f"Installed ({self.xtrabackup.version() or 'unknown'})")
        else:
            report.add("XtraBackup", WARNING, "Not installed (physical backups unavailable)")

        if self.config.checksum_enabled:
            report.add("Checksums", OK, "Enabled")
        else:
            report.add("Checksums", WARNING, "Disabled")

    def _check_encryption(self, report: HealthReport) -> None:
        key_file = self.config.key_file
        if not self.config.encryption_enabled or key_file is None:
            report.add("Encryption", INFO, "Disabled")
            return
        try:
            check_key_permissions(key_file)
            report.add("Encryption", OK, f"Enabled ({key_file})")
        except DBToolsError as e:
            report.add("Encryption", ERROR, str(e), issue=True)
