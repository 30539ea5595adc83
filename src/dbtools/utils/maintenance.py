"""Admin operations: init, sizes, tuning advice, table maintenance, listing, keys and sample config"""

import base64
import logging
import os
import secrets
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from ..core.config_manager import DEFAULT_SETTINGS
from ..core.exceptions import ConfigurationError, MySQLError
from ..core.metadata import MetadataStore
from ..core.mysql_client import MySQLClient, find_tool, require_tool
from ..core.pipeline import check_key_permissions
from .lock import InstanceLock

if TYPE_CHECKING:
    from ..core.config_manager import ConfigManager

MAINTENANCE_MODES = ("quick", "full")
KEY_BYTES = 32
INIT_STAMP = "init"
LISTED_CATEGORIES = ("dump", "binlog", "physical-full", "physical-incr")

SAMPLE_HEADER = """\
# dbtools configuration
# Copy to /etc/dbtools/settings.yaml (or point DBTOOLS_CONFIG at it) and edit.
#
# backup.method: xtrabackup (physical, falls back to mysqldump) or mysqldump
# compression.algorithm: pigz, gzip, zstd or xz
# notifications.notify_on: always, error or never
# mysql.login_path is used unless user/password/host/socket are set here
"""


@dataclass
class TuneReport:
    outputs: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass
class MaintenanceReport:
    mode: str
    tables: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.tables * (2 if self.mode == "full" else 1) - len(self.failed)


def generate_key(key_file: Path, overwrite: bool = False) -> Path:
    """Write a random 256-bit key, base64 encoded, readable by the owner only"""
    if key_file.exists() and not overwrite:
        raise ConfigurationError(f"Key file exists at {key_file}; refusing to overwrite")
    key_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii") + "\n")
    os.chmod(key_file, 0o600)
    logging.getLogger("Maintenance").info(f"✅ Encryption key created: {key_file}")
    return key_file


def write_sample_config(path: Path, overwrite: bool = False) -> Path:
    if path.exists() and not overwrite:
        raise ConfigurationError(f"Config file exists at {path}; refusing to overwrite")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(SAMPLE_HEADER + "\n")
        yaml.safe_dump(DEFAULT_SETTINGS, f, default_flow_style=False, sort_keys=False)
    logging.getLogger("Maintenance").info(f"✅ Config file created: {path}")
    return path


class Maintenance:
    """Server-side housekeeping and the informational commands"""

    def __init__(
        self,
        config: "ConfigManager",
        mysql: MySQLClient | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.config = config
        self.mysql = mysql or MySQLClient(config, runner=runner)
        self.runner = runner
        self.logger = logging.getLogger("Maintenance")

    def initialize(self) -> list[str]:
        """Check tooling and login, create the backup dir and the init stamp

        Returns:
            Warnings for optional pieces that are missing
        """
        warnings = []
        for tool in ("mysql", "mysqldump"):
            require_tool(tool, self.config.get_setting(f"tools.{tool}"))
        for tool in ("mysqlbinlog", "xtrabackup"):
            if find_tool(tool, self.config.get_setting(f"tools.{tool}")) is None:
                warnings.append(f"{tool} not found")
        if self.config.compression_algorithm == "pigz" and find_tool("pigz") is None:
            warnings.append("pigz not found, gzip will be used")

        with self.mysql:
            try:
                self.mysql.query("SELECT VERSION();")
            except MySQLError as e:
                raise ConfigurationError(f"Login test failed: {e}") from e

        if self.config.encryption_enabled and self.config.key_file is not None:
            check_key_permissions(self.config.key_file)

        self.config.backup_dir.mkdir(parents=True, exist_ok=True)
        state_dir = Path(self.config.get_setting("state_dir", "/var/lib/dbtools"))
        state_dir.mkdir(parents=True, exist_ok=True)
        (state_dir / INIT_STAMP).write_text(datetime.now().astimezone().isoformat(timespec="seconds") + "\n")

        for warning in warnings:
            self.logger.warning(warning)
        self.logger.info("✅ Initialization complete")
        return warnings

    def sizes(self, top_n: int | None = None) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Per-database sizes and the largest tables"""
        top_n = top_n or int(self.config.get_setting("sizes.top_n", 30))
        with self.mysql:
            return self.mysql.database_sizes(), self.mysql.table_sizes(top_n)

    def tune(self) -> TuneReport:
        """Run mysqltuner and pt-variable-advisor when they are installed"""
        report = TuneReport()
        timeout = self.config.get_timeout("query")

        mysqltuner = find_tool("mysqltuner")
        if mysqltuner:
            self.logger.info("Running MySQLTuner...")
            result = self.runner(
                [mysqltuner, "--silent", "--forcemem", "--nocolor"],
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                timeout=timeout,
            )
            report.outputs["mysqltuner"] = result.stdout or ""
        else:
            report.warnings.append("mysqltuner not found (install: apt-get install mysqltuner)")

        advisor = find_tool("pt-variable-advisor")
        if advisor:
            self.logger.info("Running Percona pt-variable-advisor...")
            with self.mysql:
                variables = self.mysql.variables()
            result = self.runner(
                [advisor, "--quiet", "-"],
                input=variables,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                timeout=timeout,
            )
            report.outputs["pt-variable-advisor"] = result.stdout or ""
        else:
            report.warnings.append("pt-variable-advisor not found (install percona-toolkit)")

        for warning in report.warnings:
            self.logger.warning(warning)
        return report

    def maintain(self, mode: str = "quick", lock: InstanceLock | None = None) -> MaintenanceReport:
        """ANALYZE every base table; 'full' also runs OPTIMIZE"""
        if mode not in MAINTENANCE_MODES:
            raise ConfigurationError("Mode must be 'quick' or 'full'")

        if lock is not None:
            lock.acquire(timeout=float(self.config.get_setting("lock.timeout", 300)))
        try:
            with self.mysql:
                tables = self.mysql.base_tables()
                report = MaintenanceReport(mode=mode, tables=len(tables))
                if not tables:
                    self.logger.info("No tables found")
                    return report

                self.logger.info(f"Running maintenance mode: {mode} ({len(tables)} table(s))")
                statements = ["ANALYZE"] if mode == "quick" else ["ANALYZE", "OPTIMIZE"]
                if mode == "full":
                    self.logger.warning("OPTIMIZE mode: This may take a long time and require disk space")
                for statement in statements:
                    for table in tables:
                        try:
                            self.mysql.execute(f"{statement} TABLE {table};")
                        except MySQLError as e:
                            self.logger.warning(f"{statement} failed: {table}: {e}")
                            report.failed.append(f"{statement} {table}")
        finally:
            if lock is not None:
                lock.release()

        self.logger.info(f"✅ Maintenance complete: {report.succeeded} ok, {len(report.failed)} failed")
        return report

    def list_artifacts(self) -> list[dict[str, Any]]:
        """Backups in the backup directory with modification date and size"""
        rows = []
        for artifact in MetadataStore(self.config.backup_dir).artifacts():
            if artifact.category not in LISTED_CATEGORIES:
                continue
            st = artifact.path.stat()
            rows.append(
                {
                    "name": artifact.path.name,
                    "category": artifact.category,
                    "date": datetime.fromtimestamp(st.st_mtime).strftime("%Y-%m-%d %H:%M"),
                    "size": st.st_size,
                }
            )
        return rows
