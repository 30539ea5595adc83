"""Thin wrapper around the mysql command line client"""

import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Sequence
from typing import Any

from .config_manager import ConfigManager
from .exceptions import MySQLError, ToolNotFound
from .metadata import LogCoordinate

SYSTEM_SCHEMAS = ("information_schema", "performance_schema", "sys", "mysql")
_SYSTEM_SCHEMA_SQL = ", ".join(f"'{s}'" for s in SYSTEM_SCHEMAS)

# Alternative binary names, in preference order
TOOL_ALTERNATIVES = {
    "mysql": ("mysql", "mariadb"),
    "mysqldump": ("mysqldump", "mariadb-dump"),
    "mysqlbinlog": ("mysqlbinlog", "mariadb-binlog"),
    "xtrabackup": ("xtrabackup", "mariabackup", "mariadb-backup"),
}


def find_tool(name: str, configured: str | None = None) -> str | None:
    """Locate an external tool: the configured path first, then PATH"""
    if configured:
        if os.access(configured, os.X_OK):
            return configured
        found = shutil.which(configured)
        if found:
            return found
    for candidate in TOOL_ALTERNATIVES.get(name, (name,)):
        found = shutil.which(candidate)
        if found:
            return found
    return None


def require_tool(name: str, configured: str | None = None) -> str:
    path = find_tool(name, configured)
    if path is None:
        raise ToolNotFound(f"Required tool not found: {name}", {"configured": configured or ""})
    return path


class MySQLClient:
    """Runs statements through ``mysql`` with credentials kept off the command line.

    With connection settings in the config, a private ``.cnf`` is written on
    first use and passed as ``--defaults-extra-file``; otherwise the client
    authenticates with ``--login-path``. Use as a context manager so the option
    file is removed on every exit path.
    """

    def __init__(
        self,
        config: ConfigManager,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.config = config
        self.runner = runner
        self.popen = popen
        self.logger = logging.getLogger("MySQLClient")
        self._config_file: str | None = None

    def __enter__(self) -> "MySQLClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Remove the temporary option file if one was written"""
        if self._config_file and os.path.exists(self._config_file):
            try:
                os.remove(self._config_file)
                self.logger.debug("Removed temporary MySQL config file")
            except OSError as e:
                self.logger.warning(f"Failed to remove temporary config file: {e}")
        self._config_file = None

    def tool(self, name: str) -> str:
        return require_tool(name, self.config.get_setting(f"tools.{name}"))

    def _uses_option_file(self) -> bool:
        return any(self.config.get_setting(f"mysql.{key}") for key in ("user", "password", "host", "socket"))

    def _create_mysql_config_file(self) -> str:
        """Create a temporary MySQL configuration file with credentials (secure approach)"""
        fd, temp_path = tempfile.mkstemp(suffix=".cnf", text=True)
        try:
            os.chmod(temp_path, 0o600)

            lines = ["[client]"]
            for key in ("host", "port", "user", "socket"):
                value = self.config.get_setting(f"mysql.{key}")
                if value:
                    lines.append(f"{key}={value}")
            password = self.config.get_setting("mysql.password")
            if password is not None:
                # Password must be quoted to handle special characters like # (comment char)
                escaped = str(password).replace("\\", "\\\\").replace('"', '\\"')
                lines.append(f'password="{escaped}"')

            os.write(fd, ("\n".join(lines) + "\n").encode("utf-8"))
            os.close(fd)
            return temp_path

        except Exception:
            os.close(fd)
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def connection_args(self) -> list[str]:
        """Authentication options; must come first on the tool's command line"""
        if self._uses_option_file():
            if self._config_file is None:
                self._config_file = self._create_mysql_config_file()
            return [f"--defaults-extra-file={self._config_file}"]
        return [f"--login-path={self.config.get_setting('mysql.login_path', 'dbtools')}"]

    def command(self, tool: str, *args: str) -> list[str]:
        return [self.tool(tool), *self.connection_args(), *args]

    def query(self, sql: str, database: str | None = None) -> list[list[str]]:
        """Run a statement and return its rows (tab-separated batch output)"""
        cmd = self.command("mysql", "-N", "-B", "-e", sql)
        if database:
            cmd.append(database)
        try:
            result = self.runner(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.config.get_timeout("query"),
            )
        except subprocess.TimeoutExpired as e:
            raise MySQLError(f"Query timed out after {e.timeout}s", {"sql": sql[:120]}) from e

        if result.returncode != 0:
            raise MySQLError(f"mysql failed: {(result.stderr or '').strip()}", {"sql": sql[:120]})
        return [line.split("\t") for line in (result.stdout or "").splitlines() if line]

    def execute(self, sql: str, database: str | None = None) -> None:
        self.query(sql, database)

    def scalar(self, sql: str) -> str | None:
        rows = self.query(sql)
        return rows[0][0] if rows and rows[0] else None

    def ping(self) -> bool:
        try:
            self.query("SELECT 1;")
            return True
        except (MySQLError, ToolNotFound) as e:
            self.logger.debug(f"Connection check failed: {e}")
            return False

    def version(self) -> str:
        try:
            return self.scalar("SELECT VERSION();") or ""
        except MySQLError as e:
            self.logger.warning(f"Could not read server version: {e}")
            return ""

    def list_databases(self) -> list[str]:
        """User databases (system schemas excluded)"""
        return [row[0] for row in self.query("SHOW DATABASES;") if row[0] not in SYSTEM_SCHEMAS]

    def master_status(self) -> LogCoordinate | None:
        """Current binlog coordinate, or None when binary logging is off"""
        rows: list[list[str]] = []
        for statement in ("SHOW MASTER STATUS;", "SHOW BINARY LOG STATUS;"):
            try:
                rows = self.query(statement)
                break
            except MySQLError as e:
                self.logger.debug(f"{statement} failed: {e}")
        if not rows or len(rows[0]) < 2 or not rows[0][0]:
            return None
        row = rows[0]
        gtid = row[4].replace("\\n", "") if len(row) > 4 else ""
        try:
            return LogCoordinate(row[0], int(row[1]), gtid)
        except ValueError:
            return None

    def binlog_enabled(self) -> bool:
        try:
            rows = self.query("SHOW VARIABLES LIKE 'log_bin';")
        except MySQLError:
            return False
        return bool(rows) and len(rows[0]) > 1 and rows[0][1].upper() == "ON"

    def estimate_size_bytes(self) -> int:
        """Data + index size of all user schemas"""
        value = self.scalar(
            "SELECT COALESCE(SUM(data_length + index_length), 0) FROM information_schema.TABLES "
            f"WHERE table_schema NOT IN ({_SYSTEM_SCHEMA_SQL});"
        )
        try:
            return int(float(value or 0))
        except ValueError:
            return 0

    def database_sizes(self) -> list[dict[str, Any]]:
        rows = self.query(
            "SELECT table_schema, ROUND(SUM(data_length + index_length) / 1024 / 1024, 2), COUNT(*) "
            f"FROM information_schema.TABLES WHERE table_schema NOT IN ({_SYSTEM_SCHEMA_SQL}) "
            "GROUP BY table_schema ORDER BY 2 DESC;"
        )
        return [{"database": r[0], "size_mb": float(r[1] or 0), "tables": int(r[2])} for r in rows if len(r) >= 3]

    def table_sizes(self, top_n: int = 30) -> list[dict[str, Any]]:
        rows = self.query(
            "SELECT CONCAT(table_schema, '.', table_name), ROUND((data_length + index_length) / 1024 / 1024, 2), "
            f"COALESCE(table_rows, 0) FROM information_schema.TABLES WHERE table_schema NOT IN ({_SYSTEM_SCHEMA_SQL}) "
            f"ORDER BY (data_length + index_length) DESC LIMIT {int(top_n)};"
        )
        return [{"table": r[0], "size_mb": float(r[1] or 0), "rows": int(r[2] or 0)} for r in rows if len(r) >= 3]

    def base_tables(self) -> list[str]:
        """Fully qualified, backtick-quoted names of every user base table"""
        rows = self.query(
            "SELECT table_schema, table_name FROM information_schema.TABLES "
            f"WHERE table_schema NOT IN ({_SYSTEM_SCHEMA_SQL}) AND table_type = 'BASE TABLE' "
            "ORDER BY table_schema, table_name;"
        )
        return [f"{quote_identifier(r[0])}.{quote_identifier(r[1])}" for r in rows if len(r) >= 2]

    def variables(self) -> str:
        """SHOW VARIABLES as the client prints it, for advisory tools"""
        result = self.runner(
            self.command("mysql", "-e", "SHOW VARIABLES;"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=self.config.get_timeout("query"),
        )
        if result.returncode != 0:
            raise MySQLError(f"mysql failed: {(result.stderr or '').strip()}")
        return result.stdout or ""

    def open_import(self, database: str | None = None, extra: Sequence[str] = (), stdin: Any = subprocess.PIPE) -> subprocess.Popen:
        """Start ``mysql`` reading SQL from a pipe (or from ``stdin``); the caller feeds it and waits"""
        cmd = self.command("mysql", *extra)
        if database:
            cmd.append(database)
        return self.popen(cmd, stdin=stdin, stderr=subprocess.PIPE)


def quote_identifier(name: str) -> str:
    """Backtick-quote a MySQL identifier"""
    return "`" + name.replace("`", "``") + "`"


def wait_import(proc: subprocess.Popen, timeout: float | None, what: str) -> None:
    """Finish the import (closes stdin) and raise MySQLError on a non-zero exit"""
    try:
        _, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        proc.communicate()
        raise MySQLError(f"{what} timed out after {e.timeout}s") from e
    if proc.returncode != 0:
        message = (stderr or b"").decode("utf-8", "replace").strip() if isinstance(stderr, bytes) else str(stderr or "")
        raise MySQLError(f"{what} failed: {message}")
