"""Shared fixtures: temporary backup dirs, config factory and fake collaborators."""

import io
import os
from pathlib import Path

import pytest

from dbtools.core.config_manager import ConfigManager
from dbtools.core.metadata import LogCoordinate


def make_dump(db: str, body: bytes = b"") -> bytes:
    return (
        b"-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)\n"
        b"--\n"
        b"-- Host: localhost    Database: " + db.encode() + b"\n"
        b"CREATE DATABASE /*!32312 IF NOT EXISTS*/ `" + db.encode() + b"` /*!40100 DEFAULT CHARACTER SET utf8mb4 */;\n"
        b"\n"
        b"USE `" + db.encode() + b"`;\n"
        b"CREATE TABLE `t` (`id` int, `name` varchar(32));\n" + body + b"-- Dump completed\n"
    )


class FakeProcess:
    """Stands in for a producer Popen (mysqldump / mysqlbinlog)"""

    def __init__(self, cmd, stdout: bytes = b"", returncode: int = 0, stderr: bytes = b"", stderr_file=None):
        self.cmd = cmd
        self.stdout = io.BytesIO(stdout)
        self.returncode = returncode
        if stderr and stderr_file is not None:
            stderr_file.write(stderr)

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        pass


class FakePopen:
    """Callable replacing subprocess.Popen; ``outputs`` maps a command's last argument to bytes"""

    def __init__(self, outputs: dict[str, bytes] | None = None, failures: dict[str, bytes] | None = None):
        self.outputs = outputs or {}
        self.failures = failures or {}
        self.calls: list[list[str]] = []

    def __call__(self, cmd, stdout=None, stderr=None, **kwargs):
        self.calls.append(list(cmd))
        key = cmd[-1]
        if key in self.failures:
            return FakeProcess(cmd, b"", 2, self.failures[key], stderr if hasattr(stderr, "write") else None)
        return FakeProcess(cmd, self.outputs.get(key, b""))


class FakeImport:
    """A ``mysql`` import process that records what it was fed"""

    def __init__(self, sink: list[bytes]):
        self.stdin = io.BytesIO()
        self.returncode = 0
        self._sink = sink

    def communicate(self, timeout=None):
        self._sink.append(self.stdin.getvalue())
        return None, b""

    def kill(self):
        pass

    def wait(self, timeout=None):
        return self.returncode


class FakeMySQL:
    """In-memory replacement for MySQLClient"""

    def __init__(self, databases=("alpha", "beta"), coordinate=None, version="8.0.36"):
        self.databases = list(databases)
        self.coordinate = coordinate
        self.server_version = version
        self.statements: list[str] = []
        self.imports: list[bytes] = []
        self.tables = ["`alpha`.`t`", "`beta`.`t`"]
        self.failing_statements: set[str] = set()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        pass

    def command(self, tool, *args):
        return [tool, "--login-path=test", *args]

    def connection_args(self):
        return ["--login-path=test"]

    def list_databases(self):
        return list(self.databases)

    def master_status(self):
        return self.coordinate

    def version(self):
        return self.server_version

    def estimate_size_bytes(self):
        return 1024

    def ping(self):
        return True

    def binlog_enabled(self):
        return self.coordinate is not None

    def execute(self, sql, database=None):
        from dbtools.core.exceptions import MySQLError

        if sql in self.failing_statements:
            raise MySQLError(f"failed: {sql}")
        self.statements.append(sql)

    def query(self, sql, database=None):
        self.statements.append(sql)
        return [["1"]]

    def base_tables(self):
        return list(self.tables)

    def database_sizes(self):
        return [{"database": db, "size_mb": 1.0, "tables": 1} for db in self.databases]

    def table_sizes(self, top_n=30):
        return [{"table": t, "size_mb": 0.5, "rows": 10} for t in self.tables][:top_n]

    def open_import(self, database=None, extra=(), stdin=None):
        return FakeImport(self.imports)


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def binlog_dir(tmp_path: Path) -> Path:
    path = tmp_path / "binlogs"
    path.mkdir()
    return path


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "encryption.key"
    path.write_text("c2VjcmV0LWtleS1mb3ItdGVzdHM=\n")
    os.chmod(path, 0o600)
    return path


@pytest.fixture
def make_config(tmp_path: Path, backup_dir: Path, binlog_dir: Path):
    """Build a ConfigManager rooted in tmp_path, with overrides merged on top"""

    def _make(**sections) -> ConfigManager:
        overrides = {
            "backup": {"dir": str(backup_dir), "method": "mysqldump", "parallel_jobs": 2},
            "compression": {"algorithm": "gzip", "level": 6},
            "mysql": {"binlog_dir": str(binlog_dir), "datadir": str(tmp_path / "datadir")},
            "lock": {"path": str(tmp_path / "dbtools.lock"), "use_flock": True},
            "retention": {"prune_after_backup": False},
            "state_dir": str(tmp_path / "state"),
        }
        for section, values in sections.items():
            if isinstance(values, dict):
                overrides.setdefault(section, {}).update(values)
            else:
                overrides[section] = values
        return ConfigManager(config_path=tmp_path / "missing.yaml", overrides=overrides, environ={})

    return _make


@pytest.fixture
def coordinate() -> LogCoordinate:
    return LogCoordinate("binlog.000002", 157)
