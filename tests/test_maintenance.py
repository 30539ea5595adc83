"""Admin operations, health checks and notifications."""

import base64
import os

import pytest
import requests
import yaml

from conftest import FakeMySQL
from dbtools.core.backup_engine import BackupReport
from dbtools.core.dispatcher import JobResult
from dbtools.core.exceptions import ConfigurationError
from dbtools.utils.health import ERROR, OK, HealthChecker
from dbtools.utils.maintenance import Maintenance, generate_key, write_sample_config
from dbtools.utils.notifications import NotificationManager


def test_generate_key(tmp_path):
    key_file = tmp_path / "keys" / "backup.key"
    generate_key(key_file)

    assert os.stat(key_file).st_mode & 0o777 == 0o600
    assert len(base64.b64decode(key_file.read_text().strip())) == 32

    with pytest.raises(ConfigurationError):
        generate_key(key_file)
    before = key_file.read_text()
    generate_key(key_file, overwrite=True)
    assert key_file.read_text() != before


def test_sample_config_loads_back(tmp_path):
    path = write_sample_config(tmp_path / "settings.yaml")
    data = yaml.safe_load(path.read_text())
    assert data["compression"]["algorithm"] == "pigz"
    assert "retention" in data
    with pytest.raises(ConfigurationError):
        write_sample_config(path)


def test_maintain_counts_failures(make_config):
    mysql = FakeMySQL()
    mysql.failing_statements = {"OPTIMIZE TABLE `beta`.`t`;"}
    report = Maintenance(make_config(), mysql=mysql).maintain("full")

    assert report.tables == 2
    assert report.failed == ["OPTIMIZE `beta`.`t`"]
    assert report.succeeded == 3
    assert "ANALYZE TABLE `alpha`.`t`;" in mysql.statements


def test_maintain_rejects_unknown_mode(make_config):
    with pytest.raises(ConfigurationError):
        Maintenance(make_config(), mysql=FakeMySQL()).maintain("deep")


def test_list_artifacts(make_config, backup_dir):
    (backup_dir / "alpha-2025-01-15-10-00-00.sql.gz").write_bytes(b"x" * 10)
    (backup_dir / "binlog-index-2025-01-15-10-00-00.txt").write_text("binlog.000001\n")
    (backup_dir / "notes.txt").write_text("hi")

    rows = Maintenance(make_config(), mysql=FakeMySQL()).list_artifacts()
    assert [(r["name"], r["size"]) for r in rows] == [("alpha-2025-01-15-10-00-00.sql.gz", 10)]


class _Unavailable:
    def available(self):
        return False


def test_health_reports_missing_backups(make_config, key_file):
    config = make_config(encryption={"enabled": True, "key_file": str(key_file)})
    report = HealthChecker(config, mysql=FakeMySQL(), xtrabackup=_Unavailable()).run()
    checks = {c.name: c for c in report.checks}

    assert checks["MySQL Connection"].status == OK
    assert checks["Last Backup"].issue
    assert checks["Encryption"].status == OK
    assert not report.healthy

    os.chmod(key_file, 0o644)
    report = HealthChecker(config, mysql=FakeMySQL(), xtrabackup=_Unavailable()).run()
    assert {c.name: c for c in report.checks}["Encryption"].status == ERROR


class _Session:
    def __init__(self, fail=False):
        self.posts = []
        self.fail = fail

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.fail:
            raise requests.ConnectionError("refused")
        return self

    def raise_for_status(self):
        pass


def test_notification_policy():
    session = _Session()
    notifier = NotificationManager(notify_on="error", webhook="https://hooks.example/x", session=session)

    assert not notifier.notify("Backup completed", "ok", "info")
    assert notifier.notify_failure("Backup", "disk full")
    assert session.posts[0][1]["subject"] == "Backup failed"
    assert session.posts[0][1]["level"] == "error"

    never = NotificationManager(notify_on="never", webhook="https://hooks.example/x", session=session)
    assert not never.notify_failure("Backup", "disk full")


def test_partial_backup_is_reported_as_error():
    session = _Session()
    notifier = NotificationManager(notify_on="error", webhook="https://hooks.example/x", session=session)
    report = BackupReport(requested="full")
    report.results = [JobResult(name="alpha", ok=True), JobResult(name="beta", ok=False, message="1044")]

    assert notifier.notify_backup_report(report)
    assert "beta: 1044" in session.posts[0][1]["message"]


def test_webhook_errors_are_swallowed():
    notifier = NotificationManager(notify_on="always", webhook="https://hooks.example/x", session=_Session(fail=True))
    assert notifier.notify("Backup completed", "ok") is False
