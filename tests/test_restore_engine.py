"""RestoreEngine: logical dumps, renames, ALL, physical chains and verify."""

import subprocess
from datetime import datetime

import pytest

from conftest import FakeMySQL, make_dump
from dbtools.core.exceptions import RestoreError
from dbtools.core.metadata import BackupKind, BackupRecord, LogCoordinate, MetadataStore
from dbtools.core.pipeline import StreamPipeline, encode_bytes
from dbtools.core.restore_engine import RESTORE_ALL, RestoreEngine, rewrite_database_references
from dbtools.core.xtrabackup import CHECKPOINTS_FILE, package_backup
from dbtools.utils import checksum

TS1 = "2025-01-14-10-00-00"
TS2 = "2025-01-15-10-00-00"


class FakeXtraBackup:
    def __init__(self, copy_back_error=None):
        self.prepares = []
        self.copy_back_error = copy_back_error

    def available(self):
        return True

    def decompress(self, target_dir):
        pass

    def prepare(self, target_dir, apply_log_only, incremental_dir=None):
        self.prepares.append((apply_log_only, incremental_dir.parent.name if incremental_dir else None))

    def copy_back(self, target_dir, datadir):
        if self.copy_back_error is not None:
            (datadir / "partial.ibd").write_bytes(b"half")
            raise self.copy_back_error
        (datadir / "ibdata1").write_bytes(b"restored")


class FakeServices:
    def __init__(self):
        self.events = []

    def stop(self):
        self.events.append("stop")
        return "mysql"

    def start(self):
        self.events.append("start")
        return "mysql"


class RecordingReplayer:
    def __init__(self):
        self.steps = []

    def replay(self, step):
        self.steps.append(step)
        return True, ""

    def first_event_time(self, segment):
        return None


def _runner(cmd, **kwargs):
    return subprocess.CompletedProcess(cmd, 0)


def _write_dump(backup_dir, db, ts, body=b"", algorithm="gzip"):
    path = backup_dir / f"{db}-{ts}.sql.gz"
    path.write_bytes(encode_bytes(make_dump(db, body), algorithm))
    return path


def _engine(config, mysql=None, **kwargs):
    kwargs.setdefault("xtrabackup", FakeXtraBackup())
    kwargs.setdefault("services", FakeServices())
    kwargs.setdefault("replayer", RecordingReplayer())
    return RestoreEngine(config, mysql=mysql or FakeMySQL(), runner=_runner, **kwargs)


def test_rewrite_only_touches_database_statements():
    assert rewrite_database_references(b"USE `alpha`;\n", "alpha", "beta") == b"USE `beta`;\n"
    assert (
        rewrite_database_references(b"CREATE DATABASE /*!32312 IF NOT EXISTS*/ `alpha` /*!40100 x */;\n", "alpha", "beta")
        == b"CREATE DATABASE /*!32312 IF NOT EXISTS*/ `beta` /*!40100 x */;\n"
    )
    data = b"INSERT INTO `t` VALUES (1,'USE `alpha`');\n"
    assert rewrite_database_references(data, "alpha", "beta") == data
    assert rewrite_database_references(b"USE `alphabet`;\n", "alpha", "beta") == b"USE `alphabet`;\n"


def test_restore_latest_dump_by_name(make_config, backup_dir):
    _write_dump(backup_dir, "alpha", TS1, b"INSERT INTO `t` VALUES (1,'old');\n")
    _write_dump(backup_dir, "alpha", TS2, b"INSERT INTO `t` VALUES (2,'new');\n")
    mysql = FakeMySQL()
    report = _engine(make_config(), mysql).restore("alpha")

    assert report.restored == ["alpha"]
    assert len(mysql.imports) == 1
    assert b"'new'" in mysql.imports[0]
    assert mysql.statements == [
        "CREATE DATABASE IF NOT EXISTS `alpha` CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci;"
    ]


def test_restore_into_new_name(make_config, backup_dir):
    _write_dump(backup_dir, "alpha", TS2, b"INSERT INTO `t` VALUES (1,'alpha');\n")
    mysql = FakeMySQL()
    report = _engine(make_config(), mysql).restore("alpha", new_name="beta")

    imported = mysql.imports[0]
    assert b"USE `beta`;" in imported
    assert b"`alpha`" not in imported
    assert b"(1,'alpha')" in imported
    assert "CREATE DATABASE IF NOT EXISTS `beta` CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci;" in mysql.statements
    assert report.restored == ["beta"]
    assert any("Renaming" in w for w in report.warnings)


def test_drop_first(make_config, backup_dir):
    path = _write_dump(backup_dir, "alpha", TS2)
    mysql = FakeMySQL()
    _engine(make_config(), mysql).restore(str(path), drop_first=True)
    assert mysql.statements[0] == "DROP DATABASE IF EXISTS `alpha`;"


def test_corrupt_dump_is_rejected_before_import(make_config, backup_dir):
    path = _write_dump(backup_dir, "alpha", TS2, b"x" * 5000)
    path.write_bytes(path.read_bytes()[:-20])
    mysql = FakeMySQL()
    with pytest.raises(RestoreError):
        _engine(make_config(), mysql).restore("alpha")
    assert mysql.imports == []
    assert mysql.statements == []


def test_unknown_subject(make_config):
    with pytest.raises(RestoreError):
        _engine(make_config()).restore("nope")


def test_restore_all_logical_uses_newest_dump_per_database(make_config, backup_dir):
    _write_dump(backup_dir, "alpha", TS1, b"-- first\n")
    _write_dump(backup_dir, "alpha", TS2, b"-- second\n")
    _write_dump(backup_dir, "beta", TS1)
    mysql = FakeMySQL()
    report = _engine(make_config(), mysql).restore(RESTORE_ALL)

    assert report.method == "logical"
    assert report.restored == ["alpha", "beta"]
    assert len(mysql.imports) == 2
    assert b"-- second" in mysql.imports[0]
    assert any("No physical backup found" in w for w in report.warnings)


def test_renamed_restore_replays_into_new_database(tmp_path, make_config, backup_dir, binlog_dir):
    tool = tmp_path / "mysqlbinlog"
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755)
    for name in ("binlog.000002", "binlog.000003"):
        (binlog_dir / name).write_bytes(b"\xfebin")
    _write_dump(backup_dir, "alpha", TS2)
    MetadataStore(backup_dir).write(
        BackupRecord(id=TS2, kind=BackupKind.FULL_LOGICAL, coordinate=LogCoordinate("binlog.000002", 157))
    )

    replayer = RecordingReplayer()
    stop = datetime(2025, 1, 15, 12, 0, 0)
    config = make_config(tools={"mysqlbinlog": str(tool)})
    report = _engine(config, replayer=replayer).restore("alpha", new_name="beta", stop_time=stop)

    assert [s.segment.name for s in replayer.steps] == ["binlog.000002", "binlog.000003"]
    first = replayer.steps[0]
    assert first.start_offset == 157
    assert first.database == "beta"
    assert first.rewrite_db == ("alpha", "beta")
    assert report.pitr.applied == ["binlog.000002", "binlog.000003"]


def _physical_archive(backup_dir, ts, full, to_lsn):
    prefix = "xtra-full" if full else "xtra-incr"
    work = backup_dir / f"{prefix}-{ts}"
    work.mkdir()
    (work / CHECKPOINTS_FILE).write_text(f"backup_type = full-backuped\nto_lsn = {to_lsn}\n")
    (work / "xtrabackup_binlog_info").write_text("binlog.000004\t789\n")
    target = package_backup(StreamPipeline("gzip"), work, backup_dir / f"{prefix}-{ts}.tar.gz")
    for path in sorted(work.iterdir()):
        path.unlink()
    work.rmdir()
    return target


def test_physical_restore_applies_incrementals(tmp_path, make_config, backup_dir):
    datadir = tmp_path / "datadir"
    datadir.mkdir()
    (datadir / "old-table.ibd").write_bytes(b"old")
    full = _physical_archive(backup_dir, TS1, True, 100)
    _physical_archive(backup_dir, TS2, False, 200)

    xtrabackup = FakeXtraBackup()
    services = FakeServices()
    report = _engine(make_config(), xtrabackup=xtrabackup, services=services).restore(str(full))

    assert report.method == "physical"
    assert report.restored == [full.name, f"xtra-incr-{TS2}.tar.gz"]
    assert xtrabackup.prepares == [(True, None), (False, "incr_0")]
    assert services.events == ["stop", "start"]
    assert (datadir / "ibdata1").read_bytes() == b"restored"
    assert (report.moved_datadir / "old-table.ibd").read_bytes() == b"old"
    assert not list(backup_dir.glob(".xtra_restore_*"))


@pytest.mark.parametrize(
    "error, expected",
    [
        (RestoreError("Copy-back failed"), RestoreError),
        (OSError(28, "No space left on device"), RestoreError),
        (KeyboardInterrupt(), KeyboardInterrupt),
    ],
)
def test_failed_copy_back_restores_original_datadir(tmp_path, make_config, backup_dir, error, expected):
    datadir = tmp_path / "datadir"
    datadir.mkdir()
    (datadir / "old-table.ibd").write_bytes(b"old")
    full = _physical_archive(backup_dir, TS1, True, 100)

    services = FakeServices()
    engine = _engine(make_config(), xtrabackup=FakeXtraBackup(copy_back_error=error), services=services)
    with pytest.raises(expected):
        engine.restore(str(full))

    assert (datadir / "old-table.ibd").read_bytes() == b"old"
    assert services.events == ["stop", "start"]
    assert not list(tmp_path.glob("datadir.backup.*"))
    assert sorted(p.name for p in datadir.iterdir()) == ["old-table.ibd"]


def test_datadir_move_failure_restarts_service(tmp_path, make_config, backup_dir):
    full = _physical_archive(backup_dir, TS1, True, 100)
    services = FakeServices()
    xtrabackup = FakeXtraBackup()

    with pytest.raises(RestoreError):
        _engine(make_config(), xtrabackup=xtrabackup, services=services).restore(str(full))

    assert services.events == ["stop", "start"]
    assert not (tmp_path / "datadir").exists()
    assert not list(tmp_path.glob("datadir.backup.*"))


def test_verify(make_config, backup_dir):
    good = _write_dump(backup_dir, "alpha", TS2)
    checksum.compute(good)
    unchecked = _write_dump(backup_dir, "beta", TS2)
    truncated = _write_dump(backup_dir, "gamma", TS2, b"y" * 5000)
    truncated.write_bytes(truncated.read_bytes()[:-30])
    MetadataStore(backup_dir).write(BackupRecord(id=TS2, kind=BackupKind.FULL_LOGICAL))

    report = _engine(make_config()).verify()

    assert sorted(report.ok) == [good.name, unchecked.name]
    assert [name for name, _ in report.bad] == [truncated.name]
    assert not report.passed
    assert any(unchecked.name in w and "no checksum" in w for w in report.warnings)


def test_verify_checksum_mismatch(make_config, backup_dir):
    path = _write_dump(backup_dir, "alpha", TS2)
    checksum.compute(path)
    path.write_bytes(encode_bytes(make_dump("alpha", b"-- changed\n"), "gzip"))

    report = _engine(make_config()).verify()
    assert report.bad == [(path.name, "checksum mismatch")]
