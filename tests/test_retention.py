"""Retention: per-subject minimum keep, age-only pruning and orphaned metadata."""

from datetime import datetime, timedelta

from dbtools.core.metadata import TIMESTAMP_FORMAT
from dbtools.utils import checksum
from dbtools.utils.retention_manager import RetentionManager

NOW = datetime(2025, 2, 1, 12, 0, 0)


def _ts(days_ago: int) -> str:
    return (NOW - timedelta(days=days_ago)).strftime(TIMESTAMP_FORMAT)


def _touch(backup_dir, name: str, content: bytes = b"data") -> None:
    (backup_dir / name).write_bytes(content)


def _populate(backup_dir):
    for days in (1, 10, 20, 30):
        _touch(backup_dir, f"alpha-{_ts(days)}.sql.gz")
        _touch(backup_dir, f"backup-{_ts(days)}.meta", b"kind=full-logical\n")
    # Only two beta dumps, both old: both protected by the minimum keep
    _touch(backup_dir, f"beta-{_ts(20)}.sql.gz")
    _touch(backup_dir, f"beta-{_ts(30)}.sql.gz")
    _touch(backup_dir, f"incremental-{_ts(2)}.binlog.gz")
    _touch(backup_dir, f"incremental-{_ts(15)}.binlog.gz")
    _touch(backup_dir, f"binlog-index-{_ts(30)}.txt")
    _touch(backup_dir, f"backup-{_ts(40)}.meta", b"kind=full-logical\n")
    checksum.compute(backup_dir / f"alpha-{_ts(30)}.sql.gz")


def test_plan_honours_minimum_keep_and_age(backup_dir):
    _populate(backup_dir)
    plan = RetentionManager(backup_dir, days=7, keep_min=2).plan_cleanup(NOW)

    assert sorted(plan.names) == sorted(
        [
            f"alpha-{_ts(20)}.sql.gz",
            f"alpha-{_ts(30)}.sql.gz",
            f"alpha-{_ts(30)}.sql.gz.sha256",
            f"incremental-{_ts(15)}.binlog.gz",
            f"binlog-index-{_ts(30)}.txt",
            f"backup-{_ts(40)}.meta",
        ]
    )
    for kept in (f"alpha-{_ts(1)}.sql.gz", f"alpha-{_ts(10)}.sql.gz", f"beta-{_ts(20)}.sql.gz", f"beta-{_ts(30)}.sql.gz"):
        assert kept not in plan.names


def test_metadata_kept_while_any_artifact_shares_its_timestamp(backup_dir):
    _populate(backup_dir)
    plan = RetentionManager(backup_dir, days=7, keep_min=2).plan_cleanup(NOW)
    # beta dumps from 20 and 30 days ago survive, so their sidecars stay
    assert f"backup-{_ts(20)}.meta" not in plan.names
    assert f"backup-{_ts(30)}.meta" not in plan.names


def test_dry_run_lists_exactly_what_a_real_run_deletes(backup_dir):
    _populate(backup_dir)
    manager = RetentionManager(backup_dir, days=7, keep_min=2)
    before = sorted(p.name for p in backup_dir.iterdir())

    dry = manager.cleanup(dry_run=True, now=NOW)
    assert sorted(p.name for p in backup_dir.iterdir()) == before
    assert dry.deleted == []

    real = manager.cleanup(dry_run=False, now=NOW)
    assert sorted(real.deleted) == sorted(dry.planned)
    assert dry.count == real.count
    for name in real.deleted:
        assert not (backup_dir / name).exists()


def test_cleanup_is_idempotent(backup_dir):
    _populate(backup_dir)
    manager = RetentionManager(backup_dir, days=7, keep_min=2)
    manager.cleanup(now=NOW)
    assert manager.cleanup(now=NOW).count == 0


def test_missing_backup_dir_is_empty_plan(tmp_path):
    plan = RetentionManager(tmp_path / "nope", days=7).plan_cleanup(NOW)
    assert plan.deletions == []
