"""Backup records, artifact names and the metadata store."""

from datetime import datetime

import pytest

from dbtools.core.metadata import (
    BackupKind,
    BackupRecord,
    LogCoordinate,
    MetadataStore,
    parse_artifact,
)


def test_record_round_trips_through_sidecar_text():
    record = BackupRecord(
        id="2025-01-15-10-00-00",
        kind=BackupKind.FULL_LOGICAL,
        coordinate=LogCoordinate("binlog.000002", 4, "uuid:1-5"),
        server_version="8.0.36",
        compression="zstd",
        encrypted=True,
        artifacts=["alpha-2025-01-15-10-00-00.sql.zst.enc"],
    )
    parsed = BackupRecord.from_meta(record.to_meta())
    assert parsed == record


def test_legacy_sidecar_is_parsed_not_executed():
    text = (
        "timestamp=2025-01-15-10-00-00\n"
        "backup_type=xtrabackup-incremental\n"
        "binlog_file=binlog.000007\n"
        "binlog_pos=1234\n"
        "base_backup=xtra-full-2025-01-14-10-00-00\n"
        "to_lsn=99999\n"
        "rm_rf=$(rm -rf /)\n"
    )
    record = BackupRecord.from_meta(text)
    assert record.kind is BackupKind.INCREMENTAL_PHYSICAL
    assert record.coordinate == LogCoordinate("binlog.000007", 1234)
    assert record.base_id == "2025-01-14-10-00-00"
    assert record.to_lsn == "99999"


def test_sidecar_without_kind_is_rejected():
    with pytest.raises(ValueError):
        BackupRecord.from_meta("timestamp=2025-01-15-10-00-00\n")


@pytest.mark.parametrize(
    "name, category, subject",
    [
        ("alpha-2025-01-15-10-00-00.sql.gz", "dump", "alpha"),
        ("my-shop-2025-01-15-10-00-00.sql.zst.enc", "dump", "my-shop"),
        ("incremental-2025-01-15-10-00-00.binlog.xz", "binlog", "binlog"),
        ("xtra-full-2025-01-15-10-00-00.tar.gz", "physical-full", "xtra-full"),
        ("xtra-incr-2025-01-15-10-00-00.tar.enc", "physical-incr", "xtra-incr"),
        ("binlog-index-2025-01-15-10-00-00.txt", "binlog-index", "binlog-index"),
    ],
)
def test_parse_artifact(tmp_path, name, category, subject):
    info = parse_artifact(tmp_path / name)
    assert info is not None
    assert (info.category, info.subject, info.timestamp) == (category, subject, "2025-01-15-10-00-00")


@pytest.mark.parametrize("name", ["notes.txt", "alpha.sql.gz", "alpha-2025-01-15-10-00-00.sql.gz.sha256"])
def test_non_artifacts_are_ignored(tmp_path, name):
    assert parse_artifact(tmp_path / name) is None


def test_ids_are_unique_within_a_second(backup_dir):
    store = MetadataStore(backup_dir)
    now = datetime(2025, 1, 15, 10, 0, 0)
    first = store.reserve_id(now)
    second = store.reserve_id(now)
    assert first == "2025-01-15-10-00-00"
    assert second == "2025-01-15-10-00-01"


def test_latest_and_chain(backup_dir):
    store = MetadataStore(backup_dir)
    store.write(BackupRecord(id="2025-01-10-00-00-00", kind=BackupKind.FULL_PHYSICAL))
    store.write(BackupRecord(id="2025-01-11-00-00-00", kind=BackupKind.INCREMENTAL_PHYSICAL, base_id="2025-01-10-00-00-00"))
    store.write(BackupRecord(id="2025-01-12-00-00-00", kind=BackupKind.INCREMENTAL_PHYSICAL, base_id="2025-01-11-00-00-00"))
    store.write(BackupRecord(id="2025-01-13-00-00-00", kind=BackupKind.FULL_LOGICAL))

    assert store.latest().id == "2025-01-13-00-00-00"
    assert store.latest(method="physical").id == "2025-01-12-00-00-00"
    assert store.latest_full("physical").id == "2025-01-10-00-00-00"
    assert [r.id for r in store.chain_for("2025-01-10-00-00-00")] == ["2025-01-11-00-00-00", "2025-01-12-00-00-00"]
    assert store.latest_full("logical").id == "2025-01-13-00-00-00"
