"""Point-in-time recovery planning and replay sequencing."""

from datetime import datetime
from pathlib import Path

import pytest

from dbtools.core.exceptions import InvalidBoundary, SegmentNotFound
from dbtools.core.metadata import BackupKind, BackupRecord, LogCoordinate
from dbtools.core.pitr import (
    BinlogCatalog,
    PITRCursor,
    PITREngine,
    parse_event_time,
    parse_stop_position,
    parse_stop_time,
    plan_replay,
)


class FakeReplayer:
    """Records replayed steps; segment start times and failures are preset"""

    def __init__(self, first_events=None, failing=()):
        self.first_events = first_events or {}
        self.failing = set(failing)
        self.steps = []
        self.peeks = []

    def replay(self, step):
        self.steps.append(step)
        if step.segment.name in self.failing:
            return False, "stop-datetime reached inside transaction"
        return True, ""

    def first_event_time(self, segment):
        self.peeks.append(segment.name)
        return self.first_events.get(segment.name)


@pytest.fixture
def segments(binlog_dir):
    paths = []
    for n in (1, 2, 3):
        path = binlog_dir / f"log.00000{n}"
        path.write_bytes(b"\xfebin")
        paths.append(path)
    return paths


def test_parse_stop_time():
    assert parse_stop_time("2025-01-15 10:30:00") == datetime(2025, 1, 15, 10, 30, 0)
    assert parse_stop_time(None) is None
    for bad in ("2025-01-15", "15/01/2025 10:30", "2025-13-01 00:00:00"):
        with pytest.raises(InvalidBoundary):
            parse_stop_time(bad)


def test_parse_stop_position():
    assert parse_stop_position("1234") == 1234
    assert parse_stop_position(None) is None
    with pytest.raises(InvalidBoundary):
        parse_stop_position("-5")
    with pytest.raises(InvalidBoundary):
        parse_stop_position("abc")


def test_parse_event_time_handles_padded_hours():
    assert parse_event_time("#250115  9:05:01 server id 1  end_log_pos 123 CRC32") == datetime(2025, 1, 15, 9, 5, 1)
    assert parse_event_time("# at 4") is None


def test_plan_offsets_on_first_and_last_step(segments):
    cursor = PITRCursor("log.000001", start_offset=157, stop_offset=900)
    steps = plan_replay(cursor, segments)

    assert [s.segment.name for s in steps] == ["log.000001", "log.000002", "log.000003"]
    assert [s.start_offset for s in steps] == [157, None, None]
    assert [s.stop_offset for s in steps] == [None, None, 900]


def test_plan_starts_mid_sequence(segments):
    steps = plan_replay(PITRCursor("log.000002", start_offset=4), segments)
    assert [s.segment.name for s in steps] == ["log.000002", "log.000003"]
    assert steps[0].start_offset == 4


def test_plan_missing_start_segment(segments):
    with pytest.raises(SegmentNotFound):
        plan_replay(PITRCursor("log.000009"), segments)


def test_mysqlbinlog_args_for_renamed_database(segments):
    cursor = PITRCursor(
        "log.000001",
        start_offset=157,
        stop_time=datetime(2025, 1, 15, 10, 30),
        database="beta",
        rewrite_db=("alpha", "beta"),
    )
    step = plan_replay(cursor, segments)[0]
    assert step.mysqlbinlog_args() == [
        "--rewrite-db=alpha->beta",
        "--database=beta",
        "--start-position=157",
        "--stop-datetime=2025-01-15 10:30:00",
        str(segments[0]),
    ]


def test_cursor_from_record():
    record = BackupRecord(id="2025-01-15-10-00-00", kind=BackupKind.FULL_LOGICAL, coordinate=LogCoordinate("log.000001", 157))
    cursor = PITRCursor.from_record(record, stop_offset=10)
    assert (cursor.start_file, cursor.start_offset, cursor.stop_offset) == ("log.000001", 157, 10)
    assert PITRCursor.from_record(BackupRecord(id="x", kind=BackupKind.FULL_LOGICAL)) is None


def test_stops_before_segment_starting_after_stop_time(segments):
    replayer = FakeReplayer(
        first_events={
            "log.000002": datetime(2025, 1, 15, 10, 0, 0),
            "log.000003": datetime(2025, 1, 15, 11, 0, 0),
        }
    )
    cursor = PITRCursor("log.000001", start_offset=157, stop_time=datetime(2025, 1, 15, 10, 30, 0))
    outcome = PITREngine(replayer).run(cursor, segments)

    assert outcome.applied == ["log.000001", "log.000002"]
    assert outcome.skipped == ["log.000003"]
    assert outcome.state == "complete"
    assert all(s.stop_time == cursor.stop_time for s in replayer.steps)


def test_error_at_time_boundary_ends_replay_normally(segments):
    replayer = FakeReplayer(
        first_events={"log.000003": datetime(2025, 1, 15, 11, 0, 0)},
        failing={"log.000002"},
    )
    cursor = PITRCursor("log.000001", stop_time=datetime(2025, 1, 15, 10, 30, 0))
    outcome = PITREngine(replayer).run(cursor, segments)

    assert outcome.applied == ["log.000001", "log.000002"]
    assert outcome.warnings == []
    assert outcome.stop_reason == "stop time reached"


def test_other_errors_warn_and_continue(segments):
    replayer = FakeReplayer(failing={"log.000002"})
    outcome = PITREngine(replayer).run(PITRCursor("log.000001"), segments)

    assert outcome.applied == ["log.000001", "log.000003"]
    assert len(outcome.warnings) == 1
    assert "log.000002" in outcome.warnings[0]
    assert outcome.state == "complete"


def test_catalog_prefers_index_and_falls_back_to_scan(binlog_dir, segments):
    catalog = BinlogCatalog(binlog_dir)
    (binlog_dir / "other.000001").write_bytes(b"")
    assert [p.name for p in catalog.segments("log.000001")] == ["log.000001", "log.000002", "log.000003"]

    (binlog_dir / "binlog.index").write_text("./log.000002\n./log.000003\n./log.000004\n")
    assert [p.name for p in catalog.segments()] == ["log.000002", "log.000003"]

    target = Path(binlog_dir) / "snapshot.txt"
    assert catalog.snapshot_index(target)
    assert target.read_text() == "log.000002\nlog.000003\n"


def test_replay_from_middle_segment_stops_before_late_segment(segments):
    replayer = FakeReplayer(first_events={"log.000003": datetime(2025, 1, 15, 10, 45, 0)})
    cursor = PITRCursor("log.000002", start_offset=4, stop_time=parse_stop_time("2025-01-15 10:30:00"))
    outcome = PITREngine(replayer).run(cursor, segments)

    assert [s.segment.name for s in replayer.steps] == ["log.000002"]
    assert replayer.steps[0].start_offset == 4
    assert replayer.steps[0].stop_time == datetime(2025, 1, 15, 10, 30, 0)
    assert outcome.applied == ["log.000002"]
    assert outcome.skipped == ["log.000003"]
    assert outcome.stop_reason == "next segment starts after stop time"


def test_each_next_segment_is_peeked_once(segments):
    replayer = FakeReplayer(
        first_events={
            "log.000002": datetime(2025, 1, 15, 10, 0, 0),
            "log.000003": datetime(2025, 1, 15, 10, 10, 0),
        },
        failing={"log.000001"},
    )
    cursor = PITRCursor("log.000001", stop_time=datetime(2025, 1, 15, 10, 30, 0))
    outcome = PITREngine(replayer).run(cursor, segments)

    assert replayer.peeks == ["log.000002", "log.000003"]
    assert outcome.applied == ["log.000002", "log.000003"]
    assert len(outcome.warnings) == 1
    assert outcome.stop_reason == "all segments replayed"
