"""Point-in-time recovery: replay binary log segments up to a boundary

Replay is planned first as a list of ``ReplayStep`` values (pure), then
executed segment by segment through a replayer (``mysqlbinlog | mysql`` in
production, a fake in tests).
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .config_manager import ConfigManager
from .exceptions import InvalidBoundary, MySQLError, SegmentNotFound
from .metadata import BackupRecord
from .mysql_client import MySQLClient, require_tool, wait_import

STOP_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
SEGMENT_PATTERN = re.compile(r"^(?P<base>.+)\.(?P<seq>\d{6})$")
# '#250115 10:30:00 server id 1  end_log_pos 123 ...' (hour may be space padded)
EVENT_HEADER_PATTERN = re.compile(r"^#(?P<date>\d{6})\s+(?P<h>\d{1,2}):(?P<m>\d{2}):(?P<s>\d{2})")
PEEK_LINE_LIMIT = 500


def parse_stop_time(value: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DD HH:MM:SS``; anything else is an InvalidBoundary"""
    if value is None or value == "":
        return None
    try:
        return datetime.strptime(value.strip(), STOP_TIME_FORMAT)
    except ValueError:
        raise InvalidBoundary(f"Invalid stop time: {value!r} (expected: YYYY-MM-DD HH:MM:SS)") from None


def parse_stop_position(value: str | int | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        position = int(value)
    except (TypeError, ValueError):
        raise InvalidBoundary(f"Invalid stop position: {value!r} (expected a non-negative integer)") from None
    if position < 0:
        raise InvalidBoundary(f"Invalid stop position: {value!r} (expected a non-negative integer)")
    return position


def parse_event_time(line: str) -> datetime | None:
    match = EVENT_HEADER_PATTERN.match(line)
    if not match:
        return None
    stamp = f"{match['date']} {int(match['h']):02d}:{match['m']}:{match['s']}"
    try:
        return datetime.strptime(stamp, "%y%m%d %H:%M:%S")
    except ValueError:
        return None


@dataclass(frozen=True)
class PITRCursor:
    start_file: str
    start_offset: int | None = None
    stop_time: datetime | None = None
    stop_offset: int | None = None
    database: str | None = None
    # (source, target) when events are replayed into a renamed database
    rewrite_db: tuple[str, str] | None = None

    @classmethod
    def from_record(
        cls,
        record: BackupRecord,
        stop_time: datetime | None = None,
        stop_offset: int | None = None,
        database: str | None = None,
        rewrite_db: tuple[str, str] | None = None,
    ) -> "PITRCursor | None":
        """Cursor starting at the record's log coordinate; None when it has none"""
        if record.coordinate is None:
            return None
        return cls(record.coordinate.file, record.coordinate.position, stop_time, stop_offset, database, rewrite_db)


@dataclass(frozen=True)
class ReplayStep:
    segment: Path
    start_offset: int | None = None
    stop_time: datetime | None = None
    stop_offset: int | None = None
    database: str | None = None
    rewrite_db: tuple[str, str] | None = None

    def mysqlbinlog_args(self) -> list[str]:
        args = []
        if self.rewrite_db:
            args.append(f"--rewrite-db={self.rewrite_db[0]}->{self.rewrite_db[1]}")
        if self.database:
            args.append(f"--database={self.database}")
        if self.start_offset is not None:
            args.append(f"--start-position={self.start_offset}")
        if self.stop_time is not None:
            args.append(f"--stop-datetime={self.stop_time.strftime(STOP_TIME_FORMAT)}")
        if self.stop_offset is not None:
            args.append(f"--stop-position={self.stop_offset}")
        args.append(str(self.segment))
        return args


def plan_replay(cursor: PITRCursor, segments: list[Path]) -> list[ReplayStep]:
    """Steps from the cursor's start segment to the last available segment"""
    names = [s.name for s in segments]
    try:
        start = names.index(cursor.start_file)
    except ValueError:
        raise SegmentNotFound(f"Starting binlog not found: {cursor.start_file}", {"available": names}) from None

    last = len(segments) - 1
    return [
        ReplayStep(
            segment=segments[i],
            start_offset=cursor.start_offset if i == start else None,
            stop_time=cursor.stop_time,
            stop_offset=cursor.stop_offset if i == last else None,
            database=cursor.database,
            rewrite_db=cursor.rewrite_db,
        )
        for i in range(start, len(segments))
    ]


class BinlogCatalog:
    """Ordered binary log segments: the index file when readable, else a directory scan"""

    def __init__(self, binlog_dir: Path, index_name: str = "binlog.index"):
        self.binlog_dir = Path(binlog_dir)
        self.index_name = index_name
        self.logger = logging.getLogger("PITREngine")

    @classmethod
    def from_config(cls, config: ConfigManager) -> "BinlogCatalog":
        return cls(
            Path(config.get_setting("mysql.binlog_dir", "/var/lib/mysql")),
            config.get_setting("mysql.binlog_index", "binlog.index"),
        )

    def _from_index(self) -> list[Path] | None:
        index = self.binlog_dir / self.index_name
        try:
            lines = index.read_text().splitlines()
        except OSError:
            return None
        segments = []
        for line in lines:
            entry = line.strip().strip('"')
            if not entry:
                continue
            # Entries may be absolute, or relative ('./binlog.000001') to the datadir
            path = self.binlog_dir / Path(entry).name
            if path.is_file():
                segments.append(path)
        return segments

    def _from_scan(self, basename: str | None) -> list[Path]:
        found = []
        if not self.binlog_dir.is_dir():
            return found
        for path in self.binlog_dir.iterdir():
            match = SEGMENT_PATTERN.match(path.name)
            if not match or not path.is_file():
                continue
            if basename and match["base"] != basename:
                continue
            found.append((int(match["seq"]), path))
        return [path for _, path in sorted(found)]

    def segments(self, start_file: str | None = None) -> list[Path]:
        indexed = self._from_index()
        if indexed:
            return indexed
        basename = None
        if start_file:
            match = SEGMENT_PATTERN.match(start_file)
            basename = match["base"] if match else None
        return self._from_scan(basename)

    def snapshot_index(self, target: Path) -> bool:
        """Copy the list of segment names into ``target`` (binlog-index-{ts}.txt)"""
        segments = self.segments()
        if not segments:
            return False
        target.write_text("".join(f"{s.name}\n" for s in segments))
        return True


class Replayer(Protocol):
    def replay(self, step: ReplayStep) -> tuple[bool, str]: ...

    def first_event_time(self, segment: Path) -> datetime | None: ...


class MysqlBinlogReplayer:
    """``mysqlbinlog <step> | mysql``"""

    def __init__(self, config: ConfigManager, mysql: MySQLClient, popen=subprocess.Popen):
        self.config = config
        self.mysql = mysql
        self.popen = popen
        self.logger = logging.getLogger("PITREngine")

    @property
    def mysqlbinlog(self) -> str:
        return require_tool("mysqlbinlog", self.config.get_setting("tools.mysqlbinlog"))

    def replay(self, step: ReplayStep) -> tuple[bool, str]:
        producer = self.popen(
            [self.mysqlbinlog, *step.mysqlbinlog_args()], stdout=subprocess.PIPE, stderr=subprocess.PIPE
        )
        try:
            consumer = self.mysql.open_import(stdin=producer.stdout)
        except BaseException:
            producer.kill()
            producer.wait()
            raise
        # Let mysqlbinlog see SIGPIPE if mysql exits early
        if producer.stdout is not None:
            producer.stdout.close()

        try:
            wait_import(consumer, self.config.get_timeout("mysqlbinlog"), f"Replay of {step.segment.name}")
        except MySQLError as e:
            producer.kill()
            producer.wait()
            return False, str(e)

        producer_err = producer.stderr.read().decode("utf-8", "replace").strip() if producer.stderr else ""
        if producer.wait() != 0:
            return False, f"mysqlbinlog failed on {step.segment.name}: {producer_err}"
        return True, ""

    def first_event_time(self, segment: Path) -> datetime | None:
        """Timestamp of the first event in a segment, from mysqlbinlog's text output"""
        proc = self.popen(
            [self.mysqlbinlog, "--start-position=4", str(segment)],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
        )
        try:
            assert proc.stdout is not None
            for number, line in enumerate(proc.stdout):
                if number >= PEEK_LINE_LIMIT:
                    break
                stamp = parse_event_time(line)
                if stamp is not None:
                    return stamp
            return None
        finally:
            proc.kill()
            proc.wait()


@dataclass
class ReplayOutcome:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stop_reason: str = ""
    state: str = "complete"


class PITREngine:
    """Sequences binlog replay from a cursor to its stop boundary.

    The terminal state is always complete: a segment error under a stop time
    that the next segment shows was reached ends replay normally, any other
    segment error becomes a warning and replay moves on.
    """

    def __init__(self, replayer: Replayer):
        self.replayer = replayer
        self.logger = logging.getLogger("PITREngine")

    def _next_starts_after(self, step: ReplayStep | None, stop_time: datetime) -> bool:
        if step is None:
            return True
        first = self.replayer.first_event_time(step.segment)
        return first is not None and first > stop_time

    def run(self, cursor: PITRCursor, segments: list[Path]) -> ReplayOutcome:
        steps = plan_replay(cursor, segments)
        outcome = ReplayOutcome()

        self.logger.info(f"Applying PITR from {cursor.start_file} ({len(steps)} segment(s))")
        if cursor.database:
            self.logger.info(f"Database filter: {cursor.database}")
        if cursor.stop_time:
            self.logger.info(f"Until time: {cursor.stop_time.strftime(STOP_TIME_FORMAT)}")
        if cursor.stop_offset is not None:
            self.logger.info(f"End position: {cursor.stop_offset}")

        for i, step in enumerate(steps):
            next_step = steps[i + 1] if i + 1 < len(steps) else None
            self.logger.info(f"Processing binlog: {step.segment.name}")

            ok, message = self.replayer.replay(step)
            past_boundary = cursor.stop_time is not None and self._next_starts_after(next_step, cursor.stop_time)
            if ok:
                outcome.applied.append(step.segment.name)
            elif past_boundary:
                self.logger.debug(f"Replay of {step.segment.name} stopped at the time boundary: {message}")
                outcome.applied.append(step.segment.name)
                outcome.skipped = [s.segment.name for s in steps[i + 1 :]]
                outcome.stop_reason = "stop time reached"
                break
            else:
                warning = f"Binlog replay error for {step.segment.name}: {message}"
                self.logger.warning(warning)
                outcome.warnings.append(warning)

            if past_boundary and next_step is not None:
                self.logger.info("Next binlog starts after target time, stopping")
                outcome.skipped = [s.segment.name for s in steps[i + 1 :]]
                outcome.stop_reason = "next segment starts after stop time"
                break
        else:
            outcome.stop_reason = "all segments replayed"

        self.logger.info(f"PITR replay complete: {len(outcome.applied)} applied, {len(outcome.warnings)} warning(s)")
        return outcome
