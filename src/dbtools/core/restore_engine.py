"""Restore orchestrator: physical chains, logical dumps, binlog exports and PITR"""

import logging
import os
import re
import shutil
import subprocess
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..utils import checksum
from ..utils.checksum import ChecksumStatus
from ..utils.lock import InstanceLock
from ..utils.notifications import NotificationManager
from .config_manager import ConfigManager
from .exceptions import DBToolsError, MySQLError, PipelineError, RestoreError, SegmentNotFound, ServerControlError
from .metadata import (
    TIMESTAMP_PATTERN,
    ArtifactInfo,
    BackupKind,
    MetadataStore,
    parse_artifact,
)
from .mysql_client import MySQLClient, find_tool, quote_identifier, wait_import
from .pipeline import StreamPipeline, iter_chunks, iter_lines
from .pitr import BinlogCatalog, MysqlBinlogReplayer, PITRCursor, PITREngine, Replayer, ReplayOutcome
from .xtrabackup import (
    BINLOG_INFO_FILE,
    ServiceController,
    XtraBackup,
    archive_has_checkpoints,
    extract_archive,
    is_tool_compressed,
    parse_binlog_info,
)

RESTORE_ALL = "ALL"
SOURCE_SCAN_LINES = 200
_USE_PATTERN = re.compile(rb"^USE `((?:[^`]|``)+)`")


def rewrite_database_references(line: bytes, source: str, target: str) -> bytes:
    """Point CREATE DATABASE / USE statements for ``source`` at ``target``

    Only lines that start with those statements are touched, so data that
    happens to contain the source name passes through unchanged.
    """
    if not line.startswith((b"CREATE DATABASE", b"USE ")):
        return line
    src = re.escape(quote_identifier(source).encode("utf-8"))
    dst = quote_identifier(target).encode("utf-8")
    if line.startswith(b"USE "):
        return re.sub(rb"^USE " + src, lambda m: b"USE " + dst, line, count=1)
    return re.sub(rb"^(CREATE DATABASE[^;]*?)" + src, lambda m: m.group(1) + dst, line, count=1)


@dataclass
class RestoreReport:
    target: str
    method: str = ""
    restored: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    pitr: ReplayOutcome | None = None
    moved_datadir: Path | None = None
    duration: float = 0.0

    def warn(self, logger: logging.Logger, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


@dataclass
class VerifyReport:
    ok: list[str] = field(default_factory=list)
    bad: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.bad

    @property
    def checked(self) -> int:
        return len(self.ok) + len(self.bad)


class RestoreEngine:
    """Restores a subject, every database (ALL) or a single artifact path"""

    def __init__(
        self,
        config: ConfigManager,
        mysql: MySQLClient | None = None,
        xtrabackup: XtraBackup | None = None,
        pipeline: StreamPipeline | None = None,
        replayer: Replayer | None = None,
        services: ServiceController | None = None,
        notifier: NotificationManager | None = None,
        lock: InstanceLock | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.config = config
        self.backup_dir = config.backup_dir
        self.mysql = mysql or MySQLClient(config)
        self.xtrabackup = xtrabackup or XtraBackup(config, self.mysql)
        self.pipeline = pipeline or StreamPipeline.from_config(config)
        self.replayer = replayer or MysqlBinlogReplayer(config, self.mysql)
        self.services = services or ServiceController(config.get_setting("mysql.service_names", ["mysql"]), runner)
        self.notifier = notifier
        self.lock = lock
        self.runner = runner
        self.store = MetadataStore(self.backup_dir)
        self.catalog = BinlogCatalog.from_config(config)
        self.logger = logging.getLogger("RestoreEngine")

    # ---------------------------------------------------------------- targets

    def restore(
        self,
        target: str,
        new_name: str | None = None,
        stop_time: datetime | None = None,
        stop_offset: int | None = None,
        drop_first: bool | None = None,
    ) -> RestoreReport:
        """Restore ``target``: ALL, a database name, or a path to an artifact"""
        if drop_first is None:
            drop_first = bool(self.config.get_setting("restore.drop_first", False))
        report = RestoreReport(target=target)
        started = time.monotonic()

        if stop_time is not None:
            self.logger.info(f"PITR target time: {stop_time}")
        if stop_offset is not None:
            self.logger.info(f"PITR end position: {stop_offset}")

        with ExitStack() as stack:
            if self.lock is not None:
                self.lock.acquire(timeout=float(self.config.get_setting("lock.timeout", 300)))
                stack.callback(self.lock.release)
            stack.enter_context(self.mysql)

            try:
                path = Path(target)
                if target != RESTORE_ALL and path.is_file():
                    self._restore_path(path, new_name, stop_time, stop_offset, drop_first, report)
                elif target == RESTORE_ALL:
                    if new_name:
                        raise RestoreError("A target database name cannot be combined with ALL")
                    self._restore_all(stop_time, stop_offset, report)
                else:
                    dump = self._latest_dump(target)
                    self._restore_dump(dump, new_name, drop_first, stop_time, stop_offset, report)
            except DBToolsError as e:
                self.logger.error(f"Restore failed: {e}")
                if self.notifier:
                    self.notifier.notify_failure("Restore", str(e))
                raise

        report.duration = round(time.monotonic() - started, 1)
        self.logger.info(f"✅ Restore complete: {', '.join(report.restored) or target}")
        if self.notifier:
            self.notifier.notify(
                "Restore completed", f"Restored: {', '.join(report.restored)} in {report.duration:.0f}s", "info"
            )
        return report

    def detect_kind(self, path: Path) -> BackupKind:
        """Metadata kind tag first, then archive structure, then the file name"""
        info = parse_artifact(path)
        if info is not None and self.store.meta_path(info.timestamp).exists():
            record = self.store.load(info.timestamp)
            if record is not None:
                return record.kind

        if ".tar" in path.name and archive_has_checkpoints(self.pipeline, path):
            full = not path.name.startswith("xtra-incr-")
            return BackupKind.FULL_PHYSICAL if full else BackupKind.INCREMENTAL_PHYSICAL

        if path.name.startswith("xtra-incr-"):
            return BackupKind.INCREMENTAL_PHYSICAL
        if path.name.startswith("xtra-full-"):
            return BackupKind.FULL_PHYSICAL
        if ".binlog." in path.name:
            return BackupKind.INCREMENTAL_LOGICAL
        return BackupKind.FULL_LOGICAL

    def _restore_path(
        self,
        path: Path,
        new_name: str | None,
        stop_time: datetime | None,
        stop_offset: int | None,
        drop_first: bool,
        report: RestoreReport,
    ) -> None:
        kind = self.detect_kind(path)
        self.logger.info(f"Restoring from file: {path.name} ({kind.value})")
        if kind.method == "physical":
            if new_name:
                report.warn(self.logger, "Target database name ignored for a physical restore")
            self._restore_physical(path, kind, stop_time, stop_offset, report)
        elif kind is BackupKind.INCREMENTAL_LOGICAL:
            self._restore_binlog_export(path, report)
        else:
            self._restore_dump(path, new_name, drop_first, stop_time, stop_offset, report)

    def _restore_all(self, stop_time: datetime | None, stop_offset: int | None, report: RestoreReport) -> None:
        fulls = [a for a in self.store.artifacts() if a.category == "physical-full"]
        if fulls and self.xtrabackup.available():
            latest = fulls[-1]
            self.logger.info(f"Found XtraBackup: {latest.path.name}")
            self._restore_physical(latest.path, BackupKind.FULL_PHYSICAL, stop_time, stop_offset, report)
            return

        if fulls:
            report.warn(self.logger, f"Physical backup {fulls[-1].path.name} found but no xtrabackup/mariabackup "
                        "binary is available; restoring from logical dumps instead")
        else:
            report.warn(self.logger, "No physical backup found; restoring every database from its latest logical dump")

        newest: dict[str, ArtifactInfo] = {}
        for artifact in self.store.artifacts():
            if artifact.category == "dump":
                newest[artifact.subject] = artifact
        if not newest:
            raise RestoreError("No backups found")

        report.method = "logical"
        self.logger.info(f"Restoring ALL databases ({len(newest)})")
        for subject in sorted(newest):
            path = newest[subject].path
            self._check_restorable(path, report)
            self.logger.info(f"Restoring: {path.name}")
            self._import(path)
            report.restored.append(subject)

        if stop_time is not None or stop_offset is not None:
            record_ids = sorted({a.timestamp for a in newest.values()})
            if len(record_ids) > 1:
                report.warn(self.logger, f"Dumps come from {len(record_ids)} backup runs; replaying from the newest")
            self._replay_logical(record_ids[-1], None, None, stop_time, stop_offset, report)

    # ---------------------------------------------------------------- logical

    def _latest_dump(self, subject: str) -> Path:
        dumps = [a for a in self.store.artifacts() if a.category == "dump" and a.subject == subject]
        if not dumps:
            raise RestoreError(f"No backups found for: {subject}")
        return dumps[-1].path

    def _check_restorable(self, path: Path, report: RestoreReport) -> None:
        """Advisory checksum, then a full decode; corruption is fatal"""
        status = checksum.verify(path)
        if status is ChecksumStatus.MISMATCH:
            report.warn(self.logger, f"Checksum verification failed: {path.name}")
        elif status is ChecksumStatus.NO_CHECKSUM:
            self.logger.debug(f"No checksum recorded for {path.name}")
        try:
            self.pipeline.check_integrity(path)
        except PipelineError as e:
            raise RestoreError(f"Backup file appears corrupt: {path.name}", {"error": str(e)}) from e

    def _source_database(self, path: Path) -> str:
        info = parse_artifact(path)
        if info is not None and info.category == "dump":
            return info.subject
        with self.pipeline.decoder(path) as reader:
            for number, line in enumerate(iter_lines(reader, 64 * 1024)):
                if number >= SOURCE_SCAN_LINES:
                    break
                match = _USE_PATTERN.match(line)
                if match:
                    return match.group(1).decode("utf-8").replace("``", "`")
        match = re.match(rf"^(.+?)-{TIMESTAMP_PATTERN}", path.name)
        if match:
            return match.group(1)
        raise RestoreError(f"Cannot determine source database from {path.name}")

    def _import(self, path: Path, rename: tuple[str, str] | None = None) -> None:
        """Stream an artifact through the inverse pipeline into mysql"""
        proc = self.mysql.open_import()
        try:
            with self.pipeline.decoder(path) as reader:
                assert proc.stdin is not None
                if rename:
                    for line in iter_lines(reader):
                        proc.stdin.write(rewrite_database_references(line, *rename))
                else:
                    for chunk in iter_chunks(reader):
                        proc.stdin.write(chunk)
        except BrokenPipeError:
            # mysql exited early; its stderr is reported below
            pass
        except BaseException:
            proc.kill()
            proc.wait()
            raise
        try:
            wait_import(proc, self.config.get_timeout("mysql_restore"), f"Import of {path.name}")
        except MySQLError as e:
            raise RestoreError(str(e)) from e

    def _restore_dump(
        self,
        path: Path,
        new_name: str | None,
        drop_first: bool,
        stop_time: datetime | None,
        stop_offset: int | None,
        report: RestoreReport,
    ) -> None:
        report.method = "logical"
        self._check_restorable(path, report)

        source = self._source_database(path)
        dest = new_name or source
        self.logger.info(f"Source DB: {source} → Target DB: {dest}")

        quoted = quote_identifier(dest)
        if drop_first:
            report.warn(self.logger, f"Dropping database {quoted} before restore")
            self.mysql.execute(f"DROP DATABASE IF EXISTS {quoted};")
        self.mysql.execute(f"CREATE DATABASE IF NOT EXISTS {quoted} CHARACTER SET utf8mb4 COLLATE utf8mb4_general_ci;")

        rename = None
        if dest != source:
            report.warn(self.logger, f"Renaming database on restore: {source} → {dest}")
            rename = (source, dest)
        self._import(path, rename)
        report.restored.append(dest)

        if stop_time is not None or stop_offset is not None:
            info = parse_artifact(path)
            self._replay_logical(info.timestamp if info else None, source, rename, stop_time, stop_offset, report)

    def _restore_binlog_export(self, path: Path, report: RestoreReport) -> None:
        """Apply an exported binlog range (mysqlbinlog text output) to the server"""
        report.method = "logical"
        self._check_restorable(path, report)
        self._import(path)
        report.restored.append(path.name)

    def _replay_logical(
        self,
        record_id: str | None,
        database: str | None,
        rename: tuple[str, str] | None,
        stop_time: datetime | None,
        stop_offset: int | None,
        report: RestoreReport,
    ) -> None:
        if find_tool("mysqlbinlog", self.config.get_setting("tools.mysqlbinlog")) is None:
            report.warn(self.logger, "mysqlbinlog not available, skipping PITR")
            return

        record = self.store.load(record_id) if record_id else None
        if record is None or record.coordinate is None:
            fallback = next((r for r in reversed(self.store.records()) if r.coordinate is not None), None)
            if fallback is None:
                report.warn(self.logger, "No binlog information in metadata, skipping PITR")
                return
            report.warn(self.logger, f"Using binlog coordinate from backup {fallback.id} for PITR")
            record = fallback

        cursor = PITRCursor.from_record(
            record, stop_time, stop_offset, database=rename[1] if rename else database, rewrite_db=rename
        )
        assert cursor is not None
        self._run_pitr(cursor, self.catalog.segments(cursor.start_file), report)

    def _run_pitr(self, cursor: PITRCursor, segments: list[Path], report: RestoreReport) -> None:
        try:
            report.pitr = PITREngine(self.replayer).run(cursor, segments)
        except SegmentNotFound as e:
            report.warn(self.logger, f"PITR skipped: {e}")
            return
        report.warnings.extend(report.pitr.warnings)

    # --------------------------------------------------------------- physical

    def _physical_chain(self, archive: Path, kind: BackupKind) -> tuple[Path, list[Path]]:
        """The full archive to restore and the incrementals to apply on top, ascending"""
        info = parse_artifact(archive)
        artifacts = self.store.artifacts()

        if kind is BackupKind.INCREMENTAL_PHYSICAL:
            if info is None:
                raise RestoreError(f"Cannot tell which backup {archive.name} belongs to")
            record = self.store.load(info.timestamp)
            full_id = record.base_id if record else None
            while full_id:
                base = self.store.load(full_id)
                if base is None or base.kind.is_full:
                    break
                full_id = base.base_id
            full = next((a for a in artifacts if a.category == "physical-full" and a.timestamp == full_id), None)
            if full is None:
                raise RestoreError(f"Cannot find the full backup that {archive.name} is based on")
            return full.path, [p for p in self._incrementals_for(full, artifacts) if self._ts(p) <= info.timestamp]

        if info is None:
            return archive, []
        return archive, self._incrementals_for(info, artifacts)

    @staticmethod
    def _ts(path: Path) -> str:
        info = parse_artifact(path)
        return info.timestamp if info else ""

    def _incrementals_for(self, full: ArtifactInfo, artifacts: list[ArtifactInfo]) -> list[Path]:
        incrementals = {a.timestamp: a.path for a in artifacts if a.category == "physical-incr"}
        if self.store.meta_path(full.timestamp).exists():
            chain = self.store.chain_for(full.timestamp)
            if chain:
                return [incrementals[r.id] for r in chain if r.id in incrementals]

        # No metadata chain: every incremental between this full and the next one
        later_fulls = [a.timestamp for a in artifacts if a.category == "physical-full" and a.timestamp > full.timestamp]
        until = min(later_fulls) if later_fulls else None
        return [
            path
            for ts, path in sorted(incrementals.items())
            if ts > full.timestamp and (until is None or ts < until)
        ]

    def _extract_prepared_input(self, archive: Path, destination: Path) -> Path:
        extracted = extract_archive(self.pipeline, archive, destination)
        if is_tool_compressed(extracted):
            self.logger.info(f"Decompressing {archive.name}...")
            self.xtrabackup.decompress(extracted)
        return extracted

    def _restore_physical(
        self,
        archive: Path,
        kind: BackupKind,
        stop_time: datetime | None,
        stop_offset: int | None,
        report: RestoreReport,
    ) -> None:
        report.method = "physical"
        if not self.xtrabackup.available():
            raise RestoreError("XtraBackup/mariabackup is required to restore a physical backup")

        full_archive, incrementals = self._physical_chain(archive, kind)
        for path in (full_archive, *incrementals):
            if checksum.verify(path) is ChecksumStatus.MISMATCH:
                report.warn(self.logger, f"Checksum verification failed: {path.name}")

        datadir = Path(self.config.get_setting("mysql.datadir", "/var/lib/mysql"))
        wants_pitr = stop_time is not None or stop_offset is not None

        with ExitStack() as stack:
            work = self.backup_dir / f".xtra_restore_{os.getpid()}"
            stack.callback(shutil.rmtree, work, True)

            self.logger.info(f"Extracting {full_archive.name}...")
            base_dir = self._extract_prepared_input(full_archive, work / "base")
            incr_dirs = [
                self._extract_prepared_input(path, work / f"incr_{i}") for i, path in enumerate(incrementals)
            ]

            if not incr_dirs:
                self.logger.info("Preparing backup...")
                self.xtrabackup.prepare(base_dir, apply_log_only=False)
            else:
                self.logger.info(f"Preparing base backup and {len(incr_dirs)} incremental(s)...")
                self.xtrabackup.prepare(base_dir, apply_log_only=True)
                for i, incr_dir in enumerate(incr_dirs):
                    last = i == len(incr_dirs) - 1
                    self.logger.info(f"Applying incremental {i + 1}/{len(incr_dirs)}")
                    self.xtrabackup.prepare(base_dir, apply_log_only=not last, incremental_dir=incr_dir)

            coordinate = parse_binlog_info((incr_dirs[-1] if incr_dirs else base_dir) / BINLOG_INFO_FILE)
            if coordinate is None:
                record = self.store.load(self._ts(incrementals[-1] if incrementals else full_archive))
                coordinate = record.coordinate if record else None
            segments = self.catalog.segments(coordinate.file) if wants_pitr and coordinate else []

            moved = datadir.with_name(f"{datadir.name}.backup.{int(time.time())}")
            self.services.stop()
            with ExitStack() as rollback:
                rollback.callback(self._roll_back_datadir, datadir, report)
                try:
                    self.logger.info(f"Moving current datadir to {moved}")
                    os.rename(datadir, moved)
                    report.moved_datadir = moved
                    datadir.mkdir(mode=0o750)
                    self.xtrabackup.copy_back(base_dir, datadir)

                    user = self.config.get_setting("mysql.system_user", "mysql")
                    result = self.runner(["chown", "-R", f"{user}:{user}", str(datadir)], timeout=600)
                    if result.returncode != 0:
                        report.warn(self.logger, f"chown -R {user}:{user} {datadir} failed")
                except OSError as e:
                    raise RestoreError(f"Cannot replace datadir {datadir}: {e}") from e
                rollback.pop_all()
            self.services.start()

        report.restored.append(full_archive.name)
        report.restored.extend(p.name for p in incrementals)
        self.logger.info("✅ XtraBackup restore complete")

        if wants_pitr:
            if coordinate is None:
                report.warn(self.logger, "No binlog coordinate recorded for this backup, skipping PITR")
                return
            segments = self._relocate_segments(segments, datadir, moved)
            cursor = PITRCursor(coordinate.file, coordinate.position, stop_time, stop_offset)
            self._run_pitr(cursor, segments, report)

    def _roll_back_datadir(self, datadir: Path, report: RestoreReport) -> None:
        """Put the original datadir back and restart the server after a failed swap"""
        self.logger.error("Datadir swap failed, restoring the original datadir")
        moved = report.moved_datadir
        if moved is not None:
            try:
                shutil.rmtree(datadir, ignore_errors=True)
                os.rename(moved, datadir)
                report.moved_datadir = None
            except OSError as e:
                self.logger.error(f"Cannot move {moved} back to {datadir}: {e}")
        try:
            self.services.start()
        except ServerControlError as e:
            self.logger.error(f"Database service left stopped: {e}")

    @staticmethod
    def _relocate_segments(segments: list[Path], datadir: Path, moved: Path) -> list[Path]:
        """Segments that lived inside the old datadir now live under its moved copy"""
        relocated = []
        for segment in segments:
            try:
                relocated.append(moved / segment.relative_to(datadir))
            except ValueError:
                relocated.append(segment)
        return relocated

    # ----------------------------------------------------------------- verify

    def verify(self) -> VerifyReport:
        """Checksum and decode every artifact in the backup directory"""
        report = VerifyReport()
        artifacts = self.store.artifacts()
        self.logger.info(f"Verifying {len(artifacts)} artifact(s) in {self.backup_dir}")

        for artifact in artifacts:
            path = artifact.path
            status = checksum.verify(path)
            if status is ChecksumStatus.MISMATCH:
                report.bad.append((path.name, "checksum mismatch"))
                continue
            if status is ChecksumStatus.NO_CHECKSUM:
                report.warnings.append(f"{path.name}: no checksum recorded")
            if not self.store.meta_path(artifact.timestamp).exists():
                report.warnings.append(f"{path.name}: metadata sidecar missing")

            if artifact.category in ("physical-full", "physical-incr"):
                if not archive_has_checkpoints(self.pipeline, path):
                    report.bad.append((path.name, "archive unreadable or missing checkpoints"))
                    continue
            elif artifact.category in ("dump", "binlog"):
                try:
                    self.pipeline.check_integrity(path)
                except PipelineError as e:
                    report.bad.append((path.name, str(e)))
                    continue
            report.ok.append(path.name)

        for message in report.warnings:
            self.logger.warning(message)
        for name, reason in report.bad:
            self.logger.error(f"Bad artifact {name}: {reason}")
        self.logger.info(f"Verify complete: {len(report.ok)} ok, {len(report.bad)} bad")
        return report
