"""Backup orchestrator: logical (mysqldump / mysqlbinlog) and physical (xtrabackup) backups"""

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..utils import checksum
from ..utils.lock import InstanceLock
from ..utils.notifications import NotificationManager
from ..utils.retention_manager import CleanupReport, RetentionManager
from .config_manager import ConfigManager
from .dispatcher import BackupDispatcher, JobResult
from .exceptions import BackupError, DBToolsError, InsufficientSpace, MySQLError, NoDatabasesFound, SegmentNotFound
from .metadata import (
    BackupKind,
    BackupRecord,
    MetadataStore,
    binlog_index_name,
    binlog_name,
    dump_name,
    physical_name,
)
from .mysql_client import MySQLClient, require_tool
from .pipeline import StreamPipeline, iter_chunks
from .pitr import BinlogCatalog, PITRCursor, plan_replay
from .xtrabackup import (
    BINLOG_INFO_FILE,
    CHECKPOINTS_FILE,
    XtraBackup,
    archive_has_checkpoints,
    extract_archive,
    is_tool_compressed,
    package_backup,
    parse_binlog_info,
    parse_checkpoints,
)

# Fixed mysqldump option set for consistent, restorable dumps
DUMP_OPTIONS = (
    "--single-transaction",
    "--quick",
    "--routines",
    "--triggers",
    "--events",
    "--hex-blob",
    "--default-character-set=utf8mb4",
    "--set-gtid-purged=OFF",
    "--no-tablespaces",
    "--skip-lock-tables",
)

SPACE_WARN_FACTOR = 2
ERR_TAIL_BYTES = 2000


@dataclass
class BackupReport:
    """Everything one backup invocation did, assembled once at the top"""

    requested: str
    method: str = ""
    kind: BackupKind | None = None
    record: BackupRecord | None = None
    results: list[JobResult] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checksums: int = 0
    cleanup: CleanupReport | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def failures(self) -> list[JobResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def kind_label(self) -> str:
        return self.kind.value if self.kind else self.requested

    def warn(self, logger: logging.Logger, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


class BackupEngine:
    """Runs one backup through SelectMethod, SelectType, Preflight, Execute,
    Finalize, Package, Checksum and Notify, then prunes old backups.
    """

    def __init__(
        self,
        config: ConfigManager,
        mysql: MySQLClient | None = None,
        xtrabackup: XtraBackup | None = None,
        pipeline: StreamPipeline | None = None,
        dispatcher: BackupDispatcher | None = None,
        notifier: NotificationManager | None = None,
        lock: InstanceLock | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.config = config
        self.backup_dir = config.backup_dir
        self.mysql = mysql or MySQLClient(config)
        self.xtrabackup = xtrabackup or XtraBackup(config, self.mysql)
        self.pipeline = pipeline or StreamPipeline.from_config(config)
        self.dispatcher = dispatcher or BackupDispatcher(config.parallel_jobs)
        self.notifier = notifier
        self.lock = lock
        self.popen = popen
        self.store = MetadataStore(self.backup_dir)
        self.catalog = BinlogCatalog.from_config(config)
        self.logger = logging.getLogger("BackupEngine")

    # ------------------------------------------------------------------ phases

    def select_method(self, backup_type: str, report: BackupReport) -> str:
        if backup_type == "logical":
            return "logical"
        if self.config.get_setting("backup.method", "xtrabackup") == "xtrabackup":
            if self.xtrabackup.available():
                return "physical"
            report.warn(self.logger, "XtraBackup/mariabackup not found, falling back to mysqldump")
        return "logical"

    def select_base(self, method: str, backup_type: str, report: BackupReport) -> BackupRecord | None:
        """Base record for an incremental, or None for a full backup"""
        if backup_type != "incremental":
            return None

        if self.store.latest_full(method) is None:
            report.warn(self.logger, f"No previous {method} full backup found, performing full backup instead")
            return None

        base = self.store.latest(method=method)
        if base is None:
            return None

        if method == "logical" and base.coordinate is None:
            report.warn(self.logger, f"Backup {base.id} has no binlog coordinate, performing full backup instead")
            return None
        if method == "physical" and not base.to_lsn and self._physical_artifact(base) is None:
            report.warn(self.logger, f"Backup {base.id} has neither an LSN nor an archive, performing full backup instead")
            return None
        return base

    def _check_disk_space(self, path: Path, required_bytes: int) -> tuple[bool, str]:
        """Check if sufficient disk space is available

        Returns:
            Tuple of (success, message); the message is a warning when space is tight
        """
        stat = os.statvfs(path)
        available_bytes = stat.f_bavail * stat.f_frsize
        min_free = int(self.config.get_setting("backup.min_free_space_mb", 0)) * 1024 * 1024
        available_gb = available_bytes / (1024**3)
        required_gb = required_bytes / (1024**3)

        if available_bytes < required_bytes or available_bytes - required_bytes < min_free:
            return False, f"Insufficient disk space: {available_gb:.2f} GB available, {required_gb:.2f} GB required"
        if available_bytes < required_bytes * SPACE_WARN_FACTOR:
            return True, f"Low disk space: {available_gb:.2f} GB available for an estimated {required_gb:.2f} GB backup"
        return True, ""

    def preflight(self, report: BackupReport) -> None:
        try:
            estimate = self.mysql.estimate_size_bytes()
        except MySQLError as e:
            report.warn(self.logger, f"Could not estimate backup size: {e}")
            return

        ok, message = self._check_disk_space(self.backup_dir, estimate)
        if not ok:
            raise InsufficientSpace(message, {"estimate_bytes": estimate})
        if message:
            report.warn(self.logger, message)
        self.logger.info(f"Estimated backup size: {estimate / (1024 * 1024):.0f} MB")

    def remove_stale_state(self) -> list[str]:
        """Remove leftovers of crashed runs: .partial/.err files and work dirs"""
        removed = []
        if not self.backup_dir.exists():
            return removed
        for path in self.backup_dir.iterdir():
            stale_file = path.is_file() and path.name.endswith((".partial", ".err", ".meta.tmp"))
            stale_dir = path.is_dir() and (path.name.startswith((".xtra_", "xtra-full-", "xtra-incr-")))
            if stale_file:
                path.unlink(missing_ok=True)
            elif stale_dir:
                shutil.rmtree(path, ignore_errors=True)
            else:
                continue
            removed.append(path.name)
            self.logger.info(f"Removed stale working state: {path.name}")
        return removed

    def run(self, backup_type: str = "full") -> BackupReport:
        """Take a backup; backup_type is 'full', 'incremental' or 'logical'"""
        if backup_type not in ("full", "incremental", "logical"):
            raise BackupError(f"Unknown backup type: {backup_type} (use: full, incremental, logical)")

        report = BackupReport(requested=backup_type)
        started = time.monotonic()

        with ExitStack() as stack:
            if self.lock is not None:
                self.lock.acquire(timeout=float(self.config.get_setting("lock.timeout", 300)))
                stack.callback(self.lock.release)
            stack.enter_context(self.mysql)

            self.backup_dir.mkdir(parents=True, exist_ok=True)
            try:
                report.method = self.select_method(backup_type, report)
                base = self.select_base(report.method, backup_type, report)
                self.preflight(report)

                if report.method == "physical":
                    self._backup_physical(base, report)
                elif base is not None:
                    self._backup_logical_incremental(base, report)
                else:
                    self._backup_logical_full(report)

                self._checksum_phase(report)
                self._retention_phase(report)
            except DBToolsError as e:
                self.logger.error(f"Backup failed: {e}")
                if self.notifier:
                    self.notifier.notify_failure("Backup", str(e))
                raise

        report.duration = round(time.monotonic() - started, 1)
        self.logger.info(
            f"Backup complete ({report.kind_label}): {report.succeeded} ok, {report.failed} failed "
            f"in {report.duration:.0f}s"
        )
        if self.notifier:
            self.notifier.notify_backup_report(report)
        return report

    # ----------------------------------------------------------------- logical

    def _capture_coordinate(self, report: BackupReport):
        try:
            coordinate = self.mysql.master_status()
        except MySQLError as e:
            coordinate = None
            self.logger.debug(f"Could not read binlog coordinate: {e}")
        if coordinate is None:
            report.warn(self.logger, "Binary logging appears disabled, PITR will not be possible from this backup")
        return coordinate

    def _backup_logical_full(self, report: BackupReport) -> None:
        self.remove_stale_state()

        try:
            databases = self.mysql.list_databases()
        except MySQLError as e:
            raise NoDatabasesFound(f"Cannot enumerate databases: {e}") from e
        if not databases:
            raise NoDatabasesFound("No user databases found")

        record_id = self.store.reserve_id()
        coordinate = self._capture_coordinate(report)
        record = BackupRecord(
            id=record_id,
            kind=BackupKind.FULL_LOGICAL,
            coordinate=coordinate,
            server_version=self.mysql.version(),
            compression=self.pipeline.algorithm,
            encrypted=self.pipeline.encrypt,
        )
        report.kind = record.kind
        report.record = record

        self.logger.info(f"Backing up {len(databases)} database(s): {' '.join(databases)}")
        dispatch = self.dispatcher.run((db, lambda db=db: self._dump_database(db, record_id)) for db in databases)
        report.results.extend(dispatch.results)
        record.artifacts = [r.artifact for r in dispatch.results if r.ok and r.artifact]

        if coordinate is not None:
            index_copy = self.backup_dir / binlog_index_name(record_id)
            if self.catalog.snapshot_index(index_copy):
                record.artifacts.append(index_copy.name)

        self.store.write(record)
        report.artifacts.extend(record.artifacts)

    def _dump_database(self, db: str, record_id: str) -> JobResult:
        """One unit-job: mysqldump | pipeline -> .partial -> rename -> validate"""
        out = self.backup_dir / dump_name(db, record_id, self.pipeline.extension())
        partial = out.with_name(out.name + ".partial")
        err_file = out.with_name(out.name + ".err")
        self.logger.info(f"Dumping {db}...")

        try:
            cmd = self.mysql.command("mysqldump", *DUMP_OPTIONS, "--databases", db)
            self._stream_command(cmd, partial, err_file, "mysqldump", self.config.get_timeout("mysqldump"))
            os.chmod(partial, 0o600)
            os.replace(partial, out)

            if not self.pipeline.validate_dump(out):
                out.unlink(missing_ok=True)
                raise BackupError(f"Validation failed for {db}: no dump header in the first lines")

            err_file.unlink(missing_ok=True)
            size_mb = out.stat().st_size / (1024 * 1024)
            self.logger.info(f"✅ {db} → {out.name} ({size_mb:.2f} MB)")
            return JobResult(name=db, ok=True, message=f"{out.name} ({size_mb:.2f} MB)", artifact=out.name)

        except Exception as e:
            error_msg = str(e)
            self.logger.error(f"Failed to backup database '{db}': {error_msg}")
            partial.unlink(missing_ok=True)
            return JobResult(name=db, ok=False, message=error_msg)

    def _stream_command(self, cmd: list[str], partial: Path, err_file: Path, what: str, timeout: int) -> None:
        """Run a producer command, streaming its stdout through the pipeline into ``partial``"""
        with open(partial, "wb") as raw, open(err_file, "wb") as err:
            proc = self.popen(cmd, stdout=subprocess.PIPE, stderr=err)
            try:
                with self.pipeline.encoder(raw) as writer:
                    for chunk in iter_chunks(proc.stdout):
                        writer.write(chunk)
            finally:
                if proc.stdout is not None:
                    proc.stdout.close()
                try:
                    returncode = proc.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                    raise BackupError(f"{what} timed out after {timeout}s") from None

        if returncode != 0:
            tail = err_file.read_bytes()[-ERR_TAIL_BYTES:].decode("utf-8", "replace").strip()
            raise BackupError(f"{what} failed (exit {returncode}): {tail}")

    def _backup_logical_incremental(self, base: BackupRecord, report: BackupReport) -> None:
        assert base.coordinate is not None
        end = self.mysql.master_status()
        if end is None:
            raise BackupError("Cannot read the current binlog coordinate (is binary logging enabled?)")

        segments = self.catalog.segments(base.coordinate.file)
        try:
            steps = plan_replay(PITRCursor(base.coordinate.file, base.coordinate.position), segments)
        except SegmentNotFound:
            report.warn(
                self.logger,
                f"Binlog {base.coordinate.file} from backup {base.id} is no longer available, performing full backup",
            )
            self._backup_logical_full(report)
            return

        files = []
        for step in steps:
            files.append(step.segment)
            if step.segment.name == end.file:
                break

        record_id = self.store.reserve_id()
        out = self.backup_dir / binlog_name(record_id, self.pipeline.extension("binlog"))
        partial = out.with_name(out.name + ".partial")
        err_file = out.with_name(out.name + ".err")
        self.logger.info(f"Starting incremental backup from {base.coordinate} to {end}")

        cmd = [
            require_tool("mysqlbinlog", self.config.get_setting("tools.mysqlbinlog")),
            f"--start-position={base.coordinate.position}",
            f"--stop-position={end.position}",
            *[str(f) for f in files],
        ]
        try:
            self._stream_command(cmd, partial, err_file, "mysqlbinlog", self.config.get_timeout("mysqlbinlog"))
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        os.chmod(partial, 0o600)
        os.replace(partial, out)
        err_file.unlink(missing_ok=True)
        self.pipeline.check_integrity(out)

        record = BackupRecord(
            id=record_id,
            kind=BackupKind.INCREMENTAL_LOGICAL,
            coordinate=end,
            server_version=self.mysql.version(),
            compression=self.pipeline.algorithm,
            encrypted=self.pipeline.encrypt,
            base_id=base.id,
            artifacts=[out.name],
        )
        self.store.write(record)
        report.kind = record.kind
        report.record = record
        report.artifacts.append(out.name)
        report.results.append(JobResult(name="binlog", ok=True, message=out.name, artifact=out.name))
        self.logger.info(f"✅ Incremental backup created: {out.name}")

    # ---------------------------------------------------------------- physical

    def _physical_artifact(self, record: BackupRecord) -> Path | None:
        for encrypted in (False, True):
            path = self.backup_dir / physical_name(record.id, record.kind.is_full, encrypted)
            if path.exists():
                return path
        return None

    def _backup_physical(self, base: BackupRecord | None, report: BackupReport) -> None:
        full = base is None
        if full:
            self.remove_stale_state()

        record_id = self.store.reserve_id()
        work_dir = self.backup_dir / f"xtra-{'full' if full else 'incr'}-{record_id}"
        kind = BackupKind.for_method("physical", full)
        self.logger.info(f"Starting XtraBackup {'full' if full else 'incremental'} backup...")

        with ExitStack() as stack:
            stack.callback(shutil.rmtree, work_dir, True)

            lsn = base.to_lsn if base is not None else None
            basedir = None
            if base is not None and not lsn:
                base_archive = self._physical_artifact(base)
                assert base_archive is not None
                temp_base = self.backup_dir / f".xtra_base_{os.getpid()}"
                stack.callback(shutil.rmtree, temp_base, True)
                basedir = extract_archive(self.pipeline, base_archive, temp_base)

            self.xtrabackup.backup(work_dir, incremental_lsn=lsn, incremental_basedir=basedir)

            checkpoints = parse_checkpoints(work_dir / CHECKPOINTS_FILE)
            coordinate = parse_binlog_info(work_dir / BINLOG_INFO_FILE)
            if coordinate is None and full:
                coordinate = self._capture_coordinate(report)

            record = BackupRecord(
                id=record_id,
                kind=kind,
                coordinate=coordinate,
                server_version=self.mysql.version(),
                compression="gzip" if not self.pipeline.encrypt else "none",
                encrypted=self.pipeline.encrypt,
                base_id=base.id if base is not None else None,
                to_lsn=checkpoints.get("to_lsn"),
                tool_version=self.xtrabackup.version(),
                tool_compressed=is_tool_compressed(work_dir),
            )

            target = self.backup_dir / physical_name(record_id, full, self.pipeline.encrypt)
            package_backup(self.pipeline, work_dir, target)

        if not archive_has_checkpoints(self.pipeline, target):
            raise BackupError(f"Packaged backup {target.name} has no {CHECKPOINTS_FILE}")

        record.artifacts = [target.name]
        self.store.write(record)
        report.kind = kind
        report.record = record
        report.artifacts.append(target.name)
        size_mb = target.stat().st_size / (1024 * 1024)
        report.results.append(JobResult(name=kind.value, ok=True, message=f"{target.name} ({size_mb:.2f} MB)", artifact=target.name))
        self.logger.info(f"✅ XtraBackup {'full' if full else 'incremental'} backup complete: {target.name}")

    # -------------------------------------------------------- checksum / prune

    def _checksum_phase(self, report: BackupReport) -> None:
        if not self.config.checksum_enabled:
            return
        for name in report.artifacts:
            path = self.backup_dir / name
            try:
                checksum.compute(path)
                report.checksums += 1
            except OSError as e:
                report.warn(self.logger, f"Could not write checksum for {name}: {e}")

    def _retention_phase(self, report: BackupReport) -> None:
        if not self.config.get_setting("retention.prune_after_backup", True):
            return
        retention = RetentionManager.from_config(self.config)
        report.cleanup = retention.cleanup(dry_run=self.config.dry_run, now=datetime.now())
