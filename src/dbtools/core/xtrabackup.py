"""Physical backup tool (xtrabackup / mariabackup) and database service control"""

import logging
import os
import shutil
import subprocess
import sys
import tarfile
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from .config_manager import ConfigManager
from .exceptions import BackupError, PipelineError, RestoreError, ServerControlError
from .metadata import LogCoordinate
from .mysql_client import MySQLClient, find_tool, require_tool
from .pipeline import ENCRYPTED_SUFFIX, StreamPipeline

CHECKPOINTS_FILE = "xtrabackup_checkpoints"
BINLOG_INFO_FILE = "xtrabackup_binlog_info"
TOOL_LOG = "xtrabackup.log"


def parse_checkpoints(path: Path) -> dict[str, str]:
    """Read ``key = value`` pairs from xtrabackup_checkpoints"""
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text().splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip()
    return values


def parse_binlog_info(path: Path) -> LogCoordinate | None:
    """Read the binlog coordinate recorded by the physical tool"""
    if not path.exists():
        return None
    fields = path.read_text().split()
    if len(fields) < 2:
        return None
    try:
        position = int(fields[1])
    except ValueError:
        return None
    return LogCoordinate(fields[0], position, fields[2] if len(fields) > 2 else "")


def is_tool_compressed(backup_dir: Path) -> bool:
    checkpoints = parse_checkpoints(backup_dir / CHECKPOINTS_FILE)
    if checkpoints.get("compressed", "0") not in ("0", "", "N"):
        return True
    return any(backup_dir.rglob("*.qp")) or any(backup_dir.rglob("*.zst"))


class XtraBackup:
    """Runs the physical backup tool; failures raise, stderr goes to a log file"""

    def __init__(
        self,
        config: ConfigManager,
        mysql: MySQLClient,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.config = config
        self.mysql = mysql
        self.runner = runner
        self.logger = logging.getLogger("XtraBackup")

    @property
    def configured_path(self) -> str | None:
        return self.config.get_setting("tools.xtrabackup")

    def available(self) -> bool:
        return find_tool("xtrabackup", self.configured_path) is not None

    @property
    def binary(self) -> str:
        return require_tool("xtrabackup", self.configured_path)

    def version(self) -> str:
        try:
            result = self.runner(
                [self.binary, "--version"], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, timeout=60
            )
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.debug(f"Could not read tool version: {e}")
            return ""
        lines = (result.stdout or "").strip().splitlines()
        return lines[0] if lines else ""

    def _run(self, args: Sequence[str], log_file: Path | None, what: str, error: type[Exception]) -> None:
        cmd = [self.binary, *args]
        self.logger.info(f"Executing: {' '.join(cmd)}")
        timeout = self.config.get_timeout("xtrabackup")
        try:
            if log_file is not None:
                with open(log_file, "a") as log:
                    result = self.runner(cmd, stdout=subprocess.DEVNULL, stderr=log, timeout=timeout)
            else:
                result = self.runner(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise error(f"{what} timed out after {e.timeout}s") from e

        if result.returncode != 0:
            hint = f" Check {log_file}" if log_file is not None else f" {(result.stderr or '').strip()}"
            raise error(f"{what} failed (exit {result.returncode}).{hint}")

    def compression_args(self) -> list[str]:
        """Tool-native compression options, when enabled and supported"""
        if not self.config.get_setting("xtrabackup.compress", True):
            return []
        threads = str(self.config.get_setting("xtrabackup.compress_threads", 2))
        if self.config.compression_algorithm == "zstd" and shutil.which("zstd"):
            return ["--compress=zstd", f"--compress-threads={threads}"]
        if shutil.which("qpress"):
            return ["--compress", f"--compress-threads={threads}"]
        return []

    def backup(
        self,
        target_dir: Path,
        incremental_lsn: str | None = None,
        incremental_basedir: Path | None = None,
    ) -> None:
        """Take a full backup, or an incremental one on top of an LSN / base directory"""
        target_dir.mkdir(parents=True, exist_ok=True)
        args = [
            *self.mysql.connection_args(),
            "--backup",
            f"--target-dir={target_dir}",
            f"--parallel={self.config.get_setting('xtrabackup.parallel', 2)}",
        ]
        if incremental_lsn:
            args.append(f"--incremental-lsn={incremental_lsn}")
        elif incremental_basedir is not None:
            args.append(f"--incremental-basedir={incremental_basedir}")
        args.extend(self.compression_args())
        self._run(args, target_dir / TOOL_LOG, "Physical backup", BackupError)

    def decompress(self, target_dir: Path) -> None:
        self._run(
            ["--decompress", f"--target-dir={target_dir}", f"--parallel={self.config.get_setting('xtrabackup.parallel', 2)}"],
            None,
            "Decompression",
            RestoreError,
        )
        for leftover in [*target_dir.rglob("*.qp"), *target_dir.rglob("*.zst")]:
            leftover.unlink()

    def prepare(self, target_dir: Path, apply_log_only: bool, incremental_dir: Path | None = None) -> None:
        args = ["--prepare"]
        if apply_log_only:
            args.append("--apply-log-only")
        args.append(f"--target-dir={target_dir}")
        if incremental_dir is not None:
            args.append(f"--incremental-dir={incremental_dir}")
        args.append(f"--use-memory={self.config.get_setting('xtrabackup.memory', '1G')}")
        what = "Incremental apply" if incremental_dir is not None else "Prepare"
        self._run(args, None, what, RestoreError)

    def copy_back(self, target_dir: Path, datadir: Path) -> None:
        self._run(["--copy-back", f"--target-dir={target_dir}", f"--datadir={datadir}"], None, "Copy-back", RestoreError)


class ServiceController:
    """Stops and starts the database server through systemctl"""

    def __init__(
        self,
        service_names: Sequence[str],
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.service_names = list(service_names)
        self.runner = runner
        self.logger = logging.getLogger("RestoreEngine")
        self.active_service: str | None = None

    def _systemctl(self, *args: str) -> bool:
        try:
            result = self.runner(["systemctl", *args], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=300)
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.debug(f"systemctl {' '.join(args)} failed: {e}")
            return False
        return result.returncode == 0

    def stop(self) -> str:
        """Stop whichever configured service is active and remember it"""
        for name in self.service_names:
            if self._systemctl("is-active", "--quiet", name):
                self.logger.info(f"Stopping {name}...")
                if not self._systemctl("stop", name):
                    raise ServerControlError(f"Cannot stop {name}")
                self.active_service = name
                return name
        raise ServerControlError(f"No active database service found (tried: {', '.join(self.service_names)})")

    def start(self) -> str:
        candidates = [self.active_service] if self.active_service else []
        candidates += [n for n in self.service_names if n not in candidates]
        for name in candidates:
            if self._systemctl("start", name):
                self.logger.info(f"Started {name}")
                return name
        raise ServerControlError(f"Cannot start the database service (tried: {', '.join(candidates)})")


@contextmanager
def open_archive(pipeline: StreamPipeline, path: Path) -> Iterator[tarfile.TarFile]:
    """Open a packaged physical backup as a forward-only tar stream"""
    if path.name.endswith(ENCRYPTED_SUFFIX):
        with pipeline.decrypted_reader(path) as reader, tarfile.open(fileobj=reader, mode="r|") as tar:
            yield tar
    else:
        with tarfile.open(path, mode="r|gz") as tar:
            yield tar


def archive_has_checkpoints(pipeline: StreamPipeline, path: Path) -> bool:
    """True if the archive holds an xtrabackup_checkpoints file"""
    try:
        with open_archive(pipeline, path) as tar:
            return any(Path(member.name).name == CHECKPOINTS_FILE for member in tar)
    except (tarfile.TarError, OSError, EOFError, PipelineError):
        return False


def _check_member(member: tarfile.TarInfo, target: Path) -> None:
    # Reject absolute paths and '..' components
    if os.path.isabs(member.name) or ".." in Path(member.name).parts:
        raise RestoreError(f"Tar member '{member.name}' would extract outside target directory")
    member_path = (target / member.name).resolve()
    if not str(member_path).startswith(str(target) + os.sep) and member_path != target:
        raise RestoreError(f"Tar member '{member.name}' would extract outside target directory")


def extract_archive(pipeline: StreamPipeline, path: Path, destination: Path) -> Path:
    """Extract a packaged backup (path-traversal safe) and return its top-level directory"""
    destination.mkdir(parents=True, exist_ok=True)
    target = destination.resolve()
    top_level: str | None = None
    try:
        with open_archive(pipeline, path) as tar:
            for member in tar:
                _check_member(member, target)
                top_level = top_level or Path(member.name).parts[0]
                if sys.version_info >= (3, 12):
                    tar.extract(member, target, filter="data")  # nosec B202
                else:
                    tar.extract(member, target)  # noqa: S202  # nosec B202
    except (tarfile.TarError, EOFError, OSError) as e:
        raise RestoreError(f"Cannot extract {path.name}: {e}") from e

    if top_level is None:
        raise RestoreError(f"Archive is empty: {path.name}")
    extracted = target / top_level
    if not (extracted / CHECKPOINTS_FILE).exists():
        raise RestoreError(f"Not a physical backup (no {CHECKPOINTS_FILE}): {path.name}")
    return extracted


def package_backup(pipeline: StreamPipeline, work_dir: Path, target: Path) -> Path:
    """Archive a work dir as .tar.gz, or as a plain tar through the encryption layer"""
    partial = target.with_name(target.name + ".partial")
    try:
        if pipeline.encrypt:
            with open(partial, "wb") as raw, pipeline.encrypted_writer(raw) as writer:
                with tarfile.open(fileobj=writer, mode="w|") as tar:
                    tar.add(work_dir, arcname=work_dir.name)
        else:
            with tarfile.open(partial, mode="w:gz") as tar:
                tar.add(work_dir, arcname=work_dir.name)
        os.chmod(partial, 0o600)
        os.replace(partial, target)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    return target
