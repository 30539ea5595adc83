"""Backup records, their metadata sidecars and artifact naming

A record is stored as ``backup-{id}.meta`` next to its artifacts, one
``key=value`` pair per line. The file is parsed, never executed; unknown keys
are ignored so older and newer versions can read each other's sidecars.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"
TIMESTAMP_PATTERN = r"\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2}"

META_PREFIX = "backup-"
META_SUFFIX = ".meta"

# Synthetic retention subject for physical full backups
PHYSICAL_SUBJECT = "xtra-full"


class BackupKind(str, Enum):
    FULL_LOGICAL = "full-logical"
    INCREMENTAL_LOGICAL = "incremental-logical"
    FULL_PHYSICAL = "full-physical"
    INCREMENTAL_PHYSICAL = "incremental-physical"

    @property
    def method(self) -> str:
        return "physical" if self in (BackupKind.FULL_PHYSICAL, BackupKind.INCREMENTAL_PHYSICAL) else "logical"

    @property
    def is_full(self) -> bool:
        return self in (BackupKind.FULL_LOGICAL, BackupKind.FULL_PHYSICAL)

    @classmethod
    def for_method(cls, method: str, full: bool) -> "BackupKind":
        if method == "physical":
            return cls.FULL_PHYSICAL if full else cls.INCREMENTAL_PHYSICAL
        return cls.FULL_LOGICAL if full else cls.INCREMENTAL_LOGICAL


# backup_type values found in older sidecars
LEGACY_BACKUP_TYPES = {
    "full": BackupKind.FULL_LOGICAL,
    "incremental": BackupKind.INCREMENTAL_LOGICAL,
    "xtrabackup-full": BackupKind.FULL_PHYSICAL,
    "xtrabackup-incremental": BackupKind.INCREMENTAL_PHYSICAL,
}


@dataclass(frozen=True)
class LogCoordinate:
    """Position in the binary log: segment file name + byte offset"""

    file: str
    position: int
    gtid_set: str = ""

    def __str__(self) -> str:
        return f"{self.file}:{self.position}"


@dataclass
class BackupRecord:
    id: str
    kind: BackupKind
    coordinate: LogCoordinate | None = None
    server_version: str = ""
    compression: str = ""
    encrypted: bool = False
    base_id: str | None = None
    to_lsn: str | None = None
    tool_version: str = ""
    tool_compressed: bool = False
    artifacts: list[str] = field(default_factory=list)

    @property
    def method(self) -> str:
        return self.kind.method

    @property
    def timestamp(self) -> datetime:
        return datetime.strptime(self.id, TIMESTAMP_FORMAT)

    def to_meta(self) -> str:
        lines = [
            f"timestamp={self.id}",
            f"kind={self.kind.value}",
            f"method={self.method}",
        ]
        if self.coordinate is not None:
            lines.append(f"binlog_file={self.coordinate.file}")
            lines.append(f"binlog_pos={self.coordinate.position}")
            lines.append(f"gtid_set={self.coordinate.gtid_set}")
        lines.append(f"server_version={self.server_version}")
        lines.append(f"compression={self.compression}")
        lines.append(f"encrypted={1 if self.encrypted else 0}")
        if self.base_id:
            lines.append(f"base_backup={self.base_id}")
        if self.to_lsn:
            lines.append(f"to_lsn={self.to_lsn}")
        if self.tool_version:
            lines.append(f"tool_version={self.tool_version}")
        if self.method == "physical":
            lines.append(f"tool_compressed={1 if self.tool_compressed else 0}")
        lines.append(f"artifacts={','.join(self.artifacts)}")
        return "\n".join(lines) + "\n"

    @classmethod
    def from_meta(cls, text: str, record_id: str | None = None) -> "BackupRecord":
        """Parse a sidecar; raises ValueError when the record kind cannot be determined"""
        data: dict[str, str] = {}
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            data[key.strip()] = value.strip()

        if "kind" in data:
            try:
                kind = BackupKind(data["kind"])
            except ValueError:
                raise ValueError(f"Unknown backup kind: {data['kind']}") from None
        elif data.get("backup_type") in LEGACY_BACKUP_TYPES:
            kind = LEGACY_BACKUP_TYPES[data["backup_type"]]
        else:
            raise ValueError("Metadata has neither 'kind' nor a known 'backup_type'")

        coordinate = None
        if data.get("binlog_file"):
            try:
                position = int(data.get("binlog_pos") or 4)
            except ValueError:
                position = 4
            coordinate = LogCoordinate(data["binlog_file"], position, data.get("gtid_set", ""))

        base_id = data.get("base_backup") or None
        if base_id:
            # Legacy sidecars name the base work dir (xtra-full-{ts}); keep the timestamp only
            match = re.search(TIMESTAMP_PATTERN, base_id)
            base_id = match.group(0) if match else base_id

        return cls(
            id=data.get("timestamp") or record_id or "",
            kind=kind,
            coordinate=coordinate,
            server_version=data.get("server_version", ""),
            compression=data.get("compression", ""),
            encrypted=data.get("encrypted", "0") in ("1", "true", "yes"),
            base_id=base_id,
            to_lsn=data.get("to_lsn") or None,
            tool_version=data.get("tool_version") or data.get("xtrabackup_version", ""),
            tool_compressed=data.get("tool_compressed", "0") in ("1", "true", "yes"),
            artifacts=[a for a in data.get("artifacts", "").split(",") if a],
        )


@dataclass(frozen=True)
class ArtifactInfo:
    """What an artifact's file name says about it"""

    path: Path
    category: str  # dump, binlog, physical-full, physical-incr, binlog-index
    subject: str
    timestamp: str

    @property
    def record_id(self) -> str:
        return self.timestamp


_ARTIFACT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("binlog", re.compile(rf"^incremental-(?P<ts>{TIMESTAMP_PATTERN})\.binlog\.[a-z]+(\.enc)?$")),
    ("physical-full", re.compile(rf"^xtra-full-(?P<ts>{TIMESTAMP_PATTERN})\.tar\.(gz|enc)$")),
    ("physical-incr", re.compile(rf"^xtra-incr-(?P<ts>{TIMESTAMP_PATTERN})\.tar\.(gz|enc)$")),
    ("binlog-index", re.compile(rf"^binlog-index-(?P<ts>{TIMESTAMP_PATTERN})\.txt$")),
    ("dump", re.compile(rf"^(?P<subject>.+)-(?P<ts>{TIMESTAMP_PATTERN})\.sql\.(gz|zst|xz)(\.enc)?$")),
)


def parse_artifact(path: Path) -> ArtifactInfo | None:
    """Classify an artifact by name; None for anything that is not one"""
    for category, pattern in _ARTIFACT_PATTERNS:
        match = pattern.match(path.name)
        if not match:
            continue
        if category == "dump":
            subject = match.group("subject")
        elif category == "physical-full":
            subject = PHYSICAL_SUBJECT
        elif category == "physical-incr":
            subject = "xtra-incr"
        else:
            subject = category
        return ArtifactInfo(path=path, category=category, subject=subject, timestamp=match.group("ts"))
    return None


def dump_name(subject: str, record_id: str, extension: str) -> str:
    return f"{subject}-{record_id}.{extension}"


def binlog_name(record_id: str, extension: str) -> str:
    return f"incremental-{record_id}.{extension}"


def physical_name(record_id: str, full: bool, encrypted: bool) -> str:
    prefix = "xtra-full" if full else "xtra-incr"
    return f"{prefix}-{record_id}.tar.{'enc' if encrypted else 'gz'}"


def binlog_index_name(record_id: str) -> str:
    return f"binlog-index-{record_id}.txt"


class MetadataStore:
    """Reads and writes backup records inside one backup directory"""

    def __init__(self, backup_dir: Path):
        self.backup_dir = Path(backup_dir)
        self.logger = logging.getLogger("MetadataStore")

    def meta_path(self, record_id: str) -> Path:
        return self.backup_dir / f"{META_PREFIX}{record_id}{META_SUFFIX}"

    def next_id(self, now: datetime | None = None) -> str:
        """Timestamp id for a new record, advanced past any id already taken"""
        moment = (now or datetime.now()).replace(microsecond=0)
        record_id = moment.strftime(TIMESTAMP_FORMAT)
        while self.meta_path(record_id).exists():
            moment += timedelta(seconds=1)
            record_id = moment.strftime(TIMESTAMP_FORMAT)
        return record_id

    def reserve_id(self, now: datetime | None = None) -> str:
        """Claim a record id by creating its (empty) sidecar"""
        while True:
            record_id = self.next_id(now)
            try:
                fd = os.open(self.meta_path(record_id), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                continue
            os.close(fd)
            return record_id

    def write(self, record: BackupRecord) -> Path:
        path = self.meta_path(record.id)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(record.to_meta())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
        self.logger.debug(f"Metadata written: {path.name}")
        return path

    def load(self, record_id: str) -> BackupRecord | None:
        path = self.meta_path(record_id)
        if not path.exists():
            self.logger.warning(f"Metadata sidecar missing: {path.name}")
            return None
        try:
            return BackupRecord.from_meta(path.read_text(), record_id)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Could not read metadata {path.name}: {e}")
            return None

    def records(self) -> list[BackupRecord]:
        """All readable records, oldest first"""
        records = []
        for path in sorted(self.backup_dir.glob(f"{META_PREFIX}*{META_SUFFIX}")):
            record_id = path.name[len(META_PREFIX) : -len(META_SUFFIX)]
            try:
                records.append(BackupRecord.from_meta(path.read_text(), record_id))
            except (OSError, ValueError) as e:
                self.logger.debug(f"Skipping unreadable metadata {path.name}: {e}")
        return sorted(records, key=lambda r: r.id)

    def latest(self, method: str | None = None, full_only: bool = False) -> BackupRecord | None:
        for record in reversed(self.records()):
            if method and record.method != method:
                continue
            if full_only and not record.kind.is_full:
                continue
            return record
        return None

    def latest_full(self, method: str) -> BackupRecord | None:
        return self.latest(method=method, full_only=True)

    def chain_for(self, full_id: str) -> list[BackupRecord]:
        """Physical incrementals whose base chain leads back to full_id, ascending"""
        by_id = {r.id: r for r in self.records()}
        chain = []
        for record in by_id.values():
            if record.kind is not BackupKind.INCREMENTAL_PHYSICAL:
                continue
            base = record.base_id
            seen = {record.id}
            while base and base != full_id and base in by_id and base not in seen:
                seen.add(base)
                base = by_id[base].base_id
            if base == full_id:
                chain.append(record)
        return sorted(chain, key=lambda r: r.id)

    def artifacts(self) -> list[ArtifactInfo]:
        """Every recognised artifact in the backup directory, oldest first"""
        if not self.backup_dir.exists():
            return []
        found = []
        for path in self.backup_dir.iterdir():
            if path.is_symlink() or not path.is_file():
                continue
            info = parse_artifact(path)
            if info is not None:
                found.append(info)
        return sorted(found, key=lambda a: (a.timestamp, a.path.name))
