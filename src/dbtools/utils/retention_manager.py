"""Retention: age-based pruning with a per-subject minimum keep"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from ..core.metadata import (
    META_PREFIX,
    META_SUFFIX,
    TIMESTAMP_FORMAT,
    ArtifactInfo,
    MetadataStore,
)
from .checksum import sidecar_path

if TYPE_CHECKING:
    from ..core.config_manager import ConfigManager

# Artifact categories pruned per subject (newest keep_min protected)
SUBJECT_CATEGORIES = ("dump", "physical-full")
# Artifact categories pruned on age alone
AGE_ONLY_CATEGORIES = ("binlog", "physical-incr", "binlog-index")


@dataclass(frozen=True)
class PlannedDeletion:
    path: Path
    reason: str
    size: int = 0


@dataclass
class CleanupPlan:
    days: int
    keep_min: int
    deletions: list[PlannedDeletion] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [d.path.name for d in self.deletions]

    @property
    def space_to_recover(self) -> int:
        return sum(d.size for d in self.deletions)


@dataclass
class CleanupReport:
    plan: CleanupPlan
    dry_run: bool
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def planned(self) -> list[str]:
        return self.plan.names

    @property
    def count(self) -> int:
        return len(self.plan.deletions) if self.dry_run else len(self.deleted)


def _size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class RetentionManager:
    """Plans, then applies, deletions in the backup directory.

    Pass 1 groups full backups by subject (database name, or ``xtra-full`` for
    physical fulls), newest first: the newest ``keep_min`` are never touched,
    the rest go once older than ``days``. Pass 2 removes incremental binlog
    exports, physical incrementals and binlog index snapshots on age alone.
    A ``backup-{ts}.meta`` is deleted once no artifact carrying ``{ts}`` is
    left after the planned deletions.
    """

    def __init__(self, backup_dir: Path, days: int = 7, keep_min: int = 2):
        self.backup_dir = Path(backup_dir)
        self.days = days
        self.keep_min = max(0, keep_min)
        self.logger = logging.getLogger("RetentionManager")

    @classmethod
    def from_config(cls, config: "ConfigManager", days: int | None = None) -> "RetentionManager":
        return cls(
            config.backup_dir,
            days=days if days is not None else int(config.get_setting("retention.days", 7)),
            keep_min=int(config.get_setting("retention.keep_min", 2)),
        )

    @staticmethod
    def _artifact_time(artifact: ArtifactInfo) -> datetime:
        try:
            return datetime.strptime(artifact.timestamp, TIMESTAMP_FORMAT)
        except ValueError:
            return datetime.fromtimestamp(artifact.path.stat().st_mtime)

    def _plan_delete(self, plan: CleanupPlan, path: Path, reason: str) -> None:
        plan.deletions.append(PlannedDeletion(path, reason, _size(path)))
        sidecar = sidecar_path(path)
        if sidecar.exists():
            plan.deletions.append(PlannedDeletion(sidecar, f"checksum of {path.name}", _size(sidecar)))

    def plan_cleanup(self, now: datetime | None = None) -> CleanupPlan:
        """Decide what a cleanup would delete, without touching anything"""
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.days)
        plan = CleanupPlan(days=self.days, keep_min=self.keep_min)

        if not self.backup_dir.exists():
            return plan

        artifacts = MetadataStore(self.backup_dir).artifacts()
        doomed: set[Path] = set()

        by_subject: dict[str, list[ArtifactInfo]] = defaultdict(list)
        for artifact in artifacts:
            if artifact.category in SUBJECT_CATEGORIES:
                by_subject[artifact.subject].append(artifact)

        for subject in sorted(by_subject):
            ordered = sorted(by_subject[subject], key=self._artifact_time, reverse=True)
            for position, artifact in enumerate(ordered):
                if position < self.keep_min:
                    plan.kept.append(artifact.path.name)
                    self.logger.debug(f"Keeping (min): {artifact.path.name}")
                    continue
                if self._artifact_time(artifact) < cutoff:
                    self._plan_delete(plan, artifact.path, f"{subject}: older than {self.days} day(s)")
                    doomed.add(artifact.path)
                else:
                    plan.kept.append(artifact.path.name)

        for artifact in artifacts:
            if artifact.category not in AGE_ONLY_CATEGORIES:
                continue
            if self._artifact_time(artifact) < cutoff:
                self._plan_delete(plan, artifact.path, f"older than {self.days} day(s)")
                doomed.add(artifact.path)
            else:
                plan.kept.append(artifact.path.name)

        remaining = {a.timestamp for a in artifacts if a.path not in doomed}
        for meta in sorted(self.backup_dir.glob(f"{META_PREFIX}*{META_SUFFIX}")):
            record_id = meta.name[len(META_PREFIX) : -len(META_SUFFIX)]
            if record_id not in remaining:
                plan.deletions.append(PlannedDeletion(meta, "orphaned metadata", _size(meta)))

        return plan

    def apply(self, plan: CleanupPlan, dry_run: bool = False) -> CleanupReport:
        report = CleanupReport(plan=plan, dry_run=dry_run)
        for deletion in plan.deletions:
            name = deletion.path.name
            if dry_run:
                self.logger.info(f"DRY-RUN: Would delete {name} ({deletion.reason})")
                continue
            try:
                deletion.path.unlink(missing_ok=True)
                report.deleted.append(name)
                self.logger.info(f"Deleting: {name} ({deletion.reason})")
            except OSError as e:
                self.logger.error(f"Failed to delete {name}: {e}")
                report.errors.append(f"{name}: {e}")
        return report

    def cleanup(self, dry_run: bool = False, now: datetime | None = None) -> CleanupReport:
        self.logger.info(
            f"Starting cleanup (days={self.days}, keep_min={self.keep_min}, dry_run={1 if dry_run else 0})"
        )
        report = self.apply(self.plan_cleanup(now), dry_run)
        self.logger.info(f"Cleanup complete: {report.count} file(s) {'would be ' if dry_run else ''}removed")
        return report
