"""
Backup mode decision and local retention for backup jobs.

For each job the planner decides whether the run produces a new full
archive or an incremental archive on top of the existing full one, and
prunes the previous generation once the new archive exists:
- Full: every older full archive and every incremental of the job is deleted
- Incremental: the newest (retain_incremental_count - 1) older incrementals
  are kept, the slot left over is taken by the incremental of this run

Recency is decided by comparing file names case-insensitively as strings.
That matches chronological order only because the timestamp in the name is
zero-padded and fixed-width (see compression.TIMESTAMP_FORMAT).
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from zipbackup.models import BackupJob
from .compression import (
    FULL_PREFIX,
    INCREMENTAL_PREFIX,
    generate_archive_filename,
    is_job_archive,
    parse_archive_filename
)


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class BackupDecision:
    """
    Outcome of planning one job's run.

    The mode is derived from incremental_path: a decision without an
    incremental target is a full backup.
    """
    job_name: str
    full_path: str
    incremental_path: Optional[str] = None
    prior_full_valid: bool = False
    reason: str = ''

    @property
    def is_full(self) -> bool:
        return self.incremental_path is None

    @property
    def mode(self) -> str:
        return 'FULL' if self.is_full else 'INCREMENTAL'

    @property
    def target_path(self) -> str:
        """Archive file this run writes."""
        return self.full_path if self.is_full else self.incremental_path


@dataclass
class CleanupResult:
    """Files removed by cleanup_local() and the deletes that failed."""
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


def _full_decision(job: BackupJob, backup_dir: str, now: datetime, reason: str) -> BackupDecision:
    full_path = os.path.join(backup_dir, generate_archive_filename(FULL_PREFIX, job.name, now))
    return BackupDecision(job_name=job.name, full_path=full_path, reason=reason)


def plan_mode(
    job: BackupJob,
    force_full: bool,
    existing_full_files: List[str],
    full_age_days: Optional[float],
    backup_dir: str,
    now: Optional[datetime] = None,
    integrity_check: Optional[Callable[[str], bool]] = None
) -> BackupDecision:
    """
    Decide between a full and an incremental backup for a job.

    Args:
        job: Job being planned
        force_full: Full backup requested regardless of the existing archives
        existing_full_files: Full archives of this job in the backup directory
        full_age_days: Age of the single existing full archive (ignored otherwise)
        backup_dir: Directory new archives are written to
        now: Timestamp for new archive names (default: current local time)
        integrity_check: Optional callable testing the existing full archive

    Returns:
        BackupDecision
    """
    if now is None:
        now = datetime.now()

    if force_full:
        return _full_decision(job, backup_dir, now, "Full backup forced")

    if not existing_full_files:
        return _full_decision(job, backup_dir, now, "No full backup file found")

    if len(existing_full_files) > 1:
        return _full_decision(
            job, backup_dir, now,
            f"{len(existing_full_files)} full backup files found, expected one"
        )

    if job.retain_incremental_count <= 0:
        return _full_decision(job, backup_dir, now, "Incremental backups are disabled for this job")

    if full_age_days is None or full_age_days > job.max_full_age_days:
        age = 'unknown' if full_age_days is None else f"{full_age_days:.2f}"
        return _full_decision(job, backup_dir, now, f"Full backup is {age} days old")

    existing_full = existing_full_files[0]

    if integrity_check is not None and not integrity_check(existing_full):
        decision = _full_decision(job, backup_dir, now, "Corrupt full backup")
        decision.prior_full_valid = False
        return decision

    incremental_path = os.path.join(backup_dir, generate_archive_filename(INCREMENTAL_PREFIX, job.name, now))
    return BackupDecision(
        job_name=job.name,
        full_path=existing_full,
        incremental_path=incremental_path,
        prior_full_valid=True,
        reason=f"Full backup is {full_age_days:.2f} days old"
    )


def select_files_to_delete(files: List[str], keep: int) -> List[str]:
    """
    Return all but the `keep` newest files, newest decided by name.

    Args:
        files: Archive paths of one kind for one job
        keep: Number of newest files to keep

    Returns:
        Paths to delete
    """
    ordered = sorted(files, key=lambda f: os.path.basename(f).lower(), reverse=True)
    return ordered[max(keep, 0):]


class RetentionPlanner:
    """
    Plans backup modes and prunes local archive generations for jobs in one
    backup directory.
    """

    def __init__(
        self,
        backup_dir: str,
        integrity_check: Optional[Callable[[str], bool]] = None,
        log: Optional[Callable[[str], None]] = None
    ):
        """
        Initialize retention planner.

        Args:
            backup_dir: Local archive directory
            integrity_check: Optional callable testing a full archive
            log: Callable receiving human-readable progress lines
        """
        self.backup_dir = backup_dir
        self.integrity_check = integrity_check
        self._log = log or logger.info

    def find_full_archives(self, job: BackupJob) -> List[str]:
        """List the job's full archives in the backup directory."""
        return self._find_archives(job, FULL_PREFIX)

    def find_incremental_archives(self, job: BackupJob) -> List[str]:
        """List the job's incremental archives in the backup directory."""
        return self._find_archives(job, INCREMENTAL_PREFIX)

    def full_archive_age_days(self, full_path: str, now: Optional[datetime] = None) -> float:
        """
        Age of a full archive in days.

        Taken from the timestamp in the file name; falls back to the file's
        modification time when the name cannot be parsed.
        """
        if now is None:
            now = datetime.now()

        parsed = parse_archive_filename(full_path)
        if parsed is not None:
            created = parsed.timestamp
        else:
            created = datetime.fromtimestamp(os.path.getmtime(full_path))

        return (now - created).total_seconds() / SECONDS_PER_DAY

    def plan(self, job: BackupJob, force_full: bool = False, now: Optional[datetime] = None) -> BackupDecision:
        """
        Decide the backup mode for a job from the archives on disk.

        Args:
            job: Job to plan
            force_full: Full backup requested
            now: Timestamp for new archive names

        Returns:
            BackupDecision
        """
        if now is None:
            now = datetime.now()

        full_files = self.find_full_archives(job)
        age_days = None
        if len(full_files) == 1:
            age_days = self.full_archive_age_days(full_files[0], now)

        decision = plan_mode(
            job,
            force_full,
            full_files,
            age_days,
            self.backup_dir,
            now=now,
            integrity_check=self._checked_integrity if self.integrity_check else None
        )

        self._log(f"{decision.reason}. Performing {decision.mode} backup.")
        return decision

    def cleanup_local(self, job: BackupJob, decision: BackupDecision) -> CleanupResult:
        """
        Delete the archives superseded by a decision.

        The decision's own target archive and, for incrementals, its base
        full archive are never deleted.

        Args:
            job: Job being cleaned up
            decision: Decision returned by plan()

        Returns:
            CleanupResult; failed deletes are reported, not raised
        """
        result = CleanupResult()
        protected = {os.path.normcase(os.path.abspath(decision.full_path))}
        if decision.incremental_path:
            protected.add(os.path.normcase(os.path.abspath(decision.incremental_path)))

        def unprotected(paths):
            return [p for p in paths if os.path.normcase(os.path.abspath(p)) not in protected]

        if decision.is_full:
            for full_path in unprotected(self.find_full_archives(job)):
                self._delete(full_path, result)
            keep = 0
        else:
            keep = max(job.retain_incremental_count - 1, 0)

        incrementals = unprotected(self.find_incremental_archives(job))
        to_delete = select_files_to_delete(incrementals, keep)
        result.kept = [p for p in incrementals if p not in to_delete]

        self._log(f"Found: {len(incrementals)} existing local incremental files. Will keep: {keep}")

        for path in to_delete:
            self._delete(path, result)

        return result

    def _find_archives(self, job: BackupJob, kind: str) -> List[str]:
        if not os.path.isdir(self.backup_dir):
            return []

        return [
            os.path.join(self.backup_dir, name)
            for name in sorted(os.listdir(self.backup_dir))
            if is_job_archive(name, kind, job.name)
            and os.path.isfile(os.path.join(self.backup_dir, name))
        ]

    def _checked_integrity(self, full_path: str) -> bool:
        self._log(f"Testing integrity of: {os.path.basename(full_path)}")
        valid = self.integrity_check(full_path)
        if not valid:
            self._log(f"Integrity test failed for: {os.path.basename(full_path)}")
        return valid

    def _delete(self, path: str, result: CleanupResult):
        self._log(f"Deleting local: {path}")
        try:
            os.remove(path)
            result.deleted.append(path)
        except OSError as e:
            message = f"Failed to delete local file {path}: {e}"
            self._log(message)
            result.errors.append(message)
