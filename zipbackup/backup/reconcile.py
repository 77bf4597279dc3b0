"""
Remote reconciliation of the local archive directory.

The local directory is the source of truth. One pass:
1. deletes every remote archive with no local file of the same name
2. marks local archives missing remotely, or whose remote size differs or
   cannot be determined (when size verification is on), for upload
3. uploads the marked archives

Names are compared case-insensitively. Deletes always run before uploads.
The pass stops at the first failed list, delete or upload.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from zipbackup.utils.formatting import format_duration, format_file_size
from .compression import is_backup_archive_name
from .errors import STAGE_REMOTE_DELETE, STAGE_REMOTE_LIST, STAGE_REMOTE_UPLOAD, JobError
from .storage import RemoteFileNotFound, RetryingRemoteStore


logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Summary of one reconciliation pass."""
    uploaded: List[str] = field(default_factory=list)
    deleted_remote: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[JobError] = field(default_factory=list)
    bytes_uploaded: int = 0

    @property
    def succeeded(self) -> bool:
        return not self.errors


def list_local_archives(backup_dir: str) -> List[str]:
    """
    List full and incremental archives in the local backup directory.

    Args:
        backup_dir: Local archive directory

    Returns:
        Sorted list of archive paths
    """
    if not os.path.isdir(backup_dir):
        return []

    return [
        os.path.join(backup_dir, name)
        for name in sorted(os.listdir(backup_dir))
        if is_backup_archive_name(name) and os.path.isfile(os.path.join(backup_dir, name))
    ]


def filter_remote_listing(names: List[str]) -> List[str]:
    """Keep only names that look like backup archives (F-*.7z, I-*.7z)."""
    return [name for name in names if is_backup_archive_name(name)]


class ReconciliationEngine:
    """
    Makes the remote store hold exactly the archives of the local directory.
    """

    def __init__(
        self,
        store: RetryingRemoteStore,
        verify_sizes: bool = True,
        log: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize reconciliation engine.

        Args:
            store: Remote store with retries applied
            verify_sizes: Compare sizes of archives present on both sides
            log: Callable receiving human-readable progress lines
            clock: Monotonic clock used for throughput figures
        """
        self.store = store
        self.verify_sizes = verify_sizes
        self._log = log or logger.info
        self._clock = clock

    def synchronize(self, backup_dir: str) -> ReconcileResult:
        """
        Reconcile the local backup directory against a fresh remote listing.

        Args:
            backup_dir: Local archive directory

        Returns:
            ReconcileResult
        """
        self._log(f"Starting remote sync: {self.store.describe()}")

        local_files = list_local_archives(backup_dir)

        listing = self.store.list_files()
        if listing is None:
            result = ReconcileResult()
            result.errors.append(JobError(
                STAGE_REMOTE_LIST,
                f"Could not list remote files. {self.store.last_error or ''}".strip()
            ))
            self._log(str(result.errors[-1]))
            return result

        remote_listing = filter_remote_listing(listing)
        self._log(f"Local archives: {len(local_files)}. Remote archives: {len(remote_listing)}")

        return self.reconcile(local_files, remote_listing)

    def reconcile(self, local_files: List[str], remote_listing: List[str]) -> ReconcileResult:
        """
        Apply deletes and uploads so remote names match local names.

        Args:
            local_files: Paths of local archives
            remote_listing: Archive names currently in the remote store

        Returns:
            ReconcileResult; errors holds the failure that stopped the pass
        """
        result = ReconcileResult()
        local_names = {os.path.basename(path).lower() for path in local_files}

        for remote_name in remote_listing:
            if remote_name.lower() in local_names:
                continue

            self._log(f"Deleting remote: {remote_name}")
            try:
                deleted = self.store.delete(remote_name)
            except RemoteFileNotFound:
                self._log(f"Remote file already gone: {remote_name}")
                deleted = True

            if not deleted:
                return self._abort(result, STAGE_REMOTE_DELETE, f"Delete of {remote_name} failed.")
            result.deleted_remote.append(remote_name)

        remote_names: Dict[str, str] = {name.lower(): name for name in remote_listing}
        pending = []

        for local_path in local_files:
            name = os.path.basename(local_path)
            remote_name = remote_names.get(name.lower())
            local_size = os.path.getsize(local_path)

            if remote_name is None:
                self._log(f"File: {name} ({format_file_size(local_size)}) does not exist on remote. Starting upload.")
                pending.append((local_path, name, local_size))
                continue

            if not self.verify_sizes:
                result.skipped.append(name)
                continue

            try:
                remote_size = self.store.size(remote_name)
            except RemoteFileNotFound:
                remote_size = None

            if remote_size != local_size:
                self._log(
                    f"File: {name} ({format_file_size(local_size)}) size does not match "
                    f"file size on remote ({format_file_size(remote_size)})."
                )
                pending.append((local_path, remote_name, local_size))
            else:
                result.skipped.append(name)

        for local_path, remote_name, local_size in pending:
            started = self._clock()
            if not self.store.upload(local_path, remote_name):
                return self._abort(result, STAGE_REMOTE_UPLOAD, f"Upload of {remote_name} failed.")
            elapsed = self._clock() - started

            result.uploaded.append(remote_name)
            result.bytes_uploaded += local_size

            rate = local_size / elapsed if elapsed > 0 else None
            self._log(
                f"Upload of: {remote_name} ({format_file_size(local_size)}) completed in: "
                f"{format_duration(elapsed)} ({format_file_size(rate)} / second)"
            )

        self._log(
            f"Remote sync complete. Uploaded: {len(result.uploaded)}, "
            f"deleted: {len(result.deleted_remote)}, unchanged: {len(result.skipped)}"
        )
        return result

    def _abort(self, result: ReconcileResult, stage: str, message: str) -> ReconcileResult:
        if self.store.last_error:
            message = f"{message} {self.store.last_error}"
        error = JobError(stage, message)
        result.errors.append(error)
        self._log(str(error))
        return result
