"""
Backup executor - orchestrates a complete backup run.

Workflow:
1. Inhibit system sleep for the duration of the run
2. For each configured job, one at a time:
   a. Decide FULL or INCREMENTAL (RetentionPlanner)
   b. Create the full archive or write the incremental archive (7-Zip)
   c. Delete the generation superseded by the new archive
3. Reconcile the local backup directory with the remote store (once)
4. Send the run log by e-mail (if configured)

A failing job is recorded and the run continues with the next job. A
failing remote pass stops at its first error. Either marks the run failed.
"""

import logging
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from zipbackup.config import Config
from zipbackup.models import BackupJob, BackupSettings
from zipbackup.notifications import send_email
from zipbackup.utils.formatting import format_duration, format_file_size
from zipbackup.utils.master_key import decode_secret
from zipbackup.utils.power import SleepInhibitor
from .compression import Archiver, CompressionError, get_archive_size
from .errors import STAGE_ARCHIVE, STAGE_CLEANUP, STAGE_PLAN, STAGE_UNEXPECTED, JobError
from .reconcile import ReconcileResult, ReconciliationEngine
from .retention import BackupDecision, RetentionPlanner
from .storage import RemoteStore, RetryingRemoteStore, StorageError, create_remote_store


logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """Result of one job within a run."""
    job_name: str
    decision: Optional[BackupDecision] = None
    archive_size: Optional[int] = None
    deleted: List[str] = field(default_factory=list)
    errors: List[JobError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


@dataclass
class RunSummary:
    """Result of a complete run."""
    jobs: List[JobOutcome] = field(default_factory=list)
    remote: Optional[ReconcileResult] = None
    errors: List[JobError] = field(default_factory=list)

    @property
    def all_errors(self) -> List[JobError]:
        errors = [error for job in self.jobs for error in job.errors]
        if self.remote is not None:
            errors.extend(self.remote.errors)
        return errors + self.errors

    @property
    def succeeded(self) -> bool:
        return not self.all_errors


class BackupExecutor:
    """
    Orchestrates the backup run for all configured jobs.
    """

    def __init__(
        self,
        settings: BackupSettings,
        archiver: Optional[Archiver] = None,
        remote_store: Optional[RemoteStore] = None,
        notifier: Callable = send_email,
        log_file: Optional[str] = None,
        inhibitor_factory: Callable = SleepInhibitor,
        retry_sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Loaded settings
            archiver: 7-Zip invoker (default: built from settings)
            remote_store: Remote store backend (default: built from settings)
            notifier: Callable sending the notification e-mail
            log_file: Log file attached to the notification
            inhibitor_factory: Context manager factory keeping the machine awake
            retry_sleep: Sleep function for remote retries (replaceable in tests)
        """
        self.settings = settings
        self.backup_dir = os.path.abspath(os.path.expanduser(settings.local_backup_dir))
        self.archiver = archiver or Archiver(
            settings.archiver_path,
            compression_level=settings.compression_level,
            encrypt_headers=settings.encrypt_headers,
            password=decode_secret(settings.archive_password),
            timeout=Config.ARCHIVER_TIMEOUT
        )
        self.remote_store = remote_store
        self.notifier = notifier
        self.log_file = log_file
        self.inhibitor_factory = inhibitor_factory
        self.retry_sleep = retry_sleep

        integrity_check = self._test_full_archive if settings.verify_full_archive else None
        self.planner = RetentionPlanner(self.backup_dir, integrity_check=integrity_check, log=self._log)

        self.logs = []
        self.summary = RunSummary()

    def perform_backups(self, force_full: bool = False) -> bool:
        """
        Run every job, sync the remote store and send the notification.

        Args:
            force_full: Force a full backup for every job

        Returns:
            True if every job and the remote sync succeeded
        """
        self.summary = RunSummary()
        started = time.monotonic()

        with self.inhibitor_factory():
            try:
                self._execute_workflow(force_full)
                success = self.summary.succeeded
            except Exception as e:
                logger.exception("Unhandled error during backup run")
                self.summary.errors.append(JobError(STAGE_UNEXPECTED, repr(e), 'backup run'))
                self._log(f"Unhandled error: {e!r}", logging.ERROR)
                success = False

            if success:
                self._log(f"Backup run completed successfully in {format_duration(time.monotonic() - started)}")
            else:
                self._log(f"Backup run FAILED after {format_duration(time.monotonic() - started)}", logging.ERROR)
                for error in self.summary.all_errors:
                    self._log(f"  {error}", logging.ERROR)

            self._notify(success)

        return success

    def _execute_workflow(self, force_full: bool):
        os.makedirs(self.backup_dir, exist_ok=True)
        self._log(f"Local backup folder: {self.backup_dir}")

        for job in self.settings.jobs:
            self._log(f"#### {job.name} ####")
            outcome = self._run_job(job, force_full)
            self.summary.jobs.append(outcome)

        if self.settings.sync_remote:
            self.summary.remote = self._sync_remote()
        else:
            self._log("Remote sync not enabled, skipping")

    def _run_job(self, job: BackupJob, force_full: bool) -> JobOutcome:
        """
        Plan, archive and clean up one job.

        Local filesystem and archiver failures abort this job only.
        """
        outcome = JobOutcome(job.name)
        started = time.monotonic()
        stage = STAGE_PLAN

        try:
            decision = self.planner.plan(job, force_full)
            outcome.decision = decision

            stage = STAGE_ARCHIVE
            if decision.is_full:
                result = self.archiver.create(decision.full_path, job.source_paths)
            else:
                result = self.archiver.update(decision.full_path, job.source_paths, decision.incremental_path)

            if result.output:
                logger.debug(result.output)

            if not result.succeeded:
                self._job_error(outcome, STAGE_ARCHIVE, f"Archive failed. {result.describe()}")
                return outcome

            outcome.archive_size = get_archive_size(decision.target_path)
            self._log(f"Archive file created: {os.path.basename(decision.target_path)}. "
                      f"Size: {format_file_size(outcome.archive_size)}")

            # Only now that the new archive exists is the previous generation removed
            stage = STAGE_CLEANUP
            cleanup = self.planner.cleanup_local(job, decision)
            outcome.deleted = cleanup.deleted
            for message in cleanup.errors:
                self._job_error(outcome, STAGE_CLEANUP, message)

        except (OSError, CompressionError) as e:
            self._job_error(outcome, stage, str(e))

        self._log(f"Job {job.name} finished in {format_duration(time.monotonic() - started)}")
        return outcome

    def _sync_remote(self) -> ReconcileResult:
        remote = self.settings.remote

        try:
            store = self.remote_store or create_remote_store(remote, decode_secret(remote.password))
        except (StorageError, ValueError) as e:
            result = ReconcileResult()
            result.errors.append(JobError(STAGE_UNEXPECTED, f"Could not set up remote store: {e}"))
            self._log(str(result.errors[-1]), logging.ERROR)
            return result

        retrying = RetryingRemoteStore(
            store,
            attempts=remote.retry_attempts,
            delay=remote.retry_delay_seconds,
            sleep=self.retry_sleep
        )
        engine = ReconciliationEngine(retrying, verify_sizes=remote.verify_sizes, log=self._log)

        try:
            return engine.synchronize(self.backup_dir)
        except (StorageError, OSError) as e:
            result = ReconcileResult()
            result.errors.append(JobError(STAGE_UNEXPECTED, f"Remote sync failed: {e}"))
            self._log(str(result.errors[-1]), logging.ERROR)
            return result
        finally:
            retrying.close()

    def _test_full_archive(self, full_path: str) -> bool:
        result = self.archiver.test(full_path)
        if not result.succeeded:
            logger.debug(result.output)
        return result.succeeded

    def _notify(self, success: bool):
        if not self.settings.send_email:
            return

        if success and not self.settings.send_email_on_success:
            self._log("Success e-mail not enabled, skipping notification")
            return

        host = socket.gethostname()
        subject = f"Backup successful on {host}" if success else f"Backup FAILED on {host}"
        attachments = [self.log_file] if self.log_file else []
        email = self.settings.email

        try:
            result = self.notifier(email, decode_secret(email.password), subject, self.get_log_text(), attachments)
            if result.success:
                logger.info(f"Notification sent to {email.recipient}")
            else:
                logger.error(result.error_message)
        except Exception:
            # The run's own result stands whatever happens here
            logger.exception("Failed to send notification")

    def _job_error(self, outcome: JobOutcome, stage: str, message: str):
        error = JobError(stage, message, outcome.job_name)
        outcome.errors.append(error)
        self._log(str(error), logging.ERROR)

    def get_log_text(self) -> str:
        """Run log as e-mail body."""
        return '\n'.join(self.logs)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
