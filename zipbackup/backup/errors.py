"""Failure values passed up to the executor instead of exceptions."""

from dataclasses import dataclass
from typing import Optional


# Stages a job or the remote pass can fail in
STAGE_PLAN = 'plan'
STAGE_ARCHIVE = 'archive'
STAGE_CLEANUP = 'cleanup'
STAGE_REMOTE_LIST = 'remote-list'
STAGE_REMOTE_DELETE = 'remote-delete'
STAGE_REMOTE_UPLOAD = 'remote-upload'
STAGE_UNEXPECTED = 'unexpected'


@dataclass
class JobError:
    """A recoverable failure of one job (job_name set) or of the remote pass (job_name None)."""
    stage: str
    message: str
    job_name: Optional[str] = None

    def __str__(self):
        scope = self.job_name or 'remote sync'
        return f"[{scope}] {self.stage}: {self.message}"
