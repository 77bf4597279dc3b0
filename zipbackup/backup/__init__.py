"""
Backup module for ZipBackup.

This module handles the core backup functionality including:
- Full/incremental planning and local retention
- 7-Zip archiving
- Remote stores (FTP, SFTP and S3) with retries
- Remote reconciliation
- Execution orchestration
"""

from .executor import BackupExecutor
from .compression import Archiver
from .storage import FTPStore, SFTPStore, S3Store, RetryingRemoteStore, create_remote_store
from .retention import RetentionPlanner, plan_mode
from .reconcile import ReconciliationEngine

__all__ = [
    'BackupExecutor',
    'Archiver',
    'FTPStore',
    'SFTPStore',
    'S3Store',
    'RetryingRemoteStore',
    'create_remote_store',
    'RetentionPlanner',
    'plan_mode',
    'ReconciliationEngine'
]
