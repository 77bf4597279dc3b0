"""
Shared pytest fixtures for ZipBackup tests.

This module provides fixtures for:
- Backup directory, job and settings fixtures
- A fake 7-Zip archiver writing placeholder archives
- An in-memory remote store with injectable failures
- Mock fixtures for external services (S3, SSH)
- A deterministic machine key for secret obfuscation
"""

import os
from typing import Dict, List, Optional, Set
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from zipbackup.backup.compression import ArchiveResult
from zipbackup.backup.storage import RemoteFileNotFound, RemoteStore, StorageError
from zipbackup.models import BackupJob, BackupSettings, RemoteSettings
from zipbackup.utils import master_key


class MemoryStore(RemoteStore):
    """
    Remote store keeping files in a dict.

    Failures are injected by name: names in fail_uploads, fail_deletes or
    fail_sizes raise StorageError for that operation. fail_list makes every
    listing fail. Missing files raise RemoteFileNotFound.
    """

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files: Dict[str, bytes] = dict(files or {})
        self.operations: List[tuple] = []
        self.fail_uploads: Set[str] = set()
        self.fail_deletes: Set[str] = set()
        self.fail_sizes: Set[str] = set()
        self.fail_list = False
        self.closed = False

    def list_files(self) -> List[str]:
        self.operations.append(('list',))
        if self.fail_list:
            raise StorageError("listing refused")
        return sorted(self.files)

    def upload(self, local_path: str, remote_name: Optional[str] = None):
        name = remote_name or os.path.basename(local_path)
        self.operations.append(('upload', name))
        if name in self.fail_uploads:
            raise StorageError(f"upload of {name} refused")
        with open(local_path, 'rb') as f:
            self.files[name] = f.read()

    def download(self, remote_name: str, local_path: str):
        self.operations.append(('download', remote_name))
        if remote_name not in self.files:
            raise RemoteFileNotFound(remote_name)
        with open(local_path, 'wb') as f:
            f.write(self.files[remote_name])

    def size(self, remote_name: str) -> int:
        self.operations.append(('size', remote_name))
        if remote_name in self.fail_sizes:
            raise StorageError(f"size of {remote_name} unavailable")
        if remote_name not in self.files:
            raise RemoteFileNotFound(remote_name)
        return len(self.files[remote_name])

    def delete(self, remote_name: str):
        self.operations.append(('delete', remote_name))
        if remote_name in self.fail_deletes:
            raise StorageError(f"delete of {remote_name} refused")
        if remote_name not in self.files:
            raise RemoteFileNotFound(remote_name)
        del self.files[remote_name]

    def make_directory(self, name: str):
        self.operations.append(('mkdir', name))

    def remove_directory(self, name: str):
        self.operations.append(('rmdir', name))

    def close(self):
        self.closed = True

    def operation_names(self) -> List[str]:
        return [op[0] for op in self.operations]


class FakeArchiver:
    """
    Stand-in for Archiver writing small placeholder files.

    Set fail_create/fail_update to make the next archive operation fail,
    and test_passes to control integrity test results.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_create = False
        self.fail_update = False
        self.test_passes = True

    def create(self, container_path: str, source_paths: List[str]) -> ArchiveResult:
        self.calls.append(('create', os.path.basename(container_path), list(source_paths)))
        if self.fail_create:
            return ArchiveResult(2, 'Fatal error')
        with open(container_path, 'wb') as f:
            f.write(b'full archive ' + os.path.basename(container_path).encode())
        return ArchiveResult(0, 'Everything is Ok')

    def update(self, container_path: str, source_paths: List[str], incremental_path: str) -> ArchiveResult:
        self.calls.append(('update', os.path.basename(container_path), os.path.basename(incremental_path)))
        if self.fail_update:
            return ArchiveResult(None, '', 'Archiver timed out after 1800 seconds')
        with open(incremental_path, 'wb') as f:
            f.write(b'incremental ' + os.path.basename(incremental_path).encode())
        return ArchiveResult(0, 'Everything is Ok')

    def test(self, container_path: str) -> ArchiveResult:
        self.calls.append(('test', os.path.basename(container_path)))
        return ArchiveResult(0 if self.test_passes else 2, 'Everything is Ok' if self.test_passes else 'Data Error')


@pytest.fixture(autouse=True)
def machine_key(monkeypatch):
    """
    Replace the machine-derived key with a fixed one.

    Secrets encoded in one test decode in the same test regardless of host.
    """
    manager = master_key.MasterKeyManager('test-machine-secret')
    monkeypatch.setattr(master_key, '_default_manager', manager)
    return manager


@pytest.fixture
def backup_dir(tmp_path):
    """Empty local archive directory."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def logs_job():
    """
    Backup job named Logs.

    Full archives older than 20 days are replaced, 3 incrementals retained.
    """
    return BackupJob(
        name='Logs',
        source_paths=['/var/log/app'],
        max_full_age_days=20,
        retain_incremental_count=3
    )


@pytest.fixture
def make_archive(backup_dir):
    """
    Factory creating archive files in the backup directory.

    Usage: make_archive('F-Logs-2024-01-01-00-00-00.7z', b'content')
    """
    def _make(name: str, content: bytes = b'archive data') -> str:
        path = backup_dir / name
        path.write_bytes(content)
        return str(path)

    return _make


@pytest.fixture
def settings(backup_dir, logs_job):
    """
    Settings with the Logs job, remote sync enabled and e-mail disabled.
    """
    return BackupSettings(
        archiver_path='7za',
        local_backup_dir=str(backup_dir),
        verify_full_archive=True,
        jobs=[logs_job],
        sync_remote=True,
        remote=RemoteSettings(protocol='ftp', retry_attempts=3, retry_delay_seconds=0),
        send_email=False
    )


@pytest.fixture
def memory_store():
    """In-memory remote store."""
    return MemoryStore()


@pytest.fixture
def fake_archiver():
    """Fake 7-Zip archiver writing placeholder archives."""
    return FakeArchiver()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; the SFTP client is
    mock_ssh_client.return_value.open_sftp.return_value.
    """
    with patch('zipbackup.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh
