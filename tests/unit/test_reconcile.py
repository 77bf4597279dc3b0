"""
Unit tests for remote reconciliation (zipbackup/backup/reconcile.py).

Tests ReconciliationEngine against the in-memory remote store.
"""

import os
from unittest.mock import MagicMock

import pytest

from zipbackup.backup.errors import STAGE_REMOTE_DELETE, STAGE_REMOTE_LIST, STAGE_REMOTE_UPLOAD
from zipbackup.backup.reconcile import (
    ReconciliationEngine,
    filter_remote_listing,
    list_local_archives
)
from zipbackup.backup.storage import RetryingRemoteStore


def _engine(store, verify_sizes=True, lines=None):
    retrying = RetryingRemoteStore(store, attempts=3, delay=0, sleep=MagicMock())
    return ReconciliationEngine(
        retrying,
        verify_sizes=verify_sizes,
        log=lines.append if lines is not None else (lambda message: None)
    )


class TestListing:
    """Test local and remote listing filters."""

    def test_list_local_archives(self, backup_dir, make_archive):
        """Test that only backup archives are listed."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z')
        make_archive('I-Logs-2024-01-06-03-04-05.7z')
        make_archive('notes.txt')
        (backup_dir / 'F-dir.7z').mkdir()

        names = [os.path.basename(p) for p in list_local_archives(str(backup_dir))]

        assert names == ['F-Logs-2024-01-05-03-04-05.7z', 'I-Logs-2024-01-06-03-04-05.7z']

    def test_list_local_missing_directory(self, tmp_path):
        """Test a directory that does not exist."""
        assert list_local_archives(str(tmp_path / 'missing')) == []

    def test_filter_remote_listing(self):
        """Test case-insensitive remote filter."""
        names = ['F-a.7z', 'i-b.7Z', 'index.html', 'F-c.zip', 'Other.7z']

        assert filter_remote_listing(names) == ['F-a.7z', 'i-b.7Z']


class TestReconcile:
    """Test a reconciliation pass."""

    def test_round_trip(self, backup_dir, make_archive, memory_store):
        """Test that the remote ends up holding exactly the local names."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'full')
        make_archive('I-Logs-2024-01-06-03-04-05.7z', b'incr')
        memory_store.files['F-Logs-2023-12-01-00-00-00.7z'] = b'old'
        memory_store.files['I-Logs-2024-01-06-03-04-05.7z'] = b'incr'
        memory_store.files['unrelated.txt'] = b'keep me'

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert result.succeeded
        assert result.uploaded == ['F-Logs-2024-01-05-03-04-05.7z']
        assert result.deleted_remote == ['F-Logs-2023-12-01-00-00-00.7z']
        assert result.skipped == ['I-Logs-2024-01-06-03-04-05.7z']
        assert result.bytes_uploaded == 4
        assert sorted(memory_store.files) == [
            'F-Logs-2024-01-05-03-04-05.7z',
            'I-Logs-2024-01-06-03-04-05.7z',
            'unrelated.txt'
        ]

    def test_idempotent(self, backup_dir, make_archive, memory_store):
        """Test that a second pass without local changes does nothing."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'full')
        make_archive('I-Logs-2024-01-06-03-04-05.7z', b'incr')
        engine = _engine(memory_store)

        engine.synchronize(str(backup_dir))
        memory_store.operations.clear()
        second = engine.synchronize(str(backup_dir))

        assert second.succeeded
        assert second.uploaded == []
        assert second.deleted_remote == []
        assert 'upload' not in memory_store.operation_names()
        assert 'delete' not in memory_store.operation_names()

    def test_deletes_run_before_uploads(self, backup_dir, make_archive, memory_store):
        """Test operation order."""
        make_archive('F-Logs-2024-02-01-00-00-00.7z')
        memory_store.files['F-Logs-2024-01-01-00-00-00.7z'] = b'old'

        _engine(memory_store).synchronize(str(backup_dir))

        names = [name for name in memory_store.operation_names() if name in ('upload', 'delete')]
        assert names == ['delete', 'upload']

    def test_size_mismatch_reuploads(self, backup_dir, make_archive, memory_store):
        """Test that a truncated remote copy is replaced."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'complete archive')
        memory_store.files['F-Logs-2024-01-05-03-04-05.7z'] = b'compl'
        lines = []

        result = _engine(memory_store, lines=lines).synchronize(str(backup_dir))

        assert result.uploaded == ['F-Logs-2024-01-05-03-04-05.7z']
        assert memory_store.files['F-Logs-2024-01-05-03-04-05.7z'] == b'complete archive'
        assert any('size does not match file size on remote (5 B)' in line for line in lines)

    def test_unknown_size_reuploads(self, backup_dir, make_archive, memory_store):
        """Test that a size that cannot be determined is treated as a mismatch."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'full')
        memory_store.files['F-Logs-2024-01-05-03-04-05.7z'] = b'full'
        memory_store.fail_sizes.add('F-Logs-2024-01-05-03-04-05.7z')

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert result.succeeded
        assert result.uploaded == ['F-Logs-2024-01-05-03-04-05.7z']
        assert memory_store.operation_names().count('size') == 3

    def test_size_verification_off_skips_present_files(self, backup_dir, make_archive, memory_store):
        """Test that without size verification present names are trusted."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'complete archive')
        memory_store.files['F-Logs-2024-01-05-03-04-05.7z'] = b'compl'

        result = _engine(memory_store, verify_sizes=False).synchronize(str(backup_dir))

        assert result.uploaded == []
        assert 'size' not in memory_store.operation_names()

    def test_names_compare_case_insensitively(self, backup_dir, make_archive, memory_store):
        """Test that a remote name in other case is neither deleted nor duplicated."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'full')
        memory_store.files['f-logs-2024-01-05-03-04-05.7z'] = b'ful'

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert result.deleted_remote == []
        assert result.uploaded == ['f-logs-2024-01-05-03-04-05.7z']
        assert memory_store.files == {'f-logs-2024-01-05-03-04-05.7z': b'full'}

    def test_remote_already_gone_counts_as_deleted(self, backup_dir, memory_store):
        """Test a file vanishing between listing and delete."""
        engine = _engine(memory_store)

        result = engine.reconcile([], ['F-Gone-2024-01-01-00-00-00.7z'])

        assert result.succeeded
        assert result.deleted_remote == ['F-Gone-2024-01-01-00-00-00.7z']

    def test_listing_failure_aborts(self, backup_dir, make_archive, memory_store):
        """Test that an unavailable listing stops the pass."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z')
        memory_store.fail_list = True

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert not result.succeeded
        assert result.errors[0].stage == STAGE_REMOTE_LIST
        assert 'listing refused' in result.errors[0].message
        assert 'upload' not in memory_store.operation_names()

    def test_delete_failure_aborts(self, backup_dir, make_archive, memory_store):
        """Test that a failed delete stops the pass before any upload."""
        make_archive('F-Logs-2024-02-01-00-00-00.7z')
        memory_store.files['F-Logs-2024-01-01-00-00-00.7z'] = b'old'
        memory_store.fail_deletes.add('F-Logs-2024-01-01-00-00-00.7z')

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert not result.succeeded
        assert result.errors[0].stage == STAGE_REMOTE_DELETE
        assert 'upload' not in memory_store.operation_names()

    def test_upload_failure_aborts(self, backup_dir, make_archive, memory_store):
        """Test that the first failed upload stops the pass."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z')
        make_archive('I-Logs-2024-01-06-03-04-05.7z')
        memory_store.fail_uploads.add('F-Logs-2024-01-05-03-04-05.7z')

        result = _engine(memory_store).synchronize(str(backup_dir))

        assert not result.succeeded
        assert result.errors[0].stage == STAGE_REMOTE_UPLOAD
        assert 'F-Logs-2024-01-05-03-04-05.7z' in result.errors[0].message
        assert result.uploaded == []
        assert 'I-Logs-2024-01-06-03-04-05.7z' not in memory_store.files

    def test_upload_logs_throughput(self, backup_dir, make_archive, memory_store):
        """Test the per-upload summary line."""
        make_archive('F-Logs-2024-01-05-03-04-05.7z', b'x' * 2048)
        lines = []
        clock = MagicMock(side_effect=[100.0, 102.0])
        engine = ReconciliationEngine(
            RetryingRemoteStore(memory_store, attempts=1, delay=0),
            log=lines.append,
            clock=clock
        )

        engine.synchronize(str(backup_dir))

        assert (
            'Upload of: F-Logs-2024-01-05-03-04-05.7z (2.00 KB) completed in: 0:00:02 (1,024 B / second)'
            in lines
        )
