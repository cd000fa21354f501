"""
Unit tests for retention policy enforcement (pgbackup/backup/retention.py).

Tests RetentionPruner for deleting expired timestamp folders.
"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from pgbackup.backup.retention import RetentionPruner
from pgbackup.backup.storage import LocalStorage, StorageError


class TestRetentionPruner:
    """Test RetentionPruner basic functionality."""

    def test_initialization(self):
        """Test RetentionPruner initializes correctly."""
        pruner = RetentionPruner()
        assert pruner.logs == []

    def test_no_retention_configured(self):
        """Test a None threshold never lists or deletes."""
        storage = MagicMock()
        storage.describe.return_value = 'mock'

        assert RetentionPruner().prune(storage, None) == []
        storage.list_folders.assert_not_called()
        storage.delete_folder.assert_not_called()

    @freeze_time("2025-01-08 00:00:00")
    def test_boundary(self, tmp_path):
        """Test folders older than N days go, and the one exactly N days old stays."""
        for folder_id in ('20250100_000000', '20241231_235959', '20250101_000000', '20250101_000001'):
            (tmp_path / folder_id).mkdir()
        storage = LocalStorage(str(tmp_path))

        deleted = RetentionPruner().prune(storage, 7)

        assert deleted == ['20241231_235959']
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            '20250100_000000', '20250101_000000', '20250101_000001'
        ]

    def test_explicit_now(self, tmp_path, make_backup_folder):
        """Test the reference instant can be passed in."""
        make_backup_folder(tmp_path, '20250101_000000')
        make_backup_folder(tmp_path, '20250110_000000')

        deleted = RetentionPruner().prune(LocalStorage(str(tmp_path)), 1, now=datetime(2025, 1, 10, 12))

        assert deleted == ['20250101_000000']

    @freeze_time("2025-06-01")
    def test_zero_days_keeps_nothing_older_than_now(self, tmp_path):
        (tmp_path / '20250531_235959').mkdir()
        (tmp_path / '20250601_000000').mkdir()

        assert RetentionPruner().prune(LocalStorage(str(tmp_path)), 0) == ['20250531_235959']

    @freeze_time("2025-06-01")
    def test_unparseable_ids_never_deleted(self):
        """Test ids that are not timestamps are skipped, whatever their age."""
        storage = MagicMock()
        storage.describe.return_value = 'mock'
        storage.list_folders.return_value = ['20200101_000000', 'archive_2019', '20201301_000000']

        deleted = RetentionPruner().prune(storage, 30)

        assert deleted == ['20200101_000000']
        storage.delete_folder.assert_called_once_with('20200101_000000')

    @freeze_time("2025-06-01")
    def test_delete_failure_continues(self):
        """Test one failed delete does not stop the others."""
        storage = MagicMock()
        storage.describe.return_value = 'mock'
        storage.list_folders.return_value = ['20200102_000000', '20200101_000000']
        storage.delete_folder.side_effect = [StorageError('busy'), None]

        pruner = RetentionPruner()
        deleted = pruner.prune(storage, 30)

        assert deleted == ['20200101_000000']
        assert any('Failed to delete 20200102_000000' in line for line in pruner.logs)

    def test_listing_failure_propagates(self):
        storage = MagicMock()
        storage.describe.return_value = 'mock'
        storage.list_folders.side_effect = StorageError('unreachable')

        with pytest.raises(StorageError):
            RetentionPruner().prune(storage, 7)
