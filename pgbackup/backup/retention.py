"""
Retention policy enforcement for backups.

Deletes timestamp folders older than a per-destination age threshold. Age is
taken from the folder id itself, never from file modification times.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .naming import parse_timestamp
from .storage import StorageBackend, StorageError


logger = logging.getLogger(__name__)


class RetentionPruner:
    """
    Prunes old backup folders from one storage backend at a time.
    """

    def __init__(self):
        """Initialize retention pruner."""
        self.logs = []

    def prune(self, storage: StorageBackend, retention_days: Optional[int],
              now: Optional[datetime] = None) -> List[str]:
        """
        Delete every folder strictly older than retention_days.

        Folders exactly at the threshold are kept. Folder ids that do not
        parse as timestamps are never deleted.

        Args:
            storage: Backend to prune
            retention_days: Maximum age in days (None disables pruning)
            now: Reference instant (default: now, local time)

        Returns:
            Folder ids that were deleted

        Raises:
            StorageError: If the folder listing fails
        """
        location = storage.describe()

        if retention_days is None:
            self._log(f"Retention not configured for {location}, skipping")
            return []

        if now is None:
            now = datetime.now()
        threshold = timedelta(days=retention_days)

        self._log(f"Enforcing {retention_days} day retention on {location}")
        folders = storage.list_folders()

        deleted = []
        for folder_id in folders:
            created = parse_timestamp(folder_id)
            if created is None:
                self._log(f"Skipping unrecognised folder: {folder_id}")
                continue

            if now - created <= threshold:
                continue

            try:
                storage.delete_folder(folder_id)
                deleted.append(folder_id)
                self._log(f"Deleted expired backup: {folder_id}")
            except StorageError as e:
                self._log(f"Failed to delete {folder_id}: {e}", level=logging.ERROR)

        self._log(f"Retention complete for {location}: {len(deleted)} of {len(folders)} folder(s) deleted")
        return deleted

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
