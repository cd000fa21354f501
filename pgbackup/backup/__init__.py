"""
Backup module for pgbackup.

This module handles the backup side:
- Artifact and folder naming
- PostgreSQL dump/restore tool invocation
- Storage (local, S3 and SSH)
- Backup cycle orchestration
- Retention policy enforcement
"""

from .engine import PostgresEngine, EngineError, ServerConnectionError
from .naming import ArtifactKind, folder_name, artifact_file_name, parse_database_name, parse_timestamp
from .storage import LocalStorage, S3Storage, SSHStorage, StorageBackend, StorageError, create_storage
from .retention import RetentionPruner
from .producer import BackupProducer, BackupError, CycleResult

__all__ = [
    'PostgresEngine',
    'EngineError',
    'ServerConnectionError',
    'ArtifactKind',
    'folder_name',
    'artifact_file_name',
    'parse_database_name',
    'parse_timestamp',
    'LocalStorage',
    'S3Storage',
    'SSHStorage',
    'StorageBackend',
    'StorageError',
    'create_storage',
    'RetentionPruner',
    'BackupProducer',
    'BackupError',
    'CycleResult'
]
