"""
Restore module for pgbackup.

This module handles the restore side:
- Backup discovery and classification across sources
- Folder and scope selection (interactive or from parameters)
- Integrity verification, restore and post-restore checks
"""

from .catalog import BackupCatalog, Completeness, FolderInfo, SourceStatus, classify_completeness
from .selector import (
    ArtifactNotFoundError,
    InvalidSelectionError,
    RestoreRequest,
    RestoreScope,
    RestoreScopeKind,
    RestoreSelector,
    request_from_parameters,
)
from .executor import IntegrityError, RestoreExecutor, RestoreResult, RestoreState, verify_backup_integrity

__all__ = [
    'BackupCatalog',
    'Completeness',
    'FolderInfo',
    'SourceStatus',
    'classify_completeness',
    'ArtifactNotFoundError',
    'InvalidSelectionError',
    'RestoreRequest',
    'RestoreScope',
    'RestoreScopeKind',
    'RestoreSelector',
    'request_from_parameters',
    'IntegrityError',
    'RestoreExecutor',
    'RestoreResult',
    'RestoreState',
    'verify_backup_integrity'
]
