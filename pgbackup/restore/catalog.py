"""
Backup discovery across sources.

Local folders are inspected up front. Remote folders are listed by name only
and inspected on demand, since listing every remote folder's contents is
slow. Inspection results are cached for the life of the catalog.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pgbackup.backup.naming import ArtifactKind, classify_artifact, parse_timestamp, ARTIFACT_SUFFIX
from pgbackup.backup.storage import LocalStorage, StorageBackend, StorageError
from pgbackup.config import DestinationKind


logger = logging.getLogger(__name__)


class Completeness(Enum):
    """Which artifact kinds a folder holds."""
    EMPTY = 'empty'
    COMPLETE = 'complete'
    PARTIAL = 'partial'
    INCOMPLETE = 'incomplete'


def classify_completeness(file_names: Iterable[str]) -> Completeness:
    """
    Classify a folder by the artifacts it contains.

    complete: cluster and globals; partial: cluster only; incomplete: any
    other non-empty set; empty: no artifacts at all.
    """
    kinds = set()
    for name in file_names:
        parsed = classify_artifact(name)
        if parsed is not None:
            kinds.add(parsed[0])

    if not kinds:
        return Completeness.EMPTY
    if ArtifactKind.CLUSTER in kinds and ArtifactKind.GLOBALS in kinds:
        return Completeness.COMPLETE
    if ArtifactKind.CLUSTER in kinds:
        return Completeness.PARTIAL
    return Completeness.INCOMPLETE


def list_backup_files(folder_path: str) -> List[Tuple[ArtifactKind, Optional[str], str, int]]:
    """
    Artifacts present in a local folder.

    Returns:
        (kind, database name or None, file name, size) tuples; cluster first,
        then globals, then databases by name
    """
    folder = Path(folder_path)
    if not folder.is_dir():
        return []

    order = {ArtifactKind.CLUSTER: 0, ArtifactKind.GLOBALS: 1, ArtifactKind.DATABASE: 2}
    entries = []
    for path in folder.iterdir():
        if not path.is_file():
            continue
        parsed = classify_artifact(path.name)
        if parsed is None:
            continue
        kind, database = parsed
        entries.append((kind, database, path.name, path.stat().st_size))

    return sorted(entries, key=lambda entry: (order[entry[0]], entry[1] or ''))


def list_backup_databases(folder_path: str) -> List[str]:
    """Database names with a per-database artifact in a local folder."""
    return [database for kind, database, _, _ in list_backup_files(folder_path)
            if kind is ArtifactKind.DATABASE]


def list_artifact_files(folder_path: str) -> List[Path]:
    """Every *.sql.gz file in a local folder, sorted by name."""
    folder = Path(folder_path)
    if not folder.is_dir():
        return []
    return sorted(p for p in folder.iterdir() if p.is_file() and p.name.endswith(ARTIFACT_SUFFIX))


def directory_size(path) -> int:
    """Recursive size of a directory in bytes."""
    total = 0
    for item in Path(path).rglob('*'):
        if item.is_file():
            total += item.stat().st_size
    return total


def format_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return '?'
    size = float(size_bytes)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if size < 1024 or unit == 'T':
            if unit == 'B':
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024


def format_age(age: Optional[timedelta]) -> str:
    """'< 1 hour', 'N hours' or 'N days'."""
    if age is None:
        return 'unknown'
    hours = int(age.total_seconds() // 3600)
    if hours < 1:
        return '< 1 hour'
    if hours < 24:
        return f"{hours} hours"
    return f"{hours // 24} days"


class FolderInfo:
    """One discovered timestamp folder."""

    def __init__(self, folder_id: str, completeness: Optional[Completeness] = None,
                 size_bytes: Optional[int] = None, age: Optional[timedelta] = None,
                 artifacts: Optional[Dict[str, int]] = None):
        self.folder_id = folder_id
        self.completeness = completeness
        self.size_bytes = size_bytes
        self.age = age
        self.artifacts = artifacts

    @property
    def inspected(self) -> bool:
        return self.artifacts is not None

    @property
    def databases(self) -> List[str]:
        if not self.artifacts:
            return []
        names = []
        for file_name in self.artifacts:
            parsed = classify_artifact(file_name)
            if parsed is not None and parsed[0] is ArtifactKind.DATABASE:
                names.append(parsed[1])
        return sorted(names)

    def summary(self) -> str:
        if not self.inspected:
            return self.folder_id
        return (f"{self.folder_id} - {format_size(self.size_bytes)} - "
                f"{format_age(self.age)} ago [{self.completeness.value}]")

    def __repr__(self):
        return f'<FolderInfo {self.folder_id} {self.completeness}>'


class SourceStatus:
    """Reachability and folder count of one source."""

    def __init__(self, kind: DestinationKind, location: str, reachable: bool,
                 count: int = 0, error: Optional[str] = None):
        self.kind = kind
        self.location = location
        self.reachable = reachable
        self.count = count
        self.error = error

    def __repr__(self):
        return f'<SourceStatus {self.kind.value} reachable={self.reachable} count={self.count}>'


class BackupCatalog:
    """
    Discovers backup folders on storage backends.
    """

    def __init__(self, now: Optional[datetime] = None):
        """
        Args:
            now: Fixed reference instant for ages (default: wall clock per call)
        """
        self._now = now
        self._cache = {}  # type: Dict[Tuple[str, str], FolderInfo]

    def _age(self, folder_id: str) -> Optional[timedelta]:
        created = parse_timestamp(folder_id)
        if created is None:
            return None
        return (self._now or datetime.now()) - created

    def refresh(self):
        """Forget cached inspections."""
        self._cache.clear()

    def discover(self, storage: StorageBackend) -> List[FolderInfo]:
        """
        List folders on a backend, newest first.

        Local folders come back fully inspected; remote ones carry only their
        id and age until inspect() is called for them.

        Raises:
            StorageError: If the backend cannot be listed
        """
        folders = []
        for folder_id in storage.list_folders():
            key = (storage.describe(), folder_id)
            if key in self._cache:
                folders.append(self._cache[key])
            elif isinstance(storage, LocalStorage):
                folders.append(self.inspect(storage, folder_id))
            else:
                folders.append(FolderInfo(folder_id, age=self._age(folder_id)))
        return folders

    def inspect(self, storage: StorageBackend, folder_id: str) -> FolderInfo:
        """
        List a folder's artifacts and classify it.

        Raises:
            StorageError: If the folder cannot be listed
        """
        key = (storage.describe(), folder_id)
        if key in self._cache:
            return self._cache[key]

        artifacts = storage.list_artifacts(folder_id)
        if isinstance(storage, LocalStorage):
            size = directory_size(storage.folder_path(folder_id))
        else:
            size = sum(artifacts.values())

        info = FolderInfo(
            folder_id,
            completeness=classify_completeness(artifacts),
            size_bytes=size,
            age=self._age(folder_id),
            artifacts=artifacts
        )
        self._cache[key] = info
        return info

    def describe_all_sources(self, storages: Dict[DestinationKind, StorageBackend]) -> List[SourceStatus]:
        """
        Reachability and folder count for every source. Never raises.
        """
        statuses = []
        for kind in DestinationKind:
            storage = storages.get(kind)
            if storage is None:
                statuses.append(SourceStatus(kind, 'not configured', False, error='not configured'))
                continue

            location = storage.describe()
            if not storage.is_reachable():
                statuses.append(SourceStatus(kind, location, False, error='not accessible'))
                continue

            try:
                count = len(storage.list_folders())
                statuses.append(SourceStatus(kind, location, True, count=count))
            except StorageError as e:
                logger.warning(f"Failed to list {location}: {e}")
                statuses.append(SourceStatus(kind, location, False, error=str(e)))

        return statuses
