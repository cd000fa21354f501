"""
Backup producer - runs one complete backup cycle.

Workflow:
1. Name the cycle's timestamp folder from the cycle start instant
2. Create the folder under the local backup root
3. Dump the whole cluster
4. Dump globals (roles, tablespaces, permissions)
5. Dump every user database separately
6. Push the folder to every enabled destination
7. Prune every destination by its own retention threshold

Only step 2 is fatal. Every other failure is recorded and the cycle goes on,
finishing with a 'partial' status.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from pgbackup.config import Config, DestinationKind
from .engine import PostgresEngine, EngineError
from .naming import ArtifactKind, artifact_file_name, folder_name
from .retention import RetentionPruner
from .storage import LocalStorage, StorageBackend, StorageError, build_storages


logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_PARTIAL = 'partial'


class BackupError(Exception):
    """Raised when a cycle cannot start at all."""
    pass


class ArtifactResult:
    """Outcome of one dump."""

    def __init__(self, kind: ArtifactKind, file_name: str, database: Optional[str] = None):
        self.kind = kind
        self.file_name = file_name
        self.database = database
        self.size_bytes = None
        self.error = None

    @property
    def success(self) -> bool:
        return self.error is None

    def __repr__(self):
        state = 'ok' if self.success else 'failed'
        return f'<ArtifactResult {self.file_name} {state}>'


class CycleResult:
    """Outcome of one backup cycle."""

    def __init__(self, folder_id: str, folder_path: str):
        self.folder_id = folder_id
        self.folder_path = folder_path
        self.started_at = datetime.now()
        self.completed_at = None
        self.artifacts = []  # type: List[ArtifactResult]
        self.pushes = {}  # type: Dict[DestinationKind, Optional[str]]
        self.pruned = {}  # type: Dict[DestinationKind, List[str]]
        self.errors = []  # type: List[str]
        self.logs = []  # type: List[str]

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        return STATUS_SUCCESS if self.success else STATUS_PARTIAL

    def __repr__(self):
        return f'<CycleResult {self.folder_id} {self.status}>'


class BackupProducer:
    """
    Orchestrates a backup cycle: dumps into a local timestamp folder, then
    replicates and prunes.
    """

    def __init__(self, config: Config, engine: Optional[PostgresEngine] = None,
                 storages: Optional[Dict[DestinationKind, StorageBackend]] = None):
        """
        Initialize backup producer.

        Args:
            config: Runtime configuration
            engine: Dump engine (default: PostgresEngine for config.postgres)
            storages: Backends keyed by destination kind (default: one per
                enabled destination)
        """
        self.config = config
        self.engine = engine or PostgresEngine(config.postgres)
        self.storages = storages if storages is not None else build_storages(config)
        self.pruner = RetentionPruner()
        self.logs = []

        local = self.storages.get(DestinationKind.LOCAL)
        if not isinstance(local, LocalStorage):
            local = LocalStorage(config.local.root, retention_days=config.local.retention_days)
        self.local = local

    def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one backup cycle start to finish.

        Args:
            now: Cycle start instant (default: now, local time)

        Returns:
            CycleResult with per-step outcomes

        Raises:
            BackupError: If the local backup folder cannot be created
        """
        self.logs = []
        if now is None:
            now = datetime.now()
        folder_id = folder_name(now)
        self._log(f"Starting backup cycle: {folder_id}")

        try:
            folder_path = self.local.create_folder(folder_id)
        except StorageError as e:
            self._log(f"Cannot create backup folder: {e}", level=logging.ERROR)
            raise BackupError(f"Cannot create backup folder {folder_id}: {e}") from e

        result = CycleResult(folder_id, str(folder_path))
        self._log(f"Backup folder: {folder_path}")

        self._dump_artifacts(result)
        self._push(result)
        self._prune(result, now)

        result.completed_at = datetime.now()
        if result.success:
            self._log(f"Backup cycle {folder_id} completed successfully")
        else:
            self._log(
                f"Backup cycle {folder_id} completed with {len(result.errors)} error(s)",
                level=logging.WARNING
            )

        result.logs = list(self.logs)
        return result

    def _dump(self, result: CycleResult, kind: ArtifactKind, database: Optional[str] = None):
        file_name = artifact_file_name(kind, database)
        artifact = ArtifactResult(kind, file_name, database)
        output_path = str(self.local.folder_path(result.folder_id) / file_name)

        try:
            if kind is ArtifactKind.CLUSTER:
                artifact.size_bytes = self.engine.dump_cluster(output_path)
            elif kind is ArtifactKind.GLOBALS:
                artifact.size_bytes = self.engine.dump_globals(output_path)
            elif kind is ArtifactKind.DATABASE:
                artifact.size_bytes = self.engine.dump_database(database, output_path)
            else:
                raise ValueError(f"Unhandled artifact kind: {kind}")
            self._log(f"Created {file_name} ({artifact.size_bytes / 1024 / 1024:.2f} MB)")
        except EngineError as e:
            artifact.error = str(e)
            result.errors.append(f"{file_name}: {e}")
            self._log(f"Failed to create {file_name}: {e}", level=logging.ERROR)

        result.artifacts.append(artifact)
        return artifact

    def _dump_artifacts(self, result: CycleResult):
        """Steps 3-5. Each dump is independent of the others."""
        self._log("Dumping full cluster")
        self._dump(result, ArtifactKind.CLUSTER)

        self._log("Dumping globals")
        self._dump(result, ArtifactKind.GLOBALS)

        try:
            databases = self.engine.list_databases()
        except EngineError as e:
            result.errors.append(f"database listing: {e}")
            self._log(f"Failed to list databases: {e}", level=logging.ERROR)
            return

        self._log(f"Dumping {len(databases)} database(s)")
        for database in databases:
            self._dump(result, ArtifactKind.DATABASE, database)

    def _push(self, result: CycleResult):
        """Step 6."""
        for kind, storage in self.storages.items():
            try:
                storage.push_folder(result.folder_path, result.folder_id)
                result.pushes[kind] = None
                if kind is not DestinationKind.LOCAL:
                    self._log(f"Pushed {result.folder_id} to {storage.describe()}")
            except StorageError as e:
                result.pushes[kind] = str(e)
                result.errors.append(f"push to {kind.value}: {e}")
                self._log(f"Failed to push to {storage.describe()}: {e}", level=logging.ERROR)

    def _prune(self, result: CycleResult, now: datetime):
        """Step 7. Ages are measured from the cycle start."""
        storages = dict(self.storages)
        storages.setdefault(DestinationKind.LOCAL, self.local)

        for kind, storage in storages.items():
            try:
                result.pruned[kind] = self.pruner.prune(storage, storage.retention_days, now=now)
            except StorageError as e:
                result.pruned[kind] = []
                self._log(f"Retention failed on {storage.describe()}: {e}", level=logging.ERROR)

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


def run_backup_cycle(config: Config) -> CycleResult:
    """
    Run one backup cycle with backends built from config.

    This is what the scheduler calls.
    """
    producer = BackupProducer(config)
    return producer.run_cycle()
