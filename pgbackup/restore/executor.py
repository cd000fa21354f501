"""
Restore executor - applies one backup artifact to the target server.

States, terminal on first failure:
    REQUESTED -> RESOLVED -> VERIFIED -> CONFIRMED -> APPLIED -> POST_VERIFIED

RESOLVED:      folder available locally (fetched for remote sources)
VERIFIED:      every *.sql.gz in the folder decompresses cleanly
CONFIRMED:     server reachable and the operator said yes (skipped when automated)
APPLIED:       artifact streamed through psql
POST_VERIFIED: read-only check of databases, roles or tables
"""

import gzip
import logging
import os
import zlib
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pgbackup.backup.engine import EngineError, PostgresEngine, ServerConnectionError
from pgbackup.backup.storage import StorageBackend, StorageError
from pgbackup.config import Config, DestinationKind
from .catalog import list_artifact_files
from .selector import (
    ArtifactNotFoundError,
    DryRunReport,
    RestoreRequest,
    RestoreScope,
    RestoreScopeKind,
    dry_run,
)


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class IntegrityError(Exception):
    """Raised when backup artifacts fail to decompress."""

    def __init__(self, message: str, report: Optional['IntegrityReport'] = None):
        super().__init__(message)
        self.report = report

    @property
    def corrupted(self) -> List[str]:
        if self.report is None:
            return []
        return sorted(self.report.corrupted)


class RestoreCancelled(Exception):
    """Raised when the operator declines a confirmation."""
    pass


class RestoreState(Enum):
    REQUESTED = 'requested'
    RESOLVED = 'resolved'
    VERIFIED = 'verified'
    CONFIRMED = 'confirmed'
    APPLIED = 'applied'
    POST_VERIFIED = 'post_verified'


class IntegrityReport:
    """Result of checking every artifact in a folder."""

    def __init__(self, checked: List[str], corrupted: Dict[str, str]):
        self.checked = checked
        self.corrupted = corrupted

    @property
    def ok(self) -> bool:
        return bool(self.checked) and not self.corrupted

    def message(self) -> str:
        if not self.checked:
            return 'No backup files found in folder'
        if self.corrupted:
            return f"Found {len(self.corrupted)} corrupted file(s) out of {len(self.checked)}"
        return f"All {len(self.checked)} backup file(s) verified successfully"


def check_gzip(path: str) -> Optional[str]:
    """
    Read a gzip file to the end.

    Returns:
        None if it decompresses cleanly, else the error text
    """
    try:
        with gzip.open(path, 'rb') as gz:
            while gz.read(CHUNK_SIZE):
                pass
    except (OSError, EOFError, zlib.error) as e:
        return str(e) or e.__class__.__name__
    return None


def verify_backup_integrity(folder_path: str) -> IntegrityReport:
    """Check every *.sql.gz file in a local folder."""
    checked = []
    corrupted = {}
    for path in list_artifact_files(folder_path):
        checked.append(path.name)
        error = check_gzip(str(path))
        if error is None:
            logger.info(f"{path.name} - OK")
        else:
            logger.error(f"{path.name} - CORRUPTED ({error})")
            corrupted[path.name] = error
    return IntegrityReport(checked, corrupted)


def always_confirm(message: str) -> bool:
    return True


def never_confirm(message: str) -> bool:
    return False


class RestoreResult:
    """Outcome of one restore."""

    def __init__(self, request: RestoreRequest):
        self.request = request
        self.state = RestoreState.REQUESTED
        self.folder_path = None
        self.integrity = None  # type: Optional[IntegrityReport]
        self.verification = {}  # type: Dict[str, List[str]]
        self.error = None
        self.cancelled = False

    @property
    def success(self) -> bool:
        return self.error is None and self.state in (RestoreState.APPLIED, RestoreState.POST_VERIFIED)

    @property
    def corrupted(self) -> List[str]:
        if self.integrity is None:
            return []
        return sorted(self.integrity.corrupted)

    def __repr__(self):
        return f'<RestoreResult {self.request!r} state={self.state.value} success={self.success}>'


class RestoreExecutor:
    """
    Runs restores against the configured server.
    """

    def __init__(self, config: Config, storages: Dict[DestinationKind, StorageBackend],
                 engine: Optional[PostgresEngine] = None,
                 confirm: Optional[Callable[[str], bool]] = None,
                 automated: bool = False):
        """
        Initialize restore executor.

        Args:
            config: Runtime configuration
            storages: Backends keyed by source kind
            engine: Restore engine (default: PostgresEngine for config.postgres)
            confirm: Called with a question before anything destructive;
                automated mode always proceeds, otherwise a missing gate declines
            automated: Integrity failures are fatal and prompts are skipped
        """
        self.config = config
        self.storages = storages
        self.engine = engine or PostgresEngine(config.postgres)
        self.automated = automated
        if automated:
            self.confirm = always_confirm
        else:
            self.confirm = confirm or never_confirm
        self.logs = []

    def resolve(self, source: DestinationKind, folder_id: str) -> str:
        """
        Make a folder available locally.

        Raises:
            StorageError: If the source is not configured or the folder is
                missing or cannot be fetched
        """
        storage = self.storages.get(source)
        if storage is None:
            raise StorageError(f"Source not configured: {source.value}")

        if source is not DestinationKind.LOCAL:
            self._log(f"Downloading backup from {storage.describe()}: {folder_id}")
        path = storage.fetch_folder(folder_id, self.config.restore_dir)
        self._log(f"Backup folder: {path}")
        return path

    def verify(self, folder_path: str) -> IntegrityReport:
        """
        Check folder integrity; ask whether to go on if it fails.

        Raises:
            IntegrityError: In automated mode, or when the operator declines
        """
        self._log("Verifying backup integrity...")
        report = verify_backup_integrity(folder_path)

        if report.ok:
            self._log(report.message())
            return report

        self._log(report.message(), level=logging.ERROR)
        if self.automated or not report.checked:
            raise IntegrityError(report.message(), report)
        if not self.confirm("Backup integrity check failed! Continue anyway?"):
            raise IntegrityError(report.message(), report)

        self._log("Continuing despite integrity failure", level=logging.WARNING)
        return report

    def artifact_path(self, folder_path: str, scope: RestoreScope) -> str:
        """
        Raises:
            ArtifactNotFoundError: If the scope's artifact is not in the folder
        """
        path = os.path.join(folder_path, scope.file_name)
        if not os.path.isfile(path):
            raise ArtifactNotFoundError(f"{scope.kind.value.capitalize()} backup file not found: {path}")
        return path

    def apply(self, folder_path: str, scope: RestoreScope, result: RestoreResult):
        """
        Connection check, confirmation, restore and post-verification for a
        folder that has already been resolved and verified.
        """
        artifact = self.artifact_path(folder_path, scope)

        self._log(f"Testing PostgreSQL connection to {self.config.postgres.host}:{self.config.postgres.port}")
        self.engine.check_connection()

        self._log(f"Restoring {scope.label()} from: {os.path.basename(artifact)}")
        for line in scope.consequences():
            self._log(f"  - {line}")
        if not self.confirm("Continue?"):
            raise RestoreCancelled("Restore cancelled")
        result.state = RestoreState.CONFIRMED

        self._log(f"Starting {scope.kind.value} restore...")
        output = self.engine.restore(artifact)
        if output:
            for line in output.splitlines():
                logger.debug(line)
        result.state = RestoreState.APPLIED
        self._log(f"{scope.kind.value.capitalize()} restore completed")

        try:
            result.verification = self.verify_restore(scope)
            result.state = RestoreState.POST_VERIFIED
            self._log("Verification completed")
        except EngineError as e:
            self._log(f"Post-restore verification failed: {e}", level=logging.WARNING)

    def verify_restore(self, scope: RestoreScope) -> Dict[str, List[str]]:
        """Read-only listing that shows what the restore produced."""
        if scope.kind is RestoreScopeKind.CLUSTER:
            return {'databases': self.engine.list_databases(), 'roles': self.engine.list_roles()}
        if scope.kind is RestoreScopeKind.GLOBALS:
            return {'roles': self.engine.list_roles()}
        if scope.kind is RestoreScopeKind.DATABASE:
            return {'tables': self.engine.list_tables(scope.database)}
        raise ValueError(f"Unhandled scope: {scope.kind}")

    def execute(self, request: RestoreRequest, folder_path: Optional[str] = None) -> RestoreResult:
        """
        Run a restore start to finish.

        Args:
            request: What to restore
            folder_path: Folder already resolved and verified by the caller;
                resolution and the integrity check are skipped when given

        Returns:
            RestoreResult; never raises for expected failures
        """
        self.logs = []
        result = RestoreResult(request)
        self._log(f"Restore requested: {request.source.value}/{request.folder} ({request.scope.kind.value})")

        try:
            if folder_path is None:
                result.folder_path = self.resolve(request.source, request.folder)
                result.state = RestoreState.RESOLVED
                result.integrity = self.verify(result.folder_path)
            else:
                result.folder_path = folder_path
            result.state = RestoreState.VERIFIED

            self.apply(result.folder_path, request.scope, result)
        except RestoreCancelled as e:
            result.cancelled = True
            result.error = str(e)
            self._log(str(e), level=logging.WARNING)
        except IntegrityError as e:
            result.integrity = e.report
            result.error = str(e)
            self._log(f"Restore failed at {result.state.value}: {e}", level=logging.ERROR)
        except (StorageError, ArtifactNotFoundError, ServerConnectionError, EngineError) as e:
            result.error = str(e)
            self._log(f"Restore failed at {result.state.value}: {e}", level=logging.ERROR)

        return result

    def dry_run(self, request: RestoreRequest) -> DryRunReport:
        """
        Describe a restore without touching the server.

        Raises:
            StorageError: If the folder cannot be resolved
            ArtifactNotFoundError: If the scope's artifact is missing
        """
        folder_path = self.resolve(request.source, request.folder)
        return dry_run(request.scope, folder_path, self.config.postgres)

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
