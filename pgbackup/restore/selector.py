"""
Restore selection: which source, which folder, which scope.

Selection is either interactive (numbered prompts, input and output
injected) or driven by RESTORE_* parameters.
"""

import os
from enum import Enum
from typing import Callable, List, Mapping, Optional

from pgbackup.backup.naming import ArtifactKind, artifact_file_name
from pgbackup.config import ConfigurationError, DestinationKind, PostgresSettings
from .catalog import FolderInfo, format_size, list_backup_files


class InvalidSelectionError(Exception):
    """Raised on out-of-range or non-numeric menu input."""
    pass


class ArtifactNotFoundError(Exception):
    """Raised when the artifact for a scope is missing from a folder."""
    pass


class RestoreScopeKind(Enum):
    CLUSTER = 'cluster'
    GLOBALS = 'globals'
    DATABASE = 'database'

    @classmethod
    def parse(cls, value: str) -> 'RestoreScopeKind':
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ', '.join(kind.value for kind in cls)
            raise ConfigurationError(f"Unknown restore type: {value} (valid: {valid})")


class RestoreScope:
    """What to restore from a folder."""

    def __init__(self, kind: RestoreScopeKind, database: Optional[str] = None):
        if kind is RestoreScopeKind.DATABASE and not database:
            raise ConfigurationError("RESTORE_DATABASE must be set for database restore")
        self.kind = kind
        self.database = database if kind is RestoreScopeKind.DATABASE else None

    @classmethod
    def cluster(cls) -> 'RestoreScope':
        return cls(RestoreScopeKind.CLUSTER)

    @classmethod
    def globals_only(cls) -> 'RestoreScope':
        return cls(RestoreScopeKind.GLOBALS)

    @classmethod
    def for_database(cls, name: str) -> 'RestoreScope':
        return cls(RestoreScopeKind.DATABASE, name)

    @property
    def file_name(self) -> str:
        if self.kind is RestoreScopeKind.CLUSTER:
            return artifact_file_name(ArtifactKind.CLUSTER)
        if self.kind is RestoreScopeKind.GLOBALS:
            return artifact_file_name(ArtifactKind.GLOBALS)
        if self.kind is RestoreScopeKind.DATABASE:
            return artifact_file_name(ArtifactKind.DATABASE, self.database)
        raise ValueError(f"Unhandled scope: {self.kind}")

    def label(self) -> str:
        if self.kind is RestoreScopeKind.CLUSTER:
            return 'Full Cluster Restore (all databases + roles)'
        if self.kind is RestoreScopeKind.GLOBALS:
            return 'Globals Only (users/roles/permissions)'
        return f'Database: {self.database}'

    def consequences(self) -> List[str]:
        """What restoring this scope does to the target server."""
        if self.kind is RestoreScopeKind.CLUSTER:
            return [
                'All databases will be restored',
                'All roles will be restored',
                'Existing data will be overwritten',
            ]
        if self.kind is RestoreScopeKind.GLOBALS:
            return [
                'All roles will be restored',
                'Permissions will be restored',
            ]
        return [
            'Database will be dropped and recreated',
            'All tables and data will be restored',
        ]

    def __eq__(self, other):
        if not isinstance(other, RestoreScope):
            return NotImplemented
        return self.kind is other.kind and self.database == other.database

    def __hash__(self):
        return hash((self.kind, self.database))

    def __repr__(self):
        if self.database:
            return f'<RestoreScope {self.kind.value}:{self.database}>'
        return f'<RestoreScope {self.kind.value}>'


class RestoreRequest:
    """A fully specified restore, consumed once by the executor."""

    def __init__(self, source: DestinationKind, folder: str, scope: RestoreScope):
        self.source = source
        self.folder = folder
        self.scope = scope

    def __repr__(self):
        return f'<RestoreRequest {self.source.value}/{self.folder} {self.scope!r}>'


class MenuAction(Enum):
    """Non-restore entries at the end of the scope menu."""
    DRY_RUN = 'dry-run'
    CANCEL = 'cancel'


def request_from_parameters(params: Mapping[str, Optional[str]]) -> Optional[RestoreRequest]:
    """
    Build a request from RESTORE_SOURCE / RESTORE_FOLDER / RESTORE_TYPE /
    RESTORE_DATABASE style parameters.

    Returns:
        RestoreRequest, or None unless source, folder and type are all given

    Raises:
        ConfigurationError: On an unknown source or type, or a database
            restore without a database name
    """
    source = params.get('source')
    folder = params.get('folder')
    restore_type = params.get('type')

    if not (source and folder and restore_type):
        return None

    kind = RestoreScopeKind.parse(restore_type)
    scope = RestoreScope(kind, params.get('database'))
    return RestoreRequest(DestinationKind.parse(source), folder, scope)


def parse_choice(raw: str, count: int, allow_zero: bool = False) -> int:
    """
    Parse a 1-based menu choice.

    Returns:
        The choice (0 only when allow_zero)

    Raises:
        InvalidSelectionError: If raw is not a number in range
    """
    try:
        choice = int(raw.strip())
    except (ValueError, AttributeError):
        raise InvalidSelectionError(f"Invalid selection: {raw!r}")

    if choice == 0 and allow_zero:
        return 0
    if choice < 1 or choice > count:
        raise InvalidSelectionError(f"Invalid selection: {choice} (expected 1-{count})")
    return choice


def scope_options(folder_path: str) -> List[RestoreScope]:
    """Restorable scopes for a local folder: cluster, globals, then databases."""
    options = []
    for kind, database, _, _ in list_backup_files(folder_path):
        if kind is ArtifactKind.CLUSTER:
            options.append(RestoreScope.cluster())
        elif kind is ArtifactKind.GLOBALS:
            options.append(RestoreScope.globals_only())
        elif kind is ArtifactKind.DATABASE:
            options.append(RestoreScope.for_database(database))
    return options


class RestoreSelector:
    """
    Interactive prompts for choosing a folder and a scope.
    """

    def __init__(self, input_func: Callable[[str], str] = input,
                 output_func: Callable[[str], None] = print):
        self.input = input_func
        self.output = output_func

    def select_folder(self, folders: List[FolderInfo]) -> Optional[FolderInfo]:
        """
        Show folders (newest first) and read a 1-based choice.

        Returns:
            The chosen folder, or None when the user enters 0

        Raises:
            InvalidSelectionError: On bad input or when there is nothing to pick
        """
        if not folders:
            raise InvalidSelectionError("No backups found")

        self.output('')
        self.output('Available backups:')
        self.output('------------------')
        for index, folder in enumerate(folders, start=1):
            self.output(f"{index}. {folder.summary()}")
        self.output('')

        choice = parse_choice(self.input('Select backup number (or 0 to cancel): '), len(folders), allow_zero=True)
        if choice == 0:
            return None
        return folders[choice - 1]

    def select_scope(self, folder_path: str):
        """
        Show restore options for a local folder and read a 1-based choice.

        Returns:
            A RestoreScope, MenuAction.DRY_RUN or MenuAction.CANCEL

        Raises:
            InvalidSelectionError: On bad input
        """
        options = scope_options(folder_path)
        entries = options + [MenuAction.DRY_RUN, MenuAction.CANCEL]

        self.output('')
        self.output('Restore Options:')
        self.output('----------------')
        for index, entry in enumerate(entries, start=1):
            if entry is MenuAction.DRY_RUN:
                label = 'Dry Run (show what would be restored)'
            elif entry is MenuAction.CANCEL:
                label = 'Cancel'
            else:
                label = entry.label()
            self.output(f"{index}. {label}")
        self.output('')

        choice = parse_choice(self.input('Select restore option: '), len(entries))
        return entries[choice - 1]

    def select_dry_run_scope(self, folder_path: str) -> RestoreScope:
        """
        Ask which scope a dry run should describe.

        Raises:
            InvalidSelectionError: On an unknown type or database name
        """
        raw = self.input('Select restore type for dry run (cluster/globals/database): ')
        try:
            kind = RestoreScopeKind.parse(raw or '')
        except ConfigurationError as e:
            raise InvalidSelectionError(str(e))

        if kind is not RestoreScopeKind.DATABASE:
            return RestoreScope(kind)

        databases = [scope.database for scope in scope_options(folder_path) if scope.database]
        self.output(f"Available databases: {' '.join(databases)}")
        name = (self.input('Enter database name: ') or '').strip()
        if not name:
            raise InvalidSelectionError('No database name given')
        return RestoreScope.for_database(name)


class DryRunReport:
    """What a restore would do, without doing it."""

    def __init__(self, folder: str, scope: RestoreScope, artifact_path: str, size_bytes: int,
                 target: str, user: Optional[str]):
        self.folder = folder
        self.scope = scope
        self.artifact_path = artifact_path
        self.size_bytes = size_bytes
        self.target = target
        self.user = user

    @property
    def consequences(self) -> List[str]:
        return self.scope.consequences()

    def lines(self) -> List[str]:
        if self.scope.kind is RestoreScopeKind.CLUSTER:
            headline = f"Would restore full cluster ({format_size(self.size_bytes)})"
        elif self.scope.kind is RestoreScopeKind.GLOBALS:
            headline = f"Would restore globals ({format_size(self.size_bytes)})"
        else:
            headline = f"Would restore database '{self.scope.database}' ({format_size(self.size_bytes)})"

        return [
            '======================================',
            '  DRY RUN - No Changes Will Be Made',
            '======================================',
            '',
            f"Backup folder: {self.folder}",
            f"Restore type: {self.scope.kind.value}",
            '',
            headline,
            *[f"  - {line}" for line in self.consequences],
            '',
            f"Target PostgreSQL: {self.target}",
            f"User: {self.user or ''}",
        ]


def dry_run(scope: RestoreScope, folder_path: str, postgres: PostgresSettings) -> DryRunReport:
    """
    Resolve a scope to its artifact and describe the restore.

    Raises:
        ArtifactNotFoundError: If the folder lacks the scope's artifact
    """
    artifact_path = os.path.join(folder_path, scope.file_name)
    if not os.path.isfile(artifact_path):
        if scope.kind is RestoreScopeKind.DATABASE:
            raise ArtifactNotFoundError(f"Database backup file not found for '{scope.database}'")
        raise ArtifactNotFoundError(f"{scope.kind.value.capitalize()} backup file not found")

    return DryRunReport(
        folder=os.path.basename(os.path.normpath(folder_path)),
        scope=scope,
        artifact_path=artifact_path,
        size_bytes=os.path.getsize(artifact_path),
        target=f"{postgres.host}:{postgres.port}",
        user=postgres.user
    )
