"""
Configuration for pgbackup.

Everything is read once from an environment mapping into a Config object that
is then handed to each component. Nothing below this module looks at
os.environ directly.
"""

import logging
import os
from enum import Enum
from typing import Dict, List, Mapping, Optional


logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required settings are missing or malformed."""
    pass


class DestinationKind(Enum):
    """Where a backup folder can live."""
    LOCAL = 'local'
    S3 = 's3'
    REMOTE = 'remote'

    @classmethod
    def parse(cls, value: str) -> 'DestinationKind':
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ', '.join(kind.value for kind in cls)
            raise ConfigurationError(f"Unknown source: {value} (valid: {valid})")


TRUE_VALUES = ('true', '1', 'yes', 'on')


def _get_bool(environ: Mapping[str, str], key: str, default: bool = False) -> bool:
    value = environ.get(key)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in TRUE_VALUES


def _get_int(environ: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    value = environ.get(key)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got: {value!r}")


def _get_str(environ: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = environ.get(key)
    if value is None or value.strip() == '':
        return default
    return value


class PostgresSettings:
    """Connection parameters for the target server."""

    def __init__(self, host: Optional[str], port: int = 5432, user: Optional[str] = None,
                 password: Optional[str] = None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def validate(self):
        """
        Raises:
            ConfigurationError: If PGHOST or PGUSER is missing
        """
        if not self.host or not self.user:
            raise ConfigurationError("PGHOST and PGUSER must be set")

    def __repr__(self):
        return f'<PostgresSettings {self.user}@{self.host}:{self.port}>'


class Destination:
    """Base for a configured backup destination."""

    kind = None

    def __init__(self, enabled: bool, retention_days: Optional[int]):
        self.enabled = enabled
        self.retention_days = retention_days

    def validate(self):
        pass


class LocalDestination(Destination):
    """Local filesystem root."""

    kind = DestinationKind.LOCAL

    def __init__(self, root: str, retention_days: Optional[int] = 1):
        super().__init__(True, retention_days)
        self.root = root

    def validate(self):
        if not self.root:
            raise ConfigurationError("BACKUP_DIR must not be empty")

    def __repr__(self):
        return f'<LocalDestination root={self.root} retention={self.retention_days}d>'


class S3Destination(Destination):
    """S3-compatible object store."""

    kind = DestinationKind.S3

    def __init__(self, enabled: bool, bucket: Optional[str], endpoint: Optional[str] = None,
                 region: Optional[str] = None, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, prefix: str = 'postgres-backups',
                 retention_days: Optional[int] = 7):
        super().__init__(enabled, retention_days)
        self.bucket = bucket
        self.endpoint = endpoint
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.prefix = prefix.strip('/')

    def validate(self):
        if not self.bucket or not self.endpoint:
            raise ConfigurationError("S3_BUCKET and S3_ENDPOINT must be set when S3 is enabled")

    def __repr__(self):
        return f'<S3Destination bucket={self.bucket} endpoint={self.endpoint} retention={self.retention_days}d>'


class RemoteDestination(Destination):
    """Remote directory reached over SSH."""

    kind = DestinationKind.REMOTE

    def __init__(self, enabled: bool, host: Optional[str], user: Optional[str] = None,
                 port: int = 22, path: Optional[str] = None, password: Optional[str] = None,
                 key_file: Optional[str] = None, retention_days: Optional[int] = 30):
        super().__init__(enabled, retention_days)
        self.host = host
        self.user = user
        self.port = port
        self.path = path.rstrip('/') if path else path
        self.password = password
        self.key_file = key_file

    def validate(self):
        if not self.host or not self.user or not self.path:
            raise ConfigurationError(
                "RSYNC_HOST, RSYNC_USER and RSYNC_PATH must be set when remote sync is enabled"
            )

    def __repr__(self):
        return f'<RemoteDestination {self.user}@{self.host}:{self.port}{self.path} retention={self.retention_days}d>'


class Config:
    """
    Complete runtime configuration.

    Built once at process start with Config.from_env() and passed by reference
    into every component constructor.
    """

    def __init__(self, postgres: PostgresSettings, local: LocalDestination,
                 s3: S3Destination, remote: RemoteDestination,
                 restore_dir: str = '/restore', schedule: Optional[str] = None,
                 run_on_start: bool = True, log_level: str = 'INFO',
                 log_file: Optional[str] = None,
                 restore_params: Optional[Dict[str, Optional[str]]] = None):
        self.postgres = postgres
        self.local = local
        self.s3 = s3
        self.remote = remote
        self.restore_dir = restore_dir
        self.schedule = schedule
        self.run_on_start = run_on_start
        self.log_level = log_level
        self.log_file = log_file
        self.restore_params = restore_params or {}
        self.errors = []  # type: List[ConfigurationError]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build configuration from an environment mapping.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Config instance

        Raises:
            ConfigurationError: If a numeric setting is malformed
        """
        if environ is None:
            environ = os.environ

        postgres = PostgresSettings(
            host=_get_str(environ, 'PGHOST'),
            port=_get_int(environ, 'PGPORT', 5432),
            user=_get_str(environ, 'PGUSER'),
            password=_get_str(environ, 'PGPASSWORD'),
        )

        local = LocalDestination(
            root=_get_str(environ, 'BACKUP_DIR', '/backups'),
            retention_days=_get_int(environ, 'LOCAL_RETENTION_DAYS', 1),
        )

        s3 = S3Destination(
            enabled=_get_bool(environ, 'S3_ENABLED'),
            bucket=_get_str(environ, 'S3_BUCKET'),
            endpoint=_get_str(environ, 'S3_ENDPOINT'),
            region=_get_str(environ, 'S3_REGION'),
            access_key=_get_str(environ, 'S3_ACCESS_KEY'),
            secret_key=_get_str(environ, 'S3_SECRET_KEY'),
            prefix=_get_str(environ, 'S3_PREFIX', 'postgres-backups'),
            retention_days=_get_int(environ, 'S3_RETENTION_DAYS', 7),
        )

        remote = RemoteDestination(
            enabled=_get_bool(environ, 'RSYNC_ENABLED'),
            host=_get_str(environ, 'RSYNC_HOST'),
            user=_get_str(environ, 'RSYNC_USER'),
            port=_get_int(environ, 'RSYNC_PORT', 22),
            path=_get_str(environ, 'RSYNC_PATH'),
            password=_get_str(environ, 'RSYNC_PASSWORD'),
            key_file=_get_str(environ, 'RSYNC_KEY_FILE'),
            retention_days=_get_int(environ, 'RSYNC_RETENTION_DAYS', 30),
        )

        restore_params = {
            'source': _get_str(environ, 'RESTORE_SOURCE'),
            'folder': _get_str(environ, 'RESTORE_FOLDER'),
            'type': _get_str(environ, 'RESTORE_TYPE'),
            'database': _get_str(environ, 'RESTORE_DATABASE'),
        }

        config = cls(
            postgres=postgres,
            local=local,
            s3=s3,
            remote=remote,
            restore_dir=_get_str(environ, 'RESTORE_DIR', '/restore'),
            schedule=_get_str(environ, 'BACKUP_SCHEDULE'),
            run_on_start=_get_bool(environ, 'RUN_ON_START', True),
            log_level=_get_str(environ, 'LOG_LEVEL', 'INFO').upper(),
            log_file=_get_str(environ, 'LOG_FILE'),
            restore_params=restore_params,
        )
        config.validate_destinations()
        return config

    def validate_destinations(self):
        """
        Disable enabled destinations whose settings are incomplete.

        Each failure is logged once and kept in self.errors; the destination is
        then skipped for the rest of the process lifetime.
        """
        for destination in (self.local, self.s3, self.remote):
            if not destination.enabled:
                continue
            try:
                destination.validate()
            except ConfigurationError as e:
                logger.error(f"Destination '{destination.kind.value}' disabled: {e}")
                self.errors.append(e)
                destination.enabled = False

    def destination(self, kind: DestinationKind) -> Destination:
        if kind is DestinationKind.LOCAL:
            return self.local
        if kind is DestinationKind.S3:
            return self.s3
        if kind is DestinationKind.REMOTE:
            return self.remote
        raise ValueError(f"Unhandled destination kind: {kind}")

    def enabled_destinations(self) -> List[Destination]:
        """Local first, then every enabled remote destination."""
        return [d for d in (self.local, self.s3, self.remote) if d.enabled]

    @property
    def automated_restore(self) -> bool:
        """True when RESTORE_SOURCE, RESTORE_FOLDER and RESTORE_TYPE are all set."""
        params = self.restore_params
        return bool(params.get('source') and params.get('folder') and params.get('type'))
