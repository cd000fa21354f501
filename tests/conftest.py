"""
Shared pytest fixtures for pgbackup tests.

This module provides fixtures for:
- Environment mappings and Config objects rooted in tmp_path
- Backup folder builders (valid and corrupted gzip artifacts)
- A fake PostgreSQL engine that writes gzip files instead of running tools
- Mock fixtures for external services (S3, SSH)
"""

import gzip
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from pgbackup.backup.engine import EngineError, ServerConnectionError
from pgbackup.backup.naming import ArtifactKind, artifact_file_name
from pgbackup.config import Config


class FakeEngine:
    """
    Stands in for PostgresEngine.

    Dumps write small gzip files; failures and reachability are switched by
    attributes.
    """

    def __init__(self, databases=None):
        self.databases = list(databases) if databases is not None else ['app', 'analytics']
        self.roles = ['admin', 'app_user']
        self.tables = ['public.orders', 'public.users']
        self.failing = set()  # 'cluster', 'globals', 'list' or a database name
        self.reachable = True
        self.restore_fails = False
        self.verify_fails = False
        self.dumped = []
        self.restored = []
        self.connection_checks = 0

    def _write(self, output_path, label):
        if label in self.failing:
            raise EngineError(f"dump of {label} failed")
        with gzip.open(output_path, 'wb') as gz:
            gz.write(f"-- dump of {label}\n".encode())
        self.dumped.append(label)
        return Path(output_path).stat().st_size

    def dump_cluster(self, output_path):
        return self._write(output_path, 'cluster')

    def dump_globals(self, output_path):
        return self._write(output_path, 'globals')

    def dump_database(self, database, output_path):
        return self._write(output_path, database)

    def list_databases(self):
        if 'list' in self.failing or self.verify_fails:
            raise EngineError("listing failed")
        return list(self.databases)

    def list_roles(self):
        if self.verify_fails:
            raise EngineError("listing failed")
        return list(self.roles)

    def list_tables(self, database):
        if self.verify_fails:
            raise EngineError("listing failed")
        return list(self.tables)

    def check_connection(self):
        self.connection_checks += 1
        if not self.reachable:
            raise ServerConnectionError("Failed to connect to PostgreSQL at db:5432")

    def test_connection(self):
        return self.reachable

    def restore(self, artifact_path):
        if self.restore_fails:
            raise EngineError("psql failed with exit code 3")
        self.restored.append(artifact_path)
        return ''


@pytest.fixture
def env(tmp_path):
    """
    Minimal environment mapping with local paths under tmp_path.
    """
    return {
        'PGHOST': 'db.example.com',
        'PGPORT': '5432',
        'PGUSER': 'postgres',
        'PGPASSWORD': 'secret',
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'RESTORE_DIR': str(tmp_path / 'restore'),
        'BACKUP_SCHEDULE': '0 2 * * *',
    }


@pytest.fixture
def config(env):
    """Config built from the env fixture."""
    return Config.from_env(env)


@pytest.fixture
def fake_engine():
    """FakeEngine with databases 'app' and 'analytics'."""
    return FakeEngine()


@pytest.fixture
def make_backup_folder():
    """
    Factory writing a timestamp folder of gzip artifacts.

    Usage:
        make_backup_folder(root, '20250101_000000', databases=['app'],
                           corrupt=['postgres_globals.sql.gz'])
    """
    def _make(root, folder_id, cluster=True, globals_=True, databases=('app',), corrupt=()):
        folder = Path(root) / folder_id
        folder.mkdir(parents=True, exist_ok=True)

        names = []
        if cluster:
            names.append(artifact_file_name(ArtifactKind.CLUSTER))
        if globals_:
            names.append(artifact_file_name(ArtifactKind.GLOBALS))
        for database in databases:
            names.append(artifact_file_name(ArtifactKind.DATABASE, database))

        for name in names:
            path = folder / name
            if name in corrupt:
                path.write_bytes(b'\x1f\x8b\x08\x00not really gzip')
            else:
                with gzip.open(path, 'wb') as gz:
                    gz.write(f"-- {name}\nSELECT 1;\n".encode())
        return folder

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient as used by SSHStorage.

    Returns the patched class; its return_value is the client instance and
    client.open_sftp() returns a MagicMock SFTP session.
    """
    with patch('pgbackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
