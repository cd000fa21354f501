"""
Storage backends for backup folders.

Supports:
- LocalStorage: Timestamp folders under a local directory
- S3Storage: Timestamp folders as key prefixes in an S3-compatible bucket
- SSHStorage: Timestamp folders under a directory on a remote host (SFTP)

Every backend exposes the same folder-level operations so the producer,
the pruner and the catalog never care where a folder lives.
"""

import abc
import logging
import shlex
import shutil
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

import boto3
import paramiko
from boto3.exceptions import S3UploadFailedError
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from pgbackup.config import (
    Destination,
    DestinationKind,
    LocalDestination,
    RemoteDestination,
    S3Destination,
)
from .naming import is_folder_name


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation (list, push, fetch, delete) fails."""
    pass


def sort_folders(names) -> List[str]:
    """Keep timestamp folder names only, newest first."""
    return sorted((name for name in set(names) if is_folder_name(name)), reverse=True)


class StorageBackend(abc.ABC):
    """Folder-level operations over one backup repository."""

    kind = None

    def __init__(self, retention_days: Optional[int] = None):
        self.retention_days = retention_days

    @abc.abstractmethod
    def list_folders(self) -> List[str]:
        """Timestamp folder ids, newest first."""

    @abc.abstractmethod
    def list_artifacts(self, folder_id: str) -> Dict[str, int]:
        """File names in a folder mapped to their size in bytes."""

    @abc.abstractmethod
    def push_folder(self, local_path: str, folder_id: str) -> None:
        """Copy a local folder to this backend, overwriting existing files."""

    @abc.abstractmethod
    def fetch_folder(self, folder_id: str, dest_root: str) -> str:
        """Make a folder available locally and return its path."""

    @abc.abstractmethod
    def delete_folder(self, folder_id: str) -> None:
        """Remove a folder and everything in it."""

    @abc.abstractmethod
    def is_reachable(self) -> bool:
        """Cheap connectivity probe. Never raises."""

    @abc.abstractmethod
    def describe(self) -> str:
        """Human-readable location."""

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.describe()}>'


def _local_files(local_path: Path) -> List[Path]:
    if not local_path.is_dir():
        raise StorageError(f"Local folder not found: {local_path}")
    return sorted(p for p in local_path.rglob('*') if p.is_file())


class LocalStorage(StorageBackend):
    """
    Handler for backup folders in the local filesystem.

    Layout: {root}/{YYYYMMDD_HHMMSS}/{artifact}
    """

    kind = DestinationKind.LOCAL

    def __init__(self, root: str, retention_days: Optional[int] = None):
        """
        Initialize local storage handler.

        Args:
            root: Base directory holding timestamp folders
            retention_days: Age threshold for pruning (None disables it)
        """
        super().__init__(retention_days)
        self.root = Path(root)

    def folder_path(self, folder_id: str) -> Path:
        return self.root / folder_id

    def create_folder(self, folder_id: str) -> Path:
        """
        Create a new timestamp folder.

        Raises:
            StorageError: If the directory cannot be created
        """
        path = self.folder_path(folder_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise StorageError(f"Permission denied creating {path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to create backup folder {path}: {e}") from e
        return path

    def list_folders(self) -> List[str]:
        if not self.root.is_dir():
            return []
        try:
            return sort_folders(p.name for p in self.root.iterdir() if p.is_dir())
        except OSError as e:
            raise StorageError(f"Failed to list {self.root}: {e}") from e

    def list_artifacts(self, folder_id: str) -> Dict[str, int]:
        path = self.folder_path(folder_id)
        if not path.is_dir():
            raise StorageError(f"Local backup folder not found: {path}")
        try:
            return {p.name: p.stat().st_size for p in path.iterdir() if p.is_file()}
        except OSError as e:
            raise StorageError(f"Failed to list {path}: {e}") from e

    def push_folder(self, local_path: str, folder_id: str) -> None:
        source = Path(local_path)
        dest = self.folder_path(folder_id)

        if source.resolve() == dest.resolve():
            # Already in place
            return

        try:
            for file_path in _local_files(source):
                target = dest / file_path.relative_to(source)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(file_path, target)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to copy {source} to {dest}: {e}") from e

    def fetch_folder(self, folder_id: str, dest_root: Optional[str] = None) -> str:
        path = self.folder_path(folder_id)
        if not path.is_dir():
            raise StorageError(f"Local backup folder not found: {path}")
        return str(path)

    def delete_folder(self, folder_id: str) -> None:
        path = self.folder_path(folder_id)
        try:
            if path.exists():
                shutil.rmtree(path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to delete local folder {path}: {e}") from e

    def is_reachable(self) -> bool:
        return self.root.is_dir()

    def describe(self) -> str:
        return str(self.root)


class S3Storage(StorageBackend):
    """
    Handler for backup folders in an S3-compatible bucket.

    Key layout: {prefix}/{YYYYMMDD_HHMMSS}/{artifact}
    """

    kind = DestinationKind.S3

    def __init__(self, bucket_name: str, endpoint_url: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 region: Optional[str] = None, prefix: str = 'postgres-backups',
                 retention_days: Optional[int] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket name
            endpoint_url: Custom endpoint (MinIO, Wasabi, ...); None for AWS
            access_key: Access key ID
            secret_key: Secret access key
            region: Region name
            prefix: Key prefix under which folders live
            retention_days: Age threshold for pruning (None disables it)
        """
        super().__init__(retention_days)
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=BotoConfig(signature_version='s3v4')
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    def _folder_prefix(self, folder_id: str) -> str:
        return f"{self.prefix}/{folder_id}/"

    def _list_keys(self, folder_id: str) -> List[dict]:
        prefix = self._folder_prefix(folder_id)
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'Name': obj['Key'][len(prefix):],
                        'Size': obj['Size']
                    })
            return objects
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e

    def list_folders(self) -> List[str]:
        root = f"{self.prefix}/"
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=root, Delimiter='/'):
                for common in page.get('CommonPrefixes', []):
                    names.append(common['Prefix'][len(root):].rstrip('/'))
            return sort_folders(names)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 folders: {e}") from e

    def list_artifacts(self, folder_id: str) -> Dict[str, int]:
        return {obj['Name']: obj['Size'] for obj in self._list_keys(folder_id) if '/' not in obj['Name']}

    def push_folder(self, local_path: str, folder_id: str) -> None:
        source = Path(local_path)
        prefix = self._folder_prefix(folder_id)

        for file_path in _local_files(source):
            key = prefix + file_path.relative_to(source).as_posix()
            try:
                self.s3_client.upload_file(str(file_path), self.bucket_name, key)
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise StorageError(f"S3 upload of {key} failed ({error_code}): {e}") from e
            except (BotoCoreError, S3UploadFailedError) as e:
                raise StorageError(f"S3 upload of {key} failed: {e}") from e

    def fetch_folder(self, folder_id: str, dest_root: str) -> str:
        objects = self._list_keys(folder_id)
        if not objects:
            raise StorageError(f"S3 backup folder not found: s3://{self.bucket_name}/{self._folder_prefix(folder_id)}")

        dest = Path(dest_root) / folder_id
        for obj in objects:
            target = dest / obj['Name']
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                self.s3_client.download_file(self.bucket_name, obj['Key'], str(target))
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise StorageError(f"S3 download of {obj['Key']} failed ({error_code}): {e}") from e
            except (BotoCoreError, OSError) as e:
                raise StorageError(f"S3 download of {obj['Key']} failed: {e}") from e

        return str(dest)

    def delete_folder(self, folder_id: str) -> None:
        keys = [obj['Key'] for obj in self._list_keys(folder_id)]

        # delete_objects accepts at most 1000 keys per call
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True}
                )
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise StorageError(f"S3 delete failed ({error_code}): {e}") from e
            except BotoCoreError as e:
                raise StorageError(f"Failed to delete from S3: {e}") from e

            errors = response.get('Errors', [])
            if errors:
                failed = ', '.join(err.get('Key', '?') for err in errors)
                raise StorageError(f"S3 delete failed for: {failed}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}") from e
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}") from e
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}") from e

    def is_reachable(self) -> bool:
        try:
            return self.test_connection()
        except StorageError:
            return False

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"


class SSHStorage(StorageBackend):
    """
    Handler for backup folders on a remote host over SSH/SFTP.

    Layout: {remote_path}/{YYYYMMDD_HHMMSS}/{artifact}

    A fresh session is opened for every operation.
    """

    kind = DestinationKind.REMOTE

    def __init__(self, host: str, username: str, remote_path: str, port: int = 22,
                 password: Optional[str] = None, private_key: Optional[str] = None,
                 retention_days: Optional[int] = None, timeout: int = 30):
        """
        Initialize SSH storage handler.

        Args:
            host: SSH hostname or IP
            username: SSH username
            remote_path: Directory holding timestamp folders
            port: SSH port (default 22)
            password: SSH password (optional)
            private_key: Path to private key file (optional; agent and default
                keys are tried when neither is given)
            retention_days: Age threshold for pruning (None disables it)
            timeout: Connect timeout in seconds
        """
        super().__init__(retention_days)
        self.host = host
        self.port = port
        self.username = username
        self.remote_path = remote_path.rstrip('/') or '/'
        self.password = password
        self.private_key_path = private_key
        self.timeout = timeout

    def _remote_folder(self, folder_id: str) -> str:
        return f"{self.remote_path}/{folder_id}"

    def _connect(self) -> SSHClient:
        """
        Establish SSH connection.

        Raises:
            StorageError: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout
        }

        if self.password:
            connect_kwargs['password'] = self.password
        if self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise StorageError(f"SSH authentication failed: {e}") from e
        except paramiko.SSHException as e:
            ssh_client.close()
            raise StorageError(f"SSH connection failed: {e}") from e
        except OSError as e:
            ssh_client.close()
            raise StorageError(f"Failed to connect to {self.host}: {e}") from e

        return ssh_client

    @contextmanager
    def _sftp(self):
        ssh_client = self._connect()
        sftp_client = None
        try:
            sftp_client = ssh_client.open_sftp()
            yield sftp_client
        except paramiko.SSHException as e:
            raise StorageError(f"SFTP session failed: {e}") from e
        finally:
            if sftp_client is not None:
                sftp_client.close()
            ssh_client.close()

    def list_folders(self) -> List[str]:
        with self._sftp() as sftp:
            try:
                entries = sftp.listdir_attr(self.remote_path)
            except FileNotFoundError:
                return []
            except OSError as e:
                raise StorageError(f"Failed to list {self.remote_path}: {e}") from e

        return sort_folders(item.filename for item in entries if stat.S_ISDIR(item.st_mode or 0))

    def list_artifacts(self, folder_id: str) -> Dict[str, int]:
        remote = self._remote_folder(folder_id)
        with self._sftp() as sftp:
            try:
                entries = sftp.listdir_attr(remote)
            except FileNotFoundError as e:
                raise StorageError(f"Remote backup folder not found: {remote}") from e
            except OSError as e:
                raise StorageError(f"Failed to list {remote}: {e}") from e

        return {
            item.filename: item.st_size or 0
            for item in entries
            if stat.S_ISREG(item.st_mode or 0)
        }

    def _mkdir_p(self, sftp, remote_dir: str):
        """Create remote_dir and any missing parents. Relative paths stay relative."""
        current = '/' if remote_dir.startswith('/') else ''
        for part in remote_dir.split('/'):
            if not part:
                continue
            current = f"{current}{part}" if current in ('', '/') else f"{current}/{part}"
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def push_folder(self, local_path: str, folder_id: str) -> None:
        source = Path(local_path)
        files = _local_files(source)
        remote_root = self._remote_folder(folder_id)

        with self._sftp() as sftp:
            try:
                self._mkdir_p(sftp, remote_root)
                for file_path in files:
                    relative = file_path.relative_to(source).as_posix()
                    remote_file = f"{remote_root}/{relative}"
                    if '/' in relative:
                        self._mkdir_p(sftp, remote_file.rsplit('/', 1)[0])
                    sftp.put(str(file_path), remote_file)
            except PermissionError as e:
                raise StorageError(f"Permission denied writing to {self.host}:{remote_root}: {e}") from e
            except OSError as e:
                raise StorageError(f"Failed to upload to {self.host}:{remote_root}: {e}") from e

    def _download_directory(self, sftp, remote_path: str, local_path: Path):
        """Recursively download a directory via SFTP."""
        local_path.mkdir(parents=True, exist_ok=True)

        for item in sftp.listdir_attr(remote_path):
            remote_item = f"{remote_path}/{item.filename}"
            local_item = local_path / item.filename

            if stat.S_ISDIR(item.st_mode or 0):
                self._download_directory(sftp, remote_item, local_item)
            else:
                sftp.get(remote_item, str(local_item))

    def fetch_folder(self, folder_id: str, dest_root: str) -> str:
        remote = self._remote_folder(folder_id)
        dest = Path(dest_root) / folder_id

        with self._sftp() as sftp:
            try:
                self._download_directory(sftp, remote, dest)
            except FileNotFoundError as e:
                raise StorageError(f"Remote backup folder not found: {remote}") from e
            except PermissionError as e:
                raise StorageError(f"Permission denied accessing remote folder: {remote}") from e
            except OSError as e:
                raise StorageError(f"Failed to download {remote}: {e}") from e

        return str(dest)

    def delete_folder(self, folder_id: str) -> None:
        remote = self._remote_folder(folder_id)
        ssh_client = self._connect()
        try:
            _, stdout, stderr = ssh_client.exec_command(f"rm -rf -- {shlex.quote(remote)}")
            exit_status = stdout.channel.recv_exit_status()
            if exit_status != 0:
                message = stderr.read().decode('utf-8', errors='replace').strip()
                raise StorageError(f"Remote delete of {remote} failed ({exit_status}): {message}")
        except paramiko.SSHException as e:
            raise StorageError(f"Remote delete of {remote} failed: {e}") from e
        finally:
            ssh_client.close()

    def is_reachable(self) -> bool:
        try:
            self._connect().close()
            return True
        except StorageError:
            return False

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.remote_path}"


def create_storage(destination: Destination) -> StorageBackend:
    """
    Factory function to create the backend for a configured destination.

    Raises:
        ValueError: If the destination type is not handled
    """
    if isinstance(destination, LocalDestination):
        return LocalStorage(destination.root, retention_days=destination.retention_days)
    elif isinstance(destination, S3Destination):
        return S3Storage(
            bucket_name=destination.bucket,
            endpoint_url=destination.endpoint,
            access_key=destination.access_key,
            secret_key=destination.secret_key,
            region=destination.region,
            prefix=destination.prefix,
            retention_days=destination.retention_days
        )
    elif isinstance(destination, RemoteDestination):
        return SSHStorage(
            host=destination.host,
            username=destination.user,
            remote_path=destination.path,
            port=destination.port,
            password=destination.password,
            private_key=destination.key_file,
            retention_days=destination.retention_days
        )
    else:
        raise ValueError(f"Invalid destination type: {destination!r}")


def build_storages(config) -> Dict[DestinationKind, StorageBackend]:
    """
    Create a backend for every enabled destination in config.

    A destination whose client cannot be created is logged and left out.
    """
    storages = {}
    for destination in config.enabled_destinations():
        try:
            storages[destination.kind] = create_storage(destination)
        except StorageError as e:
            logger.error(f"Destination '{destination.kind.value}' unavailable: {e}")
    return storages
