"""
PostgreSQL client tool adapter.

Wraps pg_dumpall, pg_dump and psql. Dumps are streamed from the tool's stdout
straight into a gzip file; restores stream a gzip file into psql's stdin.
"""

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
import zlib
from typing import List, Optional

from pgbackup.config import ConfigurationError, PostgresSettings


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

# psql exit status 2 means the connection to the server went bad
PSQL_CONNECTION_FAILURE = 2

LIST_DATABASES_SQL = (
    "SELECT datname FROM pg_database "
    "WHERE NOT datistemplate AND datallowconn AND datname <> 'postgres' "
    "ORDER BY datname"
)
LIST_ROLES_SQL = "SELECT rolname FROM pg_roles WHERE rolname NOT LIKE 'pg\\_%' ORDER BY rolname"
LIST_TABLES_SQL = (
    "SELECT schemaname || '.' || tablename FROM pg_tables "
    "WHERE schemaname NOT IN ('pg_catalog', 'information_schema') "
    "ORDER BY 1"
)


class EngineError(Exception):
    """Raised when a dump or restore tool exits non-zero or cannot be run."""
    pass


class ServerConnectionError(EngineError):
    """Raised when the target server cannot be reached."""
    pass


def _read_stderr(handle) -> str:
    handle.seek(0)
    return handle.read().decode('utf-8', errors='replace').strip()


def stream_to_gzip(args: List[str], output_path: str, env: Optional[dict] = None) -> int:
    """
    Run a command and gzip its stdout into output_path.

    Args:
        args: Command line
        output_path: Destination .gz file
        env: Process environment

    Returns:
        Size of the written file in bytes

    Raises:
        EngineError: If the output file cannot be written, the command is
            missing, or it exits non-zero; the partial file is removed
    """
    try:
        gz = gzip.open(output_path, 'wb')
    except OSError as e:
        raise EngineError(f"Failed to write {output_path}: {e}") from e

    try:
        with tempfile.TemporaryFile() as stderr_file:
            with gz:
                try:
                    process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=stderr_file, env=env)
                except FileNotFoundError as e:
                    raise EngineError(f"Command not found: {args[0]}") from e
                try:
                    shutil.copyfileobj(process.stdout, gz, CHUNK_SIZE)
                finally:
                    process.stdout.close()
                    returncode = process.wait()

            if returncode != 0:
                raise EngineError(
                    f"{os.path.basename(args[0])} failed with exit code {returncode}: "
                    f"{_read_stderr(stderr_file)}"
                )
    except EngineError:
        _remove_partial(output_path)
        raise
    except OSError as e:
        _remove_partial(output_path)
        raise EngineError(f"Failed to write {output_path}: {e}") from e

    return os.path.getsize(output_path)


def stream_from_gzip(args: List[str], input_path: str, env: Optional[dict] = None) -> str:
    """
    Decompress input_path and feed it to a command's stdin.

    Returns:
        Captured stderr of the command

    Raises:
        EngineError: If the file is unreadable, the command is missing, the
            stream breaks, or the command exits non-zero
    """
    try:
        with tempfile.TemporaryFile() as stderr_file:
            process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file,
                env=env
            )
            try:
                with gzip.open(input_path, 'rb') as gz:
                    shutil.copyfileobj(gz, process.stdin, CHUNK_SIZE)
            except BrokenPipeError:
                # The command died early; its exit code tells why
                pass
            except (OSError, EOFError, zlib.error) as e:
                process.kill()
                process.wait()
                raise EngineError(f"Failed to stream {os.path.basename(input_path)}: {e}") from e
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

            returncode = process.wait()
            stderr = _read_stderr(stderr_file)
    except FileNotFoundError as e:
        raise EngineError(f"Command not found: {args[0]}") from e

    if returncode == PSQL_CONNECTION_FAILURE:
        raise ServerConnectionError(f"Lost connection to server: {stderr}")
    if returncode != 0:
        raise EngineError(f"{os.path.basename(args[0])} failed with exit code {returncode}: {stderr}")
    return stderr


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial artifact {path}: {e}")


class PostgresEngine:
    """
    Runs the PostgreSQL client tools against one server.

    Credentials are passed through PGPASSWORD in the child environment only.
    """

    PG_DUMPALL = 'pg_dumpall'
    PG_DUMP = 'pg_dump'
    PSQL = 'psql'

    def __init__(self, settings: PostgresSettings):
        """
        Initialize engine.

        Args:
            settings: Target server connection parameters
        """
        self.settings = settings

    def _env(self) -> dict:
        env = dict(os.environ)
        if self.settings.password:
            env['PGPASSWORD'] = self.settings.password
        return env

    def _connection_args(self) -> List[str]:
        args = ['-h', str(self.settings.host), '-p', str(self.settings.port)]
        if self.settings.user:
            args += ['-U', self.settings.user]
        return args

    def _query(self, sql: str, database: str = 'postgres') -> List[str]:
        """
        Run a read-only query and return the first column of each row.

        Raises:
            ServerConnectionError: If the server cannot be reached
            EngineError: If psql is missing or the query fails
        """
        args = [self.PSQL, *self._connection_args(), '-d', database, '-X', '-A', '-t', '-c', sql]
        try:
            result = subprocess.run(args, capture_output=True, text=True, env=self._env())
        except FileNotFoundError as e:
            raise EngineError(f"Command not found: {self.PSQL}") from e

        if result.returncode == PSQL_CONNECTION_FAILURE:
            raise ServerConnectionError(
                f"Failed to connect to PostgreSQL at {self.settings.host}:{self.settings.port}: "
                f"{result.stderr.strip()}"
            )
        if result.returncode != 0:
            raise EngineError(f"Query failed with exit code {result.returncode}: {result.stderr.strip()}")

        return [line for line in result.stdout.splitlines() if line.strip()]

    def check_connection(self):
        """
        Raises:
            ServerConnectionError: If the server does not answer SELECT 1
        """
        try:
            self.settings.validate()
        except ConfigurationError as e:
            raise ServerConnectionError(str(e)) from e

        try:
            self._query('SELECT 1')
        except ServerConnectionError:
            raise
        except EngineError as e:
            raise ServerConnectionError(str(e)) from e

    def test_connection(self) -> bool:
        try:
            self.check_connection()
            return True
        except ServerConnectionError as e:
            logger.error(f"{e}")
            return False

    def list_databases(self) -> List[str]:
        """User databases on the server (templates and 'postgres' excluded)."""
        return self._query(LIST_DATABASES_SQL)

    def list_roles(self) -> List[str]:
        return self._query(LIST_ROLES_SQL)

    def list_tables(self, database: str) -> List[str]:
        return self._query(LIST_TABLES_SQL, database=database)

    def dump_cluster(self, output_path: str) -> int:
        """Dump every database plus roles and tablespaces."""
        args = [self.PG_DUMPALL, *self._connection_args(), '--clean', '--if-exists']
        return stream_to_gzip(args, output_path, env=self._env())

    def dump_globals(self, output_path: str) -> int:
        """Dump roles, tablespaces and permissions only."""
        args = [self.PG_DUMPALL, *self._connection_args(), '--globals-only', '--clean', '--if-exists']
        return stream_to_gzip(args, output_path, env=self._env())

    def dump_database(self, database: str, output_path: str) -> int:
        """
        Dump one database as a script that drops and recreates it on restore.
        """
        args = [
            self.PG_DUMP, *self._connection_args(),
            '-d', database,
            '--create', '--clean', '--if-exists'
        ]
        return stream_to_gzip(args, output_path, env=self._env())

    def restore(self, artifact_path: str) -> str:
        """
        Replay a gzip'd SQL script through psql.

        Every artifact carries its own CREATE/DROP statements, so the script is
        always run from the maintenance database.

        Returns:
            psql stderr output (notices and errors)
        """
        args = [self.PSQL, *self._connection_args(), '-d', 'postgres', '-X', '-q']
        return stream_from_gzip(args, artifact_path, env=self._env())
