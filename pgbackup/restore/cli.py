"""
pgbackup-restore - interactive and automated restore tool.

Interactive:
    pgbackup-restore

Automated (all three variables set):
    RESTORE_SOURCE=s3 RESTORE_FOLDER=20250101_020000 RESTORE_TYPE=cluster pgbackup-restore
    RESTORE_SOURCE=local RESTORE_FOLDER=20250101_020000 RESTORE_TYPE=database \\
        RESTORE_DATABASE=app pgbackup-restore
"""

import argparse
import logging
import sys
from typing import Callable, Dict, List, Optional

from pgbackup import __version__, configure_logging
from pgbackup.backup.engine import PostgresEngine, ServerConnectionError
from pgbackup.backup.storage import StorageBackend, StorageError, build_storages
from pgbackup.config import Config, ConfigurationError, DestinationKind
from .catalog import BackupCatalog, format_size, list_backup_files
from .executor import IntegrityError, RestoreExecutor, RestoreResult
from .selector import (
    ArtifactNotFoundError,
    InvalidSelectionError,
    MenuAction,
    RestoreRequest,
    RestoreSelector,
    dry_run,
    request_from_parameters,
)


logger = logging.getLogger(__name__)

SOURCE_OPTIONS = {
    '1': DestinationKind.LOCAL,
    '2': DestinationKind.S3,
    '3': DestinationKind.REMOTE,
}

SOURCE_LABELS = {
    DestinationKind.LOCAL: 'Local',
    DestinationKind.S3: 'S3',
    DestinationKind.REMOTE: 'Remote',
}

BANNER = [
    '',
    '==========================================',
    '  PostgreSQL Interactive Restore Tool',
    '==========================================',
    '',
]

MAIN_MENU = [
    '',
    'Main Menu:',
    '----------',
    '1. List and restore from Local backups',
    '2. List and restore from S3 backups',
    '3. List and restore from Remote backups',
    '4. Show all backup sources',
    '5. Test PostgreSQL connection',
    '6. Exit',
    '',
]


def ask_yes_no(input_func: Callable[[str], str]) -> Callable[[str], bool]:
    """Build a confirmation gate that accepts only a literal 'yes'."""
    def confirm(question: str) -> bool:
        answer = input_func(f"{question} (yes/no): ")
        return (answer or '').strip().lower() == 'yes'
    return confirm


def run_automated(config: Config, storages: Optional[Dict[DestinationKind, StorageBackend]] = None,
                  engine: Optional[PostgresEngine] = None) -> int:
    """
    Restore from RESTORE_* parameters without prompting.

    Returns:
        Process exit code: 0 on success, 1 on any failure
    """
    try:
        request = request_from_parameters(config.restore_params)
    except ConfigurationError as e:
        logger.error(f"{e}")
        return 1

    if request is None:
        logger.error("RESTORE_SOURCE, RESTORE_FOLDER and RESTORE_TYPE must all be set")
        return 1

    logger.info("Running in non-interactive mode")
    logger.info(f"Source: {request.source.value}")
    logger.info(f"Folder: {request.folder}")
    logger.info(f"Type: {request.scope.kind.value}")

    if storages is None:
        storages = build_storages(config)
    executor = RestoreExecutor(config, storages, engine=engine, automated=True)
    result = executor.execute(request)

    if not result.success:
        logger.error(f"Restore failed: {result.error}")
        return 1

    for name, values in result.verification.items():
        logger.info(f"{name.capitalize()}: {', '.join(values) or '(none)'}")
    logger.info("Restore completed successfully")
    return 0


class RestoreTool:
    """
    Menu-driven restore session.

    Input and output are injected so the whole session can be scripted.
    """

    def __init__(self, config: Config, storages: Optional[Dict[DestinationKind, StorageBackend]] = None,
                 engine: Optional[PostgresEngine] = None,
                 input_func: Callable[[str], str] = input,
                 output_func: Callable[[str], None] = print):
        self.config = config
        self.storages = storages if storages is not None else build_storages(config)
        self.engine = engine or PostgresEngine(config.postgres)
        self.input = input_func
        self.output = output_func
        self.selector = RestoreSelector(input_func, output_func)
        self.executor = RestoreExecutor(
            config, self.storages, engine=self.engine, confirm=ask_yes_no(input_func)
        )

    def info(self, message: str):
        logger.debug(message)
        self.output(f"[INFO] {message}")

    def success(self, message: str):
        logger.debug(message)
        self.output(f"[OK] {message}")

    def warn(self, message: str):
        logger.debug(message)
        self.output(f"[WARN] {message}")

    def error(self, message: str):
        logger.debug(message)
        self.output(f"[ERROR] {message}")

    def pause(self):
        self.output('')
        self.input('Press Enter to continue...')

    def run(self) -> int:
        """
        Main menu loop.

        Returns:
            Process exit code
        """
        for line in BANNER:
            self.output(line)

        while True:
            for line in MAIN_MENU:
                self.output(line)
            option = (self.input('Select option: ') or '').strip()

            if option in SOURCE_OPTIONS:
                self.process_restore(SOURCE_OPTIONS[option])
                self.pause()
            elif option == '4':
                self.show_sources()
                self.pause()
            elif option == '5':
                self.output('')
                self.test_connection()
                self.pause()
            elif option == '6':
                self.output('')
                self.info('Goodbye!')
                self.output('')
                return 0
            else:
                self.error('Invalid option')

    def test_connection(self) -> bool:
        postgres = self.config.postgres
        self.info('Testing PostgreSQL connection...')
        try:
            self.engine.check_connection()
        except ServerConnectionError as e:
            self.error(f"Failed to connect to PostgreSQL: {e}")
            return False
        self.success(f"Connected to PostgreSQL at {postgres.host}:{postgres.port}")
        return True

    def show_sources(self) -> int:
        """
        Print reachability and folder count for every source.

        Returns:
            Number of usable sources
        """
        self.output('')
        self.output('======================================')
        self.output('  Backup Sources Detection')
        self.output('======================================')
        self.output('')

        found = 0
        for status in BackupCatalog().describe_all_sources(self.storages):
            label = SOURCE_LABELS[status.kind]
            if status.kind is DestinationKind.LOCAL:
                if status.reachable and status.count > 0:
                    self.success(f"{label}: {status.count} backup(s) found in {status.location}")
                    found += 1
                else:
                    self.warn(f"{label}: No backups found in {status.location}")
            elif status.reachable:
                self.success(f"{label}: Connected to {status.location} ({status.count} backup(s))")
                found += 1
            else:
                self.warn(f"{label}: Not configured or not accessible")

        self.output('')
        if found == 0:
            self.error('No backup sources available!')
        return found

    def show_backup_files(self, folder_path: str):
        self.output('')
        self.output('Backup contents:')
        for _, _, name, size in list_backup_files(folder_path):
            self.output(f"  {name} ({format_size(size)})")

    def process_restore(self, source: DestinationKind) -> Optional[RestoreResult]:
        """
        Pick a folder and a scope on one source, then restore it.

        Returns:
            RestoreResult when a restore was attempted, else None
        """
        storage = self.storages.get(source)
        if storage is None:
            self.error(f"{SOURCE_LABELS[source]} backups are not configured")
            return None

        catalog = BackupCatalog()
        try:
            folders = catalog.discover(storage)
        except StorageError as e:
            self.error(f"Failed to list backups: {e}")
            return None

        if not folders:
            self.error(f"No backups found in {source.value}")
            return None

        try:
            folder = self.selector.select_folder(folders)
        except InvalidSelectionError as e:
            self.error(str(e))
            return None
        if folder is None:
            self.info('Cancelled')
            return None

        if not folder.inspected:
            try:
                folder = catalog.inspect(storage, folder.folder_id)
            except StorageError as e:
                self.error(f"Failed to inspect {folder.folder_id}: {e}")
                return None

        self.output('')
        self.info(f"Selected backup: {folder.summary()}")

        try:
            folder_path = self.executor.resolve(source, folder.folder_id)
            self.output('')
            self.executor.verify(folder_path)
        except StorageError as e:
            self.error(f"{e}")
            return None
        except IntegrityError as e:
            self.error(f"Backup integrity check failed! {e}")
            return None

        self.show_backup_files(folder_path)

        try:
            choice = self.selector.select_scope(folder_path)
        except InvalidSelectionError as e:
            self.error(str(e))
            return None

        if choice is MenuAction.CANCEL:
            self.info('Cancelled')
            return None
        if choice is MenuAction.DRY_RUN:
            self.output('')
            self.show_dry_run(folder_path)
            return None

        return self.restore(RestoreRequest(source, folder.folder_id, choice), folder_path)

    def show_dry_run(self, folder_path: str):
        try:
            scope = self.selector.select_dry_run_scope(folder_path)
            report = dry_run(scope, folder_path, self.config.postgres)
        except (InvalidSelectionError, ArtifactNotFoundError) as e:
            self.error(str(e))
            return
        for line in report.lines():
            self.output(line)

    def restore(self, request: RestoreRequest, folder_path: str) -> RestoreResult:
        self.output('')
        result = self.executor.execute(request, folder_path=folder_path)

        if result.cancelled:
            self.info('Restore cancelled')
        elif not result.success:
            self.error(f"Restore failed: {result.error}")
        else:
            self.success(f"{request.scope.label()} restored")
            for name, values in result.verification.items():
                self.output('')
                self.output(f"{name.capitalize()}:")
                for value in values:
                    self.output(f"  {value}")
        return result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='pgbackup-restore',
        description='Restore PostgreSQL backups from local, S3 or remote storage'
    )
    parser.add_argument('--source', choices=[kind.value for kind in DestinationKind],
                        help='Backup source (overrides RESTORE_SOURCE)')
    parser.add_argument('--folder', help='Backup folder, e.g. 20250101_020000 (overrides RESTORE_FOLDER)')
    parser.add_argument('--type', dest='restore_type', choices=['cluster', 'globals', 'database'],
                        help='Restore type (overrides RESTORE_TYPE)')
    parser.add_argument('--database', help='Database name for a database restore (overrides RESTORE_DATABASE)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(config.log_level, config.log_file)

    overrides = {
        'source': args.source,
        'folder': args.folder,
        'type': args.restore_type,
        'database': args.database,
    }
    config.restore_params.update({key: value for key, value in overrides.items() if value})

    if config.automated_restore:
        return run_automated(config)

    tool = RestoreTool(config)
    try:
        return tool.run()
    except (EOFError, KeyboardInterrupt):
        tool.output('')
        logger.info("Restore tool interrupted")
        return 1


if __name__ == '__main__':
    sys.exit(main())
