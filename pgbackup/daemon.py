"""
pgbackup-daemon - scheduled PostgreSQL backups.

Runs one backup cycle at startup (unless RUN_ON_START=false), then one per
BACKUP_SCHEDULE tick until stopped. With --once, runs a single cycle and
exits.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from pgbackup import __version__, configure_logging
from pgbackup.backup.producer import BackupError, BackupProducer
from pgbackup.config import Config, ConfigurationError
from pgbackup.scheduler import init_scheduler, run_scheduled_backup, start_scheduler, stop_scheduler


logger = logging.getLogger(__name__)

SEPARATOR = '=' * 44


def log_banner(config: Config):
    """Log the effective configuration at startup."""
    logger.info("PostgreSQL Backup Service Starting...")
    logger.info(SEPARATOR)
    logger.info(f"Schedule: {config.schedule}")
    logger.info(f"Host: {config.postgres.host}:{config.postgres.port}")
    logger.info(f"User: {config.postgres.user}")
    logger.info(f"Local Retention: {config.local.retention_days} days")
    logger.info(f"S3 Enabled: {str(config.s3.enabled).lower()}")
    if config.s3.enabled:
        logger.info(f"S3 Retention: {config.s3.retention_days} days")
    logger.info(f"Rsync Enabled: {str(config.remote.enabled).lower()}")
    if config.remote.enabled:
        logger.info(f"Rsync Retention: {config.remote.retention_days} days")
    logger.info(SEPARATOR)


def run_once(config: Config) -> int:
    """
    Run a single backup cycle.

    Returns:
        0 on success, 1 on a partial cycle or one that could not start
    """
    try:
        result = BackupProducer(config).run_cycle()
    except BackupError as e:
        logger.error(f"Backup failed: {e}")
        return 1

    for error in result.errors:
        logger.warning(f"  - {error}")
    logger.info(f"Backup {result.folder_id} finished with status: {result.status}")
    return 0 if result.success else 1


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='pgbackup-daemon',
        description='Scheduled PostgreSQL backups to local, S3 and remote storage'
    )
    parser.add_argument('--once', action='store_true',
                        help='Run a single backup cycle and exit')
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
    log_banner(config)

    if args.once:
        return run_once(config)

    try:
        init_scheduler(config)
    except ConfigurationError as e:
        logger.error(f"{e}")
        return 1

    if config.run_on_start:
        logger.info("Running initial backup...")
        try:
            run_scheduled_backup(config)
        except KeyboardInterrupt:
            logger.info("Interrupted during initial backup, shutting down")
            stop_scheduler()
            return 1
        logger.info(SEPARATOR)
        logger.info("Initial backup completed")
        logger.info(f"Cron schedule: {config.schedule}")
        logger.info(SEPARATOR)

    # Handlers cover the blocking scheduler only, not the initial cycle
    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_scheduler()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    start_scheduler()
    return 0


if __name__ == '__main__':
    sys.exit(main())
