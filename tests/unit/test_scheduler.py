"""
Unit tests for the backup scheduler (pgbackup/scheduler.py).
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger

import pgbackup.scheduler as scheduler_module
from pgbackup.backup.producer import BackupError
from pgbackup.config import ConfigurationError
from pgbackup.scheduler import (
    BACKUP_JOB_ID,
    build_trigger,
    init_scheduler,
    run_scheduled_backup,
    start_scheduler,
    stop_scheduler,
)


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Each test starts without a global scheduler."""
    scheduler_module.scheduler = None
    yield
    scheduler_module.scheduler = None


@pytest.fixture
def mock_scheduler():
    """
    Mock BlockingScheduler for testing scheduler functionality.
    """
    with patch('pgbackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield mock_sched


class TestBuildTrigger:

    def test_valid_expression(self):
        assert isinstance(build_trigger('0 2 * * *'), CronTrigger)

    @pytest.mark.parametrize('schedule', [None, '', '61 * * * *', 'every day'])
    def test_invalid_expression(self, schedule):
        with pytest.raises(ConfigurationError, match='BACKUP_SCHEDULE'):
            build_trigger(schedule)


class TestInitScheduler:
    """Test scheduler construction."""

    def test_job_defaults_prevent_overlap(self, config, mock_scheduler):
        """Test cycles are coalesced and never run concurrently."""
        init_scheduler(config)

        job_defaults = mock_scheduler.call_args[1]['job_defaults']
        assert job_defaults['coalesce'] is True
        assert job_defaults['max_instances'] == 1

    def test_backup_job_added(self, config, mock_scheduler):
        cycle = MagicMock()
        init_scheduler(config, cycle=cycle)

        kwargs = mock_scheduler.return_value.add_job.call_args[1]
        assert kwargs['id'] == BACKUP_JOB_ID
        assert kwargs['func'] is run_scheduled_backup
        assert kwargs['args'] == [config, cycle]
        assert isinstance(kwargs['trigger'], CronTrigger)

    def test_initialized_once(self, config, mock_scheduler):
        first = init_scheduler(config)
        assert init_scheduler(config) is first
        assert mock_scheduler.call_count == 1

    def test_invalid_schedule(self, config, mock_scheduler):
        config.schedule = 'not a cron line'
        with pytest.raises(ConfigurationError):
            init_scheduler(config)
        mock_scheduler.assert_not_called()


class TestSchedulerLifecycle:

    def test_start_requires_init(self):
        with pytest.raises(RuntimeError):
            start_scheduler()

    def test_start_and_stop(self, config, mock_scheduler):
        instance = init_scheduler(config)

        start_scheduler()
        instance.start.assert_called_once()

        instance.running = True
        stop_scheduler()
        instance.shutdown.assert_called_once_with(wait=False)
        assert scheduler_module.scheduler is None


class TestRunScheduledBackup:
    """Test the job body."""

    def test_returns_cycle_result(self, config):
        result = MagicMock(folder_id='20250101_020000', status='success')
        cycle = MagicMock(return_value=result)

        assert run_scheduled_backup(config, cycle) is result
        cycle.assert_called_once_with(config)

    def test_backup_error_is_logged(self, config, caplog):
        """Test a cycle that cannot start does not escape the job."""
        cycle = MagicMock(side_effect=BackupError('Cannot create backup folder'))

        assert run_scheduled_backup(config, cycle) is None
        assert 'Cannot create backup folder' in caplog.text
