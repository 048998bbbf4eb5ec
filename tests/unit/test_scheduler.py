"""
Unit tests for scheduler (pvebackup/scheduler.py).

Tests APScheduler configuration and the scheduled job wrapper.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger

from pvebackup import scheduler as scheduler_module


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Reset global scheduler."""
        scheduler_module.scheduler = None

    @patch('pvebackup.scheduler.BlockingScheduler')
    def test_init_scheduler(self, mock_scheduler_class, make_config):
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler
        config = make_config(backup_schedule='0 2 * * *')

        result = scheduler_module.init_scheduler(config, env_file='/etc/pvebackup.env')

        assert result is mock_scheduler
        assert scheduler_module.scheduler is mock_scheduler
        job_defaults = mock_scheduler_class.call_args[1]['job_defaults']
        assert job_defaults['coalesce'] is True
        assert job_defaults['max_instances'] == 1

        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert kwargs['func'] is scheduler_module._execute_backup_wrapper
        assert kwargs['kwargs'] == {'config_name': 'development', 'env_file': '/etc/pvebackup.env'}
        assert isinstance(kwargs['trigger'], CronTrigger)
        assert kwargs['replace_existing'] is True

    def test_init_scheduler_custom_job(self, mock_scheduler, make_config):
        job = MagicMock()

        scheduler_module.init_scheduler(make_config(backup_schedule='*/15 * * * *'), func=job)

        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['func'] is job
        assert kwargs['kwargs'] == {}

    def test_missing_schedule(self, mock_scheduler, make_config):
        with pytest.raises(ValueError, match='BACKUP_SCHEDULE'):
            scheduler_module.init_scheduler(make_config(backup_schedule=''))

    def test_invalid_schedule(self, mock_scheduler, make_config):
        with pytest.raises(ValueError):
            scheduler_module.init_scheduler(make_config(backup_schedule='every night'))


class TestSchedulerLifecycle:
    """Test start_scheduler() and stop_scheduler()."""

    def teardown_method(self):
        scheduler_module.scheduler = None

    def test_start_without_init(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match='not initialized'):
            scheduler_module.start_scheduler()

    def test_start(self, mock_scheduler, make_config):
        job = MagicMock()
        job.id = 'pvebackup_run'
        job.name = 'Proxmox configuration backup'
        job.next_run_time = None
        mock_scheduler.get_jobs.return_value = [job]
        scheduler_module.init_scheduler(make_config(backup_schedule='0 2 * * *'))

        scheduler_module.start_scheduler()

        mock_scheduler.start.assert_called_once()

    def test_stop(self, mock_scheduler, make_config):
        scheduler_module.init_scheduler(make_config(backup_schedule='0 2 * * *'))
        mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        mock_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_stop_when_not_running(self, mock_scheduler, make_config):
        scheduler_module.init_scheduler(make_config(backup_schedule='0 2 * * *'))

        scheduler_module.stop_scheduler()

        mock_scheduler.shutdown.assert_not_called()


class TestExecuteBackupWrapper:
    """Test the scheduled job body."""

    @patch('pvebackup.scheduler.execute_backup')
    @patch('pvebackup.scheduler.load_config')
    def test_loads_fresh_config(self, mock_load_config, mock_execute, make_config):
        config = make_config()
        mock_load_config.return_value = config
        mock_execute.return_value = MagicMock(basename='pve-backup-20240115-020000', severity=0)

        scheduler_module._execute_backup_wrapper('production', env_file='/etc/pvebackup.env')

        mock_load_config.assert_called_once_with('production', env_file='/etc/pvebackup.env')
        mock_execute.assert_called_once_with(config)

    @patch('pvebackup.scheduler.execute_backup', side_effect=RuntimeError('disk gone'))
    @patch('pvebackup.scheduler.load_config')
    def test_exceptions_are_contained(self, mock_load_config, mock_execute):
        scheduler_module._execute_backup_wrapper()

        mock_execute.assert_called_once()
