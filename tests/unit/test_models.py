"""
Unit tests for run models (pvebackup/models.py).
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from pvebackup.models import BackupRun, BackupType, DispatchOutcome, RunSummary, Severity, Tier


class TestSeverity:
    """Test Severity."""

    @pytest.mark.parametrize('severity,status,code', [
        (Severity.SUCCESS, 'success', 0),
        (Severity.WARNING, 'warning', 1),
        (Severity.ERROR, 'failure', 2),
    ])
    def test_status_and_exit_code(self, severity, status, code):
        assert severity.status == status
        assert int(severity) == code


class TestBackupRun:
    """Test BackupRun."""

    def test_basename(self):
        run = BackupRun(BackupType.PBS, started_at=datetime(2024, 1, 15, 12, 30, 5), hostname='pbs1')

        assert run.basename == 'pbs-backup-20240115-123005'
        assert run.timestamp == '20240115-123005'

    def test_hostname_is_short(self):
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr('pvebackup.models.socket.gethostname', lambda: 'pve1.example.com')
            run = BackupRun(BackupType.PVE)

        assert run.hostname == 'pve1'

    def test_severity_only_goes_up(self):
        run = BackupRun(BackupType.PVE, hostname='pve1')

        run.raise_severity(Severity.WARNING, 'cloud tier failed')
        run.raise_severity(Severity.ERROR, 'local tier failed')
        result = run.raise_severity(Severity.WARNING, 'retention failed')

        assert result is Severity.ERROR
        assert run.severity is Severity.ERROR
        assert run.reasons == ['cloud tier failed', 'local tier failed', 'retention failed']

    def test_success_reason_is_not_recorded(self):
        run = BackupRun(BackupType.PVE, hostname='pve1')

        run.raise_severity(Severity.SUCCESS, 'all good')

        assert run.severity is Severity.SUCCESS
        assert run.reasons == []

    @freeze_time('2024-01-15 12:00:00')
    def test_duration(self):
        run = BackupRun(BackupType.PVE, hostname='pve1')
        run.finished_at = datetime(2024, 1, 15, 12, 1, 30)

        assert run.duration == 90.0


class TestRunSummary:
    """Test RunSummary."""

    def test_from_run(self):
        run = BackupRun(BackupType.PVE, started_at=datetime(2024, 1, 15, 12, 0, 0), hostname='pve1')
        run.archive_path = '/tmp/pvebackup-x/pve-backup-20240115-120000.tar.zst'
        run.outcomes[Tier.CLOUD] = DispatchOutcome.failed(Tier.CLOUD, 'unreachable')
        run.outcomes[Tier.LOCAL] = DispatchOutcome(tier=Tier.LOCAL, success=True)
        run.raise_severity(Severity.WARNING, 'cloud tier failed')

        summary = RunSummary.from_run(run, warnings=1, issues=['WARNING|NETWORK|unreachable'])

        assert summary.status == 'warning'
        assert summary.exit_code == 1
        assert summary.archive_name == 'pve-backup-20240115-120000.tar.zst'
        assert [o.tier for o in summary.outcomes] == [Tier.LOCAL, Tier.CLOUD]
        assert summary.tier_success(Tier.LOCAL)
        assert not summary.tier_success(Tier.CLOUD)

        data = summary.to_dict()
        assert data['started_at'] == '2024-01-15T12:00:00'
        assert data['counters'] is None
        assert data['outcomes'][1] == {
            'tier': 'cloud', 'success': False, 'skipped': False, 'bytes_transferred': 0,
            'duration': 0.0, 'reason': 'unreachable', 'location': None, 'warnings': [],
        }
