"""
Unit tests for destination dispatch (pvebackup/backup/dispatcher.py).

Covers tier ordering, required vs optional failures, per-tier locks,
sequential and parallel cloud uploads, retention and run log delivery.
"""

import json
import os
from datetime import datetime
from unittest.mock import patch

import pytest

from pvebackup.backup.dispatcher import DestinationDispatcher, companion_paths, lock_name
from pvebackup.backup.integrity import IntegrityError, compute_digest, create_checksum
from pvebackup.models import BackupRun, BackupType, Tier, UploadMode
from pvebackup.utils.locks import LockManager
from pvebackup.utils.proc import CancelledError, CancelToken


CLOUD_PATH = 'proxmox-backup/backup'
ARCHIVE_NAME = 'pve-backup-20240115-120000.tar.gz'


@pytest.fixture(autouse=True)
def no_backoff():
    with patch('pvebackup.backup.dispatcher.RETRY_BASE_DELAY', 0):
        yield


@pytest.fixture
def sealed_archive(tmp_path):
    """Archive in a run temp dir with .sha256, .metadata and .metadata.sha256 companions."""
    run_dir = tmp_path / 'tmp' / 'run'
    run_dir.mkdir(parents=True)
    archive = run_dir / ARCHIVE_NAME
    archive.write_bytes(os.urandom(4096))
    record = create_checksum(str(archive))
    metadata = run_dir / f'{ARCHIVE_NAME}.metadata'
    metadata.write_text(json.dumps({'archive': ARCHIVE_NAME, 'version': '2.0'}))
    (run_dir / f'{ARCHIVE_NAME}.metadata.sha256').write_text(
        f'{compute_digest(str(metadata))}  {metadata.name}\n'
    )
    return str(archive), record


@pytest.fixture
def run():
    return BackupRun(BackupType.PVE, started_at=datetime(2024, 1, 15, 12, 0, 0), hostname='pve1')


def _dispatcher(config, cloud=None, cancel=None):
    return DestinationDispatcher(config, LockManager(config.lock_path), cloud_backend=cloud,
                                 cancel=cancel, sleep=lambda seconds: None)


class TestCompanionPaths:
    """Test companion_paths()."""

    def test_existing_companions_only(self, sealed_archive):
        archive, _ = sealed_archive
        os.unlink(archive + '.metadata.sha256')

        assert companion_paths(archive) == [archive + '.sha256', archive + '.metadata']


class TestFilesystemTiers:
    """Test local and secondary dispatch."""

    def test_local_only(self, make_config, sealed_archive, run, tmp_path):
        archive, record = sealed_archive
        config = make_config()

        outcomes = _dispatcher(config).dispatch(run, archive, record)

        local = outcomes[Tier.LOCAL]
        assert local.success
        assert local.location == str(tmp_path / 'backup' / ARCHIVE_NAME)
        assert local.bytes_transferred > record.size
        assert sorted(os.listdir(tmp_path / 'backup')) == sorted([
            ARCHIVE_NAME, f'{ARCHIVE_NAME}.sha256', f'{ARCHIVE_NAME}.metadata', f'{ARCHIVE_NAME}.metadata.sha256'
        ])
        assert outcomes[Tier.SECONDARY].skipped
        assert outcomes[Tier.CLOUD].skipped
        assert outcomes[Tier.CLOUD].reason == 'disabled'

    def test_every_tier_gets_one_outcome(self, make_config, sealed_archive, run):
        archive, record = sealed_archive
        dispatcher = _dispatcher(make_config())

        dispatcher.dispatch(run, archive, record)
        first = dict(run.outcomes)
        dispatcher.dispatch(run, archive, record)

        assert set(run.outcomes) == {Tier.LOCAL, Tier.SECONDARY, Tier.CLOUD}
        assert all(run.outcomes[t] is first[t] for t in Tier)

    def test_secondary_copy(self, make_config, sealed_archive, run, tmp_path):
        archive, record = sealed_archive
        config = make_config(secondary_enabled=True, secondary_backup_path=str(tmp_path / 'secondary'))

        outcomes = _dispatcher(config).dispatch(run, archive, record)

        assert outcomes[Tier.SECONDARY].success
        assert (tmp_path / 'secondary' / ARCHIVE_NAME).read_bytes() == open(archive, 'rb').read()

    def test_optional_secondary_failure_continues(self, make_config, sealed_archive, run, tmp_path, fake_cloud):
        archive, record = sealed_archive
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('x')
        cloud = fake_cloud()
        config = make_config(secondary_enabled=True, secondary_backup_path=str(blocker / 'secondary'),
                             cloud_enabled=True)

        outcomes = _dispatcher(config, cloud).dispatch(run, archive, record)

        assert outcomes[Tier.LOCAL].success
        assert not outcomes[Tier.SECONDARY].success
        assert not outcomes[Tier.SECONDARY].skipped
        assert outcomes[Tier.CLOUD].success

    def test_required_local_failure_aborts_rest(self, make_config, sealed_archive, run, tmp_path, fake_cloud):
        archive, record = sealed_archive
        blocker = tmp_path / 'not-a-dir'
        blocker.write_text('x')
        cloud = fake_cloud()
        config = make_config(local_backup_path=str(blocker / 'backup'), cloud_enabled=True)

        outcomes = _dispatcher(config, cloud).dispatch(run, archive, record)

        assert not outcomes[Tier.LOCAL].success
        assert outcomes[Tier.CLOUD].skipped
        assert 'aborted after required local failure' in outcomes[Tier.CLOUD].reason
        assert cloud.uploads == []

    def test_verification_failure_exhausts_attempts(self, make_config, sealed_archive, run):
        archive, record = sealed_archive
        config = make_config(verify_retries=2)

        with patch('pvebackup.backup.dispatcher.verify_file', side_effect=[True, False, False]):
            outcomes = _dispatcher(config).dispatch(run, archive, record)

        assert not outcomes[Tier.LOCAL].success
        assert 'failed verification after 2 attempts' in outcomes[Tier.LOCAL].reason

    def test_archive_changed_after_checksum(self, make_config, sealed_archive, run):
        archive, record = sealed_archive
        with open(archive, 'ab') as f:
            f.write(b'tampered')

        with pytest.raises(IntegrityError, match='changed after checksum'):
            _dispatcher(make_config()).dispatch(run, archive, record)

        assert run.outcomes == {}

    def test_busy_tier_lock(self, make_config, sealed_archive, run):
        archive, record = sealed_archive
        config = make_config()
        holder = LockManager(config.lock_path).acquire(lock_name(Tier.LOCAL))
        try:
            outcomes = _dispatcher(config).dispatch(run, archive, record)
        finally:
            holder.release()

        assert not outcomes[Tier.LOCAL].success
        assert 'busy' in outcomes[Tier.LOCAL].reason

    def test_cancelled_run(self, make_config, sealed_archive, run):
        archive, record = sealed_archive
        token = CancelToken()
        token.cancel('received SIGTERM')

        with pytest.raises(CancelledError, match='received SIGTERM'):
            _dispatcher(make_config(), cancel=token).dispatch(run, archive, record)

        assert run.outcomes == {}

    def test_cancelled_between_tiers(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        token = CancelToken()
        cloud = fake_cloud()
        dispatcher = _dispatcher(make_config(cloud_enabled=True), cloud, cancel=token)
        store = dispatcher._dispatch_filesystem

        def store_then_cancel(*args):
            outcome = store(*args)
            token.cancel('received SIGTERM')
            return outcome

        with patch.object(dispatcher, '_dispatch_filesystem', side_effect=store_then_cancel):
            outcomes = dispatcher.dispatch(run, archive, record)

        assert outcomes[Tier.LOCAL].success
        assert not outcomes[Tier.CLOUD].success
        assert outcomes[Tier.CLOUD].reason == 'received SIGTERM'
        assert cloud.uploads == []


class TestCloudTier:
    """Test cloud dispatch."""

    @pytest.mark.parametrize('mode', [UploadMode.SEQUENTIAL, UploadMode.PARALLEL])
    def test_upload_with_companions(self, make_config, sealed_archive, run, fake_cloud, mode):
        archive, record = sealed_archive
        cloud = fake_cloud()
        config = make_config(cloud_enabled=True, upload_mode=mode)

        outcomes = _dispatcher(config, cloud).dispatch(run, archive, record)

        outcome = outcomes[Tier.CLOUD]
        assert outcome.success
        assert outcome.location == f'remote:/{CLOUD_PATH}/{ARCHIVE_NAME}'
        assert cloud.names(CLOUD_PATH) == sorted([
            ARCHIVE_NAME, f'{ARCHIVE_NAME}.sha256', f'{ARCHIVE_NAME}.metadata', f'{ARCHIVE_NAME}.metadata.sha256'
        ])

    def test_optional_cloud_failure_retries(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud(fail_all=True)
        config = make_config(cloud_enabled=True, rclone_retries=3)

        outcomes = _dispatcher(config, cloud).dispatch(run, archive, record)

        assert outcomes[Tier.LOCAL].success
        assert not outcomes[Tier.CLOUD].success
        assert 'after 3 attempts' in outcomes[Tier.CLOUD].reason
        assert cloud.uploads == [(CLOUD_PATH, ARCHIVE_NAME)] * 3

    def test_companion_failure_is_a_warning(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud(fail_names={f'{ARCHIVE_NAME}.metadata'})
        config = make_config(cloud_enabled=True, rclone_retries=1)

        outcome = _dispatcher(config, cloud).dispatch(run, archive, record)[Tier.CLOUD]

        assert outcome.success
        assert len(outcome.warnings) == 1
        assert f'{ARCHIVE_NAME}.metadata' in outcome.warnings[0]

    def test_unreachable_remote(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud(reachable=False)
        dispatcher = _dispatcher(make_config(cloud_enabled=True), cloud)

        outcomes = dispatcher.dispatch(run, archive, record)

        assert outcomes[Tier.CLOUD].reason == 'cloud remote unreachable'
        assert dispatcher.cloud_connectivity == 'error'
        assert cloud.uploads == []

    def test_remote_size_mismatch_fails_verification(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud()
        config = make_config(cloud_enabled=True, rclone_retries=2)

        with patch.object(cloud, 'stat', return_value=1):
            outcome = _dispatcher(config, cloud).dispatch(run, archive, record)[Tier.CLOUD]

        assert not outcome.success
        assert 'remote verification failed' in outcome.reason

    def test_skip_verification(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud()
        config = make_config(cloud_enabled=True, skip_cloud_verification=True)

        with patch.object(cloud, 'stat', return_value=None):
            outcome = _dispatcher(config, cloud).dispatch(run, archive, record)[Tier.CLOUD]

        assert outcome.success

    def test_parallel_archive_failure_cancels_siblings(self, make_config, sealed_archive, run, fake_cloud):
        archive, record = sealed_archive
        cloud = fake_cloud(fail_names={ARCHIVE_NAME})
        config = make_config(cloud_enabled=True, upload_mode=UploadMode.PARALLEL,
                             cloud_parallel_max_jobs=1, rclone_retries=1)

        outcome = _dispatcher(config, cloud).dispatch(run, archive, record)[Tier.CLOUD]

        assert not outcome.success
        assert cloud.names(CLOUD_PATH) == []

    def test_cloud_check_disabled(self, make_config):
        dispatcher = _dispatcher(make_config())

        assert dispatcher.probe_cloud() is False
        assert dispatcher.cloud_connectivity == 'disabled'


class TestRetentionAndInventory:
    """Test apply_retention() and inventory()."""

    def test_retention_after_dispatch(self, make_config, sealed_archive, run, tmp_path):
        archive, record = sealed_archive
        backup_dir = tmp_path / 'backup'
        backup_dir.mkdir()
        for day in range(1, 4):
            old = backup_dir / f'pve-backup-2024010{day}-120000.tar.gz'
            old.write_bytes(b'old')
            (backup_dir / f'{old.name}.sha256').write_text('0' * 64 + f'  {old.name}\n')
        config = make_config(max_local_backups=2)
        dispatcher = _dispatcher(config)
        dispatcher.dispatch(run, archive, record)

        summaries = dispatcher.apply_retention(run)

        assert summaries[Tier.LOCAL]['deleted'] == 2
        assert summaries[Tier.LOCAL]['companions'] == 2
        archives = sorted(n for n in os.listdir(backup_dir) if n.endswith('.tar.gz'))
        assert archives == ['pve-backup-20240103-120000.tar.gz', ARCHIVE_NAME]

    def test_retention_skips_failed_tiers(self, make_config, run):
        dispatcher = _dispatcher(make_config())

        assert dispatcher.apply_retention(run) == {}

    def test_inventory(self, make_config, sealed_archive, run, fake_cloud, tmp_path):
        archive, record = sealed_archive
        cloud = fake_cloud()
        config = make_config(cloud_enabled=True)
        dispatcher = _dispatcher(config, cloud)
        dispatcher.dispatch(run, archive, record)
        (tmp_path / 'log').mkdir(exist_ok=True)
        (tmp_path / 'log' / 'pve-backup-20240115-120000.log').write_text('log')

        counts = dispatcher.inventory()

        assert counts['backups'] == {'local': 1, 'secondary': 0, 'cloud': 1}
        assert counts['logs']['local'] == 1
        assert counts['logs']['cloud'] == 0

    def test_inventory_skips_unreachable_cloud(self, make_config, fake_cloud):
        dispatcher = _dispatcher(make_config(cloud_enabled=True), fake_cloud(reachable=False))
        dispatcher.probe_cloud()

        counts = dispatcher.inventory()

        assert 'cloud' not in counts['backups']


class TestDispatchLogs:
    """Test dispatch_logs()."""

    def test_copies_log_to_other_tiers(self, make_config, sealed_archive, run, fake_cloud, tmp_path):
        archive, record = sealed_archive
        cloud = fake_cloud()
        config = make_config(secondary_enabled=True, secondary_backup_path=str(tmp_path / 'secondary'),
                             secondary_log_path=str(tmp_path / 'secondary-log'), cloud_enabled=True)
        dispatcher = _dispatcher(config, cloud)
        dispatcher.dispatch(run, archive, record)
        log_dir = tmp_path / 'log'
        log_dir.mkdir(exist_ok=True)
        log_path = log_dir / 'pve-backup-20240115-120000.log'
        log_path.write_text('run log\n')

        results = dispatcher.dispatch_logs(run, str(log_path))

        assert results[Tier.SECONDARY] == {'delivered': True, 'error': None}
        assert results[Tier.CLOUD] == {'delivered': True, 'error': None}
        assert results[Tier.LOCAL]['delivered'] is True
        assert (tmp_path / 'secondary-log' / log_path.name).exists()
        assert cloud.names('proxmox-backup/log') == [log_path.name]

    def test_cloud_log_failure_is_reported(self, make_config, sealed_archive, run, fake_cloud, tmp_path):
        archive, record = sealed_archive
        cloud = fake_cloud(fail_names={'pve-backup-20240115-120000.log'})
        dispatcher = _dispatcher(make_config(cloud_enabled=True), cloud)
        dispatcher.dispatch(run, archive, record)
        log_path = tmp_path / 'pve-backup-20240115-120000.log'
        log_path.write_text('run log\n')

        results = dispatcher.dispatch_logs(run, str(log_path))

        assert results[Tier.CLOUD]['delivered'] is False
        assert 'rejected' in results[Tier.CLOUD]['error']

    def test_cancelled_run_keeps_log_local(self, make_config, run, tmp_path):
        token = CancelToken()
        token.cancel('shutdown')
        log_path = tmp_path / 'run.log'
        log_path.write_text('x')

        assert _dispatcher(make_config(), cancel=token).dispatch_logs(run, str(log_path)) == {}
