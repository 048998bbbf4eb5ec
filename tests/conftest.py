"""
Shared pytest fixtures for pvebackup tests.

This module provides fixtures for:
- A fake Proxmox host tree below tmp_path
- RunConfig factory pointing every path into tmp_path
- Mock fixtures for external services (S3, rclone, cloud backends)
- Temporary file and archive fixtures
"""

import os
import tarfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from pvebackup.config import RunConfig
from pvebackup.models import Codec
from pvebackup.backup.storage import CloudBackend, StorageError
from pvebackup.utils.proc import CommandResult


@pytest.fixture
def host_root(tmp_path):
    """
    Create a minimal PVE host below tmp_path/host.

    Creates:
    - etc/pve/storage.cfg, etc/pve/user.cfg
    - etc/pve/nodes/pve1/qemu-server/100.conf
    - etc/network/interfaces, etc/hosts, etc/hostname
    """
    root = tmp_path / 'host'
    files = {
        'etc/pve/storage.cfg': 'dir: local\n\tpath /var/lib/vz\n\tcontent iso,backup\n',
        'etc/pve/user.cfg': 'user:root@pam:1:0:::root@example.com:::\n',
        'etc/pve/nodes/pve1/qemu-server/100.conf': 'cores: 2\nmemory: 2048\nname: web\n',
        'etc/network/interfaces': 'auto lo\niface lo inet loopback\n',
        'etc/hosts': '127.0.0.1 localhost\n',
        'etc/hostname': 'pve1\n',
    }
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def make_config(tmp_path, host_root):
    """
    Factory for RunConfig instances rooted in tmp_path.

    Uses gzip level 1 on one thread to keep archive builds fast and
    skips system state commands so runs never depend on the binaries of
    the test machine; any RunConfig field can be overridden by keyword.
    """

    def _make(**overrides):
        values = dict(
            config_name='development',
            base_dir=str(tmp_path),
            app_log_dir=str(tmp_path / 'log' / 'app'),
            system_root=str(host_root),
            temp_base_dir=str(tmp_path / 'tmp'),
            lock_path=str(tmp_path / 'lock'),
            metrics_path=str(tmp_path / 'metrics'),
            local_backup_path=str(tmp_path / 'backup'),
            local_log_path=str(tmp_path / 'log'),
            cloud_remote='remote',
            compression_type=Codec.GZIP,
            compression_level=1,
            compression_threads=1,
            backup_system_info=False,
            verify_retries=2,
            verify_retry_delay=0,
            prometheus_textfile_dir=str(tmp_path / 'prometheus'),
        )
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never looks for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


class FakeRunner:
    """
    Stand-in for run_command that records calls.

    Responses are looked up by the first argument after the executable
    (e.g. 'copyto'); missing entries succeed with empty output.
    """

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def __call__(self, args, timeout=None, cancel=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        response = self.responses.get(args[1] if len(args) > 1 else args[0], (0, '', ''))
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(args)
        returncode, stdout, stderr = response
        return CommandResult(args=args, returncode=returncode, stdout=stdout, stderr=stderr)

    def subcommands(self):
        return [call[1] for call in self.calls if len(call) > 1]


@pytest.fixture
def fake_runner():
    """Factory for FakeRunner instances."""
    return FakeRunner


class FakeCloudBackend(CloudBackend):
    """
    In-memory cloud backend.

    Args:
        reachable: probe() fails when False
        fail_names: File names whose uploads always fail
        fail_all: Every upload fails
    """

    def __init__(self, reachable=True, fail_names=(), fail_all=False):
        self.reachable = reachable
        self.fail_names = set(fail_names)
        self.fail_all = fail_all
        self.objects = {}
        self.uploads = []
        self.deleted = []

    def probe(self, cancel=None):
        if not self.reachable:
            raise StorageError('remote unreachable')

    def upload(self, local_path, path, cancel=None):
        if cancel is not None:
            cancel.check()
        name = os.path.basename(local_path)
        self.uploads.append((path, name))
        if self.fail_all or name in self.fail_names:
            raise StorageError(f'upload of {name} rejected')
        size = os.path.getsize(local_path)
        self.objects[(path, name)] = {'name': name, 'size': size, 'modified': datetime.now()}
        return size

    def stat(self, path, name):
        entry = self.objects.get((path, name))
        return entry['size'] if entry else None

    def list_files(self, path):
        return [dict(entry) for (p, _), entry in sorted(self.objects.items()) if p == path]

    def delete(self, path, names, cancel=None):
        removed = 0
        for name in names:
            if self.objects.pop((path, name), None) is not None:
                removed += 1
                self.deleted.append(name)
        return removed

    def names(self, path):
        return sorted(n for (p, n) in self.objects if p == path)


@pytest.fixture
def fake_cloud():
    """Factory for FakeCloudBackend instances."""
    return FakeCloudBackend


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - nested/copy_of_file1.txt (same content as test_file1.txt)
    """
    (tmp_path / 'test_file1.txt').write_text('Test content 1')
    (tmp_path / 'test_file2.log').write_text('Test log content\r\nsecond line\r\n')

    nested_dir = tmp_path / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')
    (nested_dir / 'copy_of_file1.txt').write_text('Test content 1')

    return tmp_path


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create a legacy archive without the metadata member.
    """
    test_dir = tmp_path / 'test_data'
    (test_dir / 'etc' / 'pve').mkdir(parents=True)
    (test_dir / 'etc' / 'pve' / 'storage.cfg').write_text('dir: local\n')
    (test_dir / 'etc' / 'hosts').write_text('127.0.0.1 localhost\n')

    archive_path = tmp_path / 'pve-backup-20240115-120000.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(test_dir / 'etc', arcname='etc')

    return archive_path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('pvebackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
