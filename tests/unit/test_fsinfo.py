"""
Unit tests for ownership detection (pvebackup/utils/fsinfo.py).
"""

import os
from unittest.mock import patch

import pytest

from pvebackup.utils.fsinfo import (
    DIR_MODE,
    FILE_MODE,
    apply_ownership,
    detect_ownership_support,
    filesystem_type,
)


@pytest.fixture
def mounts(tmp_path):
    path = tmp_path / 'mounts'
    path.write_text(
        '/dev/sda1 / ext4 rw,relatime 0 0\n'
        '/dev/sdb1 /mnt/usb vfat rw 0 0\n'
        'nas:/export /mnt/nas nfs4 rw 0 0\n'
        '/dev/sdc1 /mnt/with\\040space xfs rw 0 0\n'
        'garbage\n'
    )
    return str(path)


class TestFilesystemType:
    """Test filesystem_type()."""

    @pytest.mark.parametrize('path,expected', [
        ('/var/backups', 'ext4'),
        ('/mnt/usb', 'vfat'),
        ('/mnt/usb/backups', 'vfat'),
        ('/mnt/usbstick', 'ext4'),
        ('/mnt/nas/pve', 'nfs4'),
        ('/mnt/with space/x', 'xfs'),
    ])
    def test_longest_mount_wins(self, mounts, path, expected):
        with patch('pvebackup.utils.fsinfo.os.path.realpath', side_effect=lambda p: p):
            assert filesystem_type(path, mounts) == expected

    def test_unreadable_mount_table(self, tmp_path):
        assert filesystem_type('/', str(tmp_path / 'missing')) is None


class TestDetectOwnershipSupport:
    """Test detect_ownership_support()."""

    def test_fat_is_skipped(self, mounts):
        with patch('pvebackup.utils.fsinfo.filesystem_type', return_value='vfat'), \
                patch('pvebackup.utils.fsinfo.probe_ownership') as mock_probe:
            assert detect_ownership_support('/mnt/usb', 34, 34, mounts) is False
        mock_probe.assert_not_called()

    @pytest.mark.parametrize('probe_result', [True, False])
    def test_network_filesystem_is_tested_with_chown(self, mounts, probe_result):
        with patch('pvebackup.utils.fsinfo.filesystem_type', return_value='nfs4'), \
                patch('pvebackup.utils.fsinfo.probe_ownership', return_value=probe_result) as mock_probe:
            assert detect_ownership_support('/mnt/nas', 34, 34, mounts) is probe_result
        mock_probe.assert_called_once_with('/mnt/nas', 34, 34)

    def test_local_filesystem_supported(self, mounts):
        with patch('pvebackup.utils.fsinfo.filesystem_type', return_value='ext4'):
            assert detect_ownership_support('/var/backups', 34, 34, mounts) is True


class TestApplyOwnership:
    """Test apply_ownership()."""

    def test_unknown_owner_skips(self, tmp_path):
        with patch('pvebackup.utils.fsinfo.resolve_owner', return_value=None), \
                patch('pvebackup.utils.fsinfo.os.chown') as mock_chown:
            assert apply_ownership([str(tmp_path / 'a')], str(tmp_path), 'nobody-here', 'nogroup') == 0
        mock_chown.assert_not_called()

    def test_applies_owner_and_modes(self, tmp_path):
        archive = tmp_path / 'pve-backup-20240115-120000.tar.zst'
        archive.write_bytes(b'data')

        with patch('pvebackup.utils.fsinfo.resolve_owner', return_value=(34, 34)), \
                patch('pvebackup.utils.fsinfo.detect_ownership_support', return_value=True), \
                patch('pvebackup.utils.fsinfo.os.chown') as mock_chown:
            updated = apply_ownership([str(archive), str(tmp_path / 'vanished')], str(tmp_path), 'backup', 'backup')

        assert updated == 2
        mock_chown.assert_any_call(str(archive), 34, 34)
        assert (archive.stat().st_mode & 0o777) == FILE_MODE
        assert (tmp_path.stat().st_mode & 0o777) == DIR_MODE

    def test_unsupported_filesystem_skips(self, tmp_path):
        with patch('pvebackup.utils.fsinfo.resolve_owner', return_value=(34, 34)), \
                patch('pvebackup.utils.fsinfo.detect_ownership_support', return_value=False), \
                patch('pvebackup.utils.fsinfo.os.chown') as mock_chown:
            assert apply_ownership([], str(tmp_path), 'backup', 'backup') == 0
        mock_chown.assert_not_called()
