"""
Unit tests for archive compression (pvebackup/backup/compression.py).

Tests archive creation for every codec, level resolution and filename helpers.
"""

import os
import tarfile

import pytest
from freezegun import freeze_time

from pvebackup.backup.compression import (
    CompressionError,
    codec_for_filename,
    create_archive,
    generate_archive_filename,
    get_archive_size,
    open_archive,
    resolve_codec,
    resolve_threads,
    scan_archive,
    strip_archive_extension,
)
from pvebackup.models import Codec, CompressionMode


def _member_names(archive_path):
    with open_archive(archive_path) as tar:
        return sorted(m.name for m in tar)


class TestCreateArchive:
    """Test create_archive() function."""

    @pytest.mark.parametrize('codec,extension', [
        (Codec.ZSTD, '.tar.zst'),
        (Codec.XZ, '.tar.xz'),
        (Codec.LZMA, '.tar.lzma'),
        (Codec.GZIP, '.tar.gz'),
        (Codec.BZIP2, '.tar.bz2'),
        (Codec.NONE, '.tar'),
    ])
    def test_create_archive_per_codec(self, temp_files, tmp_path, codec, extension):
        """Test every codec produces a readable archive with its extension."""
        output = tmp_path / 'out' / 'pve-backup-20240115-120000'
        output.parent.mkdir()

        archive_path = create_archive(str(temp_files / 'nested'), str(output), codec=codec, level=3, threads=1)

        assert archive_path == str(output) + extension
        assert os.path.exists(archive_path)
        assert _member_names(archive_path) == ['copy_of_file1.txt', 'test_file3.txt']

    @pytest.mark.parametrize('mode', list(CompressionMode))
    def test_create_archive_per_mode(self, temp_files, tmp_path, mode):
        """Test every compression mode works with zstd."""
        archive_path = create_archive(
            str(temp_files / 'nested'), str(tmp_path / 'archive'),
            codec=Codec.ZSTD, mode=mode, level=6, threads=1
        )

        assert len(scan_archive(archive_path)) == 2

    def test_symlinks_stored_as_links(self, tmp_path):
        source = tmp_path / 'src'
        source.mkdir()
        (source / 'real.cfg').write_text('value')
        os.symlink('real.cfg', source / 'alias.cfg')

        archive_path = create_archive(str(source), str(tmp_path / 'archive'), codec=Codec.GZIP, level=1)

        with tarfile.open(archive_path, 'r:gz') as tar:
            member = tar.getmember('alias.cfg')
            assert member.issym()
            assert member.linkname == 'real.cfg'

    def test_create_archive_missing_source(self, tmp_path):
        with pytest.raises(CompressionError, match='does not exist'):
            create_archive(str(tmp_path / 'missing'), str(tmp_path / 'archive'))

    def test_failed_archive_is_removed(self, temp_files, tmp_path):
        output = tmp_path / 'no-such-dir' / 'archive'

        with pytest.raises(CompressionError):
            create_archive(str(temp_files / 'nested'), str(output), codec=Codec.GZIP)

        assert not os.path.exists(str(output) + '.tar.gz')


class TestScanArchive:
    """Test scan_archive()."""

    def test_lists_members(self, sample_archive):
        assert sorted(scan_archive(str(sample_archive))) == [
            'etc', 'etc/hosts', 'etc/pve', 'etc/pve/storage.cfg'
        ]

    def test_strips_leading_dot(self, tmp_path):
        (tmp_path / 'user.cfg').write_text('user:root@pam\n')
        archive_path = tmp_path / 'dotted.tar.gz'
        with tarfile.open(archive_path, 'w:gz') as tar:
            tar.add(tmp_path / 'user.cfg', arcname='./etc/pve/user.cfg')

        assert scan_archive(str(archive_path)) == ['etc/pve/user.cfg']

    def test_truncated_archive(self, temp_files, tmp_path):
        archive_path = create_archive(str(temp_files / 'nested'), str(tmp_path / 'archive'), codec=Codec.GZIP)
        with open(archive_path, 'r+b') as f:
            f.truncate(20)

        with pytest.raises(CompressionError):
            scan_archive(archive_path)

    def test_unknown_extension(self, tmp_path):
        path = tmp_path / 'archive.rar'
        path.write_bytes(b'not a tar')

        with pytest.raises(CompressionError, match='Unknown archive format'):
            scan_archive(str(path))


class TestLevels:
    """Test codec level resolution."""

    @pytest.mark.parametrize('codec,mode,level,expected', [
        (Codec.ZSTD, CompressionMode.FAST, 6, 1),
        (Codec.ZSTD, CompressionMode.STANDARD, 6, 6),
        (Codec.ZSTD, CompressionMode.MAXIMUM, 6, 19),
        (Codec.ZSTD, CompressionMode.ULTRA, 6, 22),
        (Codec.GZIP, CompressionMode.STANDARD, 15, 9),
        (Codec.GZIP, CompressionMode.ULTRA, 3, 9),
        (Codec.XZ, CompressionMode.FAST, 6, 1),
        (Codec.NONE, CompressionMode.MAXIMUM, 6, 0),
    ])
    def test_resolve_level(self, codec, mode, level, expected):
        assert resolve_codec(codec).resolve_level(mode, level) == expected

    @pytest.mark.parametrize('threads,expected', [(1, 1), (8, 8), (-1, 2), (65, 2)])
    def test_resolve_threads(self, threads, expected):
        assert resolve_threads(threads) == expected

    def test_resolve_threads_auto(self):
        assert resolve_threads(0) == (os.cpu_count() or 1)


class TestFilenameHelpers:
    """Test filename helpers."""

    @freeze_time('2024-01-15 12:30:45')
    def test_generate_archive_filename(self):
        assert generate_archive_filename('pve', Codec.ZSTD) == 'pve-backup-20240115-123045.tar.zst'
        assert generate_archive_filename('pbs', Codec.GZIP) == 'pbs-backup-20240115-123045.tar.gz'

    def test_generate_archive_filename_sanitizes_type(self):
        assert generate_archive_filename('p v/e', Codec.NONE, timestamp='20240115-000000') == \
            'p_v_e-backup-20240115-000000.tar'

    @pytest.mark.parametrize('filename,expected', [
        ('pve-backup-20240115-120000.tar.zst', 'pve-backup-20240115-120000'),
        ('pve-backup-20240115-120000.tar.lzma', 'pve-backup-20240115-120000'),
        ('pve-backup-20240115-120000.tar', 'pve-backup-20240115-120000'),
        ('notes.txt', 'notes'),
    ])
    def test_strip_archive_extension(self, filename, expected):
        assert strip_archive_extension(filename) == expected

    def test_codec_for_filename_prefers_longest_extension(self):
        assert codec_for_filename('x.tar.gz').codec is Codec.GZIP
        assert codec_for_filename('x.tar').codec is Codec.NONE
        assert codec_for_filename('x.zip') is None

    def test_get_archive_size(self, sample_archive):
        assert get_archive_size(str(sample_archive)) == os.path.getsize(sample_archive)

    def test_get_archive_size_missing(self, tmp_path):
        with pytest.raises(CompressionError):
            get_archive_size(str(tmp_path / 'missing.tar.gz'))
