"""
Compression codecs for backup archives.

Supports:
- zstd: Zstandard compressed tar (.tar.zst), multi-threaded
- xz: LZMA2 compressed tar (.tar.xz)
- lzma: Legacy LZMA compressed tar (.tar.lzma)
- gzip: Gzip compressed tar (.tar.gz)
- bzip2: Bzip2 compressed tar (.tar.bz2)
- none: No compression (.tar)

Each codec is one strategy class, looked up once per run through
resolve_codec(). Compression modes map to codec levels:
fast = 1, standard = configured level, maximum = 19 (zstd) / 9,
ultra = 22 with a 128 MiB window (zstd) / 9. xz and lzma add the
extreme preset flag in maximum and ultra.
"""

import lzma
import os
import tarfile
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import zstandard

from pvebackup.models import Codec, CompressionMode, TIMESTAMP_FORMAT


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def resolve_threads(threads: int) -> int:
    """0 means one per CPU; anything outside 1..64 falls back to 2."""
    if threads == 0:
        return os.cpu_count() or 1
    if threads < 1 or threads > 64:
        return 2
    return threads


class CodecStrategy:
    """Base class: a tar stream wrapped in one compression format."""

    codec: Codec = Codec.NONE
    extension = '.tar'
    min_level = 0
    max_level = 0
    maximum_level = 0
    ultra_level = 0

    def resolve_level(self, mode: CompressionMode, level: int) -> int:
        if mode is CompressionMode.FAST:
            return min(max(1, self.min_level), self.max_level)
        if mode is CompressionMode.MAXIMUM:
            return self.maximum_level
        if mode is CompressionMode.ULTRA:
            return self.ultra_level
        return min(max(level, self.min_level), self.max_level)

    @contextmanager
    def open_writer(self, path: str, level: int, mode: CompressionMode, threads: int) -> Iterator[tarfile.TarFile]:
        with tarfile.open(path, 'w') as tar:
            yield tar

    @contextmanager
    def open_reader(self, path: str) -> Iterator[tarfile.TarFile]:
        with tarfile.open(path, 'r|') as tar:
            yield tar


class NoneCodec(CodecStrategy):
    codec = Codec.NONE
    extension = '.tar'


class GzipCodec(CodecStrategy):
    codec = Codec.GZIP
    extension = '.tar.gz'
    min_level = 1
    max_level = 9
    maximum_level = 9
    ultra_level = 9

    @contextmanager
    def open_writer(self, path, level, mode, threads):
        with tarfile.open(path, 'w:gz', compresslevel=level) as tar:
            yield tar

    @contextmanager
    def open_reader(self, path):
        with tarfile.open(path, 'r|gz') as tar:
            yield tar


class Bzip2Codec(CodecStrategy):
    codec = Codec.BZIP2
    extension = '.tar.bz2'
    min_level = 1
    max_level = 9
    maximum_level = 9
    ultra_level = 9

    @contextmanager
    def open_writer(self, path, level, mode, threads):
        with tarfile.open(path, 'w:bz2', compresslevel=level) as tar:
            yield tar

    @contextmanager
    def open_reader(self, path):
        with tarfile.open(path, 'r|bz2') as tar:
            yield tar


class XzCodec(CodecStrategy):
    codec = Codec.XZ
    extension = '.tar.xz'
    min_level = 0
    max_level = 9
    maximum_level = 9
    ultra_level = 9

    def preset(self, level: int, mode: CompressionMode) -> int:
        if mode in (CompressionMode.MAXIMUM, CompressionMode.ULTRA):
            return level | lzma.PRESET_EXTREME
        return level

    @contextmanager
    def open_writer(self, path, level, mode, threads):
        with tarfile.open(path, 'w:xz', preset=self.preset(level, mode)) as tar:
            yield tar

    @contextmanager
    def open_reader(self, path):
        with tarfile.open(path, 'r|xz') as tar:
            yield tar


class LzmaCodec(XzCodec):
    codec = Codec.LZMA
    extension = '.tar.lzma'

    @contextmanager
    def open_writer(self, path, level, mode, threads):
        with lzma.LZMAFile(path, 'wb', format=lzma.FORMAT_ALONE, preset=self.preset(level, mode)) as raw:
            with tarfile.open(fileobj=raw, mode='w|') as tar:
                yield tar

    @contextmanager
    def open_reader(self, path):
        with lzma.LZMAFile(path, 'rb', format=lzma.FORMAT_ALONE) as raw:
            with tarfile.open(fileobj=raw, mode='r|') as tar:
                yield tar


class ZstdCodec(CodecStrategy):
    codec = Codec.ZSTD
    extension = '.tar.zst'
    min_level = 1
    max_level = 22
    maximum_level = 19
    ultra_level = 22
    ultra_window_log = 27

    def compressor(self, level: int, mode: CompressionMode, threads: int) -> zstandard.ZstdCompressor:
        if mode is CompressionMode.ULTRA:
            params = zstandard.ZstdCompressionParameters.from_level(
                level, window_log=self.ultra_window_log, threads=threads, write_checksum=1
            )
            return zstandard.ZstdCompressor(compression_params=params)
        return zstandard.ZstdCompressor(level=level, threads=threads, write_checksum=True)

    @contextmanager
    def open_writer(self, path, level, mode, threads):
        cctx = self.compressor(level, mode, threads)
        with open(path, 'wb') as fh:
            with cctx.stream_writer(fh, closefd=False) as writer:
                with tarfile.open(fileobj=writer, mode='w|') as tar:
                    yield tar

    @contextmanager
    def open_reader(self, path):
        dctx = zstandard.ZstdDecompressor(max_window_size=1 << 31)
        with open(path, 'rb') as fh:
            with dctx.stream_reader(fh) as reader:
                with tarfile.open(fileobj=reader, mode='r|') as tar:
                    yield tar


CODECS: Dict[Codec, CodecStrategy] = {
    strategy.codec: strategy
    for strategy in (ZstdCodec(), XzCodec(), LzmaCodec(), GzipCodec(), Bzip2Codec(), NoneCodec())
}


def resolve_codec(codec: Codec) -> CodecStrategy:
    """Strategy for a codec; unknown values fall back to zstd."""
    return CODECS.get(codec, CODECS[Codec.ZSTD])


def codec_for_filename(filename: str) -> Optional[CodecStrategy]:
    """Find the strategy whose extension the filename carries."""
    # Longest extension first so '.tar' never shadows '.tar.gz'
    for strategy in sorted(CODECS.values(), key=lambda s: len(s.extension), reverse=True):
        if filename.endswith(strategy.extension):
            return strategy
    return None


def create_archive(
    source_dir: str,
    output_path: str,
    codec: Codec = Codec.ZSTD,
    mode: CompressionMode = CompressionMode.STANDARD,
    level: int = 6,
    threads: int = 0
) -> str:
    """
    Create a compressed archive of a staging directory.

    Members are stored relative to ``source_dir`` in sorted order; symlinks
    are stored as links.

    Args:
        source_dir: Directory whose contents become the archive root
        output_path: Path where archive should be created (without extension)
        codec: Compression codec
        mode: Compression mode
        level: Level used in standard mode
        threads: Worker threads (0 = one per CPU)

    Returns:
        Full path to the created archive file

    Raises:
        CompressionError: If archive creation fails
    """
    if not os.path.isdir(source_dir):
        raise CompressionError(f"Source directory does not exist: {source_dir}")

    strategy = resolve_codec(codec)
    archive_path = f"{output_path}{strategy.extension}"
    resolved_level = strategy.resolve_level(mode, level)

    try:
        with strategy.open_writer(archive_path, resolved_level, mode, resolve_threads(threads)) as tar:
            for name in sorted(os.listdir(source_dir)):
                tar.add(os.path.join(source_dir, name), arcname=name, recursive=True)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}") from e


@contextmanager
def open_archive(archive_path: str) -> Iterator[tarfile.TarFile]:
    """
    Open an archive for sequential reading, picking the codec by extension.

    Raises:
        CompressionError: If the extension is not recognised
    """
    strategy = codec_for_filename(archive_path)
    if strategy is None:
        raise CompressionError(f"Unknown archive format: {archive_path}")
    with strategy.open_reader(archive_path) as tar:
        yield tar


def scan_archive(archive_path: str) -> List[str]:
    """
    Read every member of an archive to prove it decompresses end to end.

    Returns:
        Member names, without a leading './'

    Raises:
        CompressionError: If the archive is unreadable or empty
    """
    names = []
    try:
        with open_archive(archive_path) as tar:
            for member in tar:
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        while extracted.read(1024 * 1024):
                            pass
                name = member.name
                names.append(name[2:] if name.startswith('./') else name)
    except CompressionError:
        raise
    except Exception as e:
        raise CompressionError(f"Archive structure test failed: {e}") from e

    if not names:
        raise CompressionError(f"Archive is empty: {archive_path}")
    return names



def generate_archive_filename(backup_type: str, codec: Codec = Codec.ZSTD,
                              timestamp: Optional[str] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {type}-backup-{YYYYMMDD-HHMMSS}.tar.{ext}

    Args:
        backup_type: pve, pbs or mixed
        codec: Compression codec
        timestamp: Preformatted timestamp (default: now)

    Returns:
        Filename (without path)
    """
    if timestamp is None:
        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)

    safe_type = "".join(c if c.isalnum() or c in ('-', '_') else '_' for c in backup_type)
    return f"{safe_type}-backup-{timestamp}{resolve_codec(codec).extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.zst, .tar.gz, .tar.lzma

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    strategy = codec_for_filename(filename)
    if strategy is not None:
        return filename[:-len(strategy.extension)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
