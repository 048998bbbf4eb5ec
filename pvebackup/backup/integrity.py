"""
Integrity verification for backup archives.

The archive digest (sha256) and size are computed once after the archive
is sealed and stored in a ``<archive>.sha256`` sidecar using the
sha256sum line format, so ``sha256sum -c`` works on it directly.
Filesystem copies are verified by recomputing the digest; remote copies
by existence plus size.
"""

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import retry_if_exception_type, retry_if_result, wait_fixed

from pvebackup.utils.retry import cancellable_sleep, retrying


logger = logging.getLogger(__name__)

BLOCK_SIZE = 1024 * 1024
SIDECAR_SUFFIX = '.sha256'


class IntegrityError(Exception):
    """Raised when a digest cannot be produced or does not match."""
    pass


def compute_digest(path: str, cancel=None) -> str:
    """
    Compute the sha256 hex digest of a file.

    Args:
        path: File to hash
        cancel: Optional CancelToken checked between blocks

    Returns:
        Lowercase hex digest

    Raises:
        OSError: If the file cannot be read
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            if cancel is not None:
                cancel.check()
            block = f.read(BLOCK_SIZE)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


def sidecar_path(archive_path: str) -> str:
    return archive_path + SIDECAR_SUFFIX


@dataclass(frozen=True)
class ChecksumRecord:
    digest: str
    size: int
    filename: str

    def line(self) -> str:
        return f"{self.digest}  {self.filename}\n"

    def write(self, path: str):
        with open(path, 'w', encoding='utf-8') as f:
            f.write(self.line())

    @classmethod
    def read(cls, path: str, size: int = -1) -> 'ChecksumRecord':
        """
        Load a record from a sha256sum-format sidecar.

        Args:
            path: Sidecar path
            size: Known archive size (-1 when unknown)

        Raises:
            IntegrityError: If the sidecar is missing or malformed
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                line = f.readline().strip()
        except OSError as e:
            raise IntegrityError(f"Cannot read checksum file {path}: {e}") from e

        parts = line.split(None, 1)
        if len(parts) != 2 or len(parts[0]) != 64:
            raise IntegrityError(f"Malformed checksum file {path}")
        return cls(digest=parts[0].lower(), size=size, filename=parts[1].lstrip('*'))


def _write_checksum(archive_path: str, cancel=None) -> ChecksumRecord:
    size = os.path.getsize(archive_path)
    digest = compute_digest(archive_path, cancel)
    record = ChecksumRecord(digest=digest, size=size, filename=os.path.basename(archive_path))
    record.write(sidecar_path(archive_path))
    return record


def create_checksum(archive_path: str, attempts: int = 3, delay: float = 1.0, cancel=None) -> ChecksumRecord:
    """
    Digest an archive and write its sidecar.

    Args:
        archive_path: Sealed archive
        attempts: Tries before giving up on read errors (first try plus two retries)
        delay: Seconds between tries
        cancel: Optional CancelToken

    Returns:
        ChecksumRecord

    Raises:
        IntegrityError: If no digest could be produced
    """
    controller = retrying(
        attempts,
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(OSError),
        sleep=cancellable_sleep(cancel, time.sleep),
        label=f"Checksum of {os.path.basename(archive_path)}",
        category='VERIFY',
    )
    try:
        record = controller(_write_checksum, archive_path, cancel)
    except OSError as e:
        raise IntegrityError(f"Failed to compute checksum for {archive_path}: {e}") from e

    logger.info(f"Checksum {record.digest} ({record.size} bytes)", extra={'category': 'VERIFY'})
    return record


def verify_file(path: str, record: ChecksumRecord, cancel=None) -> bool:
    """
    Recompute a file's digest and compare it with the record.

    Returns:
        True on match; False on size/digest mismatch or read failure
    """
    try:
        size = os.path.getsize(path)
        if record.size >= 0 and size != record.size:
            logger.warning(
                f"Size mismatch for {path}: {size} != {record.size}",
                extra={'category': 'VERIFY'}
            )
            return False
        actual = compute_digest(path, cancel)
    except OSError as e:
        logger.warning(f"Cannot verify {path}: {e}", extra={'category': 'VERIFY'})
        return False

    if actual != record.digest:
        logger.warning(f"Digest mismatch for {path}", extra={'category': 'VERIFY'})
        return False
    return True


def verify_remote(stat: Callable[[str], Optional[int]], name: str, expected_size: int,
                  attempts: int = 3, delay: float = 2.0, cancel=None) -> bool:
    """
    Weak verification for remote copies: the object exists with the right size.

    Args:
        stat: Callable returning the remote size of ``name`` or None if absent
        name: Remote object name
        expected_size: Size recorded for the local artifact
        attempts: Tries before failing
        delay: Seconds between tries
        cancel: Optional CancelToken

    Returns:
        True once the object is seen with the expected size
    """
    def check() -> bool:
        if cancel is not None:
            cancel.check()
        try:
            size = stat(name)
        except Exception as e:
            logger.debug(f"Remote stat of {name} failed: {e}", extra={'category': 'VERIFY'})
            return False

        if size is None:
            return False
        if expected_size >= 0 and size != expected_size:
            logger.warning(
                f"Remote size mismatch for {name}: {size} != {expected_size}",
                extra={'category': 'VERIFY'}
            )
            return False
        return True

    controller = retrying(
        attempts,
        wait=wait_fixed(delay),
        retry=retry_if_result(lambda ok: not ok),
        sleep=cancellable_sleep(cancel, time.sleep),
        label=f"Remote verification of {name}",
        category='VERIFY',
    )
    return controller(check)
