"""
Retention policy enforcement for backups.

Keeps the newest N archives (and N run logs) per storage tier. Age is
taken from the ``<type>-backup-<YYYYMMDD-HHMMSS>`` timestamp in the file
name, falling back to the modification time for names that carry none.
An archive is deleted together with its companions (``.sha256``,
``.metadata``, ``.metadata.sha256``).

Running a policy twice with the same maximum deletes nothing the
second time.
"""

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pvebackup.models import TIMESTAMP_FORMAT
from .storage import CloudBackend, LocalStorage, StorageError


logger = logging.getLogger(__name__)

BACKUP_NAME_RE = re.compile(
    r'^(?P<type>[A-Za-z0-9_]+)-backup-(?P<timestamp>\d{8}-\d{6})(?P<ext>\.tar(?:\.[a-z0-9]+)?)$'
)
LOG_NAME_RE = re.compile(r'^(?P<type>[A-Za-z0-9_]+)-backup-(?P<timestamp>\d{8}-\d{6})\.log$')
COMPANION_SUFFIXES = ('.sha256', '.metadata', '.metadata.sha256')


class RetentionError(Exception):
    """Raised when retention cannot list a tier."""
    pass


def _sort_key(entry: Dict[str, Any], pattern) -> datetime:
    match = pattern.match(entry['name'])
    if match:
        return datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    modified = entry.get('modified')
    if isinstance(modified, datetime):
        return modified.replace(tzinfo=None)
    return datetime.min


def select_expired(files: Sequence[Dict[str, Any]], keep: int, pattern=BACKUP_NAME_RE) -> List[Dict[str, Any]]:
    """
    Pick the entries beyond the newest ``keep``, oldest first.

    Args:
        files: Listing dicts with at least 'name' (and optionally 'modified')
        keep: Number of newest entries to retain; < 1 disables pruning
        pattern: Regex primary entries must match

    Returns:
        Expired entries ordered oldest first
    """
    if keep < 1:
        return []
    primaries = [f for f in files if pattern.match(f['name'])]
    primaries.sort(key=lambda f: (_sort_key(f, pattern), f['name']))
    excess = len(primaries) - keep
    return primaries[:excess] if excess > 0 else []


def _companions(name: str, names: set) -> List[str]:
    return [name + suffix for suffix in COMPANION_SUFFIXES if name + suffix in names]


class RetentionManager:
    """
    Enforces count-based retention on filesystem and cloud tiers.

    Every enforce_* call returns a summary dict:
    {
        'deleted': int,      # primary files removed
        'companions': int,   # companion files removed
        'remaining': int,    # primary files left after pruning
        'errors': List[str]
    }
    """

    def __init__(self, cancel=None):
        """
        Initialize retention manager.

        Args:
            cancel: Optional CancelToken checked before each deletion
        """
        self.cancel = cancel

    @staticmethod
    def _summary() -> Dict[str, Any]:
        return {'deleted': 0, 'companions': 0, 'remaining': 0, 'errors': []}

    def _check_cancel(self):
        if self.cancel is not None:
            self.cancel.check()

    def enforce_local(self, storage: LocalStorage, keep: int, logs: bool = False) -> Dict[str, Any]:
        """
        Prune a filesystem directory.

        Args:
            storage: LocalStorage for the tier directory
            keep: Maximum number of archives (or logs) to keep
            logs: Prune run logs instead of archives

        Returns:
            Summary dict

        Raises:
            RetentionError: If the directory cannot be listed
        """
        pattern = LOG_NAME_RE if logs else BACKUP_NAME_RE
        try:
            files = storage.list_files()
        except StorageError as e:
            raise RetentionError(f"Cannot list {storage.base_path}: {e}") from e

        summary = self._summary()
        names = {f['name'] for f in files}
        expired = select_expired(files, keep, pattern)

        for entry in expired:
            self._check_cancel()
            try:
                storage.delete(entry['name'])
                summary['deleted'] += 1
                logger.info(f"Deleted {storage.get_full_path(entry['name'])}", extra={'category': 'RETENTION'})
            except StorageError as e:
                summary['errors'].append(str(e))
                logger.warning(f"Failed to delete {entry['name']}: {e}", extra={'category': 'RETENTION'})
                continue

            for companion in _companions(entry['name'], names):
                try:
                    if storage.delete(companion):
                        summary['companions'] += 1
                except StorageError as e:
                    summary['errors'].append(str(e))
                    logger.warning(f"Failed to delete {companion}: {e}", extra={'category': 'RETENTION'})

        summary['remaining'] = sum(1 for f in files if pattern.match(f['name'])) - summary['deleted']
        self._log_summary(storage.base_path, keep, summary)
        return summary

    def enforce_cloud(self, backend: CloudBackend, path: str, keep: int, logs: bool = False) -> Dict[str, Any]:
        """
        Prune a cloud directory.

        Args:
            backend: Cloud backend
            path: Directory on the remote
            keep: Maximum number of archives (or logs) to keep
            logs: Prune run logs instead of archives

        Returns:
            Summary dict

        Raises:
            RetentionError: If the remote cannot be listed
        """
        pattern = LOG_NAME_RE if logs else BACKUP_NAME_RE
        try:
            files = backend.list_files(path)
        except StorageError as e:
            raise RetentionError(f"Cannot list remote {path}: {e}") from e

        summary = self._summary()
        names = {f['name'] for f in files}
        expired = select_expired(files, keep, pattern)

        doomed = []
        for entry in expired:
            doomed.append(entry['name'])
            doomed.extend(_companions(entry['name'], names))

        if doomed:
            self._check_cancel()
            try:
                backend.delete(path, doomed, cancel=self.cancel)
                summary['deleted'] = len(expired)
                summary['companions'] = len(doomed) - len(expired)
                for entry in expired:
                    logger.info(f"Deleted remote {path}/{entry['name']}", extra={'category': 'RETENTION'})
            except StorageError as e:
                summary['errors'].append(str(e))
                logger.warning(f"Remote deletion failed in {path}: {e}", extra={'category': 'RETENTION'})

        summary['remaining'] = sum(1 for f in files if pattern.match(f['name'])) - summary['deleted']
        self._log_summary(path, keep, summary)
        return summary

    def _log_summary(self, location: str, keep: int, summary: Dict[str, Any]):
        logger.info(
            f"Retention for {location} (keep {keep}): "
            f"deleted {summary['deleted']}, companions {summary['companions']}, "
            f"remaining {summary['remaining']}, errors {len(summary['errors'])}",
            extra={'category': 'RETENTION'}
        )


def count_archives(list_files: Callable[[], List[Dict[str, Any]]], logs: bool = False) -> Optional[int]:
    """
    Count primary archives (or logs) in a listing; None if listing fails.
    """
    pattern = LOG_NAME_RE if logs else BACKUP_NAME_RE
    try:
        return sum(1 for f in list_files() if pattern.match(f['name']))
    except StorageError as e:
        logger.warning(f"Cannot count files: {e}", extra={'category': 'COUNTERS'})
        return None
