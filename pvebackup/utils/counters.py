"""
Counter store for per-tier backup and log counts.

The counters are the one piece of run state read by other processes (the
metrics exporter), so updates go through an injected store that makes
them atomic: FileCounterStore serialises writers with the
``counters-update`` lock and publishes with write-temp + rename, so a
reader sees either the old or the new document, never a torn one.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from pvebackup.utils.locks import COUNTERS_LOCK, LockError, LockManager


TIERS = ('local', 'secondary', 'cloud')
CONNECTIVITY_VALUES = {'ok': 1, 'error': 0, 'disabled': -1, 'unknown': -2}


class CounterStoreError(Exception):
    """Raised when counters cannot be read or written."""
    pass


def _zero() -> Dict[str, int]:
    return {tier: 0 for tier in TIERS}


@dataclass
class CounterSet:
    backups: Dict[str, int] = field(default_factory=_zero)
    logs: Dict[str, int] = field(default_factory=_zero)
    cloud_connectivity: str = 'unknown'
    last_run: Optional[str] = None
    last_exit_code: Optional[int] = None

    @property
    def total_backups(self) -> int:
        return sum(self.backups.values())

    @property
    def total_logs(self) -> int:
        return sum(self.logs.values())

    def to_dict(self) -> dict:
        return {
            'backups': dict(self.backups, all=self.total_backups),
            'logs': dict(self.logs, all=self.total_logs),
            'cloud_connectivity': self.cloud_connectivity,
            'last_run': self.last_run,
            'last_exit_code': self.last_exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CounterSet':
        backups = _zero()
        logs = _zero()
        for tier in TIERS:
            backups[tier] = int((data.get('backups') or {}).get(tier, 0))
            logs[tier] = int((data.get('logs') or {}).get(tier, 0))
        connectivity = data.get('cloud_connectivity', 'unknown')
        if connectivity not in CONNECTIVITY_VALUES:
            connectivity = 'unknown'
        return cls(
            backups=backups,
            logs=logs,
            cloud_connectivity=connectivity,
            last_run=data.get('last_run'),
            last_exit_code=data.get('last_exit_code'),
        )


Mutator = Callable[[CounterSet], Optional[CounterSet]]


class CounterStore(ABC):
    """Atomic read/update interface for the shared counters."""

    @abstractmethod
    def read(self) -> CounterSet:
        pass

    @abstractmethod
    def update(self, mutator: Mutator) -> CounterSet:
        """
        Apply ``mutator`` to the current counters and persist the result.

        The mutator may modify the CounterSet in place (returning None) or
        return a replacement.
        """
        pass


class MemoryCounterStore(CounterStore):
    """In-process store, used when no persistent surface is configured."""

    def __init__(self, initial: Optional[CounterSet] = None):
        self._counters = initial or CounterSet()
        self._lock = threading.Lock()

    def read(self) -> CounterSet:
        with self._lock:
            return CounterSet.from_dict(self._counters.to_dict())

    def update(self, mutator: Mutator) -> CounterSet:
        with self._lock:
            current = CounterSet.from_dict(self._counters.to_dict())
            result = mutator(current) or current
            self._counters = result
            return CounterSet.from_dict(result.to_dict())


class FileCounterStore(CounterStore):
    """JSON document on disk, updated under the counters lock."""

    def __init__(self, path: str, lock_manager: LockManager, attempts: int = 20, delay: float = 0.1):
        self.path = path
        self.lock_manager = lock_manager
        self.attempts = attempts
        self.delay = delay

    def read(self) -> CounterSet:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return CounterSet.from_dict(json.load(f))
        except FileNotFoundError:
            return CounterSet()
        except (OSError, ValueError) as e:
            raise CounterStoreError(f"Failed to read counters {self.path}: {e}") from e

    def update(self, mutator: Mutator) -> CounterSet:
        try:
            lock = self.lock_manager.acquire(COUNTERS_LOCK, attempts=self.attempts, delay=self.delay)
        except LockError as e:
            raise CounterStoreError(f"Cannot lock counters: {e}") from e

        with lock:
            current = self.read()
            result = mutator(current) or current
            self._write(result)
            return result

    def _write(self, counters: CounterSet):
        directory = os.path.dirname(self.path) or '.'
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.counters-', suffix='.tmp', dir=directory)
        except OSError as e:
            raise CounterStoreError(f"Failed to write counters: {e}") from e

        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(counters.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise CounterStoreError(f"Failed to write counters {self.path}: {e}") from e
