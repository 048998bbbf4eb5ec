"""
Run-scoped data model for the backup pipeline.

Holds the enums every component dispatches on (tiers, codecs, modes,
severities, phases) and the records a single run produces:
- BackupRun: one end-to-end execution, monotonic severity
- StorageTarget: one configured storage tier
- DispatchOutcome: terminal result of delivering the archive to a tier
- RunSummary: what notifications and metrics consume
"""

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'


class Severity(IntEnum):
    """Run severity, doubles as the process exit code."""
    SUCCESS = 0
    WARNING = 1
    ERROR = 2

    @property
    def status(self) -> str:
        return {0: 'success', 1: 'warning', 2: 'failure'}[int(self)]


class Tier(Enum):
    """Storage tiers, in dispatch order."""
    LOCAL = 'local'
    SECONDARY = 'secondary'
    CLOUD = 'cloud'


class BackupType(Enum):
    PVE = 'pve'
    PBS = 'pbs'
    MIXED = 'mixed'


class Codec(Enum):
    ZSTD = 'zstd'
    XZ = 'xz'
    LZMA = 'lzma'
    GZIP = 'gzip'
    BZIP2 = 'bzip2'
    NONE = 'none'


class CompressionMode(Enum):
    FAST = 'fast'
    STANDARD = 'standard'
    MAXIMUM = 'maximum'
    ULTRA = 'ultra'


class UploadMode(Enum):
    SEQUENTIAL = 'sequential'
    PARALLEL = 'parallel'


class CloudBackendKind(Enum):
    RCLONE = 'rclone'
    S3 = 's3'


class Phase(Enum):
    """Orchestrator phases, in execution order."""
    INIT = 'init'
    PRECHECK = 'precheck'
    COLLECT = 'collect'
    BUILD = 'build'
    VERIFY = 'verify'
    DISPATCH = 'dispatch'
    RETAIN = 'retain'
    COUNTERS = 'counters'
    NOTIFY = 'notify'
    LOG_DISPATCH = 'log_dispatch'
    CLEANUP = 'cleanup'


@dataclass(frozen=True)
class StorageTarget:
    """One configured storage tier."""
    tier: Tier
    enabled: bool
    required: bool
    address: str
    retention: int
    log_address: Optional[str] = None
    log_retention: int = 0

    def __repr__(self):
        return f'<StorageTarget {self.tier.value} enabled={self.enabled} required={self.required}>'


@dataclass
class DispatchOutcome:
    """Terminal result for one (archive, tier) pair."""
    tier: Tier
    success: bool
    bytes_transferred: int = 0
    duration: float = 0.0
    reason: Optional[str] = None
    location: Optional[str] = None
    skipped: bool = False
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def failed(cls, tier: Tier, reason: str, duration: float = 0.0) -> 'DispatchOutcome':
        return cls(tier=tier, success=False, reason=reason, duration=duration)

    @classmethod
    def skip(cls, tier: Tier, reason: str) -> 'DispatchOutcome':
        return cls(tier=tier, success=False, reason=reason, skipped=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tier': self.tier.value,
            'success': self.success,
            'skipped': self.skipped,
            'bytes_transferred': self.bytes_transferred,
            'duration': round(self.duration, 3),
            'reason': self.reason,
            'location': self.location,
            'warnings': list(self.warnings),
        }


class BackupRun:
    """
    One invocation of the backup pipeline.

    The start timestamp is fixed at construction. Severity only moves
    upwards: raise_severity() ignores anything at or below the current
    value, so once a run reaches ERROR nothing can lower it again.
    """

    def __init__(self, backup_type: BackupType, started_at: Optional[datetime] = None,
                 hostname: Optional[str] = None):
        self.backup_type = backup_type
        self._started_at = started_at or datetime.now()
        self.hostname = hostname or socket.gethostname().split('.')[0]
        self._severity = Severity.SUCCESS
        self.reasons: List[str] = []
        self.completed_phases: List[Phase] = []
        self.current_phase: Optional[Phase] = None
        self.outcomes: Dict[Tier, DispatchOutcome] = {}
        self.archive_path: Optional[str] = None
        self.archive_size = 0
        self.original_size = 0
        self.checksum = None
        self.metadata = None
        self.file_count = 0
        self.categories: Dict[str, bool] = {}
        self.cancelled = False
        self.finished_at: Optional[datetime] = None

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def timestamp(self) -> str:
        return self._started_at.strftime(TIMESTAMP_FORMAT)

    @property
    def basename(self) -> str:
        """Archive/log base name: <type>-backup-<timestamp>."""
        return f"{self.backup_type.value}-backup-{self.timestamp}"

    @property
    def severity(self) -> Severity:
        return self._severity

    def raise_severity(self, severity: Severity, reason: Optional[str] = None) -> Severity:
        """
        Raise the run severity.

        Args:
            severity: Requested severity
            reason: Optional human-readable cause, kept for the summary

        Returns:
            The severity after the call (never lower than before)
        """
        if reason and severity > Severity.SUCCESS:
            self.reasons.append(reason)
        if severity > self._severity:
            self._severity = Severity(severity)
        return self._severity

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now()
        return max((end - self._started_at).total_seconds(), 0.0)

    def __repr__(self):
        return f'<BackupRun {self.basename} severity={self._severity.name}>'


@dataclass
class RunSummary:
    """Everything notification channels and the metrics exporter see."""
    status: str
    exit_code: int
    hostname: str
    backup_type: str
    started_at: datetime
    duration: float
    archive_name: Optional[str] = None
    archive_size: int = 0
    file_count: int = 0
    outcomes: List[DispatchOutcome] = field(default_factory=list)
    counters: Optional[Any] = None
    warnings: int = 0
    errors: int = 0
    issues: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: BackupRun, counters=None, warnings: int = 0, errors: int = 0,
                 issues: Optional[List[str]] = None) -> 'RunSummary':
        return cls(
            status=run.severity.status,
            exit_code=int(run.severity),
            hostname=run.hostname,
            backup_type=run.backup_type.value,
            started_at=run.started_at,
            duration=run.duration,
            archive_name=os.path.basename(run.archive_path) if run.archive_path else None,
            archive_size=run.archive_size,
            file_count=run.file_count,
            outcomes=[run.outcomes[t] for t in Tier if t in run.outcomes],
            counters=counters,
            warnings=warnings,
            errors=errors,
            issues=list(issues or []),
            reasons=list(run.reasons),
        )

    def tier_success(self, tier: Tier) -> bool:
        return any(o.tier == tier and o.success for o in self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'exit_code': self.exit_code,
            'hostname': self.hostname,
            'backup_type': self.backup_type,
            'started_at': self.started_at.isoformat(),
            'duration': round(self.duration, 3),
            'archive_name': self.archive_name,
            'archive_size': self.archive_size,
            'file_count': self.file_count,
            'outcomes': [o.to_dict() for o in self.outcomes],
            'counters': self.counters.to_dict() if self.counters is not None else None,
            'warnings': self.warnings,
            'errors': self.errors,
            'issues': self.issues,
            'reasons': self.reasons,
        }
