import os
import re
import shlex
import logging
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

from pvebackup.models import (
    BackupType, CloudBackendKind, Codec, CompressionMode, StorageTarget, Tier, UploadMode
)


logger = logging.getLogger(__name__)


class Config:
    """Base configuration"""

    DEBUG = False

    # Installation layout
    BASE_DIR = os.environ.get('PVEBACKUP_BASE_DIR') or '/opt/proxmox-backup'
    ENV_FILE = os.environ.get('PVEBACKUP_ENV_FILE') or os.path.join(BASE_DIR, 'env', 'backup.env')

    # Application log (rotating)
    APP_LOG_DIR = os.path.join(BASE_DIR, 'log', 'app')

    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.join(os.path.abspath(os.path.dirname(os.path.dirname(__file__))), 'data')
    ENV_FILE = os.path.join(BASE_DIR, 'backup.env')
    APP_LOG_DIR = os.path.join(BASE_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)i?B?\s*$', re.IGNORECASE)
_SIZE_UNITS = {'': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4}


def parse_size(value: str) -> int:
    """
    Parse a human size such as '50M', '10MiB' or '1048576' into bytes.

    Raises:
        ValueError: If the value cannot be parsed
    """
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit.upper()])


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable configuration for one backup run.

    Built once by load_config() and passed by reference to every component.
    """

    config_name: str = 'production'
    debug: bool = False
    debug_level: str = 'standard'
    base_dir: str = '/opt/proxmox-backup'
    app_log_dir: str = '/opt/proxmox-backup/log/app'
    system_root: str = '/'
    temp_base_dir: str = field(default_factory=tempfile.gettempdir)
    lock_path: str = '/opt/proxmox-backup/lock'
    metrics_path: str = '/opt/proxmox-backup/metrics'

    # Local tier
    local_enabled: bool = True
    local_required: bool = True
    local_backup_path: str = '/opt/proxmox-backup/backup'
    local_log_path: str = '/opt/proxmox-backup/log'
    max_local_backups: int = 15
    max_local_logs: int = 15

    # Secondary tier
    secondary_enabled: bool = False
    secondary_required: bool = False
    secondary_backup_path: str = ''
    secondary_log_path: str = ''
    max_secondary_backups: int = 15
    max_secondary_logs: int = 15

    # Cloud tier
    cloud_enabled: bool = False
    cloud_required: bool = False
    cloud_backend: CloudBackendKind = CloudBackendKind.RCLONE
    cloud_remote: str = ''
    cloud_backup_path: str = '/proxmox-backup/backup'
    cloud_log_path: str = '/proxmox-backup/log'
    max_cloud_backups: int = 15
    max_cloud_logs: int = 15
    rclone_bin: str = 'rclone'
    rclone_bandwidth_limit: str = ''
    rclone_flags: Tuple[str, ...] = ()
    rclone_retries: int = 3
    rclone_timeout: int = 300
    cloud_connectivity_timeout: int = 10
    upload_mode: UploadMode = UploadMode.SEQUENTIAL
    cloud_parallel_max_jobs: int = 2
    cloud_parallel_job_timeout: int = 600
    cloud_parallel_verification: bool = True
    skip_cloud_verification: bool = False
    verify_retries: int = 3
    verify_retry_delay: float = 2.0
    aws_region: str = 'us-east-1'
    s3_endpoint_url: Optional[str] = None

    # Archive
    compression_type: Codec = Codec.ZSTD
    compression_level: int = 6
    compression_mode: CompressionMode = CompressionMode.STANDARD
    compression_threads: int = 0
    enable_prefilter: bool = True
    enable_deduplication: bool = True
    enable_smart_chunking: bool = True
    chunk_threshold: int = 50 * 1024 * 1024
    chunk_size: int = 10 * 1024 * 1024
    backup_retries: int = 3
    backup_system_info: bool = True

    # Selection
    custom_backup_paths: Tuple[str, ...] = ()
    backup_blacklist: Tuple[str, ...] = ()
    proxmox_type: Optional[BackupType] = None

    # Ownership of delivered files
    set_backup_permissions: bool = False
    backup_user: str = 'backup'
    backup_group: str = 'backup'

    # Collaborators
    security_check_command: str = ''
    abort_on_security_issues: bool = False
    prometheus_enabled: bool = False
    prometheus_textfile_dir: str = '/var/lib/prometheus/node-exporter'
    telegram_enabled: bool = False
    telegram_bot_token: str = ''
    telegram_chat_id: str = ''
    webhook_enabled: bool = False
    webhook_url: str = ''
    notification_timeout: int = 15

    backup_schedule: str = ''

    @property
    def cloud_address(self) -> str:
        return f"{self.cloud_remote}:{self.cloud_backup_path}"

    @property
    def cloud_log_address(self) -> str:
        return f"{self.cloud_remote}:{self.cloud_log_path}"

    def targets(self) -> List[StorageTarget]:
        """Storage targets in dispatch order."""
        return [
            StorageTarget(
                tier=Tier.LOCAL,
                enabled=self.local_enabled,
                required=self.local_required,
                address=self.local_backup_path,
                retention=self.max_local_backups,
                log_address=self.local_log_path,
                log_retention=self.max_local_logs,
            ),
            StorageTarget(
                tier=Tier.SECONDARY,
                enabled=self.secondary_enabled and bool(self.secondary_backup_path),
                required=self.secondary_required,
                address=self.secondary_backup_path,
                retention=self.max_secondary_backups,
                log_address=self.secondary_log_path or None,
                log_retention=self.max_secondary_logs,
            ),
            StorageTarget(
                tier=Tier.CLOUD,
                enabled=self.cloud_enabled and bool(self.cloud_remote),
                required=self.cloud_required,
                address=self.cloud_address,
                retention=self.max_cloud_backups,
                log_address=self.cloud_log_address if self.cloud_log_path else None,
                log_retention=self.max_cloud_logs,
            ),
        ]

    def target(self, tier: Tier) -> StorageTarget:
        return next(t for t in self.targets() if t.tier == tier)

    def output_paths(self) -> List[str]:
        """Directories this system writes to; never archived."""
        paths = [
            self.local_backup_path, self.local_log_path, self.lock_path,
            self.metrics_path, self.secondary_backup_path, self.secondary_log_path,
        ]
        return [p for p in paths if p]


class _EnvReader:
    """Typed accessors over a merged environment mapping."""

    def __init__(self, values: Mapping[str, str]):
        self.values = values

    def get_str(self, name: str, default: str = '') -> str:
        value = self.values.get(name)
        return default if value is None or value == '' else str(value).strip()

    def get_bool(self, name: str, default: bool = False) -> bool:
        value = self.values.get(name)
        if value is None or value == '':
            return default
        return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

    def get_int(self, name: str, default: int) -> int:
        value = self.values.get(name)
        if value is None or value == '':
            return default
        try:
            return int(str(value).strip())
        except ValueError:
            logger.warning(f"Invalid integer for {name}: {value!r}, using {default}",
                           extra={'category': 'CONFIG'})
            return default

    def get_float(self, name: str, default: float) -> float:
        value = self.values.get(name)
        if value is None or value == '':
            return default
        try:
            return float(str(value).strip())
        except ValueError:
            logger.warning(f"Invalid number for {name}: {value!r}, using {default}",
                           extra={'category': 'CONFIG'})
            return default

    def get_size(self, name: str, default: int) -> int:
        value = self.values.get(name)
        if value is None or value == '':
            return default
        try:
            return parse_size(value)
        except ValueError:
            logger.warning(f"Invalid size for {name}: {value!r}, using {default}",
                           extra={'category': 'CONFIG'})
            return default

    def get_list(self, name: str) -> Tuple[str, ...]:
        value = self.values.get(name) or ''
        return tuple(item for item in re.split(r'[\s,]+', value) if item)

    def get_enum(self, name: str, enum_cls, default):
        value = self.values.get(name)
        if value is None or value == '':
            return default
        try:
            return enum_cls(str(value).strip().lower())
        except ValueError:
            logger.warning(
                f"Unsupported {name}: {value!r}, falling back to {default.value}",
                extra={'category': 'CONFIG'}
            )
            return default


def load_config(config_name: Optional[str] = None, env_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None, **overrides) -> RunConfig:
    """
    Build the immutable run configuration.

    Values come from the env file (if present) overlaid by the process
    environment, so exported variables always win.

    Args:
        config_name: Profile name from the ``config`` mapping
        env_file: Path to a KEY=VALUE env file (default: profile ENV_FILE)
        environ: Environment mapping (default: os.environ)
        **overrides: RunConfig fields to force, e.g. from CLI flags

    Returns:
        RunConfig instance
    """
    environ = os.environ if environ is None else environ
    if config_name is None:
        config_name = environ.get('PVEBACKUP_ENV', 'production')
    profile = config.get(config_name, config['default'])

    env_file = env_file or profile.ENV_FILE
    merged: Dict[str, str] = {}
    if env_file and os.path.isfile(env_file):
        merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    merged.update(environ)

    env = _EnvReader(merged)
    base_dir = env.get_str('BASE_DIR', profile.BASE_DIR)

    proxmox_type = None
    if env.get_str('PROXMOX_TYPE'):
        proxmox_type = env.get_enum('PROXMOX_TYPE', BackupType, BackupType.PVE)

    max_local = env.get_int('MAX_LOCAL_BACKUPS', 15)
    max_secondary = env.get_int('MAX_SECONDARY_BACKUPS', 15)
    max_cloud = env.get_int('MAX_CLOUD_BACKUPS', 15)

    values = dict(
        config_name=config_name,
        debug=profile.DEBUG or env.get_str('DEBUG_LEVEL', 'standard') != 'standard',
        debug_level=env.get_str('DEBUG_LEVEL', 'standard'),
        base_dir=base_dir,
        app_log_dir=env.get_str('APP_LOG_DIR', profile.APP_LOG_DIR),
        system_root=env.get_str('SYSTEM_ROOT', '/'),
        temp_base_dir=env.get_str('TEMP_BASE_DIR', tempfile.gettempdir()),
        lock_path=env.get_str('LOCK_PATH', os.path.join(base_dir, 'lock')),
        metrics_path=env.get_str('METRICS_PATH', os.path.join(base_dir, 'metrics')),

        local_enabled=env.get_bool('LOCAL_BACKUP_ENABLED', True),
        local_required=env.get_bool('LOCAL_BACKUP_REQUIRED', True),
        local_backup_path=env.get_str('LOCAL_BACKUP_PATH', os.path.join(base_dir, 'backup')),
        local_log_path=env.get_str('LOCAL_LOG_PATH', os.path.join(base_dir, 'log')),
        max_local_backups=max_local,
        max_local_logs=env.get_int('MAX_LOCAL_LOGS', max_local),

        secondary_enabled=env.get_bool('ENABLE_SECONDARY_BACKUP', False),
        secondary_required=env.get_bool('SECONDARY_BACKUP_REQUIRED', False),
        secondary_backup_path=env.get_str('SECONDARY_BACKUP_PATH'),
        secondary_log_path=env.get_str('SECONDARY_LOG_PATH'),
        max_secondary_backups=max_secondary,
        max_secondary_logs=env.get_int('MAX_SECONDARY_LOGS', max_secondary),

        cloud_enabled=env.get_bool('ENABLE_CLOUD_BACKUP', False),
        cloud_required=env.get_bool('CLOUD_BACKUP_REQUIRED', False),
        cloud_backend=env.get_enum('CLOUD_BACKEND', CloudBackendKind, CloudBackendKind.RCLONE),
        cloud_remote=env.get_str('RCLONE_REMOTE'),
        cloud_backup_path=env.get_str('CLOUD_BACKUP_PATH', '/proxmox-backup/backup'),
        cloud_log_path=env.get_str('CLOUD_LOG_PATH', '/proxmox-backup/log'),
        max_cloud_backups=max_cloud,
        max_cloud_logs=env.get_int('MAX_CLOUD_LOGS', max_cloud),
        rclone_bin=env.get_str('RCLONE_BIN', 'rclone'),
        rclone_bandwidth_limit=env.get_str('RCLONE_BANDWIDTH_LIMIT'),
        rclone_flags=tuple(shlex.split(env.get_str('RCLONE_FLAGS'))),
        rclone_retries=max(env.get_int('RCLONE_RETRIES', 3), 1),
        rclone_timeout=env.get_int('RCLONE_TIMEOUT', 300),
        cloud_connectivity_timeout=env.get_int('CLOUD_CONNECTIVITY_TIMEOUT', 10),
        upload_mode=env.get_enum('CLOUD_UPLOAD_MODE', UploadMode, UploadMode.SEQUENTIAL),
        cloud_parallel_max_jobs=max(env.get_int('CLOUD_PARALLEL_MAX_JOBS', 2), 1),
        cloud_parallel_job_timeout=env.get_int('CLOUD_PARALLEL_JOB_TIMEOUT', 600),
        cloud_parallel_verification=env.get_bool('CLOUD_PARALLEL_VERIFICATION', True),
        skip_cloud_verification=env.get_bool('SKIP_CLOUD_VERIFICATION', False),
        verify_retries=max(env.get_int('VERIFY_RETRIES', 3), 1),
        verify_retry_delay=env.get_float('VERIFY_RETRY_DELAY', 2.0),
        aws_region=env.get_str('AWS_REGION', 'us-east-1'),
        s3_endpoint_url=env.get_str('S3_ENDPOINT_URL') or None,

        compression_type=env.get_enum('COMPRESSION_TYPE', Codec, Codec.ZSTD),
        compression_level=env.get_int('COMPRESSION_LEVEL', 6),
        compression_mode=env.get_enum('COMPRESSION_MODE', CompressionMode, CompressionMode.STANDARD),
        compression_threads=env.get_int('COMPRESSION_THREADS', 0),
        enable_prefilter=env.get_bool('ENABLE_PREFILTER', True),
        enable_deduplication=env.get_bool('ENABLE_DEDUPLICATION', True),
        enable_smart_chunking=env.get_bool('ENABLE_SMART_CHUNKING', True),
        chunk_threshold=env.get_size('CHUNK_THRESHOLD', 50 * 1024 * 1024),
        chunk_size=env.get_size('CHUNK_SIZE', 10 * 1024 * 1024),
        backup_retries=max(env.get_int('BACKUP_RETRIES', 3), 1),
        backup_system_info=env.get_bool('BACKUP_SYSTEM_INFO', True),

        custom_backup_paths=env.get_list('CUSTOM_BACKUP_PATHS'),
        backup_blacklist=env.get_list('BACKUP_BLACKLIST'),
        proxmox_type=proxmox_type,

        set_backup_permissions=env.get_bool('SET_BACKUP_PERMISSIONS', False),
        backup_user=env.get_str('BACKUP_USER', 'backup'),
        backup_group=env.get_str('BACKUP_GROUP', 'backup'),

        security_check_command=env.get_str('SECURITY_CHECK_COMMAND'),
        abort_on_security_issues=env.get_bool('ABORT_ON_SECURITY_ISSUES', False),
        prometheus_enabled=env.get_bool('PROMETHEUS_ENABLED', False),
        prometheus_textfile_dir=env.get_str('PROMETHEUS_TEXTFILE_DIR', '/var/lib/prometheus/node-exporter'),
        telegram_enabled=env.get_bool('TELEGRAM_ENABLED', False),
        telegram_bot_token=env.get_str('TELEGRAM_BOT_TOKEN'),
        telegram_chat_id=env.get_str('TELEGRAM_CHAT_ID'),
        webhook_enabled=env.get_bool('WEBHOOK_ENABLED', False),
        webhook_url=env.get_str('WEBHOOK_URL'),
        notification_timeout=env.get_int('NOTIFICATION_TIMEOUT', 15),

        backup_schedule=env.get_str('BACKUP_SCHEDULE'),
    )
    values.update(overrides)
    return RunConfig(**values)
