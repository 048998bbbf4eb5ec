"""
Backup module for the Proxmox configuration backup pipeline.

This module handles the core backup functionality including:
- File selection (include roots, exclusion rules, categories)
- Archive building (optimizations, compression, metadata)
- Integrity verification
- Storage and dispatch (local, secondary, cloud)
- Execution orchestration
- Retention policy enforcement
- Restore planning
"""

from .executor import BackupExecutor, execute_backup
from .sources import FileSelector, create_selector
from .builder import ArchiveBuilder
from .compression import create_archive
from .storage import LocalStorage, RcloneBackend, S3Backend, create_cloud_backend
from .dispatcher import DestinationDispatcher
from .retention import RetentionManager
from .restore import plan_restore, extract_archive

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'FileSelector',
    'create_selector',
    'ArchiveBuilder',
    'create_archive',
    'LocalStorage',
    'RcloneBackend',
    'S3Backend',
    'create_cloud_backend',
    'DestinationDispatcher',
    'RetentionManager',
    'plan_restore',
    'extract_archive'
]
