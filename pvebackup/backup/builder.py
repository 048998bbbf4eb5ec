"""
Archive builder - turns a selected file set into one sealed archive.

Pipeline:
1. Stage selected files into the run's temporary directory
   and capture system state command output next to them
2. Prefilter (optional)
3. Intra-archive deduplication (optional)
4. Smart chunking (optional)
5. Write the metadata member into the staging tree
6. Compress, retrying with backoff; each retry replaces the partial archive
7. Structure test of the sealed archive, then look for the critical paths
8. Write the metadata sidecar
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tenacity import retry_if_exception_type

from pvebackup.models import BackupRun
from pvebackup.utils.proc import run_command
from pvebackup.utils.retry import backoff_wait, cancellable_sleep, retrying
from .commands import STATE_CATEGORY, SystemStateCollector
from .compression import (
    CompressionError, create_archive, get_archive_size, resolve_codec, scan_archive
)
from .metadata import BackupMetadata, MetadataError, write_metadata_member, write_sidecar
from .optimizations import chunk_tree, deduplicate_tree, prefilter_tree
from .sources import FileSet, missing_critical_paths, stage_files


logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 2
RETRY_MAX_DELAY = 30


@dataclass
class ArchiveResult:
    path: str
    size: int
    original_size: int
    metadata: BackupMetadata
    duration: float
    members: int = 0
    optimizations: Dict[str, Any] = field(default_factory=dict)
    missing_critical: List[str] = field(default_factory=list)
    state_warnings: List[str] = field(default_factory=list)

    @property
    def compression_ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return round(100.0 * (1 - self.size / self.original_size), 2)


class ArchiveBuilder:
    """
    Builds the archive for one run.
    """

    def __init__(self, config, cancel=None, sleep=time.sleep, runner=run_command):
        """
        Initialize archive builder.

        Args:
            config: RunConfig
            cancel: Optional CancelToken checked between steps
            sleep: Backoff sleep function (injectable for tests)
            runner: Command runner for system state capture
        """
        self.config = config
        self.cancel = cancel
        self.sleep = sleep
        self.runner = runner
        self.strategy = resolve_codec(config.compression_type)

    def _check_cancel(self):
        if self.cancel is not None:
            self.cancel.check()

    def _optimize(self, name: str, func, *args) -> Optional[Dict[str, Any]]:
        try:
            summary = func(*args)
        except Exception as e:
            logger.warning(f"{name} failed, continuing without it: {e}", extra={'category': 'ARCHIVE'})
            return None
        for error in summary.get('errors', []):
            logger.warning(f"{name}: {error}", extra={'category': 'ARCHIVE'})
        return summary

    def build(self, run: BackupRun, file_set: FileSet, temp_dir: str) -> ArchiveResult:
        """
        Build and seal the archive.

        Args:
            run: Current BackupRun (type, timestamp, hostname)
            file_set: Selection result
            temp_dir: Run temporary directory

        Returns:
            ArchiveResult

        Raises:
            CompressionError: If the archive cannot be built
        """
        started = time.monotonic()
        staging_dir = os.path.join(temp_dir, 'staging')
        os.makedirs(staging_dir, exist_ok=True)

        staged, _ = stage_files(file_set, staging_dir)
        if staged == 0:
            raise CompressionError("No files could be staged for the archive")
        logger.info(f"Staged {staged} files", extra={'category': 'ARCHIVE'})

        categories = dict(file_set.categories)
        state = {'captured': 0, 'files': [], 'warnings': []}
        if self.config.backup_system_info:
            self._check_cancel()
            collector = SystemStateCollector(
                run.backup_type, runner=self.runner, cancel=self.cancel,
                system_root=self.config.system_root
            )
            state = collector.collect(staging_dir)
            categories[STATE_CATEGORY] = state['captured'] > 0

        optimizations = {}
        self._check_cancel()
        if self.config.enable_prefilter:
            optimizations['prefilter'] = self._optimize('Prefilter', prefilter_tree, staging_dir)

        self._check_cancel()
        dedup = None
        if self.config.enable_deduplication:
            dedup = self._optimize('Deduplication', deduplicate_tree, staging_dir)
            optimizations['deduplication'] = dedup

        self._check_cancel()
        chunks = None
        if self.config.enable_smart_chunking:
            chunks = self._optimize(
                'Chunking', chunk_tree, staging_dir,
                self.config.chunk_threshold, self.config.chunk_size
            )
            optimizations['chunking'] = chunks

        level = self.strategy.resolve_level(self.config.compression_mode, self.config.compression_level)
        metadata = BackupMetadata(
            backup_type=run.backup_type.value,
            timestamp=run.timestamp,
            hostname=run.hostname,
            categories=categories,
            dedup_references=dict(dedup['references']) if dedup else {},
            chunk_manifest=dict(chunks['manifest']) if chunks else {},
            compression={
                'type': self.strategy.codec.value,
                'level': level,
                'mode': self.config.compression_mode.value,
            },
        )
        try:
            write_metadata_member(staging_dir, metadata)
        except MetadataError as e:
            raise CompressionError(str(e)) from e

        output_base = os.path.join(temp_dir, run.basename)
        archive_path = self._compress_with_retry(staging_dir, output_base)

        names = scan_archive(archive_path)
        members = len(names)
        size = get_archive_size(archive_path)
        result = ArchiveResult(
            path=archive_path,
            size=size,
            original_size=file_set.total_size,
            metadata=metadata,
            duration=time.monotonic() - started,
            members=members,
            optimizations=optimizations,
            missing_critical=missing_critical_paths(names, run.backup_type),
            state_warnings=list(state['warnings']),
        )

        try:
            write_sidecar(archive_path, metadata, {
                'archive_size': result.size,
                'original_size': result.original_size,
                'compression_ratio': result.compression_ratio,
                'build_duration': round(result.duration, 3),
                'file_count': staged + state['captured'],
            })
        except MetadataError as e:
            raise CompressionError(str(e)) from e

        logger.info(
            f"Archive {os.path.basename(archive_path)} sealed: {members} members, "
            f"{size} bytes ({result.compression_ratio}% saved)",
            extra={'category': 'ARCHIVE'}
        )
        return result

    def _compress_once(self, staging_dir: str, output_base: str) -> str:
        self._check_cancel()
        return create_archive(
            staging_dir,
            output_base,
            codec=self.strategy.codec,
            mode=self.config.compression_mode,
            level=self.config.compression_level,
            threads=self.config.compression_threads,
        )

    def _compress_with_retry(self, staging_dir: str, output_base: str) -> str:
        controller = retrying(
            self.config.backup_retries,
            wait=backoff_wait(RETRY_BASE_DELAY, RETRY_MAX_DELAY),
            retry=retry_if_exception_type(CompressionError),
            sleep=cancellable_sleep(self.cancel, self.sleep),
            label='Compression',
            category='COMPRESSION',
        )
        return controller(self._compress_once, staging_dir, output_base)
