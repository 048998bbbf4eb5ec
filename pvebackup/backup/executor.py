"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Init: take the run lock, reclaim stale temp dirs and locks, open the run log
2. Precheck: security command, dependencies, free space
3. Collect: select files below the include roots
4. Build: stage files and system state, optimize and compress the archive
5. Verify: digest the archive into its checksum sidecar
6. Dispatch: local tier, then secondary and cloud
7. Retain: prune tiers that received the archive
8. Counters: refresh the shared per-tier counters
9. Notify: notification channels and metrics, exactly once
10. Log dispatch: ship the run log and prune old logs
11. Cleanup: temp dir, run log handler, run lock

Severity only goes up. Fatal and critical failures stop the pipeline
phases; Notify, Log dispatch and Cleanup run on every path.
"""

import glob
import logging
import os
import shlex
import shutil
import tempfile
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Callable, Mapping, Optional

from pvebackup.metrics import export_metrics
from pvebackup.models import BackupRun, BackupType, CloudBackendKind, Phase, RunSummary, Severity, Tier
from pvebackup.notify import NotificationDispatcher
from pvebackup.utils.counters import CounterSet, CounterStore, CounterStoreError, FileCounterStore
from pvebackup.utils.locks import RUN_LOCK, LockBusyError, LockError, LockManager
from pvebackup.utils.logfmt import RunLogHandler
from pvebackup.utils.proc import CancelledError, CancelToken, CommandError, run_command
from .builder import ArchiveBuilder
from .compression import CompressionError
from .dispatcher import DestinationDispatcher
from .integrity import IntegrityError, create_checksum
from .sources import create_selector, detect_backup_type
from .storage import CloudBackend, LocalStorage, StorageError


logger = logging.getLogger(__name__)

TEMP_PREFIX = 'pvebackup-'
COUNTERS_FILENAME = 'counters.json'
MIN_FREE_SPACE = 100 * 1024 * 1024
SECURITY_CHECK_TIMEOUT = 300


class BackupAborted(Exception):
    """Raised inside the workflow once a phase has decided the run cannot continue."""
    pass


class BackupExecutor:
    """
    Orchestrates one backup run.
    """

    def __init__(self, config, backup_type: Optional[BackupType] = None,
                 counter_store: Optional[CounterStore] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 cloud_backend: Optional[CloudBackend] = None,
                 cancel: Optional[CancelToken] = None,
                 runner: Callable = run_command,
                 check_only: bool = False, dry_run: bool = False,
                 environ: Optional[Mapping[str, str]] = None,
                 mounts_file: str = '/proc/mounts'):
        """
        Initialize backup executor.

        Args:
            config: RunConfig
            backup_type: Force a backup type (default: config override or detection)
            counter_store: Counter store (default: JSON file under the metrics path)
            notifier: Notification fan-out (default: built from config)
            cloud_backend: Cloud backend (default: built from config)
            cancel: Run CancelToken, set by signal handlers
            runner: Command runner for external commands
            check_only: Stop after prechecks and the connectivity probe
            dry_run: Stop after selection
            environ: Variables for selection rule expansion
            mounts_file: Mount table used for ownership detection
        """
        self.config = config
        self.backup_type = backup_type
        self.counter_store = counter_store
        self.notifier = notifier or NotificationDispatcher.from_config(config)
        self.cloud_backend = cloud_backend
        self.cancel = cancel or CancelToken()
        self.runner = runner
        self.check_only = check_only
        self.dry_run = dry_run
        self.environ = environ
        self.mounts_file = mounts_file

        self.run: Optional[BackupRun] = None
        self.lock_manager: Optional[LockManager] = None
        self.dispatcher: Optional[DestinationDispatcher] = None
        self.temp_dir: Optional[str] = None
        self.log_handler: Optional[RunLogHandler] = None
        self.file_set = None
        self.counters: Optional[CounterSet] = None
        self.summary: Optional[RunSummary] = None

    def execute(self) -> BackupRun:
        """
        Execute the backup run.

        Returns:
            BackupRun; int(run.severity) is the process exit code
        """
        backup_type = detect_backup_type(
            self.config.system_root, self.backup_type or self.config.proxmox_type
        )
        self.run = BackupRun(backup_type)

        try:
            self.lock_manager = LockManager(self.config.lock_path)
            run_lock = self.lock_manager.acquire(RUN_LOCK)
        except LockBusyError as e:
            logger.error(f"Another backup is already running: {e}", extra={'category': 'LOCK'})
            self.run.raise_severity(Severity.ERROR, str(e))
            self.run.finished_at = datetime.now()
            return self.run
        except LockError as e:
            logger.error(f"Cannot take the run lock: {e}", extra={'category': 'LOCK'})
            self.run.raise_severity(Severity.ERROR, str(e))
            self.run.finished_at = datetime.now()
            return self.run

        with ExitStack() as stack:
            stack.enter_context(run_lock)
            stack.callback(self._cleanup)

            try:
                with self._phase(Phase.INIT):
                    self._init(stack)
                self._execute_workflow()
            except CancelledError as e:
                self.run.cancelled = True
                logger.error(f"Backup cancelled: {e}", extra={'category': 'GENERAL'})
                self.run.raise_severity(Severity.ERROR, f"cancelled: {e}")
            except BackupAborted as e:
                logger.error(f"Backup aborted: {e}", extra={'category': 'GENERAL'})
            except Exception as e:
                logger.exception(f"Unexpected failure in phase {self._phase_name()}: {e}",
                                 extra={'category': 'GENERAL'})
                self.run.raise_severity(Severity.ERROR, f"unexpected failure: {e}")
            finally:
                self._finalize()

        logger.info(
            f"Backup {self.run.basename} finished: {self.run.severity.status} "
            f"(exit code {int(self.run.severity)})",
            extra={'category': 'GENERAL'}
        )
        return self.run

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _phase_name(self) -> str:
        return self.run.current_phase.value if self.run.current_phase else 'none'

    @contextmanager
    def _phase(self, phase: Phase, cancellable: bool = True):
        if cancellable:
            self.cancel.check()
        self.run.current_phase = phase
        logger.debug(f"Entering phase {phase.value}", extra={'category': 'GENERAL'})
        yield
        self.run.completed_phases.append(phase)

    def _fatal(self, message: str, category: str = 'GENERAL'):
        logger.error(message, extra={'category': category})
        self.run.raise_severity(Severity.ERROR, message)
        raise BackupAborted(message)

    def _warn(self, message: str, category: str = 'GENERAL'):
        logger.warning(message, extra={'category': category})
        self.run.raise_severity(Severity.WARNING, message)

    def _init(self, stack: ExitStack):
        self._reclaim_stale_resources()

        log_path = os.path.join(self.config.local_log_path, f"{self.run.basename}.log")
        try:
            self.log_handler = RunLogHandler(log_path)
            logging.getLogger('pvebackup').addHandler(self.log_handler)
            stack.callback(self._detach_run_log)
        except OSError as e:
            self._warn(f"Cannot open run log {log_path}: {e}", 'ENVIRONMENT')

        os.makedirs(self.config.temp_base_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=self.config.temp_base_dir)
        logger.info(
            f"Starting {self.run.backup_type.value} backup {self.run.basename} on {self.run.hostname}",
            extra={'category': 'GENERAL'}
        )

        self.dispatcher = DestinationDispatcher(
            self.config, self.lock_manager, cloud_backend=self.cloud_backend,
            cancel=self.cancel, mounts_file=self.mounts_file
        )
        if self.counter_store is None:
            self.counter_store = FileCounterStore(
                os.path.join(self.config.metrics_path, COUNTERS_FILENAME), self.lock_manager
            )

    def _reclaim_stale_resources(self):
        """Remove temp dirs and lock files left behind by dead runs."""
        self.lock_manager.cleanup_orphans(keep={RUN_LOCK})

        # Holding the run lock means no other run owns these
        for path in glob.glob(os.path.join(self.config.temp_base_dir, TEMP_PREFIX + '*')):
            if not os.path.isdir(path):
                continue
            try:
                shutil.rmtree(path)
                logger.info(f"Removed stale temporary directory {path}", extra={'category': 'CLEANUP'})
            except OSError as e:
                logger.warning(f"Failed to remove stale directory {path}: {e}", extra={'category': 'CLEANUP'})

    def _execute_workflow(self):
        """Execute the pipeline phases up to Retain."""
        with self._phase(Phase.PRECHECK):
            self._precheck()

        if self.check_only:
            self._probe_connectivity()
            return

        with self._phase(Phase.COLLECT):
            self._collect()

        if self.dry_run:
            logger.info(
                f"Dry run: {len(self.file_set)} files ({self.file_set.total_size} bytes) selected, "
                f"categories: {', '.join(c for c, present in sorted(self.run.categories.items()) if present)}",
                extra={'category': 'COLLECT'}
            )
            return

        with self._phase(Phase.BUILD):
            self._build()

        with self._phase(Phase.VERIFY):
            record = self._verify()

        with self._phase(Phase.DISPATCH):
            self._dispatch(record)

        with self._phase(Phase.RETAIN):
            self._retain()

    def _precheck(self):
        if self.config.security_check_command:
            try:
                result = self.runner(
                    shlex.split(self.config.security_check_command),
                    timeout=SECURITY_CHECK_TIMEOUT, cancel=self.cancel
                )
                if not result.ok:
                    message = f"Security check reported issues (exit code {result.returncode})"
                    if self.config.abort_on_security_issues:
                        self._fatal(message, 'SECURITY')
                    self._warn(message, 'SECURITY')
            except CancelledError:
                raise
            except CommandError as e:
                self._warn(f"Security check could not run: {e}", 'SECURITY')

        cloud = self.config.target(Tier.CLOUD)
        if cloud.enabled and self.config.cloud_backend is CloudBackendKind.RCLONE \
                and self.cloud_backend is None and shutil.which(self.config.rclone_bin) is None:
            self._warn(f"{self.config.rclone_bin} not found, cloud upload will fail", 'ENVIRONMENT')

        local = self.config.target(Tier.LOCAL)
        if local.enabled:
            try:
                LocalStorage(local.address)
            except StorageError as e:
                if local.required:
                    self._fatal(str(e), 'STORAGE')
                self._warn(str(e), 'STORAGE')

        try:
            free = shutil.disk_usage(self.config.temp_base_dir).free
            if free < MIN_FREE_SPACE:
                self._warn(f"Only {free} bytes free in {self.config.temp_base_dir}", 'ENVIRONMENT')
        except OSError as e:
            self._warn(f"Cannot check free space: {e}", 'ENVIRONMENT')

    def _probe_connectivity(self):
        cloud = self.config.target(Tier.CLOUD)
        if not cloud.enabled:
            return
        if not self.dispatcher.probe_cloud():
            message = 'Cloud remote unreachable'
            if cloud.required:
                self.run.raise_severity(Severity.ERROR, message)
            else:
                self.run.raise_severity(Severity.WARNING, message)

    def _collect(self):
        selector = create_selector(self.config, self.run.backup_type, self.environ)
        self.file_set = selector.select()
        self.run.file_count = len(self.file_set)
        self.run.categories = dict(self.file_set.categories)

        if not self.file_set.files:
            self._fatal("No files selected for backup", 'COLLECT')
        if self.file_set.warnings:
            self.run.raise_severity(Severity.WARNING, f"{len(self.file_set.warnings)} selection warnings")

    def _build(self):
        builder = ArchiveBuilder(self.config, cancel=self.cancel, runner=self.runner)
        try:
            result = builder.build(self.run, self.file_set, self.temp_dir)
        except CompressionError as e:
            self._fatal(f"Archive creation failed: {e}", 'ARCHIVE')

        self.run.archive_path = result.path
        self.run.archive_size = result.size
        self.run.original_size = result.original_size
        self.run.metadata = result.metadata
        self.run.categories = dict(result.metadata.categories)
        if result.state_warnings:
            self.run.raise_severity(
                Severity.WARNING, f"{len(result.state_warnings)} system state commands failed"
            )
        for path in result.missing_critical:
            self._warn(f"Critical file {path} missing from archive", 'VERIFY')

    def _verify(self):
        try:
            record = create_checksum(self.run.archive_path, cancel=self.cancel)
        except IntegrityError as e:
            self._fatal(str(e), 'VERIFY')
        self.run.checksum = record
        return record

    def _dispatch(self, record):
        try:
            outcomes = self.dispatcher.dispatch(self.run, self.run.archive_path, record)
        except IntegrityError as e:
            self._fatal(str(e), 'VERIFY')

        critical = None
        for target in self.config.targets():
            outcome = outcomes.get(target.tier)
            if outcome is None or outcome.skipped:
                continue
            if not outcome.success:
                message = f"{target.tier.value} tier failed: {outcome.reason}"
                if target.required:
                    self.run.raise_severity(Severity.ERROR, message)
                    critical = critical or message
                else:
                    self.run.raise_severity(Severity.WARNING, message)
            elif outcome.warnings:
                self.run.raise_severity(Severity.WARNING, f"{target.tier.value} tier: {outcome.warnings[0]}")

        if self.cancel.cancelled:
            self.cancel.check()
        if critical:
            # Tiers that did receive the archive are still pruned
            with self._phase(Phase.RETAIN):
                self._retain()
            raise BackupAborted(critical)

    def _retain(self):
        for tier, summary in self.dispatcher.apply_retention(self.run).items():
            if summary['errors']:
                self.run.raise_severity(Severity.WARNING, f"{tier.value} retention: {summary['errors'][0]}")

    # ------------------------------------------------------------------
    # Always-run tail
    # ------------------------------------------------------------------

    def _finalize(self):
        if self.log_handler is not None and self.log_handler.warning_count:
            self.run.raise_severity(Severity.WARNING)

        # Check-only and dry runs publish nothing
        if self.check_only or self.dry_run:
            self.run.finished_at = datetime.now()
            self._report_preview()
            return

        if self.counter_store is not None:
            with self._guarded(Phase.COUNTERS):
                self._update_counters()

        self.run.finished_at = datetime.now()
        with self._guarded(Phase.NOTIFY):
            self._notify()

        if self.dispatcher is not None and self.log_handler is not None:
            with self._guarded(Phase.LOG_DISPATCH):
                self._dispatch_logs()

    @contextmanager
    def _guarded(self, phase: Phase):
        """Run a tail phase; its failures are logged and never change severity."""
        self.run.current_phase = phase
        try:
            yield
            self.run.completed_phases.append(phase)
        except Exception as e:
            logger.warning(f"Phase {phase.value} failed: {e}", extra={'category': 'GENERAL'})

    def _update_counters(self):
        inventory = None
        connectivity = 'disabled'
        if self.dispatcher is not None:
            if not self.cancel.cancelled:
                inventory = self.dispatcher.inventory()
            connectivity = self.dispatcher.cloud_connectivity

        def mutate(counters: CounterSet):
            if inventory:
                counters.backups.update(inventory['backups'])
                counters.logs.update(inventory['logs'])
            if connectivity != 'unknown':
                counters.cloud_connectivity = connectivity
            counters.last_run = self.run.started_at.isoformat()
            counters.last_exit_code = int(self.run.severity)

        try:
            self.counters = self.counter_store.update(mutate)
            logger.info(
                f"Counters updated: {self.counters.total_backups} backups, {self.counters.total_logs} logs",
                extra={'category': 'COUNTERS'}
            )
        except CounterStoreError as e:
            self.run.raise_severity(Severity.WARNING, str(e))
            logger.warning(f"Counter update failed: {e}", extra={'category': 'COUNTERS'})

    def _build_summary(self) -> RunSummary:
        handler = self.log_handler
        return RunSummary.from_run(
            self.run,
            counters=self.counters,
            warnings=handler.warning_count if handler else 0,
            errors=handler.error_count if handler else 0,
            issues=handler.issues() if handler else [],
        )

    def _report_preview(self):
        """Log the outcome of a check-only or dry run; counters, notifications and metrics stay untouched."""
        self.summary = self._build_summary()
        mode = 'Check-only run' if self.check_only else 'Dry run'
        logger.info(
            f"{mode} summary: {self.summary.status}, {self.summary.warnings} warnings, "
            f"{self.summary.errors} errors, {self.summary.file_count} files selected",
            extra={'category': 'GENERAL'}
        )
        for issue in self.summary.issues[:5]:
            logger.info(f"  {issue}", extra={'category': 'GENERAL'})

    def _notify(self):
        self.summary = self._build_summary()
        self.notifier.notify(self.summary)

        if self.config.prometheus_enabled:
            try:
                export_metrics(self.summary, self.counters, self.config.prometheus_textfile_dir)
            except OSError as e:
                logger.warning(f"Metrics export failed: {e}", extra={'category': 'METRICS'})

    def _dispatch_logs(self):
        log_path = self.log_handler.path
        self._detach_run_log()
        self.dispatcher.dispatch_logs(self.run, log_path)

    def _detach_run_log(self):
        if self.log_handler is None:
            return
        logging.getLogger('pvebackup').removeHandler(self.log_handler)
        self.log_handler.close()

    def _cleanup(self):
        """Remove temporary directory and files."""
        self.run.current_phase = Phase.CLEANUP
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                logger.debug(f"Cleaned up temporary directory {self.temp_dir}", extra={'category': 'CLEANUP'})
            except OSError as e:
                logger.warning(f"Failed to cleanup temp directory: {e}", extra={'category': 'CLEANUP'})
        self.run.completed_phases.append(Phase.CLEANUP)


def execute_backup(config, **kwargs) -> BackupRun:
    """
    Execute one backup run.

    Args:
        config: RunConfig
        **kwargs: Passed to BackupExecutor

    Returns:
        Finished BackupRun
    """
    executor = BackupExecutor(config, **kwargs)
    return executor.execute()
