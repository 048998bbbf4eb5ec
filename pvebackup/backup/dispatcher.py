"""
Destination dispatcher - delivers a sealed archive to every enabled tier.

Order:
1. Revalidate the archive digest against its checksum record
2. Local tier (copy + verify); its copy becomes the source for the rest
3. Secondary tier (copy + verify)
4. Cloud tier (probe, upload, existence-plus-size verification)

Each tier runs under its own ``dispatch-<tier>`` lock and produces exactly
one DispatchOutcome. A required tier's failure aborts the tiers after it;
an optional tier's failure is recorded and dispatch continues.

Cloud uploads are either sequential or a bounded parallel job group
(archive, checksum, metadata) with a per-job timeout. A failed archive
job cancels its siblings.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from tenacity import retry_if_exception_type, retry_if_result

from pvebackup.models import BackupRun, DispatchOutcome, StorageTarget, Tier, UploadMode
from pvebackup.utils.fsinfo import apply_ownership
from pvebackup.utils.locks import LockBusyError, LockError, LockManager
from pvebackup.utils.proc import CancelledError, CancelToken
from pvebackup.utils.retry import backoff_wait, cancellable_sleep, retrying
from .integrity import ChecksumRecord, IntegrityError, verify_file, verify_remote
from .integrity import sidecar_path as checksum_path
from .metadata import sidecar_path as metadata_path
from .retention import RetentionError, RetentionManager, count_archives
from .storage import CloudBackend, LocalStorage, StorageError, create_cloud_backend, split_address


logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 2
RETRY_MAX_DELAY = 30


def lock_name(tier: Tier) -> str:
    return f"dispatch-{tier.value}"


def companion_paths(archive_path: str) -> List[str]:
    """Companion files of an archive that exist next to it."""
    candidates = [
        checksum_path(archive_path),
        metadata_path(archive_path),
        checksum_path(metadata_path(archive_path)),
    ]
    return [p for p in candidates if os.path.exists(p)]


class DestinationDispatcher:
    """
    Delivers the archive and its companions to the configured tiers.
    """

    def __init__(self, config, lock_manager: LockManager, cloud_backend: Optional[CloudBackend] = None,
                 cancel: Optional[CancelToken] = None, sleep: Callable[[float], None] = time.sleep,
                 mounts_file: str = '/proc/mounts'):
        """
        Initialize dispatcher.

        Args:
            config: RunConfig
            lock_manager: LockManager for the per-tier locks
            cloud_backend: Cloud backend (default: built from config when cloud is enabled)
            cancel: Run CancelToken
            sleep: Backoff sleep used when no token is given (injectable for tests)
            mounts_file: Mount table used for ownership detection
        """
        self.config = config
        self.lock_manager = lock_manager
        self.cancel = cancel
        self.sleep = sleep
        self.mounts_file = mounts_file
        self.retention = RetentionManager(cancel=cancel)
        self._cloud_backend = cloud_backend
        self.cloud_connectivity = 'disabled' if not config.target(Tier.CLOUD).enabled else 'unknown'

    @property
    def cloud_backend(self) -> CloudBackend:
        if self._cloud_backend is None:
            self._cloud_backend = create_cloud_backend(self.config)
        return self._cloud_backend

    def _check_cancel(self, token: Optional[CancelToken] = None):
        token = token or self.cancel
        if token is not None:
            token.check()

    def _sleeper(self, token: Optional[CancelToken] = None):
        return cancellable_sleep(token or self.cancel, self.sleep)

    # ------------------------------------------------------------------
    # Archive dispatch
    # ------------------------------------------------------------------

    def dispatch(self, run: BackupRun, archive_path: str, record: ChecksumRecord) -> Dict[Tier, DispatchOutcome]:
        """
        Deliver the archive to every tier.

        Outcomes are also stored on ``run.outcomes``; a tier never gets
        more than one.

        Args:
            run: Current BackupRun
            archive_path: Sealed archive in the run temp dir
            record: Checksum record of the archive

        Returns:
            Outcome per tier, in dispatch order

        Raises:
            IntegrityError: If the archive no longer matches its digest
        """
        if not verify_file(archive_path, record, self.cancel):
            raise IntegrityError(f"Archive {archive_path} changed after checksum creation")

        source = archive_path
        companions = companion_paths(archive_path)
        aborted_by: Optional[Tier] = None

        for target in self.config.targets():
            tier = target.tier
            if tier in run.outcomes:
                continue

            if not target.enabled:
                outcome = DispatchOutcome.skip(tier, 'disabled')
            elif aborted_by is not None:
                outcome = DispatchOutcome.skip(tier, f"aborted after required {aborted_by.value} failure")
            elif self.cancel is not None and self.cancel.cancelled:
                outcome = DispatchOutcome.failed(tier, self.cancel.describe())
            else:
                outcome = self._dispatch_tier(target, source, companions, record)

            run.outcomes[tier] = outcome

            if outcome.skipped:
                logger.debug(f"{tier.value} tier skipped: {outcome.reason}", extra={'category': 'STORAGE'})
            elif outcome.success:
                logger.info(
                    f"{tier.value} tier: delivered {outcome.bytes_transferred} bytes "
                    f"in {outcome.duration:.1f}s to {outcome.location}",
                    extra={'category': 'STORAGE'}
                )
                if tier is Tier.LOCAL:
                    source = outcome.location
                    companions = companion_paths(source)
            elif target.required:
                logger.error(
                    f"Required {tier.value} tier failed: {outcome.reason}; aborting remaining dispatch",
                    extra={'category': 'STORAGE'}
                )
                aborted_by = tier
            else:
                logger.warning(f"Optional {tier.value} tier failed: {outcome.reason}", extra={'category': 'STORAGE'})

        return {t: run.outcomes[t] for t in Tier if t in run.outcomes}

    def _dispatch_tier(self, target: StorageTarget, source: str, companions: List[str],
                       record: ChecksumRecord) -> DispatchOutcome:
        tier = target.tier
        started = time.monotonic()
        try:
            lock = self.lock_manager.acquire(lock_name(tier))
        except LockBusyError as e:
            return DispatchOutcome.failed(tier, str(e))
        except LockError as e:
            return DispatchOutcome.failed(tier, f"cannot lock tier: {e}")

        with lock:
            try:
                if tier is Tier.CLOUD:
                    outcome = self._dispatch_cloud(target, source, companions, record)
                else:
                    outcome = self._dispatch_filesystem(target, source, companions, record)
            except CancelledError as e:
                outcome = DispatchOutcome.failed(tier, f"cancelled: {e}")
            except (StorageError, IntegrityError) as e:
                outcome = DispatchOutcome.failed(tier, str(e))

        outcome.duration = time.monotonic() - started
        return outcome

    def _dispatch_filesystem(self, target: StorageTarget, source: str, companions: List[str],
                             record: ChecksumRecord) -> DispatchOutcome:
        storage = LocalStorage(target.address)
        attempts = self.config.verify_retries

        def copy_and_verify() -> Tuple[str, bool]:
            self._check_cancel()
            copied = storage.store(source)
            return copied, verify_file(copied, record, self.cancel)

        # OSError surfaces as StorageError from store() and is never retried
        controller = retrying(
            attempts,
            wait=backoff_wait(RETRY_BASE_DELAY, RETRY_MAX_DELAY),
            retry=retry_if_result(lambda result: not result[1]),
            sleep=self._sleeper(),
            label=f"Verification of the {target.tier.value} copy",
            category='VERIFY',
        )
        dest, verified = controller(copy_and_verify)
        if not verified:
            raise IntegrityError(f"Copy at {dest} failed verification after {max(attempts, 1)} attempts")

        outcome = DispatchOutcome(tier=target.tier, success=True, location=dest,
                                  bytes_transferred=record.size if record.size >= 0 else os.path.getsize(dest))
        delivered = [dest]
        for companion in companions:
            try:
                delivered.append(storage.store(companion))
                outcome.bytes_transferred += os.path.getsize(companion)
            except StorageError as e:
                outcome.warnings.append(f"companion {os.path.basename(companion)}: {e}")
                logger.warning(f"Failed to copy {companion}: {e}", extra={'category': 'STORAGE'})

        if self.config.set_backup_permissions:
            apply_ownership(delivered, target.address, self.config.backup_user,
                            self.config.backup_group, self.mounts_file)
        return outcome

    # ------------------------------------------------------------------
    # Cloud
    # ------------------------------------------------------------------

    def probe_cloud(self) -> bool:
        """
        Check cloud connectivity once; records the result in cloud_connectivity.
        """
        if not self.config.target(Tier.CLOUD).enabled:
            self.cloud_connectivity = 'disabled'
            return False
        try:
            self.cloud_backend.probe(self.cancel)
            self.cloud_connectivity = 'ok'
            logger.info("Cloud remote reachable", extra={'category': 'NETWORK'})
            return True
        except (StorageError, ValueError) as e:
            self.cloud_connectivity = 'error'
            logger.warning(f"Cloud remote unreachable: {e}", extra={'category': 'NETWORK'})
            return False

    def _dispatch_cloud(self, target: StorageTarget, source: str, companions: List[str],
                        record: ChecksumRecord) -> DispatchOutcome:
        _, path = split_address(target.address)
        if not self.probe_cloud():
            return DispatchOutcome.failed(target.tier, 'cloud remote unreachable')

        if self.config.upload_mode is UploadMode.PARALLEL:
            results = self._upload_parallel(source, companions, path)
        else:
            results = self._upload_sequential(source, companions, path)

        archive_name = os.path.basename(source)
        archive_ok, archive_error, archive_bytes = results[source]
        if not archive_ok:
            return DispatchOutcome.failed(target.tier, archive_error)

        outcome = DispatchOutcome(
            tier=target.tier,
            success=True,
            bytes_transferred=archive_bytes,
            location=f"{target.address.rstrip('/')}/{archive_name}",
        )
        for companion in companions:
            ok, error, transferred = results[companion]
            if ok:
                outcome.bytes_transferred += transferred
            else:
                outcome.warnings.append(f"companion {os.path.basename(companion)}: {error}")
                logger.warning(f"Companion upload failed for {companion}: {error}", extra={'category': 'STORAGE'})
        return outcome

    def _verify_uploaded(self, local_path: str, path: str, token: Optional[CancelToken]) -> bool:
        if self.config.skip_cloud_verification:
            return True
        backend = self.cloud_backend
        return verify_remote(
            lambda name: backend.stat(path, name),
            os.path.basename(local_path),
            os.path.getsize(local_path),
            attempts=self.config.verify_retries,
            delay=self.config.verify_retry_delay,
            cancel=token,
        )

    def _upload_once(self, local_path: str, path: str, token: Optional[CancelToken], verify: bool) -> int:
        self._check_cancel(token)
        transferred = self.cloud_backend.upload(local_path, path, cancel=token)
        if verify and not self._verify_uploaded(local_path, path, token):
            raise StorageError('remote verification failed')
        return transferred

    def _transfer(self, local_path: str, path: str, token: Optional[CancelToken],
                  verify: bool = True) -> Tuple[bool, Optional[str], int]:
        """
        Upload one file with bounded retries; verification failures count as failed attempts.

        Returns:
            (success, error, bytes transferred)
        """
        attempts = max(self.config.rclone_retries, 1)
        name = os.path.basename(local_path)
        controller = retrying(
            attempts,
            wait=backoff_wait(RETRY_BASE_DELAY, RETRY_MAX_DELAY),
            retry=retry_if_exception_type(StorageError),
            sleep=self._sleeper(token),
            label=f"Upload of {name}",
            category='NETWORK',
        )
        try:
            return True, None, controller(self._upload_once, local_path, path, token, verify)
        except StorageError as e:
            logger.warning(f"Upload of {name} failed after {attempts} attempts: {e}", extra={'category': 'NETWORK'})
            return False, f"{e} after {attempts} attempts", 0

    def _guarded_transfer(self, local_path: str, path: str, token: Optional[CancelToken],
                          verify: bool) -> Tuple[bool, Optional[str], int]:
        try:
            return self._transfer(local_path, path, token, verify)
        except CancelledError as e:
            return False, f"cancelled: {e}", 0

    def _upload_sequential(self, source: str, companions: List[str], path: str) -> Dict[str, tuple]:
        results = {source: self._guarded_transfer(source, path, self.cancel, True)}
        for companion in companions:
            if not results[source][0]:
                results[companion] = (False, 'archive upload failed', 0)
                continue
            results[companion] = self._guarded_transfer(companion, path, self.cancel, True)
        return results

    def _upload_parallel(self, source: str, companions: List[str], path: str) -> Dict[str, tuple]:
        group = self.cancel.child() if self.cancel is not None else CancelToken()
        verify_inline = self.config.cloud_parallel_verification
        timeout = self.config.cloud_parallel_job_timeout

        def job(local_path: str, is_archive: bool):
            token = group.child()
            timer = threading.Timer(timeout, token.cancel, args=(f"timed out after {timeout}s",))
            timer.daemon = True
            timer.start()
            try:
                result = self._guarded_transfer(local_path, path, token, verify_inline)
            finally:
                timer.cancel()
            if is_archive and not result[0]:
                group.cancel('archive upload failed')
            return result

        files = [source] + companions
        with ThreadPoolExecutor(max_workers=self.config.cloud_parallel_max_jobs,
                                thread_name_prefix='cloud-upload') as pool:
            futures = {f: pool.submit(job, f, f == source) for f in files}
            results = {f: future.result() for f, future in futures.items()}

        if not verify_inline:
            for local_path in files:
                ok, _, transferred = results[local_path]
                if ok and not self._verify_uploaded(local_path, path, self.cancel):
                    results[local_path] = (False, 'remote verification failed', transferred)
        return results

    # ------------------------------------------------------------------
    # Retention, inventory and logs
    # ------------------------------------------------------------------

    def apply_retention(self, run: BackupRun, logs: bool = False) -> Dict[Tier, dict]:
        """
        Prune every tier whose archive dispatch succeeded.

        Returns:
            Retention summary per tier (failures carry an 'errors' entry)
        """
        summaries = {}
        for target in self.config.targets():
            outcome = run.outcomes.get(target.tier)
            if outcome is None or not outcome.success:
                continue
            keep = target.log_retention if logs else target.retention
            try:
                summaries[target.tier] = self._enforce(target, keep, logs)
            except (RetentionError, StorageError, CancelledError, ValueError) as e:
                logger.warning(f"Retention failed on {target.tier.value}: {e}", extra={'category': 'RETENTION'})
                summaries[target.tier] = {'deleted': 0, 'companions': 0, 'remaining': None, 'errors': [str(e)]}
        return summaries

    def _enforce(self, target: StorageTarget, keep: int, logs: bool) -> dict:
        address = target.log_address if logs else target.address
        if not address:
            return {'deleted': 0, 'companions': 0, 'remaining': None, 'errors': []}
        if target.tier is Tier.CLOUD:
            _, path = split_address(address)
            return self.retention.enforce_cloud(self.cloud_backend, path, keep, logs=logs)
        return self.retention.enforce_local(LocalStorage(address), keep, logs=logs)

    def inventory(self) -> Dict[str, Dict[str, int]]:
        """
        Count archives and logs on every enabled tier.

        Tiers that cannot be listed are left out so the caller keeps
        their previous value.
        """
        counts = {'backups': {}, 'logs': {}}
        for target in self.config.targets():
            if not target.enabled:
                counts['backups'][target.tier.value] = 0
                counts['logs'][target.tier.value] = 0
                continue
            for key, address, logs in (('backups', target.address, False), ('logs', target.log_address, True)):
                if not address:
                    continue
                count = self._count(target.tier, address, logs)
                if count is not None:
                    counts[key][target.tier.value] = count
        return counts

    def _count(self, tier: Tier, address: str, logs: bool) -> Optional[int]:
        if tier is Tier.CLOUD:
            if self.cloud_connectivity != 'ok':
                return None
            _, path = split_address(address)
            return count_archives(lambda: self.cloud_backend.list_files(path), logs)
        if not os.path.isdir(address):
            return 0
        return count_archives(LocalStorage(address).list_files, logs)

    def dispatch_logs(self, run: BackupRun, log_path: str) -> Dict[Tier, dict]:
        """
        Copy the run log to the secondary and cloud log locations and prune logs.

        Only tiers whose archive dispatch succeeded receive the log. The
        local log directory already holds it.

        Returns:
            Per-tier dict with 'delivered' and 'error'
        """
        if self.cancel is not None and self.cancel.cancelled:
            logger.info("Run cancelled, run log stays in the local log directory", extra={'category': 'STORAGE'})
            return {}

        results = {}
        for target in self.config.targets():
            outcome = run.outcomes.get(target.tier)
            if outcome is None or not outcome.success or not target.log_address:
                continue
            if target.tier is Tier.LOCAL:
                continue
            try:
                self._check_cancel()
                if target.tier is Tier.CLOUD:
                    _, path = split_address(target.log_address)
                    self.cloud_backend.upload(log_path, path, cancel=self.cancel)
                else:
                    LocalStorage(target.log_address).store(log_path)
                results[target.tier] = {'delivered': True, 'error': None}
                logger.info(f"Run log copied to {target.tier.value} tier", extra={'category': 'STORAGE'})
            except (StorageError, CancelledError) as e:
                results[target.tier] = {'delivered': False, 'error': str(e)}
                logger.warning(f"Failed to copy run log to {target.tier.value}: {e}", extra={'category': 'STORAGE'})

        for tier, summary in self.apply_retention(run, logs=True).items():
            results.setdefault(tier, {'delivered': tier is Tier.LOCAL, 'error': None})
            if summary['errors']:
                results[tier]['error'] = '; '.join(summary['errors'])
        return results
