"""
Storage handlers for backup archives.

Supports:
- LocalStorage: a filesystem directory (local and secondary tiers)
- RcloneBackend: any rclone remote, addressed as ``<remote>:<path>``
- S3Backend: an S3 bucket through boto3, addressed as ``<bucket>:<prefix>``

Cloud backends share one interface (probe, upload, stat, list, delete)
and are picked once per run by create_cloud_backend().
"""

import json
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Any

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from pvebackup.config import parse_size
from pvebackup.models import CloudBackendKind
from pvebackup.utils.proc import CancelledError, CommandError, run_command


PARTIAL_SUFFIX = '.partial'
DELETE_BATCH_SIZE = 20


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def split_address(address: str) -> Tuple[str, str]:
    """
    Split ``<remote>:<path>`` into its parts.

    Raises:
        StorageError: If there is no remote part
    """
    remote, sep, path = address.partition(':')
    if not sep or not remote:
        raise StorageError(f"Invalid cloud address: {address!r}")
    return remote, path.strip('/')


class LocalStorage:
    """
    Handler for storing backups in a filesystem directory.

    Files are written under a temporary name and renamed into place, so a
    crash never leaves a correctly-named partial copy.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding the backups
        """
        self.base_path = base_path

        # Create base directory if it doesn't exist
        try:
            os.makedirs(self.base_path, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directory {base_path}: {e}")

    def store(self, source_path: str, name: Optional[str] = None) -> str:
        """
        Copy a file into storage.

        Args:
            source_path: Path to source file
            name: Destination filename (default: source basename)

        Returns:
            Full path of the stored file

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        filename = name or os.path.basename(source_path)
        dest_path = os.path.join(self.base_path, filename)
        partial_path = os.path.join(self.base_path, f".{filename}{PARTIAL_SUFFIX}")

        try:
            shutil.copy2(source_path, partial_path)
            os.replace(partial_path, dest_path)
            return dest_path
        except PermissionError as e:
            self._discard(partial_path)
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            self._discard(partial_path)
            raise StorageError(f"Failed to store {filename}: {e}")

    @staticmethod
    def _discard(path: str):
        try:
            os.unlink(path)
        except OSError:
            pass

    def delete(self, filename: str) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if a file was removed

        Raises:
            StorageError: If deletion fails
        """
        full_path = os.path.join(self.base_path, filename)

        try:
            os.unlink(full_path)
            return True
        except FileNotFoundError:
            return False
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete {full_path}: {e}")

    def list_files(self) -> List[Dict[str, Any]]:
        """
        List files in storage (non-recursive).

        Returns:
            List of dicts with 'name', 'modified', and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        try:
            files = []
            with os.scandir(self.base_path) as entries:
                for entry in entries:
                    if entry.is_file(follow_symlinks=False):
                        stat = entry.stat(follow_symlinks=False)
                        files.append({
                            'name': entry.name,
                            'modified': datetime.fromtimestamp(stat.st_mtime),
                            'size': stat.st_size
                        })
            return files
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Failed to list {self.base_path}: {e}")

    def get_full_path(self, filename: str) -> str:
        return os.path.join(self.base_path, filename)


class CloudBackend(ABC):
    """Interface shared by cloud backends. Paths are relative to the remote."""

    @abstractmethod
    def probe(self, cancel=None):
        """Raise StorageError if the remote cannot be reached."""

    @abstractmethod
    def upload(self, local_path: str, path: str, cancel=None) -> int:
        """Upload a file into ``path``; returns bytes transferred."""

    @abstractmethod
    def stat(self, path: str, name: str) -> Optional[int]:
        """Size of ``path/name``, or None if absent."""

    @abstractmethod
    def list_files(self, path: str) -> List[Dict[str, Any]]:
        """Files directly under ``path`` as dicts with 'name', 'size', 'modified'."""

    @abstractmethod
    def delete(self, path: str, names: Sequence[str], cancel=None) -> int:
        """Delete files under ``path``; returns how many were removed."""


def _parse_modtime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        # rclone emits RFC 3339 with nanoseconds; keep microseconds
        trimmed = value.replace('Z', '+00:00')
        if '.' in trimmed:
            head, tail = trimmed.split('.', 1)
            frac = ''.join(c for c in tail if c.isdigit())
            zone = tail[len(frac):]
            trimmed = f"{head}.{frac[:6]}{zone}"
        return datetime.fromisoformat(trimmed)
    except ValueError:
        return None


class RcloneBackend(CloudBackend):
    """
    Cloud tier through the rclone CLI.

    Uploads go to ``<name>.partial`` with ``copyto`` and are renamed with
    ``moveto`` once complete.
    """

    def __init__(self, remote: str, rclone_bin: str = 'rclone', bandwidth_limit: str = '',
                 flags: Sequence[str] = (), timeout: int = 300, connectivity_timeout: int = 10,
                 runner: Callable = run_command):
        """
        Initialize rclone backend.

        Args:
            remote: rclone remote name (without the trailing colon)
            rclone_bin: rclone executable
            bandwidth_limit: Passed to --bwlimit unchanged
            flags: Extra transfer flags passed through unchanged
            timeout: Seconds per transfer command
            connectivity_timeout: Seconds for probe and listing commands
            runner: Command runner (injectable for tests)
        """
        self.remote = remote
        self.rclone_bin = rclone_bin
        self.bandwidth_limit = bandwidth_limit
        self.flags = list(flags)
        self.timeout = timeout
        self.connectivity_timeout = connectivity_timeout
        self.runner = runner

    def target(self, path: str, name: str = '') -> str:
        path = path.strip('/')
        joined = f"{path}/{name}" if path and name else (path or name)
        return f"{self.remote}:{joined}"

    def _transfer_flags(self) -> List[str]:
        flags = []
        if self.bandwidth_limit:
            flags.append(f"--bwlimit={self.bandwidth_limit}")
        return flags + self.flags

    def _run(self, args: List[str], timeout: int, cancel=None):
        try:
            return self.runner([self.rclone_bin] + args, timeout=timeout, cancel=cancel)
        except CancelledError:
            raise
        except CommandError as e:
            raise StorageError(str(e)) from e

    @staticmethod
    def _error_text(result) -> str:
        text = (result.stderr or result.stdout or '').strip().splitlines()
        return text[-1] if text else f"exit code {result.returncode}"

    def probe(self, cancel=None):
        result = self._run(['listremotes'], self.connectivity_timeout, cancel)
        if not result.ok:
            raise StorageError(f"rclone listremotes failed: {self._error_text(result)}")
        remotes = {line.strip().rstrip(':') for line in result.stdout.splitlines() if line.strip()}
        if self.remote not in remotes:
            raise StorageError(f"rclone remote '{self.remote}' is not configured")

        result = self._run(['lsf', '--max-depth', '1', f"{self.remote}:"], self.connectivity_timeout, cancel)
        if not result.ok:
            raise StorageError(f"rclone remote '{self.remote}' unreachable: {self._error_text(result)}")

    def upload(self, local_path: str, path: str, cancel=None) -> int:
        name = os.path.basename(local_path)
        partial = self.target(path, name + PARTIAL_SUFFIX)
        final = self.target(path, name)
        size = os.path.getsize(local_path)

        try:
            result = self._run(['copyto', local_path, partial] + self._transfer_flags(), self.timeout, cancel)
            if not result.ok:
                raise StorageError(f"rclone copyto failed for {name}: {self._error_text(result)}")
            result = self._run(['moveto', partial, final] + self.flags, self.timeout, cancel)
            if not result.ok:
                raise StorageError(f"rclone moveto failed for {name}: {self._error_text(result)}")
        except CancelledError:
            self._discard_partial(partial)
            raise
        return size

    def _discard_partial(self, partial: str):
        try:
            self.runner([self.rclone_bin, 'deletefile', partial], timeout=self.connectivity_timeout)
        except CommandError:
            pass

    def _lsjson(self, target: str) -> Optional[list]:
        result = self._run(['lsjson', '--files-only', target], self.connectivity_timeout)
        if not result.ok:
            return None
        try:
            return json.loads(result.stdout or '[]')
        except ValueError as e:
            raise StorageError(f"Unparseable rclone listing for {target}: {e}") from e

    def stat(self, path: str, name: str) -> Optional[int]:
        entries = self._lsjson(self.target(path, name))
        for entry in entries or []:
            if entry.get('Name') == name or entry.get('Path') == name:
                return int(entry.get('Size', -1))
        return None

    def list_files(self, path: str) -> List[Dict[str, Any]]:
        entries = self._lsjson(self.target(path))
        if entries is None:
            raise StorageError(f"Failed to list {self.target(path)}")
        return [
            {
                'name': entry.get('Name') or entry.get('Path'),
                'size': int(entry.get('Size', 0)),
                'modified': _parse_modtime(entry.get('ModTime')),
            }
            for entry in entries
        ]

    def delete(self, path: str, names: Sequence[str], cancel=None) -> int:
        deleted = 0
        names = list(names)
        for start in range(0, len(names), DELETE_BATCH_SIZE):
            batch = names[start:start + DELETE_BATCH_SIZE]
            with tempfile.NamedTemporaryFile('w', prefix='pvebackup-delete-', suffix='.txt') as listing:
                listing.write('\n'.join(batch) + '\n')
                listing.flush()
                result = self._run(
                    ['delete', self.target(path), '--files-from', listing.name],
                    self.timeout, cancel
                )
            if not result.ok:
                raise StorageError(f"rclone delete failed: {self._error_text(result)}")
            deleted += len(batch)
        return deleted


class S3Backend(CloudBackend):
    """
    Cloud tier on AWS S3 (or an S3-compatible endpoint).

    Objects are stored as ``{prefix}/{filename}``. Files larger than 100MB
    use a multipart upload that checks for cancellation between parts and
    is aborted on failure.
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, bucket_name: str, region: str = 'us-east-1', endpoint_url: Optional[str] = None,
                 bandwidth_limit: str = '', client=None):
        """
        Initialize S3 backend.

        Credentials come from the standard boto3 chain (environment,
        shared config, instance profile).

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            bandwidth_limit: Upload cap such as '10M' (bytes per second)
            client: Preconfigured boto3 client
        """
        self.bucket_name = bucket_name
        self.region = region
        self.bandwidth = parse_size(bandwidth_limit) if bandwidth_limit else 0

        if client is not None:
            self.s3_client = client
            return
        try:
            self.s3_client = boto3.client('s3', region_name=region, endpoint_url=endpoint_url)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def key(path: str, name: str) -> str:
        path = path.strip('/')
        return f"{path}/{name}" if path else name

    @staticmethod
    def _error_code(e: ClientError) -> str:
        return e.response.get('Error', {}).get('Code', 'Unknown')

    def probe(self, cancel=None):
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = self._error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def upload(self, local_path: str, path: str, cancel=None) -> int:
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        s3_key = self.key(path, os.path.basename(local_path))
        file_size = os.path.getsize(local_path)
        cancellation_check = cancel.check if cancel is not None else None

        try:
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)
            return file_size
        except ClientError as e:
            raise StorageError(f"S3 upload failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=f)

    def _throttle(self, sent: int, started: float):
        if not self.bandwidth:
            return
        expected = sent / self.bandwidth
        elapsed = time.monotonic() - started
        if expected > elapsed:
            time.sleep(expected - elapsed)

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']
        parts = []
        sent = 0
        started = time.monotonic()

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1
                    sent += len(data)
                    self._throttle(sent, started)

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except BaseException:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def stat(self, path: str, name: str) -> Optional[int]:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self.key(path, name))
            return int(response['ContentLength'])
        except ClientError as e:
            if self._error_code(e) in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageError(f"S3 head failed ({self._error_code(e)}): {e}")

    def list_files(self, path: str) -> List[Dict[str, Any]]:
        prefix = path.strip('/')
        prefix = f"{prefix}/" if prefix else ''
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    objects.append({
                        'name': obj['Key'][len(prefix):],
                        'modified': obj['LastModified'],
                        'size': obj['Size']
                    })
            return objects
        except ClientError as e:
            raise StorageError(f"S3 list failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, path: str, names: Sequence[str], cancel=None) -> int:
        deleted = 0
        for name in names:
            if cancel is not None:
                cancel.check()
            try:
                self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.key(path, name))
                deleted += 1
            except ClientError as e:
                raise StorageError(f"S3 delete failed ({self._error_code(e)}): {e}")
        return deleted


def create_cloud_backend(config, runner: Callable = run_command) -> CloudBackend:
    """
    Factory for the configured cloud backend.

    Args:
        config: RunConfig
        runner: Command runner handed to the rclone backend

    Returns:
        CloudBackend instance

    Raises:
        ValueError: If the backend kind is unknown
    """
    if config.cloud_backend is CloudBackendKind.RCLONE:
        return RcloneBackend(
            remote=config.cloud_remote,
            rclone_bin=config.rclone_bin,
            bandwidth_limit=config.rclone_bandwidth_limit,
            flags=config.rclone_flags,
            timeout=config.rclone_timeout,
            connectivity_timeout=config.cloud_connectivity_timeout,
            runner=runner,
        )
    if config.cloud_backend is CloudBackendKind.S3:
        return S3Backend(
            bucket_name=config.cloud_remote,
            region=config.aws_region,
            endpoint_url=config.s3_endpoint_url,
            bandwidth_limit=config.rclone_bandwidth_limit,
        )
    raise ValueError(f"Unknown cloud backend: {config.cloud_backend}")
