"""
Archive metadata: the contract between backups and the restore tool.

Two forms of the same record are produced:
- an in-archive member ``var/lib/proxmox-backup-info/backup_metadata.txt``
  (KEY=VALUE lines) plus a JSON manifest of dedup references and chunks,
  written into the staging tree before the archive is opened
- a ``<archive>.metadata`` JSON sidecar, written after the archive is
  sealed, which adds size and compression figures

Archives without the member are legacy archives and restore in full.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .integrity import compute_digest


FORMAT_VERSION = '2.0'
METADATA_DIR = 'var/lib/proxmox-backup-info'
METADATA_MEMBER = f'{METADATA_DIR}/backup_metadata.txt'
MANIFEST_MEMBER = f'{METADATA_DIR}/backup_manifest.json'
SIDECAR_SUFFIX = '.metadata'

FEATURES = ('selective_restore', 'category_mapping', 'version_detection', 'auto_directory_creation')


class MetadataError(Exception):
    """Raised when metadata cannot be written or parsed."""
    pass


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes')


@dataclass
class BackupMetadata:
    backup_type: str
    timestamp: str
    hostname: str
    format_version: str = FORMAT_VERSION
    supports_selective_restore: bool = True
    features: Tuple[str, ...] = FEATURES
    categories: Dict[str, bool] = field(default_factory=dict)
    dedup_references: Dict[str, str] = field(default_factory=dict)
    chunk_manifest: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    compression: Dict[str, Any] = field(default_factory=dict)

    @property
    def present_categories(self):
        return sorted(c for c, present in self.categories.items() if present)

    def to_member_text(self) -> str:
        lines = [
            f"VERSION={self.format_version}",
            f"BACKUP_TYPE={self.backup_type}",
            f"TIMESTAMP={self.timestamp}",
            f"HOSTNAME={self.hostname}",
            f"SUPPORTS_SELECTIVE_RESTORE={'true' if self.supports_selective_restore else 'false'}",
            f"BACKUP_FEATURES={','.join(self.features)}",
            f"CATEGORIES={','.join(self.present_categories)}",
        ]
        return '\n'.join(lines) + '\n'

    def manifest(self) -> Dict[str, Any]:
        return {
            'format_version': self.format_version,
            'categories': dict(sorted(self.categories.items())),
            'dedup_references': dict(sorted(self.dedup_references.items())),
            'chunks': dict(sorted(self.chunk_manifest.items())),
            'compression': self.compression,
        }

    @classmethod
    def from_member_text(cls, text: str, manifest: Optional[Dict[str, Any]] = None) -> 'BackupMetadata':
        """
        Parse the in-archive member.

        Raises:
            MetadataError: If mandatory keys are missing
        """
        values = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            values[key.strip()] = value.strip()

        if 'BACKUP_TYPE' not in values:
            raise MetadataError("Metadata member has no BACKUP_TYPE")

        manifest = manifest or {}
        present = [c for c in values.get('CATEGORIES', '').split(',') if c]
        categories = dict(manifest.get('categories') or {c: True for c in present})

        return cls(
            backup_type=values['BACKUP_TYPE'],
            timestamp=values.get('TIMESTAMP', ''),
            hostname=values.get('HOSTNAME', ''),
            format_version=values.get('VERSION', '1.0'),
            supports_selective_restore=_parse_bool(values.get('SUPPORTS_SELECTIVE_RESTORE', 'false')),
            features=tuple(f for f in values.get('BACKUP_FEATURES', '').split(',') if f),
            categories=categories,
            dedup_references=dict(manifest.get('dedup_references') or {}),
            chunk_manifest=dict(manifest.get('chunks') or {}),
            compression=dict(manifest.get('compression') or {}),
        )


def write_metadata_member(staging_dir: str, metadata: BackupMetadata) -> str:
    """
    Write the metadata member and manifest into the staging tree.

    Must be called after every optimization pass and before compression.

    Returns:
        Path of the written member
    """
    member_path = os.path.join(staging_dir, METADATA_MEMBER)
    try:
        os.makedirs(os.path.dirname(member_path), exist_ok=True)
        with open(member_path, 'w', encoding='utf-8') as f:
            f.write(metadata.to_member_text())
        with open(os.path.join(staging_dir, MANIFEST_MEMBER), 'w', encoding='utf-8') as f:
            json.dump(metadata.manifest(), f, indent=2)
    except OSError as e:
        raise MetadataError(f"Failed to write metadata member: {e}") from e
    return member_path


def sidecar_path(archive_path: str) -> str:
    return archive_path + SIDECAR_SUFFIX


def write_sidecar(archive_path: str, metadata: BackupMetadata, archive_info: Dict[str, Any]) -> str:
    """
    Write ``<archive>.metadata`` and its ``.sha256``.

    Args:
        archive_path: Sealed archive
        metadata: Record written into the archive
        archive_info: Size, ratio and duration figures of the build

    Returns:
        Sidecar path
    """
    path = sidecar_path(archive_path)
    document = {
        'archive': os.path.basename(archive_path),
        'version': metadata.format_version,
        'backup_type': metadata.backup_type,
        'timestamp': metadata.timestamp,
        'hostname': metadata.hostname,
        'supports_selective_restore': metadata.supports_selective_restore,
        'features': list(metadata.features),
        **metadata.manifest(),
        **archive_info,
    }
    try:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2, sort_keys=True)
        with open(path + '.sha256', 'w', encoding='utf-8') as f:
            f.write(f"{compute_digest(path)}  {os.path.basename(path)}\n")
    except OSError as e:
        raise MetadataError(f"Failed to write metadata sidecar: {e}") from e
    return path


def read_sidecar(archive_path: str) -> Optional[Dict[str, Any]]:
    """Load ``<archive>.metadata`` if present."""
    try:
        with open(sidecar_path(archive_path), 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        raise MetadataError(f"Cannot read metadata sidecar: {e}") from e
