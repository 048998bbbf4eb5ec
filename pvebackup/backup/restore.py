"""
Restore planning and extraction.

An archive carrying the metadata member with
``SUPPORTS_SELECTIVE_RESTORE=true`` can be restored per category; any
other archive (including legacy archives without the member) is restored
in full. Extraction reassembles chunked files and turns deduplication
links back into regular files.
"""

import json
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

from .compression import CompressionError, open_archive
from .metadata import MANIFEST_MEMBER, METADATA_DIR, METADATA_MEMBER, BackupMetadata, MetadataError
from .optimizations import CHUNK_DIR, CHUNK_MARKER_SUFFIX, reassemble_chunks
from .sources import CATEGORIES


logger = logging.getLogger(__name__)

FULL = 'full'
SELECTIVE = 'selective'


class RestoreError(Exception):
    """Raised when an archive cannot be planned or extracted."""
    pass


def read_archive_metadata(archive_path: str) -> Optional[BackupMetadata]:
    """
    Read the metadata member of an archive.

    Returns:
        BackupMetadata, or None for an archive without the member

    Raises:
        RestoreError: If the archive cannot be read
    """
    member_text = None
    manifest = None
    try:
        with open_archive(archive_path) as tar:
            for member in tar:
                if member.name not in (METADATA_MEMBER, MANIFEST_MEMBER) or not member.isfile():
                    continue
                data = tar.extractfile(member).read().decode('utf-8')
                if member.name == METADATA_MEMBER:
                    member_text = data
                else:
                    manifest = json.loads(data)
                if member_text is not None and manifest is not None:
                    break
    except CompressionError as e:
        raise RestoreError(str(e)) from e
    except (tarfile.TarError, OSError, EOFError) as e:
        raise RestoreError(f"Cannot read archive {archive_path}: {e}") from e
    except ValueError as e:
        raise RestoreError(f"Corrupt metadata manifest in {archive_path}: {e}") from e

    if member_text is None:
        return None
    try:
        return BackupMetadata.from_member_text(member_text, manifest)
    except MetadataError as e:
        logger.warning(f"Unreadable metadata in {archive_path}, treating as legacy: {e}")
        return None


@dataclass
class RestorePlan:
    archive_path: str
    mode: str
    categories: List[str] = field(default_factory=list)
    metadata: Optional[BackupMetadata] = None
    skipped_categories: List[str] = field(default_factory=list)

    @property
    def is_legacy(self) -> bool:
        return self.metadata is None

    @property
    def prefixes(self) -> List[str]:
        """Archive member prefixes covered by a selective plan."""
        prefixes = []
        for category in self.categories:
            for prefix in CATEGORIES.get(category, ('', ()))[1]:
                prefixes.append(prefix.strip('/'))
        return sorted(set(prefixes))

    def describe(self) -> Dict:
        return {
            'archive': os.path.basename(self.archive_path),
            'mode': self.mode,
            'legacy': self.is_legacy,
            'categories': list(self.categories),
            'skipped_categories': list(self.skipped_categories),
            'backup_type': self.metadata.backup_type if self.metadata else None,
            'timestamp': self.metadata.timestamp if self.metadata else None,
            'format_version': self.metadata.format_version if self.metadata else None,
        }


def plan_restore(archive_path: str, categories: Optional[Sequence[str]] = None) -> RestorePlan:
    """
    Decide how an archive is restored.

    Args:
        archive_path: Archive to restore
        categories: Requested categories (None or empty = everything)

    Returns:
        RestorePlan

    Raises:
        RestoreError: If a selective request matches no category in the archive
    """
    metadata = read_archive_metadata(archive_path)

    if metadata is None:
        logger.info(f"{os.path.basename(archive_path)} has no metadata, using full restore")
        return RestorePlan(archive_path=archive_path, mode=FULL)

    present = metadata.present_categories
    if not metadata.supports_selective_restore or not categories:
        return RestorePlan(archive_path=archive_path, mode=FULL, categories=present, metadata=metadata)

    wanted = [c for c in categories if c in present]
    skipped = [c for c in categories if c not in present]
    for category in skipped:
        logger.warning(f"Category {category} is not present in {os.path.basename(archive_path)}")
    if not wanted:
        raise RestoreError(f"None of the requested categories are present: {', '.join(categories)}")

    return RestorePlan(
        archive_path=archive_path,
        mode=SELECTIVE,
        categories=wanted,
        metadata=metadata,
        skipped_categories=skipped,
    )


def _under(name: str, prefixes: Sequence[str]) -> bool:
    return any(name == p or name.startswith(p + '/') for p in prefixes)


def _chunk_owner(name: str) -> Optional[str]:
    """Relative path of the file a chunk part belongs to."""
    if not name.startswith(CHUNK_DIR + '/'):
        return None
    rel = name[len(CHUNK_DIR) + 1:]
    # strip ".NNN.chunk"
    base, _, _ = rel.rpartition('.')
    base, _, _ = base.rpartition('.')
    return base or None


def _safe_member(member: tarfile.TarInfo) -> bool:
    name = member.name
    return not (name.startswith('/') or '..' in name.split('/'))


def _wanted_members(plan: RestorePlan) -> Optional[Set[str]]:
    """Extra paths a selective restore needs: dedup originals outside the selection."""
    if plan.mode != SELECTIVE or plan.metadata is None:
        return None
    prefixes = plan.prefixes
    extra = set()
    for duplicate, original in plan.metadata.dedup_references.items():
        if _under(duplicate, prefixes) and not _under(original, prefixes):
            extra.add(original)
    return extra


def extract_archive(plan: RestorePlan, destination: str) -> int:
    """
    Extract an archive according to a plan.

    Args:
        plan: Result of plan_restore()
        destination: Directory to extract into

    Returns:
        Number of members extracted (after reassembly, chunk parts are gone)

    Raises:
        RestoreError: If extraction fails
    """
    os.makedirs(destination, exist_ok=True)
    prefixes = plan.prefixes
    helpers = _wanted_members(plan)
    extracted = 0

    try:
        with open_archive(plan.archive_path) as tar:
            for member in tar:
                if not _safe_member(member):
                    logger.warning(f"Skipping unsafe member {member.name}")
                    continue
                if helpers is not None:
                    owner = _chunk_owner(member.name)
                    name = owner if owner is not None else member.name
                    if not (_under(name, prefixes) or name in helpers or _under(name, [METADATA_DIR])):
                        continue
                tar.extract(member, destination, filter='tar')
                extracted += 1
    except CompressionError as e:
        raise RestoreError(str(e)) from e
    except (tarfile.TarError, OSError, EOFError) as e:
        raise RestoreError(f"Extraction of {plan.archive_path} failed: {e}") from e

    if plan.metadata is not None:
        _finish_tree(plan, destination, helpers or set())

    logger.info(f"Extracted {extracted} members ({plan.mode} restore) into {destination}")
    return extracted


def _finish_tree(plan: RestorePlan, destination: str, helpers: Set[str]):
    metadata = plan.metadata
    manifest = metadata.chunk_manifest
    if plan.mode == SELECTIVE:
        manifest = {rel: info for rel, info in manifest.items()
                    if _under(rel, plan.prefixes) or rel in helpers}
    try:
        rebuilt = reassemble_chunks(destination, manifest)
    except (OSError, ValueError) as e:
        raise RestoreError(f"Chunk reassembly failed: {e}") from e
    if rebuilt:
        logger.info(f"Reassembled {rebuilt} chunked files")

    for duplicate, original in sorted(metadata.dedup_references.items()):
        dup_path = os.path.join(destination, duplicate)
        orig_path = os.path.join(destination, original)
        if not os.path.islink(dup_path) or not os.path.isfile(orig_path):
            continue
        try:
            os.unlink(dup_path)
            shutil.copy2(orig_path, dup_path)
        except OSError as e:
            raise RestoreError(f"Cannot restore deduplicated file {duplicate}: {e}") from e

    for original in helpers:
        try:
            os.unlink(os.path.join(destination, original))
        except OSError:
            pass

    # leftover markers of files whose chunks were not part of the selection
    for rel in metadata.chunk_manifest:
        marker = os.path.join(destination, rel + CHUNK_MARKER_SUFFIX)
        if os.path.exists(marker) and not os.path.exists(os.path.join(destination, rel)):
            os.unlink(marker)
