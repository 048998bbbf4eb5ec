"""
Content optimizations applied to the staging tree before compression.

- prefilter_tree: line-ending normalization and JSON minification
- deduplicate_tree: identical files replaced by a symlink to the first copy
- chunk_tree: large files split into fixed-size parts
- reassemble_chunks: inverse of chunk_tree, used on restore

Every function works in place on a staging directory and returns a
summary dict. Nothing here is fatal to a run; the builder logs failures
as warnings and carries on with the tree as it stands.
"""

import filecmp
import hashlib
import json
import logging
import os
from collections import defaultdict
from typing import Any, Dict, List

from .integrity import compute_digest


logger = logging.getLogger(__name__)

CHUNK_DIR = 'chunked_files'
CHUNK_SUFFIX = '.chunk'
CHUNK_MARKER_SUFFIX = '.chunked'

TEXT_EXTENSIONS = frozenset({'.txt', '.log', '.md', '.conf', '.cfg', '.ini'})
JSON_EXTENSIONS = frozenset({'.json'})
BINARY_SNIFF_BYTES = 8192


def _regular_files(root: str) -> List[str]:
    """Regular (non-symlink) files below root, sorted by relative path."""
    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in filenames:
            path = os.path.join(dirpath, name)
            if os.path.isfile(path) and not os.path.islink(path):
                files.append(path)
    return sorted(files, key=lambda p: os.path.relpath(p, root))


def _rewrite_preserving_times(path: str, data: bytes):
    st = os.stat(path)
    with open(path, 'wb') as f:
        f.write(data)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))


def prefilter_tree(root: str) -> Dict[str, Any]:
    """
    Normalize text content for better compression.

    CRLF line endings become LF in text/log/config files and valid JSON
    documents are minified. Binary files are left untouched.

    Args:
        root: Staging directory

    Returns:
        Dict with 'files_processed', 'bytes_saved' and 'errors'
    """
    summary = {'files_processed': 0, 'bytes_saved': 0, 'errors': []}

    for path in _regular_files(root):
        ext = os.path.splitext(path)[1].lower()
        if ext not in TEXT_EXTENSIONS and ext not in JSON_EXTENSIONS:
            continue

        try:
            with open(path, 'rb') as f:
                data = f.read()
            if b'\0' in data[:BINARY_SNIFF_BYTES]:
                continue

            if ext in JSON_EXTENSIONS:
                try:
                    document = json.loads(data.decode('utf-8'))
                except (UnicodeDecodeError, ValueError):
                    continue
                filtered = json.dumps(document, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
            else:
                filtered = data.replace(b'\r\n', b'\n')

            if len(filtered) < len(data):
                _rewrite_preserving_times(path, filtered)
                summary['files_processed'] += 1
                summary['bytes_saved'] += len(data) - len(filtered)
        except OSError as e:
            summary['errors'].append(f"{os.path.relpath(path, root)}: {e}")

    logger.info(
        f"Prefilter normalized {summary['files_processed']} files, "
        f"saved {summary['bytes_saved']} bytes",
        extra={'category': 'ARCHIVE'}
    )
    return summary


def deduplicate_tree(root: str) -> Dict[str, Any]:
    """
    Replace duplicate files with relative symlinks to the first occurrence.

    Candidates are grouped by size, then by sha256; the lexicographically
    first relative path of each group is kept. A digest match is confirmed
    byte-for-byte before anything is replaced.

    Args:
        root: Staging directory

    Returns:
        Dict with 'duplicates', 'bytes_saved', 'references' (duplicate ->
        original, both relative) and 'collisions'
    """
    summary = {'duplicates': 0, 'bytes_saved': 0, 'references': {}, 'collisions': [], 'errors': []}

    by_size = defaultdict(list)
    for path in _regular_files(root):
        if os.path.relpath(path, root).split(os.sep)[0] == CHUNK_DIR:
            continue
        size = os.path.getsize(path)
        if size > 0:
            by_size[size].append(path)

    for size, paths in by_size.items():
        if len(paths) < 2:
            continue

        by_digest = defaultdict(list)
        for path in paths:
            try:
                by_digest[compute_digest(path)].append(path)
            except OSError as e:
                summary['errors'].append(f"{os.path.relpath(path, root)}: {e}")

        for digest, group in by_digest.items():
            if len(group) < 2:
                continue
            group.sort(key=lambda p: os.path.relpath(p, root))
            keeper = group[0]
            for duplicate in group[1:]:
                rel_dup = os.path.relpath(duplicate, root)
                rel_keep = os.path.relpath(keeper, root)
                if not filecmp.cmp(keeper, duplicate, shallow=False):
                    summary['collisions'].append(f"{rel_keep} <> {rel_dup} ({digest})")
                    logger.warning(
                        f"Hash collision between {rel_keep} and {rel_dup}, keeping both",
                        extra={'category': 'ARCHIVE'}
                    )
                    continue
                try:
                    os.unlink(duplicate)
                    os.symlink(os.path.relpath(keeper, os.path.dirname(duplicate)), duplicate)
                except OSError as e:
                    summary['errors'].append(f"{rel_dup}: {e}")
                    continue
                summary['duplicates'] += 1
                summary['bytes_saved'] += size
                summary['references'][rel_dup] = rel_keep

    logger.info(
        f"Deduplication replaced {summary['duplicates']} files, "
        f"saved {summary['bytes_saved']} bytes",
        extra={'category': 'ARCHIVE'}
    )
    return summary


def _chunk_file(root: str, path: str, chunk_size: int) -> Dict[str, Any]:
    rel = os.path.relpath(path, root)
    base = os.path.join(root, CHUNK_DIR, rel)
    os.makedirs(os.path.dirname(base), exist_ok=True)

    digest = hashlib.sha256()
    written = []
    total = 0
    try:
        with open(path, 'rb') as src:
            index = 1
            while True:
                data = src.read(chunk_size)
                if not data:
                    break
                part = f"{base}.{index:03d}{CHUNK_SUFFIX}"
                with open(part, 'wb') as dst:
                    dst.write(data)
                written.append(part)
                digest.update(data)
                total += len(data)
                index += 1
    except OSError:
        for part in written:
            try:
                os.unlink(part)
            except OSError:
                pass
        raise

    os.unlink(path)
    # Empty marker; the chunk manifest lives in the metadata
    open(path + CHUNK_MARKER_SUFFIX, 'w').close()

    return {'parts': len(written), 'size': total, 'sha256': digest.hexdigest()}


def chunk_tree(root: str, threshold: int, chunk_size: int) -> Dict[str, Any]:
    """
    Split files larger than ``threshold`` into ``chunk_size`` parts.

    Parts are written to ``chunked_files/<rel>.NNN.chunk`` (NNN from 001)
    and the original is replaced by a ``<rel>.chunked`` marker.

    Args:
        root: Staging directory
        threshold: Size in bytes above which a file is split
        chunk_size: Part size in bytes

    Returns:
        Dict with 'chunked_files', 'chunks', 'manifest' and 'errors'
    """
    summary = {'chunked_files': 0, 'chunks': 0, 'manifest': {}, 'errors': []}
    if chunk_size <= 0:
        return summary

    for path in _regular_files(root):
        rel = os.path.relpath(path, root)
        if rel.split(os.sep)[0] == CHUNK_DIR:
            continue
        try:
            if os.path.getsize(path) <= threshold:
                continue
            info = _chunk_file(root, path, chunk_size)
        except OSError as e:
            summary['errors'].append(f"{rel}: {e}")
            continue
        summary['manifest'][rel] = info
        summary['chunked_files'] += 1
        summary['chunks'] += info['parts']

    if summary['chunked_files']:
        logger.info(
            f"Split {summary['chunked_files']} large files into {summary['chunks']} chunks",
            extra={'category': 'ARCHIVE'}
        )
    return summary


def reassemble_chunks(root: str, manifest: Dict[str, Dict[str, Any]]) -> int:
    """
    Rebuild chunked files inside an extracted tree.

    Args:
        root: Extraction directory
        manifest: Chunk manifest from the archive metadata

    Returns:
        Number of files reassembled

    Raises:
        ValueError: If a reassembled file does not match its recorded digest
    """
    rebuilt = 0

    for rel, info in sorted(manifest.items()):
        base = os.path.join(root, CHUNK_DIR, rel)
        parts = [f"{base}.{i:03d}{CHUNK_SUFFIX}" for i in range(1, int(info['parts']) + 1)]
        if not all(os.path.exists(p) for p in parts):
            continue

        target = os.path.join(root, rel)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        digest = hashlib.sha256()
        with open(target, 'wb') as dst:
            for part in parts:
                with open(part, 'rb') as src:
                    data = src.read()
                digest.update(data)
                dst.write(data)

        expected = info.get('sha256')
        if expected and digest.hexdigest() != expected:
            raise ValueError(f"Reassembled {rel} does not match its recorded digest")

        for part in parts:
            os.unlink(part)
        marker = target + CHUNK_MARKER_SUFFIX
        if os.path.exists(marker):
            os.unlink(marker)
        rebuilt += 1

    chunk_root = os.path.join(root, CHUNK_DIR)
    for dirpath, _, _ in os.walk(chunk_root, topdown=False):
        try:
            os.rmdir(dirpath)
        except OSError:
            pass

    return rebuilt
