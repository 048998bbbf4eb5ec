"""
File selection for backup runs.

Walks the configured include roots below the system root, applying the
run's RuleSet:
- exact and hidden-glob rules are checked before a directory is entered,
  so an excluded tree is never listed
- wildcard rules are checked on every path the walk reaches

The result is a FileSet with a per-category presence map that ends up in
the archive metadata, plus helpers to detect the backup type and stage
the selected files into the run's temporary directory.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pvebackup.models import BackupType
from .optimizations import CHUNK_MARKER_SUFFIX
from .patterns import RuleSet, SelectionRule, RuleKind, load_rules, normalize_path


logger = logging.getLogger(__name__)


# Category id -> (description, host path prefixes)
CATEGORIES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    'pve_cluster': ('PVE cluster configuration', ('/etc/pve', '/var/lib/pve-cluster')),
    'storage_pve': ('PVE storage configuration', ('/etc/pve/storage.cfg',)),
    'pve_jobs': ('PVE backup jobs', ('/etc/vzdump.conf', '/var/lib/pve-cluster/info/jobs')),
    'corosync': ('Corosync configuration', ('/etc/corosync',)),
    'ceph': ('Ceph configuration', ('/etc/ceph',)),
    'pbs_config': ('PBS configuration', ('/etc/proxmox-backup',)),
    'datastore_pbs': ('PBS datastore configuration', ('/etc/proxmox-backup/datastore.cfg',)),
    'pbs_jobs': ('PBS job metadata', ('/var/lib/proxmox-backup/pxar_metadata',)),
    'network': ('Network configuration', ('/etc/network', '/etc/hosts', '/etc/hostname', '/etc/resolv.conf')),
    'ssl': ('SSL certificates', ('/etc/ssl',)),
    'ssh': ('SSH configuration and keys', ('/etc/ssh', '/root/.ssh')),
    'scripts': ('Local scripts', ('/usr/local',)),
    'crontabs': ('Scheduled tasks', ('/var/spool/cron', '/etc/crontab', '/etc/cron.d')),
    'services': ('Systemd services', ('/etc/systemd/system',)),
    'system_state': ('Command output snapshots', ('/var/lib/proxmox-backup-info/system_state',)),
}

COMMON_ROOTS = (
    '/etc/network', '/etc/hosts', '/etc/hostname', '/etc/resolv.conf', '/etc/fstab',
    '/etc/ssh', '/etc/ssl', '/etc/systemd/system', '/var/spool/cron', '/etc/crontab',
    '/etc/cron.d', '/root/.ssh', '/usr/local/bin', '/usr/local/sbin',
)
PVE_ROOTS = ('/etc/pve', '/etc/vzdump.conf', '/var/lib/pve-cluster', '/etc/corosync', '/etc/ceph')
PBS_ROOTS = ('/etc/proxmox-backup', '/var/lib/proxmox-backup/pxar_metadata')

# Files without which an archive cannot restore the host
CRITICAL_PATHS = {
    BackupType.PVE: ('etc/pve/storage.cfg', 'etc/pve/user.cfg'),
    BackupType.PBS: ('etc/proxmox-backup/datastore.cfg', 'etc/proxmox-backup/user.cfg'),
}

# Editor and tooling droppings never worth archiving
PROHIBITED_NAMES = ('.cursor', '.cursor-server', '.vscode', 'node_modules')


@dataclass(frozen=True)
class SelectedFile:
    path: str
    source: str
    size: int
    is_link: bool = False


@dataclass
class FileSet:
    files: List[SelectedFile] = field(default_factory=list)
    categories: Dict[str, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return sorted(f.path for f in self.files)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def __len__(self):
        return len(self.files)


def category_presence(paths: Iterable[str]) -> Dict[str, bool]:
    """Map every category id to whether any path falls under it."""
    paths = list(paths)
    presence = {}
    for category, (_, prefixes) in CATEGORIES.items():
        presence[category] = any(
            p == prefix or p.startswith(prefix.rstrip('/') + '/')
            for p in paths for prefix in prefixes
        )
    return presence


def detect_backup_type(system_root: str = '/', override: Optional[BackupType] = None) -> BackupType:
    """
    Detect whether the host runs PVE, PBS or both.

    Args:
        system_root: Root the host paths are resolved against
        override: Forced type from configuration

    Returns:
        BackupType
    """
    if override is not None:
        return override

    has_pve = os.path.isdir(os.path.join(system_root, 'etc/pve'))
    has_pbs = os.path.isdir(os.path.join(system_root, 'etc/proxmox-backup'))

    if has_pve and has_pbs:
        return BackupType.MIXED
    if has_pbs:
        return BackupType.PBS
    if not has_pve:
        logger.warning("No Proxmox installation detected, assuming pve",
                       extra={'category': 'ENVIRONMENT'})
    return BackupType.PVE


def default_include_roots(backup_type: BackupType, custom_paths: Sequence[str] = ()) -> List[str]:
    """Include roots for a backup type, followed by custom paths, without duplicates."""
    roots = list(COMMON_ROOTS)
    if backup_type in (BackupType.PVE, BackupType.MIXED):
        roots.extend(PVE_ROOTS)
    if backup_type in (BackupType.PBS, BackupType.MIXED):
        roots.extend(PBS_ROOTS)
    roots.extend(custom_paths)

    seen = set()
    result = []
    for root in roots:
        normalized = normalize_path(root)
        if normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def critical_paths(backup_type: BackupType) -> List[str]:
    if backup_type is BackupType.MIXED:
        return list(CRITICAL_PATHS[BackupType.PVE]) + list(CRITICAL_PATHS[BackupType.PBS])
    return list(CRITICAL_PATHS[backup_type])


def missing_critical_paths(members: Iterable[str], backup_type: BackupType) -> List[str]:
    """
    Critical paths of a backup type that an archive does not contain.

    A chunked file counts as present through its marker.

    Args:
        members: Archive member names, relative to the archive root
        backup_type: Host type the archive was built for

    Returns:
        Missing paths, in table order
    """
    names = set(members)
    return [
        path for path in critical_paths(backup_type)
        if path not in names and path + CHUNK_MARKER_SUFFIX not in names
    ]


def builtin_rules(output_paths: Sequence[str]) -> List[SelectionRule]:
    """Rules every run carries: our own output directories and prohibited names."""
    rules = [SelectionRule(RuleKind.EXACT, normalize_path(p), p) for p in output_paths if p]
    rules.extend(
        SelectionRule(RuleKind.WILDCARD, f"*/{name}*", name) for name in PROHIBITED_NAMES
    )
    return rules


class FileSelector:
    """
    Selects the files of one backup run.

    Host paths are logical (``/etc/pve/...``); they are resolved against
    ``system_root`` for all filesystem access so the same selector can be
    pointed at a mounted image or a test tree.
    """

    def __init__(self, include_roots: Sequence[str], rules: RuleSet, system_root: str = '/'):
        """
        Initialize file selector.

        Args:
            include_roots: Logical paths to walk
            rules: Exclusion rules (immutable for the run)
            system_root: Real directory standing in for '/'
        """
        self.include_roots = [normalize_path(r) for r in include_roots]
        self.rules = rules
        self.system_root = system_root

    def real_path(self, logical: str) -> str:
        return os.path.join(self.system_root, logical.lstrip('/'))

    def select(self) -> FileSet:
        """
        Walk every include root.

        Returns:
            FileSet with selected files, category presence and warnings
        """
        result = FileSet()
        seen = set()

        for root in self.include_roots:
            if self.rules.excludes(root):
                logger.debug(f"Include root excluded by rule: {root}", extra={'category': 'COLLECT'})
                continue

            real = self.real_path(root)
            try:
                st = os.lstat(real)
            except FileNotFoundError:
                logger.debug(f"Include root not present: {root}", extra={'category': 'COLLECT'})
                continue
            except OSError as e:
                self._warn(result, f"Cannot access {root}: {e}")
                continue

            if os.path.isdir(real) and not os.path.islink(real):
                if not os.access(real, os.R_OK | os.X_OK):
                    self._warn(result, f"Include root not readable: {root}")
                    continue
                self._walk(root, real, result, seen)
            else:
                self._add(root, real, st.st_size, os.path.islink(real), result, seen)

        result.files.sort(key=lambda f: f.path)
        result.categories = category_presence(f.path for f in result.files)
        logger.info(
            f"Selected {len(result.files)} files ({result.total_size} bytes) "
            f"from {len(self.include_roots)} include roots",
            extra={'category': 'COLLECT'}
        )
        return result

    def _walk(self, logical_root: str, real_root: str, result: FileSet, seen: set):
        stack = [(logical_root, real_root)]

        while stack:
            logical_dir, real_dir = stack.pop()
            try:
                with os.scandir(real_dir) as entries:
                    children = sorted(entries, key=lambda e: e.name)
            except PermissionError as e:
                self._warn(result, f"Cannot read directory {logical_dir}: {e}")
                continue
            except FileNotFoundError:
                continue

            subdirs = []
            for entry in children:
                logical = f"{logical_dir.rstrip('/')}/{entry.name}"

                # Checked before descending: excluded subtrees are never listed
                if self.rules.prunes(logical):
                    continue
                if self.rules.wildcard_excludes(logical):
                    continue

                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append((logical, entry.path))
                    elif entry.is_file(follow_symlinks=False) or entry.is_symlink():
                        size = entry.stat(follow_symlinks=False).st_size
                        self._add(logical, entry.path, size, entry.is_symlink(), result, seen)
                except OSError as e:
                    self._warn(result, f"Cannot stat {logical}: {e}")

            stack.extend(reversed(subdirs))

    def _add(self, logical: str, real: str, size: int, is_link: bool, result: FileSet, seen: set):
        if logical in seen:
            return
        seen.add(logical)
        result.files.append(SelectedFile(path=logical, source=real, size=size, is_link=is_link))

    def _warn(self, result: FileSet, message: str):
        result.warnings.append(message)
        logger.warning(message, extra={'category': 'COLLECT'})


def create_selector(config, backup_type: BackupType, environ=None) -> FileSelector:
    """
    Build the selector for a run from its configuration.

    Args:
        config: RunConfig
        backup_type: Detected backup type
        environ: Variables for rule expansion (default: os.environ)

    Returns:
        FileSelector
    """
    rules = load_rules(config.backup_blacklist, environ)
    rules = rules.with_rules(builtin_rules(config.output_paths()))
    roots = default_include_roots(backup_type, config.custom_backup_paths)
    return FileSelector(roots, rules, system_root=config.system_root)


def stage_files(file_set: FileSet, staging_dir: str) -> Tuple[int, List[str]]:
    """
    Copy selected files into the staging directory at their host paths.

    Args:
        file_set: Selection result
        staging_dir: Run temporary directory

    Returns:
        Tuple of (files staged, warnings)
    """
    staged = 0
    warnings = []

    for selected in file_set.files:
        dest = os.path.join(staging_dir, selected.path.lstrip('/'))
        try:
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            if selected.is_link:
                os.symlink(os.readlink(selected.source), dest)
            else:
                shutil.copy2(selected.source, dest)
            staged += 1
        except FileNotFoundError:
            warnings.append(f"File vanished before staging: {selected.path}")
        except OSError as e:
            warnings.append(f"Failed to stage {selected.path}: {e}")

    for message in warnings:
        logger.warning(message, extra={'category': 'COLLECT'})

    return staged, warnings
