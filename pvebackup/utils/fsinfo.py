"""
Filesystem capability detection for ownership changes.

- FAT/NTFS-family mounts cannot store Unix ownership: skipped silently.
- Network mounts (NFS, SMB/CIFS, ...) may accept chown() and still squash
  the identity server-side, so they are probed empirically with a marker
  file owned through the real chown call.
- Everything else is assumed to support ownership.
"""

import grp
import logging
import os
import pwd
from typing import Iterable, Optional, Tuple


logger = logging.getLogger(__name__)

NO_OWNERSHIP_FILESYSTEMS = frozenset({'vfat', 'msdos', 'fat', 'exfat', 'ntfs', 'ntfs3', 'fuseblk'})
NETWORK_FILESYSTEMS = frozenset({
    'nfs', 'nfs4', 'cifs', 'smb', 'smb3', 'smbfs', 'fuse.sshfs', 'glusterfs', '9p'
})

FILE_MODE = 0o640
DIR_MODE = 0o750


def _unescape_mount(field: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    for code, char in (('\\040', ' '), ('\\011', '\t'), ('\\012', '\n'), ('\\134', '\\')):
        field = field.replace(code, char)
    return field


def filesystem_type(path: str, mounts_file: str = '/proc/mounts') -> Optional[str]:
    """
    Return the filesystem type of the mount containing ``path``.

    Uses the longest matching mount point. Returns None when the mount
    table cannot be read.
    """
    target = os.path.realpath(path)
    best_mount = ''
    best_type = None

    try:
        with open(mounts_file, 'r') as f:
            lines = f.readlines()
    except OSError:
        return None

    for line in lines:
        parts = line.split()
        if len(parts) < 3:
            continue
        mount_point = _unescape_mount(parts[1])
        prefix = mount_point.rstrip('/') + '/'
        if (target == mount_point or target.startswith(prefix) or mount_point == '/') \
                and len(mount_point) >= len(best_mount):
            best_mount = mount_point
            best_type = parts[2]

    return best_type


def resolve_owner(user: str, group: str) -> Optional[Tuple[int, int]]:
    """Resolve user/group names to ids; None if either is unknown."""
    try:
        uid = pwd.getpwnam(user).pw_uid
        gid = grp.getgrnam(group).gr_gid
    except KeyError:
        return None
    return uid, gid


def probe_ownership(directory: str, uid: int, gid: int) -> bool:
    """
    Create a marker file, chown it and check the result stuck.

    Returns:
        True if the filesystem honoured the ownership change
    """
    marker = os.path.join(directory, f".pvebackup-owner-probe-{os.getpid()}")
    try:
        with open(marker, 'w') as f:
            f.write('probe\n')
        os.chown(marker, uid, gid)
        st = os.stat(marker)
        return st.st_uid == uid and st.st_gid == gid
    except OSError as e:
        logger.debug(f"Ownership probe failed in {directory}: {e}", extra={'category': 'PERMISSION'})
        return False
    finally:
        try:
            os.unlink(marker)
        except OSError:
            pass


def detect_ownership_support(directory: str, uid: int, gid: int,
                             mounts_file: str = '/proc/mounts') -> bool:
    """
    Decide whether ownership changes should be attempted under ``directory``.

    Args:
        directory: Target directory (must exist)
        uid: Owner to test with
        gid: Group to test with
        mounts_file: Mount table location

    Returns:
        True if chown/chmod should be applied
    """
    fs_type = filesystem_type(directory, mounts_file)

    if fs_type in NO_OWNERSHIP_FILESYSTEMS:
        logger.debug(f"{directory} is on {fs_type}, skipping ownership changes",
                     extra={'category': 'PERMISSION'})
        return False

    if fs_type in NETWORK_FILESYSTEMS:
        supported = probe_ownership(directory, uid, gid)
        if not supported:
            logger.info(
                f"{directory} is on {fs_type} and rejects ownership changes "
                f"(likely root_squash), skipping",
                extra={'category': 'PERMISSION'}
            )
        return supported

    return True


def apply_ownership(paths: Iterable[str], directory: str, user: str, group: str,
                    mounts_file: str = '/proc/mounts') -> int:
    """
    Set owner and mode on delivered files when the filesystem allows it.

    Returns:
        Number of paths updated
    """
    owner = resolve_owner(user, group)
    if owner is None:
        logger.warning(f"Backup owner {user}:{group} does not exist, skipping ownership",
                       extra={'category': 'PERMISSION'})
        return 0

    uid, gid = owner
    if not detect_ownership_support(directory, uid, gid, mounts_file):
        return 0

    updated = 0
    for path in [directory, *paths]:
        try:
            os.chown(path, uid, gid)
            os.chmod(path, DIR_MODE if os.path.isdir(path) else FILE_MODE)
            updated += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Failed to set ownership on {path}: {e}", extra={'category': 'PERMISSION'})
    return updated
