"""
System state snapshots captured from command output.

Configuration files alone do not show what the host looked like at
backup time. This module runs a fixed set of read-only commands
(versions, storage status, users, jobs, network, disks) and writes
their output into the staging tree below
``var/lib/proxmox-backup-info/system_state``, so every archive carries
the snapshot next to the files it came from.

A command that cannot start or exits non-zero is a warning: the run
keeps going and the other snapshots are still captured.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from pvebackup.models import BackupType
from pvebackup.utils.proc import CancelledError, CommandError, run_command
from .metadata import METADATA_DIR


logger = logging.getLogger(__name__)

STATE_DIR = os.path.join(METADATA_DIR, 'system_state')
STATE_CATEGORY = 'system_state'
COMMAND_TIMEOUT = 60


@dataclass(frozen=True)
class StateCommand:
    filename: str
    args: Tuple[str, ...]
    description: str
    # Host path that must exist for the command to apply
    requires: Optional[str] = None


COMMON_COMMANDS = (
    StateCommand('system/uname.txt', ('uname', '-a'), 'kernel version'),
    StateCommand('system/ip_addr.txt', ('ip', 'addr'), 'network addresses'),
    StateCommand('system/ip_route.txt', ('ip', 'route'), 'routing table'),
    StateCommand('system/iptables.txt', ('iptables-save',), 'firewall rules'),
    StateCommand('system/lsblk.txt', ('lsblk', '-f'), 'block devices'),
    StateCommand('system/disk_space.txt', ('df', '-h'), 'disk usage'),
)

PVE_COMMANDS = (
    StateCommand('pve/pve_version.txt', ('pveversion', '-v'), 'PVE version'),
    StateCommand('pve/storage_status.txt', ('pvesm', 'status'), 'storage status'),
    StateCommand('pve/user_list.json', ('pveum', 'user', 'list', '--output-format=json'), 'user list'),
    StateCommand('pve/nodes_status.json', ('pvesh', 'get', '/nodes', '--output-format=json'), 'node status'),
    StateCommand('pve/backup_jobs.json', ('pvesh', 'get', '/cluster/backup', '--output-format=json'),
                 'backup jobs'),
    StateCommand('pve/replication_jobs.json', ('pvesh', 'get', '/cluster/replication', '--output-format=json'),
                 'replication jobs'),
    StateCommand('pve/ceph_status.txt', ('ceph', 'status'), 'Ceph status', requires='/etc/ceph/ceph.conf'),
)

PBS_COMMANDS = (
    StateCommand('pbs/pbs_version.txt', ('proxmox-backup-manager', 'version'), 'PBS version'),
    StateCommand('pbs/datastore_list.json',
                 ('proxmox-backup-manager', 'datastore', 'list', '--output-format=json'), 'datastore list'),
    StateCommand('pbs/user_list.json',
                 ('proxmox-backup-manager', 'user', 'list', '--output-format=json'), 'user list'),
    StateCommand('pbs/acl_list.json',
                 ('proxmox-backup-manager', 'acl', 'list', '--output-format=json'), 'ACL list'),
    StateCommand('pbs/remote_list.json',
                 ('proxmox-backup-manager', 'remote', 'list', '--output-format=json'), 'remote list'),
    StateCommand('pbs/sync_jobs.json',
                 ('proxmox-backup-manager', 'sync-job', 'list', '--output-format=json'), 'sync jobs'),
    StateCommand('pbs/verify_jobs.json',
                 ('proxmox-backup-manager', 'verify-job', 'list', '--output-format=json'), 'verification jobs'),
    StateCommand('pbs/prune_jobs.json',
                 ('proxmox-backup-manager', 'prune-job', 'list', '--output-format=json'), 'prune jobs'),
)


def commands_for(backup_type: BackupType) -> List[StateCommand]:
    commands = list(COMMON_COMMANDS)
    if backup_type in (BackupType.PVE, BackupType.MIXED):
        commands.extend(PVE_COMMANDS)
    if backup_type in (BackupType.PBS, BackupType.MIXED):
        commands.extend(PBS_COMMANDS)
    return commands


class SystemStateCollector:
    """
    Captures command output for one backup type.
    """

    def __init__(self, backup_type: BackupType, runner: Callable = run_command,
                 cancel=None, system_root: str = '/', timeout: float = COMMAND_TIMEOUT):
        """
        Args:
            backup_type: Host type, selects the command table
            runner: Command runner (run_command signature)
            cancel: Optional CancelToken passed to every command
            system_root: Root the ``requires`` paths are resolved against
            timeout: Per-command timeout in seconds
        """
        self.backup_type = backup_type
        self.runner = runner
        self.cancel = cancel
        self.system_root = system_root
        self.timeout = timeout

    def _applies(self, command: StateCommand) -> bool:
        if command.requires is None:
            return True
        return os.path.exists(os.path.join(self.system_root, command.requires.lstrip('/')))

    def collect(self, staging_dir: str) -> Dict[str, Any]:
        """
        Run every applicable command and write its output into the staging tree.

        Args:
            staging_dir: Archive staging directory

        Returns:
            Dict with 'captured', 'files' (paths relative to staging_dir)
            and 'warnings'

        Raises:
            CancelledError: If the run was cancelled while a command ran
        """
        summary = {'captured': 0, 'files': [], 'warnings': []}

        for command in commands_for(self.backup_type):
            if not self._applies(command):
                logger.debug(f"Skipping {command.description}: {command.requires} not present",
                             extra={'category': 'COLLECT'})
                continue

            line = ' '.join(command.args)
            try:
                result = self.runner(list(command.args), timeout=self.timeout, cancel=self.cancel)
            except CancelledError:
                raise
            except CommandError as e:
                summary['warnings'].append(f"{line}: {e}")
                logger.warning(f"Cannot capture {command.description} ({line}): {e}",
                               extra={'category': 'COLLECT'})
                continue

            if not result.ok:
                detail = result.stderr.strip().splitlines()[0] if result.stderr.strip() else 'no output'
                summary['warnings'].append(f"{line}: exit code {result.returncode}")
                logger.warning(
                    f"Cannot capture {command.description} ({line}): exit code {result.returncode}: {detail}",
                    extra={'category': 'COLLECT'}
                )
                continue

            rel = os.path.join(STATE_DIR, command.filename)
            target = os.path.join(staging_dir, rel)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, 'w') as f:
                f.write(result.stdout)
            summary['files'].append(rel)
            summary['captured'] += 1

        logger.info(
            f"Captured {summary['captured']} system state snapshots"
            + (f" ({len(summary['warnings'])} failed)" if summary['warnings'] else ''),
            extra={'category': 'COLLECT'}
        )
        return summary
