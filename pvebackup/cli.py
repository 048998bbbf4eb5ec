"""
Command line entry point.

Subcommands:
- run (default): one backup run; the exit code is the run severity
- schedule: run backups on BACKUP_SCHEDULE until stopped
- verify ARCHIVE: check an archive against its .sha256 sidecar
- inspect ARCHIVE: show the restore plan, optionally extract it
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

from pvebackup import __version__, configure_logging
from pvebackup.config import load_config
from pvebackup.models import BackupType, Severity
from pvebackup.utils.proc import CancelToken


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pvebackup',
        description='Backup Proxmox VE / PBS host configuration to local, secondary and cloud storage.'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--env-file', help='KEY=VALUE configuration file')
    parser.add_argument('--profile', choices=('development', 'production'), default=None,
                        help='Configuration profile (default: $PVEBACKUP_ENV or production)')

    subparsers = parser.add_subparsers(dest='command')

    run_parser = subparsers.add_parser('run', help='Run one backup (default)')
    run_parser.add_argument('--dry-run', action='store_true', help='Select files and report, build nothing')
    run_parser.add_argument('--check-only', action='store_true',
                            help='Run prechecks and the cloud connectivity probe only')
    run_parser.add_argument('--type', choices=[t.value for t in BackupType], dest='backup_type',
                            help='Override backup type detection')

    subparsers.add_parser('schedule', help='Run backups on BACKUP_SCHEDULE')

    verify_parser = subparsers.add_parser('verify', help='Verify an archive against its checksum')
    verify_parser.add_argument('archive')

    inspect_parser = subparsers.add_parser('inspect', help='Show how an archive would be restored')
    inspect_parser.add_argument('archive')
    inspect_parser.add_argument('--category', action='append', dest='categories',
                                help='Restrict to a category (repeatable)')
    inspect_parser.add_argument('--extract', metavar='DIR', help='Extract according to the plan into DIR')

    return parser


def install_signal_handlers(token: CancelToken):
    """SIGTERM and SIGINT cancel the run instead of killing the process."""

    def _handler(signum, frame):
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, cancelling run", extra={'category': 'GENERAL'})
        token.cancel(f"received {name}")

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def cmd_run(config, args) -> int:
    from pvebackup.backup.executor import BackupExecutor

    token = CancelToken()
    install_signal_handlers(token)
    executor = BackupExecutor(
        config,
        backup_type=BackupType(args.backup_type) if getattr(args, 'backup_type', None) else None,
        cancel=token,
        check_only=getattr(args, 'check_only', False),
        dry_run=getattr(args, 'dry_run', False),
    )
    run = executor.execute()
    return int(run.severity)


def cmd_schedule(config, args) -> int:
    from pvebackup import scheduler

    try:
        scheduler.init_scheduler(config, env_file=args.env_file)
    except ValueError as e:
        logger.error(f"Cannot schedule backups: {e}", extra={'category': 'CONFIG'})
        return int(Severity.ERROR)

    def _stop(signum, frame):
        scheduler.stop_scheduler()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    scheduler.start_scheduler()
    return int(Severity.SUCCESS)


def cmd_verify(config, args) -> int:
    from pvebackup.backup.integrity import ChecksumRecord, IntegrityError, sidecar_path, verify_file

    try:
        record = ChecksumRecord.read(sidecar_path(args.archive))
    except IntegrityError as e:
        print(f"ERROR: {e}")
        return int(Severity.ERROR)

    if verify_file(args.archive, record):
        print(f"{args.archive}: OK ({record.digest})")
        return int(Severity.SUCCESS)
    print(f"{args.archive}: FAILED")
    return int(Severity.ERROR)


def cmd_inspect(config, args) -> int:
    from pvebackup.backup.restore import RestoreError, extract_archive, plan_restore

    try:
        plan = plan_restore(args.archive, args.categories)
        print(json.dumps(plan.describe(), indent=2))
        if args.extract:
            count = extract_archive(plan, args.extract)
            print(f"Extracted {count} members into {args.extract}")
    except RestoreError as e:
        print(f"ERROR: {e}")
        return int(Severity.ERROR)
    return int(Severity.SUCCESS)


COMMANDS = {
    'run': cmd_run,
    'schedule': cmd_schedule,
    'verify': cmd_verify,
    'inspect': cmd_inspect,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or 'run'

    config = load_config(args.profile, env_file=args.env_file)
    try:
        configure_logging(config)
    except OSError as e:
        logging.basicConfig(level=logging.INFO)
        logger.warning(f"Application log unavailable ({e}), logging to console only")

    return COMMANDS[command](config, args)


if __name__ == '__main__':
    sys.exit(main())
