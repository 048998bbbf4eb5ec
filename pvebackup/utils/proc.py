"""
Subprocess execution with timeouts and cooperative cancellation.

Children are polled rather than waited on so a CancelToken set from a
signal handler or a sibling job can terminate them: SIGTERM first, then
SIGKILL after a grace period.
"""

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence


logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 10
POLL_INTERVAL = 0.2


class CommandError(Exception):
    """Raised when a command cannot be started, times out or is cancelled."""
    pass


class CancelledError(CommandError):
    """Raised when a command is interrupted by its cancel token."""
    pass


class CancelToken:
    """Thread-safe cancellation flag shared by one run (or one job group)."""

    def __init__(self, parent: Optional['CancelToken'] = None):
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    def cancel(self, reason: str = 'cancelled'):
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._event.is_set()

    def child(self) -> 'CancelToken':
        """Token cancelled by either itself or this token."""
        return CancelToken(parent=self)

    def describe(self) -> str:
        if self.reason:
            return self.reason
        if self._parent is not None:
            return self._parent.describe()
        return 'cancelled'

    def check(self):
        if self.cancelled:
            raise CancelledError(self.describe())

    def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled. Returns False if cancelled."""
        deadline = time.monotonic() + seconds
        while time.monotonic() < deadline:
            if self.cancelled:
                return False
            time.sleep(min(POLL_INTERVAL, max(deadline - time.monotonic(), 0)))
        return not self.cancelled


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _terminate(proc: subprocess.Popen, grace: float):
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} ignored SIGTERM, killing", extra={'category': 'GENERAL'})
        proc.kill()
        proc.wait()


def run_command(args: Sequence[str], timeout: Optional[float] = None,
                cancel: Optional[CancelToken] = None,
                grace: float = TERMINATE_GRACE_SECONDS) -> CommandResult:
    """
    Run a command to completion.

    Args:
        args: Command and arguments
        timeout: Seconds before the child is terminated (None = no limit)
        cancel: Token that terminates the child when set
        grace: Seconds between SIGTERM and SIGKILL

    Returns:
        CommandResult (non-zero exit codes are returned, not raised)

    Raises:
        CommandError: If the command cannot start or times out
        CancelledError: If the token was set while the command ran
    """
    args = [str(a) for a in args]
    if cancel is not None:
        cancel.check()

    try:
        proc = subprocess.Popen(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True
        )
    except OSError as e:
        raise CommandError(f"Failed to run {args[0]}: {e}") from e

    deadline = time.monotonic() + timeout if timeout else None

    # communicate() drains the pipes in a helper thread so a chatty child
    # cannot block on a full pipe while we poll for cancellation
    output = {}

    def _drain():
        output['stdout'], output['stderr'] = proc.communicate()

    reader = threading.Thread(target=_drain, daemon=True)
    reader.start()

    while reader.is_alive():
        reader.join(POLL_INTERVAL)
        if not reader.is_alive():
            break
        if cancel is not None and cancel.cancelled:
            _terminate(proc, grace)
            reader.join()
            raise CancelledError(f"{args[0]} cancelled")
        if deadline is not None and time.monotonic() > deadline:
            _terminate(proc, grace)
            reader.join()
            raise CommandError(f"{args[0]} timed out after {timeout}s")

    return CommandResult(
        args=args,
        returncode=proc.returncode,
        stdout=output.get('stdout') or '',
        stderr=output.get('stderr') or ''
    )
