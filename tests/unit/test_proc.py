"""
Unit tests for external commands and cancellation (pvebackup/utils/proc.py).
"""

import sys
import threading
import time

import pytest

from pvebackup.utils.proc import CancelledError, CancelToken, CommandError, run_command


class TestCancelToken:
    """Test CancelToken."""

    def test_cancel_sets_reason_once(self):
        token = CancelToken()

        token.cancel('received SIGTERM')
        token.cancel('second reason')

        assert token.cancelled
        assert token.describe() == 'received SIGTERM'

    def test_check_raises(self):
        token = CancelToken()
        token.check()

        token.cancel('stop')
        with pytest.raises(CancelledError, match='stop'):
            token.check()

    def test_child_follows_parent(self):
        parent = CancelToken()
        child = parent.child()
        sibling = parent.child()

        child.cancel('job timed out')
        assert child.cancelled
        assert not parent.cancelled
        assert not sibling.cancelled

        parent.cancel('shutdown')
        assert sibling.cancelled
        assert sibling.describe() == 'shutdown'

    def test_sleep_returns_early_when_cancelled(self):
        token = CancelToken()
        threading.Timer(0.05, token.cancel).start()

        started = time.monotonic()
        assert token.sleep(5) is False
        assert time.monotonic() - started < 2

    def test_sleep_completes(self):
        assert CancelToken().sleep(0) is True


class TestRunCommand:
    """Test run_command()."""

    def test_captures_output(self):
        result = run_command([sys.executable, '-c', 'import sys; print("out"); print("err", file=sys.stderr)'])

        assert result.ok
        assert result.stdout.strip() == 'out'
        assert result.stderr.strip() == 'err'

    def test_nonzero_exit_is_returned(self):
        result = run_command([sys.executable, '-c', 'raise SystemExit(3)'])

        assert not result.ok
        assert result.returncode == 3

    def test_missing_executable(self):
        with pytest.raises(CommandError, match='Failed to run'):
            run_command(['/nonexistent/rclone', 'version'])

    def test_timeout_terminates(self):
        with pytest.raises(CommandError, match='timed out'):
            run_command([sys.executable, '-c', 'import time; time.sleep(30)'], timeout=0.5, grace=1)

    def test_cancellation_terminates(self):
        token = CancelToken()
        threading.Timer(0.3, token.cancel, args=('shutdown',)).start()

        started = time.monotonic()
        with pytest.raises(CancelledError):
            run_command([sys.executable, '-c', 'import time; time.sleep(30)'], cancel=token, grace=1)
        assert time.monotonic() - started < 10

    def test_cancelled_before_start(self):
        token = CancelToken()
        token.cancel('already')

        with pytest.raises(CancelledError):
            run_command(['true'], cancel=token)
