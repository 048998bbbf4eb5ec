"""
Bounded retries for pipeline steps, built on tenacity.

Every retried step in a run (compression, filesystem copies, uploads,
remote verification, checksum creation) goes through ``retrying()`` so
attempts, waits and the per-retry warning look the same everywhere.
Waits go through the run's CancelToken: a cancelled run stops waiting
and raises CancelledError instead of starting another attempt.
"""

import logging
import time
from typing import Callable, Optional

from tenacity import Retrying, stop_after_attempt, wait_exponential


logger = logging.getLogger(__name__)


def cancellable_sleep(cancel=None, fallback: Optional[Callable[[float], None]] = None) -> Callable[[float], None]:
    """
    Sleep function for Retrying that honours a CancelToken.

    Args:
        cancel: Optional CancelToken; when set mid-wait, CancelledError is raised
        fallback: Sleep used without a token (default: time.sleep at call time)
    """
    if cancel is None:
        return fallback or (lambda seconds: time.sleep(seconds))

    def sleep(seconds: float):
        if not cancel.sleep(seconds):
            cancel.check()

    return sleep


def backoff_wait(base_delay: float, max_delay: float):
    """Exponential wait: base, 2*base, 4*base, ... capped at max_delay."""
    return wait_exponential(multiplier=base_delay, max=max_delay)


def _outcome_text(retry_state) -> str:
    outcome = retry_state.outcome
    if outcome is not None and outcome.failed:
        return str(outcome.exception())
    return 'unsuccessful result'


def retrying(attempts: int, wait, retry, sleep: Callable[[float], None],
             label: str, category: str = 'GENERAL') -> Retrying:
    """
    Build a Retrying controller.

    The controller never raises RetryError: once attempts run out, the last
    exception is re-raised, or the last unsuccessful result is returned.

    Args:
        attempts: Total tries (values below 1 mean one try)
        wait: tenacity wait strategy
        retry: tenacity retry condition
        sleep: Sleep function, usually from cancellable_sleep()
        label: What is being retried, for log lines
        category: Log category of the retry warnings

    Returns:
        tenacity.Retrying; call it with the step function and its arguments
    """
    attempts = max(int(attempts), 1)

    def log_retry(retry_state):
        logger.warning(
            f"{label} failed (attempt {retry_state.attempt_number}/{attempts}): "
            f"{_outcome_text(retry_state)}; retrying in {retry_state.next_action.sleep:g}s",
            extra={'category': category}
        )

    return Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait,
        retry=retry,
        sleep=sleep,
        before_sleep=log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
