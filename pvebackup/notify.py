"""
Run notifications.

Supports:
- Telegram: bot API sendMessage
- Webhook: JSON POST of the run summary

Channels share the notify(summary) -> (sent, error) interface and are
invoked in a fixed order. A channel failure is reported, never raised,
and never changes the run severity.
"""

import logging
from typing import List, Optional, Tuple

import requests

from pvebackup.models import RunSummary


logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org/bot{token}/sendMessage'
STATUS_ICONS = {'success': '✅', 'warning': '⚠️', 'failure': '❌'}
MAX_ISSUES = 10


class NotificationError(Exception):
    """Raised when a channel rejects a notification."""
    pass


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def render_text(summary: RunSummary) -> str:
    """Human-readable summary used by text channels."""
    icon = STATUS_ICONS.get(summary.status, '')
    lines = [
        f"{icon} {summary.backup_type.upper()} backup on {summary.hostname}: {summary.status.upper()}",
        f"Started: {summary.started_at:%Y-%m-%d %H:%M:%S}, duration {summary.duration:.0f}s",
    ]
    if summary.archive_name:
        lines.append(f"Archive: {summary.archive_name} ({_format_size(summary.archive_size)}, "
                     f"{summary.file_count} files)")
    for outcome in summary.outcomes:
        if outcome.skipped and outcome.reason == 'disabled':
            continue
        state = 'ok' if outcome.success else ('skipped' if outcome.skipped else 'FAILED')
        detail = f" - {outcome.reason}" if outcome.reason and not outcome.success else ''
        lines.append(f"{outcome.tier.value}: {state}{detail}")
    if summary.counters is not None:
        counts = ', '.join(f"{tier} {n}" for tier, n in summary.counters.backups.items())
        lines.append(f"Backups stored: {counts}")
    if summary.warnings or summary.errors:
        lines.append(f"Warnings: {summary.warnings}, errors: {summary.errors}")
    for issue in summary.issues[:MAX_ISSUES]:
        lines.append(f"- {issue}")
    return '\n'.join(lines)


class Notifier:
    """Base class for notification channels."""

    name = 'notifier'

    def __init__(self, timeout: int = 15):
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return False

    def send(self, summary: RunSummary):
        raise NotImplementedError

    def notify(self, summary: RunSummary) -> Tuple[bool, Optional[str]]:
        """
        Deliver a summary.

        Returns:
            (sent, error) - error is None when sent
        """
        try:
            self.send(summary)
            return True, None
        except (requests.RequestException, NotificationError) as e:
            return False, str(e)


class TelegramNotifier(Notifier):
    name = 'telegram'

    def __init__(self, bot_token: str, chat_id: str, enabled: bool = True, timeout: int = 15):
        super().__init__(timeout)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.bot_token) and bool(self.chat_id)

    def send(self, summary: RunSummary):
        response = requests.post(
            TELEGRAM_API_URL.format(token=self.bot_token),
            data={'chat_id': self.chat_id, 'text': render_text(summary)},
            timeout=self.timeout,
        )
        if response.status_code != 200:
            raise NotificationError(f"Telegram API returned {response.status_code}: {response.text[:200]}")


class WebhookNotifier(Notifier):
    name = 'webhook'

    def __init__(self, url: str, enabled: bool = True, timeout: int = 15):
        super().__init__(timeout)
        self.url = url
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.url)

    def send(self, summary: RunSummary):
        payload = summary.to_dict()
        payload['text'] = render_text(summary)
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            raise NotificationError(f"Webhook returned {response.status_code}")


class NotificationDispatcher:
    """
    Sends one summary through every enabled channel, in order.
    """

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = notifiers

    @classmethod
    def from_config(cls, config) -> 'NotificationDispatcher':
        return cls([
            TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id,
                             enabled=config.telegram_enabled, timeout=config.notification_timeout),
            WebhookNotifier(config.webhook_url, enabled=config.webhook_enabled,
                            timeout=config.notification_timeout),
        ])

    def notify(self, summary: RunSummary) -> dict:
        """
        Fan a summary out to the channels.

        Returns:
            Dict of channel name -> (sent, error) for enabled channels
        """
        results = {}
        for notifier in self.notifiers:
            if not notifier.enabled:
                continue
            try:
                sent, error = notifier.notify(summary)
            except Exception as e:
                sent, error = False, str(e)
            results[notifier.name] = (sent, error)
            if sent:
                logger.info(f"Notification sent via {notifier.name}", extra={'category': 'NOTIFY'})
            else:
                logger.warning(f"Notification via {notifier.name} failed: {error}", extra={'category': 'NOTIFY'})

        if results and summary.exit_code != 0 and not any(sent for sent, _ in results.values()):
            logger.critical(
                f"Backup finished with status {summary.status} and no notification channel succeeded",
                extra={'category': 'NOTIFY'}
            )
        return results
