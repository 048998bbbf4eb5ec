"""
Diagnostic formatting for run logs.

Every record carries a category tag. Warnings and errors are also kept as
structured issue lines ``LEVEL|CATEGORY|message`` for notification
summaries. Field separators and backslashes inside a field are escaped so
a message containing '|' survives a round trip intact.
"""

import logging
import os
import threading
from typing import List, Tuple


SEPARATOR = '|'

CATEGORIES = (
    'CONFIG', 'ENVIRONMENT', 'SECURITY', 'COLLECT', 'ARCHIVE', 'COMPRESSION',
    'VERIFY', 'STORAGE', 'NETWORK', 'PERMISSION', 'RETENTION', 'LOCK',
    'COUNTERS', 'NOTIFY', 'METRICS', 'CLEANUP', 'GENERAL',
)

RUN_LOG_FORMAT = '[%(asctime)s] %(levelname)s [%(category)s] %(message)s'


def escape_field(value: str) -> str:
    """Escape backslash, separator and newlines inside one field."""
    return (
        str(value)
        .replace('\\', '\\\\')
        .replace(SEPARATOR, '\\' + SEPARATOR)
        .replace('\n', '\\n')
    )


def split_fields(line: str) -> List[str]:
    """Split an issue line on unescaped separators and unescape each field."""
    fields = []
    current = []
    chars = iter(line)
    for char in chars:
        if char == '\\':
            nxt = next(chars, '')
            current.append('\n' if nxt == 'n' else nxt)
        elif char == SEPARATOR:
            fields.append(''.join(current))
            current = []
        else:
            current.append(char)
    fields.append(''.join(current))
    return fields


def format_issue(level: str, category: str, message: str) -> str:
    return SEPARATOR.join(escape_field(f) for f in (level, category, message))


def parse_issue(line: str) -> Tuple[str, str, str]:
    """
    Parse a line produced by format_issue().

    Raises:
        ValueError: If the line does not have exactly three fields
    """
    fields = split_fields(line)
    if len(fields) != 3:
        raise ValueError(f"Malformed issue line: {line!r}")
    return fields[0], fields[1], fields[2]


class CategoryFilter(logging.Filter):
    """Default missing or unknown category tags to GENERAL."""

    def filter(self, record):
        category = getattr(record, 'category', None)
        if category not in CATEGORIES:
            record.category = 'GENERAL'
        return True


class RunLogHandler(logging.FileHandler):
    """
    Per-run log file that also tallies warnings and errors.

    Attach for the duration of one run; issues() returns the structured
    lines in the order they were logged.
    """

    def __init__(self, path: str):
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        super().__init__(path, encoding='utf-8')
        self.path = path
        self.warning_count = 0
        self.error_count = 0
        self._issues: List[str] = []
        self._issue_lock = threading.Lock()
        self.addFilter(CategoryFilter())
        self.setFormatter(logging.Formatter(RUN_LOG_FORMAT))

    def emit(self, record):
        super().emit(record)
        if record.levelno < logging.WARNING:
            return
        with self._issue_lock:
            if record.levelno >= logging.ERROR:
                self.error_count += 1
            else:
                self.warning_count += 1
            self._issues.append(
                format_issue(record.levelname, record.category, record.getMessage())
            )

    def issues(self) -> List[str]:
        with self._issue_lock:
            return list(self._issues)
