"""
Selection rules for the file selector.

Rule kinds:
- ExactPath: a path and everything beneath it (``/var/log``)
- GlobHidden: hidden entries under a directory (``/root/.*``)
- WildcardSubstring: shell wildcard matched anywhere in a path (``*.tmp``)

Entries are variable-expanded once when loaded. Exact and hidden-glob
rules can prune a directory before it is visited; wildcard rules are only
evaluated against paths the traversal actually reaches.
"""

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Iterable, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)

WILDCARD_CHARS = ('*', '?', '[')
HIDDEN_SUFFIX = '/.*'

_VAR_RE = re.compile(r'\$(?:\{(\w+)\}|(\w+))')


class SelectionError(Exception):
    """Raised when a selection rule cannot be parsed."""
    pass


class RuleKind(Enum):
    EXACT = 'exact'
    GLOB_HIDDEN = 'glob_hidden'
    WILDCARD = 'wildcard'


def normalize_path(path: str) -> str:
    """Absolute, slash-collapsed path without a trailing slash."""
    if not path:
        return '/'
    normalized = os.path.normpath('/' + path.lstrip('/'))
    # normpath keeps a leading '//' pair
    return '/' + normalized.lstrip('/')


def expand_variables(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Expand $VAR / ${VAR} and a leading ~; unknown variables expand to ''."""
    environ = os.environ if environ is None else environ
    expanded = _VAR_RE.sub(lambda m: environ.get(m.group(1) or m.group(2), ''), text)
    if expanded.startswith('~'):
        home = environ.get('HOME') or os.path.expanduser('~')
        expanded = home + expanded[1:]
    return expanded


def _has_wildcard(text: str) -> bool:
    return any(c in text for c in WILDCARD_CHARS)


def _is_under(path: str, base: str) -> bool:
    if base == '/':
        return True
    return path == base or path.startswith(base + '/')


@dataclass(frozen=True)
class SelectionRule:
    """One classified exclusion rule."""
    kind: RuleKind
    pattern: str
    source: str = ''

    @property
    def can_prune(self) -> bool:
        return self.kind in (RuleKind.EXACT, RuleKind.GLOB_HIDDEN)

    def matches(self, path: str) -> bool:
        """
        Check a normalized path against the rule.

        Args:
            path: Normalized absolute path

        Returns:
            True if the path (and, for directories, its subtree) is excluded
        """
        if self.kind is RuleKind.EXACT:
            return _is_under(path, self.pattern)

        if self.kind is RuleKind.GLOB_HIDDEN:
            base = self.pattern.rstrip('/')
            return path.startswith(base + '/.') if base else path.startswith('/.')

        # Anchored wildcards match as a path prefix, unanchored ones anywhere
        if self.pattern.startswith('/'):
            return fnmatchcase(path, self.pattern) or fnmatchcase(path, self.pattern + '*')
        return fnmatchcase(path, '*' + self.pattern + '*')

    def __repr__(self):
        return f'<SelectionRule {self.kind.value} {self.pattern!r}>'


def classify_rule(entry: str, environ: Optional[Mapping[str, str]] = None) -> Optional[SelectionRule]:
    """
    Classify one blacklist entry.

    Args:
        entry: Raw entry as configured
        environ: Variables for expansion (default: os.environ)

    Returns:
        SelectionRule, or None for blank entries and comments
    """
    text = entry.strip()
    if not text or text.startswith('#'):
        return None

    expanded = expand_variables(text, environ).strip()
    if not expanded:
        return None

    if _has_wildcard(expanded):
        if expanded.endswith(HIDDEN_SUFFIX) and not _has_wildcard(expanded[:-len(HIDDEN_SUFFIX)]):
            base = normalize_path(expanded[:-len(HIDDEN_SUFFIX)])
            return SelectionRule(RuleKind.GLOB_HIDDEN, base, text)
        pattern = expanded
        if pattern.startswith('/'):
            pattern = re.sub(r'/+', '/', pattern)
        return SelectionRule(RuleKind.WILDCARD, pattern, text)

    if not expanded.startswith('/'):
        raise SelectionError(f"Exclusion path must be absolute: {entry!r}")
    return SelectionRule(RuleKind.EXACT, normalize_path(expanded), text)


class RuleSet:
    """
    Immutable set of classified rules.

    Loaded once at run start and shared by every traversal of the run.
    """

    def __init__(self, rules: Iterable[SelectionRule] = ()):
        rules = tuple(rules)
        self.rules: Tuple[SelectionRule, ...] = rules
        self._pruning = tuple(r for r in rules if r.can_prune)
        self._wildcards = tuple(r for r in rules if r.kind is RuleKind.WILDCARD)

    def __len__(self):
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def prunes(self, path: str) -> bool:
        """True if an exact or hidden-glob rule excludes ``path`` and its subtree."""
        return any(rule.matches(path) for rule in self._pruning)

    def wildcard_excludes(self, path: str) -> bool:
        return any(rule.matches(path) for rule in self._wildcards)

    def excludes(self, path: str) -> bool:
        return self.prunes(path) or self.wildcard_excludes(path)

    def with_rules(self, extra: Iterable[SelectionRule]) -> 'RuleSet':
        return RuleSet(self.rules + tuple(extra))


def load_rules(entries: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> RuleSet:
    """
    Classify every entry into a RuleSet.

    Entries that cannot be classified are logged and skipped.
    """
    rules = []
    for entry in entries:
        try:
            rule = classify_rule(entry, environ)
        except SelectionError as e:
            logger.warning(f"Ignoring exclusion rule: {e}", extra={'category': 'CONFIG'})
            continue
        if rule is not None:
            rules.append(rule)
    return RuleSet(rules)
