"""Skip rules — decide which changed files never reach the LLM.

A cheap, deterministic, rule-based filter applied between diff parsing and
the review runner.  Rules are checked in order and the first match wins:

1. Configured extension suffix
2. Configured path substring (global + per-repository)
3. Built-in translation / locale / resource-string patterns
4. Built-in lockfile / generated / minified / sourcemap patterns
5. Configured glob pattern (``*`` any run, ``?`` one char, case-insensitive)

Skipping is monotonic: the result depends only on the path and the rules.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from functools import cached_property

from diffwarden.core.diff_parser import FileChange

logger = logging.getLogger(__name__)


# =============================================================================
#  Constants
# =============================================================================

TRANSLATION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # Android resources
        r"strings.*\.xml$",
        r"colors\.xml$",
        r"dimens\.xml$",
        r"styles\.xml$",
        r"attrs\.xml$",
        r"themes\.xml$",
        r"arrays\.xml$",
        r"plurals\.xml$",
        r"integers\.xml$",
        r"bools\.xml$",
        r"config\.xml$",
        # Java resource bundles
        r"\.properties$",
        r"messages.*\.properties$",
        # Locale directories
        r"i18n/.*\.json$",
        r"locale/.*\.json$",
        r"lang/.*\.json$",
        r"translation/.*\.json$",
        r"locales/.*\.(json|yml|yaml)$",
        # gettext
        r"\.po$",
        r"\.pot$",
        r"\.mo$",
    )
)

GENERATED_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # Lockfiles (generated, never hand-written)
        r"package-lock\.json$",
        r"yarn\.lock$",
        r"composer\.lock$",
        r"Gemfile\.lock$",
        r"Podfile\.lock$",
        r"cargo\.lock$",
        # Build artifacts
        r"\.generated\.",
        r"\.min\.",
        r"\.bundle\.",
        r"\.map$",
        r"\.sum$",
        r"\.cache$",
    )
)


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*``/``?`` glob into an unanchored, case-insensitive regex."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(escaped, re.IGNORECASE)


# =============================================================================
#  Rules
# =============================================================================


@dataclass(frozen=True)
class SkipRules:
    """Configured skip lists.  The built-in pattern lists always apply."""

    extensions: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()

    def with_paths(self, extra_paths: Iterable[str]) -> SkipRules:
        """Return a copy with additional path substrings (e.g. per repository)."""
        return SkipRules(
            extensions=self.extensions,
            paths=self.paths + tuple(extra_paths),
            patterns=self.patterns,
        )

    @cached_property
    def compiled_patterns(self) -> tuple[re.Pattern[str], ...]:
        return tuple(glob_to_regex(p) for p in self.patterns)


def skip_reason(path: str, rules: SkipRules) -> str | None:
    """Return why ``path`` is skipped, or ``None`` if it should be reviewed."""
    for ext in rules.extensions:
        if path.endswith(ext):
            return f"extension {ext}"

    for fragment in rules.paths:
        if fragment in path:
            return f"path {fragment}"

    for pattern in TRANSLATION_PATTERNS:
        if pattern.search(path):
            return "translation"

    for pattern in GENERATED_PATTERNS:
        if pattern.search(path):
            return "config/generated"

    for raw, regex in zip(rules.patterns, rules.compiled_patterns):
        if regex.search(path):
            return f"custom pattern {raw}"

    return None


def should_skip(path: str, rules: SkipRules) -> bool:
    return skip_reason(path, rules) is not None


@dataclass
class FilterOutcome:
    reviewable: list[FileChange] = field(default_factory=list)
    skipped: list[FileChange] = field(default_factory=list)


def filter_files(files: Sequence[FileChange], rules: SkipRules) -> FilterOutcome:
    """Partition parsed files into reviewable and skipped, preserving order."""
    outcome = FilterOutcome()
    for change in files:
        reason = skip_reason(change.path, rules)
        if reason is None:
            outcome.reviewable.append(change)
        else:
            logger.debug("Skipping file (%s): %s", reason, change.path)
            outcome.skipped.append(change)

    logger.info(
        "Filtered diff: %d files to review, %d skipped",
        len(outcome.reviewable),
        len(outcome.skipped),
    )
    return outcome
