"""Per-repository and per-author review policy.

A pure lookup over static tables: no I/O, no state.  Repository entries
override the default policy key by key.  Author preferences are matched
on the exact (trimmed) display name only; anything else gets the default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryPolicy:
    enabled: bool = True
    categories: tuple[str, ...] = ("bug", "security", "performance", "quality")
    focus_areas: tuple[str, ...] = ()
    skip_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuthorPreferences:
    language: str = "en"
    detail_level: str = "normal"
    include_code_examples: bool = True
    focus_areas: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_REPOSITORY_POLICY = RepositoryPolicy()

REPOSITORY_OVERRIDES: dict[str, dict] = {
    "frontend-app": {
        "categories": ("bug", "accessibility", "performance", "quality"),
        "focus_areas": ("React hooks", "TypeScript", "CSS performance"),
        "skip_paths": ("node_modules/", "build/", "dist/"),
    },
    "backend-api": {
        "categories": ("bug", "security", "performance", "database"),
        "focus_areas": ("SQL injection", "Authentication", "API design"),
        "skip_paths": ("tests/", "migrations/"),
    },
    "mobile-app": {
        "categories": ("bug", "performance", "memory", "ui"),
        "focus_areas": ("Memory leaks", "Battery usage", "Network optimization"),
        "skip_paths": ("assets/", "ios/Pods/"),
    },
    "documentation": {
        "enabled": False,
    },
    "config-repo": {
        "categories": ("security", "configuration"),
        "focus_areas": ("Credentials", "Environment variables", "Security settings"),
    },
}

DEFAULT_AUTHOR_PREFERENCES = AuthorPreferences()

_KOREAN_DETAILED = AuthorPreferences(
    language="ko",
    detail_level="high",
    include_code_examples=True,
    focus_areas=("버그", "보안", "성능", "코드 품질"),
)

AUTHOR_PREFERENCES: dict[str, AuthorPreferences] = {
    "Eugene": _KOREAN_DETAILED,
    "fred": _KOREAN_DETAILED,
    "한세희(Trix)": _KOREAN_DETAILED,
}


class PolicyLookup:
    """Resolve review configuration for repositories and authors."""

    def __init__(
        self,
        repositories: dict[str, dict] | None = None,
        authors: dict[str, AuthorPreferences] | None = None,
        default: RepositoryPolicy = DEFAULT_REPOSITORY_POLICY,
    ) -> None:
        self._repositories = REPOSITORY_OVERRIDES if repositories is None else repositories
        self._authors = AUTHOR_PREFERENCES if authors is None else authors
        self._default = default

    def get_config(self, repo_name: str) -> RepositoryPolicy:
        """Return the default policy merged with the repository's overrides."""
        overrides = self._repositories.get(repo_name, {})
        return replace(self._default, **overrides)

    def is_review_enabled(self, repo_name: str) -> bool:
        return self.get_config(repo_name).enabled

    def get_review_prompt(self, repo_name: str) -> str:
        """Render the repository's review guidance for the LLM prompt."""
        config = self.get_config(repo_name)
        prompt = "Please review this code focusing on:\n"
        if config.categories:
            prompt += "- " + "\n- ".join(config.categories) + "\n"
        if config.focus_areas:
            prompt += "\nPay special attention to:\n- " + "\n- ".join(config.focus_areas) + "\n"
        return prompt

    def get_author_preferences(self, author: str | None) -> AuthorPreferences:
        """Exact-match lookup; no fuzzy or case-insensitive matching."""
        if not author:
            return DEFAULT_AUTHOR_PREFERENCES
        preferences = self._authors.get(author.strip())
        if preferences is None:
            return DEFAULT_AUTHOR_PREFERENCES
        logger.debug("Author preferences matched", extra={"author": author.strip()})
        return preferences
