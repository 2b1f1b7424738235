"""Canonical webhook event types.

Provider payloads (Bitbucket, GitHub) are normalised into these shapes by
``diffwarden.core.payloads`` so that the dispatcher never branches on the
raw payload layout.  All downstream processing works on ``ReviewTarget``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    PR_CREATED = "pr_created"
    PR_UPDATED = "pr_updated"
    PUSH = "push"
    OTHER = "other"


class TargetKind(enum.Enum):
    COMMIT = "commit"
    PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class RepositoryRef:
    """Repository identity as seen by the source-control host."""

    provider: str            # "bitbucket" | "github"
    namespace: str           # Bitbucket workspace slug / GitHub owner
    name: str                # Repository slug — the policy lookup key
    installation_id: int | None = None  # GitHub App installation

    @property
    def full_name(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class CommitRef:
    hash: str
    message: str
    author: str


@dataclass(frozen=True)
class PullRequestRef:
    id: int
    title: str
    description: str
    author: str
    source_hash: str = ""


@dataclass(frozen=True)
class ReviewTarget:
    """A commit or pull request to be reviewed."""

    repository: RepositoryRef
    kind: TargetKind
    identifier: str          # commit hash or PR id
    title: str               # commit message or PR title
    author: str
    description: str = ""
    revision: str = ""       # PR source commit hash, if known

    @classmethod
    def from_commit(cls, repository: RepositoryRef, commit: CommitRef) -> ReviewTarget:
        return cls(
            repository=repository,
            kind=TargetKind.COMMIT,
            identifier=commit.hash,
            title=commit.message,
            author=commit.author,
        )

    @classmethod
    def from_pull_request(cls, repository: RepositoryRef, pr: PullRequestRef) -> ReviewTarget:
        return cls(
            repository=repository,
            kind=TargetKind.PULL_REQUEST,
            identifier=str(pr.id),
            title=pr.title,
            author=pr.author,
            description=pr.description,
            revision=pr.source_hash,
        )

    @property
    def short_id(self) -> str:
        if self.kind is TargetKind.COMMIT:
            return self.identifier[:7]
        return f"PR #{self.identifier}"

    @property
    def dedup_key(self) -> str:
        """Second component of the dedup cache key (the first is the repository)."""
        if self.kind is TargetKind.COMMIT:
            return self.identifier
        if self.revision:
            return f"pr:{self.identifier}@{self.revision}"
        return f"pr:{self.identifier}"


# =============================================================================
#  Push change sum type
# =============================================================================


@dataclass(frozen=True)
class SingleTarget:
    """A push change pointing at one head commit (``change.new.target``)."""

    commit: CommitRef


@dataclass(frozen=True)
class CommitList:
    """A push change carrying a list of commits (``change.commits``)."""

    commits: tuple[CommitRef, ...]


@dataclass(frozen=True)
class Unrecognized:
    """A push change whose shape is not understood."""

    raw: Any


PushChange = SingleTarget | CommitList | Unrecognized


def flatten_push_changes(changes: list[PushChange]) -> list[CommitRef]:
    """Flatten push changes into commits, preserving payload order."""
    commits: list[CommitRef] = []
    for change in changes:
        match change:
            case SingleTarget(commit=commit):
                commits.append(commit)
            case CommitList(commits=listed):
                commits.extend(listed)
            case Unrecognized():
                continue
    return commits


# =============================================================================
#  Delivery
# =============================================================================


@dataclass
class WebhookDelivery:
    """One inbound HTTP delivery, normalised.  Never persisted."""

    provider: str
    event_type: EventType
    raw_event: str                      # header value, e.g. "repo:push"
    delivery_id: str | None
    repository: RepositoryRef | None
    payload: dict[str, Any] = field(default_factory=dict)
    pull_request: PullRequestRef | None = None
    push_changes: list[PushChange] = field(default_factory=list)

    @property
    def commits(self) -> list[CommitRef]:
        return flatten_push_changes(self.push_changes)
