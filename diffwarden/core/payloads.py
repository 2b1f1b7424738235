"""Provider payload normalisation.

Turns raw Bitbucket Cloud and GitHub webhook JSON into a ``WebhookDelivery``.
Missing or mistyped fields never raise out of these functions: an unusable
payload becomes an ``EventType.OTHER`` delivery or an ``Unrecognized`` push
change, and the dispatcher skips it with a warning.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from diffwarden.core.events import (
    CommitList,
    CommitRef,
    EventType,
    PullRequestRef,
    PushChange,
    RepositoryRef,
    SingleTarget,
    Unrecognized,
    WebhookDelivery,
)
from diffwarden.core.exceptions import MalformedPayloadError

logger = logging.getLogger(__name__)

UNKNOWN_AUTHOR = "unknown"

# "Jane Doe <jane@example.com>" -> "Jane Doe"
_RAW_AUTHOR_RE = re.compile(r"^(.*?)\s*<")


def _obj(value: Any) -> dict[str, Any]:
    """``value`` if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# =============================================================================
#  Bitbucket Cloud
# =============================================================================

BITBUCKET_EVENTS: dict[str, EventType] = {
    "pullrequest:created": EventType.PR_CREATED,
    "pullrequest:updated": EventType.PR_UPDATED,
    "repo:push": EventType.PUSH,
}


def bitbucket_author_name(author: Any) -> str:
    """Resolve a commit author: display name, then nickname, then the raw name."""
    author = _obj(author)
    user = _obj(author.get("user"))
    if _text(user.get("display_name")):
        return user["display_name"]
    if _text(user.get("nickname")):
        return user["nickname"]
    match = _RAW_AUTHOR_RE.match(_text(author.get("raw")))
    if match and match.group(1):
        return match.group(1)
    return UNKNOWN_AUTHOR


def _bitbucket_commit(raw: Any) -> CommitRef:
    raw = _obj(raw)
    commit_hash = _text(raw.get("hash"))
    if not commit_hash:
        raise MalformedPayloadError("Commit without hash")
    return CommitRef(
        hash=commit_hash,
        message=_text(raw.get("message")),
        author=bitbucket_author_name(raw.get("author")),
    )


def _bitbucket_push_change(change: Any) -> PushChange:
    if not isinstance(change, dict):
        logger.warning("Push change is not an object", extra={"change_type": type(change).__name__})
        return Unrecognized(change)
    new = _obj(change.get("new"))
    try:
        if new.get("type") in ("commit", "branch") and new.get("target"):
            return SingleTarget(_bitbucket_commit(new["target"]))
        if isinstance(change.get("commits"), list):
            return CommitList(tuple(_bitbucket_commit(c) for c in change["commits"]))
    except MalformedPayloadError:
        logger.warning("Push change carries a commit without hash", extra={"keys": list(change)})
    return Unrecognized(change)


def _bitbucket_repository(payload: dict, workspace: str | None) -> RepositoryRef | None:
    repo = _obj(payload.get("repository"))
    name = _text(repo.get("name"))
    if not name:
        return None
    namespace = workspace or _text(_obj(repo.get("workspace")).get("slug"))
    full_name = _text(repo.get("full_name"))
    if not namespace and "/" in full_name:
        namespace = full_name.split("/", 1)[0]
    return RepositoryRef(provider="bitbucket", namespace=namespace or "", name=name)


def parse_bitbucket_delivery(
    payload: dict[str, Any],
    event_key: str | None,
    delivery_id: str | None,
    workspace: str | None = None,
) -> WebhookDelivery:
    """Normalise a Bitbucket Cloud webhook delivery.

    Args:
        payload: Parsed JSON body.
        event_key: ``X-Event-Key`` header value.
        delivery_id: ``X-Request-UUID`` (or ``X-Hook-UUID``) header value.
        workspace: Workspace taken from the URL, overriding the payload's.
    """
    event_type = BITBUCKET_EVENTS.get(event_key or "", EventType.OTHER)
    delivery = WebhookDelivery(
        provider="bitbucket",
        event_type=event_type,
        raw_event=event_key or "",
        delivery_id=delivery_id or None,
        repository=_bitbucket_repository(payload, workspace),
        payload=payload,
    )

    if event_type in (EventType.PR_CREATED, EventType.PR_UPDATED):
        pr = _obj(payload.get("pullrequest"))
        pr_id = _int(pr.get("id"))
        if pr_id is None:
            logger.warning(
                "Pull request event without a numeric pullrequest.id",
                extra={"event": event_key, "id": repr(pr.get("id"))},
            )
            delivery.event_type = EventType.OTHER
            return delivery
        author = _obj(pr.get("author"))
        delivery.pull_request = PullRequestRef(
            id=pr_id,
            title=_text(pr.get("title")),
            description=_text(pr.get("description")),
            author=_text(author.get("display_name")) or _text(author.get("nickname")) or UNKNOWN_AUTHOR,
            source_hash=_text(_obj(_obj(pr.get("source")).get("commit")).get("hash")),
        )

    elif event_type is EventType.PUSH:
        changes = _obj(payload.get("push")).get("changes")
        if not isinstance(changes, list):
            changes = []
        delivery.push_changes = [_bitbucket_push_change(change) for change in changes]

    return delivery


# =============================================================================
#  GitHub
# =============================================================================

GITHUB_PR_ACTIONS: dict[str, EventType] = {
    "opened": EventType.PR_CREATED,
    "reopened": EventType.PR_CREATED,
    "synchronize": EventType.PR_UPDATED,
    "edited": EventType.PR_UPDATED,
}


def _github_commit(raw: Any) -> CommitRef:
    raw = _obj(raw)
    commit_hash = _text(raw.get("id")) or _text(raw.get("sha"))
    if not commit_hash:
        raise MalformedPayloadError("Commit without id")
    author = _obj(raw.get("author"))
    return CommitRef(
        hash=commit_hash,
        message=_text(raw.get("message")),
        author=_text(author.get("name")) or _text(author.get("username")) or UNKNOWN_AUTHOR,
    )


def _github_repository(payload: dict) -> RepositoryRef | None:
    repo = _obj(payload.get("repository"))
    name = _text(repo.get("name"))
    if not name:
        return None
    owner_obj = _obj(repo.get("owner"))
    owner = _text(owner_obj.get("login")) or _text(owner_obj.get("name"))
    full_name = _text(repo.get("full_name"))
    if not owner and "/" in full_name:
        owner = full_name.split("/", 1)[0]
    return RepositoryRef(
        provider="github",
        namespace=owner,
        name=name,
        installation_id=_int(_obj(payload.get("installation")).get("id")),
    )


def parse_github_delivery(
    payload: dict[str, Any],
    event_name: str | None,
    delivery_id: str | None,
) -> WebhookDelivery:
    """Normalise a GitHub webhook delivery (``X-GitHub-Event`` / ``X-GitHub-Delivery``)."""
    action = _text(payload.get("action"))
    if event_name == "pull_request":
        event_type = GITHUB_PR_ACTIONS.get(action, EventType.OTHER)
    elif event_name == "push":
        event_type = EventType.PUSH
    else:
        event_type = EventType.OTHER

    delivery = WebhookDelivery(
        provider="github",
        event_type=event_type,
        raw_event=f"{event_name}.{action}" if action else (event_name or ""),
        delivery_id=delivery_id or None,
        repository=_github_repository(payload),
        payload=payload,
    )

    if event_type in (EventType.PR_CREATED, EventType.PR_UPDATED):
        pr = _obj(payload.get("pull_request"))
        number = _int(pr.get("number"))
        if number is None:
            logger.warning("pull_request event without a numeric number", extra={"action": action})
            delivery.event_type = EventType.OTHER
            return delivery
        delivery.pull_request = PullRequestRef(
            id=number,
            title=_text(pr.get("title")),
            description=_text(pr.get("body")),
            author=_text(_obj(pr.get("user")).get("login")) or UNKNOWN_AUTHOR,
            source_hash=_text(_obj(pr.get("head")).get("sha")),
        )

    elif event_type is EventType.PUSH:
        if payload.get("deleted"):
            return delivery
        commits = payload.get("commits")
        head_commit = payload.get("head_commit")
        try:
            if isinstance(commits, list) and commits:
                delivery.push_changes = [CommitList(tuple(_github_commit(c) for c in commits))]
            elif head_commit:
                delivery.push_changes = [SingleTarget(_github_commit(head_commit))]
        except MalformedPayloadError:
            logger.warning("Push payload carries a commit without id")
            delivery.push_changes = [Unrecognized(commits if commits else head_commit)]

    return delivery
