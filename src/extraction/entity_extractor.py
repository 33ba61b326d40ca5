"""Turn raw GitHub payloads into entity drafts.

Extraction is pure: it reads one ``RawRecord`` and returns drafts that refer
to each other by external id. ``EntityPersister`` resolves those references
and writes the rows.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, assert_never

from src.core.exceptions import MalformedPayload
from src.db.models.commit import UNKNOWN_FILENAME, FileStatus
from src.db.models.contributor import PLACEHOLDER_PREFIX
from src.db.models.merge_request import MergeRequestState
from src.db.models.raw import EntityKind, RawRecord

# "owner/repo@sha" or "owner/repo#<pull number>@sha"
COMMIT_KEY = re.compile(r"^(?P<repo>[^/#@\s]+/[^#@\s]+?)(?:#(?P<number>\d+))?@(?P<sha>[0-9a-fA-F]{7,40})$")

FILE_STATUSES = {
    "added": FileStatus.ADDED,
    "copied": FileStatus.ADDED,
    "modified": FileStatus.MODIFIED,
    "changed": FileStatus.MODIFIED,
    "unchanged": FileStatus.MODIFIED,
    "removed": FileStatus.DELETED,
    "deleted": FileStatus.DELETED,
    "renamed": FileStatus.RENAMED,
}


@dataclass(frozen=True)
class RepositoryDraft:
    external_id: int
    full_name: str
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    owner_external_id: str | None = None
    # Nested copies (e.g. a pull request's base repo) only ensure the row exists
    is_stub: bool = False


@dataclass(frozen=True)
class ContributorDraft:
    external_id: str
    username: str | None
    is_bot: bool = False
    is_placeholder: bool = False
    fields: dict[str, Any] = field(default_factory=dict)
    # Author key of a placeholder this account should absorb
    reconcile_key: str | None = None


@dataclass(frozen=True)
class MergeRequestDraft:
    repository_external_id: int
    number: int
    title: str
    state: str
    updated_at: datetime | None
    author_external_id: str | None = None
    merged_by_external_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommitDraft:
    repository_full_name: str
    sha: str
    filename: str = UNKNOWN_FILENAME
    contributor_external_id: str | None = None
    pull_request_number: int | None = None
    files_known: bool = False
    fields: dict[str, Any] = field(default_factory=dict)


ExtractedEntity = RepositoryDraft | ContributorDraft | MergeRequestDraft | CommitDraft


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"Invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_bot_account(user: dict) -> bool:
    login = (user.get("login") or "").lower()
    return user.get("type") == "Bot" or login.endswith("[bot]")


def author_key(name: str | None, email: str | None) -> str | None:
    """Normalized identity of a commit author with no linked account."""
    key = (email or name or "").strip().lower()
    return key or None


def commit_raw_key(full_name: str, sha: str, pull_number: int | None = None) -> str:
    if pull_number is None:
        return f"{full_name}@{sha}"
    return f"{full_name}#{pull_number}@{sha}"


def merge_request_raw_key(full_name: str, number: int) -> str:
    return f"{full_name}#{number}"


def _require(payload: Any, *keys: str) -> None:
    if not isinstance(payload, dict):
        raise MalformedPayload(f"Expected an object payload, got {type(payload).__name__}")
    missing = [key for key in keys if payload.get(key) in (None, "")]
    if missing:
        raise MalformedPayload(f"Payload is missing {', '.join(missing)}")


def _present(payload: dict, mapping: dict[str, str]) -> dict[str, Any]:
    """Copy only the keys the payload actually carries."""
    return {column: payload[key] for column, key in mapping.items() if key in payload}


def contributor_from_user(user: dict) -> ContributorDraft:
    _require(user, "id", "login")
    fields = _present(
        user,
        {
            "name": "name",
            "avatar": "avatar_url",
            "bio": "bio",
            "company": "company",
            "location": "location",
            "blog": "blog",
            "twitter_username": "twitter_username",
            "followers": "followers",
            "repositories": "public_repos",
        },
    )
    return ContributorDraft(
        external_id=str(user["id"]),
        username=user["login"],
        is_bot=is_bot_account(user),
        fields=fields,
    )


def repository_from_payload(payload: dict, is_stub: bool = False) -> list[ExtractedEntity]:
    _require(payload, "id", "full_name", "name")
    entities: list[ExtractedEntity] = []
    owner_external_id = None
    owner = payload.get("owner")
    if isinstance(owner, dict) and owner.get("id") is not None and owner.get("login"):
        owner_draft = contributor_from_user(owner)
        owner_external_id = owner_draft.external_id
        entities.append(owner_draft)

    license_info = payload.get("license") or {}
    fields = _present(
        payload,
        {
            "description": "description",
            "url": "html_url",
            "stars": "stargazers_count",
            "forks": "forks_count",
            "watchers": "subscribers_count",
            "open_issues": "open_issues_count",
            "size_kb": "size",
            "primary_language": "language",
            "default_branch": "default_branch",
            "is_fork": "fork",
            "is_archived": "archived",
        },
    )
    if license_info:
        fields["license"] = license_info.get("spdx_id") or license_info.get("name")
    for column, key in (("repo_created_at", "created_at"), ("pushed_at", "pushed_at")):
        if key in payload:
            fields[column] = parse_datetime(payload[key])

    entities.insert(
        0,
        RepositoryDraft(
            external_id=int(payload["id"]),
            full_name=payload["full_name"],
            name=payload["name"],
            fields=fields,
            owner_external_id=owner_external_id,
            is_stub=is_stub,
        ),
    )
    return entities


def merge_request_from_payload(payload: dict) -> list[ExtractedEntity]:
    _require(payload, "number", "state", "base")
    base_repo = (payload.get("base") or {}).get("repo")
    if not isinstance(base_repo, dict):
        raise MalformedPayload("Pull request payload has no base repository")

    entities: list[ExtractedEntity] = repository_from_payload(base_repo, is_stub=True)

    author_external_id = None
    if isinstance(payload.get("user"), dict):
        author = contributor_from_user(payload["user"])
        author_external_id = author.external_id
        entities.append(author)

    merged_by_external_id = None
    if isinstance(payload.get("merged_by"), dict):
        merged_by = contributor_from_user(payload["merged_by"])
        merged_by_external_id = merged_by.external_id
        entities.append(merged_by)

    merged_at = parse_datetime(payload.get("merged_at"))
    if merged_at is not None:
        state = MergeRequestState.MERGED.value
    elif payload["state"] == "closed":
        state = MergeRequestState.CLOSED.value
    else:
        state = MergeRequestState.OPEN.value

    fields = _present(
        payload,
        {
            "description": "body",
            "is_draft": "draft",
            "commits_count": "commits",
            "additions": "additions",
            "deletions": "deletions",
            "changed_files": "changed_files",
        },
    )
    fields.update(
        created_at=parse_datetime(payload.get("created_at")),
        closed_at=parse_datetime(payload.get("closed_at")),
        merged_at=merged_at,
        source_branch=(payload.get("head") or {}).get("ref"),
        target_branch=(payload.get("base") or {}).get("ref"),
    )
    if "labels" in payload:
        fields["labels"] = [label.get("name") for label in payload["labels"] or [] if isinstance(label, dict)]
    if "comments" in payload or "review_comments" in payload:
        fields["comment_count"] = (payload.get("comments") or 0) + (payload.get("review_comments") or 0)

    updated_at = parse_datetime(payload.get("updated_at"))
    fields["updated_at"] = updated_at
    entities.append(
        MergeRequestDraft(
            repository_external_id=int(base_repo["id"]),
            number=int(payload["number"]),
            title=payload.get("title") or "",
            state=state,
            updated_at=updated_at,
            author_external_id=author_external_id,
            merged_by_external_id=merged_by_external_id,
            fields=fields,
        )
    )
    return entities


def commit_from_payload(payload: dict, external_id: str) -> list[ExtractedEntity]:
    _require(payload, "sha")
    match = COMMIT_KEY.match(external_id)
    if match is None:
        raise MalformedPayload(f"Commit record key {external_id!r} does not name a repository")
    full_name = match["repo"]
    pull_number = int(match["number"]) if match["number"] else None

    details = payload.get("commit") or {}
    git_author = details.get("author") or {}
    author_name = git_author.get("name")
    key = author_key(author_name, git_author.get("email"))

    entities: list[ExtractedEntity] = []
    contributor_external_id = None
    account = payload.get("author")
    if isinstance(account, dict) and account.get("id") is not None and account.get("login"):
        contributor = contributor_from_user(account)
        contributor = ContributorDraft(
            external_id=contributor.external_id,
            username=contributor.username,
            is_bot=contributor.is_bot,
            fields=contributor.fields,
            reconcile_key=key,
        )
        contributor_external_id = contributor.external_id
        entities.append(contributor)
    elif key is not None:
        contributor_external_id = f"{PLACEHOLDER_PREFIX}{key}"
        entities.append(
            ContributorDraft(
                external_id=contributor_external_id,
                username=None,
                is_placeholder=True,
                is_bot=key.endswith("[bot]") or "[bot]@" in key,
                fields={"name": author_name},
            )
        )

    common = {
        "message": details.get("message"),
        "committed_at": parse_datetime(git_author.get("date") or (details.get("committer") or {}).get("date")),
        "author_name": author_name,
        "is_merge_commit": len(payload.get("parents") or []) > 1,
    }

    files = payload.get("files")
    if files is None:
        entities.append(
            CommitDraft(
                repository_full_name=full_name,
                sha=payload["sha"],
                contributor_external_id=contributor_external_id,
                pull_request_number=pull_number,
                fields=common,
            )
        )
        return entities

    if not files:
        entities.append(
            CommitDraft(
                repository_full_name=full_name,
                sha=payload["sha"],
                contributor_external_id=contributor_external_id,
                pull_request_number=pull_number,
                files_known=True,
                fields=common,
            )
        )
        return entities

    for changed in files:
        _require(changed, "filename")
        status = FILE_STATUSES.get(changed.get("status", "modified"), FileStatus.MODIFIED)
        entities.append(
            CommitDraft(
                repository_full_name=full_name,
                sha=payload["sha"],
                filename=changed["filename"],
                contributor_external_id=contributor_external_id,
                pull_request_number=pull_number,
                files_known=True,
                fields={
                    **common,
                    "status": status.value,
                    "additions": changed.get("additions") or 0,
                    "deletions": changed.get("deletions") or 0,
                    "patch": changed.get("patch"),
                },
            )
        )
    return entities


def extract(record: RawRecord) -> list[ExtractedEntity]:
    """Extract entity drafts from one raw record, dependencies first."""
    try:
        kind = EntityKind(record.entity_type)
    except ValueError as exc:
        raise MalformedPayload(f"Unknown entity type {record.entity_type!r}") from exc

    match kind:
        case EntityKind.REPOSITORY:
            return repository_from_payload(record.payload)
        case EntityKind.CONTRIBUTOR:
            return [contributor_from_user(record.payload)]
        case EntityKind.MERGE_REQUEST:
            return merge_request_from_payload(record.payload)
        case EntityKind.COMMIT:
            return commit_from_payload(record.payload, record.external_id)
        case _:
            assert_never(kind)


def entity_key(entity: ExtractedEntity) -> tuple:
    match entity:
        case RepositoryDraft():
            return ("repository", entity.external_id)
        case ContributorDraft():
            return ("contributor", entity.external_id)
        case MergeRequestDraft():
            return ("merge_request", entity.repository_external_id, entity.number)
        case CommitDraft():
            return ("commit", entity.repository_full_name, entity.sha, entity.filename)
        case _:
            assert_never(entity)


def _newer(candidate: datetime | None, current: datetime | None) -> bool:
    if candidate is None:
        return current is None
    return current is None or candidate >= current


def deduplicate(entities: list[ExtractedEntity]) -> list[ExtractedEntity]:
    """Collapse drafts sharing a key, keeping the most complete or newest one.

    Merge requests keep the draft with the latest ``updated_at``. A full
    repository draft always beats a stub, and for everything else the later
    draft wins.
    """
    kept: dict[tuple, ExtractedEntity] = {}
    for entity in entities:
        key = entity_key(entity)
        current = kept.get(key)
        if current is None:
            kept[key] = entity
            continue
        match entity:
            case MergeRequestDraft():
                if _newer(entity.updated_at, current.updated_at):
                    kept[key] = entity
            case RepositoryDraft():
                if not entity.is_stub or current.is_stub:
                    kept[key] = entity
            case ContributorDraft():
                kept[key] = ContributorDraft(
                    external_id=entity.external_id,
                    username=entity.username or current.username,
                    is_bot=entity.is_bot or current.is_bot,
                    is_placeholder=entity.is_placeholder and current.is_placeholder,
                    fields={**current.fields, **entity.fields},
                    reconcile_key=entity.reconcile_key or current.reconcile_key,
                )
            case _:
                kept[key] = entity
    return list(kept.values())
