from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import assert_never

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import MalformedPayload
from src.db.models.commit import UNKNOWN_FILENAME, Commit
from src.db.models.contributor import PLACEHOLDER_PREFIX, Contributor
from src.db.models.link import ContributorRepositoryLink
from src.db.models.merge_request import MergeRequest, MergeRequestState
from src.db.models.repository import Repository
from src.db.upsert import upsert
from src.extraction.entity_extractor import (
    CommitDraft,
    ContributorDraft,
    ExtractedEntity,
    MergeRequestDraft,
    RepositoryDraft,
    deduplicate,
)

logger = structlog.get_logger()

_PERSIST_ORDER = {RepositoryDraft: 0, ContributorDraft: 1, MergeRequestDraft: 2, CommitDraft: 3}


@dataclass
class PersistSummary:
    repositories: int = 0
    contributors: int = 0
    merge_requests: int = 0
    commits: int = 0
    reconciled_placeholders: int = 0
    touched_pairs: set[tuple[int, int]] = field(default_factory=set)


class EntityPersister:
    """Writes extracted drafts with idempotent upserts.

    Runs inside the caller's transaction. Junction rows and contributor totals
    are recomputed from source rows for every pair touched, so replaying the
    same drafts leaves the database unchanged.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._repository_ids: dict[int, int] = {}
        self._repository_ids_by_name: dict[str, int] = {}
        self._contributor_ids: dict[str, int] = {}
        self._merge_request_ids: dict[tuple[int, int], int] = {}
        self._pending_owners: dict[int, str] = {}
        self._cleared_commits: set[tuple[str, int]] = set()

    async def persist(self, entities: Sequence[ExtractedEntity]) -> PersistSummary:
        summary = PersistSummary()
        ordered = sorted(deduplicate(list(entities)), key=lambda e: _PERSIST_ORDER[type(e)])

        for entity in ordered:
            match entity:
                case RepositoryDraft():
                    await self._save_repository(entity)
                    summary.repositories += 1
                case ContributorDraft():
                    if await self._save_contributor(entity, summary):
                        summary.reconciled_placeholders += 1
                    summary.contributors += 1
                case MergeRequestDraft():
                    await self._save_merge_request(entity, summary)
                    summary.merge_requests += 1
                case CommitDraft():
                    await self._save_commit(entity, summary)
                    summary.commits += 1
                case _:
                    assert_never(entity)

            if isinstance(entity, ContributorDraft) and self._pending_owners:
                await self._resolve_owners()

        await self.refresh_aggregates(summary.touched_pairs)
        return summary

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def repository_id(self, external_id: int) -> int | None:
        if external_id not in self._repository_ids:
            result = await self.db.execute(
                select(Repository.id).where(Repository.external_id == external_id)
            )
            row_id = result.scalar_one_or_none()
            if row_id is None:
                return None
            self._repository_ids[external_id] = row_id
        return self._repository_ids[external_id]

    async def repository_id_by_name(self, full_name: str) -> int | None:
        if full_name not in self._repository_ids_by_name:
            result = await self.db.execute(
                select(Repository.id).where(func.lower(Repository.full_name) == full_name.lower())
            )
            row_id = result.scalar_one_or_none()
            if row_id is None:
                return None
            self._repository_ids_by_name[full_name] = row_id
        return self._repository_ids_by_name[full_name]

    async def contributor_id(self, external_id: str | None) -> int | None:
        if external_id is None:
            return None
        if external_id not in self._contributor_ids:
            result = await self.db.execute(
                select(Contributor.id).where(Contributor.external_id == external_id)
            )
            row_id = result.scalar_one_or_none()
            if row_id is None:
                return None
            self._contributor_ids[external_id] = row_id
        return self._contributor_ids[external_id]

    async def merge_request_id(self, repository_id: int, number: int) -> int | None:
        key = (repository_id, number)
        if key not in self._merge_request_ids:
            result = await self.db.execute(
                select(MergeRequest.id).where(
                    MergeRequest.repository_id == repository_id,
                    MergeRequest.external_id == number,
                )
            )
            row_id = result.scalar_one_or_none()
            if row_id is None:
                return None
            self._merge_request_ids[key] = row_id
        return self._merge_request_ids[key]

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    async def _save_repository(self, draft: RepositoryDraft) -> int:
        values = {
            "external_id": draft.external_id,
            "full_name": draft.full_name,
            "name": draft.name,
        }
        if not draft.is_stub:
            values.update(draft.fields)
        update_columns = ["full_name", "name"] if draft.is_stub else None
        row_id = await upsert(
            self.db,
            Repository,
            values,
            conflict_columns=["external_id"],
            update_columns=update_columns,
        )
        self._repository_ids[draft.external_id] = row_id
        self._repository_ids_by_name[draft.full_name] = row_id
        if draft.owner_external_id is not None and not draft.is_stub:
            self._pending_owners[row_id] = draft.owner_external_id
        return row_id

    async def _resolve_owners(self) -> None:
        for repository_id, owner_external_id in list(self._pending_owners.items()):
            owner_id = await self.contributor_id(owner_external_id)
            if owner_id is None:
                continue
            await self.db.execute(
                update(Repository).where(Repository.id == repository_id).values(owner_id=owner_id)
            )
            del self._pending_owners[repository_id]

    async def _save_contributor(self, draft: ContributorDraft, summary: PersistSummary) -> bool:
        values = {
            "external_id": draft.external_id,
            "username": draft.username,
            "is_bot": draft.is_bot,
            "is_placeholder": draft.is_placeholder,
            **draft.fields,
        }
        update_columns = [c for c in values if c != "external_id"]
        if draft.is_placeholder:
            # A placeholder never downgrades bot detection made elsewhere
            update_columns = [c for c in update_columns if c != "is_bot"]
        row_id = await upsert(
            self.db,
            Contributor,
            values,
            conflict_columns=["external_id"],
            update_columns=update_columns,
        )
        self._contributor_ids[draft.external_id] = row_id

        if draft.reconcile_key and not draft.is_placeholder:
            return await self._reconcile_placeholder(draft.reconcile_key, row_id, summary)
        return False

    async def _reconcile_placeholder(
        self,
        key: str,
        contributor_id: int,
        summary: PersistSummary,
    ) -> bool:
        """Move a placeholder's history onto the real account, then drop it."""
        placeholder_external_id = f"{PLACEHOLDER_PREFIX}{key}"
        placeholder_id = await self.contributor_id(placeholder_external_id)
        if placeholder_id is None or placeholder_id == contributor_id:
            return False

        result = await self.db.execute(
            select(Commit.repository_id)
            .where(Commit.contributor_id == placeholder_id)
            .distinct()
        )
        repository_ids = set(result.scalars().all())

        await self.db.execute(
            update(Commit).where(Commit.contributor_id == placeholder_id).values(contributor_id=contributor_id)
        )
        await self.db.execute(
            update(MergeRequest).where(MergeRequest.author_id == placeholder_id).values(author_id=contributor_id)
        )
        await self.db.execute(
            delete(ContributorRepositoryLink).where(ContributorRepositoryLink.contributor_id == placeholder_id)
        )
        await self.db.execute(delete(Contributor).where(Contributor.id == placeholder_id))
        self._contributor_ids.pop(placeholder_external_id, None)

        summary.touched_pairs.update((contributor_id, repository_id) for repository_id in repository_ids)
        logger.info(
            "Reconciled placeholder contributor",
            placeholder=placeholder_external_id,
            contributor_id=contributor_id,
            repositories=len(repository_ids),
        )
        return True

    async def _save_merge_request(self, draft: MergeRequestDraft, summary: PersistSummary) -> int:
        repository_id = await self.repository_id(draft.repository_external_id)
        if repository_id is None:
            raise MalformedPayload(f"Unknown repository {draft.repository_external_id}")

        author_id = await self.contributor_id(draft.author_external_id)
        values = {
            "external_id": draft.number,
            "repository_id": repository_id,
            "title": draft.title,
            "state": draft.state,
            "author_id": author_id,
            "merged_by_id": await self.contributor_id(draft.merged_by_external_id),
            **draft.fields,
        }
        row_id = await upsert(
            self.db,
            MergeRequest,
            values,
            conflict_columns=["repository_id", "external_id"],
            # Out-of-order payloads never overwrite newer data
            where=lambda excluded: or_(
                MergeRequest.updated_at.is_(None),
                MergeRequest.updated_at <= excluded.updated_at,
            ),
        )
        self._merge_request_ids[(repository_id, draft.number)] = row_id
        if author_id is not None:
            summary.touched_pairs.add((author_id, repository_id))
        return row_id

    async def _save_commit(self, draft: CommitDraft, summary: PersistSummary) -> int | None:
        repository_id = await self.repository_id_by_name(draft.repository_full_name)
        if repository_id is None:
            raise MalformedPayload(f"Unknown repository {draft.repository_full_name}")

        contributor_id = await self.contributor_id(draft.contributor_external_id)
        pull_request_id = None
        if draft.pull_request_number is not None:
            pull_request_id = await self.merge_request_id(repository_id, draft.pull_request_number)

        if contributor_id is not None:
            summary.touched_pairs.add((contributor_id, repository_id))

        if draft.files_known and draft.filename != UNKNOWN_FILENAME:
            key = (draft.sha, repository_id)
            if key not in self._cleared_commits:
                # The file list replaces the placeholder row
                await self.db.execute(
                    delete(Commit).where(
                        Commit.sha == draft.sha,
                        Commit.repository_id == repository_id,
                        Commit.filename == UNKNOWN_FILENAME,
                    )
                )
                self._cleared_commits.add(key)
        elif not draft.files_known:
            has_files = await self.db.execute(
                select(Commit.id)
                .where(
                    Commit.sha == draft.sha,
                    Commit.repository_id == repository_id,
                    Commit.filename != UNKNOWN_FILENAME,
                )
                .limit(1)
            )
            if has_files.scalar_one_or_none() is not None:
                # Already enriched; only fill in the pull request link
                if pull_request_id is not None:
                    await self.db.execute(
                        update(Commit)
                        .where(
                            Commit.sha == draft.sha,
                            Commit.repository_id == repository_id,
                            Commit.pull_request_id.is_(None),
                        )
                        .values(pull_request_id=pull_request_id)
                    )
                return None

        values = {
            "sha": draft.sha,
            "repository_id": repository_id,
            "filename": draft.filename,
            "contributor_id": contributor_id,
            "is_enriched": draft.files_known,
            **draft.fields,
        }
        if pull_request_id is not None:
            values["pull_request_id"] = pull_request_id
        conflict_columns = ["sha", "repository_id", "filename"]
        update_columns = [
            c for c in values
            if c not in conflict_columns and (draft.files_known or c != "is_enriched")
        ]
        return await upsert(
            self.db,
            Commit,
            values,
            conflict_columns=conflict_columns,
            update_columns=update_columns,
        )

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def refresh_aggregates(self, pairs: set[tuple[int, int]]) -> None:
        for contributor_id, repository_id in sorted(pairs):
            await self.refresh_link(contributor_id, repository_id)
        for contributor_id in sorted({contributor_id for contributor_id, _ in pairs}):
            await self.refresh_contributor_totals(contributor_id)

    async def refresh_link(self, contributor_id: int, repository_id: int) -> None:
        """Recompute one junction row from commits and merge requests."""
        commit_stats = (
            await self.db.execute(
                select(
                    func.count(func.distinct(Commit.sha)),
                    func.coalesce(func.sum(Commit.additions), 0),
                    func.coalesce(func.sum(Commit.deletions), 0),
                    func.min(Commit.committed_at),
                    func.max(Commit.committed_at),
                ).where(
                    Commit.contributor_id == contributor_id,
                    Commit.repository_id == repository_id,
                )
            )
        ).one()
        commit_count, lines_added, lines_removed, first_commit, last_commit = commit_stats

        pull_requests = (
            await self.db.execute(
                select(func.count(MergeRequest.id)).where(
                    MergeRequest.author_id == contributor_id,
                    MergeRequest.repository_id == repository_id,
                )
            )
        ).scalar() or 0

        reviewer_lists = await self.db.execute(
            select(MergeRequest.reviewer_ids).where(
                MergeRequest.repository_id == repository_id,
                MergeRequest.reviewer_ids.is_not(None),
            )
        )
        reviews = sum(1 for ids in reviewer_lists.scalars().all() if ids and contributor_id in ids)

        if not (commit_count or pull_requests or reviews):
            await self.db.execute(
                delete(ContributorRepositoryLink).where(
                    ContributorRepositoryLink.contributor_id == contributor_id,
                    ContributorRepositoryLink.repository_id == repository_id,
                )
            )
            return

        await upsert(
            self.db,
            ContributorRepositoryLink,
            {
                "contributor_id": contributor_id,
                "repository_id": repository_id,
                "commit_count": commit_count,
                "pull_requests": pull_requests,
                "reviews": reviews,
                "lines_added": lines_added,
                "lines_removed": lines_removed,
                "first_contribution_date": first_commit,
                "last_contribution_date": last_commit,
            },
            conflict_columns=["contributor_id", "repository_id"],
        )

    async def refresh_contributor_totals(self, contributor_id: int) -> None:
        commits, first_commit, last_commit = (
            await self.db.execute(
                select(
                    func.count(func.distinct(Commit.sha)),
                    func.min(Commit.committed_at),
                    func.max(Commit.committed_at),
                ).where(Commit.contributor_id == contributor_id)
            )
        ).one()

        state_counts = await self.db.execute(
            select(MergeRequest.state, func.count(MergeRequest.id))
            .where(MergeRequest.author_id == contributor_id)
            .group_by(MergeRequest.state)
        )
        by_state = dict(state_counts.all())

        reviews = (
            await self.db.execute(
                select(func.coalesce(func.sum(ContributorRepositoryLink.reviews), 0)).where(
                    ContributorRepositoryLink.contributor_id == contributor_id
                )
            )
        ).scalar() or 0

        await self.db.execute(
            update(Contributor)
            .where(Contributor.id == contributor_id)
            .values(
                direct_commits=commits,
                pull_requests_merged=by_state.get(MergeRequestState.MERGED.value, 0),
                pull_requests_rejected=by_state.get(MergeRequestState.CLOSED.value, 0),
                code_reviews=reviews,
                first_contribution=first_commit,
                last_contribution=last_commit,
            )
        )
