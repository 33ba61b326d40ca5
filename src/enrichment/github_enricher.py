"""Incremental enrichment of repositories, contributors, pull requests and commits.

Every GitHub read goes through ``RawStore.fetch`` so repeated requests are
conditional on the stored ETag. No transaction is open while GitHub answers:
an entity's responses are all fetched first, then stored together with the
entity updates in one short transaction. Each entity attempt is counted in its
own committed transaction before any API call, which bounds retries of
permanently failing entities at ``max_enrichment_attempts``.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import assert_never

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import (
    FetchFailed,
    MalformedPayload,
    RateLimitExceeded,
    TransientFetchFailure,
)
from src.core.stage import StageReport, StopCheck, never_stop
from src.db.models.commit import UNKNOWN_FILENAME, Commit
from src.db.models.contributor import Contributor
from src.db.models.merge_request import MergeRequest
from src.db.models.raw import EntityKind
from src.db.models.repository import Repository
from src.enrichment.profile import calculate_impact_score, classify_role, top_languages
from src.extraction.entity_extractor import (
    commit_from_payload,
    commit_raw_key,
    contributor_from_user,
    merge_request_from_payload,
    merge_request_raw_key,
    repository_from_payload,
)
from src.extraction.persistence import EntityPersister
from src.services.github_service import Endpoints, GitHubService
from src.services.raw_store import RawStore

logger = structlog.get_logger()

ENRICHMENT_ORDER = (
    EntityKind.REPOSITORY,
    EntityKind.CONTRIBUTOR,
    EntityKind.MERGE_REQUEST,
    EntityKind.COMMIT,
)

MODELS = {
    EntityKind.REPOSITORY: Repository,
    EntityKind.CONTRIBUTOR: Contributor,
    EntityKind.MERGE_REQUEST: MergeRequest,
    EntityKind.COMMIT: Commit,
}


class EnrichmentOutcome(str, Enum):
    ENRICHED = "enriched"
    NOT_MODIFIED = "not_modified"
    DEFERRED = "deferred"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class EnrichmentResult:
    kind: EntityKind
    entity_id: int
    outcome: EnrichmentOutcome
    error: str | None = None


def pending_conditions(kind: EntityKind, max_attempts: int) -> list:
    """Not yet enriched and still under the attempt ceiling."""
    model = MODELS[kind]
    conditions = [model.is_enriched.is_(False), model.enrichment_attempts < max_attempts]
    match kind:
        case EntityKind.CONTRIBUTOR:
            conditions.append(Contributor.is_placeholder.is_(False))
        case EntityKind.COMMIT:
            # Only the unknown-file row stands for a commit awaiting its file list
            conditions.append(Commit.filename == UNKNOWN_FILENAME)
        case EntityKind.REPOSITORY | EntityKind.MERGE_REQUEST:
            pass
        case _:
            assert_never(kind)
    return conditions


async def count_pending_enrichment(db: AsyncSession, max_attempts: int) -> int:
    total = 0
    for kind in ENRICHMENT_ORDER:
        model = MODELS[kind]
        result = await db.execute(
            select(func.count(model.id)).where(*pending_conditions(kind, max_attempts))
        )
        total += result.scalar() or 0
    return total


class GitHubEnricher:
    """Enricher that fills entities in from the GitHub REST API."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        github: GitHubService,
        settings: Settings | None = None,
        raw_store: RawStore | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.github = github
        self.settings = settings or default_settings
        self.raw_store = raw_store or RawStore(github)
        self.max_attempts = self.settings.max_enrichment_attempts

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    async def select_candidates(self, db: AsyncSession, kind: EntityKind, limit: int) -> list[int]:
        model = MODELS[kind]
        result = await db.execute(
            select(model.id)
            .where(*pending_conditions(kind, self.max_attempts))
            .order_by(model.enrichment_attempts, model.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Single entity
    # ------------------------------------------------------------------

    async def _begin_attempt(self, kind: EntityKind, entity_id: int, force: bool) -> bool:
        """Count the attempt before any API call. Returns False to skip."""
        model = MODELS[kind]
        async with self.session_maker() as db, db.begin():
            entity = await db.get(model, entity_id)
            if entity is None:
                return False
            if kind == EntityKind.CONTRIBUTOR and entity.is_placeholder:
                return False
            if entity.is_enriched:
                return force
            if entity.enrichment_attempts >= self.max_attempts:
                return False
            entity.enrichment_attempts += 1
        return True

    async def _record_failure(
        self,
        kind: EntityKind,
        entity_id: int,
        error: str,
        refund_attempt: bool = False,
    ) -> None:
        async with self.session_maker() as db, db.begin():
            entity = await db.get(MODELS[kind], entity_id)
            if entity is None:
                return
            if refund_attempt and not entity.is_enriched:
                entity.enrichment_attempts = max(entity.enrichment_attempts - 1, 0)
            entity.last_error = error[:2000]

    async def _mark_enriched(self, db: AsyncSession, kind: EntityKind, entity_id: int) -> None:
        model = MODELS[kind]
        await db.execute(
            update(model).where(model.id == entity_id).values(is_enriched=True, last_error=None)
        )

    async def enrich(self, kind: EntityKind, entity_id: int, force: bool = False) -> EnrichmentResult:
        """Enrich one entity. ``force`` re-checks already enriched entities."""
        if not await self._begin_attempt(kind, entity_id, force):
            return EnrichmentResult(kind, entity_id, EnrichmentOutcome.SKIPPED)

        try:
            async with self.session_maker() as db:
                entity = await db.get(MODELS[kind], entity_id)
            was_enriched = entity.is_enriched
            match kind:
                case EntityKind.REPOSITORY:
                    changed = await self._enrich_repository(entity, was_enriched)
                case EntityKind.CONTRIBUTOR:
                    changed = await self._enrich_contributor(entity, was_enriched)
                case EntityKind.MERGE_REQUEST:
                    changed = await self._enrich_merge_request(entity, was_enriched)
                case EntityKind.COMMIT:
                    changed = await self._enrich_commit(entity, was_enriched)
                case _:
                    assert_never(kind)
        except RateLimitExceeded as exc:
            # Rate limits are not the entity's fault: refund the attempt
            await self._record_failure(kind, entity_id, str(exc), refund_attempt=True)
            logger.warning("Enrichment deferred by rate limit", kind=kind.value, entity_id=entity_id)
            return EnrichmentResult(kind, entity_id, EnrichmentOutcome.DEFERRED, str(exc))
        except (FetchFailed, MalformedPayload, TransientFetchFailure) as exc:
            await self._record_failure(kind, entity_id, str(exc))
            logger.warning(
                "Enrichment failed",
                kind=kind.value,
                entity_id=entity_id,
                error=str(exc),
            )
            return EnrichmentResult(kind, entity_id, EnrichmentOutcome.FAILED, str(exc))

        if not changed:
            return EnrichmentResult(kind, entity_id, EnrichmentOutcome.NOT_MODIFIED)
        return EnrichmentResult(kind, entity_id, EnrichmentOutcome.ENRICHED)

    # ------------------------------------------------------------------
    # Strategies. Each fetches everything first, then writes in one short
    # transaction. Each returns False when nothing changed upstream.
    # ------------------------------------------------------------------

    async def _enrich_repository(self, repository: Repository, was_enriched: bool) -> bool:
        external_id = str(repository.external_id)
        details = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.REPOSITORY,
            external_id,
            Endpoints.repository(repository.full_name),
        )
        if details.not_modified and was_enriched:
            return False
        languages = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.REPOSITORY,
            external_id,
            Endpoints.repository_languages(repository.full_name),
        )

        async with self.session_maker() as db, db.begin():
            for response in (details, languages):
                await self.raw_store.save(db, response, is_processed=True)
            await EntityPersister(db).persist(repository_from_payload(details.payload))

            if isinstance(languages.payload, dict):
                values: dict = {"languages": languages.payload}
                if languages.payload and not details.payload.get("language"):
                    values["primary_language"] = max(languages.payload, key=languages.payload.get)
                await db.execute(update(Repository).where(Repository.id == repository.id).values(**values))
            await self._mark_enriched(db, EntityKind.REPOSITORY, repository.id)
        return True

    async def _enrich_contributor(self, contributor: Contributor, was_enriched: bool) -> bool:
        profile = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.CONTRIBUTOR,
            contributor.external_id,
            Endpoints.user(contributor.external_id),
        )
        if profile.not_modified and was_enriched:
            return False

        draft = contributor_from_user(profile.payload)
        organizations = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.CONTRIBUTOR,
            contributor.external_id,
            Endpoints.user_organizations(draft.username),
        )
        repositories = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.CONTRIBUTOR,
            contributor.external_id,
            Endpoints.user_repositories(draft.username),
        )
        languages = top_languages(repositories.payload or [])

        async with self.session_maker() as db, db.begin():
            for response in (profile, organizations, repositories):
                await self.raw_store.save(db, response, is_processed=True)
            await EntityPersister(db).persist([draft])
            await db.execute(
                update(Contributor)
                .where(Contributor.id == contributor.id)
                .values(
                    organizations=[org.get("login") for org in organizations.payload or [] if isinstance(org, dict)],
                    top_languages=languages,
                    impact_score=calculate_impact_score(profile.payload, contributions=contributor.direct_commits),
                    role_classification=classify_role(languages),
                )
            )
            await self._mark_enriched(db, EntityKind.CONTRIBUTOR, contributor.id)
        return True

    async def _enrich_merge_request(self, merge_request: MergeRequest, was_enriched: bool) -> bool:
        async with self.session_maker() as db:
            full_name = (await db.get(Repository, merge_request.repository_id)).full_name
        number = merge_request.external_id
        raw_key = merge_request_raw_key(full_name, number)

        details = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.MERGE_REQUEST,
            raw_key,
            Endpoints.pull_request(full_name, number),
        )
        if details.not_modified and was_enriched:
            return False

        commits_endpoint = Endpoints.pull_request_commits(full_name, number)
        commits = [
            payload
            for payload in await self.github.list_all(commits_endpoint)
            if isinstance(payload, dict) and payload.get("sha")
        ]
        reviews_endpoint = Endpoints.pull_request_reviews(full_name, number)
        reviews = await self.github.list_all(reviews_endpoint)
        reviewer_drafts = [
            contributor_from_user(review["user"])
            for review in reviews
            if isinstance(review, dict) and isinstance(review.get("user"), dict)
        ]

        async with self.session_maker() as db, db.begin():
            await self.raw_store.save(db, details, is_processed=True)
            persister = EntityPersister(db)
            await persister.persist(merge_request_from_payload(details.payload))

            for payload in commits:
                commit_key = commit_raw_key(full_name, payload["sha"], number)
                await self.raw_store.append(
                    db, EntityKind.COMMIT, commit_key, commits_endpoint, payload, is_processed=True
                )
                await persister.persist(commit_from_payload(payload, commit_key))

            await self.raw_store.append(
                db, EntityKind.MERGE_REQUEST, raw_key, reviews_endpoint, reviews, is_processed=True
            )
            await persister.persist(reviewer_drafts)

            author_id = (await db.get(MergeRequest, merge_request.id)).author_id
            reviewer_ids: list[int] = []
            for draft in reviewer_drafts:
                reviewer_id = await persister.contributor_id(draft.external_id)
                if reviewer_id is not None and reviewer_id != author_id and reviewer_id not in reviewer_ids:
                    reviewer_ids.append(reviewer_id)

            await db.execute(
                update(MergeRequest)
                .where(MergeRequest.id == merge_request.id)
                .values(review_count=len(reviews), reviewer_ids=reviewer_ids)
            )
            await persister.refresh_aggregates(
                {(reviewer_id, merge_request.repository_id) for reviewer_id in reviewer_ids}
            )
            await self._mark_enriched(db, EntityKind.MERGE_REQUEST, merge_request.id)
        return True

    async def _enrich_commit(self, commit: Commit, was_enriched: bool) -> bool:
        async with self.session_maker() as db:
            full_name = (await db.get(Repository, commit.repository_id)).full_name
            pull_number = None
            if commit.pull_request_id is not None:
                merge_request = await db.get(MergeRequest, commit.pull_request_id)
                pull_number = merge_request.external_id if merge_request else None

        raw_key = commit_raw_key(full_name, commit.sha, pull_number)
        details = await self.raw_store.fetch(
            self.session_maker,
            EntityKind.COMMIT,
            raw_key,
            Endpoints.commit(full_name, commit.sha),
        )
        if details.not_modified and was_enriched:
            return False

        async with self.session_maker() as db, db.begin():
            await self.raw_store.save(db, details, is_processed=True)
            # File rows replace the unknown-file row being enriched here
            await EntityPersister(db).persist(commit_from_payload(details.payload, raw_key))
            await self._mark_enriched(db, EntityKind.COMMIT, commit.id)
        return True

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    async def run(self, should_stop: StopCheck = never_stop) -> StageReport:
        """Enrich pending entities of every kind, dependencies first."""
        report = StageReport()
        rate_limited = asyncio.Event()
        semaphore = asyncio.Semaphore(self.settings.enrichment_concurrency)

        async def enrich_one(kind: EntityKind, entity_id: int) -> EnrichmentResult | None:
            async with semaphore:
                if rate_limited.is_set():
                    return None
                if await should_stop():
                    report.stopped = True
                    return None
                result = await self.enrich(kind, entity_id)
                if result.outcome == EnrichmentOutcome.DEFERRED:
                    rate_limited.set()
                return result

        for kind in ENRICHMENT_ORDER:
            if rate_limited.is_set() or report.stopped:
                break

            async with self.session_maker() as db:
                candidates = await self.select_candidates(db, kind, self.settings.enrichment_batch_size)
            if not candidates:
                continue

            logger.info("Enriching entities", kind=kind.value, candidates=len(candidates))
            results = await asyncio.gather(*(enrich_one(kind, entity_id) for entity_id in candidates))

            for result in results:
                if result is None:
                    continue
                match result.outcome:
                    case EnrichmentOutcome.ENRICHED | EnrichmentOutcome.NOT_MODIFIED:
                        report.items_processed += 1
                    case EnrichmentOutcome.FAILED:
                        report.add_error(f"{kind.value} {result.entity_id}: {result.error}")
                    case EnrichmentOutcome.DEFERRED:
                        report.deferred += 1
                    case EnrichmentOutcome.SKIPPED:
                        pass

        if rate_limited.is_set():
            logger.warning("Enrichment stopped early by rate limit", deferred=report.deferred)

        logger.info(
            "Enrichment finished",
            enriched=report.items_processed,
            failed=len(report.errors),
            deferred=report.deferred,
            stopped=report.stopped,
        )
        return report
