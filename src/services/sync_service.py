"""Polls tracked repositories and their closed pull requests into raw records.

Nothing is interpreted here: the data_processing stage extracts entities from
what this stage stores.
"""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import FetchFailed, MalformedPayload, RateLimitExceeded, TransientFetchFailure
from src.core.stage import StageReport, StopCheck, never_stop
from src.db.models.base import ensure_utc
from src.db.models.merge_request import MergeRequest
from src.db.models.raw import EntityKind
from src.db.models.repository import Repository
from src.db.upsert import upsert
from src.extraction.entity_extractor import merge_request_raw_key, parse_datetime
from src.services.github_service import Endpoints, GitHubService
from src.services.raw_store import RawStore

logger = structlog.get_logger()


async def tracked_repositories(db: AsyncSession, configured: list[str]) -> list[str]:
    """Configured repositories plus those flagged as tracked, case-insensitively unique."""
    result = await db.execute(select(Repository.full_name).where(Repository.is_tracked.is_(True)))
    seen: dict[str, str] = {}
    for full_name in [*configured, *result.scalars().all()]:
        seen.setdefault(full_name.lower(), full_name)
    return list(seen.values())


async def count_tracked_repositories(db: AsyncSession, configured: list[str]) -> int:
    return len(await tracked_repositories(db, configured))


class SyncService:
    """Fetches tracked repositories and their recently updated pull requests."""

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

    async def run(self, should_stop: StopCheck = never_stop) -> StageReport:
        report = StageReport()
        async with self.session_maker() as db:
            repositories = await tracked_repositories(db, self.settings.tracked_repositories)

        logger.info("Starting GitHub sync", repositories=len(repositories))
        for full_name in repositories:
            if await should_stop():
                report.stopped = True
                break
            try:
                report.items_processed += await self.sync_repository(full_name)
            except RateLimitExceeded as exc:
                report.deferred += 1
                report.add_error(f"{full_name}: {exc}")
                logger.warning("Rate limited, ending sync early", repository=full_name)
                break
            except (FetchFailed, MalformedPayload, TransientFetchFailure) as exc:
                report.add_error(f"{full_name}: {exc}")
                logger.warning("Repository sync failed", repository=full_name, error=str(exc))

        logger.info(
            "GitHub sync finished",
            items=report.items_processed,
            errors=len(report.errors),
        )
        return report

    async def sync_repository(self, full_name: str) -> int:
        """Store the repository and its changed closed pull requests. Returns records written."""
        stored_count = 0
        fetched = await self.raw_store.fetch(
            self.session_maker, EntityKind.REPOSITORY, None, Endpoints.repository(full_name)
        )
        payload = fetched.payload
        if not isinstance(payload, dict) or not {"id", "full_name", "name"} <= payload.keys():
            raise MalformedPayload(f"Repository payload for {full_name} is incomplete")

        async with self.session_maker() as db, db.begin():
            if await self.raw_store.save(db, fetched) is not None:
                stored_count += 1
            repository_id = await upsert(
                db,
                Repository,
                {
                    "external_id": payload["id"],
                    "full_name": payload["full_name"],
                    "name": payload["name"],
                    "is_tracked": True,
                },
                conflict_columns=["external_id"],
                update_columns=["is_tracked"],
            )
            canonical_name = payload["full_name"]

        pages = 0
        async for page in self.github.list_pull_requests(
            canonical_name,
            per_page=self.settings.sync_page_size,
            max_pages=self.settings.sync_max_pages,
        ):
            pages += 1
            async with self.session_maker() as db, db.begin():
                written = await self._store_pull_requests(db, canonical_name, repository_id, page.payload or [])
            stored_count += written
            # Sorted by most recently updated, so an unchanged page ends the scan
            if written == 0:
                break

        logger.info(
            "Repository synced",
            repository=canonical_name,
            pages=pages,
            records=stored_count,
        )
        return stored_count

    async def _store_pull_requests(
        self,
        db: AsyncSession,
        full_name: str,
        repository_id: int,
        items: list[dict],
    ) -> int:
        known = await self._known_updates(db, repository_id, [item.get("number") for item in items])
        written = 0
        for item in items:
            number = item.get("number")
            if number is None:
                continue
            updated_at = parse_datetime(item.get("updated_at"))
            previous = known.get(number)
            if previous is not None and updated_at is not None and ensure_utc(previous) >= updated_at:
                continue
            await self.raw_store.append(
                db,
                EntityKind.MERGE_REQUEST,
                merge_request_raw_key(full_name, number),
                Endpoints.pull_requests(full_name),
                item,
            )
            written += 1
        return written

    async def _known_updates(
        self,
        db: AsyncSession,
        repository_id: int,
        numbers: list[int | None],
    ) -> dict[int, datetime | None]:
        numbers = [n for n in numbers if n is not None]
        if not numbers:
            return {}
        result = await db.execute(
            select(MergeRequest.external_id, MergeRequest.updated_at).where(
                MergeRequest.repository_id == repository_id,
                MergeRequest.external_id.in_(numbers),
            )
        )
        return {number: updated_at for number, updated_at in result.all()}
