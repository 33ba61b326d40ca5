from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import FetchFailed, MalformedPayload
from src.db.models.raw import EntityKind, RawRecord
from src.db.models.base import utcnow
from src.services.github_service import FetchResult, GitHubService

logger = structlog.get_logger()

# Dependencies first so extraction can resolve references
EXTRACTION_ORDER = {
    EntityKind.REPOSITORY.value: 0,
    EntityKind.CONTRIBUTOR.value: 1,
    EntityKind.MERGE_REQUEST.value: 2,
    EntityKind.COMMIT.value: 3,
}


@dataclass
class FetchedResponse:
    """A GitHub response that is not stored yet."""

    entity_type: EntityKind
    external_id: str
    endpoint: str
    payload: Any
    etag: str | None = None
    not_modified: bool = False


class RawStore:
    """Append-only store of GitHub responses with ETag-aware fetching."""

    def __init__(self, github: GitHubService | None = None) -> None:
        self.github = github

    async def latest_for_endpoint(self, db: AsyncSession, endpoint: str) -> RawRecord | None:
        result = await db.execute(
            select(RawRecord)
            .where(RawRecord.api_endpoint == endpoint)
            .order_by(RawRecord.fetched_at.desc(), RawRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_for_entity(
        self,
        db: AsyncSession,
        entity_type: EntityKind,
        external_id: str,
    ) -> RawRecord | None:
        result = await db.execute(
            select(RawRecord)
            .where(
                RawRecord.entity_type == entity_type.value,
                RawRecord.external_id == external_id,
            )
            .order_by(RawRecord.fetched_at.desc(), RawRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        db: AsyncSession,
        entity_type: EntityKind,
        external_id: str,
        endpoint: str,
        payload: Any,
        etag: str | None = None,
        is_processed: bool = False,
    ) -> RawRecord:
        record = RawRecord(
            entity_type=entity_type.value,
            external_id=external_id,
            payload=payload,
            api_endpoint=endpoint,
            etag=etag,
            fetched_at=utcnow(),
            is_processed=is_processed,
        )
        db.add(record)
        await db.flush()
        return record

    async def fetch(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        entity_type: EntityKind,
        external_id: str | None,
        endpoint: str,
    ) -> FetchedResponse:
        """Fetch an endpoint conditionally on its last stored ETag.

        The ETag is read in a short session of its own and nothing is written,
        so no transaction is open during the request. ``save`` stores the
        response. A 304 carries the stored payload. Without an ``external_id``
        the GitHub id of the returned object is used.
        """
        if self.github is None:
            raise RuntimeError("RawStore was created without a GitHub client")

        async with session_maker() as db:
            previous = await self.latest_for_endpoint(db, endpoint)
            previous_etag = previous.etag if previous else None
            previous_payload = previous.payload if previous else None
            previous_external_id = previous.external_id if previous else None

        result = await self.github.fetch(endpoint, etag=previous_etag)

        if not isinstance(result, FetchResult):
            if previous is None:
                raise FetchFailed(304, f"Not modified without a stored copy of {endpoint}")
            logger.debug("Raw record not modified", endpoint=endpoint)
            return FetchedResponse(
                entity_type,
                external_id or previous_external_id,
                endpoint,
                previous_payload,
                etag=previous_etag,
                not_modified=True,
            )

        if external_id is None:
            if not isinstance(result.payload, dict) or "id" not in result.payload:
                raise MalformedPayload(f"Response from {endpoint} has no id")
            external_id = str(result.payload["id"])

        return FetchedResponse(entity_type, external_id, endpoint, result.payload, etag=result.etag)

    async def save(
        self,
        db: AsyncSession,
        response: FetchedResponse,
        is_processed: bool = False,
    ) -> RawRecord | None:
        """Store a fetched response. A 304 writes nothing."""
        if response.not_modified:
            return None
        return await self.append(
            db,
            response.entity_type,
            response.external_id,
            response.endpoint,
            response.payload,
            etag=response.etag,
            is_processed=is_processed,
        )

    async def pending(self, db: AsyncSession, limit: int | None = None) -> list[RawRecord]:
        """Latest unprocessed version per (entity_type, external_id), dependencies first."""
        latest_ids = (
            select(func.max(RawRecord.id).label("id"))
            .where(RawRecord.is_processed.is_(False))
            .group_by(RawRecord.entity_type, RawRecord.external_id)
            .subquery()
        )
        result = await db.execute(select(RawRecord).join(latest_ids, RawRecord.id == latest_ids.c.id))
        records = sorted(
            result.scalars().all(),
            key=lambda r: (EXTRACTION_ORDER.get(r.entity_type, len(EXTRACTION_ORDER)), r.id),
        )
        return records[:limit] if limit is not None else records

    async def mark_processed(self, db: AsyncSession, record: RawRecord) -> int:
        """Mark a record and every older unprocessed version of it as processed."""
        result = await db.execute(
            update(RawRecord)
            .where(
                RawRecord.entity_type == record.entity_type,
                RawRecord.external_id == record.external_id,
                RawRecord.id <= record.id,
                RawRecord.is_processed.is_(False),
            )
            .values(is_processed=True)
        )
        return result.rowcount

    async def count_unprocessed(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(RawRecord.id)).where(RawRecord.is_processed.is_(False))
        )
        return result.scalar() or 0

    async def history(
        self,
        db: AsyncSession,
        entity_type: EntityKind,
        external_id: str,
        endpoint: str | None = None,
    ) -> list[RawRecord]:
        """All stored versions of an entity, oldest first."""
        query = select(RawRecord).where(
            RawRecord.entity_type == entity_type.value,
            RawRecord.external_id == external_id,
        )
        if endpoint is not None:
            query = query.where(RawRecord.api_endpoint == endpoint)
        result = await db.execute(query.order_by(RawRecord.fetched_at, RawRecord.id))
        return list(result.scalars().all())
