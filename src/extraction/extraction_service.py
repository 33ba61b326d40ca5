import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import MalformedPayload
from src.core.stage import StageReport, StopCheck, never_stop
from src.db.models.raw import RawRecord
from src.extraction.entity_extractor import extract
from src.extraction.persistence import EntityPersister
from src.services.raw_store import RawStore

logger = structlog.get_logger()


class ExtractionService:
    """Processes unprocessed raw records into entities, one transaction each."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        raw_store: RawStore | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.raw_store = raw_store or RawStore()

    async def process_record(self, db: AsyncSession, record: RawRecord) -> None:
        """Extract, persist and mark one record inside the caller's transaction."""
        entities = extract(record)
        await EntityPersister(db).persist(entities)
        await self.raw_store.mark_processed(db, record)

    async def run(self, should_stop: StopCheck = never_stop, limit: int | None = None) -> StageReport:
        report = StageReport()
        async with self.session_maker() as db:
            records = await self.raw_store.pending(db, limit=limit)

        logger.info("Extracting raw records", pending=len(records))

        for record in records:
            if await should_stop():
                report.stopped = True
                break

            try:
                async with self.session_maker() as db, db.begin():
                    await self.process_record(db, record)
            except MalformedPayload as exc:
                # Permanent: consume the record so it is not retried forever
                async with self.session_maker() as db, db.begin():
                    await self.raw_store.mark_processed(db, record)
                report.add_error(f"{record.entity_type} {record.external_id}: {exc}")
                logger.warning(
                    "Skipping malformed raw record",
                    record_id=record.id,
                    entity_type=record.entity_type,
                    error=str(exc),
                )
                continue

            report.items_processed += 1

        logger.info(
            "Extraction finished",
            processed=report.items_processed,
            failed=len(report.errors),
            stopped=report.stopped,
        )
        return report
