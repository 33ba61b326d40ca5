"""Pipeline status tracking and control.

``PipelineState.is_running`` is the only mutual exclusion between runs: a run
starts through one conditional UPDATE, so two concurrent starts of the same
type cannot both succeed.
"""

from collections.abc import Callable
from typing import Any, assert_never

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import AlreadyRunning, PipelineError, UnknownPipelineType
from src.db.models.base import utcnow
from src.db.models.pipeline import PipelineRun, PipelineState, PipelineType, RunStatus
from src.db.models.repository import Repository
from src.db.upsert import insert_ignore
from src.enrichment.github_enricher import count_pending_enrichment
from src.services.ranking_service import count_ranked_contributors
from src.services.raw_store import RawStore
from src.services.sync_service import count_tracked_repositories

logger = structlog.get_logger()

STOPPED_MESSAGE = "Stopped by request"
INTERRUPTED_MESSAGE = "Interrupted before completion"

Dispatcher = Callable[[str, int, dict | None], Any]


def parse_pipeline_type(value: str | PipelineType) -> PipelineType:
    try:
        return PipelineType(value)
    except ValueError as exc:
        raise UnknownPipelineType(f"Unknown pipeline type: {value}") from exc


class PipelineService:
    """Tracks pipeline state and run history."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self.db = db
        self.settings = settings or default_settings

    async def _get_state(self, pipeline: PipelineType) -> PipelineState | None:
        result = await self.db.execute(
            select(PipelineState)
            .where(PipelineState.pipeline_type == pipeline.value)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def start(self, pipeline_type: str | PipelineType) -> PipelineRun:
        """Open the run gate and record a new run. Raises AlreadyRunning if the gate is closed."""
        pipeline = parse_pipeline_type(pipeline_type)
        now = utcnow()

        await insert_ignore(
            self.db,
            PipelineState,
            {
                "pipeline_type": pipeline.value,
                "status": RunStatus.IDLE.value,
                "is_running": False,
                "stop_requested": False,
                "updated_at": now,
            },
            conflict_columns=["pipeline_type"],
        )
        result = await self.db.execute(
            update(PipelineState)
            .where(
                PipelineState.pipeline_type == pipeline.value,
                PipelineState.is_running.is_(False),
            )
            .values(
                is_running=True,
                stop_requested=False,
                status=RunStatus.RUNNING.value,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AlreadyRunning(pipeline.value)

        run = PipelineRun(
            pipeline_type=pipeline.value,
            status=RunStatus.RUNNING.value,
            started_at=now,
            items_processed=0,
        )
        self.db.add(run)
        await self.db.flush()

        logger.info("Pipeline run started", pipeline_type=pipeline.value, run_id=run.id)
        return run

    async def finish(
        self,
        run_id: int,
        items_processed: int,
        error_message: str | None = None,
        failed: bool = False,
    ) -> PipelineRun | None:
        """Close a run with its terminal status and reset the gate."""
        run = await self.db.get(PipelineRun, run_id)
        if run is None:
            logger.warning("Pipeline run not found", run_id=run_id)
            return None

        status = RunStatus.FAILED if failed else RunStatus.COMPLETED
        now = utcnow()
        run.status = status.value
        run.completed_at = now
        run.items_processed = items_processed
        run.error_message = error_message

        await self.db.execute(
            update(PipelineState)
            .where(PipelineState.pipeline_type == run.pipeline_type)
            .values(
                is_running=False,
                stop_requested=False,
                status=status.value,
                last_run=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()

        log = logger.error if failed else logger.info
        log(
            "Pipeline run finished",
            pipeline_type=run.pipeline_type,
            run_id=run_id,
            status=status.value,
            items=items_processed,
            error=error_message,
        )
        return run

    async def stop(self, pipeline_type: str | PipelineType) -> bool:
        """Request a cooperative stop. Returns False when nothing is running."""
        pipeline = parse_pipeline_type(pipeline_type)
        result = await self.db.execute(
            update(PipelineState)
            .where(
                PipelineState.pipeline_type == pipeline.value,
                PipelineState.is_running.is_(True),
            )
            .values(stop_requested=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        requested = bool(result.rowcount)
        logger.info("Pipeline stop requested", pipeline_type=pipeline.value, running=requested)
        return requested

    async def is_stop_requested(self, pipeline_type: str | PipelineType) -> bool:
        pipeline = parse_pipeline_type(pipeline_type)
        result = await self.db.execute(
            select(PipelineState.stop_requested).where(PipelineState.pipeline_type == pipeline.value)
        )
        return bool(result.scalar())

    async def get_status(self, pipeline_type: str | PipelineType) -> dict:
        pipeline = parse_pipeline_type(pipeline_type)
        state = await self._get_state(pipeline)
        if state is None:
            return {
                "pipeline_type": pipeline.value,
                "status": RunStatus.IDLE.value,
                "is_running": False,
                "stop_requested": False,
                "last_run": None,
                "updated_at": None,
            }
        return {
            "pipeline_type": state.pipeline_type,
            "status": state.status,
            "is_running": state.is_running,
            "stop_requested": state.stop_requested,
            "last_run": state.last_run,
            "updated_at": state.updated_at,
        }

    async def get_history(
        self,
        pipeline_type: str | PipelineType | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        query = select(PipelineRun)
        if pipeline_type is not None:
            query = query.where(PipelineRun.pipeline_type == parse_pipeline_type(pipeline_type).value)
        result = await self.db.execute(
            query.order_by(PipelineRun.started_at.desc(), PipelineRun.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def clear_history(self, pipeline_type: str | PipelineType | None = None) -> int:
        """Delete finished runs. Active runs are kept so they can still be closed."""
        query = delete(PipelineRun).where(PipelineRun.status != RunStatus.RUNNING.value)
        if pipeline_type is not None:
            query = query.where(PipelineRun.pipeline_type == parse_pipeline_type(pipeline_type).value)
        result = await self.db.execute(query)
        logger.info("Pipeline history cleared", pipeline_type=pipeline_type, deleted=result.rowcount)
        return result.rowcount

    async def get_item_count(self, pipeline_type: str | PipelineType) -> int:
        """Number of items the next run of this pipeline would work on."""
        pipeline = parse_pipeline_type(pipeline_type)
        match pipeline:
            case PipelineType.GITHUB_SYNC:
                return await count_tracked_repositories(self.db, self.settings.tracked_repositories)
            case PipelineType.DATA_PROCESSING:
                return await RawStore().count_unprocessed(self.db)
            case PipelineType.DATA_ENRICHMENT:
                return await count_pending_enrichment(self.db, self.settings.max_enrichment_attempts)
            case PipelineType.REPOSITORY_PROCESSING:
                result = await self.db.execute(select(func.count(Repository.id)))
                return result.scalar() or 0
            case PipelineType.CONTRIBUTOR_RANKINGS:
                return await count_ranked_contributors(self.db)
            case _:
                assert_never(pipeline)

    async def recover_interrupted_runs(self) -> int:
        """Fail runs left open by a dead worker and reset every gate."""
        now = utcnow()
        result = await self.db.execute(
            update(PipelineRun)
            .where(PipelineRun.status == RunStatus.RUNNING.value)
            .values(
                status=RunStatus.FAILED.value,
                completed_at=now,
                error_message=INTERRUPTED_MESSAGE,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(PipelineState)
            .where(PipelineState.is_running.is_(True))
            .values(
                is_running=False,
                stop_requested=False,
                status=RunStatus.FAILED.value,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning("Recovered interrupted pipeline runs", runs=result.rowcount)
        return result.rowcount


def celery_dispatcher(pipeline_type: str, run_id: int, parameters: dict | None = None) -> Any:
    # Imported here to avoid a circular import with the worker tasks
    from src.workers.tasks.pipeline_tasks import run_pipeline

    return run_pipeline.delay(pipeline_type, run_id, parameters)


class PipelineControlService:
    """Start/stop/status operations used by the API and the scheduler."""

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: Dispatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.tracker = PipelineService(db, settings)
        self.dispatcher = dispatcher or celery_dispatcher

    async def start(
        self,
        pipeline_type: str | PipelineType,
        parameters: dict | None = None,
    ) -> PipelineRun:
        """Open the gate, commit, then hand the run and its settings overrides to a worker."""
        run = await self.tracker.start(pipeline_type)
        await self.db.commit()
        try:
            self.dispatcher(run.pipeline_type, run.id, parameters)
        except Exception as exc:
            logger.error(
                "Failed to dispatch pipeline run",
                pipeline_type=run.pipeline_type,
                run_id=run.id,
                error=str(exc),
            )
            await self.tracker.finish(run.id, 0, f"Dispatch failed: {exc}", failed=True)
            await self.db.commit()
            raise PipelineError(f"Could not dispatch {run.pipeline_type}: {exc}") from exc
        return run

    async def stop(self, pipeline_type: str | PipelineType) -> bool:
        return await self.tracker.stop(pipeline_type)

    async def get_status(self, pipeline_type: str | PipelineType) -> dict:
        return await self.tracker.get_status(pipeline_type)

    async def get_history(
        self,
        pipeline_type: str | PipelineType | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        return await self.tracker.get_history(pipeline_type, limit)

    async def clear_history(self, pipeline_type: str | PipelineType | None = None) -> int:
        return await self.tracker.clear_history(pipeline_type)

    async def get_item_count(self, pipeline_type: str | PipelineType) -> int:
        return await self.tracker.get_item_count(pipeline_type)
