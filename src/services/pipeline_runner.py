"""Executes one pipeline run from its opened gate to its terminal status."""

from dataclasses import dataclass, field
from typing import assert_never

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.stage import StageReport, StopCheck
from src.db.database import create_worker_session_maker
from src.db.models.pipeline import PipelineType
from src.enrichment.github_enricher import GitHubEnricher
from src.extraction.extraction_service import ExtractionService
from src.services.github_service import GitHubService
from src.services.pipeline_service import STOPPED_MESSAGE, PipelineService, parse_pipeline_type
from src.services.ranking_service import RankingService
from src.services.raw_store import RawStore
from src.services.repository_processor import RepositoryProcessingService
from src.services.sync_service import SyncService

logger = structlog.get_logger()


@dataclass
class PipelineRuntime:
    """Shared dependencies of the pipeline stages."""

    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    _github: GitHubService | None = field(default=None, repr=False)
    _owns_engine: bool = field(default=False, repr=False)

    @property
    def github(self) -> GitHubService:
        # Created on first use so stages without API calls run without a token
        if self._github is None:
            self._github = GitHubService(self.settings)
        return self._github

    async def aclose(self) -> None:
        if self._github is not None:
            await self._github.aclose()
            self._github = None
        if self._owns_engine:
            await self.session_maker.kw["bind"].dispose()


def build_runtime(
    settings: Settings | None = None,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    github: GitHubService | None = None,
) -> PipelineRuntime:
    return PipelineRuntime(
        settings=settings or default_settings,
        session_maker=session_maker or create_worker_session_maker(),
        _github=github,
        _owns_engine=session_maker is None,
    )


class PipelineRunner:
    """Runs the stage behind a pipeline type and closes its run."""

    def __init__(self, runtime: PipelineRuntime) -> None:
        self.runtime = runtime

    def _stop_check(self, pipeline: PipelineType) -> StopCheck:
        async def should_stop() -> bool:
            async with self.runtime.session_maker() as db:
                return await PipelineService(db, self.runtime.settings).is_stop_requested(pipeline)

        return should_stop

    async def run_stage(self, pipeline: PipelineType, should_stop: StopCheck) -> StageReport:
        runtime = self.runtime
        match pipeline:
            case PipelineType.GITHUB_SYNC:
                return await SyncService(runtime.session_maker, runtime.github, runtime.settings).run(should_stop)
            case PipelineType.DATA_PROCESSING:
                return await ExtractionService(runtime.session_maker).run(should_stop)
            case PipelineType.DATA_ENRICHMENT:
                return await GitHubEnricher(runtime.session_maker, runtime.github, runtime.settings).run(should_stop)
            case PipelineType.REPOSITORY_PROCESSING:
                service = RepositoryProcessingService(runtime.session_maker, runtime.settings, RawStore())
                return await service.run(should_stop)
            case PipelineType.CONTRIBUTOR_RANKINGS:
                return await RankingService(runtime.session_maker, runtime.settings).compute_snapshot()
            case _:
                assert_never(pipeline)

    async def run(self, pipeline_type: str | PipelineType, run_id: int) -> StageReport:
        """Run the stage and always close the run.

        Per-entity failures are summarized on a completed run. Anything that
        escapes the stage is fatal: the run fails and the error propagates.
        """
        pipeline = parse_pipeline_type(pipeline_type)
        report = StageReport()
        failed = False
        error_message: str | None = None

        logger.info("Pipeline run executing", pipeline_type=pipeline.value, run_id=run_id)
        try:
            report = await self.run_stage(pipeline, self._stop_check(pipeline))
        except Exception as exc:
            failed = True
            error_message = str(exc) or exc.__class__.__name__
            logger.error(
                "Pipeline run aborted",
                pipeline_type=pipeline.value,
                run_id=run_id,
                error=error_message,
            )
            raise
        finally:
            if not failed:
                error_message = report.error_summary()
                if report.stopped:
                    error_message = f"{STOPPED_MESSAGE}; {error_message}" if error_message else STOPPED_MESSAGE
            async with self.runtime.session_maker() as db, db.begin():
                await PipelineService(db, self.runtime.settings).finish(
                    run_id,
                    report.items_processed,
                    error_message,
                    failed=failed,
                )

        return report
