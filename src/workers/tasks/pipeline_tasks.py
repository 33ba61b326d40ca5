"""Celery tasks that execute pipeline runs and fire cron schedules.

Tasks are synchronous entry points; the pipeline itself is async and runs on a
fresh event loop per task with its own database engine.
"""

import asyncio
import sys
from typing import Any

import structlog
from celery.signals import worker_ready

from src.core.config import settings, with_overrides
from src.services.pipeline_runner import PipelineRunner, build_runtime
from src.services.pipeline_service import PipelineControlService, PipelineService
from src.services.scheduler_service import SchedulerService
from src.workers.celery_app import celery_app

logger = structlog.get_logger()

# asyncpg needs the selector event loop on Windows
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


def run_async(coro):
    """Run async code in sync context."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


@celery_app.task(bind=True)
def run_pipeline(self, pipeline_type: str, run_id: int, parameters: dict | None = None) -> dict:
    """
    Execute one pipeline run whose gate was already opened.

    The run is always closed: completed with an error summary when individual
    entities failed, failed when the stage itself aborted.

    Args:
        pipeline_type: One of the PipelineType values
        run_id: The PipelineRun created when the gate was opened
        parameters: Settings overrides from the schedule that started the run

    Returns:
        dict with status, pipeline_type, run_id and items_processed
    """
    logger.info(
        "Running pipeline",
        pipeline_type=pipeline_type,
        run_id=run_id,
        task_id=self.request.id,
    )

    async def _run() -> dict:
        runtime = build_runtime(with_overrides(settings, parameters))
        try:
            report = await PipelineRunner(runtime).run(pipeline_type, run_id)
        finally:
            await runtime.aclose()
        return {
            "status": "completed",
            "pipeline_type": pipeline_type,
            "run_id": run_id,
            "items_processed": report.items_processed,
            "errors": len(report.errors),
            "stopped": report.stopped,
        }

    return run_async(_run())


@celery_app.task
def dispatch_scheduled_pipelines() -> dict:
    """Start every active schedule that fired since its pipeline last ran."""

    async def _dispatch() -> dict:
        runtime = build_runtime()
        try:
            async with runtime.session_maker() as db:
                control = PipelineControlService(db, settings=runtime.settings)
                started = await SchedulerService(db).dispatch_due(control)
        finally:
            await runtime.aclose()
        if started:
            logger.info("Scheduled pipelines dispatched", pipelines=started)
        return {"status": "completed", "started": started}

    return run_async(_dispatch())


@worker_ready.connect
def recover_interrupted_runs(**kwargs: Any) -> None:
    """Close runs a previous worker left open and reset their gates."""

    async def _recover() -> int:
        runtime = build_runtime()
        try:
            async with runtime.session_maker() as db, db.begin():
                return await PipelineService(db, runtime.settings).recover_interrupted_runs()
        finally:
            await runtime.aclose()

    recovered = run_async(_recover())
    logger.info("Worker ready", recovered_runs=recovered)
