from collections.abc import Callable
from datetime import datetime

import structlog
from celery.schedules import ParseException, crontab
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings as default_settings, with_overrides
from src.core.exceptions import (
    AlreadyRunning,
    InvalidCronExpression,
    InvalidScheduleParameters,
    PipelineError,
)
from src.db.models.base import ensure_utc, utcnow
from src.db.models.pipeline import PipelineSchedule, PipelineState, PipelineType
from src.services.pipeline_service import PipelineControlService, parse_pipeline_type

logger = structlog.get_logger()


def parse_cron(expression: str, nowfun: Callable[[], datetime] | None = None) -> crontab:
    """Parse a five-field cron expression (minute hour day month weekday)."""
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronExpression(
            f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}"
        )
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            nowfun=nowfun,
        )
    except (ValueError, ParseException) as exc:
        raise InvalidCronExpression(f"Invalid cron expression {expression!r}: {exc}") from exc


def is_due(expression: str, last_run: datetime, now: datetime | None = None) -> bool:
    """Whether the schedule fired at least once after ``last_run``."""
    current = ensure_utc(now) if now is not None else utcnow()
    schedule = parse_cron(expression, nowfun=lambda: current)
    return schedule.is_due(ensure_utc(last_run)).is_due


class SchedulerService:
    """Service for managing cron schedules of pipeline runs."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_schedules(self) -> list[PipelineSchedule]:
        result = await self.db.execute(select(PipelineSchedule).order_by(PipelineSchedule.pipeline_type))
        return list(result.scalars().all())

    async def get_schedule(self, pipeline_type: str) -> PipelineSchedule | None:
        pipeline = parse_pipeline_type(pipeline_type)
        result = await self.db.execute(
            select(PipelineSchedule).where(PipelineSchedule.pipeline_type == pipeline.value)
        )
        return result.scalar_one_or_none()

    async def upsert_schedule(
        self,
        pipeline_type: str,
        cron_expression: str,
        is_active: bool = True,
        parameters: dict | None = None,
        description: str | None = None,
    ) -> PipelineSchedule:
        """Create or replace the schedule of a pipeline type.

        ``parameters`` are settings overrides applied to the runs it starts.
        """
        pipeline = parse_pipeline_type(pipeline_type)
        cron_expression = " ".join(cron_expression.split())
        parse_cron(cron_expression)
        try:
            with_overrides(default_settings, parameters)
        except ValueError as exc:
            raise InvalidScheduleParameters(f"Invalid schedule parameters: {exc}") from exc

        schedule = await self.get_schedule(pipeline.value)
        if schedule is None:
            schedule = PipelineSchedule(pipeline_type=pipeline.value)
            self.db.add(schedule)
        schedule.cron_expression = cron_expression
        schedule.is_active = is_active
        schedule.parameters = parameters
        if description is not None:
            schedule.description = description

        await self.db.flush()
        logger.info(
            "Pipeline schedule saved",
            pipeline_type=pipeline.value,
            cron_expression=cron_expression,
            is_active=is_active,
        )
        return schedule

    async def set_active(self, pipeline_type: str, is_active: bool) -> PipelineSchedule | None:
        schedule = await self.get_schedule(pipeline_type)
        if schedule is None:
            return None
        schedule.is_active = is_active
        await self.db.flush()
        logger.info("Pipeline schedule toggled", pipeline_type=schedule.pipeline_type, is_active=is_active)
        return schedule

    async def delete_schedule(self, pipeline_type: str) -> bool:
        pipeline = parse_pipeline_type(pipeline_type)
        result = await self.db.execute(
            delete(PipelineSchedule).where(PipelineSchedule.pipeline_type == pipeline.value)
        )
        return bool(result.rowcount)

    async def due_schedules(self, now: datetime | None = None) -> list[PipelineSchedule]:
        """Active schedules that fired since their pipeline last ran and are not running now."""
        now = ensure_utc(now) if now is not None else utcnow()
        result = await self.db.execute(
            select(PipelineSchedule, PipelineState)
            .outerjoin(PipelineState, PipelineState.pipeline_type == PipelineSchedule.pipeline_type)
            .where(PipelineSchedule.is_active.is_(True))
            .order_by(PipelineSchedule.pipeline_type)
        )

        due = []
        for schedule, state in result.all():
            if state is not None and state.is_running:
                continue
            last_run = state.last_run if state is not None and state.last_run else schedule.created_at
            try:
                fired = is_due(schedule.cron_expression, last_run, now)
            except InvalidCronExpression as exc:
                logger.warning(
                    "Skipping schedule with invalid cron expression",
                    pipeline_type=schedule.pipeline_type,
                    error=str(exc),
                )
                continue
            if fired:
                due.append(schedule)
        return due

    async def due_pipelines(self, now: datetime | None = None) -> list[PipelineType]:
        return [PipelineType(schedule.pipeline_type) for schedule in await self.due_schedules(now)]

    async def dispatch_due(self, control: PipelineControlService, now: datetime | None = None) -> list[str]:
        """Start every due schedule with its parameters. Returns the pipelines started.

        A pipeline that is already running or cannot be dispatched is logged
        and skipped so the remaining schedules still start.
        """
        # Rollbacks expire loaded rows, so copy what the loop needs first
        due = [(schedule.pipeline_type, schedule.parameters) for schedule in await self.due_schedules(now)]
        started: list[str] = []
        for pipeline_type, parameters in due:
            try:
                await control.start(pipeline_type, parameters)
            except AlreadyRunning:
                await self.db.rollback()
                logger.info("Scheduled pipeline already running", pipeline_type=pipeline_type)
                continue
            except PipelineError as exc:
                logger.error("Scheduled pipeline dispatch failed", pipeline_type=pipeline_type, error=str(exc))
                continue
            started.append(pipeline_type)
        return started
