from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.schemas.pipeline import (
    ClearHistoryResponse,
    ItemCountResponse,
    PipelineHistory,
    PipelineRunResponse,
    PipelineScheduleCreate,
    PipelineScheduleResponse,
    PipelineScheduleToggle,
    PipelineStatus,
    StopResponse,
)
from src.core.exceptions import (
    AlreadyRunning,
    InvalidCronExpression,
    InvalidScheduleParameters,
    PipelineError,
    UnknownPipelineType,
)
from src.db import get_db
from src.services.pipeline_service import Dispatcher, PipelineControlService, celery_dispatcher
from src.services.scheduler_service import SchedulerService

router = APIRouter()


def get_dispatcher() -> Dispatcher:
    """Hands started runs to the Celery worker. Overridden in tests."""
    return celery_dispatcher


def _not_found(exc: UnknownPipelineType) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get(
    "/schedules",
    response_model=list[PipelineScheduleResponse],
    summary="List pipeline schedules",
)
async def list_schedules(
    db: AsyncSession = Depends(get_db),
) -> list[PipelineScheduleResponse]:
    service = SchedulerService(db)
    schedules = await service.list_schedules()
    return [PipelineScheduleResponse.model_validate(s) for s in schedules]


@router.put(
    "/schedules/{pipeline_type}",
    response_model=PipelineScheduleResponse,
    summary="Create or replace a pipeline schedule",
)
async def upsert_schedule(
    pipeline_type: str,
    data: PipelineScheduleCreate,
    db: AsyncSession = Depends(get_db),
) -> PipelineScheduleResponse:
    """Schedule a pipeline with a five-field cron expression, evaluated in UTC."""
    service = SchedulerService(db)
    try:
        schedule = await service.upsert_schedule(
            pipeline_type,
            data.cron_expression,
            is_active=data.is_active,
            parameters=data.parameters,
            description=data.description,
        )
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    except (InvalidCronExpression, InvalidScheduleParameters) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    await db.refresh(schedule)
    return PipelineScheduleResponse.model_validate(schedule)


@router.patch(
    "/schedules/{pipeline_type}",
    response_model=PipelineScheduleResponse,
    summary="Enable or disable a pipeline schedule",
)
async def toggle_schedule(
    pipeline_type: str,
    data: PipelineScheduleToggle,
    db: AsyncSession = Depends(get_db),
) -> PipelineScheduleResponse:
    service = SchedulerService(db)
    try:
        schedule = await service.set_active(pipeline_type, data.is_active)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No schedule for pipeline {pipeline_type}",
        )
    await db.refresh(schedule)
    return PipelineScheduleResponse.model_validate(schedule)


@router.delete(
    "/schedules/{pipeline_type}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a pipeline schedule",
)
async def delete_schedule(
    pipeline_type: str,
    db: AsyncSession = Depends(get_db),
) -> None:
    service = SchedulerService(db)
    try:
        deleted = await service.delete_schedule(pipeline_type)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No schedule for pipeline {pipeline_type}",
        )


@router.get(
    "/history",
    response_model=PipelineHistory,
    summary="List recent pipeline runs",
)
async def get_history(
    pipeline_type: str | None = Query(None, description="Filter by pipeline type"),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> PipelineHistory:
    """Most recent runs first."""
    control = PipelineControlService(db)
    try:
        runs = await control.get_history(pipeline_type, limit)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    return PipelineHistory(
        runs=[PipelineRunResponse.model_validate(r) for r in runs],
        total=len(runs),
    )


@router.delete(
    "/history",
    response_model=ClearHistoryResponse,
    summary="Clear finished pipeline runs",
)
async def clear_history(
    pipeline_type: str | None = Query(None, description="Only clear this pipeline type"),
    db: AsyncSession = Depends(get_db),
) -> ClearHistoryResponse:
    control = PipelineControlService(db)
    try:
        deleted = await control.clear_history(pipeline_type)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    return ClearHistoryResponse(deleted=deleted)


@router.post(
    "/{pipeline_type}/start",
    response_model=PipelineRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a pipeline run",
)
async def start_pipeline(
    pipeline_type: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> PipelineRunResponse:
    """Open the run gate and queue the run. Poll the status endpoint for progress."""
    control = PipelineControlService(db, dispatcher)
    try:
        run = await control.start(pipeline_type)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PipelineError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PipelineRunResponse.model_validate(run)


@router.post(
    "/{pipeline_type}/stop",
    response_model=StopResponse,
    summary="Request a running pipeline to stop",
)
async def stop_pipeline(
    pipeline_type: str,
    db: AsyncSession = Depends(get_db),
) -> StopResponse:
    """The run stops at the next entity boundary and keeps its partial progress."""
    control = PipelineControlService(db)
    try:
        requested = await control.stop(pipeline_type)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    return StopResponse(pipeline_type=pipeline_type, stop_requested=requested)


@router.get(
    "/{pipeline_type}/status",
    response_model=PipelineStatus,
    summary="Get pipeline status",
)
async def get_status(
    pipeline_type: str,
    include_count: bool = Query(False, description="Also count pending items"),
    db: AsyncSession = Depends(get_db),
) -> PipelineStatus:
    control = PipelineControlService(db)
    try:
        state = await control.get_status(pipeline_type)
        item_count = await control.get_item_count(pipeline_type) if include_count else None
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    return PipelineStatus(**state, item_count=item_count)


@router.get(
    "/{pipeline_type}/item-count",
    response_model=ItemCountResponse,
    summary="Count items the next run would process",
)
async def get_item_count(
    pipeline_type: str,
    db: AsyncSession = Depends(get_db),
) -> ItemCountResponse:
    control = PipelineControlService(db)
    try:
        count = await control.get_item_count(pipeline_type)
    except UnknownPipelineType as exc:
        raise _not_found(exc) from exc
    return ItemCountResponse(pipeline_type=pipeline_type, count=count)
