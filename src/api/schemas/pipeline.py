from datetime import datetime

from pydantic import BaseModel, Field

from src.db.models.pipeline import PipelineType


class PipelineStatus(BaseModel):
    pipeline_type: PipelineType
    status: str
    is_running: bool
    stop_requested: bool
    last_run: datetime | None
    updated_at: datetime | None
    item_count: int | None = None


class PipelineRunResponse(BaseModel):
    id: int
    pipeline_type: PipelineType
    status: str
    started_at: datetime
    completed_at: datetime | None
    items_processed: int
    error_message: str | None

    model_config = {"from_attributes": True}


class PipelineHistory(BaseModel):
    runs: list[PipelineRunResponse]
    total: int


class StopResponse(BaseModel):
    pipeline_type: PipelineType
    stop_requested: bool


class ClearHistoryResponse(BaseModel):
    deleted: int


class ItemCountResponse(BaseModel):
    pipeline_type: PipelineType
    count: int


class PipelineScheduleCreate(BaseModel):
    cron_expression: str = Field(..., min_length=1, max_length=100)
    is_active: bool = True
    parameters: dict | None = None
    description: str | None = None


class PipelineScheduleToggle(BaseModel):
    is_active: bool


class PipelineScheduleResponse(BaseModel):
    id: int
    pipeline_type: PipelineType
    cron_expression: str
    is_active: bool
    parameters: dict | None
    description: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
