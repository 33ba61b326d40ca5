from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.db.models.base import Base, JSONType, TimestampMixin, utcnow


class PipelineType(str, Enum):
    GITHUB_SYNC = "github_sync"
    DATA_PROCESSING = "data_processing"
    DATA_ENRICHMENT = "data_enrichment"
    REPOSITORY_PROCESSING = "repository_processing"
    CONTRIBUTOR_RANKINGS = "contributor_rankings"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineState(Base):
    """Run gate for one pipeline type. is_running is the mutual exclusion flag."""

    __tablename__ = "pipeline_state"

    pipeline_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.IDLE.value, nullable=False)
    is_running: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stop_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<PipelineState {self.pipeline_type} running={self.is_running}>"


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    pipeline_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    items_processed: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_pipeline_runs_type_started", "pipeline_type", "started_at"),
        Index("idx_pipeline_runs_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<PipelineRun {self.pipeline_type} status={self.status}>"


class PipelineSchedule(Base, TimestampMixin):
    __tablename__ = "pipeline_schedules"

    id: Mapped[int] = mapped_column(primary_key=True)
    pipeline_type: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    parameters: Mapped[dict | None] = mapped_column(JSONType)
    description: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<PipelineSchedule {self.pipeline_type} '{self.cron_expression}' active={self.is_active}>"
