from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.db.models.base import BigIntPK, Base, JSONType, utcnow


class EntityKind(str, Enum):
    REPOSITORY = "repository"
    CONTRIBUTOR = "contributor"
    MERGE_REQUEST = "merge_request"
    COMMIT = "commit"


class RawRecord(Base):
    """Append-only copy of an API response. Only is_processed ever changes."""

    __tablename__ = "raw_records"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    api_endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    etag: Mapped[str | None] = mapped_column(String(255))
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_raw_records_entity", "entity_type", "external_id", "fetched_at"),
        Index("idx_raw_records_endpoint", "api_endpoint", "fetched_at"),
        Index("idx_raw_records_unprocessed", "is_processed", "entity_type"),
    )

    def __repr__(self) -> str:
        return f"<RawRecord {self.entity_type}:{self.external_id} processed={self.is_processed}>"
