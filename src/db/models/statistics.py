from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.models.base import Base, JSONType, TimestampMixin


class RepositoryStatistics(Base, TimestampMixin):
    __tablename__ = "repository_statistics"

    id: Mapped[int] = mapped_column(primary_key=True)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    commit_frequency: Mapped[dict | None] = mapped_column(JSONType)
    growth: Mapped[dict | None] = mapped_column(JSONType)
    contributor_counts: Mapped[dict | None] = mapped_column(JSONType)
    # Percentages serialized as strings to keep exact 2dp decimals
    language_breakdown: Mapped[dict | None] = mapped_column(JSONType)
    health_components: Mapped[dict | None] = mapped_column(JSONType)
    health_score: Mapped[float | None] = mapped_column(Float)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    repository = relationship("Repository", back_populates="statistics")

    def __repr__(self) -> str:
        return f"<RepositoryStatistics repo_id={self.repository_id} health={self.health_score}>"
