from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.models.base import Base, JSONType


class ContributorRanking(Base):
    """One contributor's row in an immutable ranking snapshot."""

    __tablename__ = "contributor_rankings"

    id: Mapped[int] = mapped_column(primary_key=True)
    contributor_id: Mapped[int] = mapped_column(
        ForeignKey("contributors.id", ondelete="CASCADE"),
        nullable=False,
    )
    rank_position: Mapped[int] = mapped_column(nullable=False)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    percentile: Mapped[float] = mapped_column(Float, nullable=False)
    component_scores: Mapped[dict] = mapped_column(JSONType, nullable=False)
    raw_metrics: Mapped[dict] = mapped_column(JSONType, nullable=False)
    calculation_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Relationships
    contributor = relationship("Contributor")

    __table_args__ = (
        Index("idx_contributor_rankings_snapshot", "calculation_timestamp", "rank_position"),
        Index("idx_contributor_rankings_contributor", "contributor_id", "calculation_timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ContributorRanking contributor_id={self.contributor_id} rank={self.rank_position}>"
