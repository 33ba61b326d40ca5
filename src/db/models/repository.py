from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.models.base import Base, JSONType, TimestampMixin


class Repository(Base, TimestampMixin):
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str | None] = mapped_column(Text)
    stars: Mapped[int] = mapped_column(default=0)
    forks: Mapped[int] = mapped_column(default=0)
    watchers: Mapped[int] = mapped_column(default=0)
    open_issues: Mapped[int] = mapped_column(default=0)
    size_kb: Mapped[int] = mapped_column(default=0)
    primary_language: Mapped[str | None] = mapped_column(String(100))
    languages: Mapped[dict | None] = mapped_column(JSONType)
    license: Mapped[str | None] = mapped_column(String(100))
    default_branch: Mapped[str | None] = mapped_column(String(255))
    is_fork: Mapped[bool] = mapped_column(Boolean, default=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    repo_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pushed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    owner_id: Mapped[int | None] = mapped_column(
        ForeignKey("contributors.id", ondelete="SET NULL"),
    )

    # Sync & enrichment tracking
    is_tracked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_enriched: Mapped[bool] = mapped_column(Boolean, default=False)
    enrichment_attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[str | None] = mapped_column(Text)

    health_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))

    # Relationships
    owner = relationship("Contributor", foreign_keys=[owner_id])
    merge_requests = relationship(
        "MergeRequest",
        back_populates="repository",
        cascade="all, delete-orphan",
    )
    statistics = relationship(
        "RepositoryStatistics",
        back_populates="repository",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_repositories_enrichment", "is_enriched", "enrichment_attempts"),
    )

    def __repr__(self) -> str:
        return f"<Repository {self.full_name}>"
