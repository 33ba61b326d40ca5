from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.db.models.base import Base, TimestampMixin


class ContributorRepositoryLink(Base, TimestampMixin):
    """Per-(contributor, repository) aggregates, recomputed from source rows."""

    __tablename__ = "contributor_repository"

    id: Mapped[int] = mapped_column(primary_key=True)
    contributor_id: Mapped[int] = mapped_column(
        ForeignKey("contributors.id", ondelete="CASCADE"),
        nullable=False,
    )
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    commit_count: Mapped[int] = mapped_column(default=0)
    pull_requests: Mapped[int] = mapped_column(default=0)
    reviews: Mapped[int] = mapped_column(default=0)
    issues_opened: Mapped[int] = mapped_column(default=0)
    lines_added: Mapped[int] = mapped_column(default=0)
    lines_removed: Mapped[int] = mapped_column(default=0)
    first_contribution_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_contribution_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("contributor_id", "repository_id", name="uq_contributor_repository"),
        Index("idx_contributor_repository_repo", "repository_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ContributorRepositoryLink contributor_id={self.contributor_id} "
            f"repo_id={self.repository_id} commits={self.commit_count}>"
        )
