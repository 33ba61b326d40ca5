from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from src.db.models.base import Base, TimestampMixin

# Filename of the single row stored before a commit's file list is known
UNKNOWN_FILENAME = ""


class FileStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class Commit(Base, TimestampMixin):
    """One row per (commit, changed file)."""

    __tablename__ = "commits"

    id: Mapped[int] = mapped_column(primary_key=True)
    sha: Mapped[str] = mapped_column(String(40), nullable=False)
    repository_id: Mapped[int] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
    )
    contributor_id: Mapped[int | None] = mapped_column(
        ForeignKey("contributors.id", ondelete="SET NULL"),
    )
    pull_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("merge_requests.id", ondelete="SET NULL"),
    )
    author_name: Mapped[str | None] = mapped_column(String(255))
    message: Mapped[str | None] = mapped_column(Text)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    filename: Mapped[str] = mapped_column(Text, default=UNKNOWN_FILENAME, nullable=False)
    status: Mapped[str | None] = mapped_column(String(20))
    additions: Mapped[int] = mapped_column(default=0)
    deletions: Mapped[int] = mapped_column(default=0)
    patch: Mapped[str | None] = mapped_column(Text)
    is_merge_commit: Mapped[bool] = mapped_column(Boolean, default=False)

    is_enriched: Mapped[bool] = mapped_column(Boolean, default=False)
    enrichment_attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("sha", "repository_id", "filename", name="uq_commits_sha_repo_file"),
        Index("idx_commits_contributor", "contributor_id"),
        Index("idx_commits_repository", "repository_id", "committed_at"),
        Index("idx_commits_pull_request", "pull_request_id"),
    )

    def __repr__(self) -> str:
        return f"<Commit {self.sha[:7]} {self.filename or '*'}>"
