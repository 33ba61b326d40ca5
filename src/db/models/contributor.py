from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.db.models.base import Base, JSONType, TimestampMixin

PLACEHOLDER_PREFIX = "placeholder:"


class Contributor(Base, TimestampMixin):
    __tablename__ = "contributors"

    id: Mapped[int] = mapped_column(primary_key=True)
    # GitHub user id as text, or "placeholder:<author>" for unlinked commit authors
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    username: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(255))
    avatar: Mapped[str | None] = mapped_column(Text)
    bio: Mapped[str | None] = mapped_column(Text)
    company: Mapped[str | None] = mapped_column(String(255))
    location: Mapped[str | None] = mapped_column(String(255))
    blog: Mapped[str | None] = mapped_column(Text)
    twitter_username: Mapped[str | None] = mapped_column(String(255))
    followers: Mapped[int] = mapped_column(default=0)
    repositories: Mapped[int] = mapped_column(default=0)
    impact_score: Mapped[int | None] = mapped_column()
    role_classification: Mapped[str | None] = mapped_column(String(100))
    top_languages: Mapped[list | None] = mapped_column(JSONType)
    organizations: Mapped[list | None] = mapped_column(JSONType)

    # Activity
    first_contribution: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_contribution: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    direct_commits: Mapped[int] = mapped_column(default=0)
    pull_requests_merged: Mapped[int] = mapped_column(default=0)
    pull_requests_rejected: Mapped[int] = mapped_column(default=0)
    code_reviews: Mapped[int] = mapped_column(default=0)

    is_placeholder: Mapped[bool] = mapped_column(Boolean, default=False)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False)
    is_enriched: Mapped[bool] = mapped_column(Boolean, default=False)
    enrichment_attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("idx_contributors_username", "username"),
        Index("idx_contributors_enrichment", "is_enriched", "enrichment_attempts"),
    )

    def __repr__(self) -> str:
        return f"<Contributor {self.username or self.external_id}>"
