from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class RepositoryDetail(BaseModel):
    id: int
    external_id: int
    name: str
    full_name: str
    description: str | None
    stars: int
    forks: int
    primary_language: str | None
    is_tracked: bool
    is_enriched: bool
    health_percentage: Decimal | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RepositoryList(BaseModel):
    repositories: list[RepositoryDetail]
    total: int
    page: int
    page_size: int


class RepositoryStatisticsResponse(BaseModel):
    repository_id: int
    commit_frequency: dict | None
    growth: dict | None
    contributor_counts: dict | None
    language_breakdown: dict[str, Decimal] | None
    health_components: dict[str, float | None] | None
    health_score: float | None
    computed_at: datetime

    model_config = {"from_attributes": True}
