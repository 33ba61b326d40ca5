from datetime import datetime

from pydantic import BaseModel


class RankedContributorInfo(BaseModel):
    id: int
    username: str | None
    name: str | None
    avatar: str | None

    model_config = {"from_attributes": True}


class ContributorRankingEntry(BaseModel):
    rank_position: int
    contributor: RankedContributorInfo
    total_score: float
    percentile: float
    component_scores: dict[str, float]
    raw_metrics: dict[str, float]

    model_config = {"from_attributes": True}


class RankingSnapshot(BaseModel):
    calculation_timestamp: datetime | None
    entries: list[ContributorRankingEntry]
    total: int
    page: int
    page_size: int


class RankingTrendResponse(BaseModel):
    contributor_id: int
    current_rank: int
    previous_rank: int
    rank_delta: int
    score_delta: float
    current_timestamp: datetime
    previous_timestamp: datetime

    model_config = {"from_attributes": True}
