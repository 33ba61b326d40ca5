from src.api.schemas.pipeline import (
    PipelineHistory,
    PipelineRunResponse,
    PipelineScheduleCreate,
    PipelineScheduleResponse,
    PipelineStatus,
)
from src.api.schemas.ranking import (
    ContributorRankingEntry,
    RankingSnapshot,
    RankingTrendResponse,
)
from src.api.schemas.repository import (
    RepositoryDetail,
    RepositoryList,
    RepositoryStatisticsResponse,
)
from src.api.schemas.scoring import ScoringWeightCreate, ScoringWeightResponse

__all__ = [
    "PipelineStatus",
    "PipelineRunResponse",
    "PipelineHistory",
    "PipelineScheduleCreate",
    "PipelineScheduleResponse",
    "ContributorRankingEntry",
    "RankingSnapshot",
    "RankingTrendResponse",
    "RepositoryDetail",
    "RepositoryList",
    "RepositoryStatisticsResponse",
    "ScoringWeightCreate",
    "ScoringWeightResponse",
]
