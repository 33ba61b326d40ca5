from src.services.github_service import GitHubService
from src.services.ranking_service import RankingService
from src.services.raw_store import RawStore
from src.services.retry_policy import RetryPolicy
from src.services.scoring_service import ScoringService

__all__ = [
    "GitHubService",
    "RankingService",
    "RawStore",
    "RetryPolicy",
    "ScoringService",
]
