from src.db.models.base import Base
from src.db.models.commit import Commit
from src.db.models.contributor import Contributor
from src.db.models.link import ContributorRepositoryLink
from src.db.models.merge_request import MergeRequest
from src.db.models.pipeline import PipelineRun, PipelineSchedule, PipelineState
from src.db.models.ranking import ContributorRanking
from src.db.models.raw import RawRecord
from src.db.models.repository import Repository
from src.db.models.scoring import ScoringWeight
from src.db.models.statistics import RepositoryStatistics

__all__ = [
    "Base",
    "RawRecord",
    "Repository",
    "Contributor",
    "MergeRequest",
    "Commit",
    "ContributorRepositoryLink",
    "ContributorRanking",
    "RepositoryStatistics",
    "ScoringWeight",
    "PipelineState",
    "PipelineRun",
    "PipelineSchedule",
]
