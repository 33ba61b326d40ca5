"""Multi-factor contributor ranking.

Each run scores the full non-bot contributor population with at least one
commit. Raw metrics are turned into percentiles within the population, the
percentiles are combined with the configured weights, and the totals are
ranked competition style (equal scores share a rank, the next rank skips).
"""

from bisect import bisect_left, bisect_right
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from src.core.config import Settings
from src.core.stage import StageReport
from src.db.models.base import utcnow
from src.db.models.commit import Commit
from src.db.models.contributor import Contributor
from src.db.models.merge_request import MergeRequest
from src.db.models.ranking import ContributorRanking
from src.db.models.repository import Repository
from src.services.scoring_service import ScoringService

logger = structlog.get_logger()

SCORE_PRECISION = 6
STAR_WEIGHT = 0.7
FORK_WEIGHT = 0.3

PROFILE_FIELD_WEIGHTS = {
    "username": 10,
    "name": 10,
    "avatar": 10,
    "bio": 15,
    "company": 10,
    "location": 10,
    "blog": 10,
    "twitter_username": 10,
    "top_languages": 15,
}


@dataclass
class ContributorMetrics:
    contributor_id: int
    commit_count: int
    lines_added: int = 0
    lines_removed: int = 0
    repositories_contributed: int = 0
    followers: int = 0
    profile_completeness: float = 0.0
    collaboration: float = 0.0
    repo_popularity: float = 0.0

    @property
    def total_lines(self) -> int:
        return self.lines_added + self.lines_removed

    @property
    def efficiency(self) -> float:
        return self.commit_count / self.total_lines if self.total_lines else 0.0


DIMENSIONS: dict[str, Callable[[ContributorMetrics], float]] = {
    "code_volume": lambda m: m.total_lines,
    "commit_impact": lambda m: m.commit_count,
    "code_efficiency": lambda m: m.efficiency,
    "collaboration": lambda m: m.collaboration,
    "repo_popularity": lambda m: m.repo_popularity,
    "repo_influence": lambda m: m.repositories_contributed,
    "followers": lambda m: m.followers,
    "profile_completeness": lambda m: m.profile_completeness,
}


@dataclass
class RankingResult:
    contributor_id: int
    rank_position: int
    total_score: float
    percentile: float
    component_scores: dict[str, float]
    raw_metrics: dict[str, float]


@dataclass
class RankingTrend:
    contributor_id: int
    current_rank: int
    previous_rank: int
    rank_delta: int
    score_delta: float
    current_timestamp: datetime
    previous_timestamp: datetime


def profile_completeness(contributor: Contributor) -> float:
    score = 0
    for field_name, weight in PROFILE_FIELD_WEIGHTS.items():
        if getattr(contributor, field_name, None):
            score += weight
    return float(score)


def percentiles(values: Sequence[float]) -> list[float]:
    """100 * (values strictly lower) / (n - 1). Ties share the lower percentile."""
    n = len(values)
    if n == 0:
        return []
    if n == 1:
        return [100.0]
    ordered = sorted(values)
    return [100.0 * bisect_left(ordered, value) / (n - 1) for value in values]


def competition_ranks(scores: Sequence[float]) -> list[int]:
    """1 + number of strictly greater scores: [90, 90, 70, 70, 50] -> [1, 1, 3, 3, 5]."""
    ordered = sorted(scores)
    n = len(scores)
    return [1 + n - bisect_right(ordered, score) for score in scores]


def compute_rankings(
    metrics: Sequence[ContributorMetrics],
    weights: Mapping[str, float],
) -> list[RankingResult]:
    if not metrics:
        return []

    active = {name: weight for name, weight in weights.items() if name in DIMENSIONS and weight > 0}
    weight_sum = sum(active.values())
    if weight_sum <= 0:
        raise ValueError("Ranking weights must contain at least one positive dimension weight")

    component_scores: dict[str, list[float]] = {
        name: percentiles([DIMENSIONS[name](m) for m in metrics]) for name in DIMENSIONS
    }
    totals = [
        round(
            sum(component_scores[name][i] * weight for name, weight in active.items()) / weight_sum,
            SCORE_PRECISION,
        )
        for i in range(len(metrics))
    ]
    ranks = competition_ranks(totals)
    total_percentiles = percentiles(totals)

    results = []
    for i, m in enumerate(metrics):
        raw = {name: float(getter(m)) for name, getter in DIMENSIONS.items()}
        raw.update(lines_added=m.lines_added, lines_removed=m.lines_removed)
        results.append(
            RankingResult(
                contributor_id=m.contributor_id,
                rank_position=ranks[i],
                total_score=totals[i],
                percentile=round(total_percentiles[i], SCORE_PRECISION),
                component_scores={name: round(scores[i], SCORE_PRECISION) for name, scores in component_scores.items()},
                raw_metrics=raw,
            )
        )
    results.sort(key=lambda r: (r.rank_position, r.contributor_id))
    return results


async def count_ranked_contributors(db: AsyncSession) -> int:
    """Size of the population a snapshot scores: non-bot contributors with commits."""
    result = await db.execute(
        select(func.count(Contributor.id)).where(
            Contributor.is_bot.is_(False),
            Contributor.id.in_(select(Commit.contributor_id).where(Commit.contributor_id.is_not(None))),
        )
    )
    return result.scalar() or 0


class RankingService:
    """Computes and stores ranking snapshots."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.settings = settings

    async def load_metrics(self, db: AsyncSession) -> list[ContributorMetrics]:
        contributors_result = await db.execute(select(Contributor).where(Contributor.is_bot.is_(False)))
        contributors = {c.id: c for c in contributors_result.scalars().all()}

        commit_stats = await db.execute(
            select(
                Commit.contributor_id,
                func.count(distinct(Commit.sha)),
                func.coalesce(func.sum(Commit.additions), 0),
                func.coalesce(func.sum(Commit.deletions), 0),
                func.count(distinct(Commit.repository_id)),
            )
            .where(Commit.contributor_id.is_not(None))
            .group_by(Commit.contributor_id)
        )

        metrics: dict[int, ContributorMetrics] = {}
        for contributor_id, commits, added, removed, repositories in commit_stats.all():
            contributor = contributors.get(contributor_id)
            if contributor is None or commits == 0:
                continue
            metrics[contributor_id] = ContributorMetrics(
                contributor_id=contributor_id,
                commit_count=commits,
                lines_added=added,
                lines_removed=removed,
                repositories_contributed=repositories,
                followers=contributor.followers or 0,
                profile_completeness=profile_completeness(contributor),
            )

        popularity_rows = await db.execute(
            select(Commit.contributor_id, Repository.id, Repository.stars, Repository.forks)
            .join(Repository, Repository.id == Commit.repository_id)
            .where(Commit.contributor_id.is_not(None))
            .distinct()
        )
        for contributor_id, _, stars, forks in popularity_rows.all():
            if contributor_id in metrics:
                metrics[contributor_id].repo_popularity += (stars or 0) * STAR_WEIGHT + (forks or 0) * FORK_WEIGHT

        await self._apply_collaboration(db, metrics, contributors)
        return list(metrics.values())

    async def _apply_collaboration(
        self,
        db: AsyncSession,
        metrics: dict[int, ContributorMetrics],
        contributors: Mapping[int, Contributor],
    ) -> None:
        """Average distinct non-bot participants per pull request worked on."""
        participants: dict[int, set[int]] = defaultdict(set)

        committers = await db.execute(
            select(Commit.pull_request_id, Commit.contributor_id)
            .where(Commit.pull_request_id.is_not(None), Commit.contributor_id.is_not(None))
            .distinct()
        )
        for pull_request_id, contributor_id in committers.all():
            participants[pull_request_id].add(contributor_id)

        authors = await db.execute(
            select(MergeRequest.id, MergeRequest.author_id).where(MergeRequest.author_id.is_not(None))
        )
        for pull_request_id, author_id in authors.all():
            participants[pull_request_id].add(author_id)

        per_contributor: dict[int, list[int]] = defaultdict(list)
        for members in participants.values():
            humans = {cid for cid in members if cid in contributors}
            for contributor_id in humans:
                per_contributor[contributor_id].append(len(humans))

        for contributor_id, sizes in per_contributor.items():
            if contributor_id in metrics:
                metrics[contributor_id].collaboration = sum(sizes) / len(sizes)

    async def compute_snapshot(self) -> StageReport:
        """Score the full population and store it as one snapshot, atomically."""
        if self.session_maker is None:
            raise RuntimeError("RankingService was created without a session maker")
        report = StageReport()
        async with self.session_maker() as db, db.begin():
            weights = await ScoringService(db, self.settings).get_weight_map()
            metrics = await self.load_metrics(db)
            results = compute_rankings(metrics, weights)

            calculation_timestamp = utcnow()
            db.add_all(
                ContributorRanking(
                    contributor_id=result.contributor_id,
                    rank_position=result.rank_position,
                    total_score=result.total_score,
                    percentile=result.percentile,
                    component_scores=result.component_scores,
                    raw_metrics=result.raw_metrics,
                    calculation_timestamp=calculation_timestamp,
                )
                for result in results
            )
            report.items_processed = len(results)

        logger.info(
            "Contributor ranking snapshot stored",
            contributors=report.items_processed,
            calculation_timestamp=calculation_timestamp.isoformat(),
        )
        return report

    async def latest_snapshot(
        self,
        db: AsyncSession,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[datetime | None, list[ContributorRanking], int]:
        """Page of the most recent snapshot: (calculation_timestamp, rows, total rows)."""
        latest = await db.execute(select(func.max(ContributorRanking.calculation_timestamp)))
        timestamp = latest.scalar()
        if timestamp is None:
            return None, [], 0

        count_result = await db.execute(
            select(func.count(ContributorRanking.id)).where(ContributorRanking.calculation_timestamp == timestamp)
        )
        result = await db.execute(
            select(ContributorRanking)
            .options(joinedload(ContributorRanking.contributor))
            .where(ContributorRanking.calculation_timestamp == timestamp)
            .order_by(ContributorRanking.rank_position, ContributorRanking.contributor_id)
            .offset(offset)
            .limit(limit)
        )
        return timestamp, list(result.scalars().all()), count_result.scalar() or 0

    async def get_trend(self, db: AsyncSession, contributor_id: int) -> RankingTrend | None:
        """Compare a contributor's two most recent snapshots. Positive rank_delta is an improvement."""
        result = await db.execute(
            select(ContributorRanking)
            .where(ContributorRanking.contributor_id == contributor_id)
            .order_by(ContributorRanking.calculation_timestamp.desc(), ContributorRanking.id.desc())
            .limit(2)
        )
        rows = list(result.scalars().all())
        if len(rows) < 2:
            return None
        current, previous = rows
        return RankingTrend(
            contributor_id=contributor_id,
            current_rank=current.rank_position,
            previous_rank=previous.rank_position,
            rank_delta=previous.rank_position - current.rank_position,
            score_delta=round(current.total_score - previous.total_score, SCORE_PRECISION),
            current_timestamp=current.calculation_timestamp,
            previous_timestamp=previous.calculation_timestamp,
        )

