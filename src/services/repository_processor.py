"""Derived repository statistics.

``process`` is a pure function over plain rows so it can be exercised without
a database. ``RepositoryProcessingService`` loads those rows, runs it and
persists the result.
"""

import posixpath
import statistics
from collections import Counter, defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.stage import StageReport, StopCheck, never_stop
from src.db.models.base import ensure_utc, utcnow
from src.db.models.commit import UNKNOWN_FILENAME, Commit
from src.db.models.merge_request import MergeRequest
from src.db.models.raw import EntityKind
from src.db.models.repository import Repository
from src.db.models.statistics import RepositoryStatistics
from src.db.upsert import upsert
from src.services.github_service import Endpoints
from src.services.raw_store import RawStore

logger = structlog.get_logger()

HUNDRED = Decimal("100")
CENT = Decimal("0.01")

RECENCY_FULL_DAYS = 7
RECENCY_ZERO_DAYS = 365
RESPONSIVE_FULL_HOURS = 24
RESPONSIVE_ZERO_HOURS = 30 * 24
CADENCE_WEEKS = 12
# Effective contributor count that earns a full diversity score
DIVERSITY_FULL_CONTRIBUTORS = 5

EXTENSION_LANGUAGES = {
    ".py": "Python",
    ".pyi": "Python",
    ".ipynb": "Jupyter Notebook",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".java": "Java",
    ".kt": "Kotlin",
    ".kts": "Kotlin",
    ".scala": "Scala",
    ".go": "Go",
    ".rs": "Rust",
    ".c": "C",
    ".h": "C",
    ".cc": "C++",
    ".cpp": "C++",
    ".cxx": "C++",
    ".hpp": "C++",
    ".cs": "C#",
    ".rb": "Ruby",
    ".php": "PHP",
    ".swift": "Swift",
    ".m": "Objective-C",
    ".dart": "Dart",
    ".r": "R",
    ".jl": "Julia",
    ".sh": "Shell",
    ".bash": "Shell",
    ".zsh": "Shell",
    ".ps1": "PowerShell",
    ".html": "HTML",
    ".htm": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".vue": "Vue",
    ".svelte": "Svelte",
    ".sql": "SQL",
    ".tf": "HCL",
    ".hcl": "HCL",
    ".ex": "Elixir",
    ".exs": "Elixir",
    ".lua": "Lua",
    ".pl": "Perl",
    ".hs": "Haskell",
    ".clj": "Clojure",
    ".erl": "Erlang",
    ".zig": "Zig",
    ".nix": "Nix",
}
FILENAME_LANGUAGES = {"Dockerfile": "Dockerfile", "Makefile": "Makefile"}


@dataclass(frozen=True)
class CommitRow:
    sha: str
    committed_at: datetime | None
    contributor_id: int | None = None
    filename: str = UNKNOWN_FILENAME
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class StarSnapshot:
    at: datetime
    stars: int
    forks: int


@dataclass(frozen=True)
class MergeRequestRow:
    created_at: datetime | None
    closed_at: datetime | None = None
    merged_at: datetime | None = None


@dataclass(frozen=True)
class RepositoryCounts:
    stars: int
    forks: int
    pushed_at: datetime | None = None


@dataclass
class CommitFrequency:
    total_commits: int
    daily_average: float
    weekly_average: float
    monthly_average: float
    weekday_histogram: list[int]
    first_commit: datetime
    last_commit: datetime


@dataclass
class ContributorCounts:
    total: int
    core: int
    core_contributor_ids: list[int]


@dataclass
class HealthScore:
    score: float | None
    components: dict[str, float | None] = field(default_factory=dict)


@dataclass
class RepositoryStats:
    commit_frequency: CommitFrequency | None
    growth: dict[str, dict[str, float] | None]
    fork_to_star_ratio: float
    contributors: ContributorCounts | None
    languages: dict[str, Decimal] | None
    health: HealthScore


def _distinct_commits(commits: Sequence[CommitRow]) -> dict[str, CommitRow]:
    """One row per sha, keeping the earliest timestamp seen."""
    by_sha: dict[str, CommitRow] = {}
    for commit in commits:
        current = by_sha.get(commit.sha)
        if current is None or (
            commit.committed_at is not None
            and (current.committed_at is None or commit.committed_at < current.committed_at)
        ):
            by_sha[commit.sha] = commit
    return by_sha


def commit_frequency(commits: Sequence[CommitRow]) -> CommitFrequency | None:
    dated = [c for c in _distinct_commits(commits).values() if c.committed_at is not None]
    if not dated:
        return None

    timestamps = sorted(ensure_utc(c.committed_at) for c in dated)
    first, last = timestamps[0], timestamps[-1]
    span_days = (last.date() - first.date()).days + 1
    daily = len(timestamps) / span_days

    histogram = [0] * 7
    for ts in timestamps:
        histogram[ts.weekday()] += 1

    return CommitFrequency(
        total_commits=len(timestamps),
        daily_average=round(daily, 4),
        weekly_average=round(daily * 7, 4),
        monthly_average=round(daily * 30, 4),
        weekday_histogram=histogram,
        first_commit=first,
        last_commit=last,
    )


def growth_rates(
    history: Sequence[StarSnapshot],
    windows_days: Sequence[int],
    now: datetime,
) -> dict[str, dict[str, float] | None]:
    """Stars and forks gained per day over trailing windows."""
    snapshots = sorted(
        (StarSnapshot(ensure_utc(s.at), s.stars, s.forks) for s in history),
        key=lambda s: s.at,
    )
    rates: dict[str, dict[str, float] | None] = {}
    for window in windows_days:
        key = f"{window}d"
        if not snapshots:
            rates[key] = None
            continue
        start = now - timedelta(days=window)
        latest = snapshots[-1]
        before = [s for s in snapshots if s.at <= start]
        inside = [s for s in snapshots if s.at > start]
        baseline = before[-1] if before else (inside[0] if inside else None)
        if baseline is None or baseline.at >= latest.at:
            rates[key] = None
            continue
        days = (latest.at - baseline.at).total_seconds() / 86400
        rates[key] = {
            "stars_per_day": round((latest.stars - baseline.stars) / days, 4),
            "forks_per_day": round((latest.forks - baseline.forks) / days, 4),
        }
    return rates


def contributor_counts(commits: Sequence[CommitRow], threshold: float) -> ContributorCounts | None:
    """Total contributors and the smallest set covering ``threshold`` of commits.

    Ordered by commit count, ties going to the earliest first contribution.
    """
    shas: dict[int, set[str]] = defaultdict(set)
    first_seen: dict[int, datetime | None] = {}
    for commit in commits:
        if commit.contributor_id is None:
            continue
        shas[commit.contributor_id].add(commit.sha)
        at = ensure_utc(commit.committed_at)
        current = first_seen.get(commit.contributor_id)
        if commit.contributor_id not in first_seen or (at is not None and (current is None or at < current)):
            first_seen[commit.contributor_id] = at

    if not shas:
        return None

    total_commits = sum(len(s) for s in shas.values())
    ranked = sorted(
        shas,
        key=lambda cid: (
            -len(shas[cid]),
            first_seen[cid] is None,
            first_seen[cid] or datetime.min,
            cid,
        ),
    )

    core: list[int] = []
    covered = 0
    for contributor_id in ranked:
        core.append(contributor_id)
        covered += len(shas[contributor_id])
        if covered / total_commits >= threshold:
            break

    return ContributorCounts(total=len(shas), core=len(core), core_contributor_ids=core)


def language_for(filename: str) -> str | None:
    base = posixpath.basename(filename)
    if base in FILENAME_LANGUAGES:
        return FILENAME_LANGUAGES[base]
    _, ext = posixpath.splitext(base)
    return EXTENSION_LANGUAGES.get(ext.lower())


def language_breakdown(commits: Sequence[CommitRow]) -> dict[str, Decimal] | None:
    """Share of changed files per language, as 2dp percentages summing to 100."""
    files: Counter[str] = Counter()
    for commit in commits:
        if commit.filename == UNKNOWN_FILENAME:
            continue
        language = language_for(commit.filename)
        if language is not None:
            files[language] += 1

    total = sum(files.values())
    if total == 0:
        return None

    percentages = {
        language: (Decimal(count) * HUNDRED / Decimal(total)).quantize(CENT, rounding=ROUND_HALF_UP)
        for language, count in files.items()
    }
    largest = max(files, key=lambda language: (files[language], language))
    percentages[largest] += HUNDRED - sum(percentages.values())
    return dict(sorted(percentages.items(), key=lambda item: (-item[1], item[0])))


def _linear(value: float, full_at: float, zero_at: float) -> float:
    if value <= full_at:
        return 100.0
    if value >= zero_at:
        return 0.0
    return 100.0 * (zero_at - value) / (zero_at - full_at)


def health_score(
    commits: Sequence[CommitRow],
    merge_requests: Sequence[MergeRequestRow],
    counts: RepositoryCounts,
    weights: Mapping[str, float],
    now: datetime,
) -> HealthScore:
    """Weighted composite of recency, diversity, responsiveness and cadence.

    Components without input are left out and the remaining weights are
    re-normalized. The score is None when every component is absent.
    """
    distinct = _distinct_commits(commits)
    timestamps = sorted(ensure_utc(c.committed_at) for c in distinct.values() if c.committed_at)

    components: dict[str, float | None] = {}

    last_activity = timestamps[-1] if timestamps else ensure_utc(counts.pushed_at)
    if last_activity is not None:
        days_since = max((now - last_activity).total_seconds() / 86400, 0.0)
        components["recency"] = _linear(days_since, RECENCY_FULL_DAYS, RECENCY_ZERO_DAYS)
    else:
        components["recency"] = None

    per_contributor = Counter(c.contributor_id for c in distinct.values() if c.contributor_id is not None)
    if per_contributor:
        total = sum(per_contributor.values())
        effective = 1 / sum((n / total) ** 2 for n in per_contributor.values())
        components["diversity"] = min(100.0, 100.0 * effective / DIVERSITY_FULL_CONTRIBUTORS)
    else:
        components["diversity"] = None

    close_hours = []
    for mr in merge_requests:
        closed = ensure_utc(mr.merged_at or mr.closed_at)
        created = ensure_utc(mr.created_at)
        if closed is not None and created is not None and closed >= created:
            close_hours.append((closed - created).total_seconds() / 3600)
    if close_hours:
        components["responsiveness"] = _linear(
            statistics.median(close_hours), RESPONSIVE_FULL_HOURS, RESPONSIVE_ZERO_HOURS
        )
    else:
        components["responsiveness"] = None

    if timestamps:
        window_start = now - timedelta(weeks=CADENCE_WEEKS)
        active_weeks = {
            (now - ts).days // 7 for ts in timestamps if window_start < ts <= now
        }
        components["cadence"] = 100.0 * len(active_weeks) / CADENCE_WEEKS
    else:
        components["cadence"] = None

    present = {
        name: value
        for name, value in components.items()
        if value is not None and weights.get(name, 0) > 0
    }
    weight_sum = sum(weights[name] for name in present)
    if not present or weight_sum <= 0:
        return HealthScore(score=None, components=components)

    score = sum(value * weights[name] for name, value in present.items()) / weight_sum
    score = min(max(score, 0.0), 100.0)
    return HealthScore(
        score=round(score, 2),
        components={k: (round(v, 2) if v is not None else None) for k, v in components.items()},
    )


def process(
    repository: RepositoryCounts,
    commits: Sequence[CommitRow],
    stars_history: Sequence[StarSnapshot],
    merge_requests: Sequence[MergeRequestRow] = (),
    settings: Settings | None = None,
    now: datetime | None = None,
) -> RepositoryStats:
    """Compute every repository statistic from plain rows."""
    settings = settings or default_settings
    now = ensure_utc(now) or utcnow()
    return RepositoryStats(
        commit_frequency=commit_frequency(commits),
        growth=growth_rates(stars_history, settings.growth_windows_days, now),
        fork_to_star_ratio=round(repository.forks / max(repository.stars, 1), 4),
        contributors=contributor_counts(commits, settings.core_contributor_threshold),
        languages=language_breakdown(commits),
        health=health_score(commits, merge_requests, repository, settings.health_weights, now),
    )


class RepositoryProcessingService:
    """Loads a repository's rows, computes its statistics and stores them."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        raw_store: RawStore | None = None,
    ) -> None:
        self.session_maker = session_maker
        self.settings = settings or default_settings
        self.raw_store = raw_store or RawStore()

    async def _load_inputs(
        self,
        db: AsyncSession,
        repository: Repository,
    ) -> tuple[list[CommitRow], list[StarSnapshot], list[MergeRequestRow]]:
        commit_rows = await db.execute(
            select(
                Commit.sha,
                Commit.committed_at,
                Commit.contributor_id,
                Commit.filename,
                Commit.additions,
                Commit.deletions,
            ).where(Commit.repository_id == repository.id)
        )
        commits = [CommitRow(*row) for row in commit_rows.all()]

        history = await self.raw_store.history(
            db,
            EntityKind.REPOSITORY,
            str(repository.external_id),
            endpoint=Endpoints.repository(repository.full_name),
        )
        snapshots = [
            StarSnapshot(
                at=record.fetched_at,
                stars=record.payload.get("stargazers_count") or 0,
                forks=record.payload.get("forks_count") or 0,
            )
            for record in history
            if isinstance(record.payload, dict)
        ]

        mr_rows = await db.execute(
            select(MergeRequest.created_at, MergeRequest.closed_at, MergeRequest.merged_at).where(
                MergeRequest.repository_id == repository.id
            )
        )
        merge_requests = [MergeRequestRow(*row) for row in mr_rows.all()]
        return commits, snapshots, merge_requests

    async def process_repository(self, db: AsyncSession, repository: Repository) -> RepositoryStats:
        commits, snapshots, merge_requests = await self._load_inputs(db, repository)
        now = utcnow()
        stats = process(
            RepositoryCounts(repository.stars, repository.forks, repository.pushed_at),
            commits,
            snapshots,
            merge_requests,
            settings=self.settings,
            now=now,
        )

        frequency = None
        if stats.commit_frequency is not None:
            frequency = asdict(stats.commit_frequency)
            frequency["first_commit"] = stats.commit_frequency.first_commit.isoformat()
            frequency["last_commit"] = stats.commit_frequency.last_commit.isoformat()

        await upsert(
            db,
            RepositoryStatistics,
            {
                "repository_id": repository.id,
                "commit_frequency": frequency,
                "growth": {"windows": stats.growth, "fork_to_star_ratio": stats.fork_to_star_ratio},
                "contributor_counts": asdict(stats.contributors) if stats.contributors else None,
                "language_breakdown": (
                    {language: str(pct) for language, pct in stats.languages.items()}
                    if stats.languages is not None
                    else None
                ),
                "health_components": stats.health.components,
                "health_score": stats.health.score,
                "computed_at": now,
            },
            conflict_columns=["repository_id"],
        )
        await db.execute(
            update(Repository)
            .where(Repository.id == repository.id)
            .values(
                health_percentage=(
                    Decimal(str(stats.health.score)).quantize(CENT) if stats.health.score is not None else None
                )
            )
        )
        return stats

    async def run(self, should_stop: StopCheck = never_stop) -> StageReport:
        report = StageReport()
        async with self.session_maker() as db:
            result = await db.execute(select(Repository.id).order_by(Repository.id))
            repository_ids = list(result.scalars().all())

        for repository_id in repository_ids:
            if await should_stop():
                report.stopped = True
                break
            async with self.session_maker() as db, db.begin():
                repository = await db.get(Repository, repository_id)
                if repository is None:
                    continue
                stats = await self.process_repository(db, repository)
            report.items_processed += 1
            logger.debug(
                "Repository statistics computed",
                repository_id=repository_id,
                health_score=stats.health.score,
            )

        logger.info("Repository processing finished", processed=report.items_processed)
        return report
