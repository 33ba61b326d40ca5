from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from src.db.models import Commit, Contributor, ContributorRanking, Repository, RepositoryStatistics
from src.db.models.raw import EntityKind
from src.services.ranking_service import RankingService
from src.services.raw_store import RawStore
from src.services.repository_processor import RepositoryProcessingService

pytestmark = pytest.mark.integration

NOW = datetime.now(timezone.utc)


async def seed_activity(session_maker) -> dict[str, int]:
    """Two people and a bot committing to one repository."""
    async with session_maker() as db, db.begin():
        repository = Repository(external_id=10, full_name="octo/demo", name="demo", stars=100, forks=10)
        alice = Contributor(external_id="2", username="alice", followers=50)
        bob = Contributor(external_id="3", username="bob")
        bot = Contributor(external_id="9", username="dependabot[bot]", is_bot=True)
        idle = Contributor(external_id="4", username="carol")
        db.add_all([repository, alice, bob, bot, idle])
        await db.flush()

        rows = [
            (alice, "a1", "app.py", 10),
            (alice, "a2", "app.py", 10),
            (alice, "a3", "lib.go", 10),
            (bob, "b1", "big.js", 100),
            (bot, "c1", "package.json", 5),
        ]
        for days_ago, (author, sha, filename, additions) in enumerate(rows):
            db.add(
                Commit(
                    sha=sha,
                    repository_id=repository.id,
                    contributor_id=author.id,
                    filename=filename,
                    additions=additions,
                    committed_at=NOW - timedelta(days=days_ago),
                    is_enriched=True,
                )
            )
        return {"repository": repository.id, "alice": alice.id, "bob": bob.id, "bot": bot.id, "carol": idle.id}


class TestRankingService:
    """Tests for ranking snapshots."""

    async def test_snapshot_covers_active_humans(self, session_maker) -> None:
        ids = await seed_activity(session_maker)
        service = RankingService(session_maker)

        report = await service.compute_snapshot()

        assert report.items_processed == 2
        async with session_maker() as db:
            timestamp, rows, total = await service.latest_snapshot(db)
        assert timestamp is not None
        assert total == 2
        assert [row.contributor_id for row in rows] == [ids["alice"], ids["bob"]]
        assert [row.rank_position for row in rows] == [1, 2]
        assert rows[0].contributor.username == "alice"
        assert rows[0].percentile == 100.0
        assert rows[0].raw_metrics["commit_impact"] == 3.0

    async def test_latest_snapshot_pages(self, session_maker) -> None:
        await seed_activity(session_maker)
        service = RankingService(session_maker)
        await service.compute_snapshot()

        async with session_maker() as db:
            _, rows, total = await service.latest_snapshot(db, limit=1, offset=1)

        assert total == 2
        assert [row.rank_position for row in rows] == [2]

    async def test_snapshots_are_kept_and_trended(self, session_maker) -> None:
        ids = await seed_activity(session_maker)
        service = RankingService(session_maker)
        await service.compute_snapshot()
        await service.compute_snapshot()

        async with session_maker() as db:
            stored = (await db.execute(select(func.count(ContributorRanking.id)))).scalar()
            trend = await service.get_trend(db, ids["alice"])
            missing = await service.get_trend(db, ids["carol"])

        assert stored == 4
        assert trend.current_rank == trend.previous_rank == 1
        assert trend.rank_delta == 0
        assert trend.score_delta == 0.0
        assert missing is None

    async def test_empty_population(self, session_maker) -> None:
        service = RankingService(session_maker)

        report = await service.compute_snapshot()

        assert report.items_processed == 0
        async with session_maker() as db:
            assert await service.latest_snapshot(db) == (None, [], 0)


class TestRepositoryProcessing:
    """Tests for stored repository statistics."""

    async def test_statistics_are_stored(self, session_maker, make_settings) -> None:
        ids = await seed_activity(session_maker)
        async with session_maker() as db, db.begin():
            await RawStore().append(
                db,
                EntityKind.REPOSITORY,
                "10",
                "/repos/octo/demo",
                {"id": 10, "stargazers_count": 100, "forks_count": 10},
            )

        report = await RepositoryProcessingService(session_maker, make_settings()).run()

        assert report.items_processed == 1
        async with session_maker() as db:
            stats = (await db.execute(select(RepositoryStatistics))).scalar_one()
            repository = await db.get(Repository, ids["repository"])
        assert stats.commit_frequency["total_commits"] == 5
        assert stats.contributor_counts["total"] == 3
        assert stats.contributor_counts["core_contributor_ids"] == [ids["alice"]]
        assert sum(Decimal(pct) for pct in stats.language_breakdown.values()) == Decimal("100")
        assert stats.growth["fork_to_star_ratio"] == 0.1
        assert stats.health_score is not None
        assert repository.health_percentage is not None

    async def test_rerun_replaces_statistics(self, session_maker, make_settings) -> None:
        await seed_activity(session_maker)
        service = RepositoryProcessingService(session_maker, make_settings())

        await service.run()
        await service.run()

        async with session_maker() as db:
            assert (await db.execute(select(func.count(RepositoryStatistics.id)))).scalar() == 1
