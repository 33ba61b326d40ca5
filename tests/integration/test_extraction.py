import pytest
from sqlalchemy import func, select, update

from src.db.models import (
    Commit,
    Contributor,
    ContributorRepositoryLink,
    MergeRequest,
    RawRecord,
    Repository,
)
from src.db.models.raw import EntityKind
from src.extraction.extraction_service import ExtractionService
from src.services.raw_store import RawStore

pytestmark = pytest.mark.integration

REPO = {
    "id": 10,
    "full_name": "octo/demo",
    "name": "demo",
    "stargazers_count": 12,
    "owner": {"id": 1, "login": "octo"},
}


def pull_request(title: str = "Add feature", updated_at: str = "2024-01-02T00:00:00Z") -> dict:
    return {
        "number": 7,
        "title": title,
        "state": "closed",
        "user": {"id": 2, "login": "alice"},
        "base": {"ref": "main", "repo": REPO},
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": updated_at,
        "closed_at": updated_at,
        "merged_at": updated_at,
    }


def listed_commit(sha: str, author: dict | None, email: str) -> dict:
    return {
        "sha": sha,
        "author": author,
        "commit": {"author": {"name": email.split("@")[0], "email": email, "date": "2024-01-01T10:00:00Z"}},
    }


async def add_raw(session_maker, kind: EntityKind, key: str, endpoint: str, payload: dict) -> RawRecord:
    async with session_maker() as db, db.begin():
        return await RawStore().append(db, kind, key, endpoint, payload)


async def count(session_maker, model) -> int:
    async with session_maker() as db:
        return (await db.execute(select(func.count(model.id)))).scalar()


async def seed_pull_request_history(session_maker) -> None:
    await add_raw(session_maker, EntityKind.REPOSITORY, "10", "/repos/octo/demo", REPO)
    await add_raw(session_maker, EntityKind.MERGE_REQUEST, "octo/demo#7", "/repos/octo/demo/pulls", pull_request())
    await add_raw(
        session_maker,
        EntityKind.COMMIT,
        "octo/demo#7@abc1234",
        "/repos/octo/demo/pulls/7/commits",
        listed_commit("abc1234", {"id": 2, "login": "alice"}, "alice@example.com"),
    )


class TestExtractionService:
    """Tests for turning raw records into entities."""

    async def test_extracts_entities_and_links(self, session_maker) -> None:
        await seed_pull_request_history(session_maker)

        report = await ExtractionService(session_maker).run()

        assert report.items_processed == 3
        assert report.errors == []
        async with session_maker() as db:
            repository = (await db.execute(select(Repository))).scalar_one()
            alice = (await db.execute(select(Contributor).where(Contributor.username == "alice"))).scalar_one()
            merge_request = (await db.execute(select(MergeRequest))).scalar_one()
            commit = (await db.execute(select(Commit))).scalar_one()
            link = (await db.execute(select(ContributorRepositoryLink))).scalar_one()

        assert repository.stars == 12
        assert repository.owner_id is not None
        assert merge_request.state == "merged"
        assert merge_request.author_id == alice.id
        assert commit.filename == ""
        assert commit.pull_request_id == merge_request.id
        assert (link.contributor_id, link.commit_count, link.pull_requests) == (alice.id, 1, 1)
        assert alice.direct_commits == 1
        assert alice.pull_requests_merged == 1

    async def test_reprocessing_is_idempotent(self, session_maker) -> None:
        """Replaying the same raw records changes nothing."""
        await seed_pull_request_history(session_maker)
        service = ExtractionService(session_maker)
        await service.run()
        before = [await count(session_maker, model) for model in (Repository, Contributor, MergeRequest, Commit)]

        async with session_maker() as db, db.begin():
            await db.execute(update(RawRecord).values(is_processed=False))
        report = await service.run()

        after = [await count(session_maker, model) for model in (Repository, Contributor, MergeRequest, Commit)]
        assert report.items_processed == 3
        assert after == before == [1, 2, 1, 1]
        async with session_maker() as db:
            link = (await db.execute(select(ContributorRepositoryLink))).scalar_one()
        assert link.commit_count == 1

    async def test_latest_version_feeds_extraction(self, session_maker) -> None:
        """Three versions of one pull request leave a single, newest row."""
        await add_raw(session_maker, EntityKind.REPOSITORY, "10", "/repos/octo/demo", REPO)
        for day, title in ((2, "first"), (3, "second"), (4, "third")):
            await add_raw(
                session_maker,
                EntityKind.MERGE_REQUEST,
                "octo/demo#7",
                "/repos/octo/demo/pulls",
                pull_request(title=title, updated_at=f"2024-01-0{day}T00:00:00Z"),
            )

        await ExtractionService(session_maker).run()

        async with session_maker() as db:
            rows = (await db.execute(select(MergeRequest))).scalars().all()
            unprocessed = await RawStore().count_unprocessed(db)
        assert [row.title for row in rows] == ["third"]
        assert unprocessed == 0

    async def test_older_payload_never_overwrites_newer(self, session_maker) -> None:
        await add_raw(session_maker, EntityKind.REPOSITORY, "10", "/repos/octo/demo", REPO)
        newer = await add_raw(
            session_maker,
            EntityKind.MERGE_REQUEST,
            "octo/demo#7",
            "/repos/octo/demo/pulls/7",
            pull_request(title="newer", updated_at="2024-01-05T00:00:00Z"),
        )
        older = await add_raw(
            session_maker,
            EntityKind.MERGE_REQUEST,
            "octo/demo#7",
            "/repos/octo/demo/pulls",
            pull_request(title="older", updated_at="2024-01-03T00:00:00Z"),
        )
        service = ExtractionService(session_maker)
        await service.run()

        async with session_maker() as db, db.begin():
            await service.process_record(db, newer)
            await service.process_record(db, older)

        async with session_maker() as db:
            merge_request = (await db.execute(select(MergeRequest))).scalar_one()
        assert merge_request.title == "newer"

    async def test_placeholder_is_reconciled(self, session_maker) -> None:
        """A commit author without an account is merged into the account once it appears."""
        await add_raw(session_maker, EntityKind.REPOSITORY, "10", "/repos/octo/demo", REPO)
        await add_raw(
            session_maker,
            EntityKind.COMMIT,
            "octo/demo@aaa1111",
            "/repos/octo/demo/commits",
            listed_commit("aaa1111", None, "bob@example.com"),
        )
        service = ExtractionService(session_maker)
        await service.run()

        async with session_maker() as db:
            placeholder = (
                await db.execute(select(Contributor).where(Contributor.is_placeholder.is_(True)))
            ).scalar_one()
        assert placeholder.external_id == "placeholder:bob@example.com"

        await add_raw(
            session_maker,
            EntityKind.COMMIT,
            "octo/demo@bbb2222",
            "/repos/octo/demo/commits",
            listed_commit("bbb2222", {"id": 3, "login": "bob"}, "bob@example.com"),
        )
        await service.run()

        async with session_maker() as db:
            contributors = (await db.execute(select(Contributor))).scalars().all()
            bob = next(c for c in contributors if c.username == "bob")
            commit_owners = set((await db.execute(select(Commit.contributor_id))).scalars().all())
        assert not any(c.is_placeholder for c in contributors)
        assert commit_owners == {bob.id}
        assert bob.direct_commits == 2

    async def test_malformed_record_is_consumed(self, session_maker) -> None:
        """A permanently broken payload is reported once and not retried."""
        payload = pull_request()
        del payload["base"]
        await add_raw(session_maker, EntityKind.MERGE_REQUEST, "octo/demo#7", "/repos/octo/demo/pulls", payload)

        service = ExtractionService(session_maker)
        report = await service.run()
        second = await service.run()

        assert report.items_processed == 0
        assert len(report.errors) == 1
        assert second.errors == []
        assert await count(session_maker, MergeRequest) == 0
