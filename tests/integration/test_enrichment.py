import httpx
import pytest
from sqlalchemy import func, select

from src.db.models import Commit, Contributor, ContributorRepositoryLink, MergeRequest, RawRecord, Repository
from src.db.models.raw import EntityKind
from src.enrichment.github_enricher import EnrichmentOutcome, GitHubEnricher, count_pending_enrichment
from src.services.github_service import GitHubService
from src.services.retry_policy import RetryPolicy

pytestmark = pytest.mark.integration

REPO_PAYLOAD = {
    "id": 10,
    "full_name": "octo/demo",
    "name": "demo",
    "language": None,
    "stargazers_count": 40,
    "forks_count": 4,
    "owner": {"id": 1, "login": "octo"},
}


class FakeGitHub:
    """Routes requests by path and answers 304 when the ETag matches."""

    def __init__(self, routes: dict[str, httpx.Response | tuple[dict, str]]) -> None:
        self.routes = routes
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request.url.path)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="Not Found")
        if isinstance(route, httpx.Response):
            return route
        payload, etag = route
        if request.headers.get("if-none-match") == etag:
            return httpx.Response(304)
        return httpx.Response(200, json=payload, headers={"etag": etag})


class WritingGitHub(FakeGitHub):
    """Commits a row from a separate session while answering each request."""

    def __init__(self, routes: dict, session_maker) -> None:
        super().__init__(routes)
        self.session_maker = session_maker
        self.writes = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        async with self.session_maker() as db, db.begin():
            db.add(Contributor(external_id=f"watcher-{self.writes}", username=f"watcher{self.writes}"))
        self.writes += 1
        return super().__call__(request)


def make_enricher(session_maker, make_settings, handler: FakeGitHub) -> GitHubEnricher:
    async def no_sleep(seconds: float) -> None:
        return None

    settings = make_settings(max_enrichment_attempts=3)
    github = GitHubService(
        settings,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_policy=RetryPolicy(sleep=no_sleep),
    )
    return GitHubEnricher(session_maker, github, settings)


async def add_repository(session_maker) -> int:
    async with session_maker() as db, db.begin():
        repository = Repository(external_id=10, full_name="octo/demo", name="demo")
        db.add(repository)
        await db.flush()
        return repository.id


async def raw_count(session_maker) -> int:
    async with session_maker() as db:
        return (await db.execute(select(func.count(RawRecord.id)))).scalar()


class TestRepositoryEnrichment:
    """Tests for enriching a single repository."""

    async def test_enriches_details_and_languages(self, session_maker, make_settings) -> None:
        handler = FakeGitHub(
            {
                "/repos/octo/demo": (REPO_PAYLOAD, '"r1"'),
                "/repos/octo/demo/languages": ({"Python": 900, "Shell": 100}, '"l1"'),
            }
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)

        result = await enricher.enrich(EntityKind.REPOSITORY, repository_id)

        assert result.outcome == EnrichmentOutcome.ENRICHED
        async with session_maker() as db:
            repository = await db.get(Repository, repository_id)
            owner = (await db.execute(select(Contributor))).scalar_one()
            raw = (await db.execute(select(RawRecord))).scalars().all()
        assert repository.is_enriched
        assert repository.enrichment_attempts == 1
        assert repository.stars == 40
        assert repository.primary_language == "Python"
        assert repository.owner_id == owner.id
        assert {record.api_endpoint for record in raw} == {"/repos/octo/demo", "/repos/octo/demo/languages"}
        assert all(record.is_processed for record in raw)

    async def test_not_modified_writes_nothing(self, session_maker, make_settings) -> None:
        """A forced re-check answered with 304 stores no new raw record."""
        handler = FakeGitHub(
            {
                "/repos/octo/demo": (REPO_PAYLOAD, '"r1"'),
                "/repos/octo/demo/languages": ({"Python": 900}, '"l1"'),
            }
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)
        await enricher.enrich(EntityKind.REPOSITORY, repository_id)
        stored = await raw_count(session_maker)

        result = await enricher.enrich(EntityKind.REPOSITORY, repository_id, force=True)

        assert result.outcome == EnrichmentOutcome.NOT_MODIFIED
        assert await raw_count(session_maker) == stored

    async def test_no_transaction_open_during_requests(self, session_maker, make_settings) -> None:
        """Other writers are never blocked while GitHub is answering."""
        handler = WritingGitHub(
            {
                "/repos/octo/demo": (REPO_PAYLOAD, '"r1"'),
                "/repos/octo/demo/languages": ({"Python": 900}, '"l1"'),
            },
            session_maker,
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)

        result = await enricher.enrich(EntityKind.REPOSITORY, repository_id)

        assert result.outcome == EnrichmentOutcome.ENRICHED
        assert handler.writes == 2
        async with session_maker() as db:
            watchers = (
                await db.execute(select(func.count(Contributor.id)).where(Contributor.username.like("watcher%")))
            ).scalar()
        assert watchers == 2

    async def test_attempt_ceiling(self, session_maker, make_settings) -> None:
        """A permanently failing entity is tried max_enrichment_attempts times, then skipped."""
        enricher = make_enricher(session_maker, make_settings, FakeGitHub({}))
        repository_id = await add_repository(session_maker)

        outcomes = [(await enricher.enrich(EntityKind.REPOSITORY, repository_id)).outcome for _ in range(4)]

        assert outcomes == [EnrichmentOutcome.FAILED] * 3 + [EnrichmentOutcome.SKIPPED]
        async with session_maker() as db:
            repository = await db.get(Repository, repository_id)
            assert await enricher.select_candidates(db, EntityKind.REPOSITORY, 10) == []
            assert await count_pending_enrichment(db, 3) == 0
        assert repository.enrichment_attempts == 3
        assert not repository.is_enriched
        assert "404" in repository.last_error

    async def test_rate_limit_refunds_attempt(self, session_maker, make_settings) -> None:
        handler = FakeGitHub(
            {"/repos/octo/demo": httpx.Response(429, headers={"retry-after": "0"}, text="slow down")}
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)

        result = await enricher.enrich(EntityKind.REPOSITORY, repository_id)

        assert result.outcome == EnrichmentOutcome.DEFERRED
        async with session_maker() as db:
            repository = await db.get(Repository, repository_id)
        assert repository.enrichment_attempts == 0


class TestEnrichmentStage:
    async def test_run_reports_failures_without_aborting(self, session_maker, make_settings) -> None:
        handler = FakeGitHub(
            {
                "/repos/octo/demo": (REPO_PAYLOAD, '"r1"'),
                "/repos/octo/demo/languages": ({}, '"l1"'),
                "/user/1": ({"id": 1, "login": "octo", "followers": 3}, '"u1"'),
                "/users/octo/orgs": ([{"login": "octo-org"}], '"o1"'),
                "/users/octo/repos": ([{"language": "Go"}], '"p1"'),
            }
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        await add_repository(session_maker)
        async with session_maker() as db, db.begin():
            db.add(Repository(external_id=11, full_name="octo/gone", name="gone"))
            db.add(Contributor(external_id="placeholder:x@example.com", is_placeholder=True))

        report = await enricher.run()

        # octo/demo, then its owner found during the same run
        assert report.items_processed == 2
        assert len(report.errors) == 1
        assert "repository" in report.errors[0]
        async with session_maker() as db:
            owner = (await db.execute(select(Contributor).where(Contributor.username == "octo"))).scalar_one()
            placeholder = (
                await db.execute(select(Contributor).where(Contributor.is_placeholder.is_(True)))
            ).scalar_one()
        assert owner.is_enriched
        assert owner.organizations == ["octo-org"]
        assert owner.role_classification == "Backend Developer"
        assert placeholder.enrichment_attempts == 0


ALICE = {"id": 2, "login": "alice"}
BOB = {"id": 3, "login": "bob"}


def git_commit(sha: str, **extra) -> dict:
    return {
        "sha": sha,
        "commit": {
            "author": {"name": "Alice", "email": "alice@example.com", "date": "2024-05-01T10:00:00Z"},
            "message": "Add cache",
        },
        "author": ALICE,
        "parents": [{"sha": "0000000"}],
        **extra,
    }


async def add_author(session_maker) -> int:
    async with session_maker() as db, db.begin():
        alice = Contributor(external_id="2", username="alice")
        db.add(alice)
        await db.flush()
        return alice.id


class TestMergeRequestEnrichment:
    """Tests for enriching a pull request with its commits and reviews."""

    async def test_enriches_state_reviews_and_commits(self, session_maker, make_settings) -> None:
        handler = FakeGitHub(
            {
                "/repos/octo/demo/pulls/7": (
                    {
                        "number": 7,
                        "title": "Add cache",
                        "state": "closed",
                        "merged_at": "2024-05-02T10:00:00Z",
                        "updated_at": "2024-05-02T10:00:00Z",
                        "user": ALICE,
                        "base": {"ref": "main", "repo": REPO_PAYLOAD},
                        "head": {"ref": "cache"},
                    },
                    '"m1"',
                ),
                "/repos/octo/demo/pulls/7/commits": ([git_commit("abc1234")], '"c1"'),
                "/repos/octo/demo/pulls/7/reviews": (
                    [
                        {"user": BOB, "state": "COMMENTED"},
                        {"user": BOB, "state": "APPROVED"},
                        {"user": ALICE, "state": "COMMENTED"},
                    ],
                    '"v1"',
                ),
            }
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)
        alice_id = await add_author(session_maker)
        async with session_maker() as db, db.begin():
            merge_request = MergeRequest(
                external_id=7,
                repository_id=repository_id,
                author_id=alice_id,
                title="Add cache",
                state="open",
            )
            db.add(merge_request)
            await db.flush()
            merge_request_id = merge_request.id

        result = await enricher.enrich(EntityKind.MERGE_REQUEST, merge_request_id)

        assert result.outcome == EnrichmentOutcome.ENRICHED
        async with session_maker() as db:
            merge_request = await db.get(MergeRequest, merge_request_id)
            bob = (await db.execute(select(Contributor).where(Contributor.username == "bob"))).scalar_one()
            alice = await db.get(Contributor, alice_id)
            commit = (await db.execute(select(Commit).where(Commit.sha == "abc1234"))).scalar_one()
        assert merge_request.is_enriched
        assert merge_request.state == "merged"
        assert merge_request.merged_at is not None
        assert merge_request.review_count == 3
        # The author reviewing their own pull request is not a reviewer
        assert merge_request.reviewer_ids == [bob.id]
        assert bob.code_reviews == 1
        assert commit.pull_request_id == merge_request_id
        assert commit.contributor_id == alice_id
        assert alice.pull_requests_merged == 1
        assert alice.direct_commits == 1


class TestCommitEnrichment:
    """Tests for replacing a commit's unknown-file row with its file list."""

    async def test_file_rows_replace_unknown_file(self, session_maker, make_settings) -> None:
        files = [
            {"filename": "src/app.py", "status": "modified", "additions": 12, "deletions": 3},
            {"filename": "README.md", "status": "added", "additions": 5, "deletions": 0},
        ]
        handler = FakeGitHub(
            {"/repos/octo/demo/commits/c0ffee1": (git_commit("c0ffee1", files=files), '"f1"')}
        )
        enricher = make_enricher(session_maker, make_settings, handler)
        repository_id = await add_repository(session_maker)
        alice_id = await add_author(session_maker)
        async with session_maker() as db, db.begin():
            commit = Commit(sha="c0ffee1", repository_id=repository_id, contributor_id=alice_id)
            db.add(commit)
            await db.flush()
            commit_id = commit.id

        result = await enricher.enrich(EntityKind.COMMIT, commit_id)

        assert result.outcome == EnrichmentOutcome.ENRICHED
        async with session_maker() as db:
            rows = (await db.execute(select(Commit).where(Commit.sha == "c0ffee1"))).scalars().all()
            alice = await db.get(Contributor, alice_id)
            link = (await db.execute(select(ContributorRepositoryLink))).scalar_one()
            assert await count_pending_enrichment(db, 3) == 2
        assert sorted(row.filename for row in rows) == ["README.md", "src/app.py"]
        assert all(row.is_enriched for row in rows)
        assert alice.direct_commits == 1
        assert alice.last_contribution is not None
        assert (link.commit_count, link.lines_added, link.lines_removed) == (1, 17, 3)
