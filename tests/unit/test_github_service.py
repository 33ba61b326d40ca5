import httpx
import pytest

from src.core.config import Settings
from src.core.exceptions import (
    ConfigurationError,
    FetchFailed,
    NotFound,
    RateLimitExceeded,
    SecondaryRateLimitExceeded,
    TransientFetchFailure,
)
from src.services.github_service import NOT_MODIFIED, FetchResult, GitHubService
from src.services.retry_policy import RetryPolicy


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "redis_url": "redis://localhost:6379/0",
        "github_token": "test-token",
    }
    values.update(overrides)
    return Settings(**values)


class Recorder:
    """MockTransport handler that replays a fixed list of responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def make_service(handler: Recorder, sleeps: list[float] | None = None) -> GitHubService:
    async def fake_sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)

    return GitHubService(
        make_settings(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_policy=RetryPolicy(sleep=fake_sleep),
    )


class TestGitHubServiceResponses:
    """Tests for status code interpretation."""

    async def test_success_returns_payload_and_etag(self) -> None:
        """A 200 carries the payload, ETag and remaining quota."""
        handler = Recorder(
            httpx.Response(
                200,
                json={"id": 1, "full_name": "octo/demo"},
                headers={"etag": '"abc"', "x-ratelimit-remaining": "4999"},
            )
        )
        service = make_service(handler)

        result = await service.fetch("/repos/octo/demo")

        assert isinstance(result, FetchResult)
        assert result.payload["full_name"] == "octo/demo"
        assert result.etag == '"abc"'
        assert result.rate_limit_remaining == 4999
        assert handler.requests[0].headers["authorization"] == "Bearer test-token"

    async def test_not_modified_on_conditional_request(self) -> None:
        """A 304 to a conditional request is NOT_MODIFIED, not an error."""
        handler = Recorder(httpx.Response(304))
        service = make_service(handler)

        result = await service.fetch("/repos/octo/demo", etag='"abc"')

        assert result is NOT_MODIFIED
        assert handler.requests[0].headers["if-none-match"] == '"abc"'

    async def test_not_found_is_not_retried(self) -> None:
        """A 404 is permanent and makes exactly one request."""
        handler = Recorder(httpx.Response(404, text="Not Found"))
        service = make_service(handler)

        with pytest.raises(NotFound) as exc_info:
            await service.fetch("/repos/octo/missing")

        assert exc_info.value.status == 404
        assert len(handler.requests) == 1

    async def test_other_client_errors_fail_immediately(self) -> None:
        """A 422 is neither retried nor treated as a rate limit."""
        handler = Recorder(httpx.Response(422, text="Validation Failed"))
        service = make_service(handler)

        with pytest.raises(FetchFailed) as exc_info:
            await service.fetch("/repos/octo/demo/pulls")

        assert exc_info.value.status == 422
        assert len(handler.requests) == 1

    def test_missing_token_is_a_configuration_error(self) -> None:
        """The client refuses to start without a token."""
        with pytest.raises(ConfigurationError):
            GitHubService(make_settings(github_token=None))


class TestGitHubServiceRetries:
    """Tests for per-class retry budgets."""

    async def test_primary_rate_limit_budget(self) -> None:
        """429 is retried twice, honouring Retry-After, then surfaces."""
        sleeps: list[float] = []
        handler = Recorder(httpx.Response(429, headers={"retry-after": "7"}, text="rate limited"))
        service = make_service(handler, sleeps)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await service.fetch("/repos/octo/demo")

        assert not isinstance(exc_info.value, SecondaryRateLimitExceeded)
        assert len(handler.requests) == 3
        assert sleeps == [7.0, 7.0]

    async def test_exhausted_quota_on_403(self) -> None:
        """403 with no remaining quota is a primary rate limit."""
        handler = Recorder(
            httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "retry-after": "1"},
                text="API rate limit exceeded",
            )
        )
        service = make_service(handler)

        with pytest.raises(RateLimitExceeded):
            await service.fetch("/repos/octo/demo")

        assert len(handler.requests) == 3

    async def test_secondary_rate_limit_budget(self) -> None:
        """Secondary limits get a single retry."""
        handler = Recorder(
            httpx.Response(
                403,
                headers={"retry-after": "60"},
                text="You have exceeded a secondary rate limit.",
            )
        )
        service = make_service(handler)

        with pytest.raises(SecondaryRateLimitExceeded):
            await service.fetch("/repos/octo/demo")

        assert len(handler.requests) == 2

    async def test_server_errors_back_off_then_fail(self) -> None:
        """5xx is retried three times before giving up."""
        sleeps: list[float] = []
        handler = Recorder(httpx.Response(502, text="Bad Gateway"))
        service = make_service(handler, sleeps)

        with pytest.raises(TransientFetchFailure):
            await service.fetch("/repos/octo/demo")

        assert len(handler.requests) == 4
        assert len(sleeps) == 3

    async def test_recovers_after_transient_error(self) -> None:
        """A success after a 500 is returned normally."""
        handler = Recorder(
            httpx.Response(500, text="oops"),
            httpx.Response(200, json={"id": 1}),
        )
        service = make_service(handler)

        result = await service.fetch("/repos/octo/demo")

        assert isinstance(result, FetchResult)
        assert result.payload == {"id": 1}
        assert len(handler.requests) == 2

    async def test_budgets_are_counted_per_error_class(self) -> None:
        """A rate limit does not consume the server error budget."""
        handler = Recorder(
            httpx.Response(500, text="oops"),
            httpx.Response(429, headers={"retry-after": "1"}, text="slow down"),
            httpx.Response(500, text="oops"),
            httpx.Response(500, text="oops"),
            httpx.Response(200, json={"id": 1}),
        )
        service = make_service(handler)

        result = await service.fetch("/repos/octo/demo")

        assert isinstance(result, FetchResult)
        assert len(handler.requests) == 5


class TestGitHubServicePagination:
    """Tests for Link header pagination."""

    async def test_follows_next_links(self) -> None:
        """Pages are fetched until there is no next link."""
        next_url = "https://api.github.com/repos/octo/demo/pulls?page=2&per_page=1"
        handler = Recorder(
            httpx.Response(200, json=[{"number": 2}], headers={"link": f'<{next_url}>; rel="next"'}),
            httpx.Response(200, json=[{"number": 1}]),
        )
        service = make_service(handler)

        items = await service.list_all("/repos/octo/demo/pulls", per_page=1)

        assert [item["number"] for item in items] == [2, 1]
        assert len(handler.requests) == 2
        assert handler.requests[1].url.params["page"] == "2"

    async def test_max_pages_bounds_the_scan(self) -> None:
        """max_pages stops pagination even when more pages exist."""
        next_url = "https://api.github.com/repos/octo/demo/pulls?page=2"
        handler = Recorder(
            httpx.Response(200, json=[{"number": 1}], headers={"link": f'<{next_url}>; rel="next"'}),
        )
        service = make_service(handler)

        pages = [page async for page in service.list_pull_requests("octo/demo", max_pages=1)]

        assert len(pages) == 1
        assert handler.requests[0].url.params["state"] == "closed"
        assert handler.requests[0].url.params["sort"] == "updated"
