import asyncio
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import (
    ConfigurationError,
    FetchFailed,
    NotFound,
    RateLimitExceeded,
    SecondaryRateLimitExceeded,
    TransientFetchFailure,
)
from src.services.retry_policy import RetryPolicy

logger = structlog.get_logger()


@dataclass(frozen=True)
class FetchResult:
    """A successful (2xx) GitHub response."""

    endpoint: str
    payload: Any
    etag: str | None = None
    rate_limit_remaining: int | None = None
    next_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


class NotModified:
    """Returned for 304 responses to a conditional request."""

    def __repr__(self) -> str:
        return "NOT_MODIFIED"


NOT_MODIFIED = NotModified()


class Endpoints:
    """Paths of the GitHub REST resources the pipeline reads."""

    @staticmethod
    def repository(full_name: str) -> str:
        return f"/repos/{full_name}"

    @staticmethod
    def repository_languages(full_name: str) -> str:
        return f"/repos/{full_name}/languages"

    @staticmethod
    def pull_requests(full_name: str) -> str:
        return f"/repos/{full_name}/pulls"

    @staticmethod
    def pull_request(full_name: str, number: int) -> str:
        return f"/repos/{full_name}/pulls/{number}"

    @staticmethod
    def pull_request_commits(full_name: str, number: int) -> str:
        return f"/repos/{full_name}/pulls/{number}/commits"

    @staticmethod
    def pull_request_reviews(full_name: str, number: int) -> str:
        return f"/repos/{full_name}/pulls/{number}/reviews"

    @staticmethod
    def commit(full_name: str, sha: str) -> str:
        return f"/repos/{full_name}/commits/{sha}"

    @staticmethod
    def user(user_id: str | int) -> str:
        return f"/user/{user_id}"

    @staticmethod
    def user_organizations(login: str) -> str:
        return f"/users/{login}/orgs"

    @staticmethod
    def user_repositories(login: str) -> str:
        return f"/users/{login}/repos?per_page=100&sort=pushed"


def _parse_int(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class GitHubService:
    """Rate-limited client for the GitHub REST API.

    Every request goes through one ``RetryPolicy`` and an
    ``asyncio.Semaphore`` that bounds in-flight requests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings or default_settings
        if not self.settings.github_token:
            raise ConfigurationError("GITHUB_TOKEN is not configured")

        self.base_url = self.settings.github_api_base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {self.settings.github_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self.settings.github_api_version,
        }
        self._client = client or httpx.AsyncClient(timeout=self.settings.request_timeout_seconds)
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(self.settings.request_concurrency)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "GitHubService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}{endpoint}"

    def _retry_after(self, response: httpx.Response) -> float:
        retry_after = response.headers.get("retry-after")
        if retry_after is not None:
            try:
                return float(retry_after)
            except ValueError:
                pass
        reset = _parse_int(response.headers.get("x-ratelimit-reset"))
        if reset is not None:
            return max(reset - time.time(), 0.0) + 1.0
        return self.settings.default_rate_limit_wait_seconds

    def _interpret(self, endpoint: str, response: httpx.Response) -> FetchResult | NotModified:
        status = response.status_code
        remaining = _parse_int(response.headers.get("x-ratelimit-remaining"))

        if status == 304:
            return NOT_MODIFIED

        if 200 <= status < 300:
            next_link = response.links.get("next") or {}
            return FetchResult(
                endpoint=endpoint,
                payload=response.json() if response.content else None,
                etag=response.headers.get("etag"),
                rate_limit_remaining=remaining,
                next_url=next_link.get("url"),
                headers=dict(response.headers),
            )

        body = response.text
        if status in (403, 429):
            if "secondary rate limit" in body.lower():
                raise SecondaryRateLimitExceeded(
                    f"Secondary rate limit hit for {endpoint}",
                    retry_after=self._retry_after(response),
                )
            if status == 429 or remaining == 0:
                raise RateLimitExceeded(
                    f"Rate limit exhausted for {endpoint}",
                    retry_after=self._retry_after(response),
                )
        if status == 404:
            raise NotFound(status, body)
        if status >= 500:
            raise TransientFetchFailure(f"GitHub API returned {status} for {endpoint}")
        raise FetchFailed(status, body)

    async def _request_once(
        self,
        endpoint: str,
        etag: str | None,
        params: Mapping[str, Any] | None,
    ) -> FetchResult | NotModified:
        headers = dict(self.headers)
        if etag:
            headers["If-None-Match"] = etag

        async with self._semaphore:
            try:
                response = await self._client.get(self._url(endpoint), headers=headers, params=params)
            except httpx.TransportError as exc:
                raise TransientFetchFailure(f"Network error for {endpoint}: {exc}") from exc

        return self._interpret(endpoint, response)

    async def fetch(
        self,
        endpoint: str,
        etag: str | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> FetchResult | NotModified:
        """GET an endpoint, conditionally when ``etag`` is given."""
        result = await self.retry_policy.call(self._request_once, endpoint, etag, params)
        if isinstance(result, FetchResult) and result.rate_limit_remaining is not None:
            logger.debug(
                "GitHub request completed",
                endpoint=endpoint,
                rate_limit_remaining=result.rate_limit_remaining,
            )
        return result

    async def paginate(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> AsyncIterator[FetchResult]:
        """Yield pages by following ``Link: rel="next"`` headers."""
        url: str | None = endpoint
        page_params = params
        pages = 0
        while url and (max_pages is None or pages < max_pages):
            result = await self.fetch(url, params=page_params)
            if not isinstance(result, FetchResult):
                return
            yield result
            pages += 1
            url = result.next_url
            # The next link already carries the query string
            page_params = None

    async def list_pull_requests(
        self,
        full_name: str,
        state: str = "closed",
        per_page: int = 100,
        max_pages: int | None = None,
    ) -> AsyncIterator[FetchResult]:
        """Iterate pull request pages, most recently updated first."""
        params = {"state": state, "sort": "updated", "direction": "desc", "per_page": per_page}
        async for page in self.paginate(
            Endpoints.pull_requests(full_name), params=params, max_pages=max_pages
        ):
            yield page

    async def list_all(self, endpoint: str, per_page: int = 100, max_pages: int = 10) -> list[Any]:
        """Collect every item of a paginated list endpoint."""
        items: list[Any] = []
        async for page in self.paginate(endpoint, params={"per_page": per_page}, max_pages=max_pages):
            items.extend(page.payload or [])
        return items

    async def get_rate_limit(self) -> dict:
        """Check current rate limit status."""
        result = await self.fetch("/rate_limit")
        return result.payload if isinstance(result, FetchResult) else {}
