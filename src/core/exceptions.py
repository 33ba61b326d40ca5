"""Exceptions raised by the ingestion, enrichment and ranking pipeline."""


class PipelineError(Exception):
    """Base exception for pipeline failures."""


class ConfigurationError(PipelineError):
    """Raised when required configuration is missing. Aborts the run."""


class GitHubApiError(PipelineError):
    """Base exception for GitHub API failures."""


class RateLimitExceeded(GitHubApiError):
    """Raised when the rate limit retry budget is exhausted."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class SecondaryRateLimitExceeded(RateLimitExceeded):
    """
    Raised when GitHub's secondary rate limit (abuse detection) is triggered.

    Secondary limits come from bursts or too many concurrent requests and
    get a smaller retry budget than the primary limit.
    """


class TransientFetchFailure(GitHubApiError):
    """Raised for 5xx responses and network errors once retries are spent."""


class FetchFailed(GitHubApiError):
    """Raised for non-retryable, non-2xx responses."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"GitHub API returned {status}: {body[:200]}")
        self.status = status
        self.body = body


class NotFound(FetchFailed):
    """Raised when the requested resource does not exist (404)."""


class MalformedPayload(PipelineError):
    """Raised when a raw payload is missing required fields."""


class AlreadyRunning(PipelineError):
    """Raised when a pipeline type already has an active run."""

    def __init__(self, pipeline_type: str):
        super().__init__(f"Pipeline {pipeline_type} is already running")
        self.pipeline_type = pipeline_type


class UnknownPipelineType(PipelineError):
    """Raised for a pipeline type outside the supported set."""


class InvalidCronExpression(PipelineError):
    """Raised when a schedule's cron expression cannot be parsed."""


class InvalidScheduleParameters(PipelineError):
    """Raised when schedule parameters are not valid settings overrides."""
