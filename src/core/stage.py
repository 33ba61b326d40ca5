from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

# Returns True once a stop has been requested for the running pipeline
StopCheck = Callable[[], Awaitable[bool]]

MAX_REPORTED_ERRORS = 5


async def never_stop() -> bool:
    return False


@dataclass
class StageReport:
    """Outcome of one pipeline stage. Per-entity errors never abort the run."""

    items_processed: int = 0
    errors: list[str] = field(default_factory=list)
    deferred: int = 0
    stopped: bool = False

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def merge(self, other: "StageReport") -> None:
        self.items_processed += other.items_processed
        self.errors.extend(other.errors)
        self.deferred += other.deferred
        self.stopped = self.stopped or other.stopped

    def error_summary(self) -> str | None:
        if not self.errors:
            return None
        shown = "; ".join(self.errors[:MAX_REPORTED_ERRORS])
        hidden = len(self.errors) - MAX_REPORTED_ERRORS
        suffix = f" (+{hidden} more)" if hidden > 0 else ""
        return f"{len(self.errors)} item(s) failed: {shown}{suffix}"
