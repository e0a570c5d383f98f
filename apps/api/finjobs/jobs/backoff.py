"""Retry backoff policies."""

from __future__ import annotations

from dataclasses import dataclass

from finjobs.jobs.exceptions import InvalidRequest

BACKOFF_KINDS = ("exponential", "fixed")


@dataclass(frozen=True)
class BackoffPolicy:
    """Maps a failed attempt count to the delay before the next attempt.

    Attributes:
        kind: ``exponential`` or ``fixed``
        delay_ms: Base delay in milliseconds
        max_delay_ms: Upper bound applied to exponential growth
    """

    kind: str = "exponential"
    delay_ms: int = 5000
    max_delay_ms: int = 300_000

    def __post_init__(self):
        if self.kind not in BACKOFF_KINDS:
            raise InvalidRequest(
                f"Unknown backoff kind: {self.kind}",
                {"allowed": list(BACKOFF_KINDS)},
            )
        if self.delay_ms < 0:
            raise InvalidRequest("Backoff delay must not be negative")

    def delay_for(self, attempts: int) -> int:
        """Return the delay in milliseconds after ``attempts`` executions."""
        if self.kind == "fixed":
            return min(self.delay_ms, self.max_delay_ms)
        exponent = max(attempts - 1, 0)
        # Cap the exponent so huge attempt counts stay cheap
        exponent = min(exponent, 32)
        return min(self.delay_ms * (2**exponent), self.max_delay_ms)
