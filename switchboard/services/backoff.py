import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``base * multiplier ** attempt`` capped at ``cap``.

    ``attempt`` is zero based for reconnects (first retry waits ``base``) and
    equals ``attempts_made`` for jobs.
    """

    base: float = 1.0
    multiplier: float = 2.0
    cap: float = 10.0
    max_attempts: Optional[int] = None

    def __post_init__(self) -> None:
        if self.base < 0 or self.cap < 0:
            raise ValueError("backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        attempt = max(attempt, 0)
        try:
            delay = self.base * (self.multiplier**attempt)
        except OverflowError:
            return self.cap
        return min(delay, self.cap)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts

    async def wait(self, attempt: int, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> float:
        """Sleep for the attempt's delay. Cancelling the caller cancels the wait."""
        delay = self.delay_for(attempt)
        await sleep(delay)
        return delay


# Client reconnect policies: quick failures cap at 10s, repeated abnormal closures at 30s.
RECONNECT_POLICY = BackoffPolicy(base=1.0, multiplier=2.0, cap=10.0, max_attempts=5)
ABNORMAL_CLOSE_POLICY = BackoffPolicy(base=1.0, multiplier=2.0, cap=30.0, max_attempts=5)
