import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from content_identity.config import Config
from content_identity.errors import DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with bounded random jitter."""

    max_attempts: int = Config.RETRY_MAX_ATTEMPTS
    base_delay: float = Config.RETRY_BASE_DELAY
    max_delay: float = Config.RETRY_MAX_DELAY
    jitter: float = Config.RETRY_JITTER

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int, hint: Optional[float] = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.base_delay * (2 ** (attempt - 1))
        if hint is not None:
            delay = max(delay, hint)
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return min(delay, self.max_delay)


class Deadline:
    """Aggregate time budget for a multi-stage operation, checked between stages."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires = None if seconds is None else clock() + seconds

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        return max(0.0, self._expires - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired:
            raise DeadlineExceeded(stage)

    def timeout(self, per_call: Optional[float]) -> Optional[float]:
        """Clip a per-call timeout to what is left of the aggregate budget."""
        remaining = self.remaining()
        if remaining is None:
            return per_call
        if per_call is None:
            return remaining
        return min(per_call, remaining)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    transient: Tuple[Type[BaseException], ...],
    stage: str,
    deadline: Optional[Deadline] = None,
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Tuple[T, int]:
    """Run ``operation`` until it succeeds or stops failing transiently.

    Returns the result and the number of attempts it took. The last
    transient error is re-raised once ``policy.max_attempts`` is reached;
    any other exception propagates immediately.
    """
    deadline = deadline or Deadline.none()
    attempt = 0
    while True:
        attempt += 1
        deadline.check(stage)
        try:
            return await operation(), attempt
        except transient as e:
            if attempt >= policy.max_attempts:
                raise
            if on_retry:
                on_retry(attempt, e)
            wait = policy.delay(attempt, getattr(e, "retry_after", None))
            remaining = deadline.remaining()
            if remaining is not None and wait >= remaining:
                raise DeadlineExceeded(stage) from e
            logger.info(f"{stage}: attempt {attempt} failed transiently, retrying in {wait:.2f}s")
            await sleep(wait)
