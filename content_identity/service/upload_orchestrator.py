import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

from content_identity.errors import (
    AllProvidersExhausted,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from content_identity.models.records import ProviderFailure, UploadResult
from content_identity.service.backoff import BackoffPolicy, Deadline, Sleep, retry_async
from content_identity.service.hashing import mask
from content_identity.service.providers import UploadProvider

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """Push content through an ordered provider pool, one provider at a time.

    Providers are never tried in parallel: every attempt is a billable
    write. Each provider gets a bounded retry budget for transient
    failures; a permanent failure moves straight to the next provider.
    """

    def __init__(
        self,
        providers: Sequence[UploadProvider],
        policy: Optional[BackoffPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.providers = list(providers)
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep

    async def upload(
        self, data: bytes, filename: str = "content", deadline: Optional[Deadline] = None
    ) -> UploadResult:
        deadline = deadline or Deadline.none()
        started = time.monotonic()
        failures: List[ProviderFailure] = []

        logger.info(f"Starting upload of {len(data)} bytes across {len(self.providers)} providers")

        for provider in self.providers:
            deadline.check(f"upload:{provider.name}")
            attempts = 0

            async def attempt():
                nonlocal attempts
                attempts += 1
                return await provider.submit(data, filename, timeout=deadline.timeout(None))

            try:
                cid, _ = await retry_async(
                    attempt,
                    self.policy,
                    transient=(TransientProviderError,),
                    stage=f"upload:{provider.name}",
                    deadline=deadline,
                    sleep=self._sleep,
                )
            except ProviderError as e:
                kind = "permanent" if isinstance(e, PermanentProviderError) else "transient"
                failures.append(
                    ProviderFailure(
                        provider=provider.name,
                        attempts=attempts,
                        kind=kind,
                        message=str(e),
                        status_code=e.status_code,
                    )
                )
                logger.warning(
                    f"Provider {provider.name} failed after {attempts} attempt(s) ({kind}): {e}"
                )
                continue

            elapsed = time.monotonic() - started
            logger.info(
                f"Upload succeeded via {provider.name} after {attempts} attempt(s): "
                f"cid={mask(cid)}, elapsed={elapsed:.2f}s"
            )
            return UploadResult(
                cid=cid,
                provider=provider.name,
                attempts=attempts,
                elapsed=elapsed,
                failures=tuple(failures),
            )

        errors: Dict[str, str] = {f.provider: f"{f.kind}: {f.message}" for f in failures}
        logger.error(f"All {len(self.providers)} upload providers exhausted")
        raise AllProvidersExhausted(errors)
