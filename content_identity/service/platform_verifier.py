import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx

from content_identity.config import Config
from content_identity.errors import (
    AnchorMismatchError,
    DeadlineExceeded,
    ManifestFetchError,
    ManifestValidationError,
    ProofFetchError,
    ProofNotFoundError,
    RegistryRpcError,
    SignatureVerificationError,
    TimestampOutOfRangeError,
    VerificationError,
)
from content_identity.models.records import (
    PlatformBinding,
    VerificationOutcome,
    VerificationRecord,
)
from content_identity.service.backoff import Deadline
from content_identity.service.hashing import (
    controller_address,
    normalize_content_hash,
    recover_signer,
    same_address,
    sign_message,
)
from content_identity.service.manifest_resolver import ManifestResolver
from content_identity.service.platforms import PlatformRegistry, default_platforms

logger = logging.getLogger(__name__)

PROOF_TAG = "ci-proof:v1"
PROOF_PATTERN = re.compile(
    r"ci-proof:v1:(?P<hash>0x[0-9a-fA-F]{64}):(?P<issued>\d{1,12}):(?P<sig>0x[0-9a-fA-F]{130})"
)


@dataclass(frozen=True)
class EmbeddedProof:
    content_hash: str
    issued_at: int
    signature: str

    @property
    def payload(self) -> bytes:
        return proof_payload(self.content_hash, self.issued_at)


def proof_payload(content_hash: str, issued_at: int) -> bytes:
    """Exact bytes a proof signature covers."""
    return f"{PROOF_TAG}:{normalize_content_hash(content_hash)}:{int(issued_at)}".encode("utf-8")


def make_proof_line(content_hash: str, private_key: str, issued_at: Optional[int] = None) -> str:
    """Text a creator pastes into a platform description to attest ``content_hash``."""
    content_hash = normalize_content_hash(content_hash)
    if issued_at is None:
        issued_at = int(datetime.now(timezone.utc).timestamp())
    signature = sign_message(proof_payload(content_hash, issued_at), private_key)
    return f"{PROOF_TAG}:{content_hash}:{issued_at}:{signature}"


def find_proof(text: str, content_hash: Optional[str] = None) -> EmbeddedProof:
    """Pick the embedded proof for ``content_hash``, or the first one present."""
    proofs = [
        EmbeddedProof(m.group("hash").lower(), int(m.group("issued")), m.group("sig"))
        for m in PROOF_PATTERN.finditer(text or "")
    ]
    if not proofs:
        raise ProofNotFoundError("No content identity proof found in platform text")
    if content_hash:
        for proof in proofs:
            if proof.content_hash == content_hash.lower():
                return proof
    return proofs[0]


class _Attempt:
    def __init__(self):
        self.content_hash: Optional[str] = None
        self.signer: Optional[str] = None


class PlatformVerifier:
    def __init__(
        self,
        resolver: ManifestResolver,
        platforms: Optional[PlatformRegistry] = None,
        registry=None,
        max_age_days: int = None,
        clock_skew: int = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = None,
    ):
        self.resolver = resolver
        self.platforms = platforms or default_platforms()
        self.registry = registry
        self.max_age = timedelta(days=Config.PROOF_MAX_AGE_DAYS if max_age_days is None else max_age_days)
        self.clock_skew = timedelta(seconds=Config.PROOF_CLOCK_SKEW if clock_skew is None else clock_skew)
        self.timeout = timeout or Config.PLATFORM_TIMEOUT
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def parse_binding(self, url: str, manifest_uri: str, submitted_at: Optional[datetime] = None) -> PlatformBinding:
        matcher, external_id = self.platforms.classify(url)
        return PlatformBinding(
            platform=matcher.name,
            external_id=external_id,
            proof_location=url.strip(),
            manifest_uri=manifest_uri,
            submitted_at=submitted_at or self._clock(),
        )

    async def fetch_proof_text(self, binding: PlatformBinding, deadline: Optional[Deadline] = None) -> str:
        deadline = deadline or Deadline.none()
        matcher = self.platforms.get(binding.platform)
        try:
            request = matcher.proof_request(binding.external_id)
        except ValueError as e:
            raise ProofFetchError(str(e)) from e

        deadline.check("platform:fetch")
        logger.info(f"Fetching {binding.platform} proof for {binding.external_id}")

        async with httpx.AsyncClient(
            timeout=deadline.timeout(self.timeout), transport=self._transport, follow_redirects=True
        ) as client:
            try:
                response = await client.get(request.url, params=request.params, headers=request.headers)
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"{binding.platform} metadata error: {e.response.status_code}")
                raise ProofFetchError(f"{binding.platform} metadata returned HTTP {e.response.status_code}") from e
            except httpx.RequestError as e:
                logger.error(f"Failed to reach {binding.platform} metadata endpoint: {e}")
                raise ProofFetchError(f"{binding.platform} metadata unreachable: {type(e).__name__}") from e
            except ValueError as e:
                raise ProofFetchError(f"{binding.platform} metadata is not JSON") from e

        if not isinstance(payload, dict):
            raise ProofFetchError(f"{binding.platform} metadata has unexpected shape")
        return matcher.extract_text(payload)

    def check_timestamp(self, proof: EmbeddedProof, now: datetime) -> None:
        # compared as epoch seconds; a forged issued value may lie outside datetime's range
        now_ts = now.timestamp()
        if proof.issued_at < now_ts - self.max_age.total_seconds():
            raise TimestampOutOfRangeError(
                f"Proof issued at {proof.issued_at} is older than {self.max_age.days} days"
            )
        if proof.issued_at > now_ts + self.clock_skew.total_seconds():
            raise TimestampOutOfRangeError(
                f"Proof issued at {proof.issued_at} is in the future beyond allowed clock skew"
            )

    async def _check_anchor(self, content_hash: str, identity: str, deadline: Deadline) -> None:
        deadline.check("registry:resolve")
        entry = await self.registry.resolve(content_hash, deadline)
        if entry is None:
            raise AnchorMismatchError("not_anchored", f"Content hash {content_hash[:18]}... is not anchored")
        if entry.identity != identity:
            raise AnchorMismatchError(
                "identity_mismatch", f"Content hash is anchored to {entry.identity}, manifest claims {identity}"
            )

    async def _run(self, binding: PlatformBinding, deadline: Deadline, attempt: _Attempt) -> None:
        deadline.check("manifest:resolve")
        manifest = await self.resolver.resolve(binding.manifest_uri, deadline)
        attempt.content_hash = manifest.content_hash

        if self.registry is not None:
            await self._check_anchor(manifest.content_hash, manifest.creator_did, deadline)

        text = await self.fetch_proof_text(binding, deadline)
        proof = find_proof(text, manifest.content_hash)
        if proof.content_hash != manifest.content_hash:
            raise SignatureVerificationError(
                f"Proof covers content hash {proof.content_hash[:18]}..., not {manifest.content_hash[:18]}..."
            )

        attempt.signer = recover_signer(proof.payload, proof.signature)
        controller = controller_address(manifest.creator_did)
        if not same_address(attempt.signer, controller):
            raise SignatureVerificationError(
                f"Proof signed by {attempt.signer}, but {manifest.creator_did} is controlled by {controller}"
            )

        self.check_timestamp(proof, self._clock())

    async def verify(self, binding: PlatformBinding, deadline: Optional[Deadline] = None) -> VerificationRecord:
        """Verify one binding; every failure becomes a reason-bearing record."""
        deadline = deadline or Deadline.none()
        attempt = _Attempt()
        reason = None
        detail = None
        try:
            await self._run(binding, deadline, attempt)
        except VerificationError as e:
            reason, detail = e.reason, str(e)
        except ManifestValidationError as e:
            reason, detail = "manifest_invalid", str(e)
        except ManifestFetchError as e:
            reason, detail = "manifest_unavailable", str(e)
        except RegistryRpcError as e:
            reason, detail = "registry_unavailable", str(e)
        except DeadlineExceeded as e:
            reason, detail = "deadline_exceeded", str(e)

        if reason and reason.endswith("_unavailable") and deadline.expired:
            # the per-call timeout was clipped by the aggregate budget
            reason = "deadline_exceeded"

        outcome = VerificationOutcome.FAILED if reason else VerificationOutcome.VERIFIED
        if reason:
            logger.warning(f"Verification of {binding.platform}/{binding.external_id} failed: {reason}: {detail}")
        else:
            logger.info(f"Verified {binding.platform}/{binding.external_id} signed by {attempt.signer}")

        return VerificationRecord(
            source_url=binding.proof_location,
            manifest_uri=binding.manifest_uri,
            outcome=outcome,
            checked_at=self._clock(),
            platform=binding.platform,
            external_id=binding.external_id,
            reason=reason,
            detail=detail,
            recovered_signer=attempt.signer,
            content_hash=attempt.content_hash,
        )

    def parse_failure(self, url: str, manifest_uri: str, error: VerificationError) -> VerificationRecord:
        return VerificationRecord(
            source_url=url,
            manifest_uri=manifest_uri,
            outcome=VerificationOutcome.FAILED,
            checked_at=self._clock(),
            reason=error.reason,
            detail=str(error),
        )

    async def verify_url(self, url: str, manifest_uri: str, deadline: Optional[Deadline] = None) -> VerificationRecord:
        try:
            binding = self.parse_binding(url, manifest_uri)
        except VerificationError as e:
            return self.parse_failure(url, manifest_uri, e)
        return await self.verify(binding, deadline)

    async def verify_many(
        self,
        bindings: List[PlatformBinding],
        deadline_seconds: float = None,
        deadline: Optional[Deadline] = None,
    ) -> List[VerificationRecord]:
        """Verify bindings concurrently under one aggregate deadline.

        Pass ``deadline`` when the budget already started running elsewhere.
        """
        if deadline is None:
            deadline = Deadline(Config.VERIFY_DEADLINE if deadline_seconds is None else deadline_seconds)
        return list(await asyncio.gather(*(self.verify(binding, deadline) for binding in bindings)))
