import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from content_identity.config import Config
from content_identity.errors import (
    ManifestFetchError,
    ManifestValidationError,
    SignatureVerificationError,
)
from content_identity.models.records import Manifest
from content_identity.service.backoff import Deadline
from content_identity.service.hashing import controller_address, mask, recover_signer, same_address
from content_identity.service.manifest_cache import ManifestCache

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("content_hash", "cid", "content_uri", "creator_did", "created_at")
SUPPORTED_ALGORITHMS = ("sha256",)


class ManifestResolver:
    def __init__(
        self,
        gateway_url: str = None,
        timeout: float = None,
        clock_skew: int = None,
        cache: Optional[ManifestCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = None,
    ):
        self.gateway_url = (gateway_url or Config.IPFS_GATEWAY_URL).rstrip("/")
        self.timeout = timeout or Config.MANIFEST_TIMEOUT
        self.clock_skew = timedelta(seconds=Config.MANIFEST_CLOCK_SKEW if clock_skew is None else clock_skew)
        self.cache = cache
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def fetch_url(self, uri: str) -> str:
        """Translate a manifest URI into the HTTP(S) URL it is fetched from."""
        if uri.startswith("ipfs://"):
            path = uri[len("ipfs://"):].lstrip("/")
            if not path:
                raise ManifestValidationError("uri", "ipfs:// URI carries no CID")
            return f"{self.gateway_url}/{path}"
        if uri.startswith("https://") or uri.startswith("http://"):
            return uri
        raise ManifestValidationError("uri", f"unsupported manifest URI scheme: {uri.split(':', 1)[0]}")

    async def fetch_document(self, uri: str, deadline: Optional[Deadline] = None) -> dict:
        deadline = deadline or Deadline.none()
        url = self.fetch_url(uri)
        deadline.check("manifest:fetch")

        logger.info(f"Fetching manifest {mask(uri)}")

        async with httpx.AsyncClient(
            timeout=deadline.timeout(self.timeout), transport=self._transport, follow_redirects=True
        ) as client:
            try:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"Manifest fetch error: {e.response.status_code} for {mask(uri)}")
                raise ManifestFetchError(uri, f"HTTP {e.response.status_code}") from e
            except httpx.RequestError as e:
                logger.error(f"Failed to fetch manifest {mask(uri)}: {type(e).__name__}")
                raise ManifestFetchError(uri, f"gateway unreachable ({type(e).__name__})") from e

        try:
            document = response.json()
        except ValueError as e:
            raise ManifestValidationError("body", "manifest is not valid JSON") from e
        if not isinstance(document, dict):
            raise ManifestValidationError("body", "manifest must be a JSON object")
        return document

    def validate(self, document: dict, fetched_at: Optional[datetime] = None) -> Manifest:
        """Validate a fetched manifest document, naming the first offending field."""
        fetched_at = fetched_at or self._clock()

        for name in REQUIRED_FIELDS:
            value = document.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ManifestValidationError(name, "required field is missing")

        try:
            manifest = Manifest(**document)
        except ValidationError as e:
            error = e.errors()[0]
            field = str(error["loc"][0]) if error.get("loc") else "body"
            raise ManifestValidationError(field, error.get("msg", "invalid value")) from e

        if manifest.algorithm not in SUPPORTED_ALGORITHMS:
            raise ManifestValidationError("algorithm", f"unsupported hash algorithm '{manifest.algorithm}'")

        if manifest.content_uri != f"ipfs://{manifest.cid}":
            raise ManifestValidationError("content_uri", "must be ipfs://<cid> for the declared cid")

        if manifest.created > fetched_at + self.clock_skew:
            raise ManifestValidationError(
                "created_at", f"timestamp {manifest.created_at} is ahead of fetch time beyond allowed skew"
            )

        if manifest.signature:
            self._check_signature(manifest)
        return manifest

    def _check_signature(self, manifest: Manifest) -> None:
        try:
            signer = recover_signer(bytes.fromhex(manifest.digest[2:]), manifest.signature)
            controller = controller_address(manifest.creator_did)
        except SignatureVerificationError as e:
            raise ManifestValidationError("signature", str(e)) from e
        if not same_address(signer, controller):
            raise ManifestValidationError(
                "signature", f"signature recovers {signer}, not the controller of {manifest.creator_did}"
            )

    async def _fetch_and_validate(self, uri: str, deadline: Optional[Deadline]) -> Manifest:
        document = await self.fetch_document(uri, deadline)
        return self.validate(document)

    async def resolve(self, uri: str, deadline: Optional[Deadline] = None) -> Manifest:
        if self.cache is None:
            return await self._fetch_and_validate(uri, deadline)
        return await self.cache.get_or_fetch(uri, lambda: self._fetch_and_validate(uri, deadline))

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5, transport=self._transport) as client:
                response = await client.get(self.gateway_url)
                return response.status_code < 500
        except httpx.RequestError as e:
            logger.warning(f"IPFS gateway health check failed: {e}")
            return False
