import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from content_identity.config import Config
from content_identity.errors import DeadlineExceeded, ManifestFetchError, ManifestValidationError, VerificationError
from content_identity.models.records import (
    ContentState,
    IDENTITY_REGEX,
    Manifest,
    PlatformBinding,
    RegistryEntry,
    UploadResult,
    VerificationRecord,
)
from content_identity.service.backoff import Deadline
from content_identity.service.content_store import ContentStore
from content_identity.service.hashing import content_hash as hash_content, mask
from content_identity.service.manifest_builder import build_manifest, serialize_manifest, verify_content
from content_identity.service.manifest_cache import ManifestCache
from content_identity.service.manifest_resolver import ManifestResolver
from content_identity.service.platform_verifier import PlatformVerifier
from content_identity.service.platforms import default_platforms
from content_identity.service.providers import build_providers
from content_identity.service.registry_client import RegistryClient, Web3RegistryContract
from content_identity.service.upload_orchestrator import UploadOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    content_hash: str
    upload: UploadResult
    manifest: Manifest
    manifest_uri: str
    entry: RegistryEntry


class ContentIdentityService:
    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        resolver: ManifestResolver,
        registry: RegistryClient,
        verifier: PlatformVerifier,
        store: ContentStore,
    ):
        self.orchestrator = orchestrator
        self.resolver = resolver
        self.registry = registry
        self.verifier = verifier
        self.store = store

    @classmethod
    def from_config(cls, database_url: str = None) -> "ContentIdentityService":
        """Wire every pipeline stage from environment configuration."""
        cache = ManifestCache()
        resolver = ManifestResolver(cache=cache)
        registry = RegistryClient(Web3RegistryContract())
        orchestrator = UploadOrchestrator(build_providers(Config.load_providers()))
        verifier = PlatformVerifier(resolver, default_platforms(), registry=registry)
        return cls(orchestrator, resolver, registry, verifier, ContentStore(database_url))

    async def _db(self, operation, *args, **kwargs):
        # SQLAlchemy sessions block; keep them off the event loop
        return await run_in_threadpool(operation, *args, **kwargs)

    def _advance(self, content_hash: str, target: ContentState, **kwargs) -> None:
        current = self.store.get_state(content_hash)
        if current is not None and not current.can_advance_to(target):
            # already further along, e.g. re-registering identical bytes
            logger.debug(f"Content {content_hash[:18]}... stays in {current.value}")
            return
        self.store.advance_state(content_hash, target, **kwargs)

    async def register_content(
        self,
        data: bytes,
        identity: str,
        filename: str = "content",
        signer_key: Optional[str] = None,
        deadline_seconds: Optional[float] = None,
    ) -> Registration:
        """Upload content, publish its signed manifest and anchor it on the registry."""
        if not re.match(IDENTITY_REGEX, identity or ""):
            raise ValueError(f"Invalid creator identity: {identity!r}")
        deadline = Deadline(deadline_seconds)
        digest = hash_content(data)
        signer_key = signer_key or Config.SIGNER_PRIVATE_KEY or None

        logger.info(f"Starting registration for content_hash={digest[:18]}... ({len(data)} bytes)")

        upload = await self.orchestrator.upload(data, filename, deadline)
        await self._db(self.store.record_upload, digest, upload)
        await self._db(self._advance, digest, ContentState.UPLOADED, cid=upload.cid)

        manifest = build_manifest(upload.cid, digest, identity, private_key=signer_key)
        manifest_upload = await self.orchestrator.upload(serialize_manifest(manifest), "manifest.json", deadline)
        manifest_uri = f"ipfs://{manifest_upload.cid}"
        await self._db(self.store.save_manifest, manifest, manifest_uri)
        await self._db(self._advance, digest, ContentState.MANIFEST_PUBLISHED, manifest_uri=manifest_uri)
        logger.info(f"Published manifest for {digest[:18]}... at {mask(manifest_uri)}")

        entry = await self._db(self.store.get_registry_entry, digest)
        if entry is None:
            entry = await self.registry.anchor(digest, identity, deadline)
            entry = await self._db(self.store.save_registry_entry, entry)
        else:
            logger.info(f"Content {digest[:18]}... already has a registry entry, reusing it")
        if entry.identity != identity:
            logger.warning(f"Content {digest[:18]}... was anchored earlier by {entry.identity}")
        await self._db(self._advance, digest, ContentState.REGISTRY_ANCHORED)

        return Registration(
            content_hash=digest,
            upload=upload,
            manifest=manifest,
            manifest_uri=manifest_uri,
            entry=entry,
        )

    async def check_content(self, data: bytes, manifest_uri: str) -> Manifest:
        """Re-validate an identity claim: manifest must be valid and match the bytes."""
        manifest = await self.resolver.resolve(manifest_uri)
        verify_content(manifest, data)
        return manifest

    async def resolve_entry(self, content_hash: str) -> Optional[RegistryEntry]:
        entry = await self.registry.resolve(content_hash)
        if entry is not None:
            stored = await self._db(self.store.get_registry_entry, entry.content_hash)
            if stored is not None:
                return stored
        return entry

    def _bind(self, url: str, manifest_uri: str) -> PlatformBinding:
        binding = self.verifier.parse_binding(url, manifest_uri)
        self.store.upsert_binding(binding)
        return binding

    async def submit_binding(
        self, url: str, manifest_uri: str, deadline: Optional[Deadline] = None
    ) -> PlatformBinding:
        """Parse and store a binding; a later submission for the same item supersedes it."""
        binding = await self._db(self._bind, url, manifest_uri)
        await self._mark_binding(manifest_uri, deadline)
        return binding

    async def _mark_binding(self, manifest_uri: str, deadline: Optional[Deadline]) -> None:
        try:
            manifest = await self.resolver.resolve(manifest_uri, deadline)
        except (ManifestFetchError, ManifestValidationError, DeadlineExceeded) as e:
            logger.info(f"Lifecycle state not updated, manifest {mask(manifest_uri)} unusable: {e}")
            return
        await self._db(self._advance_known, manifest.content_hash, ContentState.BINDING_SUBMITTED)

    def _advance_known(self, content_hash: str, target: ContentState) -> None:
        # bindings may point at content registered elsewhere; only track our own
        if self.store.get_state(content_hash) is not None:
            self._advance(content_hash, target)

    async def verify_binding(self, binding: PlatformBinding, deadline: Optional[Deadline] = None) -> VerificationRecord:
        record = await self.verifier.verify(binding, deadline)
        await self._db(self._save_record, record)
        return record

    async def bind_and_verify(self, url: str, manifest_uri: str) -> VerificationRecord:
        deadline = Deadline(Config.VERIFY_DEADLINE)
        try:
            binding = await self.submit_binding(url, manifest_uri, deadline)
        except VerificationError as e:
            record = self.verifier.parse_failure(url, manifest_uri, e)
            await self._db(self.store.append_verification, record)
            return record
        return await self.verify_binding(binding, deadline)

    async def verify_batch(
        self, items: List[Tuple[str, str]], deadline_seconds: Optional[float] = None
    ) -> List[VerificationRecord]:
        """Store and verify (url, manifest_uri) pairs concurrently under one deadline.

        The budget starts before anything else runs. Manifests are resolved only
        inside the concurrent verification, and lifecycle state follows each record.
        """
        deadline = Deadline(Config.VERIFY_DEADLINE if deadline_seconds is None else deadline_seconds)
        bindings = []
        records: List[Optional[VerificationRecord]] = []
        for url, manifest_uri in items:
            try:
                bindings.append(await self._db(self._bind, url, manifest_uri))
                records.append(None)
            except VerificationError as e:
                record = self.verifier.parse_failure(url, manifest_uri, e)
                await self._db(self.store.append_verification, record)
                records.append(record)

        verified = iter(await self.verifier.verify_many(bindings, deadline=deadline))
        results = []
        for record in records:
            if record is None:
                record = next(verified)
                await self._db(self._save_record, record)
            results.append(record)
        return results

    def _save_record(self, record: VerificationRecord) -> None:
        self.store.append_verification(record)
        if not record.content_hash or self.store.get_state(record.content_hash) is None:
            return
        self._advance(record.content_hash, ContentState.BINDING_SUBMITTED)
        target = ContentState.VERIFIED if record.verified else ContentState.VERIFICATION_FAILED
        self._advance(record.content_hash, target)

    async def history(self, platform: str, external_id: str) -> List[VerificationRecord]:
        return await self._db(self.store.list_verifications, platform, external_id)
