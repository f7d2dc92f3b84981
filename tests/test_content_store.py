from datetime import timedelta

import pytest

from content_identity.models.records import (
    ContentState,
    PlatformBinding,
    RegistryEntry,
    UploadResult,
    VerificationOutcome,
    VerificationRecord,
)
from content_identity.service.hashing import content_hash
from content_identity.service.manifest_builder import build_manifest
from tests.fakes import NOW

HASH = content_hash(b"stored content")
IDENTITY = "did:pkh:eip155:84532:0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"


def _binding(manifest_uri: str, minutes: int = 0) -> PlatformBinding:
    return PlatformBinding(
        platform="vimeo",
        external_id="76979871",
        proof_location="https://vimeo.com/76979871",
        manifest_uri=manifest_uri,
        submitted_at=NOW + timedelta(minutes=minutes),
    )


def _record(outcome: VerificationOutcome, reason: str = None) -> VerificationRecord:
    return VerificationRecord(
        source_url="https://vimeo.com/76979871",
        manifest_uri="ipfs://bafyM",
        outcome=outcome,
        checked_at=NOW,
        platform="vimeo",
        external_id="76979871",
        reason=reason,
    )


def test_binding_is_upserted_per_platform_item(store):
    store.upsert_binding(_binding("ipfs://bafyFirst"))
    store.upsert_binding(_binding("ipfs://bafySecond", minutes=5))

    binding = store.get_binding("vimeo", "76979871")
    assert binding.manifest_uri == "ipfs://bafySecond"
    assert binding.submitted_at == NOW + timedelta(minutes=5)
    assert store.get_binding("vimeo", "1") is None


def test_verification_records_are_append_only(store):
    first = store.append_verification(_record(VerificationOutcome.FAILED, "proof_missing"))
    second = store.append_verification(_record(VerificationOutcome.VERIFIED))

    history = store.list_verifications("vimeo", "76979871")
    assert second > first
    assert [r.outcome for r in history] == [VerificationOutcome.FAILED, VerificationOutcome.VERIFIED]
    assert history[0].reason == "proof_missing"
    assert history[1].checked_at == NOW


def test_registry_entry_is_insert_once(store):
    original = RegistryEntry(content_hash=HASH, identity=IDENTITY, anchored_at=NOW, transaction_hash="0xabc")
    assert store.save_registry_entry(original) == original

    later = RegistryEntry(content_hash=HASH, identity="did:ethr:0x" + "1" * 40, anchored_at=NOW + timedelta(days=1))
    assert store.save_registry_entry(later) == original
    assert store.get_registry_entry(HASH) == original


def test_manifest_round_trip(store):
    manifest = build_manifest("bafyContent", HASH, IDENTITY, created_at=NOW)
    store.save_manifest(manifest)
    store.save_manifest(manifest, "ipfs://bafyManifest")

    assert store.get_manifest(HASH) == manifest
    assert store.get_manifest_uri(HASH) == "ipfs://bafyManifest"
    assert store.get_manifest(content_hash(b"other")) is None


def test_upload_is_recorded_and_lifecycle_advances(store):
    store.record_upload(HASH, UploadResult(cid="bafyContent", provider="memory", attempts=1, elapsed=0.2))
    assert store.get_state(HASH) is None

    store.advance_state(HASH, ContentState.UPLOADED, cid="bafyContent")
    store.advance_state(HASH, ContentState.MANIFEST_PUBLISHED, manifest_uri="ipfs://bafyManifest")
    store.advance_state(HASH, ContentState.REGISTRY_ANCHORED)
    store.advance_state(HASH, ContentState.BINDING_SUBMITTED)
    store.advance_state(HASH, ContentState.VERIFICATION_FAILED)
    store.advance_state(HASH, ContentState.BINDING_SUBMITTED)
    store.advance_state(HASH, ContentState.VERIFIED)

    assert store.get_state(HASH) == ContentState.VERIFIED


def test_invalid_lifecycle_transitions_raise(store):
    with pytest.raises(ValueError):
        store.advance_state(HASH, ContentState.REGISTRY_ANCHORED)

    store.advance_state(HASH, ContentState.UPLOADED)
    with pytest.raises(ValueError):
        store.advance_state(HASH, ContentState.VERIFIED)
    assert store.get_state(HASH) == ContentState.UPLOADED
