import json
import logging
from datetime import datetime, timezone
from typing import Optional

from content_identity.errors import ManifestValidationError
from content_identity.models.records import Manifest, format_timestamp
from content_identity.service.hashing import (
    content_hash as hash_content,
    normalize_content_hash,
    sign_message,
)

logger = logging.getLogger(__name__)


def build_manifest(
    cid: str,
    content_hash: str,
    identity: str,
    created_at: Optional[datetime] = None,
    private_key: Optional[str] = None,
) -> Manifest:
    """Build a canonical manifest and optionally sign its digest.

    The signature covers the 32 digest bytes of the canonical payload and is
    stored beside the manifest, never inside the hashed fields.
    """
    manifest = Manifest(
        content_hash=normalize_content_hash(content_hash),
        cid=cid,
        content_uri=f"ipfs://{cid}",
        creator_did=identity,
        created_at=format_timestamp(created_at or datetime.now(timezone.utc)),
    )
    if private_key:
        manifest = sign_manifest(manifest, private_key)
    logger.info(f"Built manifest {manifest.digest[:18]}... for identity {identity}")
    return manifest


def sign_manifest(manifest: Manifest, private_key: str) -> Manifest:
    signature = sign_message(bytes.fromhex(manifest.digest[2:]), private_key)
    return manifest.model_copy(update={"signature": signature})


def serialize_manifest(manifest: Manifest) -> bytes:
    """Publishable JSON document: canonical fields plus the detached signature."""
    return json.dumps(manifest.to_document(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_content(manifest: Manifest, data: bytes) -> None:
    """Reject a manifest whose content hash does not match the referenced bytes."""
    recomputed = hash_content(data)
    if recomputed != manifest.content_hash:
        raise ManifestValidationError(
            "content_hash",
            f"manifest declares {manifest.content_hash[:18]}... but content hashes to {recomputed[:18]}...",
        )
