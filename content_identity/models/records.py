import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Serialization order of the hashed manifest payload. Changing it changes every digest.
MANIFEST_FIELDS = (
    "version",
    "algorithm",
    "content_hash",
    "cid",
    "content_uri",
    "creator_did",
    "created_at",
)

CONTENT_HASH_REGEX = r"^0x[0-9a-fA-F]{64}$"
IDENTITY_REGEX = r"^[a-z][a-z0-9]*:[a-z0-9]+:[A-Za-z0-9._:%-]+$"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


class ProviderFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    attempts: int
    kind: str
    message: str
    status_code: Optional[int] = None


class UploadResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    cid: str
    provider: str
    attempts: int
    elapsed: float
    failures: Tuple[ProviderFailure, ...] = ()


class Manifest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    version: str = "1.0"
    algorithm: str = "sha256"
    content_hash: str = Field(..., pattern=CONTENT_HASH_REGEX)
    cid: str = Field(..., min_length=1)
    content_uri: str = Field(..., min_length=1)
    creator_did: str = Field(..., pattern=IDENTITY_REGEX)
    created_at: str
    signature: Optional[str] = None

    @field_validator("content_hash")
    @classmethod
    def _lowercase_hash(cls, v: str) -> str:
        return v.lower()

    @field_validator("created_at")
    @classmethod
    def _iso_timestamp(cls, v: str) -> str:
        try:
            parse_timestamp(v)
        except ValueError:
            raise ValueError("created_at must be an ISO-8601 timestamp")
        return v

    @property
    def created(self) -> datetime:
        return parse_timestamp(self.created_at)

    def canonical_bytes(self) -> bytes:
        payload = {name: getattr(self, name) for name in MANIFEST_FIELDS}
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @property
    def digest(self) -> str:
        return "0x" + hashlib.sha256(self.canonical_bytes()).hexdigest()

    def to_document(self) -> dict:
        document = {name: getattr(self, name) for name in MANIFEST_FIELDS}
        if self.signature:
            document["signature"] = self.signature
        return document


class RegistryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_hash: str
    identity: str
    anchored_at: datetime
    transaction_hash: Optional[str] = None


class PlatformBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: str
    external_id: str
    proof_location: str
    manifest_uri: str
    submitted_at: datetime


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    FAILED = "failed"


class VerificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_url: str
    manifest_uri: str
    outcome: VerificationOutcome
    checked_at: datetime
    platform: Optional[str] = None
    external_id: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    recovered_signer: Optional[str] = None
    content_hash: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.outcome == VerificationOutcome.VERIFIED


class ContentState(str, Enum):
    UPLOADED = "uploaded"
    MANIFEST_PUBLISHED = "manifest_published"
    REGISTRY_ANCHORED = "registry_anchored"
    BINDING_SUBMITTED = "binding_submitted"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"

    def can_advance_to(self, target: "ContentState") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    ContentState.UPLOADED: {ContentState.MANIFEST_PUBLISHED},
    ContentState.MANIFEST_PUBLISHED: {ContentState.REGISTRY_ANCHORED},
    ContentState.REGISTRY_ANCHORED: {ContentState.BINDING_SUBMITTED},
    ContentState.BINDING_SUBMITTED: {
        ContentState.BINDING_SUBMITTED,
        ContentState.VERIFIED,
        ContentState.VERIFICATION_FAILED,
    },
    # a new or corrected binding re-enters submission
    ContentState.VERIFIED: {ContentState.BINDING_SUBMITTED},
    ContentState.VERIFICATION_FAILED: {ContentState.BINDING_SUBMITTED},
}
