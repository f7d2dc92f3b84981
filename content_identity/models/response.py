from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class HealthResponse(BaseModel):
    status: str = Field(default="healthy")
    ipfs_gateway: str
    registry_rpc: str


class RegistrationResponse(BaseModel):
    status: str = Field(default="success")
    content_hash: str
    cid: str
    provider: str
    upload_attempts: int
    manifest_uri: str
    manifest_digest: str
    identity: str
    tx_hash: Optional[str] = None
    anchored_at: datetime


class ManifestResponse(BaseModel):
    manifest_uri: str
    digest: str
    manifest: dict


class RegistryEntryResponse(BaseModel):
    content_hash: str
    identity: str
    anchored_at: datetime
    tx_hash: Optional[str] = None


class VerificationResponse(BaseModel):
    verified: bool
    outcome: str
    reason: Optional[str] = None
    detail: Optional[str] = None
    platform: Optional[str] = None
    external_id: Optional[str] = None
    source_url: str
    manifest_uri: str
    content_hash: Optional[str] = None
    recovered_signer: Optional[str] = None
    checked_at: datetime


class VerificationHistoryResponse(BaseModel):
    platform: str
    external_id: str
    records: List[VerificationResponse]
