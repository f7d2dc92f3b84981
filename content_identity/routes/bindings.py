import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from content_identity.errors import ContentStoreError
from content_identity.models.records import VerificationRecord
from content_identity.models.request import BatchVerificationRequest, BindingRequest
from content_identity.models.response import VerificationHistoryResponse, VerificationResponse
from content_identity.routes.dependencies import get_service
from content_identity.service.identity_service import ContentIdentityService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bindings", tags=["bindings"])


def _to_response(record: VerificationRecord) -> VerificationResponse:
    return VerificationResponse(
        verified=record.verified,
        outcome=record.outcome.value,
        reason=record.reason,
        detail=record.detail,
        platform=record.platform,
        external_id=record.external_id,
        source_url=record.source_url,
        manifest_uri=record.manifest_uri,
        content_hash=record.content_hash,
        recovered_signer=record.recovered_signer,
        checked_at=record.checked_at,
    )


@router.post("", response_model=VerificationResponse)
async def submit_binding(request: BindingRequest, service: ContentIdentityService = Depends(get_service)):
    try:
        record = await service.bind_and_verify(request.url, request.manifest_uri)
    except ContentStoreError as e:
        logger.error(f"Binding submission failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return _to_response(record)


@router.post("/verify-batch", response_model=List[VerificationResponse])
async def verify_batch(request: BatchVerificationRequest, service: ContentIdentityService = Depends(get_service)):
    items = [(binding.url, binding.manifest_uri) for binding in request.bindings]
    try:
        records = await service.verify_batch(items, request.deadline_seconds)
    except ContentStoreError as e:
        logger.error(f"Batch verification failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return [_to_response(record) for record in records]


@router.get("/{platform}/{external_id:path}/verifications", response_model=VerificationHistoryResponse)
async def verification_history(
    platform: str, external_id: str, service: ContentIdentityService = Depends(get_service)
):
    records = await service.history(platform, external_id)
    return VerificationHistoryResponse(
        platform=platform,
        external_id=external_id,
        records=[_to_response(record) for record in records],
    )
