import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from content_identity.config import Config
from content_identity.errors import (
    AllProvidersExhausted,
    DeadlineExceeded,
    ManifestFetchError,
    ManifestValidationError,
    RegistryRpcError,
)
from content_identity.models.response import ManifestResponse, RegistrationResponse, RegistryEntryResponse
from content_identity.routes.dependencies import get_service
from content_identity.service.hashing import address_for_key, identity_for_address, mask
from content_identity.service.identity_service import ContentIdentityService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["content"])


def _default_identity() -> str:
    if not Config.SIGNER_PRIVATE_KEY:
        raise ValueError("identity is required when no signing key is configured")
    return identity_for_address(address_for_key(Config.SIGNER_PRIVATE_KEY), Config.CHAIN_ID)


@router.post("/content", response_model=RegistrationResponse)
async def register_content(
    file: UploadFile = File(...),
    identity: Optional[str] = Form(default=None),
    service: ContentIdentityService = Depends(get_service),
):
    try:
        data = await file.read()
        if not data:
            raise ValueError("uploaded file is empty")
        registration = await service.register_content(
            data,
            identity=identity or _default_identity(),
            filename=file.filename or "content",
        )
    except AllProvidersExhausted as e:
        logger.error(f"Upload failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except RegistryRpcError as e:
        logger.error(f"Anchoring failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except DeadlineExceeded as e:
        raise HTTPException(status_code=504, detail=str(e))
    except (ValueError, ManifestValidationError) as e:
        logger.error(f"Validation error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Content registration failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return RegistrationResponse(
        content_hash=registration.content_hash,
        cid=registration.upload.cid,
        provider=registration.upload.provider,
        upload_attempts=registration.upload.attempts,
        manifest_uri=registration.manifest_uri,
        manifest_digest=registration.manifest.digest,
        identity=registration.entry.identity,
        tx_hash=registration.entry.transaction_hash,
        anchored_at=registration.entry.anchored_at,
    )


@router.post("/content/check", response_model=ManifestResponse)
async def check_content(
    file: UploadFile = File(...),
    manifest_uri: str = Form(...),
    service: ContentIdentityService = Depends(get_service),
):
    """Confirm that uploaded bytes match the content hash a manifest declares."""
    try:
        manifest = await service.check_content(await file.read(), manifest_uri)
    except ManifestValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ManifestFetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ManifestResponse(manifest_uri=manifest_uri, digest=manifest.digest, manifest=manifest.to_document())


@router.get("/manifests", response_model=ManifestResponse)
async def resolve_manifest(
    uri: str = Query(..., min_length=1),
    service: ContentIdentityService = Depends(get_service),
):
    try:
        manifest = await service.resolver.resolve(uri)
    except ManifestValidationError as e:
        logger.info(f"Rejected manifest {mask(uri)}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ManifestFetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ManifestResponse(manifest_uri=uri, digest=manifest.digest, manifest=manifest.to_document())


@router.get("/registry/{content_hash}", response_model=RegistryEntryResponse)
async def resolve_registry_entry(content_hash: str, service: ContentIdentityService = Depends(get_service)):
    try:
        entry = await service.resolve_entry(content_hash)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RegistryRpcError as e:
        logger.error(f"Registry read failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    if entry is None:
        raise HTTPException(status_code=404, detail=f"Content hash {content_hash} is not anchored")
    return RegistryEntryResponse(
        content_hash=entry.content_hash,
        identity=entry.identity,
        anchored_at=entry.anchored_at,
        tx_hash=entry.transaction_hash,
    )
