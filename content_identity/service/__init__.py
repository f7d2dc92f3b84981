from .content_store import ContentStore
from .identity_service import ContentIdentityService, Registration
from .manifest_cache import ManifestCache
from .manifest_resolver import ManifestResolver
from .platform_verifier import PlatformVerifier
from .registry_client import RegistryClient, Web3RegistryContract
from .upload_orchestrator import UploadOrchestrator

__all__ = [
    "ContentStore",
    "ContentIdentityService",
    "Registration",
    "ManifestCache",
    "ManifestResolver",
    "PlatformVerifier",
    "RegistryClient",
    "Web3RegistryContract",
    "UploadOrchestrator",
]
