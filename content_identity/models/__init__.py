from .providers import AuthScheme, ProviderConfig
from .records import (
    ContentState,
    Manifest,
    PlatformBinding,
    ProviderFailure,
    RegistryEntry,
    UploadResult,
    VerificationOutcome,
    VerificationRecord,
)
from .request import BatchVerificationRequest, BindingRequest
from .response import (
    HealthResponse,
    ManifestResponse,
    RegistrationResponse,
    RegistryEntryResponse,
    VerificationHistoryResponse,
    VerificationResponse,
)

__all__ = [
    "AuthScheme",
    "ProviderConfig",
    "ContentState",
    "Manifest",
    "PlatformBinding",
    "ProviderFailure",
    "RegistryEntry",
    "UploadResult",
    "VerificationOutcome",
    "VerificationRecord",
    "BindingRequest",
    "BatchVerificationRequest",
    "HealthResponse",
    "ManifestResponse",
    "RegistrationResponse",
    "RegistryEntryResponse",
    "VerificationHistoryResponse",
    "VerificationResponse",
]
