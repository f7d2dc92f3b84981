from typing import Dict, Optional


class ContentIdentityError(Exception):
    """Base class for every failure raised by the content identity pipeline."""


class DeadlineExceeded(ContentIdentityError):
    def __init__(self, stage: str):
        super().__init__(f"Deadline exceeded before stage '{stage}'")
        self.stage = stage


class ProviderError(ContentIdentityError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """5xx, timeout or rate-limit answer; worth another attempt."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(provider, message, status_code)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """Non rate-limited 4xx or an unusable response; skip this provider."""


class AllProvidersExhausted(ContentIdentityError):
    def __init__(self, errors: Dict[str, str]):
        summary = "; ".join(f"{name}: {reason}" for name, reason in errors.items())
        super().__init__(f"All upload providers failed ({summary or 'no providers configured'})")
        self.errors = dict(errors)


class ManifestValidationError(ContentIdentityError):
    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid manifest field '{field}': {message}")
        self.field = field


class ManifestFetchError(ContentIdentityError):
    def __init__(self, uri: str, message: str):
        # the URI is kept on the instance only; messages end up in logs and records
        super().__init__(f"Failed to fetch manifest: {message}")
        self.uri = uri


class RegistryRpcError(ContentIdentityError):
    transient = True

    def __init__(self, operation: str, message: str):
        super().__init__(f"Registry {operation} failed: {message}")
        self.operation = operation


class RegistryRevertError(RegistryRpcError):
    transient = False


class VerificationError(ContentIdentityError):
    reason = "verification_failed"


class ParseError(VerificationError):
    reason = "parse_error"


class ProofNotFoundError(VerificationError):
    reason = "proof_missing"


class SignatureVerificationError(VerificationError):
    reason = "signature_mismatch"


class TimestampOutOfRangeError(VerificationError):
    reason = "timestamp_out_of_range"


class ProofFetchError(VerificationError):
    reason = "proof_unavailable"


class AnchorMismatchError(VerificationError):
    """The manifest's content hash is not anchored, or anchored to another identity."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class ContentStoreError(ContentIdentityError):
    def __init__(self, operation: str, message: str):
        super().__init__(f"Content store {operation} failed: {message}")
        self.operation = operation
