import json
import logging
import os
from typing import List

from content_identity.models.providers import ProviderConfig


class Config:
    PORT: int = int(os.getenv("PORT", "8080"))
    HOST: str = os.getenv("HOST", "0.0.0.0")

    UPLOAD_PROVIDERS: str = os.getenv("UPLOAD_PROVIDERS", "")
    UPLOAD_TIMEOUT: float = float(os.getenv("UPLOAD_TIMEOUT", "120"))

    IPFS_GATEWAY_URL: str = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs")
    MANIFEST_TIMEOUT: float = float(os.getenv("MANIFEST_TIMEOUT", "20"))
    MANIFEST_CLOCK_SKEW: int = int(os.getenv("MANIFEST_CLOCK_SKEW", "300"))
    MANIFEST_CACHE_SIZE: int = int(os.getenv("MANIFEST_CACHE_SIZE", "512"))
    MANIFEST_CACHE_REFRESH: float = float(os.getenv("MANIFEST_CACHE_REFRESH", "60"))
    MANIFEST_CACHE_TTL: float = float(os.getenv("MANIFEST_CACHE_TTL", "900"))

    RPC_URL: str = os.getenv("RPC_URL", "https://sepolia.base.org")
    CHAIN_ID: int = int(os.getenv("CHAIN_ID", "84532"))
    REGISTRY_ADDRESS: str = os.getenv("REGISTRY_ADDRESS", "")
    SIGNER_PRIVATE_KEY: str = os.getenv("SIGNER_PRIVATE_KEY", "")
    RPC_TIMEOUT: float = float(os.getenv("RPC_TIMEOUT", "30"))
    RECEIPT_TIMEOUT: float = float(os.getenv("RECEIPT_TIMEOUT", "180"))

    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "4"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "0.5"))
    RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "8"))
    RETRY_JITTER: float = float(os.getenv("RETRY_JITTER", "0.25"))

    PLATFORM_TIMEOUT: float = float(os.getenv("PLATFORM_TIMEOUT", "15"))
    PROOF_MAX_AGE_DAYS: int = int(os.getenv("PROOF_MAX_AGE_DAYS", "365"))
    PROOF_CLOCK_SKEW: int = int(os.getenv("PROOF_CLOCK_SKEW", "300"))
    VERIFY_DEADLINE: float = float(os.getenv("VERIFY_DEADLINE", "60"))
    YOUTUBE_API_KEY: str = os.getenv("YOUTUBE_API_KEY", "")
    INSTAGRAM_ACCESS_TOKEN: str = os.getenv("INSTAGRAM_ACCESS_TOKEN", "")

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///content_identity.db")

    @classmethod
    def load_providers(cls, raw: str = None) -> List[ProviderConfig]:
        """Parse the provider pool from JSON and order it by priority."""
        raw = cls.UPLOAD_PROVIDERS if raw is None else raw
        if not raw.strip():
            return []
        entries = json.loads(raw)
        if not isinstance(entries, list):
            raise ValueError("UPLOAD_PROVIDERS must be a JSON array")
        providers = [ProviderConfig(**entry) for entry in entries]
        return sorted(providers, key=lambda p: p.priority)


def configure_logging(level: int = logging.INFO, stream=None) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=stream,
    )
    # request lines from the HTTP client carry full gateway URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
