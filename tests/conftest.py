import pytest

from content_identity.service.backoff import BackoffPolicy
from content_identity.service.content_store import ContentStore
from content_identity.service.identity_service import ContentIdentityService
from content_identity.service.manifest_cache import ManifestCache
from content_identity.service.manifest_resolver import ManifestResolver
from content_identity.service.platform_verifier import PlatformVerifier
from content_identity.service.platforms import default_platforms
from content_identity.service.registry_client import RegistryClient
from content_identity.service.upload_orchestrator import UploadOrchestrator
from tests.fakes import GATEWAY, NOW, FakeRegistryContract, InMemoryIpfs, no_sleep


@pytest.fixture
def policy():
    return BackoffPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0)


@pytest.fixture
def ipfs():
    return InMemoryIpfs()


@pytest.fixture
def resolver(ipfs):
    return ManifestResolver(gateway_url=GATEWAY, transport=ipfs.transport, clock=lambda: NOW)


@pytest.fixture
def contract():
    return FakeRegistryContract()


@pytest.fixture
def registry(contract, policy):
    return RegistryClient(contract, policy=policy, receipt_timeout=5, sleep=no_sleep)


@pytest.fixture
def store():
    return ContentStore("sqlite://")


@pytest.fixture
def service(ipfs, contract, policy, store):
    resolver = ManifestResolver(
        gateway_url=GATEWAY, cache=ManifestCache(max_entries=16), transport=ipfs.transport
    )
    registry = RegistryClient(contract, policy=policy, receipt_timeout=5, sleep=no_sleep)
    verifier = PlatformVerifier(
        resolver, default_platforms(youtube_api_key="test-key"), registry=registry,
        transport=ipfs.transport,
    )
    orchestrator = UploadOrchestrator([ipfs], policy=policy, sleep=no_sleep)
    return ContentIdentityService(orchestrator, resolver, registry, verifier, store)
