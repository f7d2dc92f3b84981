import httpx
import pytest

from content_identity.errors import (
    AllProvidersExhausted,
    DeadlineExceeded,
    PermanentProviderError,
    TransientProviderError,
)
from content_identity.models.providers import ProviderConfig
from content_identity.service.backoff import BackoffPolicy, Deadline
from content_identity.service.providers import build_providers
from content_identity.service.upload_orchestrator import UploadOrchestrator
from tests.fakes import RecordingSleep, ScriptedProvider


def _policy(attempts: int = 3) -> BackoffPolicy:
    return BackoffPolicy(max_attempts=attempts, base_delay=0.01, max_delay=0.05, jitter=0)


@pytest.mark.asyncio
async def test_falls_back_to_next_provider_over_http():
    hits = {"down.example": 0, "up.example": 0}

    def handler(request):
        hits[request.url.host] += 1
        if request.url.host == "down.example":
            return httpx.Response(503)
        return httpx.Response(200, json={"cid": "Qm123"})

    configs = [
        ProviderConfig(name="Down", endpoint="https://down.example/add", priority=1),
        ProviderConfig(name="Up", endpoint="https://up.example/add", priority=2),
    ]
    sleep = RecordingSleep()
    orchestrator = UploadOrchestrator(
        build_providers(configs, transport=httpx.MockTransport(handler)), policy=_policy(), sleep=sleep
    )

    result = await orchestrator.upload(bytes(1024), "clip.mp4")

    assert result.cid == "Qm123"
    assert result.provider == "Up"
    assert result.attempts == 1
    assert hits == {"down.example": 3, "up.example": 1}
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.provider == "Down"
    assert failure.kind == "transient"
    assert failure.attempts == 3
    assert failure.status_code == 503
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_permanent_failure_skips_provider_without_retry():
    rejected = ScriptedProvider("rejects", [PermanentProviderError("rejects", "HTTP 401", 401)])
    accepted = ScriptedProvider("accepts", ["QmOk"])
    sleep = RecordingSleep()

    result = await UploadOrchestrator([rejected, accepted], policy=_policy(), sleep=sleep).upload(b"x")

    assert rejected.calls == 1
    assert result.provider == "accepts"
    assert result.failures[0].kind == "permanent"
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_transient_failure_then_success_on_same_provider():
    flaky = ScriptedProvider("flaky", [TransientProviderError("flaky", "HTTP 502", 502), "QmRetried"])
    spare = ScriptedProvider("spare", ["QmSpare"])

    result = await UploadOrchestrator([flaky, spare], policy=_policy(), sleep=RecordingSleep()).upload(b"x")

    assert result.cid == "QmRetried"
    assert result.attempts == 2
    assert result.failures == ()
    assert spare.calls == 0


@pytest.mark.asyncio
async def test_providers_are_tried_one_at_a_time_in_order():
    order = []

    class Tracking(ScriptedProvider):
        async def submit(self, data, filename="content", timeout=None):
            order.append(self.name)
            return await super().submit(data, filename, timeout)

    providers = [
        Tracking("first", [PermanentProviderError("first", "HTTP 400", 400)]),
        Tracking("second", [PermanentProviderError("second", "HTTP 403", 403)]),
        Tracking("third", ["QmThird"]),
        Tracking("fourth", ["QmFourth"]),
    ]
    result = await UploadOrchestrator(providers, policy=_policy(), sleep=RecordingSleep()).upload(b"x")

    assert result.cid == "QmThird"
    assert order == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_all_providers_failing_names_each_one():
    providers = [
        ScriptedProvider("a", [TransientProviderError("a", "HTTP 500", 500)]),
        ScriptedProvider("b", [PermanentProviderError("b", "no CID in single_json response", 200)]),
    ]
    with pytest.raises(AllProvidersExhausted) as info:
        await UploadOrchestrator(providers, policy=_policy(2), sleep=RecordingSleep()).upload(b"x")

    assert set(info.value.errors) == {"a", "b"}
    assert info.value.errors["a"].startswith("transient")
    assert info.value.errors["b"].startswith("permanent")


@pytest.mark.asyncio
async def test_empty_pool_is_exhausted():
    with pytest.raises(AllProvidersExhausted):
        await UploadOrchestrator([], policy=_policy()).upload(b"x")


@pytest.mark.asyncio
async def test_expired_deadline_stops_before_first_provider():
    provider = ScriptedProvider("never", ["QmNever"])
    with pytest.raises(DeadlineExceeded):
        await UploadOrchestrator([provider], policy=_policy()).upload(b"x", deadline=Deadline(0))
    assert provider.calls == 0
