import asyncio

import pytest
from web3.exceptions import Web3RPCError

from content_identity.errors import DeadlineExceeded, RegistryRevertError, RegistryRpcError
from content_identity.service.backoff import Deadline
from content_identity.service.hashing import content_hash, hash_to_bytes32
from content_identity.service.registry_client import is_fatal_rpc_error

IDENTITY = "did:pkh:eip155:84532:0x19E7E376E7C213B7E7e7e46cc70A5dD086DAff2A"
OTHER = "did:ethr:0x1563915e194D8CfBA1943570603F7606A3115508"
HASH = content_hash(b"anchored content")


@pytest.mark.asyncio
async def test_resolve_unknown_hash_is_none(registry):
    assert await registry.resolve(HASH) is None


@pytest.mark.asyncio
async def test_anchor_then_resolve(registry, contract):
    entry = await registry.anchor(HASH, IDENTITY)

    assert entry.content_hash == HASH
    assert entry.identity == IDENTITY
    assert entry.transaction_hash == contract.sent[0]
    assert (await registry.resolve(HASH.upper().replace("0X", ""))).identity == IDENTITY
    assert registry.pending_transaction(HASH) is None


@pytest.mark.asyncio
async def test_repeated_anchor_sends_one_transaction(registry, contract):
    first = await registry.anchor(HASH, IDENTITY)
    second = await registry.anchor(HASH, IDENTITY)
    third = await registry.anchor(HASH, OTHER)

    assert len(contract.sent) == 1
    assert first == second
    assert third.identity == IDENTITY


@pytest.mark.asyncio
async def test_rpc_failure_is_not_reported_as_absence(registry, contract):
    contract.lookup_failures = 10
    with pytest.raises(RegistryRpcError) as info:
        await registry.resolve(HASH)
    assert not isinstance(info.value, RegistryRevertError)
    assert info.value.transient


@pytest.mark.asyncio
async def test_transient_rpc_failure_is_retried(registry, contract):
    contract.entries[hash_to_bytes32(HASH)] = (IDENTITY, 1700000000)
    contract.lookup_failures = 2
    entry = await registry.resolve(HASH)
    assert entry.identity == IDENTITY


@pytest.mark.asyncio
async def test_reverted_transaction_is_fatal(registry, contract):
    contract.revert = True
    with pytest.raises(RegistryRevertError) as info:
        await registry.anchor(HASH, IDENTITY)
    assert not info.value.transient
    assert registry.pending_transaction(HASH) is None


@pytest.mark.asyncio
async def test_node_rejection_is_fatal_and_clears_pending(registry, contract):
    contract.send_failures = [ValueError("insufficient funds for gas")]
    with pytest.raises(RegistryRevertError):
        await registry.anchor(HASH, IDENTITY)
    assert registry.pending_transaction(HASH) is None


@pytest.mark.asyncio
async def test_already_known_rebroadcast_counts_as_sent(registry, contract):
    calls = []

    async def flaky_send(raw):
        calls.append(raw)
        if len(calls) == 1:
            # delivered, but the connection dropped before the node answered
            contract.sent.append(raw.decode("ascii"))
            raise ConnectionError("connection reset")
        raise ValueError("already known")

    contract.send = flaky_send
    entry = await registry.anchor(HASH, IDENTITY)

    assert entry.identity == IDENTITY
    assert len(calls) == 2
    assert len(contract.signed) == 1


@pytest.mark.asyncio
async def test_pending_transaction_is_observed_not_resubmitted(registry, contract):
    contract.hold_receipts = True
    with pytest.raises(RegistryRpcError):
        await registry.anchor(HASH, IDENTITY)
    pending = registry.pending_transaction(HASH)
    assert pending == contract.sent[0]

    contract.hold_receipts = False
    entry = await registry.anchor(HASH, IDENTITY)

    assert entry.transaction_hash == pending
    assert len(contract.signed) == 1
    assert len(contract.sent) == 1
    assert registry.pending_transaction(HASH) is None


@pytest.mark.asyncio
async def test_transaction_never_broadcast_is_resubmitted(registry, contract):
    contract.send_failures = [ConnectionError("down")] * 3
    with pytest.raises(RegistryRpcError):
        await registry.anchor(HASH, IDENTITY)
    assert registry.pending_transaction(HASH) is not None
    assert contract.sent == []

    entry = await registry.anchor(HASH, IDENTITY)

    assert entry.identity == IDENTITY
    assert len(contract.signed) == 2
    assert len(contract.sent) == 1


@pytest.mark.asyncio
async def test_writes_from_one_account_are_serialized(registry, contract):
    hashes = [content_hash(bytes([n])) for n in range(3)]
    identities = [f"did:ethr:0x{str(n) * 40}" for n in range(3)]

    entries = await asyncio.gather(*(registry.anchor(h, i) for h, i in zip(hashes, identities)))

    assert [e.identity for e in entries] == identities
    # each sign/send/receipt cycle completes before the next signature starts
    assert contract.events == [
        event for identity in identities for event in (f"sign:{identity}", "send", "receipt")
    ]


@pytest.mark.asyncio
async def test_expired_deadline_stops_before_rpc(registry, contract):
    with pytest.raises(DeadlineExceeded):
        await registry.anchor(HASH, IDENTITY, Deadline(0))
    assert contract.signed == []


@pytest.mark.asyncio
async def test_lagging_node_read_is_retried(registry, contract):
    contract.entries[hash_to_bytes32(HASH)] = (IDENTITY, 1700000000)
    lookup = contract.lookup
    errors = [Web3RPCError("header not found"), ValueError({"code": -32005, "message": "limit exceeded"})]

    async def lagging_lookup(content_hash):
        if errors:
            raise errors.pop(0)
        return await lookup(content_hash)

    contract.lookup = lagging_lookup
    entry = await registry.resolve(HASH)

    assert entry.identity == IDENTITY
    assert errors == []


@pytest.mark.asyncio
async def test_node_errors_that_persist_are_transient(registry, contract):
    async def overloaded_lookup(content_hash):
        raise Web3RPCError("rate limited, try again later")

    contract.lookup = overloaded_lookup
    with pytest.raises(RegistryRpcError) as info:
        await registry.resolve(HASH)
    assert not isinstance(info.value, RegistryRevertError)


@pytest.mark.asyncio
async def test_insufficient_funds_from_node_is_fatal(registry, contract):
    contract.send_failures = [Web3RPCError("insufficient funds for gas * price + value")]
    with pytest.raises(RegistryRevertError):
        await registry.anchor(HASH, IDENTITY)
    assert contract.sent == []


@pytest.mark.asyncio
async def test_nonce_too_low_after_delivery_confirms_first_send(registry, contract):
    calls = []

    async def racing_send(raw):
        calls.append(raw)
        if len(calls) == 1:
            contract.sent.append(raw.decode("ascii"))
            raise ConnectionError("connection reset")
        raise Web3RPCError("nonce too low")

    contract.send = racing_send
    entry = await registry.anchor(HASH, IDENTITY)

    assert entry.transaction_hash == contract.sent[0]
    assert len(contract.signed) == 1


@pytest.mark.parametrize(
    "error, fatal",
    [
        (Web3RPCError("execution reverted: already anchored"), True),
        (ValueError("insufficient funds for gas"), True),
        (Web3RPCError("invalid params", rpc_response={"error": {"code": -32602, "message": "bad"}}), True),
        (Web3RPCError("header not found"), False),
        (Web3RPCError("busy", rpc_response={"error": {"code": -32005, "message": "request limit reached"}}), False),
        (ValueError("nonce too low"), False),
    ],
)
def test_rpc_error_classification(error, fatal):
    assert is_fatal_rpc_error(error) is fatal
