import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from content_identity.config import Config
from content_identity.errors import RegistryRevertError, RegistryRpcError
from content_identity.models.records import RegistryEntry
from content_identity.service.backoff import BackoffPolicy, Deadline, Sleep, retry_async
from content_identity.service.hashing import hash_to_bytes32, mask, normalize_content_hash

logger = logging.getLogger(__name__)

REGISTRY_ABI = [
    {
        "type": "function",
        "name": "anchor",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "contentHash", "type": "bytes32"},
            {"name": "identity", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "resolve",
        "stateMutability": "view",
        "inputs": [{"name": "contentHash", "type": "bytes32"}],
        "outputs": [
            {"name": "identity", "type": "string"},
            {"name": "anchoredAt", "type": "uint64"},
        ],
    },
]

# node answers that no retry can change
FATAL_RPC_MESSAGES = (
    "insufficient funds",
    "execution reverted",
    "intrinsic gas too low",
    "gas required exceeds",
    "exceeds block gas limit",
    "invalid sender",
    "invalid argument",
    "invalid params",
    "invalid input",
)
FATAL_RPC_CODES = (-32602, 3)


class NodeBusyError(Exception):
    """Node-side RPC error expected to clear on retry, e.g. 'header not found' or a rate limit."""


TRANSIENT_RPC_ERRORS = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
    NodeBusyError,
)


def rpc_error_details(error: Exception) -> Tuple[Optional[int], str]:
    """JSON-RPC error code (when the node sent one) and lower-cased message."""
    response = getattr(error, "rpc_response", None)
    body = response.get("error") if isinstance(response, dict) else None
    if isinstance(body, dict):
        return body.get("code"), str(body.get("message") or error).lower()
    return None, str(error).lower()


def is_fatal_rpc_error(error: Exception) -> bool:
    if isinstance(error, ContractLogicError):
        return True
    code, message = rpc_error_details(error)
    return code in FATAL_RPC_CODES or any(fragment in message for fragment in FATAL_RPC_MESSAGES)


@dataclass(frozen=True)
class SignedAnchor:
    tx_hash: str
    raw: bytes


class Web3RegistryContract:
    """Thin adapter over the deployed registry contract's call interface."""

    def __init__(
        self,
        rpc_url: str = None,
        contract_address: str = None,
        private_key: str = None,
        chain_id: int = None,
        timeout: float = None,
    ):
        self.rpc_url = rpc_url or Config.RPC_URL
        self.timeout = timeout or Config.RPC_TIMEOUT
        self.chain_id = chain_id or Config.CHAIN_ID
        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.timeout)})
        )
        address = contract_address or Config.REGISTRY_ADDRESS
        if not address:
            raise ValueError("Registry contract address is not configured")
        self.contract = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=REGISTRY_ABI)
        key = private_key or Config.SIGNER_PRIVATE_KEY
        self.account = Account.from_key(key) if key else None

    @property
    def account_address(self) -> str:
        if self.account is None:
            raise ValueError("No signing key configured for registry writes")
        return self.account.address

    async def lookup(self, content_hash: bytes) -> Optional[Tuple[str, int]]:
        identity, anchored_at = await self.contract.functions.resolve(content_hash).call()
        if not identity or not anchored_at:
            return None
        return identity, int(anchored_at)

    async def sign_anchor(self, content_hash: bytes, identity: str) -> SignedAnchor:
        sender = self.account_address
        nonce = await self.w3.eth.get_transaction_count(sender, "pending")
        tx = await self.contract.functions.anchor(content_hash, identity).build_transaction(
            {"from": sender, "nonce": nonce, "chainId": self.chain_id}
        )
        signed = self.account.sign_transaction(tx)
        return SignedAnchor(tx_hash="0x" + bytes(signed.hash).hex(), raw=bytes(signed.raw_transaction))

    async def send(self, raw: bytes) -> None:
        await self.w3.eth.send_raw_transaction(raw)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[dict]:
        try:
            return dict(await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout))
        except TimeExhausted:
            return None

    async def is_known(self, tx_hash: str) -> bool:
        try:
            await self.w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False

    async def is_connected(self) -> bool:
        try:
            return await self.w3.is_connected()
        except Exception as e:
            logger.warning(f"Registry RPC health check failed: {e}")
            return False


class RegistryClient:
    """Idempotent anchoring and reads against the registry ledger.

    Writes for one signing account are serialized. A transaction hash is
    recorded as pending before broadcast so an interrupted anchor is
    observed, not re-submitted, on the next call for the same hash.
    """

    def __init__(
        self,
        contract,
        policy: Optional[BackoffPolicy] = None,
        receipt_timeout: float = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.contract = contract
        self.policy = policy or BackoffPolicy()
        self.receipt_timeout = receipt_timeout or Config.RECEIPT_TIMEOUT
        self._sleep = sleep
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, str] = {}
        self._transactions: Dict[str, str] = {}

    def _lock_for(self, account: str) -> asyncio.Lock:
        return self._account_locks.setdefault(account.lower(), asyncio.Lock())

    def pending_transaction(self, content_hash: str) -> Optional[str]:
        return self._pending.get(normalize_content_hash(content_hash))

    async def _call(self, operation: str, factory, deadline: Optional[Deadline]):
        """Run one RPC call with retry on transient errors; reverts are fatal."""

        async def attempt():
            try:
                return await factory()
            except (ValueError, Web3RPCError) as e:
                if is_fatal_rpc_error(e):
                    raise
                raise NodeBusyError(str(e) or type(e).__name__) from e

        try:
            result, _ = await retry_async(
                attempt,
                self.policy,
                transient=TRANSIENT_RPC_ERRORS,
                stage=f"registry:{operation}",
                deadline=deadline,
                sleep=self._sleep,
            )
            return result
        except ContractLogicError as e:
            logger.error(f"Registry {operation} reverted: {e}")
            raise RegistryRevertError(operation, str(e)) from e
        except (ValueError, Web3RPCError) as e:
            logger.error(f"Registry {operation} rejected by node: {e}")
            raise RegistryRevertError(operation, str(e)) from e
        except TRANSIENT_RPC_ERRORS as e:
            logger.error(f"Registry {operation} failed after retries: {e}")
            raise RegistryRpcError(operation, str(e) or type(e).__name__) from e

    def _entry(self, content_hash: str, found: Tuple[str, int]) -> RegistryEntry:
        identity, anchored_at = found
        return RegistryEntry(
            content_hash=content_hash,
            identity=identity,
            anchored_at=datetime.fromtimestamp(anchored_at, tz=timezone.utc),
            transaction_hash=self._transactions.get(content_hash),
        )

    async def resolve(self, content_hash: str, deadline: Optional[Deadline] = None) -> Optional[RegistryEntry]:
        """Return the anchored entry, or None when the hash was never anchored.

        RPC failures raise RegistryRpcError and are never reported as absence.
        """
        content_hash = normalize_content_hash(content_hash)
        found = await self._call("resolve", lambda: self.contract.lookup(hash_to_bytes32(content_hash)), deadline)
        if found is None:
            return None
        return self._entry(content_hash, found)

    async def anchor(self, content_hash: str, identity: str, deadline: Optional[Deadline] = None) -> RegistryEntry:
        content_hash = normalize_content_hash(content_hash)
        deadline = deadline or Deadline.none()
        account = self.contract.account_address

        async with self._lock_for(account):
            existing = await self.resolve(content_hash, deadline)
            if existing is not None:
                logger.info(f"Content hash {content_hash[:18]}... already anchored, skipping transaction")
                return existing

            pending = self._pending.get(content_hash)
            if pending:
                entry = await self._observe_pending(content_hash, pending, deadline)
                if entry is not None:
                    return entry

            deadline.check("registry:anchor")
            signed = await self._call(
                "anchor", lambda: self.contract.sign_anchor(hash_to_bytes32(content_hash), identity), deadline
            )
            self._pending[content_hash] = signed.tx_hash
            logger.info(f"Submitting anchor transaction {mask(signed.tx_hash)} for {content_hash[:18]}...")
            try:
                await self._call("send", lambda: self._broadcast(signed.raw), deadline)
            except RegistryRevertError:
                self._pending.pop(content_hash, None)
                raise

            entry = await self._confirm(content_hash, signed.tx_hash, deadline)
            if entry is None:
                raise RegistryRpcError("anchor", f"transaction {mask(signed.tx_hash)} not confirmed yet")
            return entry

    async def _observe_pending(self, content_hash: str, tx_hash: str, deadline: Deadline) -> Optional[RegistryEntry]:
        """Settle a transaction sent by an earlier, interrupted anchor call."""
        logger.info(f"Observing previously sent transaction {mask(tx_hash)} before re-submitting")
        known = await self._call("receipt", lambda: self.contract.is_known(tx_hash), deadline)
        if not known:
            logger.warning(f"Pending transaction {mask(tx_hash)} was never seen by the node, re-submitting")
            self._pending.pop(content_hash, None)
            return None
        entry = await self._confirm(content_hash, tx_hash, deadline)
        if entry is None:
            raise RegistryRpcError("anchor", f"earlier transaction {mask(tx_hash)} is still pending")
        return entry

    async def _broadcast(self, raw: bytes) -> None:
        try:
            await self.contract.send(raw)
        except (ValueError, Web3RPCError) as e:
            # an earlier attempt reached the node; the receipt wait settles which transaction won the nonce
            _, message = rpc_error_details(e)
            if "already known" in message or "nonce too low" in message:
                logger.info(f"Node already saw this transaction: {message}")
                return
            raise

    async def _confirm(self, content_hash: str, tx_hash: str, deadline: Deadline) -> Optional[RegistryEntry]:
        """Wait for ``tx_hash``; None means still unconfirmed or dropped."""
        timeout = deadline.timeout(self.receipt_timeout)
        receipt = await self._call("receipt", lambda: self.contract.wait_for_receipt(tx_hash, timeout), deadline)
        if receipt is None:
            existing = await self.resolve(content_hash, deadline)
            if existing is not None:
                self._pending.pop(content_hash, None)
            return existing

        self._pending.pop(content_hash, None)
        if receipt.get("status") == 0:
            raise RegistryRevertError("anchor", f"transaction {mask(tx_hash)} reverted")

        self._transactions[content_hash] = tx_hash
        entry = await self.resolve(content_hash, deadline)
        if entry is None:
            raise RegistryRpcError("anchor", f"transaction {mask(tx_hash)} confirmed but entry not readable")
        logger.info(f"Anchored {content_hash[:18]}... in transaction {mask(tx_hash)}")
        return entry

    async def health_check(self) -> bool:
        return await self.contract.is_connected()
