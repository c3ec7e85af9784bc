"""Starknet JSON-RPC client: the live ``Submitter`` and ``ChainReader``."""

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional

import requests

from zkasp.exceptions import (
    ChainRpcError,
    ConfigurationError,
    RelayAmbiguousError,
    RelaySubmitError,
)
from zkasp.relayer.base import (
    ChainEvent,
    ChainOperation,
    ChainTxStatus,
    EventKind,
    TransactionSigner,
)

logger = logging.getLogger(__name__)

# Starknet JSON-RPC error codes
BLOCK_NOT_FOUND = 24
TXN_HASH_NOT_FOUND = 29
INVALID_TRANSACTION_NONCE = 52

EVENTS_CHUNK_SIZE = 100


class JsonRpcError(ChainRpcError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Dict[str, Any]):
        self.rpc_code = error.get("code")
        self.data = error.get("data")
        super().__init__(f"{method} failed ({self.rpc_code}): {error.get('message')}")


def _felt(value: str) -> int:
    return int(value, 16)


def _u256_from_felts(low: str, high: str) -> bytes:
    return ((_felt(high) << 128) | _felt(low)).to_bytes(32, "big")


class StarknetRpcClient:
    """
    Talks to a Starknet node over JSON-RPC with ``requests``.

    Calls are blocking, so they run in worker threads. Transactions are
    signed by the injected ``TransactionSigner``; the account nonce is kept
    locally and re-read from the node after a nonce error or an ambiguous
    send. The relay subsystem serializes ``submit`` calls.

    Event data layout (after the selector key):
      CommitmentAdded: [commitment_low, commitment_high, leaf_index]
      RootPublished:   [root_low, root_high, leaf_count]
      NullifierSpent:  [nullifier_low, nullifier_high]
    """

    def __init__(
        self,
        rpc_url: str,
        coordinator_address: str,
        pool_address: str,
        event_keys: Optional[Dict[EventKind, str]] = None,
        signer: Optional[TransactionSigner] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url
        self.coordinator_address = coordinator_address
        self.pool_address = pool_address
        self.signer = signer
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)
        self._nonce: Optional[int] = None
        self._contracts = {_felt(coordinator_address), _felt(pool_address)}
        self._event_kinds = {
            _felt(key): kind for kind, key in (event_keys or {}).items() if key
        }

    # Transport

    def _post(self, method: str, params: Any) -> Any:
        """One JSON-RPC round trip; transport errors propagate as ``requests`` errors."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise JsonRpcError(method, body["error"])
        return body["result"]

    def _call(self, method: str, params: Any) -> Any:
        try:
            return self._post(method, params)
        except requests.RequestException as e:
            raise ChainRpcError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise ChainRpcError(f"{method} returned invalid JSON: {e}") from e

    async def _rpc(self, method: str, params: Any) -> Any:
        return await asyncio.to_thread(self._call, method, params)

    # ChainReader

    async def head(self) -> int:
        return int(await self._rpc("starknet_blockNumber", []))

    async def block_hash(self, number: int) -> Optional[str]:
        try:
            block = await self._rpc("starknet_getBlockWithTxHashes", [{"block_number": number}])
        except JsonRpcError as e:
            if e.rpc_code == BLOCK_NOT_FOUND:
                return None
            raise
        return block.get("block_hash")

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        if not self._event_kinds:
            raise ConfigurationError("No event keys configured for chain sync")

        events = []
        event_filter: Dict[str, Any] = {
            "from_block": {"block_number": from_block},
            "to_block": {"block_number": to_block},
            "keys": [[hex(k) for k in self._event_kinds]],
            "chunk_size": EVENTS_CHUNK_SIZE,
        }
        while True:
            page = await self._rpc("starknet_getEvents", {"filter": event_filter})
            for raw in page.get("events", []):
                event = self._decode_event(raw)
                if event is not None:
                    events.append(event)
            token = page.get("continuation_token")
            if not token:
                return events
            event_filter = dict(event_filter, continuation_token=token)

    def _decode_event(self, raw: Dict[str, Any]) -> Optional[ChainEvent]:
        if raw.get("block_number") is None:
            return None
        if _felt(raw.get("from_address", "0x0")) not in self._contracts:
            return None
        keys = raw.get("keys") or []
        kind = self._event_kinds.get(_felt(keys[0])) if keys else None
        if kind is None:
            return None

        data = raw.get("data") or []
        try:
            value = _u256_from_felts(data[0], data[1])
            index = _felt(data[2]) if kind != EventKind.NULLIFIER_SPENT else None
        except (IndexError, ValueError):
            logger.warning("Skipping malformed %s event in tx %s", kind.value, raw.get("transaction_hash"))
            return None
        return ChainEvent(
            kind=kind,
            block_number=int(raw["block_number"]),
            block_hash=raw.get("block_hash", ""),
            tx_id=raw["transaction_hash"],
            value=value,
            index=index,
        )

    # Submitter

    async def status(self, tx_id: str) -> ChainTxStatus:
        try:
            result = await self._rpc("starknet_getTransactionStatus", [tx_id])
        except JsonRpcError as e:
            if e.rpc_code == TXN_HASH_NOT_FOUND:
                return ChainTxStatus.UNKNOWN
            raise

        finality = result.get("finality_status")
        execution = result.get("execution_status")
        if finality == "REJECTED" or execution == "REVERTED":
            return ChainTxStatus.FAILED
        if finality in ("ACCEPTED_ON_L2", "ACCEPTED_ON_L1") and execution == "SUCCEEDED":
            return ChainTxStatus.CONFIRMED
        return ChainTxStatus.PENDING

    async def _next_nonce(self) -> int:
        if self._nonce is None:
            raw = await self._rpc("starknet_getNonce", ["pending", self.signer.address])
            self._nonce = _felt(raw)
            logger.info("Relay account nonce synchronized at %d", self._nonce)
        return self._nonce

    async def submit(self, operation: ChainOperation) -> str:
        if self.signer is None:
            raise ConfigurationError("No transaction signer configured for the relay account")

        try:
            nonce = await self._next_nonce()
        except ChainRpcError as e:
            raise RelaySubmitError(f"Could not read account nonce: {e}") from e
        signed = self.signer.sign_invoke(operation.calls, nonce)

        try:
            result = await asyncio.to_thread(
                self._post, "starknet_addInvokeTransaction", {"invoke_transaction": signed.transaction}
            )
        except JsonRpcError as e:
            if e.rpc_code == INVALID_TRANSACTION_NONCE:
                self._nonce = None
            raise RelaySubmitError(f"Transaction rejected: {e}") from e
        except requests.ConnectTimeout as e:
            raise RelaySubmitError(f"Could not reach {self.rpc_url}: {e}") from e
        except (requests.RequestException, ValueError) as e:
            self._nonce = None
            raise RelayAmbiguousError(
                f"Outcome of {operation.kind} submission unknown: {e}",
                chain_tx_id=signed.tx_hash,
            ) from e

        tx_hash = result["transaction_hash"]
        self._nonce = nonce + 1
        logger.info("Submitted %s as %s (nonce %d)", operation.kind, tx_hash, nonce)
        return tx_hash
