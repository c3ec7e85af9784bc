"""Builders for the coordinator and pool calls the ASP relays.

Calldata layout follows the contracts' Cairo ABI: a u256 is two felts
``(low_128, high_128)``, a proof is a ``Span<felt252>`` (length first) and a
pool key is ``token_0, token_1, fee, tick_spacing``.
"""

from typing import Iterable, List, Sequence

from zkasp.models.schemas import PoolKey
from zkasp.relayer.base import ChainOperation, ContractCall
from zkasp.utils.encoding import bytes_to_hex, span_calldata, u256_to_felts

DEPOSIT = "deposit"
SUBMIT_MERKLE_ROOT = "submit_merkle_root"
VERIFY_MEMBERSHIP = "verify_membership"
SHIELDED_SWAP = "shielded_swap"
SHIELDED_MINT = "shielded_mint"
SHIELDED_BURN = "shielded_burn"


def _u256(value: bytes) -> List[str]:
    return list(u256_to_felts(int.from_bytes(value, "big")))


def pool_key_calldata(pool_key: PoolKey) -> List[str]:
    return [
        hex(int(pool_key.token_0, 16)),
        hex(int(pool_key.token_1, 16)),
        hex(pool_key.fee),
        hex(pool_key.tick_spacing),
    ]


def _nonzero(outputs: Iterable[bytes]) -> tuple:
    return tuple(o for o in outputs if any(o))


def deposit_operation(operation_id: str, coordinator: str, commitment: bytes) -> ChainOperation:
    """``coordinator.deposit(commitment: u256)``; the commitment becomes a leaf on confirmation."""
    return ChainOperation(
        operation_id=operation_id,
        kind=DEPOSIT,
        idempotency_key=bytes_to_hex(commitment),
        calls=(ContractCall(coordinator, DEPOSIT, tuple(_u256(commitment))),),
        outputs=(commitment,),
    )


def root_operation(operation_id: str, coordinator: str, root: bytes,
                   leaf_count: int) -> ChainOperation:
    """``coordinator.submit_merkle_root(root: u256)``."""
    return ChainOperation(
        operation_id=operation_id,
        kind=SUBMIT_MERKLE_ROOT,
        idempotency_key=bytes_to_hex(root),
        calls=(ContractCall(coordinator, SUBMIT_MERKLE_ROOT, tuple(_u256(root))),),
        params={"leaf_count": leaf_count},
    )


def membership_operation(operation_id: str, coordinator: str, proof_calldata: Sequence[str],
                         nullifier: bytes) -> ChainOperation:
    """``coordinator.verify_membership(full_proof_with_hints: Span<felt252>)``."""
    return ChainOperation(
        operation_id=operation_id,
        kind=VERIFY_MEMBERSHIP,
        idempotency_key=bytes_to_hex(nullifier),
        calls=(ContractCall(coordinator, VERIFY_MEMBERSHIP, tuple(span_calldata(list(proof_calldata)))),),
        nullifiers=(nullifier,),
    )


def swap_operation(operation_id: str, pool: str, pool_key: PoolKey,
                   proof_calldata: Sequence[str], sqrt_price_limit: int,
                   nullifier: bytes, outputs: Iterable[bytes]) -> ChainOperation:
    """``pool.shielded_swap(pool_key, proof, sqrt_price_limit: u256)``."""
    calldata = pool_key_calldata(pool_key) + span_calldata(list(proof_calldata))
    calldata += list(u256_to_felts(sqrt_price_limit))
    return ChainOperation(
        operation_id=operation_id,
        kind=SHIELDED_SWAP,
        idempotency_key=bytes_to_hex(nullifier),
        calls=(ContractCall(pool, SHIELDED_SWAP, tuple(calldata)),),
        nullifiers=(nullifier,),
        outputs=_nonzero(outputs),
    )


def mint_operation(operation_id: str, pool: str, pool_key: PoolKey,
                   proof_calldata: Sequence[str], liquidity: int,
                   nullifiers: Sequence[bytes], outputs: Iterable[bytes]) -> ChainOperation:
    """``pool.shielded_mint(pool_key, proof, liquidity: u128)``, keyed on the first nullifier."""
    calldata = pool_key_calldata(pool_key) + span_calldata(list(proof_calldata)) + [hex(liquidity)]
    return ChainOperation(
        operation_id=operation_id,
        kind=SHIELDED_MINT,
        idempotency_key=bytes_to_hex(nullifiers[0]),
        calls=(ContractCall(pool, SHIELDED_MINT, tuple(calldata)),),
        nullifiers=tuple(nullifiers),
        outputs=_nonzero(outputs),
    )


def burn_operation(operation_id: str, pool: str, pool_key: PoolKey,
                   proof_calldata: Sequence[str], liquidity: int,
                   nullifier: bytes, outputs: Iterable[bytes]) -> ChainOperation:
    """``pool.shielded_burn(pool_key, proof, liquidity: u128)``."""
    calldata = pool_key_calldata(pool_key) + span_calldata(list(proof_calldata)) + [hex(liquidity)]
    return ChainOperation(
        operation_id=operation_id,
        kind=SHIELDED_BURN,
        idempotency_key=bytes_to_hex(nullifier),
        calls=(ContractCall(pool, SHIELDED_BURN, tuple(calldata)),),
        nullifiers=(nullifier,),
        outputs=_nonzero(outputs),
    )
