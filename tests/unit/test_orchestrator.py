"""Tests for the operation orchestrator, end to end over the fake prover and mock chain."""

import asyncio
import threading

import pytest

import fake_prover
from helpers import commitment
from zkasp.core.validation import unsigned_tick
from zkasp.exceptions import ValidationError
from zkasp.models.schemas import (
    Accepted,
    BurnRequest,
    DepositRequest,
    MintAmounts,
    MintRequest,
    NoteInput,
    NoteSecrets,
    OperationKind,
    OutputNoteInput,
    PoolKey,
    PositionInput,
    PositionNoteInput,
    Rejected,
    SwapParams,
    SwapRequest,
    WithdrawRequest,
)
from zkasp.relayer.mock import MockChain
from zkasp.service import Service
from zkasp.storage.database import RelayState
from zkasp.utils.encoding import bytes_to_hex, to_field_bytes

TOKEN_A = "0x49d3"
TOKEN_B = "0x53c9"
RECIPIENT = "0x1234"
POOL_KEY = PoolKey(token_0=TOKEN_A, token_1=TOKEN_B, fee=3000, tick_spacing=60)


def run_service(settings, scenario):
    async def main():
        service = Service(settings, chain=MockChain())
        await service.start(run_sync=False)
        try:
            return await scenario(service)
        finally:
            await service.stop()

    return asyncio.run(main())


def note(secret, nullifier, low="1000", token=TOKEN_A, leaf_index=0):
    return NoteInput(secret=secret, nullifier=nullifier, balance_low=low, balance_high="0",
                     token=token, leaf_index=leaf_index)


def note_hex(n: NoteInput) -> str:
    return hex(int(fake_prover.note_commitment(n.secret, n.nullifier, n.balance_low,
                                               n.balance_high, n.token)))


def nullifier_hex(nullifier: str) -> str:
    return bytes_to_hex(to_field_bytes(fake_prover.nullifier_hash(nullifier)))


async def deposit_note(service, commitment_hex):
    result = await service.orchestrator.deposit(DepositRequest(commitment=commitment_hex))
    assert isinstance(result, Accepted), result
    await service.sync.tick()
    return result


def withdraw_request(n: NoteInput) -> WithdrawRequest:
    return WithdrawRequest(secret=n.secret, nullifier=n.nullifier, amount_low=n.balance_low,
                           amount_high=n.balance_high, token=n.token, recipient=RECIPIENT,
                           leaf_index=n.leaf_index)


class TestDeposit:
    """Deposits."""

    def test_deposit_lands_and_root_is_published(self, settings):
        async def scenario(service):
            result = await service.orchestrator.deposit(DepositRequest(commitment="0x2a"))
            await service.sync.tick()  # deposit confirmed, root relayed
            await service.sync.tick()  # root confirmed
            return result, await service.orchestrator.status()

        result, status = run_service(settings, scenario)
        assert result.kind == OperationKind.DEPOSIT
        assert result.details["relay_state"] == "submitted"
        assert result.details["commitment"] == "0x" + "0" * 62 + "2a"
        assert status.tree.leaf_count == 1
        assert status.tree.confirmed_leaf_count == 1
        assert status.healthy

    def test_duplicate_deposit_rejected(self, settings):
        async def scenario(service):
            first = await service.orchestrator.deposit(DepositRequest(commitment="0x2a"))
            in_flight = await service.orchestrator.deposit(DepositRequest(commitment="0x2a"))
            await service.sync.tick()
            landed = await service.orchestrator.deposit(DepositRequest(commitment="0x2a"))
            return first, in_flight, landed

        first, in_flight, landed = run_service(settings, scenario)
        assert isinstance(first, Accepted)
        for rejected in (in_flight, landed):
            assert isinstance(rejected, Rejected)
            assert rejected.code == "duplicate_commitment"
            assert not rejected.retryable

    def test_unseen_deposit_is_not_retryable(self, settings):
        async def scenario(service):
            service.chain.ambiguous_next_submit(landed=True, visible=False)
            result = await service.orchestrator.deposit(DepositRequest(commitment="0x2a"))
            return result, len(service.chain.submissions)

        result, sent = run_service(settings, scenario)
        assert isinstance(result, Rejected)
        assert result.code == "relay_ambiguous"
        assert not result.retryable
        assert sent == 1

    @pytest.mark.parametrize("value", ["1234", "0xnothex", "0x" + "f" * 65, ""])
    def test_invalid_commitment(self, settings, value):
        async def scenario(service):
            return await service.orchestrator.deposit(DepositRequest(commitment=value))

        result = run_service(settings, scenario)
        assert isinstance(result, Rejected)
        assert result.code == "invalid_input"
        assert not result.retryable


class TestWithdraw:
    """Membership-proof withdrawals."""

    def test_withdraw_accepted_and_confirmed(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            result = await service.orchestrator.withdraw(withdraw_request(n))
            await service.sync.tick()
            return result, service.orchestrator.get_nullifier_status(nullifier_hex("n1")), \
                service.orchestrator.get_relay(nullifier_hex("n1"))

        result, status, relay = run_service(settings, scenario)
        assert isinstance(result, Accepted)
        assert result.details["nullifier_hash"] == nullifier_hex("n1")
        assert status.spent
        assert status.circuit_type == "membership"
        assert status.op_ref == result.operation_id
        assert status.tx_hash == relay.chain_tx_id
        assert relay.state == RelayState.CONFIRMED.value

    def test_concurrent_double_spend_exactly_one_succeeds(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            return await asyncio.gather(*(service.orchestrator.withdraw(withdraw_request(n))
                                          for _ in range(3)))

        results = run_service(settings, scenario)
        accepted = [r for r in results if isinstance(r, Accepted)]
        rejected = [r for r in results if isinstance(r, Rejected)]
        assert len(accepted) == 1
        assert len(rejected) == 2
        assert all(r.code == "already_spent" and not r.retryable for r in rejected)

    def test_sequential_double_spend(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            first = await service.orchestrator.withdraw(withdraw_request(n))
            second = await service.orchestrator.withdraw(withdraw_request(n))
            return first, second

        first, second = run_service(settings, scenario)
        assert isinstance(first, Accepted)
        assert second.code == "already_spent"

    def test_unknown_leaf(self, settings):
        async def scenario(service):
            return await service.orchestrator.withdraw(withdraw_request(note("s1", "n1", leaf_index=3)))

        result = run_service(settings, scenario)
        assert result.code == "unknown_leaf"
        assert not result.retryable

    def test_wrong_secret_is_a_commitment_mismatch(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            return await service.orchestrator.withdraw(withdraw_request(note("other", "n1")))

        result = run_service(settings, scenario)
        assert result.code == "invalid_input"
        assert "mismatch" in result.reason

    def test_invalid_recipient(self, settings):
        async def scenario(service):
            request = withdraw_request(note("s1", "n1"))
            request.recipient = "1234"
            return await service.orchestrator.withdraw(request)

        assert run_service(settings, scenario).code == "invalid_input"

    def test_root_moved_past_window_while_proving(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            real_prove = service.pipeline.prove

            async def prove_then_grow(kind, inputs):
                result = await real_prove(kind, inputs)
                if kind == "membership":
                    service.ledger.record_commitment(commitment(77))
                return result

            service.pipeline.prove = prove_then_grow
            result = await service.orchestrator.withdraw(withdraw_request(n))
            owner = service.ledger.nullifier_owner(to_field_bytes(fake_prover.nullifier_hash("n1")))
            return result, owner

        result, owner = run_service(settings.model_copy(update={"root_history_size": 1}), scenario)
        assert result.code == "unknown_root"
        assert result.retryable
        assert owner is None

    def test_prover_down_is_retryable(self, settings):
        async def scenario(service):
            await service.pipeline.stop()
            return await service.orchestrator.withdraw(withdraw_request(note("s1", "n1")))

        result = run_service(settings, scenario)
        assert result.code == "prover_unavailable"
        assert result.retryable

    def test_relay_failure_needs_operator_retry(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            service.chain.fail_next_submits(settings.relay_max_attempts)
            result = await service.orchestrator.withdraw(withdraw_request(n))
            again = await service.orchestrator.withdraw(withdraw_request(n))
            retried = await service.orchestrator.retry_relay(nullifier_hex("n1"))
            return result, again, retried

        result, again, retried = run_service(settings, scenario)
        assert result.code == "relay_needs_operator"
        assert not result.retryable
        assert nullifier_hex("n1") in result.reason
        assert again.code == "already_spent"
        assert retried.state == RelayState.SUBMITTED

    def test_unseen_spend_is_not_resent(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            before = len(service.chain.submissions)
            service.chain.ambiguous_next_submit(landed=True, visible=False)
            result = await service.orchestrator.withdraw(withdraw_request(n))
            return result, len(service.chain.submissions) - before

        result, sent = run_service(settings, scenario)
        assert result.code == "relay_needs_operator"
        assert not result.retryable
        assert sent == 1

    def test_claim_runs_off_the_event_loop_thread(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            claim_threads = []
            claim = service.ledger.claim_nullifiers

            def recording_claim(*args):
                claim_threads.append(threading.get_ident())
                return claim(*args)

            service.ledger.claim_nullifiers = recording_claim
            result = await service.orchestrator.withdraw(withdraw_request(n))
            return result, claim_threads, threading.get_ident()

        result, claim_threads, loop_thread = run_service(settings, scenario)
        assert isinstance(result, Accepted)
        assert len(claim_threads) == 1
        assert claim_threads[0] != loop_thread


class TestSwap:
    """Shielded swaps."""

    def _request(self, n, change=("cs", "cn")):
        return SwapRequest(
            pool_key=POOL_KEY,
            input_note=n,
            swap_params=SwapParams(token_in=TOKEN_A, token_out=TOKEN_B, amount_in="1000",
                                   amount_out_min="900", amount_out_low="950", amount_out_high="0"),
            output_note=NoteSecrets(secret="os", nullifier="on"),
            change_note=NoteSecrets(secret=change[0], nullifier=change[1]),
            sqrt_price_limit="0x1000",
        )

    def test_swap_outputs_enter_the_tree(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            result = await service.orchestrator.swap(self._request(n))
            await service.sync.tick()
            return result, service.ledger.snapshot()[1], \
                [service.ledger.commitment_at(i) for i in (1, 2)]

        result, leaves, outputs = run_service(settings, scenario)
        expected_out = fake_prover.note_commitment("os", "on", "950", "0", TOKEN_B)
        expected_change = fake_prover.change_commitment("cs", "cn")
        assert isinstance(result, Accepted)
        assert result.details["new_commitment"] == bytes_to_hex(to_field_bytes(expected_out))
        assert result.details["change_commitment"] == bytes_to_hex(to_field_bytes(expected_change))
        assert leaves == 3
        assert outputs == [to_field_bytes(expected_out), to_field_bytes(expected_change)]

    def test_zero_change_is_not_inserted(self, settings):
        n = note("s1", "n1")

        async def scenario(service):
            await deposit_note(service, note_hex(n))
            result = await service.orchestrator.swap(self._request(n, change=("0", "0")))
            await service.sync.tick()
            return result, service.ledger.snapshot()[1]

        result, leaves = run_service(settings, scenario)
        assert result.details["change_commitment"] is None
        assert leaves == 2

    def test_invalid_price_limit(self, settings):
        async def scenario(service):
            request = self._request(note("s1", "n1"))
            request.sqrt_price_limit = "4096"
            return await service.orchestrator.swap(request)

        assert run_service(settings, scenario).code == "invalid_input"


class TestLiquidity:
    """Shielded mint and burn."""

    def _mint(self, n0, n1, tick_lower=-60, tick_upper=60):
        return MintRequest(
            pool_key=POOL_KEY,
            input_note_0=n0,
            input_note_1=n1,
            position=PositionInput(secret="ps", nullifier="pn", liquidity="5000",
                                   tick_lower=tick_lower, tick_upper=tick_upper),
            amounts=MintAmounts(amount0_low="600", amount0_high="0",
                                amount1_low="700", amount1_high="0"),
            change_note_0=NoteSecrets(secret="c0s", nullifier="c0n"),
            change_note_1=NoteSecrets(secret="0", nullifier="0"),
            liquidity=5000,
        )

    def test_mint_position(self, settings):
        n0 = note("s0", "n0", token=TOKEN_A, leaf_index=0)
        n1 = note("s1", "n1", token=TOKEN_B, leaf_index=1)

        async def scenario(service):
            await deposit_note(service, note_hex(n0))
            await deposit_note(service, note_hex(n1))
            result = await service.orchestrator.mint(self._mint(n0, n1))
            await service.sync.tick()
            return result, [service.ledger.commitment_at(i) for i in range(4)], \
                service.orchestrator.get_nullifier_status(nullifier_hex("n1"))

        result, leaves, second = run_service(settings, scenario)
        position = fake_prover.position_commitment("ps", "pn", unsigned_tick(-60), unsigned_tick(60), "5000")
        change_0 = fake_prover.change_commitment("c0s", "c0n")
        assert isinstance(result, Accepted)
        assert result.details["position_commitment"] == bytes_to_hex(to_field_bytes(position))
        assert result.details["change_commitment_1"] is None
        assert leaves[2:] == [to_field_bytes(change_0), to_field_bytes(position)]
        assert second.spent and second.circuit_type == "mint"

    def test_mint_losing_one_claim_leaves_the_other_note_unspent(self, settings):
        n0 = note("s0", "n0", token=TOKEN_A, leaf_index=0)
        n1 = note("s1", "n1", token=TOKEN_B, leaf_index=1)

        async def scenario(service):
            await deposit_note(service, note_hex(n0))
            await deposit_note(service, note_hex(n1))
            accept = service.ledger.is_acceptable_root

            def spent_meanwhile(root, window):
                service.ledger.claim_nullifier(
                    to_field_bytes(fake_prover.nullifier_hash("n1")), "membership", "other-op"
                )
                return accept(root, window)

            service.ledger.is_acceptable_root = spent_meanwhile
            result = await service.orchestrator.mint(self._mint(n0, n1))
            return result, service.orchestrator.get_nullifier_status(nullifier_hex("n0"))

        result, first = run_service(settings, scenario)
        assert result.code == "already_spent"
        assert nullifier_hex("n1") in result.reason
        assert not first.spent

    def test_mint_same_nullifier_twice(self, settings):
        n0 = note("s0", "dup", leaf_index=0)
        n1 = note("s1", "dup", leaf_index=1)

        async def scenario(service):
            await deposit_note(service, note_hex(n0))
            await deposit_note(service, note_hex(n1))
            return await service.orchestrator.mint(self._mint(n0, n1))

        result = run_service(settings, scenario)
        assert result.code == "invalid_input"

    def test_mint_bad_tick_range(self, settings):
        async def scenario(service):
            return await service.orchestrator.mint(
                self._mint(note("a", "b"), note("c", "d", leaf_index=1), tick_lower=60, tick_upper=-60)
            )

        assert run_service(settings, scenario).code == "invalid_input"

    def test_burn_position(self, settings):
        position_hex = hex(int(fake_prover.position_commitment(
            "ps", "pn", unsigned_tick(-120), unsigned_tick(120), "5000")))
        request = BurnRequest(
            pool_key=POOL_KEY,
            position_note=PositionNoteInput(secret="ps", nullifier="pn", liquidity="5000",
                                            tick_lower=-120, tick_upper=120, leaf_index=0),
            output_note_0=OutputNoteInput(secret="o0s", nullifier="o0n", amount_low="500",
                                          amount_high="0", token=TOKEN_A),
            output_note_1=OutputNoteInput(secret="o1s", nullifier="o1n", amount_low="400",
                                          amount_high="0", token=TOKEN_B),
            liquidity=5000,
        )

        async def scenario(service):
            await deposit_note(service, position_hex)
            result = await service.orchestrator.burn(request)
            await service.sync.tick()
            second = await service.orchestrator.burn(request)
            return result, second, [service.ledger.commitment_at(i) for i in (1, 2)]

        result, second, outputs = run_service(settings, scenario)
        assert isinstance(result, Accepted)
        assert outputs == [
            to_field_bytes(fake_prover.note_commitment("o0s", "o0n", "500", "0", TOKEN_A)),
            to_field_bytes(fake_prover.note_commitment("o1s", "o1n", "400", "0", TOKEN_B)),
        ]
        assert second.code == "already_spent"


class TestReads:
    """Read operations."""

    def test_reads(self, settings):
        async def scenario(service):
            await deposit_note(service, "0x2a")
            orchestrator = service.orchestrator
            return (
                orchestrator.get_root(),
                orchestrator.get_path(0),
                orchestrator.find_commitments(["0x2a", "42", "0x99", "garbage"]),
                orchestrator.get_nullifier_status("0x5"),
                await orchestrator.status(),
            )

        (root, count), path, lookups, nullifier, status = run_service(settings, scenario)
        assert count == 1
        assert bytes_to_hex(path.root) == root
        assert [l.leaf_index for l in lookups] == [0, 0, None, None]
        assert not nullifier.spent
        assert status.prover_alive
        assert status.contracts.coordinator == "0x1c0"
        assert status.last_synced_block is not None

    def test_invalid_nullifier_value(self, settings):
        async def scenario(service):
            with pytest.raises(ValidationError):
                service.orchestrator.get_nullifier_status("not-a-field")
            return service.orchestrator.get_job("missing")

        assert run_service(settings, scenario) is None
