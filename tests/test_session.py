"""Tests for the swap session driver."""

import asyncio

import pytest
from bitcoin.core import CMutableTransaction

from chain_swap_client.crypto import (
    public_key_from_private,
    schnorr_verify,
    sha256,
)
from chain_swap_client.exceptions import (
    CounterpartyTimeout,
    KeyAggregationMismatch,
    LockupMismatch,
    PartialSignatureInvalid,
)
from chain_swap_client.messages import (
    CreateChainSwapRequest,
    SwapUpdate,
    TransactionInfo,
)
from chain_swap_client.models import Swap, SwapDirection, SwapStatus
from chain_swap_client.musig import CooperativeSigner
from chain_swap_client.quote import QuoteNegotiator
from chain_swap_client.session import SwapSession
from chain_swap_client.swap_tree import taproot_address
from chain_swap_client.transactions import ClaimTransactionBuilder

from .conftest import (
    DESTINATION_SCRIPT,
    SERVER_KEY,
    TIMEOUT_BLOCK_HEIGHT,
    USER_KEY,
    FakeSwapService,
    make_lockup_transaction,
)


def update(status: str, swap_id: str = "swap-1", transaction=None) -> SwapUpdate:
    return SwapUpdate(id=swap_id, status=status, transaction=transaction)


def lockup_update(session: SwapSession, status: str) -> SwapUpdate:
    raw = make_lockup_transaction(session.context.tree_info.output_script)
    txid = CMutableTransaction.deserialize(raw).GetTxid()[::-1].hex()
    return update(status, transaction=TransactionInfo(id=txid, hex=raw))


async def create_session(service, from_chain, to_chain, **kwargs) -> SwapSession:
    return await SwapSession.create(
        service,
        from_chain,
        to_chain,
        amount=100_000,
        destination_script=DESTINATION_SCRIPT,
        signing_chain="BTC",
        builder=ClaimTransactionBuilder(fee_rate=1.0),
        **kwargs,
    )


class TestCreation:
    """Swap creation and key checks."""

    @pytest.mark.asyncio
    async def test_create_records_secrets(self, fake_service):
        session = await create_session(fake_service, "ARK", "BTC")

        assert session.swap_id == "swap-1"
        assert session.direction == SwapDirection.USER_CLAIMS
        assert session.status == SwapStatus.CREATED
        assert session.swap.preimage_hash == sha256(session.swap.preimage)
        assert session.swap.counterparty_public_key == fake_service.server_public_key
        assert fake_service.user_public_key == session.swap.public_key

    @pytest.mark.asyncio
    async def test_direction_from_chains(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        assert session.direction == SwapDirection.SERVICE_CLAIMS
        assert session.context.details == session.context.response.lockup_details

    @pytest.mark.asyncio
    async def test_user_claims_needs_destination(self, fake_service):
        with pytest.raises(ValueError):
            await SwapSession.create(fake_service, "ARK", "BTC", signing_chain="BTC")

        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_chains_without_signing_chain(self, fake_service):
        with pytest.raises(ValueError):
            await create_session(fake_service, "LTC", "ARK")

        assert fake_service.calls == []

    @pytest.mark.asyncio
    async def test_rejects_mismatched_lockup_address(self, fake_service):
        user_public_key = public_key_from_private(USER_KEY)
        response = await fake_service.create_chain_swap(
            CreateChainSwapRequest(
                from_chain="ARK",
                to_chain="BTC",
                preimage_hash=sha256(bytes(32)),
                claim_public_key=user_public_key,
                refund_public_key=user_public_key,
            )
        )
        # Address of a key that is not the aggregate
        response.claim_details.lockup_address = taproot_address(
            public_key_from_private(SERVER_KEY)[1:], "regtest"
        )
        swap = Swap(
            swap_id=response.id,
            direction=SwapDirection.USER_CLAIMS,
            from_chain="ARK",
            to_chain="BTC",
            preimage=bytes(32),
            private_key=USER_KEY,
        )

        with pytest.raises(KeyAggregationMismatch):
            SwapSession(swap, response, fake_service, destination_script=DESTINATION_SCRIPT)


class TestUserClaims:
    """We claim the service's lockup on the signing chain."""

    @pytest.mark.asyncio
    async def test_literal_sequence_claims(self, fake_service, mocker):
        complete_claim = mocker.spy(CooperativeSigner, "complete_claim")
        session = await create_session(fake_service, "ARK", "BTC")

        await session.handle(update("swap.created"))
        assert session.status == SwapStatus.AWAITING_LOCKUP

        await session.handle(update("transaction.lockupFailed"))
        assert session.status == SwapStatus.AWAITING_LOCKUP
        assert session.context.accepted_quotes == [fake_service.quote_amount]

        await session.handle(lockup_update(session, "transaction.server.mempool"))
        assert session.status == SwapStatus.CLAIM_SUBMITTED

        await session.handle(update("transaction.claim.pending"))
        await session.handle(update("transaction.claimed"))

        assert session.status == SwapStatus.CLAIMED
        assert session.closed.is_set()
        assert fake_service.calls.count("get_quote") == 1
        assert fake_service.calls.count("accept_quote") == 1
        assert complete_claim.call_count == 1
        assert fake_service.calls.count("broadcast_transaction") == 1

    @pytest.mark.asyncio
    async def test_broadcast_claim_is_valid_key_path_spend(self, fake_service):
        session = await create_session(fake_service, "ARK", "BTC")
        await session.handle(update("swap.created"))
        await session.handle(lockup_update(session, "transaction.server.mempool"))

        claim = CMutableTransaction.deserialize(fake_service.broadcasts[0])
        (signature,) = claim.wit.vtxinwit[0].scriptWitness.stack
        draft = session.context.draft

        assert draft.signed
        assert len(signature) == 64
        assert schnorr_verify(
            session.context.tree_info.output_key,
            ClaimTransactionBuilder.key_path_sighash(draft),
            signature,
        )
        assert session.context.signatures.aggregate_signature == signature
        assert session.context.broadcast_transactions == [
            claim.GetTxid()[::-1].hex()
        ]
        assert session.swap.preimage_hash == sha256(session.swap.preimage)

    @pytest.mark.asyncio
    async def test_invalid_partial_fails_without_broadcast(self):
        service = FakeSwapService(corrupt_partial=True)
        session = await create_session(service, "ARK", "BTC")
        await session.handle(update("swap.created"))

        with pytest.raises(PartialSignatureInvalid):
            await session.handle(lockup_update(session, "transaction.server.mempool"))

        assert session.status == SwapStatus.FAILED
        assert "PartialSignatureInvalid" in session.context.failure
        assert "broadcast_transaction" not in service.calls

    @pytest.mark.asyncio
    async def test_counterparty_timeout(self, fake_service, mocker):
        async def stall(*args, **kwargs):
            await asyncio.sleep(1)

        mocker.patch.object(fake_service, "submit_user_claim", side_effect=stall)
        session = await create_session(fake_service, "ARK", "BTC", counterparty_timeout=0.01)
        await session.handle(update("swap.created"))

        with pytest.raises(CounterpartyTimeout):
            await session.handle(lockup_update(session, "transaction.server.mempool"))

        assert session.status == SwapStatus.FAILED
        assert "broadcast_transaction" not in fake_service.calls

    @pytest.mark.asyncio
    async def test_lockup_not_paying_swap_key(self, fake_service):
        session = await create_session(fake_service, "ARK", "BTC")
        await session.handle(update("swap.created"))
        raw = make_lockup_transaction(bytes.fromhex("5120" + "66" * 32))

        with pytest.raises(LockupMismatch):
            await session.handle(
                update(
                    "transaction.server.mempool",
                    transaction=TransactionInfo(id="ee" * 32, hex=raw),
                )
            )
        assert session.status == SwapStatus.FAILED
        assert "submit_user_claim" not in fake_service.calls


class TestServiceClaims:
    """The service claims our lockup with our partial signature."""

    @pytest.mark.asyncio
    async def test_literal_sequence_claims(self, fake_service, mocker):
        sign = mocker.spy(CooperativeSigner, "sign_counterparty_claim")
        session = await create_session(fake_service, "BTC", "ARK")

        for status in (
            "swap.created",
            "transaction.lockupFailed",
            "transaction.server.mempool",
        ):
            await session.handle(update(status))
        assert session.status == SwapStatus.LOCKUP_DETECTED

        await session.handle(update("transaction.claim.pending"))
        assert session.status == SwapStatus.CLAIM_SUBMITTED

        await session.handle(update("transaction.claimed"))

        assert session.status == SwapStatus.CLAIMED
        assert fake_service.calls.count("get_quote") == 1
        assert sign.call_count == 1
        assert "broadcast_transaction" not in fake_service.calls
        # The service's aggregate verifies against the published key
        assert schnorr_verify(
            session.context.tree_info.output_key,
            fake_service.claim_transaction_hash,
            fake_service.aggregate_signature,
        )

    @pytest.mark.asyncio
    async def test_expiry_broadcasts_refund(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(update("swap.created"))
        await session.handle(lockup_update(session, "transaction.mempool"))
        assert len(session.context.lockups) == 1

        await session.handle(update("swap.expired"))

        assert session.status == SwapStatus.REFUNDED
        refund = CMutableTransaction.deserialize(fake_service.broadcasts[0])
        assert refund.nLockTime == TIMEOUT_BLOCK_HEIGHT
        assert len(refund.wit.vtxinwit[0].scriptWitness.stack) == 3

    @pytest.mark.asyncio
    async def test_expiry_without_lockup(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(update("swap.created"))
        await session.handle(update("swap.expired"))

        assert session.status == SwapStatus.FAILED
        assert "before a lockup" in session.context.failure
        assert "broadcast_transaction" not in fake_service.calls

    @pytest.mark.asyncio
    async def test_expiry_without_refund_destination(self, fake_service):
        session = await SwapSession.create(
            fake_service, "BTC", "ARK", amount=100_000, signing_chain="BTC"
        )
        await session.handle(update("swap.created"))
        await session.handle(lockup_update(session, "transaction.mempool"))

        await session.handle(update("swap.expired"))

        assert session.status == SwapStatus.FAILED
        assert session.context.failure == "no refund destination configured"
        assert session.closed.is_set()
        assert "broadcast_transaction" not in fake_service.calls

    @pytest.mark.asyncio
    async def test_expiry_after_cosigning_refunds(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(update("swap.created"))
        await session.handle(lockup_update(session, "transaction.mempool"))
        await session.handle(update("transaction.server.mempool"))
        await session.handle(update("transaction.claim.pending"))
        assert session.status == SwapStatus.CLAIM_SUBMITTED

        await session.handle(update("swap.expired"))

        assert session.status == SwapStatus.REFUNDED
        assert fake_service.calls.count("broadcast_transaction") == 1
        refund = CMutableTransaction.deserialize(fake_service.broadcasts[0])
        assert refund.nLockTime == TIMEOUT_BLOCK_HEIGHT

    @pytest.mark.asyncio
    async def test_claim_details_for_other_key(self, fake_service, mocker):
        session = await create_session(fake_service, "BTC", "ARK")
        details = await fake_service.get_claim_details("swap-1")
        details.public_key = public_key_from_private(bytes.fromhex("77" * 32))
        mocker.patch.object(fake_service, "get_claim_details", return_value=details)

        for status in ("swap.created", "transaction.server.mempool"):
            await session.handle(update(status))
        with pytest.raises(KeyAggregationMismatch):
            await session.handle(update("transaction.claim.pending"))

        assert session.status == SwapStatus.FAILED
        assert "submit_partial_signature" not in fake_service.calls


class TestEventFiltering:
    """Events that must not move the session."""

    @pytest.mark.asyncio
    async def test_other_swap_id_ignored(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        calls = list(fake_service.calls)

        for status in ("swap.created", "transaction.lockupFailed", "transaction.claimed"):
            await session.handle(update(status, swap_id="someone-else"))

        assert session.status == SwapStatus.CREATED
        assert fake_service.calls == calls

    @pytest.mark.asyncio
    async def test_unknown_status_ignored(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(update("invoice.settled"))

        assert session.status == SwapStatus.CREATED
        assert session.context.violations == []

    @pytest.mark.asyncio
    async def test_violation_logged_and_ignored(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(update("swap.created"))
        await session.handle(update("transaction.claimed"))

        assert session.status == SwapStatus.AWAITING_LOCKUP
        assert len(session.context.violations) == 1

    @pytest.mark.asyncio
    async def test_service_reported_failure(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        await session.handle(
            SwapUpdate(id="swap-1", status="transaction.failed", failure_reason="bad lockup")
        )

        assert session.status == SwapStatus.FAILED
        assert session.context.failure == "bad lockup"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_late_result_discarded(self, fake_service):
        release = asyncio.Event()
        quotes = []

        class SlowNegotiator(QuoteNegotiator):
            async def renegotiate(self, swap_id, requested_amount=None):
                await release.wait()
                quotes.append(swap_id)
                return 90_000

        session = await create_session(
            fake_service, "BTC", "ARK", quote_negotiator=SlowNegotiator(fake_service)
        )
        await session.handle(update("swap.created"))

        task = asyncio.create_task(session.handle(update("transaction.lockupFailed")))
        await asyncio.sleep(0)
        session.cancel()
        release.set()
        status = await task

        assert quotes == ["swap-1"]
        assert status == SwapStatus.AWAITING_LOCKUP
        assert session.context.accepted_quotes == []
        assert session.swap.lockup_amount == 100_000

    @pytest.mark.asyncio
    async def test_events_after_cancel_ignored(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        session.cancel()
        await session.handle(update("swap.created"))

        assert session.status == SwapStatus.CREATED


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_terminal(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")
        queue = asyncio.Queue()
        for status in (
            "swap.created",
            "transaction.server.mempool",
            "transaction.claim.pending",
            "transaction.claimed",
        ):
            queue.put_nowait(update(status))

        assert await session.run(queue) == SwapStatus.CLAIMED

    @pytest.mark.asyncio
    async def test_idle_timeout_fails(self, fake_service):
        session = await create_session(fake_service, "BTC", "ARK")

        status = await session.run(asyncio.Queue(), idle_timeout=0.01)

        assert status == SwapStatus.FAILED
        assert "idle" in session.context.failure
