"""Shared fixtures: fixed keys, swap trees and an in-process swap service."""

from typing import Optional

import pytest
from bitcoin.core import CMutableTransaction, COutPoint, CTxIn, CTxOut, b2lx, lx
from bitcoin.core.script import (
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSIG,
    OP_CHECKSIGVERIFY,
    OP_EQUALVERIFY,
    OP_SHA256,
    OP_SIZE,
    CScript,
)

from chain_swap_client.crypto import public_key_from_private
from chain_swap_client.messages import (
    ChainSwapData,
    CreateChainSwapRequest,
    CreateChainSwapResponse,
    PartialSignatureMessage,
    Quote,
    ServiceClaimDetails,
)
from chain_swap_client.musig import MuSigSession, aggregate_swap_keys
from chain_swap_client.swap_tree import SwapTree, TapLeaf, taproot_address
from chain_swap_client.transactions import taproot_sighash

USER_KEY = bytes.fromhex("11" * 32)
SERVER_KEY = bytes.fromhex("22" * 32)
DESTINATION_SCRIPT = bytes.fromhex("0014" + "33" * 20)
TIMEOUT_BLOCK_HEIGHT = 2000
LOCKUP_AMOUNT = 100_000


def claim_script(preimage_hash: bytes, claim_public_key: bytes) -> bytes:
    return bytes(
        CScript(
            [
                OP_SIZE,
                32,
                OP_EQUALVERIFY,
                OP_SHA256,
                preimage_hash,
                OP_EQUALVERIFY,
                claim_public_key[1:],
                OP_CHECKSIG,
            ]
        )
    )


def refund_script(refund_public_key: bytes, timeout_block_height: int) -> bytes:
    return bytes(
        CScript(
            [
                refund_public_key[1:],
                OP_CHECKSIGVERIFY,
                timeout_block_height,
                OP_CHECKLOCKTIMEVERIFY,
            ]
        )
    )


def make_tree(
    preimage_hash: bytes,
    claim_public_key: bytes,
    refund_public_key: bytes,
    timeout_block_height: int = TIMEOUT_BLOCK_HEIGHT,
) -> SwapTree:
    """Swap tree shaped like the ones the service publishes."""
    return SwapTree(
        claim_leaf=TapLeaf(
            script=claim_script(preimage_hash, claim_public_key)
        ),
        refund_leaf=TapLeaf(script=refund_script(refund_public_key, timeout_block_height)),
    )


def make_lockup_transaction(output_script: bytes, amount: int = LOCKUP_AMOUNT) -> bytes:
    """A funding transaction with a change output and the swap output at index 1."""
    transaction = CMutableTransaction(
        [CTxIn(COutPoint(lx("aa" * 32), 0))],
        [
            CTxOut(50_000, CScript(bytes.fromhex("0014" + "44" * 20))),
            CTxOut(amount, CScript(output_script)),
        ],
        nVersion=2,
    )
    return transaction.serialize()


class FakeSwapService:
    """
    In-process swap service.

    Holds the server key and answers the MuSig2 requests the way the real
    service does, so sessions can be driven end to end without a network.
    """

    def __init__(
        self,
        server_key: bytes = SERVER_KEY,
        quote_amount: int = 95_000,
        corrupt_partial: bool = False,
    ):
        self.server_key = server_key
        self.server_public_key = public_key_from_private(server_key)
        self.quote_amount = quote_amount
        self.corrupt_partial = corrupt_partial
        self.calls: list[str] = []
        self.swap_id = "swap-1"
        self.trees: dict[str, SwapTree] = {}
        self.user_public_key: Optional[bytes] = None
        self.broadcasts: list[bytes] = []
        self.accepted_quotes: list[int] = []
        self.claim_transaction_hash = bytes.fromhex("55" * 32)
        self._claim_session: Optional[MuSigSession] = None
        self.aggregate_signature: Optional[bytes] = None

    def _details(self, tree: SwapTree) -> ChainSwapData:
        info = aggregate_swap_keys([self.user_public_key, self.server_public_key], tree)
        return ChainSwapData(
            swap_tree=tree.serialize(),
            lockup_address=taproot_address(info.output_key, "regtest"),
            server_public_key=self.server_public_key,
            timeout_block_height=TIMEOUT_BLOCK_HEIGHT,
            amount=LOCKUP_AMOUNT,
        )

    async def create_chain_swap(
        self, request: CreateChainSwapRequest
    ) -> CreateChainSwapResponse:
        self.calls.append("create_chain_swap")
        self.user_public_key = request.claim_public_key
        # Claim side: we lock, user claims. Lockup side: user locks, we claim.
        self.trees["claim"] = make_tree(
            request.preimage_hash, request.claim_public_key, self.server_public_key
        )
        self.trees["lockup"] = make_tree(
            request.preimage_hash, self.server_public_key, request.refund_public_key
        )
        return CreateChainSwapResponse(
            id=self.swap_id,
            claim_details=self._details(self.trees["claim"]),
            lockup_details=self._details(self.trees["lockup"]),
        )

    async def get_quote(self, swap_id: str) -> Quote:
        self.calls.append("get_quote")
        return Quote(amount=self.quote_amount)

    async def accept_quote(self, swap_id: str, amount: int) -> None:
        self.calls.append("accept_quote")
        self.accepted_quotes.append(amount)

    async def get_claim_details(self, swap_id: str) -> ServiceClaimDetails:
        self.calls.append("get_claim_details")
        self._claim_session = MuSigSession(
            self.server_key, self.user_public_key, self.trees["lockup"]
        )
        public_nonce = self._claim_session.generate_nonce(self.claim_transaction_hash)
        return ServiceClaimDetails(
            pub_nonce=public_nonce,
            public_key=self.server_public_key,
            transaction_hash=self.claim_transaction_hash,
        )

    async def submit_partial_signature(
        self, swap_id: str, public_nonce: bytes, partial_signature: bytes
    ) -> None:
        self.calls.append("submit_partial_signature")
        session = self._claim_session
        session.aggregate_nonces(public_nonce)
        session.initialize_session()
        session.add_counterparty_partial(partial_signature)
        session.sign_partial()
        self.aggregate_signature = session.aggregate_partials()

    async def submit_user_claim(
        self,
        swap_id: str,
        preimage: bytes,
        public_nonce: bytes,
        transaction: bytes,
        index: int = 0,
    ) -> PartialSignatureMessage:
        self.calls.append("submit_user_claim")
        tree = self.trees["claim"]
        info = aggregate_swap_keys([self.user_public_key, self.server_public_key], tree)
        claim = CMutableTransaction.deserialize(transaction)
        # The service knows the amount it locked
        message = taproot_sighash(claim, index, [info.output_script], [LOCKUP_AMOUNT])

        session = MuSigSession(self.server_key, self.user_public_key, tree)
        server_nonce = session.generate_nonce(message)
        session.aggregate_nonces(public_nonce)
        session.initialize_session()
        partial_signature = session.sign_partial()
        if self.corrupt_partial:
            partial_signature = bytes(31) + b"\x01"
        return PartialSignatureMessage(
            pub_nonce=server_nonce, partial_signature=partial_signature
        )

    async def broadcast_transaction(self, chain: str, transaction: bytes) -> str:
        self.calls.append("broadcast_transaction")
        self.broadcasts.append(transaction)
        return b2lx(CMutableTransaction.deserialize(transaction).GetTxid())


@pytest.fixture
def fake_service():
    return FakeSwapService()


@pytest.fixture
def user_public_key():
    return public_key_from_private(USER_KEY)


@pytest.fixture
def server_public_key():
    return public_key_from_private(SERVER_KEY)


@pytest.fixture
def swap_tree(user_public_key, server_public_key):
    return make_tree(bytes(32), user_public_key, server_public_key)
