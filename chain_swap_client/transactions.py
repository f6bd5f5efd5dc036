"""
Claim and refund transaction construction.

All spends here are one input (the swap lockup) to one output (the
destination). Fees are sized by building the transaction, measuring its
virtual size and rebuilding with the implied fee until the fee stops
changing. For this template that takes two rounds, because the output
value is a fixed-width field and the fee never changes the size.
"""

import math
import struct
from typing import Callable, Optional

import structlog
from bitcoin.core import (
    CMutableTransaction,
    COutPoint,
    CTransaction,
    CTxIn,
    CTxInWitness,
    CTxOut,
    CTxWitness,
    lx,
)
from bitcoin.core.script import CScript, CScriptWitness
from bitcoin.core.serialize import BytesSerializer

from .config import config
from .crypto import schnorr_sign, sha256, tagged_hash
from .exceptions import InsufficientAmount
from .models import ClaimTransactionDraft, LockupObservation
from .swap_tree import SwapTreeInfo, TapLeaf

logger = structlog.get_logger()

TX_VERSION = 2
RBF_SEQUENCE = 0xFFFFFFFD
SIGHASH_DEFAULT = 0x00
SCHNORR_SIGNATURE_LENGTH = 64
DUMMY_SCHNORR_SIGNATURE = bytes(SCHNORR_SIGNATURE_LENGTH)
MAX_FEE_ITERATIONS = 5


def transaction_weight(transaction: CTransaction) -> int:
    """BIP141 weight: stripped size * 3 + full size."""
    stripped = CTransaction(
        transaction.vin, transaction.vout, transaction.nLockTime, transaction.nVersion
    )
    return len(stripped.serialize()) * 3 + len(transaction.serialize())


def virtual_size(transaction: CTransaction) -> int:
    return (transaction_weight(transaction) + 3) // 4


def taproot_sighash(
    transaction: CTransaction,
    input_index: int,
    prevout_scripts: list[bytes],
    prevout_amounts: list[int],
    hash_type: int = SIGHASH_DEFAULT,
    leaf_hash: Optional[bytes] = None,
) -> bytes:
    """
    BIP-341 signature hash for SIGHASH_DEFAULT.

    With `leaf_hash` set this is the script-path variant (ext_flag 1) for a
    tapscript leaf without OP_CODESEPARATOR.
    """
    if hash_type != SIGHASH_DEFAULT:
        raise ValueError("only SIGHASH_DEFAULT is supported")
    if len(prevout_scripts) != len(transaction.vin) or len(prevout_amounts) != len(
        transaction.vin
    ):
        raise ValueError("need one prevout script and amount per input")

    sha_prevouts = sha256(b"".join(txin.prevout.serialize() for txin in transaction.vin))
    sha_amounts = sha256(b"".join(struct.pack("<q", amount) for amount in prevout_amounts))
    sha_scriptpubkeys = sha256(
        b"".join(BytesSerializer.serialize(script) for script in prevout_scripts)
    )
    sha_sequences = sha256(
        b"".join(struct.pack("<I", txin.nSequence) for txin in transaction.vin)
    )
    sha_outputs = sha256(b"".join(txout.serialize() for txout in transaction.vout))

    spend_type = 2 if leaf_hash is not None else 0
    sigmsg = bytes([hash_type])
    sigmsg += struct.pack("<i", transaction.nVersion)
    sigmsg += struct.pack("<I", transaction.nLockTime)
    sigmsg += sha_prevouts + sha_amounts + sha_scriptpubkeys + sha_sequences + sha_outputs
    sigmsg += bytes([spend_type])
    sigmsg += struct.pack("<I", input_index)
    if leaf_hash is not None:
        sigmsg += leaf_hash + b"\x00" + struct.pack("<I", 0xFFFFFFFF)

    # Leading zero is the sighash epoch
    return tagged_hash("TapSighash", b"\x00" + sigmsg)


def target_fee(
    fee_rate: float, construct: Callable[[int], CMutableTransaction]
) -> tuple[CMutableTransaction, int, int]:
    """
    Build with the fee implied by the transaction's own size.

    Returns (transaction, fee, vsize). `construct` receives the absolute
    fee and must return the transaction paying it.
    """
    fee = 0
    transaction = construct(fee)
    for _ in range(MAX_FEE_ITERATIONS):
        vsize = virtual_size(transaction)
        required = math.ceil(vsize * fee_rate)
        if required == fee:
            return transaction, fee, vsize
        fee = required
        transaction = construct(fee)

    vsize = virtual_size(transaction)
    logger.warning("Fee targeting did not converge", fee=fee, vsize=vsize)
    return transaction, fee, vsize


def _witness(stack: list[bytes]) -> CTxWitness:
    return CTxWitness([CTxInWitness(CScriptWitness(stack))])


class ClaimTransactionBuilder:
    """Builds spends of a detected lockup output at a target fee rate."""

    def __init__(
        self, fee_rate: Optional[float] = None, dust_limit: Optional[int] = None
    ):
        self.fee_rate = config.fee_rate_sat_vbyte if fee_rate is None else fee_rate
        self.dust_limit = config.dust_limit_sats if dust_limit is None else dust_limit

    def _spend(
        self,
        lockup: LockupObservation,
        destination_script: bytes,
        fee: int,
        witness_stack: list[bytes],
        locktime: int = 0,
    ) -> CMutableTransaction:
        output_amount = lockup.amount - fee
        if output_amount < self.dust_limit:
            raise InsufficientAmount(lockup.amount, fee, self.dust_limit)

        txin = CTxIn(
            COutPoint(lx(lockup.transaction_id), lockup.vout), nSequence=RBF_SEQUENCE
        )
        txout = CTxOut(output_amount, CScript(destination_script))
        return CMutableTransaction(
            [txin],
            [txout],
            nLockTime=locktime,
            nVersion=TX_VERSION,
            witness=_witness(witness_stack),
        )

    def _draft(
        self,
        lockup: LockupObservation,
        destination_script: bytes,
        construct: Callable[[int], CMutableTransaction],
    ) -> ClaimTransactionDraft:
        transaction, fee, vsize = target_fee(self.fee_rate, construct)
        logger.debug(
            "Sized spend transaction",
            txid=lockup.transaction_id,
            vout=lockup.vout,
            fee=fee,
            vsize=vsize,
            fee_rate=self.fee_rate,
        )
        return ClaimTransactionDraft(
            transaction=transaction,
            lockup=lockup,
            destination_script=destination_script,
            fee=fee,
            fee_rate=self.fee_rate,
            vsize=vsize,
        )

    def build_cooperative_claim(
        self, lockup: LockupObservation, destination_script: bytes
    ) -> ClaimTransactionDraft:
        """
        Key-path claim draft.

        The witness holds a zeroed 64-byte placeholder so the size the fee
        is computed from matches the final signed transaction.
        """
        return self._draft(
            lockup,
            destination_script,
            lambda fee: self._spend(
                lockup, destination_script, fee, [DUMMY_SCHNORR_SIGNATURE]
            ),
        )

    @staticmethod
    def key_path_sighash(draft: ClaimTransactionDraft) -> bytes:
        return taproot_sighash(
            draft.transaction, 0, [draft.lockup.script], [draft.lockup.amount]
        )

    @staticmethod
    def attach_key_path_signature(
        draft: ClaimTransactionDraft, signature: bytes
    ) -> ClaimTransactionDraft:
        if len(signature) != SCHNORR_SIGNATURE_LENGTH:
            raise ValueError("key-path signature must be 64 bytes")
        draft.transaction.wit = _witness([signature])
        draft.signed = True
        return draft

    def _build_script_path(
        self,
        lockup: LockupObservation,
        tree_info: SwapTreeInfo,
        leaf: TapLeaf,
        destination_script: bytes,
        private_key: bytes,
        leaf_inputs: list[bytes],
        locktime: int = 0,
    ) -> ClaimTransactionDraft:
        control_block = tree_info.control_block(leaf)
        draft = self._draft(
            lockup,
            destination_script,
            lambda fee: self._spend(
                lockup,
                destination_script,
                fee,
                [DUMMY_SCHNORR_SIGNATURE, *leaf_inputs, leaf.script, control_block],
                locktime=locktime,
            ),
        )

        sighash = taproot_sighash(
            draft.transaction,
            0,
            [lockup.script],
            [lockup.amount],
            leaf_hash=leaf.leaf_hash,
        )
        signature = schnorr_sign(private_key, sighash)
        draft.transaction.wit = _witness(
            [signature, *leaf_inputs, leaf.script, control_block]
        )
        draft.signed = True
        return draft

    def build_script_path_claim(
        self,
        lockup: LockupObservation,
        tree_info: SwapTreeInfo,
        destination_script: bytes,
        preimage: bytes,
        private_key: bytes,
    ) -> ClaimTransactionDraft:
        """Unilateral claim revealing the preimage through the claim leaf."""
        return self._build_script_path(
            lockup,
            tree_info,
            tree_info.tree.claim_leaf,
            destination_script,
            private_key,
            [preimage],
        )

    def build_refund(
        self,
        lockup: LockupObservation,
        tree_info: SwapTreeInfo,
        destination_script: bytes,
        private_key: bytes,
        timeout_block_height: int,
    ) -> ClaimTransactionDraft:
        """Refund through the timelocked refund leaf."""
        return self._build_script_path(
            lockup,
            tree_info,
            tree_info.tree.refund_leaf,
            destination_script,
            private_key,
            [],
            locktime=timeout_block_height,
        )
