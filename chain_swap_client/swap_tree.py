"""
Taproot script tree of a swap.

The service describes each lockup as a two-leaf tree: a claim leaf
(preimage + claim key) and a refund leaf (refund key + timelock). The
output key commits to that tree on top of the MuSig2 aggregate of both
parties' keys, which is what makes the cheap key-path claim possible.
"""

from typing import Optional

import structlog
from bitcoin.core import CTransaction, b2lx
from bitcoin.core.script import OP_1, CScript
from bitcoin.core.serialize import BytesSerializer, SerializationError
from embit.networks import NETWORKS
from embit.script import Script, address_to_scriptpubkey
from pydantic import BaseModel, ConfigDict, Field

from .crypto import tagged_hash
from .exceptions import DecodingError
from .messages import SerializedLeaf, SerializedSwapTree
from .models import LockupObservation

logger = structlog.get_logger()

TAPSCRIPT_LEAF_VERSION = 0xC0


class TapLeaf(BaseModel):
    """A single tapscript leaf."""

    model_config = ConfigDict(frozen=True)

    version: int = TAPSCRIPT_LEAF_VERSION
    script: bytes

    @property
    def leaf_hash(self) -> bytes:
        return tagged_hash(
            "TapLeaf", bytes([self.version]) + BytesSerializer.serialize(self.script)
        )


def branch_hash(left: bytes, right: bytes) -> bytes:
    if right < left:
        left, right = right, left
    return tagged_hash("TapBranch", left + right)


def taproot_tweak(internal_key: bytes, merkle_root: bytes) -> bytes:
    """Tweak committing an x-only internal key to a script tree root."""
    return tagged_hash("TapTweak", internal_key + merkle_root)


def p2tr_script(output_key: bytes) -> bytes:
    """Witness v1 output script for an x-only key."""
    return bytes(CScript([OP_1, output_key]))


def address_script(address: str) -> bytes:
    """Output script of a bech32/bech32m or base58 address."""
    try:
        return address_to_scriptpubkey(address).data
    except Exception as e:
        raise DecodingError(f"cannot decode address {address!r}: {e}") from e


def taproot_output_key(address: str) -> bytes:
    """x-only output key committed to by a P2TR address."""
    script = address_script(address)
    if len(script) != 34 or script[:2] != b"\x51\x20":
        raise DecodingError(f"{address} is not a taproot address")
    return script[2:]


def taproot_address(output_key: bytes, network: str = "main") -> str:
    return Script(p2tr_script(output_key)).address(NETWORKS[network])


class SwapTree(BaseModel):
    """Claim and refund leaves of a swap lockup."""

    model_config = ConfigDict(frozen=True)

    claim_leaf: TapLeaf
    refund_leaf: TapLeaf

    @classmethod
    def from_serialized(cls, serialized: SerializedSwapTree) -> "SwapTree":
        for name, leaf in (
            ("claim", serialized.claim_leaf),
            ("refund", serialized.refund_leaf),
        ):
            if leaf.version != TAPSCRIPT_LEAF_VERSION:
                raise DecodingError(f"unsupported {name} leaf version {leaf.version}")
            if not leaf.output:
                raise DecodingError(f"empty {name} leaf script")

        return cls(
            claim_leaf=TapLeaf(
                version=serialized.claim_leaf.version,
                script=serialized.claim_leaf.output,
            ),
            refund_leaf=TapLeaf(
                version=serialized.refund_leaf.version,
                script=serialized.refund_leaf.output,
            ),
        )

    def serialize(self) -> SerializedSwapTree:
        return SerializedSwapTree(
            claim_leaf=SerializedLeaf(
                version=self.claim_leaf.version, output=self.claim_leaf.script
            ),
            refund_leaf=SerializedLeaf(
                version=self.refund_leaf.version, output=self.refund_leaf.script
            ),
        )

    @property
    def merkle_root(self) -> bytes:
        return branch_hash(self.claim_leaf.leaf_hash, self.refund_leaf.leaf_hash)

    def sibling_hash(self, leaf: TapLeaf) -> bytes:
        if leaf == self.claim_leaf:
            return self.refund_leaf.leaf_hash
        if leaf == self.refund_leaf:
            return self.claim_leaf.leaf_hash
        raise ValueError("leaf is not part of this tree")


class SwapTreeInfo(BaseModel):
    """
    Keys derived for one swap tree.

    Internal key is the untweaked MuSig2 aggregate, output key the tweaked
    one that actually appears on chain. Both are x-only.
    """

    model_config = ConfigDict(frozen=True)

    tree: SwapTree
    internal_key: bytes = Field(description="x-only untweaked aggregate key")
    output_key: bytes = Field(description="x-only tweaked aggregate key")
    output_parity: int = Field(description="1 if the tweaked key has odd y")

    @property
    def output_script(self) -> bytes:
        return p2tr_script(self.output_key)

    def control_block(self, leaf: TapLeaf) -> bytes:
        """Control block proving `leaf` is committed to by the output key."""
        return (
            bytes([leaf.version | self.output_parity])
            + self.internal_key
            + self.tree.sibling_hash(leaf)
        )


def parse_transaction(raw: bytes) -> CTransaction:
    try:
        return CTransaction.deserialize(raw)
    except (SerializationError, ValueError) as e:
        raise DecodingError(f"cannot parse transaction: {e}") from e


def detect_swap_output(
    output_key: bytes, transaction: CTransaction
) -> Optional[LockupObservation]:
    """Find the output of `transaction` paying to `output_key`."""
    script = p2tr_script(output_key)
    for vout, output in enumerate(transaction.vout):
        if bytes(output.scriptPubKey) == script:
            observation = LockupObservation(
                script=script,
                amount=output.nValue,
                transaction_id=b2lx(transaction.GetTxid()),
                vout=vout,
            )
            logger.debug(
                "Detected swap output",
                txid=observation.transaction_id,
                vout=vout,
                amount=observation.amount,
            )
            return observation
    return None
