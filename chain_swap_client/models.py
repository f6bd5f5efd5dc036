"""
Data structures for a single chain swap session.

Everything here lives and dies with one swap: the secrets, the observed
lockup, the claim draft and the MuSig2 exchanges. Nothing is shared across
sessions, so none of these need locking.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bitcoin.core import CMutableTransaction
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .crypto import PREIMAGE_LENGTH, public_key_from_private, sha256


class SwapDirection(str, Enum):
    """Which side holds the output spent on the signing chain."""

    USER_CLAIMS = "user_claims"  # Service locks, we build, sign and broadcast the claim
    SERVICE_CLAIMS = "service_claims"  # We lock, service claims with our partial signature

    @classmethod
    def for_chains(
        cls, from_chain: str, to_chain: str, signing_chain: str
    ) -> "SwapDirection":
        """Direction of a swap from `from_chain` to `to_chain`."""
        if to_chain == signing_chain:
            return cls.USER_CLAIMS
        if from_chain == signing_chain:
            return cls.SERVICE_CLAIMS
        raise ValueError(
            f"neither {from_chain} nor {to_chain} is the signing chain {signing_chain}"
        )


class SwapStatus(str, Enum):
    """Lifecycle state of a swap session."""

    CREATED = "created"
    AWAITING_LOCKUP = "awaiting_lockup"
    QUOTE_RENEGOTIATION = "quote_renegotiation"
    LOCKUP_DETECTED = "lockup_detected"
    CLAIM_SUBMITTED = "claim_submitted"
    CLAIMED = "claimed"  # Success
    FAILED = "failed"  # Unrecoverable error
    REFUNDED = "refunded"  # Timed out, refund path taken

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SwapStatus.CLAIMED, SwapStatus.FAILED, SwapStatus.REFUNDED}
)


class Swap(BaseModel):
    """
    The swap as seen by its owning session.

    The preimage and private key are generated once and never leave the
    session. The preimage hash is derived on access so it always matches.
    """

    swap_id: str = Field(description="Identifier assigned by the service")
    direction: SwapDirection
    from_chain: str = Field(description="Ledger the user locks on")
    to_chain: str = Field(description="Ledger the user receives on")
    lockup_amount: Optional[int] = Field(
        None, description="Amount the user locks, updated by quote renegotiation"
    )
    preimage: bytes = Field(repr=False, description="32-byte swap secret")
    private_key: bytes = Field(
        repr=False, description="Claim key or refund key depending on direction"
    )
    counterparty_public_key: Optional[bytes] = Field(
        None, description="Service public key on the signing chain"
    )
    status: SwapStatus = SwapStatus.CREATED
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("preimage")
    @classmethod
    def check_preimage_length(cls, value: bytes) -> bytes:
        if len(value) != PREIMAGE_LENGTH:
            raise ValueError(f"preimage must be {PREIMAGE_LENGTH} bytes")
        return value

    @property
    def preimage_hash(self) -> bytes:
        return sha256(self.preimage)

    @property
    def public_key(self) -> bytes:
        return public_key_from_private(self.private_key)


class LockupObservation(BaseModel):
    """An on-chain output paying to the swap's Taproot key."""

    model_config = ConfigDict(frozen=True)

    script: bytes = Field(description="Output script of the lockup")
    amount: int = Field(description="Output value in satoshis")
    transaction_id: str = Field(description="Lockup transaction id (hex, display order)")
    vout: int = Field(description="Index of the lockup output")


class ClaimTransactionDraft(BaseModel):
    """
    A one-input, one-output spend of a lockup output.

    The transaction is complete apart from its witness, which is attached
    once the signature is known. Fee fields record how the fee was sized.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    transaction: CMutableTransaction
    lockup: LockupObservation
    destination_script: bytes
    fee: int = Field(description="Absolute fee in satoshis")
    fee_rate: float = Field(description="Target fee rate in sat/vbyte")
    vsize: int = Field(description="Virtual size the fee was computed for")
    signed: bool = False


class NonceExchange(BaseModel):
    """Public nonces of one signing attempt."""

    own_public_nonce: bytes
    counterparty_public_nonce: Optional[bytes] = None
    aggregate_nonce: Optional[bytes] = None


class PartialSignatureExchange(BaseModel):
    """Partial signatures of one signing attempt and their aggregate."""

    own_partial_signature: bytes
    counterparty_partial_signature: Optional[bytes] = None
    aggregate_signature: Optional[bytes] = None
