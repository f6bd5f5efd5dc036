"""
Swap lifecycle as a pure transition function.

`transition` maps (status, direction, event) to the next status and the
side effects the driver has to run. It never performs I/O, so every path
through the lifecycle can be checked without a service.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .messages import TransactionInfo
from .models import SwapDirection, SwapStatus


class EventKind(str, Enum):
    """Status tags pushed by the service, plus the driver's own events."""

    SWAP_CREATED = "swap.created"
    LOCKUP_FAILED = "transaction.lockupFailed"
    USER_LOCKUP_MEMPOOL = "transaction.mempool"
    USER_LOCKUP_CONFIRMED = "transaction.confirmed"
    SERVER_LOCKUP_MEMPOOL = "transaction.server.mempool"
    SERVER_LOCKUP_CONFIRMED = "transaction.server.confirmed"
    CLAIM_PENDING = "transaction.claim.pending"
    CLAIMED = "transaction.claimed"
    SWAP_EXPIRED = "swap.expired"
    REFUNDED = "transaction.refunded"
    TRANSACTION_FAILED = "transaction.failed"

    # Internal
    QUOTE_ACCEPTED = "internal.quote_accepted"
    REFUND_BROADCAST = "internal.refund_broadcast"
    REFUND_UNAVAILABLE = "internal.refund_unavailable"
    TIMEOUT = "internal.timeout"

    @classmethod
    def from_status(cls, status: str) -> Optional["EventKind"]:
        """Map a service status tag to an event, None if it is unknown."""
        if status.startswith("internal."):
            return None
        try:
            return cls(status)
        except ValueError:
            return None


class SwapEvent(BaseModel):
    """One event delivered to a session."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    transaction: Optional[TransactionInfo] = None
    reason: Optional[str] = None


class EffectKind(str, Enum):
    NEGOTIATE_QUOTE = "negotiate_quote"
    CLAIM_LOCKUP = "claim_lockup"
    SIGN_SERVICE_CLAIM = "sign_service_claim"
    RECORD_LOCKUP = "record_lockup"
    BROADCAST_REFUND = "broadcast_refund"
    CLOSE = "close"


class Effect(BaseModel):
    """A side effect requested by a transition."""

    model_config = ConfigDict(frozen=True)

    kind: EffectKind
    transaction: Optional[TransactionInfo] = Field(
        None, description="Transaction the event carried, for lockup effects"
    )


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: SwapStatus
    effects: tuple[Effect, ...] = ()
    violation: Optional[str] = Field(
        None, description="Set when a known event did not fit the current status"
    )


AWAITING = frozenset({SwapStatus.CREATED, SwapStatus.AWAITING_LOCKUP})
SERVER_LOCKUP = frozenset(
    {EventKind.SERVER_LOCKUP_MEMPOOL, EventKind.SERVER_LOCKUP_CONFIRMED}
)
USER_LOCKUP = frozenset(
    {EventKind.USER_LOCKUP_MEMPOOL, EventKind.USER_LOCKUP_CONFIRMED}
)
EXPIRY = frozenset({EventKind.SWAP_EXPIRED, EventKind.REFUNDED})
FAILURE = frozenset(
    {EventKind.TRANSACTION_FAILED, EventKind.REFUND_UNAVAILABLE, EventKind.TIMEOUT}
)
CLOSE = Effect(kind=EffectKind.CLOSE)


def _stay(status: SwapStatus, violation: Optional[str] = None) -> Transition:
    return Transition(status=status, violation=violation)


def transition(
    status: SwapStatus, direction: SwapDirection, event: SwapEvent
) -> Transition:
    """Next status and effects for `event` arriving in `status`."""
    kind = event.kind

    if status.is_terminal:
        return _stay(status)

    if kind in FAILURE:
        return Transition(status=SwapStatus.FAILED, effects=(CLOSE,))

    if kind in EXPIRY:
        if direction == SwapDirection.SERVICE_CLAIMS:
            # Our lockup is on the signing chain, the refund decides the outcome
            return Transition(
                status=status, effects=(Effect(kind=EffectKind.BROADCAST_REFUND),)
            )
        return Transition(status=SwapStatus.REFUNDED, effects=(CLOSE,))

    if kind == EventKind.REFUND_BROADCAST:
        return Transition(status=SwapStatus.REFUNDED, effects=(CLOSE,))

    if kind in USER_LOCKUP:
        return Transition(
            status=status,
            effects=(
                Effect(kind=EffectKind.RECORD_LOCKUP, transaction=event.transaction),
            ),
        )

    if kind == EventKind.SWAP_CREATED:
        if status == SwapStatus.CREATED:
            return _stay(SwapStatus.AWAITING_LOCKUP)
        return _stay(status, f"{kind.value} in {status.value}")

    if kind == EventKind.LOCKUP_FAILED:
        if status in AWAITING:
            return Transition(
                status=SwapStatus.QUOTE_RENEGOTIATION,
                effects=(Effect(kind=EffectKind.NEGOTIATE_QUOTE),),
            )
        if status == SwapStatus.QUOTE_RENEGOTIATION:
            # Repeated while a quote is still being negotiated
            return _stay(status)
        return _stay(status, f"{kind.value} in {status.value}")

    if kind == EventKind.QUOTE_ACCEPTED:
        if status == SwapStatus.QUOTE_RENEGOTIATION:
            return _stay(SwapStatus.AWAITING_LOCKUP)
        return _stay(status, f"{kind.value} in {status.value}")

    if kind in SERVER_LOCKUP:
        if status in AWAITING:
            if direction == SwapDirection.USER_CLAIMS:
                return Transition(
                    status=SwapStatus.CLAIM_SUBMITTED,
                    effects=(
                        Effect(
                            kind=EffectKind.CLAIM_LOCKUP, transaction=event.transaction
                        ),
                    ),
                )
            return _stay(SwapStatus.LOCKUP_DETECTED)
        if kind == EventKind.SERVER_LOCKUP_CONFIRMED and status in (
            SwapStatus.LOCKUP_DETECTED,
            SwapStatus.CLAIM_SUBMITTED,
        ):
            # Confirmation following the mempool event we already acted on
            return _stay(status)
        return _stay(status, f"{kind.value} in {status.value}")

    if kind == EventKind.CLAIM_PENDING:
        if status == SwapStatus.LOCKUP_DETECTED and (
            direction == SwapDirection.SERVICE_CLAIMS
        ):
            return Transition(
                status=SwapStatus.CLAIM_SUBMITTED,
                effects=(Effect(kind=EffectKind.SIGN_SERVICE_CLAIM),),
            )
        if status == SwapStatus.CLAIM_SUBMITTED:
            return _stay(status)
        return _stay(status, f"{kind.value} in {status.value}")

    if kind == EventKind.CLAIMED:
        if status in (SwapStatus.LOCKUP_DETECTED, SwapStatus.CLAIM_SUBMITTED):
            return Transition(status=SwapStatus.CLAIMED, effects=(CLOSE,))
        return _stay(status, f"{kind.value} in {status.value}")

    return _stay(status)
