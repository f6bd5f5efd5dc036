"""
Error taxonomy for the swap engine.

Everything raised on purpose by this package derives from SwapError so
callers driving a session can catch one type. The subclasses mirror how
a failure should be treated: protocol violations are logged and ignored,
crypto failures abort the current signing attempt, transport failures are
retried where the call is idempotent, and amount problems end the claim
attempt.
"""

from __future__ import annotations


class SwapError(Exception):
    """Base class for all swap engine errors."""


class ProtocolViolation(SwapError):
    """An event arrived that does not fit the session's current state."""


class CryptoFailure(SwapError):
    """Fatal to the current claim attempt."""


class NonceReused(CryptoFailure):
    """A secret nonce was about to be used for a second signature."""


class KeyAggregationMismatch(CryptoFailure):
    """Derived aggregate key differs from the one the service published."""


class PartialSignatureInvalid(CryptoFailure):
    """The counterparty's partial signature does not verify."""

    def __init__(self, message: str, signer: bytes | None = None) -> None:
        super().__init__(message)
        self.signer = signer


class SignatureVerificationFailed(CryptoFailure):
    """The aggregated Schnorr signature does not verify."""


class SigningOrderError(CryptoFailure):
    """A MuSig2 step was called out of protocol order."""


class LockupMismatch(CryptoFailure):
    """A lockup transaction has no output paying the swap's aggregate key."""


class TransportFailure(SwapError):
    """Network error or malformed response from the swap service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodingError(TransportFailure):
    """A payload did not match its schema (including hex field lengths)."""


class CounterpartyTimeout(TransportFailure):
    """The counterparty did not deliver its nonce or partial signature."""


class InsufficientAmount(SwapError):
    """Lockup amount cannot pay the target fee and leave a non-dust output."""

    def __init__(self, amount: int, fee: int, dust_limit: int) -> None:
        super().__init__(
            f"amount {amount} cannot cover fee {fee} plus dust limit {dust_limit}"
        )
        self.amount = amount
        self.fee = fee
        self.dust_limit = dust_limit


class QuoteRejected(SwapError):
    """A renegotiated quote fell outside the configured acceptance bounds."""

    def __init__(self, amount: int, reason: str) -> None:
        super().__init__(f"quote of {amount} rejected: {reason}")
        self.amount = amount
        self.reason = reason
