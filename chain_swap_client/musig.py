"""
Two-party MuSig2 for the cooperative key-path claim.

Follows BIP-327: keys are sorted before aggregation so both sides derive
the same aggregate regardless of argument order, the aggregate is tweaked
with the swap tree's Taproot commitment (x-only tweak), and signing runs in
two rounds (public nonces, then partial signatures).

A MuSigSession is one signing attempt. It walks through

    KeysAggregated -> NonceGenerated -> NoncesAggregated
        -> SessionInitialized -> PartialSigned -> Aggregated

and refuses calls made out of that order. The secret nonce is bound to the
message at generation time and wiped right after the partial signature is
produced, so it can never sign a second message.
"""

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from coincurve import PublicKey

from .crypto import (
    CURVE_ORDER,
    base_mul,
    bytes_from_int,
    has_even_y,
    int_from_bytes,
    point_add,
    point_from_bytes,
    point_from_bytes_ext,
    point_mul,
    point_negate,
    point_to_bytes,
    point_to_bytes_ext,
    points_equal,
    public_key_from_private,
    schnorr_verify,
    tagged_hash,
    xonly_bytes,
)
from .exceptions import (
    CryptoFailure,
    KeyAggregationMismatch,
    NonceReused,
    PartialSignatureInvalid,
    SignatureVerificationFailed,
    SigningOrderError,
)
from .models import NonceExchange, PartialSignatureExchange
from .swap_tree import SwapTree, SwapTreeInfo, taproot_tweak

logger = structlog.get_logger()

PUBLIC_NONCE_LENGTH = 66


@dataclass(frozen=True)
class KeyAggContext:
    """Aggregate point plus accumulated tweak state (BIP-327 gacc/tacc)."""

    point: PublicKey
    gacc: int
    tacc: int

    @property
    def xonly(self) -> bytes:
        return xonly_bytes(self.point)


@dataclass(frozen=True)
class SessionValues:
    aggregate: KeyAggContext
    b: int
    R: PublicKey
    e: int


def key_sort(public_keys: list[bytes]) -> list[bytes]:
    return sorted(public_keys)


def _second_key(public_keys: list[bytes]) -> bytes:
    for key in public_keys[1:]:
        if key != public_keys[0]:
            return key
    return bytes(33)


def key_agg_coefficient(public_keys: list[bytes], public_key: bytes) -> int:
    if public_key == _second_key(public_keys):
        return 1
    keys_hash = tagged_hash("KeyAgg list", b"".join(public_keys))
    return (
        int_from_bytes(tagged_hash("KeyAgg coefficient", keys_hash + public_key))
        % CURVE_ORDER
    )


def key_agg(public_keys: list[bytes]) -> KeyAggContext:
    """Aggregate compressed public keys in the order given."""
    aggregate = None
    for public_key in public_keys:
        try:
            point = point_from_bytes(public_key)
        except ValueError as e:
            raise CryptoFailure(f"invalid public key {public_key.hex()}") from e
        coefficient = key_agg_coefficient(public_keys, public_key)
        aggregate = point_add(aggregate, point_mul(point, coefficient))
    if aggregate is None:
        raise CryptoFailure("aggregate public key is the point at infinity")
    return KeyAggContext(point=aggregate, gacc=1, tacc=0)


def apply_tweak(context: KeyAggContext, tweak: bytes, is_xonly: bool) -> KeyAggContext:
    g = CURVE_ORDER - 1 if is_xonly and not has_even_y(context.point) else 1
    t = int_from_bytes(tweak)
    if t >= CURVE_ORDER:
        raise CryptoFailure("tweak exceeds the curve order")
    tweaked = point_add(point_mul(context.point, g), base_mul(t))
    if tweaked is None:
        raise CryptoFailure("tweaked aggregate key is the point at infinity")
    return KeyAggContext(
        point=tweaked,
        gacc=g * context.gacc % CURVE_ORDER,
        tacc=(t + g * context.tacc) % CURVE_ORDER,
    )


def aggregate_swap_keys(public_keys: list[bytes], tree: SwapTree) -> SwapTreeInfo:
    """Internal and Taproot output key for a swap tree, independent of key order."""
    internal = key_agg(key_sort(public_keys))
    tweaked = apply_tweak(
        internal, taproot_tweak(internal.xonly, tree.merkle_root), is_xonly=True
    )
    return SwapTreeInfo(
        tree=tree,
        internal_key=internal.xonly,
        output_key=tweaked.xonly,
        output_parity=0 if has_even_y(tweaked.point) else 1,
    )


def _nonce_hash(
    rand: bytes,
    public_key: bytes,
    aggregate_key: bytes,
    index: int,
    message_prefixed: bytes,
    extra_in: bytes,
) -> int:
    buf = rand
    buf += len(public_key).to_bytes(1, "big") + public_key
    buf += len(aggregate_key).to_bytes(1, "big") + aggregate_key
    buf += message_prefixed
    buf += len(extra_in).to_bytes(4, "big") + extra_in
    buf += index.to_bytes(1, "big")
    return int_from_bytes(tagged_hash("MuSig/nonce", buf))


def nonce_gen(
    secret_key: bytes,
    public_key: bytes,
    aggregate_key: bytes,
    message: bytes,
    extra_in: bytes = b"",
    rand_: Optional[bytes] = None,
) -> tuple[bytes, bytes]:
    """Return (secnonce, pubnonce) bound to `message`."""
    if rand_ is None:
        rand_ = secrets.token_bytes(32)
    rand = bytes(a ^ b for a, b in zip(secret_key, tagged_hash("MuSig/aux", rand_)))
    message_prefixed = b"\x01" + len(message).to_bytes(8, "big") + message

    k1 = _nonce_hash(rand, public_key, aggregate_key, 0, message_prefixed, extra_in) % CURVE_ORDER
    k2 = _nonce_hash(rand, public_key, aggregate_key, 1, message_prefixed, extra_in) % CURVE_ORDER
    if k1 == 0 or k2 == 0:
        raise CryptoFailure("nonce derivation produced zero")

    public_nonce = point_to_bytes(base_mul(k1)) + point_to_bytes(base_mul(k2))
    secret_nonce = bytes_from_int(k1) + bytes_from_int(k2) + public_key
    return secret_nonce, public_nonce


def nonce_agg(public_nonces: list[bytes]) -> bytes:
    aggregate_nonce = b""
    for j in (0, 1):
        total = None
        for public_nonce in public_nonces:
            if len(public_nonce) != PUBLIC_NONCE_LENGTH:
                raise CryptoFailure(f"public nonce must be {PUBLIC_NONCE_LENGTH} bytes")
            try:
                point = point_from_bytes(public_nonce[j * 33:(j + 1) * 33])
            except ValueError as e:
                raise CryptoFailure("public nonce is not a valid point") from e
            total = point_add(total, point)
        aggregate_nonce += point_to_bytes_ext(total)
    return aggregate_nonce


def session_values(
    aggregate_nonce: bytes, aggregate: KeyAggContext, message: bytes
) -> SessionValues:
    b = (
        int_from_bytes(
            tagged_hash("MuSig/noncecoef", aggregate_nonce + aggregate.xonly + message)
        )
        % CURVE_ORDER
    )
    r1 = point_from_bytes_ext(aggregate_nonce[0:33])
    r2 = point_from_bytes_ext(aggregate_nonce[33:66])
    R = point_add(r1, point_mul(r2, b))
    if R is None:
        R = base_mul(1)
    e = (
        int_from_bytes(
            tagged_hash("BIP0340/challenge", xonly_bytes(R) + aggregate.xonly + message)
        )
        % CURVE_ORDER
    )
    return SessionValues(aggregate=aggregate, b=b, R=R, e=e)


def partial_sign(
    secret_nonce: bytes,
    secret_key: bytes,
    values: SessionValues,
    public_keys: list[bytes],
) -> bytes:
    k1_ = int_from_bytes(secret_nonce[0:32])
    k2_ = int_from_bytes(secret_nonce[32:64])
    if not 0 < k1_ < CURVE_ORDER or not 0 < k2_ < CURVE_ORDER:
        raise NonceReused("secret nonce is empty or already consumed")
    k1 = k1_ if has_even_y(values.R) else CURVE_ORDER - k1_
    k2 = k2_ if has_even_y(values.R) else CURVE_ORDER - k2_

    d_ = int_from_bytes(secret_key)
    public_key = secret_nonce[64:97]
    if point_to_bytes(base_mul(d_)) != public_key:
        raise CryptoFailure("secret nonce was generated for a different key")

    a = key_agg_coefficient(public_keys, public_key)
    g = 1 if has_even_y(values.aggregate.point) else CURVE_ORDER - 1
    d = g * values.aggregate.gacc * d_ % CURVE_ORDER
    s = (k1 + values.b * k2 + values.e * a * d) % CURVE_ORDER
    return bytes_from_int(s)


def partial_sig_verify(
    partial_signature: bytes,
    public_nonce: bytes,
    public_key: bytes,
    values: SessionValues,
    public_keys: list[bytes],
) -> bool:
    s = int_from_bytes(partial_signature)
    if len(partial_signature) != 32 or s >= CURVE_ORDER:
        return False
    try:
        r1 = point_from_bytes(public_nonce[0:33])
        r2 = point_from_bytes(public_nonce[33:66])
        point = point_from_bytes(public_key)
    except ValueError:
        return False

    effective_nonce = point_add(r1, point_mul(r2, values.b))
    if not has_even_y(values.R):
        effective_nonce = point_negate(effective_nonce)

    a = key_agg_coefficient(public_keys, public_key)
    g = 1 if has_even_y(values.aggregate.point) else CURVE_ORDER - 1
    g_ = g * values.aggregate.gacc % CURVE_ORDER
    expected = point_add(effective_nonce, point_mul(point, values.e * a * g_))
    return points_equal(base_mul(s), expected)


def partial_sig_agg(partial_signatures: list[bytes], values: SessionValues) -> bytes:
    s = 0
    for partial_signature in partial_signatures:
        s_i = int_from_bytes(partial_signature)
        if s_i >= CURVE_ORDER:
            raise PartialSignatureInvalid("partial signature exceeds the curve order")
        s = (s + s_i) % CURVE_ORDER
    g = 1 if has_even_y(values.aggregate.point) else CURVE_ORDER - 1
    s = (s + values.e * g * values.aggregate.tacc) % CURVE_ORDER
    return xonly_bytes(values.R) + bytes_from_int(s)


class SigningState(str, Enum):
    KEYS_AGGREGATED = "keys_aggregated"
    NONCE_GENERATED = "nonce_generated"
    NONCES_AGGREGATED = "nonces_aggregated"
    SESSION_INITIALIZED = "session_initialized"
    PARTIAL_SIGNED = "partial_signed"
    AGGREGATED = "aggregated"


class MuSigSession:
    """One MuSig2 signing attempt between our key and the counterparty's."""

    def __init__(
        self,
        private_key: bytes,
        counterparty_public_key: bytes,
        tree: Optional[SwapTree] = None,
    ):
        self._private_key = private_key
        self.own_public_key = public_key_from_private(private_key)
        self.counterparty_public_key = counterparty_public_key
        self.public_keys = key_sort([self.own_public_key, counterparty_public_key])
        self.tree = tree

        internal = key_agg(self.public_keys)
        self.internal_key = internal.xonly
        if tree is not None:
            self.key_context = apply_tweak(
                internal,
                taproot_tweak(internal.xonly, tree.merkle_root),
                is_xonly=True,
            )
        else:
            self.key_context = internal

        self.state = SigningState.KEYS_AGGREGATED
        self.message: Optional[bytes] = None
        self.nonces: Optional[NonceExchange] = None
        self.signatures: Optional[PartialSignatureExchange] = None
        self._secret_nonce: Optional[bytearray] = None
        self._counterparty_partial: Optional[bytes] = None
        self._values: Optional[SessionValues] = None

    @property
    def aggregate_public_key(self) -> bytes:
        """x-only key the final signature verifies against."""
        return self.key_context.xonly

    @property
    def tree_info(self) -> Optional[SwapTreeInfo]:
        if self.tree is None:
            return None
        return SwapTreeInfo(
            tree=self.tree,
            internal_key=self.internal_key,
            output_key=self.aggregate_public_key,
            output_parity=0 if has_even_y(self.key_context.point) else 1,
        )

    def _require(self, action: str, *states: SigningState) -> None:
        if self.state not in states:
            raise SigningOrderError(f"cannot {action} in state {self.state.value}")

    def verify_aggregate_key(self, expected_output_key: bytes) -> None:
        if self.aggregate_public_key != expected_output_key:
            raise KeyAggregationMismatch(
                f"derived key {self.aggregate_public_key.hex()} "
                f"!= published key {expected_output_key.hex()}"
            )

    def generate_nonce(self, message: bytes) -> bytes:
        """Bind the message and create a fresh nonce pair for it."""
        if self.state != SigningState.KEYS_AGGREGATED:
            raise NonceReused("this signing attempt already generated its nonce")
        if len(message) != 32:
            raise ValueError("message must be a 32-byte hash")

        secret_nonce, public_nonce = nonce_gen(
            self._private_key, self.own_public_key, self.aggregate_public_key, message
        )
        self._secret_nonce = bytearray(secret_nonce)
        self.message = message
        self.nonces = NonceExchange(own_public_nonce=public_nonce)
        self.state = SigningState.NONCE_GENERATED
        return public_nonce

    def aggregate_nonces(self, counterparty_nonce: bytes) -> bytes:
        self._require("aggregate nonces", SigningState.NONCE_GENERATED)
        if counterparty_nonce == self.nonces.own_public_nonce:
            raise NonceReused("counterparty nonce equals our own")

        by_key = {
            self.own_public_key: self.nonces.own_public_nonce,
            self.counterparty_public_key: counterparty_nonce,
        }
        aggregate_nonce = nonce_agg([by_key[key] for key in self.public_keys])
        self.nonces = self.nonces.model_copy(
            update={
                "counterparty_public_nonce": counterparty_nonce,
                "aggregate_nonce": aggregate_nonce,
            }
        )
        self.state = SigningState.NONCES_AGGREGATED
        return aggregate_nonce

    def initialize_session(self) -> None:
        self._require("initialize session", SigningState.NONCES_AGGREGATED)
        self._values = session_values(
            self.nonces.aggregate_nonce, self.key_context, self.message
        )
        self.state = SigningState.SESSION_INITIALIZED

    def add_counterparty_partial(self, partial_signature: bytes) -> None:
        """Verify and store the counterparty's partial signature."""
        self._require(
            "add partial signature",
            SigningState.SESSION_INITIALIZED,
            SigningState.PARTIAL_SIGNED,
        )
        if self._counterparty_partial is not None:
            raise SigningOrderError("counterparty partial signature already added")
        if not partial_sig_verify(
            partial_signature,
            self.nonces.counterparty_public_nonce,
            self.counterparty_public_key,
            self._values,
            self.public_keys,
        ):
            raise PartialSignatureInvalid(
                "counterparty partial signature does not verify",
                signer=self.counterparty_public_key,
            )
        self._counterparty_partial = partial_signature
        if self.signatures is not None:
            self.signatures = self.signatures.model_copy(
                update={"counterparty_partial_signature": partial_signature}
            )

    def sign_partial(self) -> bytes:
        if self.state in (SigningState.PARTIAL_SIGNED, SigningState.AGGREGATED):
            raise NonceReused("secret nonce of this attempt was already used")
        self._require("sign", SigningState.SESSION_INITIALIZED)

        try:
            partial_signature = partial_sign(
                bytes(self._secret_nonce),
                self._private_key,
                self._values,
                self.public_keys,
            )
        finally:
            self._secret_nonce[:] = bytes(len(self._secret_nonce))
            self._secret_nonce = None

        if not partial_sig_verify(
            partial_signature,
            self.nonces.own_public_nonce,
            self.own_public_key,
            self._values,
            self.public_keys,
        ):
            raise CryptoFailure("own partial signature does not verify")

        self.signatures = PartialSignatureExchange(
            own_partial_signature=partial_signature,
            counterparty_partial_signature=self._counterparty_partial,
        )
        self.state = SigningState.PARTIAL_SIGNED
        return partial_signature

    def aggregate_partials(self, verify: bool = True) -> bytes:
        self._require("aggregate partial signatures", SigningState.PARTIAL_SIGNED)
        if self._counterparty_partial is None:
            raise SigningOrderError("counterparty partial signature missing")

        signature = partial_sig_agg(
            [self.signatures.own_partial_signature, self._counterparty_partial],
            self._values,
        )
        if verify and not schnorr_verify(
            self.aggregate_public_key, self.message, signature
        ):
            raise SignatureVerificationFailed(
                "aggregate signature does not verify against the tweaked key"
            )

        self.signatures = self.signatures.model_copy(
            update={"aggregate_signature": signature}
        )
        self.state = SigningState.AGGREGATED
        return signature


class CooperativeSigner:
    """
    Runs MuSig2 signing attempts with the session's own key.

    Each call starts a fresh MuSigSession; nothing carries over between
    attempts, which is what keeps nonces single-use.
    """

    def __init__(self, private_key: bytes, verify_signatures: bool = True):
        self._private_key = private_key
        self.verify_signatures = verify_signatures

    @property
    def public_key(self) -> bytes:
        return public_key_from_private(self._private_key)

    def new_session(
        self,
        counterparty_public_key: bytes,
        tree: SwapTree,
        expected_output_key: Optional[bytes] = None,
    ) -> MuSigSession:
        session = MuSigSession(self._private_key, counterparty_public_key, tree)
        if expected_output_key is not None:
            session.verify_aggregate_key(expected_output_key)
        logger.debug(
            "Aggregated swap keys",
            internal_key=session.internal_key.hex(),
            output_key=session.aggregate_public_key.hex(),
        )
        return session

    def sign_counterparty_claim(
        self,
        counterparty_public_key: bytes,
        tree: SwapTree,
        message: bytes,
        counterparty_nonce: bytes,
        expected_output_key: Optional[bytes] = None,
    ) -> MuSigSession:
        """Contribute our partial signature to a claim the counterparty holds."""
        session = self.new_session(counterparty_public_key, tree, expected_output_key)
        session.generate_nonce(message)
        session.aggregate_nonces(counterparty_nonce)
        session.initialize_session()
        session.sign_partial()
        return session

    def complete_claim(
        self,
        session: MuSigSession,
        counterparty_nonce: bytes,
        counterparty_partial: bytes,
    ) -> bytes:
        """Finish an attempt whose nonce was already sent; returns the signature."""
        session.aggregate_nonces(counterparty_nonce)
        session.initialize_session()
        session.add_counterparty_partial(counterparty_partial)
        session.sign_partial()
        return session.aggregate_partials(verify=self.verify_signatures)
