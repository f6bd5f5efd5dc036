"""
Hashing and secp256k1 helpers used by the swap engine.

The curve work itself is done by libsecp256k1 through coincurve; this
module only adds the pieces coincurve leaves out for MuSig2 (a point at
infinity, negation, BIP-340 tagged hashes) and the swap secrets.
"""

import hashlib
import secrets
from typing import Optional

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

# secp256k1 field size and group order
FIELD_SIZE = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PREIMAGE_LENGTH = 32

# None stands for the point at infinity
Point = Optional[PublicKey]


def sha256(data: bytes) -> bytes:
    """Single SHA256."""
    return hashlib.sha256(data).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash."""
    tag_digest = sha256(tag.encode())
    return sha256(tag_digest + tag_digest + data)


def generate_preimage() -> bytes:
    """Random 32-byte swap secret."""
    return secrets.token_bytes(PREIMAGE_LENGTH)


def generate_private_key() -> bytes:
    """Fresh secp256k1 secret key."""
    return PrivateKey().secret


def public_key_from_private(private_key: bytes) -> bytes:
    """33-byte compressed public key for a secret key."""
    return PrivateKey(private_key).public_key.format(compressed=True)


def int_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, byteorder="big")


def bytes_from_int(value: int) -> bytes:
    return value.to_bytes(32, byteorder="big")


def point_from_bytes(data: bytes) -> PublicKey:
    """Parse a compressed point. Raises ValueError if it is not on the curve."""
    if len(data) != 33:
        raise ValueError(f"expected 33-byte compressed point, got {len(data)} bytes")
    return PublicKey(data)


def point_from_bytes_ext(data: bytes) -> Point:
    """Like point_from_bytes, but 33 zero bytes decode to infinity."""
    if data == bytes(33):
        return None
    return point_from_bytes(data)


def point_to_bytes(point: PublicKey) -> bytes:
    return point.format(compressed=True)


def point_to_bytes_ext(point: Point) -> bytes:
    if point is None:
        return bytes(33)
    return point_to_bytes(point)


def xonly_bytes(point: PublicKey) -> bytes:
    return point.format(compressed=True)[1:]


def has_even_y(point: PublicKey) -> bool:
    return point.format(compressed=True)[0] == 0x02


def points_equal(a: Point, b: Point) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return point_to_bytes(a) == point_to_bytes(b)


def point_add(a: Point, b: Point) -> Point:
    if a is None:
        return b
    if b is None:
        return a
    try:
        return PublicKey.combine_keys([a, b])
    except ValueError:
        # libsecp256k1 refuses to return infinity, which only happens for a == -b
        return None


def point_negate(point: Point) -> Point:
    if point is None:
        return None
    x, y = point.point()
    return PublicKey.from_point(x, FIELD_SIZE - y)


def point_mul(point: Point, scalar: int) -> Point:
    scalar %= CURVE_ORDER
    if point is None or scalar == 0:
        return None
    return point.multiply(bytes_from_int(scalar))


def base_mul(scalar: int) -> Point:
    """scalar * G"""
    scalar %= CURVE_ORDER
    if scalar == 0:
        return None
    return PublicKey.from_secret(bytes_from_int(scalar))


def schnorr_sign(private_key: bytes, message: bytes) -> bytes:
    """BIP-340 signature over a 32-byte message."""
    if len(message) != 32:
        raise ValueError(f"Schnorr signing needs a 32-byte message, got {len(message)}")
    return PrivateKey(private_key).sign_schnorr(message, secrets.token_bytes(32))


def schnorr_verify(xonly_key: bytes, message: bytes, signature: bytes) -> bool:
    """BIP-340 verification against an x-only key."""
    if len(signature) != 64 or len(xonly_key) != 32:
        return False
    try:
        return PublicKeyXOnly(xonly_key).verify(signature, message)
    except ValueError:
        return False
