"""
Wire schemas for the swap service.

Every payload exchanged with the service has a model here. Binary values
travel as hex; each hex field declares the byte length it must decode to,
so a truncated key or nonce is rejected at the edge instead of surfacing
later as a confusing signature failure.
"""

import re
from typing import Annotated, Any, Optional, TypeVar

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from .exceptions import DecodingError

UPDATE_CHANNEL = "swap.update"
HEX_PATTERN = re.compile(r"[0-9a-fA-F]*")


def _hex_decoder(length: Optional[int]):
    def decode(value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        elif isinstance(value, str):
            # bytes.fromhex skips whitespace
            if not HEX_PATTERN.fullmatch(value) or len(value) % 2:
                raise ValueError("invalid hex")
            raw = bytes.fromhex(value)
        else:
            raise ValueError("expected a hex string")
        if length is not None and len(raw) != length:
            raise ValueError(f"expected {length} bytes, got {len(raw)}")
        return raw

    return decode


def _hex_field(length: Optional[int] = None):
    return Annotated[
        bytes,
        BeforeValidator(_hex_decoder(length)),
        PlainSerializer(lambda value: value.hex(), return_type=str),
    ]


HexBytes = _hex_field()
Hash32 = _hex_field(32)
PublicKeyHex = _hex_field(33)
PublicNonceHex = _hex_field(66)
PartialSignatureHex = _hex_field(32)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CreateChainSwapRequest(WireModel):
    """Body of POST /v2/swap/chain."""

    user_lock_amount: Optional[int] = Field(
        None, description="Optional; omitted amounts are settled via quote"
    )
    from_chain: str = Field(alias="from", description="Ledger the user locks on")
    to_chain: str = Field(alias="to", description="Ledger the user receives on")
    preimage_hash: Hash32
    claim_public_key: PublicKeyHex
    refund_public_key: PublicKeyHex


class SerializedLeaf(WireModel):
    version: int = Field(description="Tapleaf version, 0xc0 for tapscript")
    output: HexBytes = Field(description="Leaf script")


class SerializedSwapTree(WireModel):
    claim_leaf: SerializedLeaf
    refund_leaf: SerializedLeaf


class ChainSwapData(WireModel):
    """One side (claim or lockup) of a created chain swap."""

    swap_tree: SerializedSwapTree
    lockup_address: str
    server_public_key: PublicKeyHex
    timeout_block_height: int
    amount: int
    bip21: Optional[str] = None


class CreateChainSwapResponse(WireModel):
    id: str
    claim_details: ChainSwapData
    lockup_details: ChainSwapData


class TransactionInfo(WireModel):
    id: Optional[str] = None
    hex: Optional[HexBytes] = None


class SwapUpdate(WireModel):
    """One status update pushed on the swap.update channel."""

    id: str
    status: str
    transaction: Optional[TransactionInfo] = None
    failure_reason: Optional[str] = None


class UpdateEnvelope(WireModel):
    event: str
    channel: Optional[str] = None
    args: list[Any] = Field(default_factory=list)


class Quote(WireModel):
    """GET response and POST body of the quote endpoint."""

    amount: int = Field(ge=0)


class ServiceClaimDetails(WireModel):
    """GET /claim when the service claims the user's lockup."""

    pub_nonce: PublicNonceHex
    public_key: PublicKeyHex
    transaction_hash: Hash32


class PartialSignatureMessage(WireModel):
    pub_nonce: PublicNonceHex
    partial_signature: PartialSignatureHex


class ServiceClaimSignature(WireModel):
    """POST /claim answering ServiceClaimDetails."""

    signature: PartialSignatureMessage


class ClaimToSign(WireModel):
    pub_nonce: PublicNonceHex
    transaction: HexBytes
    index: int = Field(ge=0)


class UserClaimRequest(WireModel):
    """POST /claim when the user claims the service's lockup."""

    preimage: Hash32
    to_sign: ClaimToSign


class BroadcastRequest(WireModel):
    hex: HexBytes


class BroadcastResponse(WireModel):
    id: str


def subscribe_message(swap_ids: list[str]) -> dict[str, Any]:
    return {"op": "subscribe", "channel": UPDATE_CHANNEL, "args": list(swap_ids)}


ModelT = TypeVar("ModelT", bound=BaseModel)


def decode(model: type[ModelT], payload: Any) -> ModelT:
    """Validate a decoded JSON payload, raising DecodingError on mismatch."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) for error in e.errors()
        )
        raise DecodingError(f"malformed {model.__name__} ({fields})") from e
