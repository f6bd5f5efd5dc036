"""HTTP client for the swap service REST API."""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from .config import config
from .exceptions import DecodingError, TransportFailure
from .messages import (
    BroadcastRequest,
    BroadcastResponse,
    ClaimToSign,
    CreateChainSwapRequest,
    CreateChainSwapResponse,
    PartialSignatureMessage,
    Quote,
    ServiceClaimDetails,
    ServiceClaimSignature,
    UserClaimRequest,
    decode,
)

logger = structlog.get_logger()


class SwapServiceClient:
    """
    Request/response channel to the swap service.

    Reads and quote acceptance are idempotent and get retried with a linear
    backoff on network errors and 5xx responses. Submissions that hand over
    secrets or signatures are one-shot: a failure surfaces immediately so
    the caller re-fetches state before trying again.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self.base_url = (base_url or config.service_url).rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=config.request_timeout,
            headers={"Accept": "application/json"},
        )
        self.max_retries = config.max_retries if max_retries is None else max_retries
        self.retry_backoff = (
            config.retry_backoff if retry_backoff is None else retry_backoff
        )

    async def __aenter__(self) -> "SwapServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict) and "error" in body:
            return str(body["error"])
        return str(body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        idempotent: bool = False,
    ) -> Any:
        attempts = 1 + (self.max_retries if idempotent else 0)
        url = f"{self.base_url}{path}"
        error: Optional[TransportFailure] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.request(method, url, json=json)
            except httpx.HTTPError as e:
                error = TransportFailure(f"{method} {path} failed: {e}")
            else:
                if response.status_code >= 500:
                    error = TransportFailure(
                        f"{method} {path} returned {response.status_code}: "
                        f"{self._error_message(response)}",
                        status_code=response.status_code,
                    )
                elif response.status_code >= 400:
                    raise TransportFailure(
                        f"{method} {path} returned {response.status_code}: "
                        f"{self._error_message(response)}",
                        status_code=response.status_code,
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise DecodingError(f"{method} {path} returned invalid JSON") from e

            if attempt < attempts:
                logger.warning(
                    "Request failed, retrying",
                    method=method,
                    path=path,
                    error=str(error),
                    retry_count=attempt,
                    max_retries=self.max_retries,
                )
                await asyncio.sleep(self.retry_backoff * attempt)

        logger.error("Request failed", method=method, path=path, error=str(error))
        raise error

    async def create_chain_swap(
        self, request: CreateChainSwapRequest
    ) -> CreateChainSwapResponse:
        data = await self._request("POST", "/v2/swap/chain", json=request.to_wire())
        return decode(CreateChainSwapResponse, data)

    async def get_quote(self, swap_id: str) -> Quote:
        data = await self._request(
            "GET", f"/v2/swap/chain/{swap_id}/quote", idempotent=True
        )
        return decode(Quote, data)

    async def accept_quote(self, swap_id: str, amount: int) -> None:
        await self._request(
            "POST",
            f"/v2/swap/chain/{swap_id}/quote",
            json=Quote(amount=amount).to_wire(),
            idempotent=True,
        )

    async def get_claim_details(self, swap_id: str) -> ServiceClaimDetails:
        data = await self._request(
            "GET", f"/v2/swap/chain/{swap_id}/claim", idempotent=True
        )
        return decode(ServiceClaimDetails, data)

    async def submit_partial_signature(
        self, swap_id: str, public_nonce: bytes, partial_signature: bytes
    ) -> None:
        body = ServiceClaimSignature(
            signature=PartialSignatureMessage(
                pub_nonce=public_nonce, partial_signature=partial_signature
            )
        )
        await self._request("POST", f"/v2/swap/chain/{swap_id}/claim", json=body.to_wire())

    async def submit_user_claim(
        self,
        swap_id: str,
        preimage: bytes,
        public_nonce: bytes,
        transaction: bytes,
        index: int = 0,
    ) -> PartialSignatureMessage:
        body = UserClaimRequest(
            preimage=preimage,
            to_sign=ClaimToSign(pub_nonce=public_nonce, transaction=transaction, index=index),
        )
        data = await self._request(
            "POST", f"/v2/swap/chain/{swap_id}/claim", json=body.to_wire()
        )
        return decode(PartialSignatureMessage, data)

    async def broadcast_transaction(self, chain: str, transaction: bytes) -> str:
        data = await self._request(
            "POST",
            f"/v2/chain/{chain}/transaction",
            json=BroadcastRequest(hex=transaction).to_wire(),
        )
        return decode(BroadcastResponse, data).id
