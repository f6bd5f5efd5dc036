"""WebSocket subscription to swap status updates."""

import asyncio
import json
from typing import AsyncIterator, Optional

import structlog
import websockets

from .config import config
from .exceptions import DecodingError, TransportFailure
from .messages import SwapUpdate, UpdateEnvelope, decode, subscribe_message

logger = structlog.get_logger()


def parse_updates(message) -> list[SwapUpdate]:
    """
    Swap updates contained in one WebSocket message.

    Anything that is not an `update` event (subscription acks, pongs) is
    dropped, as are individual updates that fail to decode.
    """
    try:
        data = json.loads(message)
    except ValueError:
        logger.warning("Dropping non-JSON message")
        return []

    if not isinstance(data, dict) or data.get("event") != "update":
        logger.debug(
            "Ignoring non-update message",
            message_event=data.get("event") if isinstance(data, dict) else None,
        )
        return []

    try:
        envelope = decode(UpdateEnvelope, data)
    except DecodingError as e:
        logger.warning("Dropping malformed update envelope", error=str(e))
        return []

    updates = []
    for arg in envelope.args:
        try:
            updates.append(decode(SwapUpdate, arg))
        except DecodingError as e:
            logger.warning("Dropping malformed swap update", error=str(e))
    return updates


class SwapUpdateStream:
    """Yields status updates for subscribed swaps, reconnecting on failure."""

    def __init__(
        self,
        url: Optional[str] = None,
        max_retries: int = 5,
        receive_timeout: float = 30.0,
    ):
        self.url = url or config.ws_url
        self.max_retries = max_retries
        self.receive_timeout = receive_timeout
        self.watching = False
        self._swap_ids: set[str] = set()
        self._ws = None

    async def subscribe(self, swap_ids: list[str]):
        """Add swaps to the subscription, sent immediately when connected."""
        new_ids = [swap_id for swap_id in swap_ids if swap_id not in self._swap_ids]
        self._swap_ids.update(new_ids)
        if new_ids and self._ws is not None:
            await self._send_subscription(self._ws, new_ids)

    async def stop(self):
        """Stop receiving updates and close the connection."""
        self.watching = False
        if self._ws is not None:
            await self._ws.close()
        logger.info("Stopped swap update stream")

    async def updates(self) -> AsyncIterator[SwapUpdate]:
        self.watching = True
        retry_count = 0

        while self.watching:
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=10,
                ) as ws:
                    self._ws = ws
                    logger.info("Connected to swap update stream", url=self.url)
                    retry_count = 0  # Reset on successful connection
                    if self._swap_ids:
                        await self._send_subscription(ws, sorted(self._swap_ids))
                    async for update in self._receive(ws):
                        yield update
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                if not self.watching:
                    break
                retry_count += 1
                logger.error(
                    "WebSocket error",
                    error=str(e),
                    retry_count=retry_count,
                    max_retries=self.max_retries,
                )
                await self._handle_ws_retry(retry_count)
            finally:
                self._ws = None

    async def _send_subscription(self, ws, swap_ids: list[str]):
        await ws.send(json.dumps(subscribe_message(swap_ids)))
        logger.info("Subscribed to swap updates", swap_ids=list(swap_ids))

    async def _receive(self, ws) -> AsyncIterator[SwapUpdate]:
        while self.watching:
            try:
                message = await asyncio.wait_for(ws.recv(), timeout=self.receive_timeout)
            except asyncio.TimeoutError:
                await ws.ping()
                continue
            for update in parse_updates(message):
                yield update

    async def _handle_ws_retry(self, retry_count: int):
        if retry_count < self.max_retries:
            await asyncio.sleep(min(5 * retry_count, 30))
        else:
            logger.error("Max WebSocket retries exceeded, stopping update stream")
            self.watching = False
            raise TransportFailure(
                f"swap update stream unavailable after {retry_count} attempts"
            )
