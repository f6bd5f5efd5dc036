"""Quote renegotiation after a failed lockup."""

from typing import Optional

import structlog

from .config import config
from .exceptions import QuoteRejected

logger = structlog.get_logger()


class QuoteNegotiator:
    """
    Fetches the service's current quote and accepts it.

    Accept-as-is unless bounds are configured. The service proposes a new
    amount when what was locked differs from what was agreed, so the only
    decision here is whether the new amount is still acceptable.
    """

    def __init__(
        self,
        service_client,
        min_amount: Optional[int] = None,
        max_amount: Optional[int] = None,
        max_deviation: Optional[float] = None,
    ):
        self.service_client = service_client
        self.min_amount = config.quote_min_amount if min_amount is None else min_amount
        self.max_amount = config.quote_max_amount if max_amount is None else max_amount
        self.max_deviation = (
            config.quote_max_deviation if max_deviation is None else max_deviation
        )
        self._accepted: dict[str, int] = {}

    def check_bounds(self, amount: int, requested_amount: Optional[int] = None):
        """Raise QuoteRejected if `amount` is outside the configured bounds."""
        if self.min_amount is not None and amount < self.min_amount:
            raise QuoteRejected(amount, f"below minimum {self.min_amount}")
        if self.max_amount is not None and amount > self.max_amount:
            raise QuoteRejected(amount, f"above maximum {self.max_amount}")
        if self.max_deviation is not None and requested_amount:
            deviation = abs(amount - requested_amount) / requested_amount
            if deviation > self.max_deviation:
                raise QuoteRejected(
                    amount,
                    f"deviates {deviation:.2%} from requested {requested_amount}",
                )

    async def renegotiate(
        self, swap_id: str, requested_amount: Optional[int] = None
    ) -> int:
        """Fetch the quote, check it and accept it. Returns the accepted amount."""
        quote = await self.service_client.get_quote(swap_id)
        logger.info("Received quote", swap_id=swap_id, amount=quote.amount)

        self.check_bounds(quote.amount, requested_amount)

        if self._accepted.get(swap_id) == quote.amount:
            logger.info(
                "Quote already accepted, not resubmitting",
                swap_id=swap_id,
                amount=quote.amount,
            )
            return quote.amount

        await self.service_client.accept_quote(swap_id, quote.amount)
        self._accepted[swap_id] = quote.amount
        logger.info("Accepted quote", swap_id=swap_id, amount=quote.amount)
        return quote.amount
