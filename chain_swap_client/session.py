"""
Per-swap session driver.

A SwapSession owns one swap's secrets and context. Status updates are fed
to `handle` one at a time; the pure transition function decides the next
status and which effects to run, and the session runs them against the
service client, the quote negotiator, the transaction builder and the
cooperative signer.
"""

import asyncio
from typing import Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .config import config
from .crypto import (
    generate_preimage,
    generate_private_key,
    public_key_from_private,
    sha256,
)
from .exceptions import (
    CounterpartyTimeout,
    DecodingError,
    KeyAggregationMismatch,
    LockupMismatch,
    SwapError,
)
from .messages import (
    ChainSwapData,
    CreateChainSwapRequest,
    CreateChainSwapResponse,
    SwapUpdate,
)
from .models import (
    ClaimTransactionDraft,
    LockupObservation,
    NonceExchange,
    PartialSignatureExchange,
    Swap,
    SwapDirection,
    SwapStatus,
)
from .musig import CooperativeSigner, aggregate_swap_keys
from .quote import QuoteNegotiator
from .state_machine import (
    FAILURE,
    Effect,
    EffectKind,
    EventKind,
    SwapEvent,
    transition,
)
from .swap_tree import (
    SwapTree,
    SwapTreeInfo,
    detect_swap_output,
    parse_transaction,
    taproot_output_key,
)
from .transactions import ClaimTransactionBuilder

logger = structlog.get_logger()


class SwapContext(BaseModel):
    """Everything one session knows about its swap."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    swap: Swap
    response: CreateChainSwapResponse
    details: ChainSwapData = Field(
        description="Side of the swap whose output lives on the signing chain"
    )
    tree_info: SwapTreeInfo
    destination_script: Optional[bytes] = Field(
        None, description="Claim output (user claims) or refund output (service claims)"
    )
    requested_amount: Optional[int] = None
    lockups: list[LockupObservation] = Field(default_factory=list)
    draft: Optional[ClaimTransactionDraft] = None
    nonces: Optional[NonceExchange] = None
    signatures: Optional[PartialSignatureExchange] = None
    accepted_quotes: list[int] = Field(default_factory=list)
    broadcast_transactions: list[str] = Field(default_factory=list)
    violations: list[str] = Field(default_factory=list)
    failure: Optional[str] = None


class _Discarded(Exception):
    """A call completed after the session was cancelled."""


class SwapSession:
    """Drives one chain swap from creation to a terminal status."""

    def __init__(
        self,
        swap: Swap,
        response: CreateChainSwapResponse,
        service_client,
        destination_script: Optional[bytes] = None,
        quote_negotiator: Optional[QuoteNegotiator] = None,
        builder: Optional[ClaimTransactionBuilder] = None,
        signer: Optional[CooperativeSigner] = None,
        signing_chain: Optional[str] = None,
        counterparty_timeout: Optional[float] = None,
        requested_amount: Optional[int] = None,
    ):
        if swap.direction == SwapDirection.USER_CLAIMS:
            details = response.claim_details
            if destination_script is None:
                raise ValueError("a destination script is required to claim")
        else:
            details = response.lockup_details

        if swap.counterparty_public_key is None:
            swap.counterparty_public_key = details.server_public_key
        elif swap.counterparty_public_key != details.server_public_key:
            raise KeyAggregationMismatch("service public key changed since creation")

        tree = SwapTree.from_serialized(details.swap_tree)
        tree_info = aggregate_swap_keys(
            [swap.public_key, swap.counterparty_public_key], tree
        )
        published_key = taproot_output_key(details.lockup_address)
        if tree_info.output_key != published_key:
            raise KeyAggregationMismatch(
                f"derived key {tree_info.output_key.hex()} does not match "
                f"lockup address {details.lockup_address}"
            )

        self.context = SwapContext(
            swap=swap,
            response=response,
            details=details,
            tree_info=tree_info,
            destination_script=destination_script,
            requested_amount=(
                swap.lockup_amount if requested_amount is None else requested_amount
            ),
        )
        self.service_client = service_client
        self.quote_negotiator = quote_negotiator or QuoteNegotiator(service_client)
        self.builder = builder or ClaimTransactionBuilder()
        self.signer = signer or CooperativeSigner(
            swap.private_key, verify_signatures=config.verify_signatures
        )
        self.signing_chain = signing_chain or config.signing_chain
        self.counterparty_timeout = (
            config.counterparty_timeout
            if counterparty_timeout is None
            else counterparty_timeout
        )
        self.cancelled = False
        self.closed = asyncio.Event()
        self.log = logger.bind(swap_id=swap.swap_id, direction=swap.direction.value)

    @classmethod
    async def create(
        cls,
        service_client,
        from_chain: str,
        to_chain: str,
        amount: Optional[int] = None,
        destination_script: Optional[bytes] = None,
        signing_chain: Optional[str] = None,
        **kwargs,
    ) -> "SwapSession":
        """Generate the swap secrets, create the swap and return its session."""
        signing_chain = signing_chain or config.signing_chain
        direction = SwapDirection.for_chains(from_chain, to_chain, signing_chain)
        if direction == SwapDirection.USER_CLAIMS and destination_script is None:
            raise ValueError("a destination script is required to claim")

        preimage = generate_preimage()
        private_key = generate_private_key()
        public_key = public_key_from_private(private_key)

        request = CreateChainSwapRequest(
            user_lock_amount=amount,
            from_chain=from_chain,
            to_chain=to_chain,
            preimage_hash=sha256(preimage),
            claim_public_key=public_key,
            refund_public_key=public_key,
        )
        response = await service_client.create_chain_swap(request)
        swap = Swap(
            swap_id=response.id,
            direction=direction,
            from_chain=from_chain,
            to_chain=to_chain,
            lockup_amount=amount,
            preimage=preimage,
            private_key=private_key,
        )

        logger.info(
            "Created chain swap",
            swap_id=response.id,
            from_chain=from_chain,
            to_chain=to_chain,
            direction=direction.value,
            amount=amount,
        )
        return cls(
            swap,
            response,
            service_client,
            destination_script=destination_script,
            signing_chain=signing_chain,
            requested_amount=amount,
            **kwargs,
        )

    @property
    def swap(self) -> Swap:
        return self.context.swap

    @property
    def swap_id(self) -> str:
        return self.context.swap.swap_id

    @property
    def status(self) -> SwapStatus:
        return self.context.swap.status

    @property
    def direction(self) -> SwapDirection:
        return self.context.swap.direction

    def cancel(self):
        """Stop acting on events and on results of calls still in flight."""
        if not self.cancelled:
            self.cancelled = True
            self.log.info("Session cancelled", status=self.status.value)
            self.closed.set()

    async def handle(self, update: Union[SwapUpdate, SwapEvent]) -> SwapStatus:
        """Process one update. Returns the status afterwards."""
        if self.cancelled:
            self.log.debug("Ignoring event after cancellation")
            return self.status

        if isinstance(update, SwapUpdate):
            if update.id != self.swap_id:
                self.log.debug("Ignoring update for another swap", other_id=update.id)
                return self.status
            kind = EventKind.from_status(update.status)
            if kind is None:
                self.log.debug("Ignoring unknown status", status_tag=update.status)
                return self.status
            event = SwapEvent(
                kind=kind,
                transaction=update.transaction,
                reason=update.failure_reason,
            )
        else:
            event = update

        try:
            await self._dispatch(event)
        except _Discarded:
            self.log.info("Discarded result received after cancellation")
        return self.status

    async def run(self, queue: asyncio.Queue, idle_timeout: Optional[float] = None):
        """Consume updates from `queue` until the swap ends or is cancelled."""
        if idle_timeout is None:
            idle_timeout = config.session_idle_timeout

        while not self.status.is_terminal and not self.cancelled:
            try:
                if idle_timeout:
                    update = await asyncio.wait_for(queue.get(), timeout=idle_timeout)
                else:
                    update = await queue.get()
            except asyncio.TimeoutError:
                self.log.warning("No update received in time", timeout=idle_timeout)
                update = SwapEvent(
                    kind=EventKind.TIMEOUT, reason=f"idle for {idle_timeout}s"
                )
            if update is None:
                # Subscription closed
                break
            await self.handle(update)

        return self.status

    async def _dispatch(self, event: SwapEvent):
        result = transition(self.status, self.direction, event)

        if result.violation:
            self.context.violations.append(result.violation)
            self.log.warning(
                "Protocol violation, ignoring event",
                event_kind=event.kind.value,
                status=self.status.value,
            )
            return

        follow_ups = []
        for effect in result.effects:
            try:
                follow_up = await self._execute(effect, event)
            except SwapError as e:
                self._fail(e)
                raise
            if follow_up is not None:
                follow_ups.append(follow_up)

        if result.status != self.status:
            self.log.info(
                "Status changed",
                previous=self.status.value,
                status=result.status.value,
                event_kind=event.kind.value,
            )
            self.context.swap.status = result.status

        if event.kind in FAILURE:
            self.context.failure = event.reason or event.kind.value

        for follow_up in follow_ups:
            await self._dispatch(follow_up)

    def _fail(self, error: SwapError):
        self.context.failure = f"{type(error).__name__}: {error}"
        self.log.error(
            "Swap failed",
            status=self.status.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        self.context.swap.status = SwapStatus.FAILED
        self.closed.set()

    async def _execute(self, effect: Effect, event: SwapEvent) -> Optional[SwapEvent]:
        if effect.kind == EffectKind.NEGOTIATE_QUOTE:
            return await self._negotiate_quote()
        if effect.kind == EffectKind.BROADCAST_REFUND:
            return await self._broadcast_refund()
        if effect.kind == EffectKind.CLAIM_LOCKUP:
            await self._claim_lockup(effect)
        elif effect.kind == EffectKind.SIGN_SERVICE_CLAIM:
            await self._sign_service_claim()
        elif effect.kind == EffectKind.RECORD_LOCKUP:
            self._record_lockup(effect)
        elif effect.kind == EffectKind.CLOSE:
            self._close(event)
        return None

    async def _call(self, awaitable):
        result = await awaitable
        if self.cancelled:
            raise _Discarded()
        return result

    async def _await_counterparty(self, awaitable, step: str):
        try:
            return await self._call(
                asyncio.wait_for(awaitable, timeout=self.counterparty_timeout)
            )
        except asyncio.TimeoutError as e:
            raise CounterpartyTimeout(
                f"no response from service for {step} "
                f"within {self.counterparty_timeout}s"
            ) from e

    def _lockup_from(self, effect: Effect) -> Optional[LockupObservation]:
        info = effect.transaction
        if info is None or info.hex is None:
            return None
        return detect_swap_output(
            self.context.tree_info.output_key, parse_transaction(info.hex)
        )

    async def _negotiate_quote(self) -> SwapEvent:
        amount = await self._call(
            self.quote_negotiator.renegotiate(
                self.swap_id, self.context.requested_amount
            )
        )
        self.context.accepted_quotes.append(amount)
        self.context.swap.lockup_amount = amount
        return SwapEvent(kind=EventKind.QUOTE_ACCEPTED)

    async def _claim_lockup(self, effect: Effect):
        if effect.transaction is None or effect.transaction.hex is None:
            raise DecodingError("server lockup update carries no transaction")
        lockup = self._lockup_from(effect)
        if lockup is None:
            raise LockupMismatch(
                f"transaction {effect.transaction.id} does not pay to the swap key"
            )
        if lockup.amount != self.context.details.amount:
            self.log.warning(
                "Server lockup amount differs from swap details",
                expected=self.context.details.amount,
                amount=lockup.amount,
            )
        self.context.lockups.append(lockup)

        draft = self.builder.build_cooperative_claim(
            lockup, self.context.destination_script
        )
        self.context.draft = draft
        self.log.info(
            "Built claim transaction",
            lockup_txid=lockup.transaction_id,
            amount=lockup.amount,
            fee=draft.fee,
            vsize=draft.vsize,
        )

        session = self.signer.new_session(
            self.swap.counterparty_public_key,
            self.context.tree_info.tree,
            expected_output_key=self.context.tree_info.output_key,
        )
        public_nonce = session.generate_nonce(self.builder.key_path_sighash(draft))
        response = await self._await_counterparty(
            self.service_client.submit_user_claim(
                self.swap_id,
                self.swap.preimage,
                public_nonce,
                draft.transaction.serialize(),
                0,
            ),
            "claim partial signature",
        )

        try:
            signature = self.signer.complete_claim(
                session, response.pub_nonce, response.partial_signature
            )
        finally:
            self.context.nonces = session.nonces
            self.context.signatures = session.signatures

        self.builder.attach_key_path_signature(draft, signature)
        txid = await self._call(
            self.service_client.broadcast_transaction(
                self.signing_chain, draft.transaction.serialize()
            )
        )
        self.context.broadcast_transactions.append(txid)
        self.log.info("Broadcast claim transaction", txid=txid, fee=draft.fee)

    async def _sign_service_claim(self):
        details = await self._await_counterparty(
            self.service_client.get_claim_details(self.swap_id), "claim details"
        )
        if details.public_key != self.swap.counterparty_public_key:
            raise KeyAggregationMismatch(
                "claim details are signed for a different service key"
            )

        session = self.signer.sign_counterparty_claim(
            self.swap.counterparty_public_key,
            self.context.tree_info.tree,
            details.transaction_hash,
            details.pub_nonce,
            expected_output_key=self.context.tree_info.output_key,
        )
        self.context.nonces = session.nonces
        self.context.signatures = session.signatures

        await self._call(
            self.service_client.submit_partial_signature(
                self.swap_id,
                session.nonces.own_public_nonce,
                session.signatures.own_partial_signature,
            )
        )
        self.log.info(
            "Submitted partial signature for service claim",
            transaction_hash=details.transaction_hash.hex(),
        )

    def _record_lockup(self, effect: Effect):
        info = effect.transaction
        if self.direction != SwapDirection.SERVICE_CLAIMS:
            # Our lockup is on the other chain, nothing to spend here
            self.log.info("User lockup seen", txid=info.id if info else None)
            return

        lockup = self._lockup_from(effect)
        if lockup is None:
            self.log.warning(
                "User lockup update does not include a swap output",
                txid=info.id if info else None,
            )
            return
        if lockup not in self.context.lockups:
            self.context.lockups.append(lockup)
            self.log.info(
                "Recorded user lockup",
                txid=lockup.transaction_id,
                vout=lockup.vout,
                amount=lockup.amount,
            )

    def _refund_unavailable(self, reason: str) -> SwapEvent:
        self.log.warning("Cannot refund", reason=reason)
        return SwapEvent(kind=EventKind.REFUND_UNAVAILABLE, reason=reason)

    async def _broadcast_refund(self) -> SwapEvent:
        if not self.context.lockups:
            return self._refund_unavailable("expired before a lockup was recorded")
        if self.context.destination_script is None:
            return self._refund_unavailable("no refund destination configured")

        lockup = self.context.lockups[-1]
        draft = self.builder.build_refund(
            lockup,
            self.context.tree_info,
            self.context.destination_script,
            self.swap.private_key,
            self.context.details.timeout_block_height,
        )
        self.context.draft = draft
        txid = await self._call(
            self.service_client.broadcast_transaction(
                self.signing_chain, draft.transaction.serialize()
            )
        )
        self.context.broadcast_transactions.append(txid)
        self.log.info(
            "Broadcast refund transaction",
            txid=txid,
            fee=draft.fee,
            locktime=self.context.details.timeout_block_height,
        )
        return SwapEvent(kind=EventKind.REFUND_BROADCAST)

    def _close(self, event: SwapEvent):
        self.log.info(
            "Session closed",
            event_kind=event.kind.value,
            reason=event.reason,
            transactions=self.context.broadcast_transactions,
        )
        self.closed.set()
