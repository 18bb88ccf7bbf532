"""
Reclaim dispatcher.

Turns an expiry signal into a `manualReclaim(rentalId)` transaction on the
rental's origin chain, with per-rental mutual exclusion, bounded retries and
receipt tracking.
"""

import asyncio
import time
from typing import Awaitable, Callable, Mapping, Optional, Sequence

import structlog

from .cache import RentalCache
from .chain import ChainAdapter
from .config import Settings
from .errors import (
    ChainUnreachable,
    InsufficientReclaimerFunds,
    NonceConflict,
    ReactorError,
    ReceiptTimeout,
    ReclaimRace,
    TransactionReverted,
)
from .ingestion import IngestionPipeline
from .models import (
    CacheFeedback,
    ContractCall,
    PendingCallback,
    RawLog,
    Receipt,
    ReclaimResult,
    ReclaimStatus,
    Rental,
    RentalKey,
    RentalStatus,
)
from .observability import AlertSink, ReactorMetrics
from .scheduler import ExpiryScheduler
from .store import CheckpointStore

logger = structlog.get_logger()

RECLAIM_FUNCTION = "manualReclaim"

# Worth another submission within the same dispatch
TRANSIENT_ERRORS = (ChainUnreachable, NonceConflict, ReceiptTimeout)

# Ends the dispatch; the rental goes back to the scheduler
TERMINAL_ERRORS = (InsufficientReclaimerFunds, TransactionReverted)

FeedbackSink = Callable[[CacheFeedback], Awaitable[None]]


class CallbackDispatcher:
    """
    Submits reclaim transactions for expired rentals.

    At most one reclaim is in flight per rental: the PendingCallback record is
    inserted before the first await and removed when the dispatch ends, so a
    second trigger for the same rental returns ALREADY_PENDING immediately.

    A transaction sent without a receipt is remembered past the dispatch that
    sent it; the next dispatch for that rental checks it before sending another.

    Cache updates go through `feedback` when given (the coordinator hands them
    to the chain's consumer task), otherwise straight to the pipeline.
    """

    def __init__(
        self,
        settings: Settings,
        cache: RentalCache,
        scheduler: ExpiryScheduler,
        adapters: Mapping[int, ChainAdapter],
        pipeline: Optional[IngestionPipeline] = None,
        store: Optional[CheckpointStore] = None,
        metrics: Optional[ReactorMetrics] = None,
        alerts: Optional[AlertSink] = None,
        feedback: Optional[FeedbackSink] = None,
    ):
        self.settings = settings
        self.cache = cache
        self.scheduler = scheduler
        self.adapters = adapters
        self.pipeline = pipeline or IngestionPipeline(cache, adapters)
        self.feedback = feedback
        self.store = store
        self.metrics = metrics or ReactorMetrics()
        self.alerts = alerts
        self._pending: dict[RentalKey, PendingCallback] = {}
        self._failures: dict[RentalKey, int] = {}
        self._unconfirmed: dict[RentalKey, str] = {}

    def is_pending(self, key: RentalKey) -> bool:
        return key in self._pending

    @property
    def pending(self) -> list[PendingCallback]:
        return list(self._pending.values())

    def failures(self, key: RentalKey) -> int:
        """Failed dispatches counted towards max_reclaim_attempts."""
        return self._failures.get(key, 0)

    def receipt_timeout(self, chain_id: int) -> float:
        return self.settings.receipt_timeout(self.adapters[chain_id].config)

    def _backoff(self, attempt: int) -> float:
        return min(
            self.settings.backoff_base_seconds * (2 ** attempt),
            self.settings.backoff_max_seconds,
        )

    async def dispatch_reclaim(
        self, chain_id: int, rental_id: int, manual: bool = False
    ) -> ReclaimResult:
        """
        Reclaim one rental.

        Args:
            chain_id: Origin chain id
            rental_id: Rental id on that chain
            manual: Operator-triggered; resets the abandoned-rental counter

        Returns:
            ReclaimResult; RECLAIMED and ALREADY_RECLAIMED both count as success
        """
        key = (chain_id, rental_id)
        existing = self._pending.get(key)
        if existing is not None:
            logger.info(
                "reclaim_already_pending",
                chain_id=chain_id,
                rental_id=rental_id,
                tx_hash=existing.tx_hash,
            )
            return ReclaimResult(ReclaimStatus.ALREADY_PENDING, tx_hash=existing.tx_hash)

        pending = PendingCallback(
            chain_id=chain_id,
            rental_id=rental_id,
            submitted_at=time.time(),
            tx_hash=self._unconfirmed.get(key),
        )
        self._pending[key] = pending
        if manual:
            self._failures.pop(key, None)

        logger.info(
            "reclaim_dispatch",
            chain_id=chain_id,
            rental_id=rental_id,
            manual=manual,
            unconfirmed_tx=pending.tx_hash,
        )
        try:
            result = await self._run(pending)
        except asyncio.CancelledError:
            # The transaction, if sent, stays in the pool; only the wait is dropped.
            logger.warning(
                "receipt_wait_abandoned",
                chain_id=chain_id,
                rental_id=rental_id,
                tx_hash=pending.tx_hash,
            )
            raise
        finally:
            self._pending.pop(key, None)

        self.metrics.record_reclaim(chain_id, result.status.value)
        return result

    async def _run(self, pending: PendingCallback) -> ReclaimResult:
        adapter = self.adapters.get(pending.chain_id)
        if adapter is None:
            return await self._fail(pending, ChainUnreachable(pending.chain_id, "not connected"))

        attempts = max(self.settings.max_submit_attempts, 1)
        last_error: Optional[ReactorError] = None
        for attempt in range(attempts):
            pending.retry_count = attempt
            try:
                return await self._attempt(adapter, pending)
            except ReclaimRace:
                return self._already_reclaimed(pending)
            except TRANSIENT_ERRORS as e:
                last_error = e
                self._record(pending, "retry", error=str(e))
                delay = self._backoff(attempt)
                logger.warning(
                    "reclaim_retry",
                    chain_id=pending.chain_id,
                    rental_id=pending.rental_id,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(delay)
            except TERMINAL_ERRORS as e:
                return await self._fail(pending, e)
            except Exception as e:
                logger.error(
                    "reclaim_unexpected_error",
                    chain_id=pending.chain_id,
                    rental_id=pending.rental_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return await self._fail(pending, e)

        return await self._fail(pending, last_error)

    async def _attempt(self, adapter: ChainAdapter, pending: PendingCallback) -> ReclaimResult:
        key = (pending.chain_id, pending.rental_id)

        live = await adapter.get_rental(pending.rental_id)
        _, head_timestamp = await adapter.head()
        now = self.scheduler.advance_clock(pending.chain_id, head_timestamp)

        if live.status is RentalStatus.RECLAIMED:
            await self._feed_back(pending.chain_id, live=live)
            raise ReclaimRace(f"rental {pending.rental_id} already reclaimed")

        if live.status is RentalStatus.AVAILABLE:
            logger.warning(
                "reclaim_rental_not_active",
                chain_id=pending.chain_id,
                rental_id=pending.rental_id,
            )
            self.scheduler.remove(key)
            self._unconfirmed.pop(key, None)
            return ReclaimResult(ReclaimStatus.NOT_ACTIVE)

        if not live.is_expired(now):
            await self._feed_back(pending.chain_id, live=live)
            self.scheduler.reschedule(key, live.expiry_time)
            logger.info(
                "reclaim_not_expired",
                chain_id=pending.chain_id,
                rental_id=pending.rental_id,
                now=now,
                expiry_time=live.expiry_time,
            )
            return ReclaimResult(ReclaimStatus.NOT_EXPIRED)

        if pending.tx_hash is None or await adapter.transaction_state(pending.tx_hash) == "unknown":
            pending.tx_hash = await adapter.submit_transaction(
                ContractCall(RECLAIM_FUNCTION, (pending.rental_id,))
            )
            pending.submitted_at = time.time()
            self._unconfirmed[key] = pending.tx_hash
            self._record(pending, "submitted")
        else:
            logger.info(
                "reclaim_awaiting_existing_tx",
                chain_id=pending.chain_id,
                rental_id=pending.rental_id,
                tx_hash=pending.tx_hash,
            )

        receipt = await self._await_receipt(adapter, pending)
        if not receipt.succeeded:
            after = await adapter.get_rental(pending.rental_id)
            if after.status is RentalStatus.RECLAIMED:
                await self._feed_back(pending.chain_id, live=after)
                raise ReclaimRace(f"rental {pending.rental_id} reclaimed by another sender")
            raise TransactionReverted(f"{RECLAIM_FUNCTION} reverted", receipt.tx_hash)

        await self._feed_back(pending.chain_id, logs=receipt.logs)

        self.scheduler.remove(key)
        self._failures.pop(key, None)
        self._record(pending, ReclaimStatus.RECLAIMED.value)
        logger.info(
            "rental_reclaim_confirmed",
            chain_id=pending.chain_id,
            rental_id=pending.rental_id,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        return ReclaimResult(
            ReclaimStatus.RECLAIMED, tx_hash=receipt.tx_hash, gas_used=receipt.gas_used
        )

    async def _await_receipt(self, adapter: ChainAdapter, pending: PendingCallback) -> Receipt:
        """
        Wait for the pending transaction's receipt.

        On timeout the transaction is looked up out-of-band: a mined one is
        waited for once more, a dropped one is forgotten so the next attempt
        resubmits it, and a pooled one is left alone.
        """
        key = (pending.chain_id, pending.rental_id)
        tx_hash = pending.tx_hash
        timeout = self.receipt_timeout(pending.chain_id)
        for _ in range(2):
            try:
                receipt = await adapter.wait_for_receipt(tx_hash, timeout)
            except ReceiptTimeout:
                state = await adapter.transaction_state(tx_hash)
                logger.warning(
                    "receipt_timeout",
                    chain_id=pending.chain_id,
                    rental_id=pending.rental_id,
                    tx_hash=tx_hash,
                    timeout=timeout,
                    state=state,
                )
                if state == "mined":
                    continue
                if state == "unknown":
                    pending.tx_hash = None
                    self._unconfirmed.pop(key, None)
                raise
            self._unconfirmed.pop(key, None)
            return receipt
        raise ReceiptTimeout(tx_hash, timeout)

    async def _feed_back(
        self, chain_id: int, live: Optional[Rental] = None, logs: Sequence[RawLog] = ()
    ) -> None:
        feedback = CacheFeedback(chain_id, live=live, logs=tuple(logs))
        if self.feedback is not None:
            await self.feedback(feedback)
        else:
            await self.pipeline.apply_feedback(feedback)

    def _already_reclaimed(self, pending: PendingCallback) -> ReclaimResult:
        key = (pending.chain_id, pending.rental_id)
        self.scheduler.remove(key)
        self._failures.pop(key, None)
        self._unconfirmed.pop(key, None)
        self._record(pending, ReclaimStatus.ALREADY_RECLAIMED.value)
        logger.info(
            "reclaim_race_lost",
            chain_id=pending.chain_id,
            rental_id=pending.rental_id,
            tx_hash=pending.tx_hash,
        )
        return ReclaimResult(ReclaimStatus.ALREADY_RECLAIMED, tx_hash=pending.tx_hash)

    async def _fail(self, pending: PendingCallback, error: Optional[Exception]) -> ReclaimResult:
        """Count a failed dispatch and either re-queue the rental or give up."""
        key = (pending.chain_id, pending.rental_id)
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        message = str(error) if error else "unknown error"
        self._record(pending, ReclaimStatus.FAILED.value, error=message)

        if isinstance(error, InsufficientReclaimerFunds):
            logger.error(
                "reclaimer_insufficient_funds",
                chain_id=pending.chain_id,
                rental_id=pending.rental_id,
                error=message,
            )

        if failures >= self.settings.max_reclaim_attempts:
            self.scheduler.remove(key)
            logger.error(
                "reclaim_gave_up",
                chain_id=pending.chain_id,
                rental_id=pending.rental_id,
                failures=failures,
                error=message,
            )
            if self.alerts is not None:
                await self.alerts.alert(
                    "reclaim_abandoned",
                    f"Rental {pending.rental_id} on chain {pending.chain_id} abandoned "
                    f"after {failures} failed reclaims",
                    chain_id=pending.chain_id,
                    rental_id=pending.rental_id,
                    error=message,
                )
            return ReclaimResult(ReclaimStatus.GAVE_UP, tx_hash=pending.tx_hash, error=message)

        rental = self.cache.get(key)
        if rental is not None and rental.expiry_time is not None:
            self.scheduler.reschedule(key, rental.expiry_time)
        logger.warning(
            "reclaim_failed",
            chain_id=pending.chain_id,
            rental_id=pending.rental_id,
            failures=failures,
            error=message,
        )
        return ReclaimResult(ReclaimStatus.FAILED, tx_hash=pending.tx_hash, error=message)

    def _record(self, pending: PendingCallback, status: str, error: Optional[str] = None) -> None:
        if self.store is None:
            return
        self.store.record_reclaim(
            pending.chain_id,
            pending.rental_id,
            attempt=pending.retry_count + 1,
            status=status,
            tx_hash=pending.tx_hash,
            error=error,
        )
