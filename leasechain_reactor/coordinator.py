"""
Reactor coordinator.

Owns the rental cache, the expiry scheduler and one chain loop per origin
chain. Each loop connects, syncs a snapshot of the registry, then follows the
contract's logs: a producer task polls batches into a queue and the consumer
applies them, advances the checkpoint and fires due expiries.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from .cache import RentalCache
from .chain import TRANSPORT_ERRORS, ChainAdapter
from .config import ChainConfig, ReactorConfig
from .dispatcher import CallbackDispatcher
from .errors import ChainMismatch, ReactorError
from .ingestion import IngestionPipeline
from .models import CacheFeedback, LogBatch, ReclaimResult, Rental
from .observability import AlertSink, ReactorMetrics
from .scheduler import ExpiryScheduler
from .store import CheckpointStore

logger = structlog.get_logger()

AdapterFactory = Callable[[ChainConfig], Awaitable[ChainAdapter]]

QUEUE_SIZE = 8

# Consumer input: polled batches, dispatcher feedback, producer failures
QueueItem = Union[LogBatch, CacheFeedback, Exception]


@dataclass
class ChainLoopState:
    """Lifecycle of one chain loop."""

    chain_id: int
    status: str = "pending"  # pending, connecting, syncing, following, retrying, failed, stopped
    restarts: int = 0
    synced: bool = False
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None


class ReactorCoordinator:
    """
    Runs the reactor across all configured origin chains.

    A failing chain never stops the others: unreachable endpoints are
    retried with backoff, a chain id mismatch ends only that chain's loop.
    """

    def __init__(
        self,
        config: ReactorConfig,
        store: Optional[CheckpointStore] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        alerts: Optional[AlertSink] = None,
    ):
        settings = config.settings
        self.config = config
        self.settings = settings

        self.cache = RentalCache()
        self.scheduler = ExpiryScheduler()
        self.metrics = ReactorMetrics()
        self.alerts = alerts or AlertSink(settings.alert_webhook_url)
        self.store = store or CheckpointStore(settings.database_url)
        self.adapters: dict[int, ChainAdapter] = {}

        self.cache.add_listener(self.scheduler.on_transition)
        self.cache.add_listener(self.metrics.on_transition)

        self.pipeline = IngestionPipeline(
            self.cache,
            self.adapters,
            dedupe_window=settings.dedupe_window,
            metrics=self.metrics,
        )
        self.dispatcher = CallbackDispatcher(
            settings,
            self.cache,
            self.scheduler,
            self.adapters,
            pipeline=self.pipeline,
            store=self.store,
            metrics=self.metrics,
            alerts=self.alerts,
            feedback=self._route_feedback,
        )

        self._adapter_factory = adapter_factory or self._connect_adapter
        self.states = {chain.chain_id: ChainLoopState(chain.chain_id) for chain in config.chains}
        self._chain_tasks: dict[int, asyncio.Task] = {}
        self._dispatch_tasks: set[asyncio.Task] = set()
        self._queues: dict[int, "asyncio.Queue[QueueItem]"] = {}
        self._anomalies_alerted: dict[int, int] = {}
        self._stop_event = asyncio.Event()
        self._stopped = False

        logger.info(
            "reactor_initialized",
            chains=[chain.chain_id for chain in config.chains],
            max_submit_attempts=settings.max_submit_attempts,
            receipt_timeout_blocks=settings.receipt_timeout_blocks,
        )

    async def _connect_adapter(self, chain: ChainConfig) -> ChainAdapter:
        settings = self.settings
        return await ChainAdapter.connect(
            chain,
            private_key=settings.reactor_private_key,
            gas_limit=settings.gas_limit,
            retries=settings.connect_retries,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
        )

    def _backoff(self, attempt: int) -> float:
        return min(
            self.settings.backoff_base_seconds * (2 ** attempt),
            self.settings.backoff_max_seconds,
        )

    # Lifecycle

    async def start(self) -> None:
        """Start one loop per configured chain."""
        logger.info("reactor_starting", chains=len(self.config.chains))
        for chain in self.config.chains:
            if chain.chain_id in self._chain_tasks:
                continue
            self.states[chain.chain_id].started_at = datetime.now()
            self._chain_tasks[chain.chain_id] = asyncio.create_task(
                self._chain_loop(chain), name=f"chain-{chain.chain_id}"
            )

    async def run_forever(self) -> None:
        """Start the chain loops and block until stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Cancel chain loops and in-flight receipt waits, then release resources.

        Transactions already sent are left to the network.
        """
        self._stop_event.set()
        if self._stopped:
            return
        self._stopped = True
        logger.info("reactor_stopping", pending_reclaims=len(self.dispatcher.pending))

        tasks = [*self._chain_tasks.values(), *self._dispatch_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._chain_tasks.clear()
        self._dispatch_tasks.clear()

        for chain_id, adapter in list(self.adapters.items()):
            await self._close_adapter(adapter)
            self.adapters.pop(chain_id, None)
            self.states[chain_id].status = "stopped"

        await self.alerts.close()
        self.store.close()
        logger.info("reactor_stopped")

    async def _close_adapter(self, adapter: ChainAdapter) -> None:
        try:
            await adapter.close()
        except TRANSPORT_ERRORS as e:
            logger.warning("adapter_close_failed", chain_id=adapter.chain_id, error=str(e))

    # Chain loops

    async def connect_chain(self, chain: ChainConfig) -> ChainAdapter:
        """Connect (or reconnect) to a chain and register its adapter."""
        adapter = await self._adapter_factory(chain)
        previous = self.adapters.get(chain.chain_id)
        if previous is not None and previous is not adapter:
            await self._close_adapter(previous)
        self.adapters[chain.chain_id] = adapter
        return adapter

    async def _chain_loop(self, chain: ChainConfig) -> None:
        state = self.states[chain.chain_id]
        attempt = 0

        while not self._stop_event.is_set():
            try:
                state.status = "connecting"
                adapter = await self.connect_chain(chain)

                if self.settings.snapshot_on_start and not state.synced:
                    state.status = "syncing"
                    await self.snapshot_sync(chain.chain_id)
                    state.synced = True

                state.status = "following"
                attempt = 0
                await self._follow(chain, adapter)

            except ChainMismatch as e:
                state.status = "failed"
                state.last_error = str(e)
                self.metrics.record_error(chain.chain_id, str(e))
                logger.error(
                    "chain_mismatch",
                    chain_id=chain.chain_id,
                    expected=e.expected,
                    actual=e.actual,
                )
                await self.alerts.alert(
                    "chain_mismatch",
                    f"Chain {chain.label} disabled: {e}",
                    chain_id=chain.chain_id,
                )
                return

            except ReactorError as e:
                state.last_error = str(e)
                self.metrics.record_error(chain.chain_id, str(e))
                logger.warning("chain_loop_error", chain_id=chain.chain_id, error=str(e))

            except Exception as e:
                state.last_error = str(e)
                self.metrics.record_error(chain.chain_id, str(e))
                logger.error("chain_loop_crashed", chain_id=chain.chain_id, error=str(e))

            state.status = "retrying"
            state.restarts += 1
            delay = self._backoff(attempt)
            attempt += 1
            logger.info("chain_loop_restart", chain_id=chain.chain_id, delay=delay)
            await asyncio.sleep(delay)

    async def snapshot_sync(self, chain_id: int) -> int:
        """
        Reconcile every rental the contract knows about.

        Picks up rentals created or started while the reactor was down.
        Returns the number of rentals read.
        """
        adapter = self.adapters[chain_id]
        next_id = await adapter.next_rental_id()
        for rental_id in range(1, next_id):
            live = await adapter.get_rental(rental_id)
            self.cache.reconcile(live)

        _, head_timestamp = await adapter.head()
        self.scheduler.advance_clock(chain_id, head_timestamp)

        synced = max(next_id - 1, 0)
        logger.info(
            "snapshot_synced",
            chain_id=chain_id,
            rentals=synced,
            active=len(self.cache.list_active(chain_id)),
        )
        return synced

    async def _resume_block(self, chain: ChainConfig, adapter: ChainAdapter) -> int:
        checkpoint = self.store.get_checkpoint(chain.chain_id)
        if checkpoint is not None:
            return checkpoint + 1
        if chain.start_block is not None:
            return chain.start_block
        head_block, _ = await adapter.head()
        return max(head_block - chain.block_confirmations, 0)

    async def _follow(self, chain: ChainConfig, adapter: ChainAdapter) -> None:
        from_block = await self._resume_block(chain, adapter)
        logger.info("chain_following", chain_id=chain.chain_id, from_block=from_block)

        queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=QUEUE_SIZE)
        producer = asyncio.create_task(
            self._produce(adapter, from_block, queue), name=f"poll-{chain.chain_id}"
        )
        self._queues[chain.chain_id] = queue
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, CacheFeedback):
                    await self.pipeline.apply_feedback(item)
                    continue
                await self._process_batch(item)
        finally:
            self._queues.pop(chain.chain_id, None)
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    async def _produce(
        self,
        adapter: ChainAdapter,
        from_block: int,
        queue: "asyncio.Queue[QueueItem]",
    ) -> None:
        """Poll log batches into the queue; a failure is handed to the consumer."""
        try:
            async for batch in adapter.subscribe_logs(from_block):
                await queue.put(batch)
        except Exception as e:
            await queue.put(e)

    async def _process_batch(self, batch: LogBatch) -> None:
        chain_id = batch.chain_id
        await self.pipeline.ingest_batch(chain_id, batch)

        # Only after every log of the window has been applied.
        if not batch.is_empty:
            self.store.set_checkpoint(chain_id, batch.to_block)
        self.metrics.observe_batch(batch, batch.to_block)

        if self.pipeline.pending_backfills(chain_id):
            await self.pipeline.retry_backfills(chain_id)

        for signal in self.scheduler.tick(chain_id, batch.head_timestamp):
            self._spawn_dispatch(signal.chain_id, signal.rental_id)

        await self._check_anomalies(chain_id)

    async def _route_feedback(self, feedback: CacheFeedback) -> None:
        """Hand dispatcher cache updates to the chain's consumer, the cache's only writer."""
        queue = self._queues.get(feedback.chain_id)
        if queue is None:
            # No loop is following this chain
            await self.pipeline.apply_feedback(feedback)
            return
        await queue.put(feedback)

    def _spawn_dispatch(self, chain_id: int, rental_id: int) -> None:
        task = asyncio.create_task(
            self.dispatcher.dispatch_reclaim(chain_id, rental_id),
            name=f"reclaim-{chain_id}-{rental_id}",
        )
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatch_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("reclaim_dispatch_crashed", task=task.get_name(), error=str(error))

    async def _check_anomalies(self, chain_id: int) -> None:
        threshold = self.settings.anomaly_alert_threshold
        if threshold <= 0:
            return
        anomalies = self.metrics.chain(chain_id).anomalies
        alerted = self._anomalies_alerted.get(chain_id, 0)
        if anomalies - alerted >= threshold:
            self._anomalies_alerted[chain_id] = anomalies
            await self.alerts.alert(
                "state_anomalies",
                f"{anomalies - alerted} state anomalies on chain {chain_id}",
                chain_id=chain_id,
                total=anomalies,
            )

    # UI / CLI proxies

    def list_rentals(
        self, chain_id: int, owner: Optional[str] = None, renter: Optional[str] = None
    ) -> list[Rental]:
        return self.cache.list_rentals(chain_id, owner=owner, renter=renter)

    def get_rental(self, chain_id: int, rental_id: int) -> Optional[Rental]:
        return self.cache.get((chain_id, rental_id))

    async def get_time_remaining(self, rental: Rental) -> Optional[int]:
        """
        Seconds until expiry on the rental's chain clock.

        0 for rentals that are not Active; None if the chain clock is unknown
        and the chain cannot be reached.
        """
        now = self.scheduler.now(rental.chain_id)
        if now is None:
            adapter = self.adapters.get(rental.chain_id)
            if adapter is None:
                return None
            try:
                _, head_timestamp = await adapter.head()
            except ReactorError as e:
                logger.warning("chain_clock_unavailable", chain_id=rental.chain_id, error=str(e))
                return None
            now = self.scheduler.advance_clock(rental.chain_id, head_timestamp)
        return rental.time_remaining(now)

    async def trigger_manual_reclaim(self, chain_id: int, rental_id: int) -> ReclaimResult:
        """Operator-requested reclaim, subject to the same exclusion as automatic ones."""
        logger.info("manual_reclaim_requested", chain_id=chain_id, rental_id=rental_id)
        return await self.dispatcher.dispatch_reclaim(chain_id, rental_id, manual=True)

    def status(self) -> dict[str, Any]:
        """Per-chain health: loop state, head, checkpoint, lag and counters."""
        chains = []
        for chain in self.config.chains:
            state = self.states[chain.chain_id]
            chains.append(
                {
                    **self.metrics.chain(chain.chain_id).to_dict(),
                    "name": chain.label,
                    "status": state.status,
                    "connected": chain.chain_id in self.adapters,
                    "restarts": state.restarts,
                    "checkpoint": self.store.get_checkpoint(chain.chain_id),
                    "clock": self.scheduler.now(chain.chain_id),
                    "next_expiry": self.scheduler.next_wake(chain.chain_id),
                    "active_rentals": len(self.cache.list_active(chain.chain_id)),
                    "last_error": state.last_error,
                }
            )
        return {
            "chains": chains,
            "rentals": len(self.cache),
            "scheduled": len(self.scheduler),
            "pending_reclaims": len(self.dispatcher.pending),
        }
