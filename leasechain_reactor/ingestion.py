"""
Event ingestion: decode raw LeaseChain logs, dedupe and apply them to the cache.
"""

from collections import OrderedDict
from typing import Mapping, Optional, Union

import structlog
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .cache import RentalCache
from .chain import EVENT_TOPICS, ChainAdapter
from .errors import ReactorError, UnknownEventShape
from .models import (
    CacheFeedback,
    DiscardReason,
    LogBatch,
    RawLog,
    RentalCreated,
    RentalEvent,
    RentalReclaimed,
    RentalStarted,
    same_address,
)
from .observability import ReactorMetrics

logger = structlog.get_logger()

IngestResult = Union[RentalEvent, DiscardReason]

_TOPIC_NAMES = {topic: name for name, topic in EVENT_TOPICS.items()}

# name -> (number of topics including topic0, data types)
_LAYOUTS: dict[str, tuple[int, list[str]]] = {
    "RentalCreated": (4, ["address", "address", "uint256", "uint256"]),
    "RentalStarted": (3, ["uint256"]),
    "RentalReclaimed": (4, ["bool"]),
}


def _topic_int(topic: bytes) -> int:
    return decode(["uint256"], topic)[0]


def _topic_address(topic: bytes) -> str:
    return Web3.to_checksum_address(decode(["address"], topic)[0])


class EventDecoder:
    """Turns a RawLog into a typed lifecycle event."""

    def decode(self, chain_id: int, raw: RawLog) -> IngestResult:
        """Typed event, or UNKNOWN_EVENT_SHAPE when the log cannot be parsed."""
        try:
            return self.parse(chain_id, raw)
        except UnknownEventShape as e:
            logger.warning(
                "event_decode_failed",
                chain_id=chain_id,
                tx_hash=raw.tx_hash,
                log_index=raw.log_index,
                error=str(e),
            )
            return DiscardReason.UNKNOWN_EVENT_SHAPE

    def parse(self, chain_id: int, raw: RawLog) -> RentalEvent:
        """
        Raises:
            UnknownEventShape: unknown topic0, wrong topic count or bad data
        """
        if not raw.topics:
            raise UnknownEventShape("log has no topics")
        name = _TOPIC_NAMES.get(bytes(raw.topics[0]))
        if name is None:
            raise UnknownEventShape(f"unknown topic0 {bytes(raw.topics[0]).hex()}")

        topic_count, data_types = _LAYOUTS[name]
        if len(raw.topics) != topic_count:
            raise UnknownEventShape(f"{name} with {len(raw.topics)} topics")

        meta = {
            "chain_id": chain_id,
            "block_number": raw.block_number,
            "tx_hash": raw.tx_hash,
            "log_index": raw.log_index,
        }
        try:
            values = decode(data_types, raw.data)
            rental_id = _topic_int(raw.topics[1])

            if name == "RentalCreated":
                owner, renter, duration, price = values
                return RentalCreated(
                    rental_id=rental_id,
                    nft_contract=_topic_address(raw.topics[2]),
                    token_id=_topic_int(raw.topics[3]),
                    owner=Web3.to_checksum_address(owner),
                    renter=Web3.to_checksum_address(renter),
                    duration=duration,
                    price=price,
                    **meta,
                )
            if name == "RentalStarted":
                return RentalStarted(
                    rental_id=rental_id,
                    renter=_topic_address(raw.topics[2]),
                    start_time=values[0],
                    **meta,
                )
            return RentalReclaimed(
                rental_id=rental_id,
                nft_contract=_topic_address(raw.topics[2]),
                token_id=_topic_int(raw.topics[3]),
                was_automatic=values[0],
                **meta,
            )
        except (DecodingError, ValueError, IndexError) as e:
            raise UnknownEventShape(f"{name}: {e}") from e


class IngestionPipeline:
    """
    Applies origin-chain logs to the rental cache.

    Logs are deduplicated by (chain_id, tx_hash, log_index) inside a bounded
    window, so redelivery after a restart or an overlapping poll is harmless.
    Events for rentals the cache has never seen trigger a placeholder and a
    backfill read of the rental from the contract.
    """

    def __init__(
        self,
        cache: RentalCache,
        adapters: Mapping[int, ChainAdapter],
        decoder: Optional[EventDecoder] = None,
        dedupe_window: int = 10_000,
        metrics: Optional[ReactorMetrics] = None,
    ):
        self.cache = cache
        self.adapters = adapters
        self.decoder = decoder or EventDecoder()
        self.dedupe_window = dedupe_window
        self.metrics = metrics or ReactorMetrics()
        self._seen: dict[int, OrderedDict[tuple[str, int], None]] = {}
        self._pending_backfill: dict[int, set[int]] = {}

    def pending_backfills(self, chain_id: int) -> set[int]:
        return set(self._pending_backfill.get(chain_id, set()))

    def _mark_seen(self, chain_id: int, raw: RawLog) -> bool:
        """Record a log id; False if it was already seen."""
        seen = self._seen.setdefault(chain_id, OrderedDict())
        log_id = (raw.tx_hash.lower(), raw.log_index)
        if log_id in seen:
            seen.move_to_end(log_id)
            return False
        seen[log_id] = None
        while len(seen) > self.dedupe_window:
            seen.popitem(last=False)
        return True

    def _discard(self, chain_id: int, raw: RawLog, reason: DiscardReason) -> DiscardReason:
        self.metrics.record_discard(chain_id, reason.value)
        logger.debug(
            "event_discarded",
            chain_id=chain_id,
            tx_hash=raw.tx_hash,
            log_index=raw.log_index,
            reason=reason.value,
        )
        return reason

    async def ingest(self, chain_id: int, raw: RawLog) -> IngestResult:
        """Decode and apply one log."""
        if raw.removed:
            return self._discard(chain_id, raw, DiscardReason.REMOVED)

        adapter = self.adapters.get(chain_id)
        if adapter is not None and not same_address(raw.address, adapter.config.contract_address):
            return self._discard(chain_id, raw, DiscardReason.FOREIGN_CONTRACT)

        # Marked before any await so a concurrent redelivery is dropped.
        if not self._mark_seen(chain_id, raw):
            return self._discard(chain_id, raw, DiscardReason.DUPLICATE)

        event = self.decoder.decode(chain_id, raw)
        if isinstance(event, DiscardReason):
            return self._discard(chain_id, raw, event)

        if not isinstance(event, RentalCreated):
            known = self.cache.get((chain_id, event.rental_id))
            if known is None or known.placeholder:
                self.cache.ensure(chain_id, event.rental_id)
                await self._backfill(chain_id, event.rental_id)

        result = self.cache.upsert(event)
        self.metrics.record_ingested(chain_id)
        logger.debug(
            "event_applied",
            chain_id=chain_id,
            rental_id=event.rental_id,
            event_type=type(event).__name__,
            outcome=result.outcome.value,
            block_number=raw.block_number,
        )
        return event

    async def ingest_batch(self, chain_id: int, batch: LogBatch) -> list[IngestResult]:
        """Apply a batch of logs in (block, log_index) order."""
        logs = sorted(batch.logs, key=lambda log: (log.block_number, log.log_index))
        return [await self.ingest(chain_id, raw) for raw in logs]

    async def apply_feedback(self, feedback: CacheFeedback) -> None:
        """Apply a live read and receipt logs reported by the dispatcher."""
        if feedback.live is not None:
            self.cache.reconcile(feedback.live)
        for raw in feedback.logs:
            await self.ingest(feedback.chain_id, raw)

    async def _backfill(self, chain_id: int, rental_id: int) -> bool:
        adapter = self.adapters.get(chain_id)
        if adapter is None:
            self._pending_backfill.setdefault(chain_id, set()).add(rental_id)
            return False

        try:
            live = await adapter.get_rental(rental_id)
        except ReactorError as e:
            self._pending_backfill.setdefault(chain_id, set()).add(rental_id)
            logger.warning(
                "rental_backfill_failed",
                chain_id=chain_id,
                rental_id=rental_id,
                error=str(e),
            )
            return False

        self.cache.reconcile(live)
        self._pending_backfill.get(chain_id, set()).discard(rental_id)
        logger.info("rental_backfilled", chain_id=chain_id, rental_id=rental_id)
        return True

    async def retry_backfills(self, chain_id: int) -> int:
        """Retry failed backfills for a chain. Returns how many succeeded."""
        done = 0
        for rental_id in sorted(self.pending_backfills(chain_id)):
            if await self._backfill(chain_id, rental_id):
                done += 1
        return done
