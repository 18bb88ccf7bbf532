"""
Expiry scheduler driven by origin-chain block timestamps.

One min-heap per chain. Each chain has its own clock that only moves forward;
wall-clock time never fires a signal.
"""

import heapq
from dataclasses import dataclass
from typing import Optional

import structlog

from .models import Rental, RentalKey, RentalStatus

logger = structlog.get_logger()


@dataclass(frozen=True, order=True)
class ExpirySignal:
    """A rental whose expiry has been reached on its chain's clock."""

    expiry_time: int
    chain_id: int
    rental_id: int

    @property
    def key(self) -> RentalKey:
        return (self.chain_id, self.rental_id)


class ExpiryScheduler:
    """
    Tracks the expiry of every Active rental.

    Heap entries are invalidated lazily: `_entries` holds the live expiry per
    key and stale heap items are skipped when popped.
    """

    def __init__(self) -> None:
        self._heaps: dict[int, list[tuple[int, int]]] = {}
        self._entries: dict[RentalKey, int] = {}
        self._clocks: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: RentalKey) -> bool:
        return key in self._entries

    def expiry_of(self, key: RentalKey) -> Optional[int]:
        return self._entries.get(key)

    def now(self, chain_id: int) -> Optional[int]:
        """Latest block timestamp observed on a chain."""
        return self._clocks.get(chain_id)

    def advance_clock(self, chain_id: int, timestamp: int) -> int:
        """Move a chain clock forward; older timestamps are ignored."""
        current = self._clocks.get(chain_id)
        if current is None or timestamp > current:
            self._clocks[chain_id] = timestamp
            return timestamp
        return current

    def schedule(self, rental: Rental) -> None:
        """Track an Active rental. Scheduling the same expiry twice is a no-op."""
        expiry = rental.expiry_time
        if expiry is None:
            return
        self.reschedule(rental.key, expiry)

    def reschedule(self, key: RentalKey, expiry_time: int) -> None:
        if self._entries.get(key) == expiry_time:
            return
        chain_id, rental_id = key
        self._entries[key] = expiry_time
        heapq.heappush(self._heaps.setdefault(chain_id, []), (expiry_time, rental_id))
        logger.debug(
            "expiry_scheduled", chain_id=chain_id, rental_id=rental_id, expiry_time=expiry_time
        )

    def remove(self, key: RentalKey) -> None:
        """Stop tracking a rental; unknown keys are ignored."""
        self._entries.pop(key, None)

    def tick(self, chain_id: int, now: Optional[int] = None) -> list[ExpirySignal]:
        """
        Emit a signal for every rental on `chain_id` with expiry <= now.

        Fired entries are removed, so each expiry is signalled once; the
        dispatcher reschedules if the reclaim does not go through.
        """
        if now is not None:
            self.advance_clock(chain_id, now)
        clock = self._clocks.get(chain_id)
        if clock is None:
            return []

        heap = self._heaps.get(chain_id, [])
        signals: list[ExpirySignal] = []
        while heap and heap[0][0] <= clock:
            expiry_time, rental_id = heapq.heappop(heap)
            key = (chain_id, rental_id)
            if self._entries.get(key) != expiry_time:
                continue
            del self._entries[key]
            signals.append(ExpirySignal(expiry_time, chain_id, rental_id))

        if signals:
            logger.info("expiries_due", chain_id=chain_id, now=clock, count=len(signals))
        return signals

    def next_wake(self, chain_id: int) -> Optional[int]:
        """Earliest pending expiry on a chain, or None."""
        heap = self._heaps.get(chain_id, [])
        while heap:
            expiry_time, rental_id = heap[0]
            if self._entries.get((chain_id, rental_id)) == expiry_time:
                return expiry_time
            heapq.heappop(heap)
        return None

    def on_transition(self, kind: str, rental: Rental) -> None:
        """Cache listener keeping the heap in step with rental status."""
        if kind == "activated":
            self.schedule(rental)
        elif kind == "reclaimed":
            self.remove(rental.key)
        elif kind == "anomaly" and rental.status is not RentalStatus.ACTIVE:
            self.remove(rental.key)
