"""
In-memory mirror of every origin chain's rental registry.

Enforces the forward-only lifecycle Available -> Active -> Reclaimed. Events
that would break it are logged as anomalies and ignored; the last valid state
wins.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

import structlog

from .errors import StateAnomaly
from .models import (
    ZERO_ADDRESS,
    Rental,
    RentalCreated,
    RentalEvent,
    RentalKey,
    RentalReclaimed,
    RentalStarted,
    RentalStatus,
    same_address,
)

logger = structlog.get_logger()

ACTIVATED = "activated"
RECLAIMED = "reclaimed"
ANOMALY = "anomaly"

TransitionListener = Callable[[str, Rental], None]


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    ANOMALY = "anomaly"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    rental: Optional[Rental] = None
    reason: Optional[str] = None
    anomaly: Optional[StateAnomaly] = None


def _is_zero(address: str) -> bool:
    return same_address(address, ZERO_ADDRESS)


class RentalCache:
    """
    Rentals keyed by (chain_id, rental_id).

    Records are never deleted. Listeners are told about activations,
    reclaims and anomalies so the expiry scheduler can follow along.
    """

    def __init__(self) -> None:
        self._rentals: dict[RentalKey, Rental] = {}
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, kind: str, rental: Rental) -> None:
        for listener in self._listeners:
            listener(kind, rental)

    def __len__(self) -> int:
        return len(self._rentals)

    def get(self, key: RentalKey) -> Optional[Rental]:
        return self._rentals.get(key)

    def ensure(self, chain_id: int, rental_id: int) -> Rental:
        """Return the rental, synthesizing an Available placeholder if unknown."""
        key = (chain_id, rental_id)
        rental = self._rentals.get(key)
        if rental is None:
            rental = Rental(chain_id=chain_id, rental_id=rental_id, placeholder=True)
            self._rentals[key] = rental
            logger.info("rental_placeholder_created", chain_id=chain_id, rental_id=rental_id)
        return rental

    def list_active(self, chain_id: int) -> list[Rental]:
        return [
            rental
            for rental in self.list_rentals(chain_id)
            if rental.status is RentalStatus.ACTIVE
        ]

    def list_rentals(
        self,
        chain_id: int,
        owner: Optional[str] = None,
        renter: Optional[str] = None,
    ) -> list[Rental]:
        """Rentals on one chain ordered by id, optionally filtered by owner/renter."""
        rentals = [
            rental for (cid, _), rental in self._rentals.items() if cid == chain_id
        ]
        if owner:
            rentals = [r for r in rentals if same_address(r.owner, owner)]
        if renter:
            rentals = [r for r in rentals if same_address(r.renter, renter)]
        return sorted(rentals, key=lambda r: r.rental_id)

    def upsert(self, event: RentalEvent) -> ApplyResult:
        """Apply a normalized lifecycle event."""
        if isinstance(event, RentalCreated):
            return self._apply_created(event)
        if isinstance(event, RentalStarted):
            return self._apply_started(event)
        if isinstance(event, RentalReclaimed):
            return self._apply_reclaimed(event)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def _anomaly(self, rental: Rental, reason: str, **context: object) -> ApplyResult:
        anomaly = StateAnomaly(rental.chain_id, rental.rental_id, reason)
        logger.warning(
            "state_anomaly",
            chain_id=rental.chain_id,
            rental_id=rental.rental_id,
            status=rental.status.value,
            reason=reason,
            **context,
        )
        self._notify(ANOMALY, rental)
        return ApplyResult(ApplyOutcome.ANOMALY, rental, reason, anomaly)

    def _undo_start(self, rental: Rental) -> ApplyResult:
        """
        Drop a start applied to a placeholder whose owner turned out to be the renter.

        The start was accepted only because the owner was not yet known; had it
        been, the event would have been discarded and the rental left Available.
        """
        renter = rental.renter
        rental.renter = ZERO_ADDRESS
        rental.start_time = 0
        rental.status = RentalStatus.AVAILABLE
        return self._anomaly(rental, "renter equals owner", renter=renter)

    def _apply_created(self, event: RentalCreated) -> ApplyResult:
        key = (event.chain_id, event.rental_id)
        rental = self._rentals.get(key)

        if rental is None:
            rental = Rental(
                chain_id=event.chain_id,
                rental_id=event.rental_id,
                nft_contract=event.nft_contract,
                token_id=event.token_id,
                owner=event.owner,
                price_per_period=event.price,
                duration=event.duration,
            )
            self._rentals[key] = rental
            logger.info(
                "rental_created",
                chain_id=event.chain_id,
                rental_id=event.rental_id,
                owner=event.owner,
                duration=event.duration,
            )
            return ApplyResult(ApplyOutcome.APPLIED, rental)

        if rental.placeholder:
            rental.nft_contract = event.nft_contract
            rental.token_id = event.token_id
            rental.owner = event.owner
            rental.price_per_period = event.price
            rental.duration = event.duration
            rental.placeholder = False
            if rental.status is RentalStatus.ACTIVE:
                if same_address(rental.renter, rental.owner):
                    return self._undo_start(rental)
                # Expiry was unknown while the duration was missing.
                self._notify(ACTIVATED, rental)
            return ApplyResult(ApplyOutcome.APPLIED, rental)

        same_record = (
            same_address(rental.owner, event.owner)
            and same_address(rental.nft_contract, event.nft_contract)
            and rental.token_id == event.token_id
            and rental.duration == event.duration
            and rental.price_per_period == event.price
        )
        if same_record:
            return ApplyResult(ApplyOutcome.DUPLICATE, rental)
        return self._anomaly(rental, "conflicting RentalCreated", owner=event.owner)

    def _apply_started(self, event: RentalStarted) -> ApplyResult:
        rental = self.ensure(event.chain_id, event.rental_id)

        if rental.status is RentalStatus.AVAILABLE:
            if _is_zero(event.renter):
                return self._anomaly(rental, "zero renter")
            if not _is_zero(rental.owner) and same_address(event.renter, rental.owner):
                return self._anomaly(rental, "renter equals owner", renter=event.renter)

            rental.renter = event.renter
            rental.start_time = event.start_time
            rental.status = RentalStatus.ACTIVE
            logger.info(
                "rental_started",
                chain_id=rental.chain_id,
                rental_id=rental.rental_id,
                renter=rental.renter,
                expiry_time=rental.expiry_time,
            )
            self._notify(ACTIVATED, rental)
            return ApplyResult(ApplyOutcome.APPLIED, rental)

        if same_address(rental.renter, event.renter):
            if rental.status is RentalStatus.ACTIVE and rental.start_time != event.start_time:
                return self._anomaly(
                    rental, "conflicting start time", start_time=event.start_time
                )
            outcome = (
                ApplyOutcome.DUPLICATE
                if rental.status is RentalStatus.ACTIVE
                else ApplyOutcome.STALE
            )
            return ApplyResult(outcome, rental)

        return self._anomaly(rental, "conflicting renter", renter=event.renter)

    def _apply_reclaimed(self, event: RentalReclaimed) -> ApplyResult:
        rental = self.ensure(event.chain_id, event.rental_id)

        if rental.status is RentalStatus.RECLAIMED:
            return ApplyResult(ApplyOutcome.DUPLICATE, rental)

        if rental.status is RentalStatus.AVAILABLE:
            logger.warning(
                "rental_reclaimed_before_start",
                chain_id=rental.chain_id,
                rental_id=rental.rental_id,
            )

        rental.status = RentalStatus.RECLAIMED
        logger.info(
            "rental_reclaimed",
            chain_id=rental.chain_id,
            rental_id=rental.rental_id,
            was_automatic=event.was_automatic,
        )
        self._notify(RECLAIMED, rental)
        return ApplyResult(ApplyOutcome.APPLIED, rental)

    def reconcile(self, live: Rental) -> ApplyResult:
        """
        Merge a rental read directly from the contract.

        Fills in placeholder fields and moves the status forward, never back.
        """
        key = live.key
        rental = self._rentals.get(key)

        if rental is None:
            rental = replace(live, status=RentalStatus.AVAILABLE, placeholder=False)
            if live.status is RentalStatus.AVAILABLE:
                rental.renter = ZERO_ADDRESS
                rental.start_time = 0
            self._rentals[key] = rental
        elif rental.placeholder:
            rental.nft_contract = live.nft_contract
            rental.token_id = live.token_id
            rental.owner = live.owner
            rental.price_per_period = live.price_per_period
            rental.duration = live.duration
            rental.placeholder = False
            if rental.status is RentalStatus.ACTIVE:
                if same_address(rental.renter, rental.owner):
                    self._undo_start(rental)
                else:
                    self._notify(ACTIVATED, rental)

        if live.status.rank < rental.status.rank:
            return ApplyResult(ApplyOutcome.STALE, rental)
        if live.status is rental.status and rental.status is not RentalStatus.AVAILABLE:
            if rental.status is RentalStatus.ACTIVE and not same_address(rental.renter, live.renter):
                return self._anomaly(rental, "conflicting renter on chain", renter=live.renter)
            return ApplyResult(ApplyOutcome.DUPLICATE, rental)
        if live.status is RentalStatus.AVAILABLE:
            return ApplyResult(ApplyOutcome.APPLIED, rental)

        if same_address(live.renter, live.owner):
            return self._anomaly(rental, "renter equals owner", renter=live.renter)

        if rental.status is RentalStatus.AVAILABLE:
            rental.renter = live.renter
            rental.start_time = live.start_time

        if live.status is RentalStatus.ACTIVE:
            rental.status = RentalStatus.ACTIVE
            self._notify(ACTIVATED, rental)
        else:
            rental.status = RentalStatus.RECLAIMED
            self._notify(RECLAIMED, rental)

        logger.info(
            "rental_reconciled",
            chain_id=rental.chain_id,
            rental_id=rental.rental_id,
            status=rental.status.value,
        )
        return ApplyResult(ApplyOutcome.APPLIED, rental)
