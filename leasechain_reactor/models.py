"""
Domain types shared by the reactor components.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

RentalKey = tuple[int, int]  # (chain_id, rental_id)


class RentalStatus(str, Enum):
    """Forward-only rental lifecycle."""

    AVAILABLE = "Available"
    ACTIVE = "Active"
    RECLAIMED = "Reclaimed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def label(self) -> str:
        """Marketplace label (reclaimed rentals are shown as completed)."""
        return "Completed" if self is RentalStatus.RECLAIMED else self.value


_STATUS_RANK = {
    RentalStatus.AVAILABLE: 0,
    RentalStatus.ACTIVE: 1,
    RentalStatus.RECLAIMED: 2,
}


def same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


@dataclass
class Rental:
    """Mirror of one origin-chain rental record."""

    chain_id: int
    rental_id: int
    nft_contract: str = ZERO_ADDRESS
    token_id: int = 0
    owner: str = ZERO_ADDRESS
    renter: str = ZERO_ADDRESS
    price_per_period: int = 0  # wei
    duration: int = 0  # seconds
    start_time: int = 0
    status: RentalStatus = RentalStatus.AVAILABLE
    placeholder: bool = False

    @property
    def key(self) -> RentalKey:
        return (self.chain_id, self.rental_id)

    @property
    def expiry_time(self) -> Optional[int]:
        if self.status is not RentalStatus.ACTIVE:
            return None
        return self.start_time + self.duration

    def is_expired(self, now: int) -> bool:
        expiry = self.expiry_time
        return expiry is not None and now >= expiry

    def time_remaining(self, now: int) -> int:
        expiry = self.expiry_time
        if expiry is None:
            return 0
        return max(0, expiry - now)


# ============================================================================
# Events
# ============================================================================


@dataclass(frozen=True)
class RawLog:
    """Provider-neutral log entry."""

    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int
    removed: bool = False


@dataclass(frozen=True)
class LogBatch:
    """Logs from one polled block window, plus the chain clock at poll time."""

    chain_id: int
    from_block: int
    to_block: int
    head_block: int
    head_timestamp: int
    logs: tuple[RawLog, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.to_block < self.from_block


@dataclass(frozen=True)
class RentalCreated:
    chain_id: int
    rental_id: int
    nft_contract: str
    token_id: int
    owner: str
    renter: str
    duration: int
    price: int
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0


@dataclass(frozen=True)
class RentalStarted:
    chain_id: int
    rental_id: int
    renter: str
    start_time: int
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0


@dataclass(frozen=True)
class RentalReclaimed:
    chain_id: int
    rental_id: int
    nft_contract: str
    token_id: int
    was_automatic: bool
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0


RentalEvent = Union[RentalCreated, RentalStarted, RentalReclaimed]


class DiscardReason(str, Enum):
    UNKNOWN_EVENT_SHAPE = "UnknownEventShape"
    DUPLICATE = "Duplicate"
    REMOVED = "Removed"
    FOREIGN_CONTRACT = "ForeignContract"


# ============================================================================
# Transactions
# ============================================================================


@dataclass(frozen=True)
class ContractCall:
    """A call to an origin-contract entry point."""

    function: str
    args: tuple = ()
    value: int = 0


@dataclass
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    logs: list[RawLog] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class CacheFeedback:
    """What a reclaim learned about a rental, to be applied by the chain's consumer."""

    chain_id: int
    live: Optional[Rental] = None
    logs: tuple[RawLog, ...] = ()


@dataclass
class PendingCallback:
    """In-flight reclaim. Its presence is the per-rental mutual exclusion marker."""

    chain_id: int
    rental_id: int
    submitted_at: float
    tx_hash: Optional[str] = None
    retry_count: int = 0


class ReclaimStatus(str, Enum):
    RECLAIMED = "reclaimed"
    ALREADY_RECLAIMED = "already_reclaimed"
    ALREADY_PENDING = "already_pending"
    NOT_ACTIVE = "not_active"
    NOT_EXPIRED = "not_expired"
    FAILED = "failed"
    GAVE_UP = "gave_up"


@dataclass
class ReclaimResult:
    """Outcome of one dispatch_reclaim call."""

    status: ReclaimStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    gas_used: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status in (ReclaimStatus.RECLAIMED, ReclaimStatus.ALREADY_RECLAIMED)
