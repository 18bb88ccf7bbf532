"""
Pydantic models for API responses.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .models import ReclaimResult, Rental


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="ok when every chain loop is following")
    version: str = Field(..., description="Reactor version")
    chains: dict[str, str] = Field(..., description="Loop status per chain id")


class ChainStatusResponse(BaseModel):
    """Health of one chain loop."""

    chain_id: int
    name: str
    status: str = Field(..., description="Loop state (following, retrying, failed, ...)")
    connected: bool
    head_block: Optional[int] = None
    checkpoint: Optional[int] = Field(None, description="Last fully processed block")
    lag: Optional[int] = Field(None, description="Blocks between head and checkpoint")
    clock: Optional[int] = Field(None, description="Latest block timestamp seen")
    next_expiry: Optional[int] = None
    active_rentals: int = 0
    events_ingested: int = 0
    discarded: dict[str, int] = Field(default_factory=dict)
    anomalies: int = 0
    reclaim_attempts: int = 0
    reclaim_outcomes: dict[str, int] = Field(default_factory=dict)
    restarts: int = 0
    last_error: Optional[str] = None


class RentalResponse(BaseModel):
    """One rental as shown to the marketplace."""

    chain_id: int
    rental_id: int
    nft_contract: str
    token_id: int
    owner: str
    renter: str
    price: str = Field(..., description="Price per period in wei (decimal string)")
    duration: int = Field(..., description="Rental duration in seconds")
    start_time: int
    status: str = Field(..., description="Available, Active or Reclaimed")
    label: str = Field(..., description="Display label (Available, Active or Completed)")
    expiry_time: Optional[int] = None
    time_remaining: Optional[int] = Field(
        None, description="Seconds left on the chain clock; null if the clock is unknown"
    )

    @classmethod
    def from_rental(cls, rental: Rental, time_remaining: Optional[int] = None) -> "RentalResponse":
        return cls(
            chain_id=rental.chain_id,
            rental_id=rental.rental_id,
            nft_contract=rental.nft_contract,
            token_id=rental.token_id,
            owner=rental.owner,
            renter=rental.renter,
            price=str(rental.price_per_period),
            duration=rental.duration,
            start_time=rental.start_time,
            status=rental.status.value,
            label=rental.status.label,
            expiry_time=rental.expiry_time,
            time_remaining=time_remaining,
        )


class ReclaimResponse(BaseModel):
    """Outcome of a manual reclaim request."""

    success: bool = Field(..., description="Rental is reclaimed (by us or someone else)")
    status: str
    tx_hash: Optional[str] = Field(None, description="Transaction hash (0x...)")
    gas_used: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: ReclaimResult) -> "ReclaimResponse":
        return cls(
            success=result.success,
            status=result.status.value,
            tx_hash=result.tx_hash,
            gas_used=result.gas_used,
            error=result.error,
        )
