"""
Error taxonomy for the reactor.

Each error is contained to a single chain loop or a single reclaim attempt.
"""

from typing import Optional


class ReactorError(Exception):
    """Base class for reactor errors."""


class ChainUnreachable(ReactorError):
    """RPC endpoint could not be reached (transient, retried with backoff)."""

    def __init__(self, chain_id: int, message: str):
        self.chain_id = chain_id
        self.message = message
        super().__init__(f"Chain {chain_id} unreachable: {message}")


class ChainMismatch(ReactorError):
    """Endpoint reports a chain id different from the configured one (fatal for that chain)."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Endpoint reports chain {actual}, expected {expected}")


class UnknownEventShape(ReactorError):
    """Log could not be parsed as a rental lifecycle event."""


class StateAnomaly(ReactorError):
    """Event would violate the forward-only rental state machine."""

    def __init__(self, chain_id: int, rental_id: int, reason: str):
        self.chain_id = chain_id
        self.rental_id = rental_id
        self.reason = reason
        super().__init__(f"Rental {chain_id}:{rental_id} anomaly: {reason}")


class ReclaimRace(ReactorError):
    """Another actor reclaimed the rental first. Benign."""


class NonceConflict(ReactorError):
    """Nonce too low, replacement underpriced or already known (transient)."""


class InsufficientReclaimerFunds(ReactorError):
    """Reclaimer account cannot pay for the reclaim transaction."""


class TransactionReverted(ReactorError):
    """Reclaim call reverted on-chain."""

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted: {reason}")


class RentalNotExpired(TransactionReverted):
    """Contract refused the reclaim because the rental has not expired yet."""


class ReceiptTimeout(ReactorError):
    """No receipt within the configured timeout."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"No receipt for {tx_hash} after {timeout:.0f}s")
