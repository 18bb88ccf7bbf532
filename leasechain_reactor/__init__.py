"""
LeaseChain Reactor

Mirrors LeaseChain rental contracts across several origin chains and
reclaims each rental once its duration has elapsed on that chain's clock.

Usage:
    # Check connectivity and the reactive connection of every chain
    leasechain-reactor check

    # Run the reactor (optionally with the HTTP API)
    leasechain-reactor run --api

    # Reclaim one rental by hand
    leasechain-reactor reclaim 11155111 42
"""

__version__ = "0.1.0"

from .config import ChainConfig, ReactorConfig, Settings
from .cache import RentalCache
from .scheduler import ExpiryScheduler
from .chain import ChainAdapter
from .ingestion import EventDecoder, IngestionPipeline
from .dispatcher import CallbackDispatcher
from .coordinator import ReactorCoordinator
from .store import CheckpointStore

__all__ = [
    "__version__",
    "ChainConfig",
    "ReactorConfig",
    "Settings",
    "RentalCache",
    "ExpiryScheduler",
    "ChainAdapter",
    "EventDecoder",
    "IngestionPipeline",
    "CallbackDispatcher",
    "ReactorCoordinator",
    "CheckpointStore",
]
