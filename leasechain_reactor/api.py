"""
LeaseChain Reactor API - read-only rental views and manual reclaim for the marketplace UI.

Provides REST endpoints for:
- Health checks (GET /health)
- Per-chain loop status (GET /chains)
- Rental listings with owner/renter filters (GET /rentals/{chain_id})
- Single rental with time remaining (GET /rentals/{chain_id}/{rental_id})
- Manual reclaim (POST /rentals/{chain_id}/{rental_id}/reclaim)

The API is a thin proxy over a running ReactorCoordinator; it holds no state
of its own.

WARNING: If running with API_HOST=0.0.0.0, you MUST set API_TOKEN.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader

from . import __version__
from .config import Settings
from .coordinator import ReactorCoordinator
from .schemas import ChainStatusResponse, HealthResponse, ReclaimResponse, RentalResponse

logger = structlog.get_logger()

# API key via header only (no query param, keeps tokens out of access logs)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_coordinator(request: Request) -> ReactorCoordinator:
    return request.app.state.coordinator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def verify_api_token(
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify the API token if one is configured.

    Without API_TOKEN every request passes (local development). Once it is
    set, every guarded request must carry it in X-API-Key.

    Raises:
        HTTPException: 401 if authentication fails
    """
    if not settings.api_token:
        return True

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API token required. Provide via X-API-Key header.",
            headers={"WWW-Authenticate": "X-API-Key"},
        )

    if api_key != settings.api_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "X-API-Key"},
        )

    return True


def _require_chain(coordinator: ReactorCoordinator, chain_id: int) -> None:
    try:
        coordinator.config.chain(chain_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Chain {chain_id} is not configured")


def create_app(coordinator: ReactorCoordinator, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API around a coordinator (started separately)."""
    settings = settings or coordinator.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "api_started",
            version=__version__,
            host=settings.api_host,
            port=settings.api_port,
            auth=bool(settings.api_token),
        )
        yield
        logger.info("api_stopped")

    app = FastAPI(
        title="LeaseChain Reactor API",
        description="Rental state and manual reclaim for the LeaseChain marketplace",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(
        coordinator: ReactorCoordinator = Depends(get_coordinator),
    ) -> HealthResponse:
        """Service status: ok when every chain loop is following its chain."""
        chains = {
            str(chain_id): state.status for chain_id, state in coordinator.states.items()
        }
        healthy = all(value == "following" for value in chains.values())
        return HealthResponse(
            status="ok" if healthy else "degraded",
            version=__version__,
            chains=chains,
        )

    @app.get("/chains", response_model=list[ChainStatusResponse])
    async def list_chains(
        coordinator: ReactorCoordinator = Depends(get_coordinator),
    ) -> list[ChainStatusResponse]:
        return [ChainStatusResponse(**chain) for chain in coordinator.status()["chains"]]

    @app.get("/rentals/{chain_id}", response_model=list[RentalResponse])
    async def list_rentals(
        chain_id: int,
        owner: Optional[str] = None,
        renter: Optional[str] = None,
        coordinator: ReactorCoordinator = Depends(get_coordinator),
    ) -> list[RentalResponse]:
        """Rentals on one chain, optionally filtered by owner or renter address."""
        _require_chain(coordinator, chain_id)
        rentals = coordinator.list_rentals(chain_id, owner=owner, renter=renter)
        return [
            RentalResponse.from_rental(rental, await coordinator.get_time_remaining(rental))
            for rental in rentals
        ]

    @app.get("/rentals/{chain_id}/{rental_id}", response_model=RentalResponse)
    async def get_rental(
        chain_id: int,
        rental_id: int,
        coordinator: ReactorCoordinator = Depends(get_coordinator),
    ) -> RentalResponse:
        _require_chain(coordinator, chain_id)
        rental = coordinator.get_rental(chain_id, rental_id)
        if rental is None:
            raise HTTPException(status_code=404, detail=f"Rental {rental_id} not found")
        return RentalResponse.from_rental(rental, await coordinator.get_time_remaining(rental))

    @app.post(
        "/rentals/{chain_id}/{rental_id}/reclaim",
        response_model=ReclaimResponse,
        dependencies=[Depends(verify_api_token)],
    )
    async def reclaim_rental(
        chain_id: int,
        rental_id: int,
        coordinator: ReactorCoordinator = Depends(get_coordinator),
    ) -> ReclaimResponse:
        """
        Trigger a reclaim now.

        Goes through the same per-rental exclusion as scheduled reclaims, so a
        request for a rental already being reclaimed returns already_pending.
        """
        _require_chain(coordinator, chain_id)
        result = await coordinator.trigger_manual_reclaim(chain_id, rental_id)
        logger.info(
            "manual_reclaim_result",
            chain_id=chain_id,
            rental_id=rental_id,
            status=result.status.value,
            tx_hash=result.tx_hash,
        )
        return ReclaimResponse.from_result(result)

    return app
