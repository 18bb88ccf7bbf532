"""
CLI entry point for the LeaseChain Reactor.
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from . import __version__
from .cache import RentalCache
from .chain import ChainAdapter
from .config import ChainConfig, ReactorConfig
from .coordinator import ReactorCoordinator
from .errors import ReactorError
from .observability import configure_logging

app = typer.Typer(
    name="leasechain-reactor",
    help="LeaseChain automatic rental reclaim reactor",
    add_completion=False,
)

config_option = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)
chains_option = typer.Option(
    None,
    "--chains",
    help="Path to chains JSON file (overrides CHAINS_FILE)",
)


def _load(config_path: Optional[Path], chains_path: Optional[Path]) -> ReactorConfig:
    config = ReactorConfig.from_env(config_path, chains_path)
    configure_logging(json_logs=config.settings.log_json)
    if not config.chains:
        typer.echo(f"No chains configured (looked in {chains_path or config.settings.chains_file})")
        raise typer.Exit(1)
    return config


def _select(config: ReactorConfig, chain_id: int) -> ChainConfig:
    try:
        return config.chain(chain_id)
    except KeyError:
        typer.echo(f"Error: chain {chain_id} is not configured")
        raise typer.Exit(1)


async def _serve(coordinator: ReactorCoordinator, with_api: bool) -> None:
    if not with_api:
        await coordinator.run_forever()
        return

    from .api import create_app

    settings = coordinator.settings
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(coordinator, settings),
            host=settings.api_host,
            port=settings.api_port,
            log_level="info",
        )
    )
    await coordinator.start()
    try:
        await server.serve()
    finally:
        await coordinator.stop()


@app.command()
def run(
    config_path: Optional[Path] = config_option,
    chains_path: Optional[Path] = chains_option,
    api: bool = typer.Option(
        False,
        "--api",
        help="Also serve the HTTP API",
    ),
) -> None:
    """
    Follow every configured chain and reclaim rentals as they expire.
    """
    config = _load(config_path, chains_path)
    if not config.settings.reactor_private_key:
        typer.echo("Warning: REACTOR_PRIVATE_KEY not set - reclaims will fail.")

    for chain in config.chains:
        typer.echo(f"Watching chain {chain.label} ({chain.chain_id}) -> {chain.contract_address}")

    coordinator = ReactorCoordinator(config)
    typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
    try:
        asyncio.run(_serve(coordinator, api))
    except KeyboardInterrupt:
        typer.echo("\nStopping reactor...")


async def _check_chain(chain: ChainConfig, private_key: str) -> None:
    adapter = await ChainAdapter.connect(chain, private_key=private_key, retries=1)
    try:
        head_block, head_timestamp = await adapter.head()
        next_id = await adapter.next_rental_id()
        reactive = await adapter.reactive_contract()
        typer.echo(f"  Head block:       {head_block} (timestamp {head_timestamp})")
        typer.echo(f"  Rentals created:  {max(next_id - 1, 0)}")
        if await adapter.is_reactive_connected():
            typer.echo(f"  Reactive contract: {reactive}")
        else:
            typer.echo("  Reactive contract: not connected")
        if adapter.account:
            balance = await adapter.w3.eth.get_balance(adapter.address)
            typer.echo(f"  Reclaimer:        {adapter.address} ({balance} wei)")
    finally:
        await adapter.close()


@app.command()
def check(
    config_path: Optional[Path] = config_option,
    chains_path: Optional[Path] = chains_option,
) -> None:
    """
    Check connectivity, contract state and reactive connection for each chain.
    """
    config = _load(config_path, chains_path)
    failed = 0
    for chain in config.chains:
        typer.echo(f"Chain {chain.label} ({chain.chain_id}):")
        try:
            asyncio.run(_check_chain(chain, config.settings.reactor_private_key))
        except ReactorError as e:
            failed += 1
            typer.echo(f"  ✗ {e}")
    if failed:
        raise typer.Exit(1)


async def _read_rentals(chain: ChainConfig) -> tuple[RentalCache, int]:
    adapter = await ChainAdapter.connect(chain, retries=1)
    cache = RentalCache()
    try:
        next_id = await adapter.next_rental_id()
        for rental_id in range(1, next_id):
            cache.reconcile(await adapter.get_rental(rental_id))
        _, now = await adapter.head()
    finally:
        await adapter.close()
    return cache, now


@app.command()
def rentals(
    chain_id: int = typer.Argument(..., help="Origin chain id"),
    owner: Optional[str] = typer.Option(None, "--owner", help="Only rentals listed by this address"),
    renter: Optional[str] = typer.Option(None, "--renter", help="Only rentals held by this address"),
    config_path: Optional[Path] = config_option,
    chains_path: Optional[Path] = chains_option,
) -> None:
    """
    List rentals read directly from a chain's contract.
    """
    config = _load(config_path, chains_path)
    chain = _select(config, chain_id)
    try:
        cache, now = asyncio.run(_read_rentals(chain))
    except ReactorError as e:
        typer.echo(f"Error: {e}")
        raise typer.Exit(1)

    listed = cache.list_rentals(chain_id, owner=owner, renter=renter)
    if not listed:
        typer.echo("No rentals found.")
        return

    for rental in listed:
        line = f"#{rental.rental_id} {rental.status.label:<9} token {rental.token_id} owner {rental.owner}"
        if rental.expiry_time is not None:
            line += f" renter {rental.renter} remaining {rental.time_remaining(now)}s"
        typer.echo(line)
    typer.echo(f"Total: {len(listed)} rentals")


async def _reclaim(config: ReactorConfig, chain: ChainConfig, rental_id: int):
    coordinator = ReactorCoordinator(config)
    try:
        await coordinator.connect_chain(chain)
        return await coordinator.trigger_manual_reclaim(chain.chain_id, rental_id)
    finally:
        await coordinator.stop()


@app.command()
def reclaim(
    chain_id: int = typer.Argument(..., help="Origin chain id"),
    rental_id: int = typer.Argument(..., help="Rental id"),
    config_path: Optional[Path] = config_option,
    chains_path: Optional[Path] = chains_option,
) -> None:
    """
    Reclaim one expired rental now.
    """
    config = _load(config_path, chains_path)
    chain = _select(config, chain_id)
    if not config.settings.reactor_private_key:
        typer.echo("Error: REACTOR_PRIVATE_KEY not set")
        raise typer.Exit(1)

    try:
        result = asyncio.run(_reclaim(config, chain, rental_id))
    except ReactorError as e:
        typer.echo(f"Error: {e}")
        raise typer.Exit(1)

    if result.success:
        typer.echo(f"✓ {result.status.value}: {result.tx_hash or '-'}")
    else:
        typer.echo(f"✗ {result.status.value}: {result.error or '-'}")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version."""
    typer.echo(f"leasechain-reactor v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
