"""
Configuration management for the LeaseChain reactor.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Reclaimer account
    reactor_private_key: str = ""

    # Origin chains (JSON list of ChainConfig)
    chains_file: str = "chains.json"

    # Database
    database_url: str = "sqlite:///./reactor.db"

    # Transactions
    gas_limit: int = 300_000
    receipt_timeout_blocks: int = 10
    max_submit_attempts: int = 3
    max_reclaim_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Chain loops
    connect_retries: int = 5
    dedupe_window: int = 10_000
    snapshot_on_start: bool = True

    # Observability
    anomaly_alert_threshold: int = 5
    alert_webhook_url: Optional[str] = None
    log_json: bool = False

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    api_token: Optional[str] = None
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="CORS origins for the marketplace frontend",
    )

    def receipt_timeout(self, chain: "ChainConfig") -> float:
        """Seconds to wait for a receipt: a small multiple of the chain's block time."""
        return self.receipt_timeout_blocks * chain.expected_block_time


class ChainConfig(BaseModel):
    """One origin chain running a LeaseChain contract."""

    chain_id: int
    name: str = ""
    rpc_url: str
    contract_address: str
    block_confirmations: int = Field(default=2, ge=0)
    poll_interval_seconds: float = Field(default=6.0, gt=0)
    expected_block_time: float = Field(default=2.0, gt=0)
    start_block: Optional[int] = None
    max_block_range: int = Field(default=2_000, gt=0)

    @property
    def label(self) -> str:
        return self.name or str(self.chain_id)


def load_chains(path: Path) -> list[ChainConfig]:
    """
    Load chain definitions from a JSON file.

    Accepts either a list of chain objects or a mapping keyed by chain id
    (the layout used by the reactive deployment scripts).
    """
    with open(path) as f:
        raw = json.load(f)

    if isinstance(raw, dict):
        entries = [{"chain_id": int(chain_id), **entry} for chain_id, entry in raw.items()]
    else:
        entries = raw

    chains = [ChainConfig.model_validate(entry) for entry in entries]
    seen: set[int] = set()
    for chain in chains:
        if chain.chain_id in seen:
            raise ValueError(f"Duplicate chain id {chain.chain_id} in {path}")
        seen.add(chain.chain_id)
    return chains


@dataclass
class ReactorConfig:
    """Full reactor configuration."""

    settings: Settings
    chains: list[ChainConfig] = field(default_factory=list)

    @classmethod
    def from_env(
        cls,
        env_path: Optional[Path] = None,
        chains_path: Optional[Path] = None,
    ) -> "ReactorConfig":
        """Load configuration from environment and the chains file."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        path = chains_path or Path(settings.chains_file)
        chains = load_chains(path) if path.exists() else []
        return cls(settings=settings, chains=chains)

    def chain(self, chain_id: int) -> ChainConfig:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        raise KeyError(f"Chain {chain_id} is not configured")
