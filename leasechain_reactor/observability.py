"""
Observability sink: structlog setup, per-chain counters and operator alerts.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from .models import LogBatch, Rental

logger = structlog.get_logger()


def configure_logging(json_logs: bool = False, level: int = logging.INFO) -> None:
    """Configure structlog for console (default) or JSON output."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


@dataclass
class ChainMetrics:
    """Counters and gauges for one origin chain."""

    chain_id: int
    events_ingested: int = 0
    discarded: Counter = field(default_factory=Counter)
    anomalies: int = 0
    reclaim_attempts: int = 0
    reclaim_outcomes: Counter = field(default_factory=Counter)
    head_block: Optional[int] = None
    head_timestamp: Optional[int] = None
    last_processed_block: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def lag(self) -> Optional[int]:
        """Blocks between the chain head and the last processed block."""
        if self.head_block is None or self.last_processed_block is None:
            return None
        return max(0, self.head_block - self.last_processed_block)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "events_ingested": self.events_ingested,
            "discarded": dict(self.discarded),
            "anomalies": self.anomalies,
            "reclaim_attempts": self.reclaim_attempts,
            "reclaim_outcomes": dict(self.reclaim_outcomes),
            "head_block": self.head_block,
            "last_processed_block": self.last_processed_block,
            "lag": self.lag,
            "last_error": self.last_error,
        }


class ReactorMetrics:
    """In-process metrics registry, one ChainMetrics per chain."""

    def __init__(self) -> None:
        self._chains: dict[int, ChainMetrics] = {}

    def chain(self, chain_id: int) -> ChainMetrics:
        if chain_id not in self._chains:
            self._chains[chain_id] = ChainMetrics(chain_id=chain_id)
        return self._chains[chain_id]

    def chains(self) -> list[ChainMetrics]:
        return [self._chains[chain_id] for chain_id in sorted(self._chains)]

    def record_ingested(self, chain_id: int) -> None:
        self.chain(chain_id).events_ingested += 1

    def record_discard(self, chain_id: int, reason: str) -> None:
        self.chain(chain_id).discarded[reason] += 1

    def record_reclaim(self, chain_id: int, status: str) -> None:
        metrics = self.chain(chain_id)
        metrics.reclaim_attempts += 1
        metrics.reclaim_outcomes[status] += 1

    def record_error(self, chain_id: int, error: str) -> None:
        self.chain(chain_id).last_error = error

    def observe_batch(self, batch: LogBatch, last_processed_block: Optional[int]) -> None:
        metrics = self.chain(batch.chain_id)
        metrics.head_block = batch.head_block
        metrics.head_timestamp = batch.head_timestamp
        metrics.last_processed_block = last_processed_block

    def on_transition(self, kind: str, rental: Rental) -> None:
        """Cache listener: counts anomalies per chain."""
        if kind == "anomaly":
            self.chain(rental.chain_id).anomalies += 1


class AlertSink:
    """
    Operator-facing alerts.

    Always logged at error level; also POSTed as JSON when a webhook URL is
    configured.
    """

    def __init__(self, webhook_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self._client = client
        self.history: list[dict[str, Any]] = []

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def alert(self, kind: str, message: str, **context: Any) -> None:
        payload = {
            "kind": kind,
            "message": message,
            "at": datetime.now(timezone.utc).isoformat(),
            **context,
        }
        self.history.append(payload)
        logger.error("operator_alert", kind=kind, message=message, **context)

        if not self.webhook_url:
            return

        try:
            response = await self._get_client().post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("alert_webhook_failed", kind=kind, error=str(e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
