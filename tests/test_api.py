"""
Tests for the reactor HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from leasechain_reactor.api import create_app
from leasechain_reactor.config import ReactorConfig
from leasechain_reactor.coordinator import ReactorCoordinator
from leasechain_reactor.observability import AlertSink
from leasechain_reactor.store import CheckpointStore

from conftest import OTHER, OWNER, FakeChainAdapter, active_rental, make_chain


@pytest.fixture
def coordinator(settings, tmp_path):
    """Coordinator with one chain, a fake adapter and two rentals in its cache."""
    config = ReactorConfig(settings=settings, chains=[make_chain(1)])
    store = CheckpointStore(f"sqlite:///{tmp_path}/api.db")
    coordinator = ReactorCoordinator(config, store=store, alerts=AlertSink())

    adapter = FakeChainAdapter(make_chain(1))
    adapter.head_timestamp = 5000
    coordinator.adapters[1] = adapter

    adapter.put(active_rental(1, start_time=1000, duration=3600))
    coordinator.cache.reconcile(active_rental(1, start_time=1000, duration=3600))
    coordinator.cache.reconcile(active_rental(2, start_time=3000, duration=7200, owner=OTHER))
    coordinator.scheduler.advance_clock(1, 4000)
    yield coordinator
    store.close()


@pytest.fixture
def client(coordinator, settings):
    """Create test client."""
    return TestClient(create_app(coordinator, settings))


class TestHealthCheck:
    """Tests for /health endpoint."""

    def test_health_check_returns_status(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["chains"] == {"1": "pending"}
        assert "version" in data

    def test_healthy_when_following(self, client, coordinator) -> None:
        coordinator.states[1].status = "following"
        assert client.get("/health").json()["status"] == "ok"


class TestRentals:
    """Rental views."""

    def test_list_rentals(self, client) -> None:
        response = client.get("/rentals/1")
        assert response.status_code == 200
        data = response.json()
        assert [r["rental_id"] for r in data] == [1, 2]
        assert data[0]["status"] == "Active"
        assert data[0]["time_remaining"] == 600
        assert data[0]["price"] == str(10**15)

    def test_filter_by_owner(self, client) -> None:
        response = client.get("/rentals/1", params={"owner": OWNER.lower()})
        assert [r["rental_id"] for r in response.json()] == [1]

    def test_get_rental(self, client) -> None:
        response = client.get("/rentals/1/2")
        assert response.status_code == 200
        data = response.json()
        assert data["expiry_time"] == 10_200
        assert data["time_remaining"] == 6200
        assert data["label"] == "Active"

    def test_unknown_rental(self, client) -> None:
        assert client.get("/rentals/1/99").status_code == 404

    def test_unknown_chain(self, client) -> None:
        assert client.get("/rentals/42").status_code == 404

    def test_chains(self, client) -> None:
        response = client.get("/chains")
        assert response.status_code == 200
        chain = response.json()[0]
        assert chain["chain_id"] == 1
        assert chain["active_rentals"] == 2
        assert chain["clock"] == 4000


class TestManualReclaim:
    """POST /rentals/{chain_id}/{rental_id}/reclaim."""

    def test_reclaim(self, client, coordinator) -> None:
        response = client.post("/rentals/1/1/reclaim")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "reclaimed"
        assert data["tx_hash"].startswith("0x")
        assert coordinator.get_rental(1, 1).status.value == "Reclaimed"

    def test_token_required(self, coordinator, settings) -> None:
        settings.api_token = "secret"
        client = TestClient(create_app(coordinator, settings))

        assert client.post("/rentals/1/1/reclaim").status_code == 401
        assert client.post("/rentals/1/1/reclaim", headers={"X-API-Key": "wrong"}).status_code == 401

        response = client.post("/rentals/1/1/reclaim", headers={"X-API-Key": "secret"})
        assert response.status_code == 200

    def test_reads_do_not_need_token(self, coordinator, settings) -> None:
        settings.api_token = "secret"
        client = TestClient(create_app(coordinator, settings))
        assert client.get("/rentals/1").status_code == 200
