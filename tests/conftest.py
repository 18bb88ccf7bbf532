"""
Shared fixtures: a scripted in-memory chain adapter and raw log builders.
"""

import asyncio
from dataclasses import replace
from typing import Optional

import pytest
from eth_abi import encode
from web3 import Web3

from leasechain_reactor.chain import EVENT_TOPICS
from leasechain_reactor.config import ChainConfig, Settings
from leasechain_reactor.errors import ChainUnreachable
from leasechain_reactor.models import (
    ZERO_ADDRESS,
    ContractCall,
    LogBatch,
    RawLog,
    Receipt,
    Rental,
    RentalStatus,
)

CONTRACT = Web3.to_checksum_address("0x" + "1" * 40)
NFT = Web3.to_checksum_address("0x" + "2" * 40)
OWNER = Web3.to_checksum_address("0x" + "a" * 40)
RENTER = Web3.to_checksum_address("0x" + "b" * 40)
OTHER = Web3.to_checksum_address("0x" + "c" * 40)


def _tx_hash(block: int, log_index: int, salt: int = 0) -> str:
    return "0x" + f"{salt:016x}{block:024x}{log_index:024x}"


def _raw(topics, data: bytes, block: int, log_index: int, tx_hash: Optional[str], address: str, removed: bool = False) -> RawLog:
    return RawLog(
        address=address,
        topics=tuple(topics),
        data=data,
        block_number=block,
        tx_hash=tx_hash or _tx_hash(block, log_index),
        log_index=log_index,
        removed=removed,
    )


def int_topic(value: int) -> bytes:
    return encode(["uint256"], [value])


def address_topic(address: str) -> bytes:
    return encode(["address"], [address])


def created_log(
    rental_id: int,
    owner: str = OWNER,
    nft: str = NFT,
    token_id: int = 7,
    duration: int = 3600,
    price: int = 10**15,
    renter: str = ZERO_ADDRESS,
    block: int = 1,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    address: str = CONTRACT,
    removed: bool = False,
) -> RawLog:
    topics = (
        EVENT_TOPICS["RentalCreated"],
        int_topic(rental_id),
        address_topic(nft),
        int_topic(token_id),
    )
    data = encode(["address", "address", "uint256", "uint256"], [owner, renter, duration, price])
    return _raw(topics, data, block, log_index, tx_hash, address, removed)


def started_log(
    rental_id: int,
    renter: str = RENTER,
    start_time: int = 1000,
    block: int = 2,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    address: str = CONTRACT,
) -> RawLog:
    topics = (EVENT_TOPICS["RentalStarted"], int_topic(rental_id), address_topic(renter))
    data = encode(["uint256"], [start_time])
    return _raw(topics, data, block, log_index, tx_hash, address)


def reclaimed_log(
    rental_id: int,
    nft: str = NFT,
    token_id: int = 7,
    was_automatic: bool = False,
    block: int = 3,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    address: str = CONTRACT,
) -> RawLog:
    topics = (
        EVENT_TOPICS["RentalReclaimed"],
        int_topic(rental_id),
        address_topic(nft),
        int_topic(token_id),
    )
    data = encode(["bool"], [was_automatic])
    return _raw(topics, data, block, log_index, tx_hash, address)


def active_rental(
    rental_id: int,
    chain_id: int = 1,
    start_time: int = 1000,
    duration: int = 3600,
    owner: str = OWNER,
    renter: str = RENTER,
) -> Rental:
    return Rental(
        chain_id=chain_id,
        rental_id=rental_id,
        nft_contract=NFT,
        token_id=7,
        owner=owner,
        renter=renter,
        price_per_period=10**15,
        duration=duration,
        start_time=start_time,
        status=RentalStatus.ACTIVE,
    )


class FakeChainAdapter:
    """
    Scripted stand-in for ChainAdapter.

    Holds the contract's rentals in memory. A successful reclaim receipt
    flips the rental to Reclaimed and carries a RentalReclaimed log.
    """

    def __init__(self, config: ChainConfig):
        self.config = config
        self.chain_id = config.chain_id
        self.rentals: dict[int, Rental] = {}
        self.head_block = 100
        self.head_timestamp = 0
        self.reactive = OTHER
        self.batches: list[LogBatch] = []
        self.submitted: list[ContractCall] = []
        self.submit_errors: list[Exception] = []
        self.receipt_errors: list[Exception] = []
        self.receipt_waits: list[str] = []
        self.receipt_status = 1
        self.receipt_delay = 0.0
        self.tx_states: dict[str, str] = {}
        self.fail_reads = False
        self.closed = False
        self._calls: dict[str, ContractCall] = {}

    def put(self, rental: Rental) -> Rental:
        stored = replace(rental, chain_id=self.chain_id)
        self.rentals[rental.rental_id] = stored
        return stored

    async def head(self) -> tuple[int, int]:
        if self.fail_reads:
            raise ChainUnreachable(self.chain_id, "head")
        return self.head_block, self.head_timestamp

    async def get_rental(self, rental_id: int) -> Rental:
        if self.fail_reads:
            raise ChainUnreachable(self.chain_id, "getRental")
        rental = self.rentals.get(rental_id)
        if rental is None:
            return Rental(chain_id=self.chain_id, rental_id=rental_id)
        return replace(rental)

    async def next_rental_id(self) -> int:
        return max(self.rentals, default=0) + 1

    async def reactive_contract(self) -> str:
        return self.reactive

    async def is_reactive_connected(self) -> bool:
        return self.reactive != ZERO_ADDRESS

    async def subscribe_logs(self, from_block: int):
        for batch in self.batches:
            yield batch
        await asyncio.Event().wait()

    async def submit_transaction(self, call: ContractCall) -> str:
        self.submitted.append(call)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        tx_hash = "0x" + f"{len(self.submitted):064x}"
        self._calls[tx_hash] = call
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        self.receipt_waits.append(tx_hash)
        await asyncio.sleep(self.receipt_delay)
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)

        logs = []
        if self.receipt_status == 1:
            rental_id = self._calls[tx_hash].args[0]
            rental = self.rentals[rental_id]
            rental.status = RentalStatus.RECLAIMED
            logs.append(
                reclaimed_log(
                    rental_id,
                    nft=rental.nft_contract,
                    token_id=rental.token_id,
                    block=self.head_block,
                    tx_hash=tx_hash,
                    address=self.config.contract_address,
                )
            )
        return Receipt(
            tx_hash=tx_hash,
            status=self.receipt_status,
            block_number=self.head_block,
            gas_used=52_000,
            logs=logs,
        )

    async def transaction_state(self, tx_hash: str) -> str:
        return self.tx_states.get(tx_hash, "pending")

    async def close(self) -> None:
        self.closed = True


def tx_hash_for(n: int) -> str:
    """Hash the fake adapter assigns to its n-th submission."""
    return "0x" + f"{n:064x}"


def make_chain(chain_id: int = 1, **overrides) -> ChainConfig:
    values = {
        "chain_id": chain_id,
        "name": f"chain-{chain_id}",
        "rpc_url": "http://localhost:8545",
        "contract_address": CONTRACT,
        "block_confirmations": 2,
        "poll_interval_seconds": 0.01,
        "expected_block_time": 2.0,
    }
    values.update(overrides)
    return ChainConfig(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with instant backoff and a throwaway database."""
    return Settings(
        _env_file=None,
        reactor_private_key="",
        database_url=f"sqlite:///{tmp_path}/reactor.db",
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        max_submit_attempts=3,
        max_reclaim_attempts=3,
        anomaly_alert_threshold=5,
    )


@pytest.fixture
def chain_config() -> ChainConfig:
    return make_chain(1)


@pytest.fixture
def fake_adapter(chain_config) -> FakeChainAdapter:
    return FakeChainAdapter(chain_config)
