"""
Tests for the chain adapter's error mapping and log conversion.

The web3 client is replaced by a small fake exposing only what each test uses.
"""

from unittest.mock import MagicMock

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from leasechain_reactor.chain import (
    ChainAdapter,
    classify_revert,
    classify_send_error,
    status_from_flags,
    to_raw_log,
)
from leasechain_reactor.errors import (
    ChainMismatch,
    ChainUnreachable,
    InsufficientReclaimerFunds,
    NonceConflict,
    ReceiptTimeout,
    RentalNotExpired,
    TransactionReverted,
)
from leasechain_reactor.models import RentalStatus

from conftest import CONTRACT, make_chain


class _FakeEth:
    def __init__(self, chain_id: int = 1, error: Exception = None):
        self._chain_id = chain_id
        self._error = error
        self.chain_id_calls = 0
        self.receipts: dict = {}
        self.transactions: dict = {}
        self.wait_error: Exception = None

    def contract(self, address, abi):
        return MagicMock()

    @property
    def chain_id(self):
        return self._read_chain_id()

    async def _read_chain_id(self) -> int:
        self.chain_id_calls += 1
        if self._error:
            raise self._error
        return self._chain_id

    async def get_transaction_receipt(self, tx_hash):
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash} not found.")
        return self.receipts[tx_hash]

    async def get_transaction(self, tx_hash):
        if tx_hash not in self.transactions:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash} not found.")
        return self.transactions[tx_hash]

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        if self.wait_error:
            raise self.wait_error
        return self.receipts[tx_hash]


class _FakeWeb3:
    def __init__(self, eth: _FakeEth):
        self.eth = eth


def make_adapter(eth: _FakeEth) -> ChainAdapter:
    return ChainAdapter(make_chain(1), w3=_FakeWeb3(eth))


class TestErrorClassification:
    """Node errors to reactor errors."""

    def test_revert_reasons(self) -> None:
        assert isinstance(classify_revert("execution reverted: Rental not expired"), RentalNotExpired)
        error = classify_revert("execution reverted: Rental not active", "0x01")
        assert type(error) is TransactionReverted
        assert error.tx_hash == "0x01"

    def test_send_errors(self) -> None:
        cases = [
            ("insufficient funds for gas * price + value", InsufficientReclaimerFunds),
            ("nonce too low: next nonce 5, tx nonce 4", NonceConflict),
            ("replacement transaction underpriced", NonceConflict),
            ("already known", NonceConflict),
            ("execution reverted: Rental not expired", RentalNotExpired),
            ("execution reverted", TransactionReverted),
            ("Cannot connect to host localhost:8545", ChainUnreachable),
        ]
        for message, expected in cases:
            error = classify_send_error(1, ValueError({"code": -32000, "message": message}))
            assert isinstance(error, expected), message


class TestConversions:
    """Contract flags and log entries."""

    def test_status_from_flags(self) -> None:
        assert status_from_flags(False, False) is RentalStatus.AVAILABLE
        assert status_from_flags(True, False) is RentalStatus.ACTIVE
        assert status_from_flags(False, True) is RentalStatus.RECLAIMED
        assert status_from_flags(True, True) is RentalStatus.RECLAIMED

    def test_to_raw_log(self) -> None:
        entry = {
            "address": CONTRACT.lower(),
            "topics": [b"\x01" * 32, b"\x02" * 32],
            "data": b"\x00" * 32,
            "blockNumber": 17,
            "transactionHash": b"\xab" * 32,
            "logIndex": 3,
        }
        raw = to_raw_log(entry)

        assert raw.address == CONTRACT
        assert raw.topics == (b"\x01" * 32, b"\x02" * 32)
        assert raw.block_number == 17
        assert raw.tx_hash == "0x" + "ab" * 32
        assert raw.log_index == 3
        assert raw.removed is False


class TestVerifyChain:
    """Chain id verification on connect."""

    @pytest.mark.asyncio
    async def test_matching_chain(self) -> None:
        eth = _FakeEth(chain_id=1)
        await make_adapter(eth).verify_chain(retries=1)
        assert eth.chain_id_calls == 1

    @pytest.mark.asyncio
    async def test_mismatch(self) -> None:
        eth = _FakeEth(chain_id=5)
        with pytest.raises(ChainMismatch) as exc_info:
            await make_adapter(eth).verify_chain(retries=3)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 5
        assert eth.chain_id_calls == 1

    @pytest.mark.asyncio
    async def test_unreachable_after_retries(self) -> None:
        eth = _FakeEth(error=OSError("connection refused"))
        with pytest.raises(ChainUnreachable):
            await make_adapter(eth).verify_chain(retries=3, backoff_base=0.0, backoff_max=0.0)

        assert eth.chain_id_calls == 3


class TestTransactions:
    """Receipt waits and out-of-band transaction state."""

    @pytest.mark.asyncio
    async def test_receipt_timeout(self) -> None:
        eth = _FakeEth()
        eth.wait_error = TimeExhausted("not in chain after 20 seconds")

        with pytest.raises(ReceiptTimeout) as exc_info:
            await make_adapter(eth).wait_for_receipt("0xaa", timeout=20.0)
        assert exc_info.value.tx_hash == "0xaa"

    @pytest.mark.asyncio
    async def test_receipt(self) -> None:
        eth = _FakeEth()
        eth.receipts["0xaa"] = {"status": 1, "blockNumber": 9, "gasUsed": 51_000, "logs": []}

        receipt = await make_adapter(eth).wait_for_receipt("0xaa", timeout=20.0)
        assert receipt.succeeded
        assert receipt.gas_used == 51_000

    @pytest.mark.asyncio
    async def test_transaction_state(self) -> None:
        eth = _FakeEth()
        eth.receipts["0x01"] = {"status": 1}
        eth.transactions["0x02"] = {"hash": "0x02"}
        adapter = make_adapter(eth)

        assert await adapter.transaction_state("0x01") == "mined"
        assert await adapter.transaction_state("0x02") == "pending"
        assert await adapter.transaction_state("0x03") == "unknown"
