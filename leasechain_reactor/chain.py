"""
Per-origin-chain adapter around an async web3 client.

Reads rental state from the LeaseChain contract, polls its logs and submits
reclaim transactions signed by the reactor account.
"""

import asyncio
from typing import Any, AsyncIterator, Optional

import aiohttp
import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from .config import ChainConfig
from .errors import (
    ChainMismatch,
    ChainUnreachable,
    InsufficientReclaimerFunds,
    NonceConflict,
    ReactorError,
    ReceiptTimeout,
    RentalNotExpired,
    TransactionReverted,
)
from .models import ContractCall, LogBatch, RawLog, Receipt, Rental, RentalStatus, ZERO_ADDRESS

logger = structlog.get_logger()


# LeaseChain ABI (minimal for the reactor)
LEASECHAIN_ABI = [
    {
        "inputs": [{"name": "rentalId", "type": "uint256"}],
        "name": "getRental",
        "outputs": [
            {
                "components": [
                    {"name": "nftContract", "type": "address"},
                    {"name": "tokenId", "type": "uint256"},
                    {"name": "owner", "type": "address"},
                    {"name": "renter", "type": "address"},
                    {"name": "price", "type": "uint256"},
                    {"name": "duration", "type": "uint256"},
                    {"name": "startTime", "type": "uint256"},
                    {"name": "isActive", "type": "bool"},
                    {"name": "isReclaimed", "type": "bool"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "nextRentalId",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "reactiveContract",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "rentalId", "type": "uint256"}],
        "name": "manualReclaim",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# Event signatures emitted by LeaseChain
EVENT_SIGNATURES = {
    "RentalCreated": "RentalCreated(uint256,address,uint256,address,address,uint256,uint256)",
    "RentalStarted": "RentalStarted(uint256,address,uint256)",
    "RentalReclaimed": "RentalReclaimed(uint256,address,uint256,bool)",
}

EVENT_TOPICS: dict[str, bytes] = {
    name: bytes(Web3.keccak(text=signature)) for name, signature in EVENT_SIGNATURES.items()
}

# Errors that mean "could not talk to the node"
TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, aiohttp.ClientError, Web3Exception)

_NONCE_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
)


def classify_revert(message: str, tx_hash: Optional[str] = None) -> TransactionReverted:
    """Map a revert reason to the matching error type."""
    if "not expired" in message.lower():
        return RentalNotExpired(message, tx_hash)
    return TransactionReverted(message, tx_hash)


def classify_send_error(chain_id: int, error: Exception) -> ReactorError:
    """Map a node-side submission error to the matching error type."""
    message = str(error)
    lowered = message.lower()
    if "insufficient funds" in lowered:
        return InsufficientReclaimerFunds(message)
    if any(marker in lowered for marker in _NONCE_MARKERS):
        return NonceConflict(message)
    if "revert" in lowered:
        return classify_revert(message)
    return ChainUnreachable(chain_id, message)


def status_from_flags(is_active: bool, is_reclaimed: bool) -> RentalStatus:
    if is_reclaimed:
        return RentalStatus.RECLAIMED
    if is_active:
        return RentalStatus.ACTIVE
    return RentalStatus.AVAILABLE


def to_raw_log(entry: Any) -> RawLog:
    """Convert a web3 log receipt into a RawLog."""
    return RawLog(
        address=Web3.to_checksum_address(entry["address"]),
        topics=tuple(bytes(topic) for topic in entry["topics"]),
        data=bytes(entry["data"]),
        block_number=int(entry["blockNumber"]),
        tx_hash=Web3.to_hex(entry["transactionHash"]),
        log_index=int(entry["logIndex"]),
        removed=bool(entry.get("removed", False)),
    )


class ChainAdapter:
    """
    Async client for one origin chain.

    Use `ChainAdapter.connect()` to obtain an instance whose endpoint has been
    verified to serve the configured chain id.
    """

    def __init__(
        self,
        config: ChainConfig,
        private_key: str = "",
        gas_limit: int = 300_000,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.config = config
        self.chain_id = config.chain_id
        self.gas_limit = gas_limit
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.account = Account.from_key(private_key) if private_key else None
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.contract_address),
            abi=LEASECHAIN_ABI,
        )

    @classmethod
    async def connect(
        cls,
        config: ChainConfig,
        private_key: str = "",
        gas_limit: int = 300_000,
        retries: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        w3: Optional[AsyncWeb3] = None,
    ) -> "ChainAdapter":
        """Create an adapter and verify the endpoint's chain id."""
        adapter = cls(config, private_key=private_key, gas_limit=gas_limit, w3=w3)
        await adapter.verify_chain(retries, backoff_base, backoff_max)
        return adapter

    @property
    def address(self) -> str:
        """Reclaimer account address."""
        if not self.account:
            raise ValueError("No private key configured")
        return self.account.address

    async def verify_chain(
        self, retries: int = 5, backoff_base: float = 1.0, backoff_max: float = 30.0
    ) -> None:
        """
        Check that the endpoint serves the configured chain.

        Raises:
            ChainMismatch: endpoint reports another chain id
            ChainUnreachable: no answer after `retries` attempts
        """
        last_error: Optional[Exception] = None
        for attempt in range(max(retries, 1)):
            try:
                actual = await self.w3.eth.chain_id
            except TRANSPORT_ERRORS as e:
                last_error = e
                delay = min(backoff_base * (2 ** attempt), backoff_max)
                logger.warning(
                    "chain_connect_retry",
                    chain_id=self.chain_id,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                if attempt + 1 < retries:
                    await asyncio.sleep(delay)
                continue

            if actual != self.chain_id:
                raise ChainMismatch(expected=self.chain_id, actual=actual)

            logger.info(
                "chain_connected",
                chain_id=self.chain_id,
                chain=self.config.label,
                contract=self.config.contract_address,
                sender=self.account.address if self.account else None,
            )
            return

        raise ChainUnreachable(self.chain_id, str(last_error))

    async def close(self) -> None:
        await self.w3.provider.disconnect()

    async def _read(self, what: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except ContractLogicError as e:
            raise classify_revert(str(e)) from e
        except TRANSPORT_ERRORS as e:
            raise ChainUnreachable(self.chain_id, f"{what}: {e}") from e

    # Reads

    async def head(self) -> tuple[int, int]:
        """Latest block number and its timestamp (the chain clock)."""
        block = await self._read("get_block", self.w3.eth.get_block("latest"))
        return int(block["number"]), int(block["timestamp"])

    async def get_rental(self, rental_id: int) -> Rental:
        """Read a rental straight from the contract."""
        result = await self._read(
            "getRental", self.contract.functions.getRental(rental_id).call()
        )
        nft_contract, token_id, owner, renter, price, duration, start_time, is_active, is_reclaimed = result
        return Rental(
            chain_id=self.chain_id,
            rental_id=rental_id,
            nft_contract=nft_contract,
            token_id=token_id,
            owner=owner,
            renter=renter,
            price_per_period=price,
            duration=duration,
            start_time=start_time,
            status=status_from_flags(is_active, is_reclaimed),
        )

    async def next_rental_id(self) -> int:
        return await self._read("nextRentalId", self.contract.functions.nextRentalId().call())

    async def reactive_contract(self) -> str:
        """Address of the reactive contract registered on the origin contract."""
        return await self._read(
            "reactiveContract", self.contract.functions.reactiveContract().call()
        )

    async def is_reactive_connected(self) -> bool:
        address = await self.reactive_contract()
        return address.lower() != ZERO_ADDRESS

    async def get_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        """Fetch LeaseChain lifecycle logs in block order."""
        entries = await self._read(
            "get_logs",
            self.w3.eth.get_logs(
                {
                    "address": self.contract.address,
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [list(EVENT_TOPICS.values())],
                }
            ),
        )
        logs = [to_raw_log(entry) for entry in entries]
        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return logs

    async def subscribe_logs(self, from_block: int) -> AsyncIterator[LogBatch]:
        """
        Poll contract logs forever starting at `from_block`.

        Only blocks with `block_confirmations` confirmations are read. An
        empty batch is yielded on idle polls so the caller still sees the
        chain clock advance. Restart by calling again with a new block.
        """
        next_block = from_block
        while True:
            head_block, head_timestamp = await self.head()
            safe_block = head_block - self.config.block_confirmations

            if safe_block < next_block:
                yield LogBatch(
                    chain_id=self.chain_id,
                    from_block=next_block,
                    to_block=next_block - 1,
                    head_block=head_block,
                    head_timestamp=head_timestamp,
                )
                await asyncio.sleep(self.config.poll_interval_seconds)
                continue

            to_block = min(safe_block, next_block + self.config.max_block_range - 1)
            logs = await self.get_logs(next_block, to_block)
            yield LogBatch(
                chain_id=self.chain_id,
                from_block=next_block,
                to_block=to_block,
                head_block=head_block,
                head_timestamp=head_timestamp,
                logs=tuple(logs),
            )
            next_block = to_block + 1

            if to_block >= safe_block:
                await asyncio.sleep(self.config.poll_interval_seconds)

    # Writes

    async def submit_transaction(self, call: ContractCall) -> str:
        """
        Sign and send a contract call.

        A preflight eth_call surfaces revert reasons before any gas is spent.

        Returns:
            Transaction hash (0x-prefixed)
        """
        sender = self.address
        fn = getattr(self.contract.functions, call.function)(*call.args)

        try:
            await fn.call({"from": sender, "value": call.value})
            nonce = await self.w3.eth.get_transaction_count(sender, "pending")
            gas_price = await self.w3.eth.gas_price
            tx = await fn.build_transaction(
                {
                    "chainId": self.chain_id,
                    "from": sender,
                    "nonce": nonce,
                    "gas": self.gas_limit,
                    "gasPrice": gas_price,
                    "value": call.value,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise classify_revert(str(e)) from e
        except (ValueError, *TRANSPORT_ERRORS) as e:
            raise classify_send_error(self.chain_id, e) from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            "transaction_sent",
            chain_id=self.chain_id,
            function=call.function,
            args=list(call.args),
            tx_hash=tx_hash_hex,
            nonce=nonce,
        )
        return tx_hash_hex

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        """
        Wait for a transaction receipt.

        Raises:
            ReceiptTimeout: no receipt within `timeout` seconds
        """
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout,
                poll_latency=min(self.config.expected_block_time, 5.0),
            )
        except TimeExhausted as e:
            raise ReceiptTimeout(tx_hash, timeout) from e
        except TRANSPORT_ERRORS as e:
            raise ChainUnreachable(self.chain_id, f"wait_for_receipt: {e}") from e

        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            logs=[to_raw_log(entry) for entry in receipt["logs"]],
        )

    async def transaction_state(self, tx_hash: str) -> str:
        """
        Out-of-band status of a sent transaction.

        Returns:
            "mined", "pending" or "unknown" (dropped from the pool)
        """
        try:
            await self.w3.eth.get_transaction_receipt(tx_hash)
            return "mined"
        except TransactionNotFound:
            pass
        except TRANSPORT_ERRORS as e:
            raise ChainUnreachable(self.chain_id, f"get_receipt: {e}") from e

        try:
            await self.w3.eth.get_transaction(tx_hash)
            return "pending"
        except TransactionNotFound:
            return "unknown"
        except TRANSPORT_ERRORS as e:
            raise ChainUnreachable(self.chain_id, f"get_transaction: {e}") from e
