"""
EVM chain access for the bridge: network profiles, web3 client construction,
and signed contract-call submission with bounded confirmation waits.

Both pipelines (USDC deposit credit on the primary chain, share minting on the
secondary chain) go through ChainClient so that nonce handling, retries and
receipt checks live in one place.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_TIMEOUT = 120.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SEC = 1.0
_BACKOFF_MAX_SEC = 30.0

# Broadcast errors that mean these exact signed bytes are already on a node.
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction")
# Only means "already submitted" after an earlier send of the same bytes.
_NONCE_TOO_LOW = "nonce too low"

TX_CONFIRMED = "confirmed"
TX_REVERTED = "reverted"
TX_PENDING = "pending"
TX_DROPPED = "dropped"


@dataclass(frozen=True, slots=True)
class NetworkProfile:
    """Static description of an EVM network the bridge can talk to."""
    key: str
    name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str
    poa: bool = False  # inject extraData middleware for PoA/PoSA block headers


NETWORKS: dict[str, NetworkProfile] = {
    "arbitrum": NetworkProfile(
        key="arbitrum",
        name="Arbitrum One",
        chain_id=42161,
        rpc_url="https://arb1.arbitrum.io/rpc",
        native_symbol="ETH",
        explorer_url="https://arbiscan.io",
    ),
    "arbitrum-sepolia": NetworkProfile(
        key="arbitrum-sepolia",
        name="Arbitrum Sepolia",
        chain_id=421614,
        rpc_url="https://sepolia-rollup.arbitrum.io/rpc",
        native_symbol="ETH",
        explorer_url="https://sepolia.arbiscan.io",
    ),
    "chiliz-spicy": NetworkProfile(
        key="chiliz-spicy",
        name="Chiliz Spicy Testnet",
        chain_id=88882,
        rpc_url="https://spicy-rpc.chiliz.com/",
        native_symbol="CHZ",
        explorer_url="https://testnet.chiliscan.com",
        poa=True,
    ),
    "zircuit-garfield": NetworkProfile(
        key="zircuit-garfield",
        name="Zircuit Garfield Testnet",
        chain_id=48898,
        rpc_url="https://garfield-testnet.zircuit.com",
        native_symbol="ETH",
        explorer_url="https://explorer.testnet.zircuit.com",
    ),
}


# Minimal ABIs for the three external contracts.

ERC20_TRANSFER_ABI: list[dict] = [
    {
        "anonymous": False,
        "type": "event",
        "name": "Transfer",
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
    },
]

BALANCE_VAULT_ABI: list[dict] = [
    {
        "type": "function",
        "name": "creditDeposit",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "balances",
        "inputs": [{"name": "", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

SHARE_TOKEN_ABI: list[dict] = [
    {
        "type": "function",
        "name": "mint",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]


class TransactionReverted(Exception):
    """Receipt came back with status != 1."""

    def __init__(self, tx_hash: str, label: str = "transaction") -> None:
        super().__init__(f"{label} reverted: {tx_hash}")
        self.tx_hash = tx_hash
        self.label = label


class ConfirmationTimeout(Exception):
    """No receipt within the confirmation budget. The transaction may still land."""

    def __init__(self, tx_hash: str, timeout: float, label: str = "transaction") -> None:
        super().__init__(f"{label} not confirmed within {timeout:.0f}s: {tx_hash}")
        self.tx_hash = tx_hash
        self.timeout = timeout
        self.label = label


def get_network(key: str) -> NetworkProfile:
    """Look up a network profile by key. Raises KeyError listing known keys."""
    try:
        return NETWORKS[key]
    except KeyError:
        raise KeyError(f"Unknown network {key!r} (known: {', '.join(sorted(NETWORKS))})") from None


def build_web3(profile: NetworkProfile, rpc_url: str = "") -> AsyncWeb3:
    """Async web3 client for a network, with PoA middleware where needed."""
    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or profile.rpc_url))
    if profile.poa:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


def to_hex_hash(value: Any) -> str:
    """Normalize a tx hash (HexBytes, bytes or str) to lowercase 0x-prefixed hex."""
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value).lower()


def _is_transient(exc: Exception) -> bool:
    """Connection-level failures worth retrying. Reverts and RPC rejections are not."""
    return isinstance(exc, (OSError, TimeoutError))


class ChainClient:
    """
    Signer-bound web3 client for one network.

    transact() = sign once, broadcast (retrying the same signed bytes on
    connection errors), then wait for one confirmation with a timeout.
    Sign+broadcast is serialized per client, so each call reads the pending
    nonce after the previous broadcast. A timed-out or reverted transaction is
    never re-signed here; callers settle it with transaction_state().
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        profile: NetworkProfile,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_sec: float = DEFAULT_BACKOFF_SEC,
    ) -> None:
        self.w3 = w3
        self.account = account
        self.profile = profile
        self._confirmation_timeout = confirmation_timeout
        self._max_retries = max_retries
        self._backoff_sec = backoff_sec
        # One sign+broadcast at a time so concurrent callers never share a nonce.
        self._submit_lock = asyncio.Lock()

    @classmethod
    def connect(
        cls,
        network: str,
        private_key: str,
        rpc_url: str = "",
        **kwargs,
    ) -> ChainClient:
        profile = get_network(network)
        account = Account.from_key(private_key)
        return cls(build_web3(profile, rpc_url), account, profile, **kwargs)

    @property
    def address(self) -> str:
        return self.account.address

    def contract(self, address: str, abi: list[dict]):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def transact(self, fn, label: str = "transaction") -> dict:
        """Submit a contract function call and return its successful receipt."""
        tx_hash = await self.submit(fn, label=label)
        return await self.wait_for_receipt(tx_hash, label=label)

    async def submit(self, fn, label: str = "transaction") -> str:
        """Sign and broadcast a contract function call. Returns the tx hash."""
        async with self._submit_lock:
            signed = await self._retry(self._sign, fn, label=label)
            tx_hash = to_hex_hash(signed.hash)
            sends = 0

            async def broadcast():
                nonlocal sends
                sends += 1
                await self._broadcast(signed, tx_hash, resend=sends > 1)

            await self._retry(broadcast, label=label)
        logger.info(
            "%s sent on %s: %s", label, self.profile.name, tx_hash,
            extra={"tx_hash": tx_hash, "network": self.profile.key},
        )
        return tx_hash

    async def transaction_state(self, tx_hash: str) -> str:
        """
        Where a previously broadcast transaction stands right now.

        Returns TX_CONFIRMED or TX_REVERTED once a receipt exists, TX_PENDING
        while the node still knows the transaction, and TX_DROPPED when it
        has neither a receipt nor the transaction itself.
        """
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        if receipt is not None:
            return TX_CONFIRMED if receipt["status"] == 1 else TX_REVERTED

        try:
            await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return TX_DROPPED
        return TX_PENDING

    async def wait_for_receipt(self, tx_hash: str, label: str = "transaction") -> dict:
        """Block until one confirmation. Raises ConfirmationTimeout or TransactionReverted."""
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._confirmation_timeout,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, self._confirmation_timeout, label) from e

        if receipt["status"] != 1:
            raise TransactionReverted(tx_hash, label)
        logger.info(
            "%s confirmed in block %d: %s", label, receipt["blockNumber"], tx_hash,
            extra={"tx_hash": tx_hash, "block_number": receipt["blockNumber"], "network": self.profile.key},
        )
        return receipt

    async def _sign(self, fn):
        nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
        tx = await fn.build_transaction({
            "from": self.account.address,
            "nonce": nonce,
            "chainId": self.profile.chain_id,
        })
        return self.account.sign_transaction(tx)

    async def _broadcast(self, signed, tx_hash: str, resend: bool = False) -> None:
        try:
            await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            msg = str(e).lower()
            known = any(marker in msg for marker in _ALREADY_KNOWN_MARKERS)
            if known or (resend and _NONCE_TOO_LOW in msg):
                # Earlier attempt reached the node; the receipt wait settles it.
                logger.warning(
                    "Broadcast of %s reported %r, waiting for receipt", tx_hash, e,
                    extra={"tx_hash": tx_hash},
                )
                return
            raise

    async def _retry(self, op, *args, label: str):
        for attempt in range(self._max_retries + 1):
            try:
                return await op(*args)
            except Exception as e:
                if not _is_transient(e) or attempt >= self._max_retries:
                    raise
                wait = min(_BACKOFF_MAX_SEC, self._backoff_sec * (2 ** attempt))
                logger.warning(
                    "%s %s failed (attempt %d/%d, retrying in %.1fs): %s",
                    label, op.__name__.lstrip("_"), attempt + 1, self._max_retries + 1, wait, e,
                )
                await asyncio.sleep(wait)
        raise AssertionError("unreachable")  # loop always returns or raises
