"""
Share minter: mirrors a filled Kalshi buy order as YES/NO share tokens on the
secondary chain (Chiliz Spicy or Zircuit Garfield, picked by network profile).

One mint per call and no dedup here; the gateway keys mints by order id.
"""

from __future__ import annotations

import logging

from web3 import Web3

from bridge.models import MintIntent, SIDES
from client.chain import SHARE_TOKEN_ABI, ChainClient, to_hex_hash

logger = logging.getLogger(__name__)


class ShareMinter:
    """Mints and reads the YES/NO share tokens through a signer-bound ChainClient."""

    def __init__(self, chain: ChainClient, yes_share_address: str, no_share_address: str) -> None:
        self._chain = chain
        self._tokens = {
            "yes": chain.contract(yes_share_address, SHARE_TOKEN_ABI),
            "no": chain.contract(no_share_address, SHARE_TOKEN_ABI),
        }
        logger.info(
            "ShareMinter on %s (chain id %d): YES=%s NO=%s owner=%s",
            chain.profile.name, chain.profile.chain_id,
            self._tokens["yes"].address, self._tokens["no"].address, chain.address,
        )

    @property
    def network_name(self) -> str:
        return self._chain.profile.name

    def token_address(self, side: str) -> str:
        return self._token(side).address

    def _token(self, side: str):
        if side not in SIDES:
            raise ValueError(f"side must be 'yes' or 'no', got {side!r}")
        return self._tokens[side]

    async def mint_shares(self, recipient: str, side: str, count: int) -> str:
        """
        Mint `count` whole shares (count * 10**18 base units) of `side` to `recipient`.

        Returns the mint tx hash once the receipt reports success.
        Raises ValueError for a bad side/count, TransactionReverted on a failed
        receipt, ConfirmationTimeout, or the underlying RPC error.
        """
        intent = MintIntent(recipient=recipient, side=side, count=int(count))
        token = self._token(intent.side)
        logger.info(
            "Minting %d %s shares (%d base units) to %s via %s on %s",
            intent.count, intent.side.upper(), intent.amount, intent.recipient,
            token.address, self.network_name,
            extra={"network": self._chain.profile.key},
        )
        fn = token.functions.mint(
            Web3.to_checksum_address(intent.recipient), intent.amount,
        )
        receipt = await self._chain.transact(fn, label=f"mint {intent.side.upper()}")
        return to_hex_hash(receipt["transactionHash"])

    async def get_share_balance(self, address: str, side: str) -> int:
        """Share token balance in base units. Read-only."""
        token = self._token(side)
        return await token.functions.balanceOf(Web3.to_checksum_address(address)).call()

    async def get_current_block(self) -> int:
        return await self._chain.block_number()
