"""
Credit issuer: turns a detected USDC deposit into a BalanceVault.creditDeposit
call on the primary chain and waits for one confirmation.

No idempotence of its own. The deposit watcher deduplicates by transfer tx hash
before calling in, and the vault contract is trusted to reject overflow.
"""

from __future__ import annotations

import logging

from web3 import Web3

from bridge.models import USDC_DECIMALS, CreditIntent
from client.chain import BALANCE_VAULT_ABI, ChainClient

logger = logging.getLogger(__name__)


class CreditIssuer:
    def __init__(self, chain: ChainClient, balance_vault_address: str) -> None:
        self._chain = chain
        self._vault = chain.contract(balance_vault_address, BALANCE_VAULT_ABI)

    @property
    def vault_address(self) -> str:
        return self._vault.address

    async def credit_deposit(self, recipient: str, amount: int) -> dict:
        """
        Credit `amount` USDC base units to `recipient` on the vault.

        Returns the confirmed receipt. Raises TransactionReverted,
        ConfirmationTimeout, or the underlying RPC error.
        """
        intent = CreditIntent(recipient=recipient, amount=int(amount))
        logger.info(
            "Crediting %.6f USDC to %s on BalanceVault %s",
            intent.amount / 10 ** USDC_DECIMALS, intent.recipient, self._vault.address,
            extra={"network": self._chain.profile.key},
        )
        fn = self._vault.functions.creditDeposit(
            Web3.to_checksum_address(intent.recipient), intent.amount,
        )
        return await self._chain.transact(fn, label="creditDeposit")

    async def credit_status(self, credit_tx_hash: str) -> str:
        """State of an earlier creditDeposit tx (see ChainClient.transaction_state)."""
        return await self._chain.transaction_state(credit_tx_hash)
