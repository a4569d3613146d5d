"""
Deposit watcher. Detects USDC transfers to the Kalshi custodial deposit address
on the primary chain and credits each one to the BalanceVault exactly once
(best effort).

Live watching polls eth_getLogs from the last seen block to the head. Each poll
result is one batch, handled strictly in delivery order: one credit submission
at a time, so a duplicated batch can never race two credits for one transfer.

Dedup key is the transfer tx hash. The in-memory set is warmed from the
durable ledger at startup; a failed credit is recorded as a dead letter and
left unmarked so a redelivery or an operator replay can retry it. A credit
that timed out keeps its tx hash on the dead letter, and the retry checks that
transaction before signing another one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from web3 import Web3

from bridge.credit_issuer import CreditIssuer
from bridge.models import CreditIntent, TransferEvent
from client.chain import (
    ERC20_TRANSFER_ABI,
    TX_CONFIRMED,
    TX_PENDING,
    ChainClient,
    ConfirmationTimeout,
    to_hex_hash,
)
from state.ledger import BridgeLedger

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 4.0


def _log_sort_key(log: Any) -> tuple[int, int]:
    return int(log["blockNumber"]), int(log.get("logIndex", 0) or 0)


class DepositWatcher:
    """
    Watches (USDC, Transfer, to=deposit_address) and drives CreditIssuer.

    Usage:
        watcher = DepositWatcher(chain, usdc, deposit, issuer, ledger)
        await watcher.sync_historical_transfers(start_block)
        await watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        chain: ChainClient,
        usdc_address: str,
        deposit_address: str,
        credit_issuer: CreditIssuer,
        ledger: BridgeLedger | None = None,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._chain = chain
        self._usdc = chain.contract(usdc_address, ERC20_TRANSFER_ABI)
        self._deposit_address = Web3.to_checksum_address(deposit_address)
        self._issuer = credit_issuer
        self._ledger = ledger
        self._poll_interval = poll_interval_sec
        self._processed: set[str] = ledger.credited_hashes() if ledger is not None else set()
        # transfer tx hash -> creditDeposit tx broadcast but never confirmed
        self._pending_credits: dict[str, str] = ledger.pending_credits() if ledger is not None else {}
        self._running = False
        self._last_block: int | None = None
        self._task: asyncio.Task | None = None
        self._credited_count = 0
        self._failed_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_block(self) -> int | None:
        return self._last_block

    def is_processed(self, tx_hash: str) -> bool:
        return to_hex_hash(tx_hash) in self._processed

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    async def get_current_block(self) -> int:
        return await self._chain.block_number()

    async def _fetch_logs(self, from_block: int, to_block: int) -> list:
        return await self._usdc.events.Transfer.get_logs(
            argument_filters={"to": self._deposit_address},
            from_block=from_block,
            to_block=to_block,
        )

    # -- Live watch --

    async def start(self) -> None:
        """Start polling for new transfers in a background task."""
        logger.info(
            "Deposit watcher starting: USDC %s -> %s, crediting BalanceVault %s",
            self._usdc.address, self._deposit_address, self._issuer.vault_address,
        )
        self._running = True
        if self._last_block is None:
            self._last_block = await self.get_current_block()
        self._task = asyncio.create_task(self._poll_loop(), name="deposit-watcher")
        logger.info("Deposit watcher listening from block %d", self._last_block + 1)

    def stop(self) -> None:
        """Clear the running flag. An in-flight credit is not cancelled."""
        self._running = False
        logger.info(
            "Deposit watcher stopped (%d credited, %d failed this session)",
            self._credited_count, self._failed_count,
        )

    async def wait(self) -> None:
        """Wait for the poll task to exit after stop()."""
        if self._task is not None:
            await self._task

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Deposit poll failed, retrying next interval: %s", e)
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> int:
        """Fetch and process one batch (last seen block + 1 .. head). Returns logs seen."""
        current = await self.get_current_block()
        if self._last_block is None:
            self._last_block = current
            return 0
        if current <= self._last_block:
            return 0

        from_block = self._last_block + 1
        logs = await self._fetch_logs(from_block, current)
        if logs:
            logger.debug("Blocks %d-%d: %d transfer log(s)", from_block, current, len(logs))
        await self._process_batch(logs)
        self._last_block = current
        return len(logs)

    async def _process_batch(self, logs: list) -> None:
        # One credit in flight per batch.
        for log in logs:
            await self.handle_transfer(log)

    # -- Historical sync --

    async def sync_historical_transfers(self, from_block: int) -> int:
        """
        Process every matching log in [from_block, current head], ascending by
        (block, log index). Returns once all have been attempted.
        """
        current = await self.get_current_block()
        logger.info("Syncing transfers from block %d to %d...", from_block, current)
        logs = sorted(await self._fetch_logs(from_block, current), key=_log_sort_key)
        logger.info("Found %d historical transfer(s)", len(logs))

        await self._process_batch(logs)

        if self._last_block is None or current > self._last_block:
            self._last_block = current
        logger.info("Historical sync complete")
        return len(logs)

    # -- Per-transfer handling --

    async def handle_transfer(self, log: Any) -> bool:
        """
        Credit one transfer log if not already processed.

        Returns True when a credit confirmed. Never raises: failures are
        logged and dead-lettered so the stream keeps moving.

        A transfer whose earlier creditDeposit timed out is settled against
        that transaction first. A new one is signed only after the earlier
        one reverted or was dropped by the node.
        """
        try:
            event = log if isinstance(log, TransferEvent) else TransferEvent.from_log(log)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Skipping malformed Transfer log (%s): %r", e, log)
            return False

        ctx = {"tx_hash": event.tx_hash, "block_number": event.block_number}
        if event.tx_hash in self._processed:
            logger.info("Transaction already processed: %s", event.tx_hash, extra=ctx)
            return False

        logger.info(
            "USDC transfer detected: %.6f USDC from %s (block %d, tx %s)",
            event.amount_usdc, event.from_address, event.block_number, event.tx_hash,
            extra=ctx,
        )

        pending = self._pending_credits.get(event.tx_hash)
        if pending is not None:
            try:
                state = await self._issuer.credit_status(pending)
            except Exception as e:
                self._failed_count += 1
                logger.error(
                    "Could not check credit tx %s for %s: %s", pending, event.tx_hash, e,
                    extra={**ctx, "credit_tx_hash": pending},
                )
                self._dead_letter(event, e, pending)
                return False

            if state == TX_CONFIRMED:
                logger.info(
                    "Earlier credit tx %s for %s confirmed", pending, event.tx_hash,
                    extra={**ctx, "credit_tx_hash": pending},
                )
                self._mark_credited(event, pending)
                return True
            if state == TX_PENDING:
                self._failed_count += 1
                logger.warning(
                    "Credit tx %s for %s still pending, not resubmitting", pending, event.tx_hash,
                    extra={**ctx, "credit_tx_hash": pending},
                )
                self._dead_letter(event, f"credit tx {pending} still pending", pending)
                return False
            logger.warning(
                "Earlier credit tx %s for %s %s, resubmitting", pending, event.tx_hash, state,
                extra={**ctx, "credit_tx_hash": pending},
            )
            del self._pending_credits[event.tx_hash]

        intent = CreditIntent.from_transfer(event)
        try:
            receipt = await self._issuer.credit_deposit(intent.recipient, intent.amount)
        except ConfirmationTimeout as e:
            # The tx may still land: remember it so no second credit is signed.
            self._failed_count += 1
            self._pending_credits[event.tx_hash] = e.tx_hash
            logger.error(
                "Credit for %s unconfirmed: %s", event.tx_hash, e,
                extra={**ctx, "credit_tx_hash": e.tx_hash},
            )
            self._dead_letter(event, e, e.tx_hash)
            return False
        except Exception as e:
            self._failed_count += 1
            logger.error("Error crediting deposit %s: %s", event.tx_hash, e, exc_info=True, extra=ctx)
            self._dead_letter(event, e)
            return False

        self._mark_credited(event, to_hex_hash(receipt["transactionHash"]))
        return True

    def _mark_credited(self, event: TransferEvent, credit_tx_hash: str) -> None:
        self._processed.add(event.tx_hash)
        self._pending_credits.pop(event.tx_hash, None)
        self._credited_count += 1
        ctx = {"tx_hash": event.tx_hash, "credit_tx_hash": credit_tx_hash}
        if self._ledger is not None:
            try:
                self._ledger.record_credit(event, credit_tx_hash)
            except Exception as e:
                logger.error(
                    "Deposit %s credited but ledger write failed: %s", event.tx_hash, e,
                    exc_info=True, extra=ctx,
                )
        logger.info("Deposit credited successfully: %s", event.tx_hash, extra=ctx)

    def _dead_letter(
        self, event: TransferEvent, error: Exception | str, pending_tx_hash: str | None = None,
    ) -> None:
        if self._ledger is None:
            return
        if isinstance(error, Exception):
            error = f"{type(error).__name__}: {error}"
        try:
            attempts = self._ledger.record_failure(event, error, pending_tx_hash=pending_tx_hash)
            logger.warning(
                "Dead-lettered %s (attempt %d)", event.tx_hash, attempts,
                extra={"tx_hash": event.tx_hash},
            )
        except Exception as e:
            logger.error("Could not dead-letter %s: %s", event.tx_hash, e, exc_info=True)

    async def replay_dead_letters(self) -> tuple[int, int]:
        """Retry every open dead letter, oldest first. Returns (attempted, resolved)."""
        if self._ledger is None:
            return 0, 0
        letters = self._ledger.open_dead_letters()
        logger.info("Replaying %d dead-lettered deposit(s)", len(letters))
        resolved = 0
        for letter in letters:
            if await self.handle_transfer(letter.event):
                resolved += 1
        logger.info("Dead-letter replay: %d/%d resolved", resolved, len(letters))
        return len(letters), resolved
