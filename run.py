#!/usr/bin/env python3
"""
Kalshi deposit bridge -- process entry point.

Runs two independent pipelines on one event loop:
  1. Deposit watcher: USDC transfers to the Kalshi deposit address on the
     primary chain -> BalanceVault.creditDeposit (historical sync first when
     START_BLOCK is behind the head, then live watch)
  2. API gateway: browser <-> Kalshi proxy, plus share mints on the secondary
     chain for filled buy orders (when share token addresses are configured)

Usage:
  python run.py                         # watcher + API
  python run.py --no-api                # watcher only
  python run.py --no-watch              # API only
  python run.py --start-block 250000000 # override START_BLOCK
  python run.py --replay-dead-letters   # retry failed credits before watching
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from bridge.credit_issuer import CreditIssuer
from bridge.deposit_watcher import DepositWatcher
from bridge.share_minter import ShareMinter
from client.chain import ChainClient
from client.kalshi import KalshiClient
from client.kalshi_auth import KalshiAuth
from config import Config, ConfigError, load_config, minting_enabled
from gateway.server import build_server, create_app
from monitor.logger import setup_logging
from state.ledger import BridgeLedger

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kalshi deposit bridge")
    parser.add_argument("--no-watch", action="store_true", help="Do not run the deposit watcher")
    parser.add_argument("--no-api", action="store_true", help="Do not run the HTTP API gateway")
    parser.add_argument("--start-block", type=int, default=None, help="Historical sync start block (overrides START_BLOCK)")
    parser.add_argument("--replay-dead-letters", action="store_true", help="Retry failed credits before watching")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    return parser.parse_args(argv)


def _chain_kwargs(cfg: Config) -> dict:
    return {
        "confirmation_timeout": cfg.confirmation_timeout_sec,
        "max_retries": cfg.submit_max_retries,
        "backoff_sec": cfg.submit_backoff_sec,
    }


def build_minter(cfg: Config) -> ShareMinter | None:
    """Share minter on the configured secondary network, or None when disabled."""
    if not minting_enabled(cfg):
        logger.info("Share minting disabled (YES_SHARE_ADDRESS/NO_SHARE_ADDRESS not set)")
        return None
    chain = ChainClient.connect(
        cfg.share_network, cfg.owner_private_key, cfg.share_rpc_url, **_chain_kwargs(cfg),
    )
    return ShareMinter(chain, cfg.yes_share_address, cfg.no_share_address)


def build_watcher(cfg: Config, ledger: BridgeLedger) -> DepositWatcher:
    chain = ChainClient.connect(
        cfg.chain_network, cfg.owner_private_key, cfg.rpc_url, **_chain_kwargs(cfg),
    )
    logger.info(
        "Primary chain: %s (chain id %d), signer %s",
        chain.profile.name, chain.profile.chain_id, chain.address,
    )
    issuer = CreditIssuer(chain, cfg.balance_vault_address)
    return DepositWatcher(
        chain,
        cfg.usdc_address,
        cfg.kalshi_deposit_address,
        issuer,
        ledger=ledger,
        poll_interval_sec=cfg.poll_interval_sec,
    )


def build_venue(cfg: Config) -> KalshiClient:
    auth = KalshiAuth(
        cfg.kalshi_api_key,
        private_key_path=cfg.kalshi_private_key_path or None,
        private_key_pem=cfg.kalshi_private_key_pem or None,
    )
    return KalshiClient(auth, host=cfg.kalshi_host)


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def run_bridge(cfg: Config, args: argparse.Namespace) -> None:
    ledger = BridgeLedger(cfg.ledger_db)
    logger.info("Ledger %s: %s", cfg.ledger_db, ledger.stats)
    watcher = build_watcher(cfg, ledger)
    venue = build_venue(cfg)
    logger.info("Kalshi service initialized (%s)", venue.host)
    minter = build_minter(cfg)

    try:
        current_block = await watcher.get_current_block()
        logger.info("Current block: %d", current_block)

        if args.replay_dead_letters:
            await watcher.replay_dead_letters()

        if not args.no_watch:
            start_block = args.start_block if args.start_block is not None else cfg.start_block
            if start_block is not None and start_block < current_block:
                await watcher.sync_historical_transfers(start_block)
            await watcher.start()

        if not args.no_api:
            app = create_app(venue, minter=minter, ledger=ledger, cors_origins=cfg.cors_origins)
            await build_server(app, cfg.api_host, cfg.port).serve()
        elif not args.no_watch:
            await _wait_for_signal()
    finally:
        if watcher.running:
            watcher.stop()
            await watcher.wait()
        await venue.close()
        ledger.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        cfg = load_config()
    except (ConfigError, ValidationError) as e:
        setup_logging("INFO", json_log_file=args.json_log)
        logger.critical("Invalid configuration: %s", e)
        sys.exit(1)

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.info("=== Kalshi Deposit Bridge ===")
    logger.info("  Log file: %s", log_file_path)

    try:
        asyncio.run(run_bridge(cfg, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.critical("Fatal error: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
