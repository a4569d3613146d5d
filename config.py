"""
Configuration loaded from environment variables. Fail-fast on missing required values.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class ConfigError(ValueError):
    """Raised when required settings are missing or inconsistent."""


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Primary chain (deposit detection + credit)
    chain_network: str = "arbitrum"
    rpc_url: str = Field(default="", description="Primary chain RPC (empty = network profile default)")
    usdc_address: str = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"  # Arbitrum native USDC
    kalshi_deposit_address: str = "0xac266f88d6889e98209eba3cbc3ac42a425637d1"
    balance_vault_address: str = Field(default="", description="BalanceVault ledger contract")
    owner_private_key: str = Field(default="", description="Signer key for creditDeposit/mint (hex)")
    # None = start from the current head (no historical sync)
    start_block: int | None = Field(default=None, ge=0)
    poll_interval_sec: float = Field(default=4.0, gt=0)

    # Transaction submission
    confirmation_timeout_sec: float = Field(default=120.0, gt=0)
    submit_max_retries: int = Field(default=3, ge=0, le=10)
    submit_backoff_sec: float = Field(default=1.0, ge=0)

    # Kalshi venue
    kalshi_api_key: str = ""
    kalshi_private_key_path: str = ""
    kalshi_private_key_pem: str = ""
    kalshi_host: str = "https://api.elections.kalshi.com/trade-api/v2"

    # Secondary chain (share minting). Disabled unless both token addresses are set.
    share_network: str = "chiliz-spicy"
    share_rpc_url: str = ""
    yes_share_address: str = ""
    no_share_address: str = ""

    # Durable idempotency ledger + dead letters
    ledger_db: str = "bridge_state.db"

    # API gateway
    api_host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)
    cors_origins: str = "*"

    log_level: str = "INFO"


def minting_enabled(cfg: Config) -> bool:
    """Share minting runs only when both share token addresses are configured."""
    return bool(cfg.yes_share_address and cfg.no_share_address)


def validate_config(cfg: Config) -> Config:
    """
    Check the settings the pipelines cannot start without.

    Raises ConfigError listing every missing or invalid value.
    """
    from client.chain import NETWORKS

    problems: list[str] = []
    if not cfg.balance_vault_address:
        problems.append("BALANCE_VAULT_ADDRESS is required")
    if not cfg.owner_private_key:
        problems.append("OWNER_PRIVATE_KEY is required")
    if not cfg.kalshi_api_key:
        problems.append("KALSHI_API_KEY is required")
    if not cfg.kalshi_private_key_path and not cfg.kalshi_private_key_pem:
        problems.append("Either KALSHI_PRIVATE_KEY_PATH or KALSHI_PRIVATE_KEY_PEM is required")
    if cfg.chain_network not in NETWORKS:
        problems.append(f"Unknown CHAIN_NETWORK {cfg.chain_network!r} (known: {', '.join(sorted(NETWORKS))})")
    if cfg.share_network not in NETWORKS:
        problems.append(f"Unknown SHARE_NETWORK {cfg.share_network!r} (known: {', '.join(sorted(NETWORKS))})")
    if bool(cfg.yes_share_address) != bool(cfg.no_share_address):
        problems.append("YES_SHARE_ADDRESS and NO_SHARE_ADDRESS must be set together")

    if problems:
        raise ConfigError("; ".join(problems))
    return cfg


def load_config() -> Config:
    """Load and validate config from environment. Raises on missing required fields."""
    return validate_config(Config())
