"""
Configuration management using Pydantic Settings.
Every option is read from the environment (or a local .env file).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

from .exceptions import ConfigurationError


DEFAULT_HOME = Path.home() / ".reflector"

CLUSTER_URLS = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
    "localhost": "http://127.0.0.1:8899",
}

# Ledger batch limits
RUN_HISTORY_LIMIT = 100
HARVEST_ACCOUNTS_PER_TX = 20


def split_csv(raw: Optional[str]) -> List[str]:
    """Split a comma-separated option into trimmed, non-empty items."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_pubkey(label: str, value: str) -> Pubkey:
    """Parse a base58 address or raise ConfigurationError."""
    try:
        return Pubkey.from_string(value.strip())
    except Exception:
        raise ConfigurationError(
            f"{label} must be a valid base58 public key",
            {"label": label, "value": value}
        )


class Settings(BaseSettings):
    """Distribution job settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Token
    mint_address: Optional[str] = None
    reward_token_mint: str = ""

    # Signing
    treasury_keypair_path: Path = Path.home() / ".config/solana/id.json"
    withdraw_authority_keypair_path: Optional[Path] = None

    # Solana
    rpc_url: str = CLUSTER_URLS["devnet"]
    solana_commitment: str = "confirmed"
    rpc_timeout: int = 30  # seconds

    # Swap
    swap_slippage_bps: int = 100
    jupiter_api_url: str = "https://quote-api.jup.ag/v6"

    # Eligibility
    min_holding: int = Field(default=0, ge=0)
    excluded_wallets: str = ""

    # Distribution
    max_distributions_per_run: int = Field(default=100, ge=1)
    min_total_pool: int = Field(default=1000, ge=0)
    disburse_batch_size: int = Field(default=5, ge=1)
    failed_batch_policy: str = "drop"
    batch_retry_attempts: int = Field(default=2, ge=0)
    holder_fetch_chunk_size: int = Field(default=50, ge=1)

    # Harvesting
    harvest_enabled: bool = True
    harvest_accounts: str = ""
    distribute_full_treasury: bool = False

    # State
    state_dir: Path = DEFAULT_HOME / "reflections"
    lease_ttl_seconds: int = 3600

    # Logging
    log_file: Optional[Path] = DEFAULT_HOME / "logs/reflections.log"
    log_level: str = "INFO"
    log_format: str = "console"  # json or console

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["console", "json"]
        if v.lower() not in allowed:
            raise ValueError(f"Log format must be one of: {allowed}")
        return v.lower()

    @field_validator("failed_batch_policy")
    @classmethod
    def validate_failed_batch_policy(cls, v: str) -> str:
        allowed = ["drop", "retry"]
        if v.lower() not in allowed:
            raise ValueError(f"Failed batch policy must be one of: {allowed}")
        return v.lower()

    @field_validator("swap_slippage_bps")
    @classmethod
    def validate_slippage(cls, v: int) -> int:
        if not 0 <= v <= 10_000:
            raise ValueError("Slippage must be between 0 and 10000 basis points")
        return v

    @property
    def excluded_wallet_list(self) -> List[str]:
        return split_csv(self.excluded_wallets)

    @property
    def harvest_account_list(self) -> List[str]:
        return split_csv(self.harvest_accounts)

    @property
    def retry_failed_batches(self) -> bool:
        return self.failed_batch_policy == "retry"

    def require_mint(self) -> Pubkey:
        """Return the configured fee mint, failing if it is missing."""
        if not self.mint_address:
            raise ConfigurationError("MINT_ADDRESS is required")
        return parse_pubkey("MINT_ADDRESS", self.mint_address)

    def reward_mint(self) -> Pubkey:
        """Reward token mint; defaults to the fee mint."""
        if self.reward_token_mint:
            return parse_pubkey("REWARD_TOKEN_MINT", self.reward_token_mint)
        return self.require_mint()


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, wrapping validation failures."""
    try:
        return Settings(**overrides)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")


@dataclass(frozen=True)
class SplitRecipient:
    """Downstream wallet receiving a weighted share of collected fees."""
    wallet: Pubkey
    bps: int
    label: str


def parse_split_config(raw: str) -> List[SplitRecipient]:
    """
    Parse a `wallet:percent,wallet:percent` split definition.

    Percentages are converted to basis points (rounded); the weights do
    not need to add up to 100.
    """
    entries = split_csv(raw)
    if not entries:
        raise ConfigurationError("Split configuration must include at least one wallet:percent pair")

    recipients = []
    for entry in entries:
        address, _, percent_raw = entry.partition(":")
        address, percent_raw = address.strip(), percent_raw.strip()
        if not address or not percent_raw:
            raise ConfigurationError(
                f'Invalid split entry "{entry}". Expected format wallet:percent'
            )

        try:
            percent = float(percent_raw)
        except ValueError:
            percent = float("nan")
        if percent != percent or percent <= 0:
            raise ConfigurationError(
                f'Split percentage must be a positive number (entry: "{entry}")'
            )

        bps = round(percent * 100)
        if bps <= 0:
            raise ConfigurationError(
                f'Split percentage is too small to allocate (entry: "{entry}")'
            )

        recipients.append(
            SplitRecipient(wallet=parse_pubkey("split recipient", address), bps=bps, label=entry)
        )

    return recipients
