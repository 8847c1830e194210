"""
Configuration for the bulk buy pipeline.

Values come from the environment (optionally a .env file) and are collected
into a single BulkBuySettings object that is passed explicitly to every
component that needs it.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

# Load environment variables from .env file
load_dotenv()


class ConfigError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


class WalletMode(str, Enum):
    CREATE = "create"  # always generate a fresh pool
    USE = "use"        # only read the existing keystore
    AUTO = "auto"      # read if present, generate otherwise


class BuyAmountPolicy(str, Enum):
    FLAT = "flat"              # every wallet spends BUY_LAMPORTS
    PER_WALLET = "per_wallet"  # keyInfo.json solAmount per wallet, missing -> skip


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


# Network configuration
RPC_URL = os.getenv("RPC_URL", "https://api.devnet.solana.com").strip()
RPC_ENDPOINTS = [u.strip() for u in os.getenv("RPC_ENDPOINTS", "").split(",") if u.strip()]

# Keystore configuration
KEYPAIRS_DIR = os.getenv("KEYPAIRS_DIR", "keypairs")
KEY_INFO_PATH = os.getenv("KEY_INFO_PATH", "keyInfo.json")
WALLET_MODE = os.getenv("WALLET_MODE", "auto")
NUM_WALLETS = int(os.getenv("NUM_WALLETS", "2"))

# Token configuration
TOKEN_MINT = os.getenv("TOKEN_MINT", "").strip()
WSOL_MINT = "So11111111111111111111111111111111111111112"
WSOL_DECIMALS = 9

# Test launch when no TOKEN_MINT is configured
LAUNCH_TOKEN_NAME = os.getenv("LAUNCH_TOKEN_NAME", "name")
LAUNCH_TOKEN_SYMBOL = os.getenv("LAUNCH_TOKEN_SYMBOL", "symbol")
LAUNCH_TOKEN_URI = os.getenv("LAUNCH_TOKEN_URI", "uri")

# Amounts (lamports / base units)
FUND_LAMPORTS = int(os.getenv("FUND_LAMPORTS", "10000000"))  # 0.01 SOL
FUND_WSOL_AMOUNT = int(os.getenv("FUND_WSOL_AMOUNT", "10000"))  # 0.00001 WSOL
FUND_BUFFER_PERCENT = float(os.getenv("FUND_BUFFER_PERCENT", "0"))
BUY_LAMPORTS = int(os.getenv("BUY_LAMPORTS", "10000"))
BUY_AMOUNT_POLICY = os.getenv("BUY_AMOUNT_POLICY", "flat")
BUY_SLIPPAGE_PERCENT = float(os.getenv("BUY_SLIPPAGE_PERCENT", "1"))

# Batching policy
ATA_BATCH_SIZE = int(os.getenv("ATA_BATCH_SIZE", "10"))
TRANSFER_BATCH_SIZE = int(os.getenv("TRANSFER_BATCH_SIZE", "10"))
BUY_BATCH_SIZE = int(os.getenv("BUY_BATCH_SIZE", "2"))  # each buy also carries an ATA create

# Compute budget prefix
ATA_COMPUTE_UNITS = int(os.getenv("ATA_COMPUTE_UNITS", "360000"))
BUY_COMPUTE_UNITS = int(os.getenv("BUY_COMPUTE_UNITS", "1400000"))
PRIORITY_FEE_MICROLAMPORTS = int(os.getenv("PRIORITY_FEE_MICROLAMPORTS", "1"))

# Submission
SEND_MAX_RETRIES = _env_optional_int("SEND_MAX_RETRIES")
CONFIRM_TIMEOUT_SECONDS = float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60"))
CONFIRM_POLL_SECONDS = float(os.getenv("CONFIRM_POLL_SECONDS", "1"))
UNIQUE_MEMO = _env_bool("UNIQUE_MEMO")

# Logging / reporting
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
REPORT_FORMAT = os.getenv("REPORT_FORMAT", "json")
REPORT_DIR = os.getenv("REPORT_DIR", "data/reports")


class BulkBuySettings(BaseModel):
    """All tunables for one pipeline run."""

    model_config = ConfigDict(validate_default=True)

    rpc_url: str = RPC_URL
    rpc_endpoints: List[str] = Field(default_factory=lambda: list(RPC_ENDPOINTS))
    fee_payer_private_key: Optional[SecretStr] = None

    keypairs_dir: Path = Path(KEYPAIRS_DIR)
    key_info_path: Path = Path(KEY_INFO_PATH)
    wallet_mode: WalletMode = WALLET_MODE
    num_wallets: int = NUM_WALLETS

    token_mint: Optional[str] = TOKEN_MINT or None
    launch_token_name: str = LAUNCH_TOKEN_NAME
    launch_token_symbol: str = LAUNCH_TOKEN_SYMBOL
    launch_token_uri: str = LAUNCH_TOKEN_URI

    fund_lamports: int = FUND_LAMPORTS
    fund_wsol_amount: int = FUND_WSOL_AMOUNT
    fund_buffer_percent: float = FUND_BUFFER_PERCENT
    buy_lamports: int = BUY_LAMPORTS
    buy_amount_policy: BuyAmountPolicy = BUY_AMOUNT_POLICY
    buy_slippage_percent: float = BUY_SLIPPAGE_PERCENT

    ata_batch_size: int = ATA_BATCH_SIZE
    transfer_batch_size: int = TRANSFER_BATCH_SIZE
    buy_batch_size: int = BUY_BATCH_SIZE

    ata_compute_units: int = ATA_COMPUTE_UNITS
    buy_compute_units: int = BUY_COMPUTE_UNITS
    priority_fee_microlamports: int = PRIORITY_FEE_MICROLAMPORTS

    send_max_retries: Optional[int] = SEND_MAX_RETRIES
    confirm_timeout_seconds: float = CONFIRM_TIMEOUT_SECONDS
    confirm_poll_seconds: float = CONFIRM_POLL_SECONDS
    unique_memo: bool = UNIQUE_MEMO

    report_format: str = REPORT_FORMAT
    report_dir: Path = Path(REPORT_DIR)

    @field_validator("num_wallets", "ata_batch_size", "transfer_batch_size", "buy_batch_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("fund_lamports", "fund_wsol_amount", "buy_lamports", "priority_fee_microlamports")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @field_validator("buy_slippage_percent", "fund_buffer_percent")
    @classmethod
    def _percent_range(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("must be between 0 and 100 percent")
        return value

    @field_validator("report_format")
    @classmethod
    def _report_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "yaml", "csv", "none"):
            raise ValueError("report_format must be json, yaml, csv or none")
        return value

    @property
    def all_endpoints(self) -> List[str]:
        """Primary endpoint first, then any extra broadcast endpoints (deduplicated)."""
        endpoints = [self.rpc_url]
        for url in self.rpc_endpoints:
            if url not in endpoints:
                endpoints.append(url)
        return endpoints

    @classmethod
    def from_env(cls) -> "BulkBuySettings":
        """
        Build settings from the environment.

        Raises:
            ConfigError: If FEE_PAYER_PRIVATE_KEY is not set or a value is invalid
        """
        secret = os.getenv("FEE_PAYER_PRIVATE_KEY", "").strip()
        if not secret:
            raise ConfigError("No FEE_PAYER_PRIVATE_KEY found in environment variables")
        try:
            return cls(fee_payer_private_key=SecretStr(secret))
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e.error_count()} error(s)\n{str(e)}") from e
