"""
convictionmarket/config.py

Configuration constants and data classes for convictionmarket.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional
import hashlib
import logging
import os

logger = logging.getLogger("convictionmarket.config")


# Program identity (32 bytes). Finalization events carry this to prove origin.
PROGRAM_ID = hashlib.sha256(b"convictionmarket/program/v1").digest()

# Computation cluster log address scanned by the finalization waiter
CLUSTER_LOG_ADDRESS = hashlib.sha256(b"convictionmarket/cluster/log").digest()

# Address derivation seed tags (one per entity kind)
MARKET_SEED = b"conviction_market"
OPTION_SEED = b"option"
SHARE_ACCOUNT_SEED = b"share_account"
VOTE_TOKEN_ACCOUNT_SEED = b"vote_token_account"
REWARD_TOKEN_ACCOUNT_SEED = b"reward_token_account"
MARKET_VAULT_SEED = b"market_vault"

# Integer widths
U16_MAX = 2 ** 16 - 1
U32_MAX = 2 ** 32 - 1
U64_MAX = 2 ** 64 - 1
U128_MAX = 2 ** 128 - 1

# Option names are bounded (UTF-8 bytes)
MAX_OPTION_NAME_LENGTH = 50

# Message signed by a wallet to derive its X25519 encryption key
KEY_DERIVATION_MESSAGE = b"convictionmarket: derive encryption key v1"

# First 8 bytes of sha256("event:FinalizeComputationEvent")
FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR = hashlib.sha256(
    b"event:FinalizeComputationEvent"
).digest()[:8]

# Log line prefix for binary event payloads
PROGRAM_DATA_PREFIX = "Program data: "

# Finalization waiter defaults (~2 minute budget)
DEFAULT_POLL_INTERVAL = 1.0         # seconds
DEFAULT_MAX_ATTEMPTS = 120
DEFAULT_TRANSACTION_COUNT_LIMIT = 10


def _env_number(name: str, cast, default):
    """Read a numeric environment override, falling back on bad input."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Non-positive {name}={raw!r}, using default {default}")
        return default
    return value


@dataclass
class WaiterConfig:
    """Polling budget for the finalization waiter."""
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    transaction_count_limit: int = DEFAULT_TRANSACTION_COUNT_LIMIT

    @classmethod
    def from_env(cls) -> "WaiterConfig":
        """
        Build config from environment variables.

        CONVICTION_POLL_INTERVAL: seconds between attempts
        CONVICTION_MAX_ATTEMPTS: attempts before FinalizationTimeout
        CONVICTION_TX_LIMIT: recent transactions scanned per attempt
        """
        return cls(
            poll_interval=_env_number(
                "CONVICTION_POLL_INTERVAL", float, DEFAULT_POLL_INTERVAL
            ),
            max_attempts=_env_number(
                "CONVICTION_MAX_ATTEMPTS", int, DEFAULT_MAX_ATTEMPTS
            ),
            transaction_count_limit=_env_number(
                "CONVICTION_TX_LIMIT", int, DEFAULT_TRANSACTION_COUNT_LIMIT
            ),
        )

    @property
    def budget_seconds(self) -> float:
        """Upper bound on time spent sleeping in one wait."""
        return self.poll_interval * self.max_attempts


class MultiStakePolicy(Enum):
    """
    How many share records an owner may hold in one market.

    SINGLE: exactly one record per (owner, market)
    DISTINCT_OPTIONS: several records, each on a different option
    UNRESTRICTED: several records, same option allowed
    """
    SINGLE = auto()
    DISTINCT_OPTIONS = auto()
    UNRESTRICTED = auto()

    @classmethod
    def from_string(cls, value: str) -> "MultiStakePolicy":
        """Convert string to MultiStakePolicy."""
        normalized = value.lower().strip().replace('-', '_').replace(' ', '_')
        mapping = {
            'single': cls.SINGLE,
            'distinct': cls.DISTINCT_OPTIONS,
            'distinct_options': cls.DISTINCT_OPTIONS,
            'unrestricted': cls.UNRESTRICTED,
            'any': cls.UNRESTRICTED,
        }
        if normalized in mapping:
            return mapping[normalized]
        raise ValueError(
            f"Invalid multi-stake policy: {value}. "
            f"Valid options: single, distinct_options, unrestricted"
        )


@dataclass
class MarketPolicy:
    """Client-side policy for the lifecycle questions the ledger leaves open."""

    # Options may be added while the market is not yet opened
    allow_options_before_open: bool = True

    multi_stake: MultiStakePolicy = MultiStakePolicy.DISTINCT_OPTIONS

    # Upper bound on share record ids probed when listing an owner's records
    max_share_records: int = 64

    @classmethod
    def from_env(cls) -> "MarketPolicy":
        """Build policy, honouring CONVICTION_MULTI_STAKE when set."""
        policy = cls()
        raw = os.environ.get("CONVICTION_MULTI_STAKE")
        if raw:
            try:
                policy.multi_stake = MultiStakePolicy.from_string(raw)
            except ValueError as e:
                logger.warning(f"Invalid CONVICTION_MULTI_STAKE: {e}")
        return policy


@dataclass
class ClientConfig:
    """Complete client configuration."""
    waiter: WaiterConfig = field(default_factory=WaiterConfig)
    policy: MarketPolicy = field(default_factory=MarketPolicy)
    program_id: bytes = PROGRAM_ID
    metadata_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            waiter=WaiterConfig.from_env(),
            policy=MarketPolicy.from_env(),
            metadata_path=os.environ.get("CONVICTION_METADATA_PATH") or None,
        )
