"""
convictionmarket - Confidential conviction markets

Participants stake vote credits on named options without disclosing the
amount or the option until the reveal window. Once a winner is selected,
the reward pool is split among in-time revealers of the winning option in
proportion to their conviction score (amount x time staked).

Built on:
- X25519 + HKDF + ChaCha20-Poly1305 encryption contexts (cryptography)
- Offset-correlated confidential computations with polled finalization (trio)
- A pure phase function gating every lifecycle operation

Usage:
    import trio
    from convictionmarket import ConvictionMarketClient, InMemoryLedger, Wallet

    async def main():
        ledger = InMemoryLedger()
        creator = ConvictionMarketClient(ledger, Wallet.generate())
        ledger.airdrop(creator.public_key, 1_000)

        market = await creator.create_market(
            reward_amount=1_000, time_to_stake=3_600, time_to_reveal=600, max_options=2
        )
        await creator.add_option(market, "yes")
        await creator.add_option(market, "no")
        await creator.fund_market(market, 1_000)
        await creator.open_market(market, await ledger.get_time() + 10)

    trio.run(main)
"""

from .client import ConvictionMarketClient
from .config import (
    ClientConfig,
    MarketPolicy,
    MultiStakePolicy,
    WaiterConfig,
)
from .encryption import (
    EncryptionContext,
    Wallet,
    X25519Keypair,
    derive_context,
    derive_encryption_keypair,
    generate_nonce,
)
from .errors import (
    AbortedComputationError,
    AccountNotFoundError,
    ComputationPendingError,
    ConvictionMarketError,
    DecryptionError,
    DuplicateTransitionError,
    FinalizationTimeout,
    InsufficientBalanceError,
    InsufficientRewardFundingError,
    InvalidPhaseError,
    LedgerError,
    UnauthorizedError,
    ValidationError,
)
from .finalization import FinalizationEvent, FinalizationWaiter
from .ledger import InMemoryLedger, LocalComputationCluster, ManualClock
from .metadata import MetadataStore
from .phase import MarketPhase, Operation, market_phase
from .rewards import RewardDistribution, RewardEngine, conviction_score
from .shares import ShareRecordManager, ShareState
from .state import Market, MarketOption, ShareRecord, TokenAccount, VoteCreditBalance

__version__ = "0.1.0"

__all__ = [
    "ConvictionMarketClient",
    # Config
    "ClientConfig",
    "MarketPolicy",
    "MultiStakePolicy",
    "WaiterConfig",
    # Encryption
    "EncryptionContext",
    "Wallet",
    "X25519Keypair",
    "derive_context",
    "derive_encryption_keypair",
    "generate_nonce",
    # Errors
    "AbortedComputationError",
    "AccountNotFoundError",
    "ComputationPendingError",
    "ConvictionMarketError",
    "DecryptionError",
    "DuplicateTransitionError",
    "FinalizationTimeout",
    "InsufficientBalanceError",
    "InsufficientRewardFundingError",
    "InvalidPhaseError",
    "LedgerError",
    "UnauthorizedError",
    "ValidationError",
    # Finalization
    "FinalizationEvent",
    "FinalizationWaiter",
    # Ledger
    "InMemoryLedger",
    "LocalComputationCluster",
    "ManualClock",
    "MetadataStore",
    # Lifecycle and rewards
    "MarketPhase",
    "Operation",
    "market_phase",
    "RewardDistribution",
    "RewardEngine",
    "conviction_score",
    "ShareRecordManager",
    "ShareState",
    # State
    "Market",
    "MarketOption",
    "ShareRecord",
    "TokenAccount",
    "VoteCreditBalance",
]
