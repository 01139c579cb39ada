"""
convictionmarket/rewards.py

Time-weighted conviction scoring and proportional reward distribution.

    score_i  = amount_i * (stake_end - staked_at_i)
    payout_i = floor(reward_amount * score_i / total_winning_score)

All quantities are u64; the product reward_amount * score_i is formed in a
u128-wide intermediate before dividing. Floor-division residue stays in the
market vault.

The calculation is deterministic - any party can recompute a market's
distribution from ledger state and compare digests.

Usage:
    from convictionmarket.rewards import RewardEngine

    engine = RewardEngine()
    distribution = engine.distribute(market, share_records)
    distribution.payouts[record.address]
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import U64_MAX
from .errors import ValidationError
from .state import Market, ShareRecord

logger = logging.getLogger("convictionmarket.rewards")


def _require_u64(name: str, value: int) -> None:
    if not 0 <= value <= U64_MAX:
        raise ValidationError(f"{name}={value} is not a u64")


def conviction_score(amount: int, staked_at: int, stake_end: int) -> int:
    """
    Conviction score of a stake: amount times seconds staked until stake end.

    Args:
        amount: Staked vote credits
        staked_at: Unix timestamp when the stake was placed
        stake_end: Unix timestamp when the stake period ended

    Returns:
        u64 score
    """
    _require_u64("amount", amount)
    if staked_at > stake_end:
        raise ValidationError(
            f"Stake placed at {staked_at} after stake period end {stake_end}"
        )
    score = amount * (stake_end - staked_at)
    if score > U64_MAX:
        raise ValidationError(f"Conviction score overflows u64 ({score})")
    return score


def compute_payout(reward_amount: int, score: int, total_winning_score: int) -> int:
    """
    Proportional share of the reward pool, rounded down.

    Returns 0 when total_winning_score is 0.
    """
    _require_u64("reward_amount", reward_amount)
    _require_u64("score", score)
    _require_u64("total_winning_score", total_winning_score)
    if total_winning_score == 0:
        return 0
    if score > total_winning_score:
        raise ValidationError(
            f"Score {score} exceeds total winning score {total_winning_score}"
        )
    # u64 x u64 fits the u128 intermediate
    return (reward_amount * score) // total_winning_score


def is_yield_eligible(record: ShareRecord, market: Market) -> bool:
    """
    A record earns yield iff it was revealed in time, folded into the
    option tally, and backs the selected option.
    """
    return (
        market.selected_option is not None
        and record.revealed_option == market.selected_option
        and record.revealed_score is not None
        and record.revealed_in_time
        and record.total_incremented
    )


@dataclass
class RewardDistribution:
    """Auditable result of distributing one market's reward pool."""
    market: bytes
    selected_option: Optional[int]
    reward_amount: int
    total_winning_score: int
    payouts: Dict[bytes, int] = field(default_factory=dict)

    @property
    def total_paid(self) -> int:
        return sum(self.payouts.values())

    @property
    def remainder(self) -> int:
        return self.reward_amount - self.total_paid

    def to_dict(self) -> dict:
        return {
            "market": self.market.hex(),
            "selected_option": self.selected_option,
            "reward_amount": self.reward_amount,
            "total_winning_score": self.total_winning_score,
            "payouts": {k.hex(): v for k, v in sorted(self.payouts.items())},
            "total_paid": self.total_paid,
            "remainder": self.remainder,
        }

    def digest(self) -> str:
        """sha256 over the canonical JSON form."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()


class RewardEngine:
    """
    Computes payouts for a resolved market.

    total_winning_score defaults to the sum of eligible records' scores;
    the ledger passes the winning option's total_score aggregate, which
    equals that sum once every eligible record has been tallied.
    """

    def eligible_records(
        self, market: Market, records: Iterable[ShareRecord]
    ) -> List[ShareRecord]:
        return [r for r in records if is_yield_eligible(r, market)]

    def payout_for(
        self,
        market: Market,
        record: ShareRecord,
        total_winning_score: int,
    ) -> int:
        """Payout of a single record, 0 if not eligible."""
        if not is_yield_eligible(record, market):
            return 0
        return compute_payout(market.reward_amount, record.revealed_score, total_winning_score)

    def distribute(
        self,
        market: Market,
        records: Iterable[ShareRecord],
        total_winning_score: Optional[int] = None,
    ) -> RewardDistribution:
        """
        Compute every eligible record's payout.

        Args:
            market: Resolved market
            records: Share records of the market (any state)
            total_winning_score: Override for the denominator

        Returns:
            RewardDistribution keyed by share record address
        """
        eligible = self.eligible_records(market, records)
        if total_winning_score is None:
            total_winning_score = sum(r.revealed_score for r in eligible)

        distribution = RewardDistribution(
            market=market.address,
            selected_option=market.selected_option,
            reward_amount=market.reward_amount,
            total_winning_score=total_winning_score,
        )
        for record in eligible:
            distribution.payouts[record.address] = compute_payout(
                market.reward_amount, record.revealed_score, total_winning_score
            )

        if distribution.total_paid > market.reward_amount:
            raise ValidationError(
                f"Payouts {distribution.total_paid} exceed reward pool "
                f"{market.reward_amount}; denominator {total_winning_score} is stale"
            )

        logger.debug(
            f"Distributed {distribution.total_paid}/{market.reward_amount} "
            f"to {len(eligible)} records (remainder {distribution.remainder})"
        )
        return distribution
