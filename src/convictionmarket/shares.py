"""
convictionmarket/shares.py

Share record lifecycle.

    CREATED -> REVEALED -> TALLY_INCREMENTED -> CLOSED
       |           |                              ^
       +-----------+------------------------------+

Every transition checks the record's current state first; re-applying a
transition that already happened raises DuplicateTransitionError instead
of double counting. Phase gating is the caller's job (see phase.py).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .errors import DuplicateTransitionError, InvalidPhaseError, ValidationError
from .rewards import RewardEngine, conviction_score, is_yield_eligible
from .state import Market, MarketOption, ShareRecord

logger = logging.getLogger("convictionmarket.shares")


class ShareState(Enum):
    """Lifecycle state of a share record."""
    EMPTY = "empty"                  # allocated, stake not yet finalized
    CREATED = "created"
    REVEALED = "revealed"
    TALLY_INCREMENTED = "tally_incremented"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


_ORDER = {
    ShareState.EMPTY: 0,
    ShareState.CREATED: 1,
    ShareState.REVEALED: 2,
    ShareState.TALLY_INCREMENTED: 3,
    ShareState.CLOSED: 4,
}

# transition -> states it may start from
TRANSITIONS: Dict[str, FrozenSet[ShareState]] = {
    "stake": frozenset({ShareState.EMPTY}),
    "reveal": frozenset({ShareState.CREATED}),
    "increment_tally": frozenset({ShareState.REVEALED}),
    "close": frozenset({
        ShareState.CREATED,
        ShareState.REVEALED,
        ShareState.TALLY_INCREMENTED,
    }),
}

# transition -> state it lands in
TARGETS: Dict[str, ShareState] = {
    "stake": ShareState.CREATED,
    "reveal": ShareState.REVEALED,
    "increment_tally": ShareState.TALLY_INCREMENTED,
    "close": ShareState.CLOSED,
}


def share_state(record: ShareRecord) -> ShareState:
    """Derive the lifecycle state from a record's latches."""
    if record.closed:
        return ShareState.CLOSED
    if record.total_incremented:
        return ShareState.TALLY_INCREMENTED
    if record.revealed_amount is not None:
        return ShareState.REVEALED
    if record.is_staked:
        return ShareState.CREATED
    return ShareState.EMPTY


def require_transition(transition: str, record: ShareRecord) -> ShareState:
    """
    Check that a transition may start from the record's state.

    Raises:
        DuplicateTransitionError: record is already at or past the target
        InvalidPhaseError: record has not reached the required state yet
    """
    state = share_state(record)
    if state in TRANSITIONS[transition]:
        return state
    if _ORDER[state] >= _ORDER[TARGETS[transition]]:
        raise DuplicateTransitionError(transition, state)
    raise InvalidPhaseError(
        transition, state, f"{transition} requires a record that is "
        f"{' or '.join(sorted(str(s) for s in TRANSITIONS[transition]))}, got {state}"
    )


@dataclass
class CloseOutcome:
    """What closing a record returns to its owner."""
    record: bytes
    stake_returned: Optional[int]   # None when the amount is still encrypted
    yield_amount: int
    eligible: bool


class ShareRecordManager:
    """
    Applies lifecycle transitions to share records.

    Usage:
        manager = ShareRecordManager()
        manager.apply_reveal(record, market, amount, option, requested_at)
        manager.apply_tally_increment(record, option_account)
        outcome = manager.apply_close(record, market, winning_option)
    """

    def __init__(self, reward_engine: Optional[RewardEngine] = None):
        self.reward_engine = reward_engine or RewardEngine()

    def apply_stake(
        self,
        record: ShareRecord,
        ciphertexts: List[bytes],
        nonce: bytes,
        staked_at: int,
    ) -> None:
        """Store the encrypted (amount, option) pair."""
        require_transition("stake", record)
        if len(ciphertexts) != 2:
            raise ValidationError("Stake state must hold exactly [amount, option]")
        record.encrypted_state = list(ciphertexts)
        record.state_nonce = nonce
        record.staked_at_timestamp = staked_at

    def apply_reveal(
        self,
        record: ShareRecord,
        market: Market,
        amount: int,
        option: int,
        requested_at: int,
    ) -> None:
        """
        Disclose the stake and fix its conviction score.

        The score runs until the stake-period end, not until the reveal.
        A reveal counts as in time when it was requested before the
        reveal deadline, however late its computation finishes; one
        requested at or after the deadline is kept but loses yield
        eligibility.
        """
        require_transition("reveal", record)
        stake_end = market.stake_end
        if stake_end is None:
            raise InvalidPhaseError("reveal", "not_funded")

        record.revealed_amount = amount
        record.revealed_option = option
        record.revealed_score = conviction_score(
            amount, record.staked_at_timestamp, stake_end
        )
        record.revealed_in_time = requested_at < market.reveal_end

        logger.info(
            f"Revealed share {record.address.hex()[:16]}: amount={amount} "
            f"option={option} score={record.revealed_score} "
            f"in_time={record.revealed_in_time}"
        )

    def apply_tally_increment(self, record: ShareRecord, option: MarketOption) -> None:
        """Fold the record's amount and score into its option aggregate once."""
        require_transition("increment_tally", record)
        if record.revealed_option != option.index:
            raise ValidationError(
                f"Record backs option {record.revealed_option}, not {option.index}"
            )
        option.total_shares = (option.total_shares or 0) + record.revealed_amount
        option.total_score = (option.total_score or 0) + record.revealed_score
        record.total_incremented = True

        logger.debug(
            f"Option {option.index} tally: shares={option.total_shares} "
            f"score={option.total_score}"
        )

    def plan_close(
        self,
        record: ShareRecord,
        market: Market,
        winning_option: Optional[MarketOption],
    ) -> CloseOutcome:
        """
        Work out what closing a record returns, without closing it.

        Args:
            record: Share record to close
            market: Resolved market
            winning_option: The selected option (its total_score is the
                payout denominator)
        """
        require_transition("close", record)

        yield_amount = 0
        eligible = is_yield_eligible(record, market)
        if eligible and winning_option is not None:
            yield_amount = self.reward_engine.payout_for(
                market, record, winning_option.total_score or 0
            )
        return CloseOutcome(
            record=record.address,
            stake_returned=record.revealed_amount,
            yield_amount=yield_amount,
            eligible=eligible,
        )

    def mark_closed(self, record: ShareRecord, outcome: CloseOutcome) -> None:
        """Latch a planned close onto the record."""
        require_transition("close", record)
        record.closed = True
        record.claimed_yield = outcome.yield_amount > 0
        record.yield_amount = outcome.yield_amount

        logger.info(
            f"Closed share {record.address.hex()[:16]}: "
            f"stake={record.revealed_amount} yield={outcome.yield_amount}"
        )

    def apply_close(
        self,
        record: ShareRecord,
        market: Market,
        winning_option: Optional[MarketOption],
    ) -> CloseOutcome:
        """Close a record: stake always returns, yield only if eligible."""
        outcome = self.plan_close(record, market, winning_option)
        self.mark_closed(record, outcome)
        return outcome
