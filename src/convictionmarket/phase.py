"""
convictionmarket/phase.py

Market lifecycle phase, derived purely from on-ledger fields and wall-clock
time. This is the only place that interprets open_timestamp, time_to_stake,
time_to_reveal and selected_option as a lifecycle.

Boundary timestamps belong to the later phase:
    now == stake_end   -> REVEALING
    now == reveal_end  -> RESOLVED (if a winner is selected)
"""

from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidPhaseError
from .state import Market


class MarketPhase(Enum):
    """Lifecycle phase of a market."""
    NOT_FUNDED = "not_funded"
    OPEN = "open"
    REVEALING = "revealing"
    RESOLVED = "resolved"

    def __str__(self) -> str:
        return self.value


class Operation(Enum):
    """Mutating operations gated by phase."""
    ADD_OPTION = "add_option"
    OPEN_MARKET = "open_market"
    STAKE = "stake"
    SELECT_OPTION = "select_option"
    EXTEND_REVEAL = "extend_reveal_period"
    REVEAL = "reveal"
    INCREMENT_TALLY = "increment_tally"
    CLOSE_SHARE = "close_share_record"


LEGAL_PHASES: Dict[Operation, FrozenSet[MarketPhase]] = {
    Operation.ADD_OPTION: frozenset({MarketPhase.NOT_FUNDED, MarketPhase.OPEN}),
    Operation.OPEN_MARKET: frozenset({MarketPhase.NOT_FUNDED}),
    Operation.STAKE: frozenset({MarketPhase.OPEN}),
    Operation.SELECT_OPTION: frozenset({MarketPhase.OPEN, MarketPhase.REVEALING}),
    Operation.EXTEND_REVEAL: frozenset({MarketPhase.OPEN, MarketPhase.REVEALING}),
    Operation.REVEAL: frozenset({MarketPhase.REVEALING, MarketPhase.RESOLVED}),
    Operation.INCREMENT_TALLY: frozenset({MarketPhase.REVEALING}),
    Operation.CLOSE_SHARE: frozenset({MarketPhase.RESOLVED}),
}


def market_phase(market: Market, now: int) -> MarketPhase:
    """
    Derive the current phase of a market.

    Args:
        market: Market snapshot
        now: Unix timestamp (seconds)

    Returns:
        MarketPhase
    """
    if market.open_timestamp is None:
        return MarketPhase.NOT_FUNDED

    stake_end = market.open_timestamp + market.time_to_stake
    reveal_end = stake_end + market.time_to_reveal

    if market.selected_option is not None and now >= reveal_end:
        return MarketPhase.RESOLVED
    if stake_end <= now < reveal_end:
        return MarketPhase.REVEALING
    if market.open_timestamp <= now < stake_end:
        return MarketPhase.OPEN
    return MarketPhase.NOT_FUNDED


def is_opened(market: Market) -> bool:
    """Whether open_timestamp has been set."""
    return market.open_timestamp is not None


def stake_period_over(market: Market, now: int) -> bool:
    """True once an opened market's stake period has ended."""
    return market.open_timestamp is not None and now >= market.stake_end


def awaiting_selection(market: Market, now: int) -> bool:
    """
    Reveal window elapsed without a winner.

    market_phase() reports NOT_FUNDED here; the market can still be
    resolved by selecting a winner.
    """
    return (
        market.open_timestamp is not None
        and market.selected_option is None
        and now >= market.reveal_end
    )


def is_legal(operation: Operation, market: Market, now: int) -> bool:
    """Check whether an operation is legal for the market at time now."""
    phase = market_phase(market, now)

    if operation == Operation.ADD_OPTION:
        # An opened market never accepts options after staking closes
        return phase in LEGAL_PHASES[operation] and not stake_period_over(market, now)
    if operation == Operation.OPEN_MARKET:
        return not is_opened(market) and market.selected_option is None
    if operation == Operation.SELECT_OPTION:
        if market.selected_option is not None:
            return False
        return phase in LEGAL_PHASES[operation] or awaiting_selection(market, now)

    return phase in LEGAL_PHASES[operation]


def require_phase(operation: Operation, market: Market, now: int) -> MarketPhase:
    """
    Raise InvalidPhaseError unless the operation is legal now.

    Returns:
        The current phase
    """
    phase = market_phase(market, now)
    if not is_legal(operation, market, now):
        raise InvalidPhaseError(operation.value, phase)
    return phase
