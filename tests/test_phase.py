"""
convictionmarket/tests/test_phase.py

Tests for the market lifecycle phase function and operation legality.
"""

import pytest

from convictionmarket.errors import InvalidPhaseError
from convictionmarket.phase import (
    MarketPhase,
    Operation,
    awaiting_selection,
    is_legal,
    market_phase,
    require_phase,
    stake_period_over,
)
from convictionmarket.state import Market


# ============================================================================
# Fixtures
# ============================================================================

def make_market(open_timestamp=1000, time_to_stake=100, time_to_reveal=50, selected=None):
    """Market opening at 1000, stake end 1100, reveal end 1150."""
    return Market(
        address=b"\x01" * 32,
        creator=b"\x02" * 32,
        index=0,
        max_options=4,
        time_to_stake=time_to_stake,
        time_to_reveal=time_to_reveal,
        reward_amount=1000,
        total_options=2,
        open_timestamp=open_timestamp,
        selected_option=selected,
    )


# ============================================================================
# Phase function
# ============================================================================

class TestMarketPhase:
    """Tests for market_phase()."""

    def test_unopened_market_is_not_funded(self):
        market = make_market(open_timestamp=None)
        assert market_phase(market, 0) == MarketPhase.NOT_FUNDED
        assert market_phase(market, 10 ** 9) == MarketPhase.NOT_FUNDED

    def test_before_open_timestamp_is_not_funded(self):
        assert market_phase(make_market(), 999) == MarketPhase.NOT_FUNDED

    def test_boundary_tie_break(self):
        """Boundary timestamps belong to the later phase."""
        market = make_market()
        assert market_phase(market, 1000) == MarketPhase.OPEN
        assert market_phase(market, 1099) == MarketPhase.OPEN
        assert market_phase(market, 1100) == MarketPhase.REVEALING
        assert market_phase(market, 1149) == MarketPhase.REVEALING

        resolved = make_market(selected=1)
        assert market_phase(resolved, 1150) == MarketPhase.RESOLVED

    def test_selected_during_reveal_window_stays_revealing(self):
        market = make_market(selected=2)
        assert market_phase(market, 1120) == MarketPhase.REVEALING
        assert market_phase(market, 1149) == MarketPhase.REVEALING

    def test_reveal_window_elapsed_without_winner(self):
        market = make_market()
        assert market_phase(market, 1150) == MarketPhase.NOT_FUNDED
        assert awaiting_selection(market, 1150)
        assert not awaiting_selection(market, 1149)

    def test_phase_is_deterministic(self):
        market = make_market(selected=1)
        for now in (0, 999, 1000, 1050, 1100, 1149, 1150, 5000):
            assert market_phase(market, now) == market_phase(market, now)

    def test_phase_str(self):
        assert str(MarketPhase.REVEALING) == "revealing"


# ============================================================================
# Legality
# ============================================================================

class TestOperationLegality:
    """Tests for is_legal() and require_phase()."""

    def test_stake_only_while_open(self):
        market = make_market()
        assert not is_legal(Operation.STAKE, market, 999)
        assert is_legal(Operation.STAKE, market, 1000)
        assert is_legal(Operation.STAKE, market, 1099)
        assert not is_legal(Operation.STAKE, market, 1100)

    def test_increment_only_while_revealing(self):
        market = make_market(selected=1)
        assert not is_legal(Operation.INCREMENT_TALLY, market, 1099)
        assert is_legal(Operation.INCREMENT_TALLY, market, 1100)
        assert not is_legal(Operation.INCREMENT_TALLY, market, 1150)

    def test_reveal_while_revealing_or_resolved(self):
        market = make_market(selected=1)
        assert not is_legal(Operation.REVEAL, market, 1050)
        assert is_legal(Operation.REVEAL, market, 1100)
        assert is_legal(Operation.REVEAL, market, 2000)

    def test_close_only_when_resolved(self):
        assert not is_legal(Operation.CLOSE_SHARE, make_market(selected=1), 1149)
        assert is_legal(Operation.CLOSE_SHARE, make_market(selected=1), 1150)
        assert not is_legal(Operation.CLOSE_SHARE, make_market(), 1150)

    def test_select_option(self):
        market = make_market()
        assert is_legal(Operation.SELECT_OPTION, market, 1050)
        assert is_legal(Operation.SELECT_OPTION, market, 1120)
        # Still selectable once the reveal window elapsed
        assert is_legal(Operation.SELECT_OPTION, market, 1200)
        assert not is_legal(Operation.SELECT_OPTION, make_market(open_timestamp=None), 0)

    def test_select_option_only_once(self):
        market = make_market(selected=1)
        assert not is_legal(Operation.SELECT_OPTION, market, 1120)

    def test_add_option(self):
        assert is_legal(Operation.ADD_OPTION, make_market(open_timestamp=None), 0)
        market = make_market()
        assert is_legal(Operation.ADD_OPTION, market, 999)
        assert is_legal(Operation.ADD_OPTION, market, 1099)
        assert not is_legal(Operation.ADD_OPTION, market, 1100)
        # NOT_FUNDED after the reveal window, but staking is long over
        assert not is_legal(Operation.ADD_OPTION, market, 1200)
        assert stake_period_over(market, 1200)

    def test_open_market_only_once(self):
        assert is_legal(Operation.OPEN_MARKET, make_market(open_timestamp=None), 0)
        assert not is_legal(Operation.OPEN_MARKET, make_market(), 500)

    def test_extend_reveal(self):
        market = make_market()
        assert is_legal(Operation.EXTEND_REVEAL, market, 1120)
        assert not is_legal(Operation.EXTEND_REVEAL, market, 1150)

    def test_require_phase_raises(self):
        with pytest.raises(InvalidPhaseError) as exc_info:
            require_phase(Operation.STAKE, make_market(), 1100)

        assert exc_info.value.operation == "stake"
        assert exc_info.value.phase == MarketPhase.REVEALING
        assert exc_info.value.to_dict()["phase"] == "revealing"

    def test_require_phase_returns_phase(self):
        assert require_phase(Operation.STAKE, make_market(), 1000) == MarketPhase.OPEN
