"""
convictionmarket/state.py

Ledger entities: markets, options, share records, vote-credit balances and
plaintext token accounts.

Entities are plain dataclasses. Byte fields serialize to hex in to_dict()
so snapshots can be returned from API surfaces and stored as JSON.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import List, Optional, Dict, Any


def _encode(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any, hint: str) -> Any:
    if value is None:
        return None
    if "bytes" in hint and "List" in hint:
        return [bytes.fromhex(v) for v in value]
    if "bytes" in hint:
        return bytes.fromhex(value)
    return value


class _Serializable:
    """to_dict/from_dict for dataclasses holding bytes fields."""

    def to_dict(self) -> Dict[str, Any]:
        return {k: _encode(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = _decode(data[f.name], str(f.type))
        return cls(**kwargs)


# ============================================================================
# MARKET
# ============================================================================

@dataclass
class Market(_Serializable):
    """
    A conviction market.

    Timeline (unix seconds):
        open_timestamp
        stake_end   = open_timestamp + time_to_stake
        reveal_end  = stake_end + time_to_reveal

    An absent open_timestamp means the market has not been opened.
    selected_option is set once and never changes.
    """
    address: bytes
    creator: bytes
    index: int
    max_options: int
    time_to_stake: int
    time_to_reveal: int
    reward_amount: int
    total_options: int = 0
    open_timestamp: Optional[int] = None
    selected_option: Optional[int] = None
    market_authority: Optional[bytes] = None

    @property
    def stake_end(self) -> Optional[int]:
        if self.open_timestamp is None:
            return None
        return self.open_timestamp + self.time_to_stake

    @property
    def reveal_end(self) -> Optional[int]:
        if self.open_timestamp is None:
            return None
        return self.open_timestamp + self.time_to_stake + self.time_to_reveal

    def is_authority(self, signer: bytes) -> bool:
        """Creator or delegated market authority."""
        return signer == self.creator or (
            self.market_authority is not None and signer == self.market_authority
        )


@dataclass
class MarketOption(_Serializable):
    """
    A named option, 1-based index within its market.

    total_shares/total_score stay None until the first tally increment.
    """
    address: bytes
    market: bytes
    index: int
    name: str
    creator: bytes
    total_shares: Optional[int] = None
    total_score: Optional[int] = None


# ============================================================================
# SHARE RECORD
# ============================================================================

@dataclass
class ShareRecord(_Serializable):
    """
    One stake position of an owner in a market.

    encrypted_state holds [amount, option] ciphertexts under the owner's
    shared secret with the cluster, encrypted with state_nonce.
    """
    address: bytes
    owner: bytes
    market: bytes
    share_id: int
    user_pubkey: bytes
    encrypted_state: List[bytes] = field(default_factory=list)
    state_nonce: bytes = b""
    staked_at_timestamp: Optional[int] = None
    revealed_amount: Optional[int] = None
    revealed_option: Optional[int] = None
    revealed_score: Optional[int] = None
    revealed_in_time: bool = False
    total_incremented: bool = False
    closed: bool = False
    claimed_yield: bool = False
    yield_amount: int = 0

    # Set while a confidential computation on this record is pending
    locked: bool = False

    @property
    def is_revealed(self) -> bool:
        return self.revealed_amount is not None

    @property
    def is_staked(self) -> bool:
        return self.staked_at_timestamp is not None and bool(self.encrypted_state)


# ============================================================================
# BALANCES
# ============================================================================

@dataclass
class VoteCreditBalance(_Serializable):
    """
    Confidential vote-credit balance of one owner.

    pending_deposit counts settlement units moved in by a mint whose
    computation has not been finalized yet.
    """
    address: bytes
    owner: bytes
    user_pubkey: bytes
    encrypted_balance: Optional[bytes] = None
    state_nonce: bytes = b""
    pending_deposit: int = 0
    locked: bool = False

    @property
    def is_initialized(self) -> bool:
        return self.encrypted_balance is not None


@dataclass
class TokenAccount(_Serializable):
    """Plaintext settlement/reward token account."""
    address: bytes
    owner: bytes
    amount: int = 0
