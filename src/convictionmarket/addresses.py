"""
convictionmarket/addresses.py

Deterministic storage addresses for every ledger entity.

An address is sha256 over the length-prefixed seeds, followed by the
program id and a fixed marker. Seeds are a per-kind tag plus keys and
little-endian integers, so identical inputs always give the same address
and different tags cannot collide.

Usage:
    from convictionmarket.addresses import derive_market_address

    market = derive_market_address(creator_pubkey, 0)
    option = derive_option_address(market, 1)
"""

import hashlib
from typing import Sequence

from .config import (
    PROGRAM_ID,
    MARKET_SEED,
    OPTION_SEED,
    SHARE_ACCOUNT_SEED,
    VOTE_TOKEN_ACCOUNT_SEED,
    REWARD_TOKEN_ACCOUNT_SEED,
    MARKET_VAULT_SEED,
    U16_MAX,
    U32_MAX,
    U64_MAX,
)
from .errors import ValidationError

ADDRESS_MARKER = b"ProgramDerivedAddress"
MAX_SEED_LENGTH = 32


def _le(value: int, width: int, limit: int) -> bytes:
    if not 0 <= value <= limit:
        raise ValidationError(f"Value {value} out of range for {width}-byte seed")
    return value.to_bytes(width, "little")


def _key(key: bytes) -> bytes:
    if len(key) != 32:
        raise ValidationError(f"Public key must be 32 bytes, got {len(key)}")
    return bytes(key)


def derive_address(seeds: Sequence[bytes], program_id: bytes = PROGRAM_ID) -> bytes:
    """
    Hash seeds into a 32-byte address.

    Args:
        seeds: Seed byte strings, each at most 32 bytes
        program_id: Owning program

    Returns:
        32-byte address
    """
    h = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValidationError(f"Seed longer than {MAX_SEED_LENGTH} bytes")
        h.update(len(seed).to_bytes(1, "little"))
        h.update(seed)
    h.update(program_id)
    h.update(ADDRESS_MARKER)
    return h.digest()


def derive_market_address(
    creator: bytes, index: int, program_id: bytes = PROGRAM_ID
) -> bytes:
    """Market: (creator, u64 index)."""
    return derive_address(
        [MARKET_SEED, _key(creator), _le(index, 8, U64_MAX)], program_id
    )


def derive_option_address(
    market: bytes, option_index: int, program_id: bytes = PROGRAM_ID
) -> bytes:
    """Option: (market, u16 1-based index)."""
    return derive_address(
        [OPTION_SEED, _key(market), _le(option_index, 2, U16_MAX)], program_id
    )


def derive_share_record_address(
    owner: bytes, market: bytes, share_id: int = 0, program_id: bytes = PROGRAM_ID
) -> bytes:
    """Share record: (owner, market, u32 ordinal)."""
    return derive_address(
        [SHARE_ACCOUNT_SEED, _key(owner), _key(market), _le(share_id, 4, U32_MAX)],
        program_id,
    )


def derive_vote_credit_address(owner: bytes, program_id: bytes = PROGRAM_ID) -> bytes:
    """Vote-credit balance: (owner)."""
    return derive_address([VOTE_TOKEN_ACCOUNT_SEED, _key(owner)], program_id)


def derive_token_account_address(owner: bytes, program_id: bytes = PROGRAM_ID) -> bytes:
    """Plaintext settlement/reward token account: (owner)."""
    return derive_address([REWARD_TOKEN_ACCOUNT_SEED, _key(owner)], program_id)


def derive_market_vault_address(market: bytes, program_id: bytes = PROGRAM_ID) -> bytes:
    """Reward pool held by a market: (market)."""
    return derive_address([MARKET_VAULT_SEED, _key(market)], program_id)
