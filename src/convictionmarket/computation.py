"""
convictionmarket/computation.py

Requests for confidential computations.

Each stateful confidential operation (balance init, mint, claim, stake,
reveal, close) is submitted as a ComputationRequest naming its definition,
a caller-chosen random 64-bit offset, and its arguments. Sensitive
arguments are encrypted under the caller's EncryptionContext before they
leave the process.

The offset is the only correlation key between a request and its
finalization event; it must not be reused while a computation with that
offset is pending.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .config import U16_MAX, U64_MAX, U128_MAX
from .encryption import EncryptionContext, generate_nonce, nonce_to_u128
from .errors import ValidationError

logger = logging.getLogger("convictionmarket.computation")


class ComputationDefinition(Enum):
    """Confidential computation definitions known to the cluster."""
    INIT_VOTE_TOKEN_ACCOUNT = "init_vote_token_account"
    BUY_VOTE_TOKENS = "buy_vote_tokens"
    CLAIM_VOTE_TOKENS = "claim_vote_tokens"
    STAKE = "buy_conviction_market_shares"
    REVEAL_SHARES = "reveal_shares"
    CLOSE_SHARE_ACCOUNT = "close_share_account"


class ArgKind(Enum):
    """Argument encodings understood by the cluster."""
    X25519_PUBKEY = "x25519_pubkey"
    PLAINTEXT_U16 = "plaintext_u16"
    PLAINTEXT_U64 = "plaintext_u64"
    PLAINTEXT_U128 = "plaintext_u128"
    ENCRYPTED_U64 = "encrypted_u64"
    ENCRYPTED_U16 = "encrypted_u16"
    ACCOUNT = "account"


@dataclass
class Argument:
    kind: ArgKind
    value: Any

    def to_dict(self) -> dict:
        value = self.value.hex() if isinstance(self.value, bytes) else self.value
        return {"kind": self.kind.value, "value": value}


class ArgBuilder:
    """
    Fluent builder for computation arguments.

    Usage:
        args = (ArgBuilder()
                .x25519_pubkey(pubkey)
                .plaintext_u128(nonce_int)
                .encrypted_u64(amount_ct)
                .build())
    """

    def __init__(self):
        self._args: List[Argument] = []

    def _plaintext(self, kind: ArgKind, value: int, limit: int) -> "ArgBuilder":
        if not isinstance(value, int) or not 0 <= value <= limit:
            raise ValidationError(f"{kind.value} argument out of range: {value}")
        self._args.append(Argument(kind, value))
        return self

    def x25519_pubkey(self, pubkey: bytes) -> "ArgBuilder":
        if len(pubkey) != 32:
            raise ValidationError("x25519 public key must be 32 bytes")
        self._args.append(Argument(ArgKind.X25519_PUBKEY, bytes(pubkey)))
        return self

    def plaintext_u16(self, value: int) -> "ArgBuilder":
        return self._plaintext(ArgKind.PLAINTEXT_U16, value, U16_MAX)

    def plaintext_u64(self, value: int) -> "ArgBuilder":
        return self._plaintext(ArgKind.PLAINTEXT_U64, value, U64_MAX)

    def plaintext_u128(self, value: int) -> "ArgBuilder":
        return self._plaintext(ArgKind.PLAINTEXT_U128, value, U128_MAX)

    def encrypted_u64(self, ciphertext: bytes) -> "ArgBuilder":
        self._args.append(Argument(ArgKind.ENCRYPTED_U64, bytes(ciphertext)))
        return self

    def encrypted_u16(self, ciphertext: bytes) -> "ArgBuilder":
        self._args.append(Argument(ArgKind.ENCRYPTED_U16, bytes(ciphertext)))
        return self

    def account(self, address: bytes) -> "ArgBuilder":
        self._args.append(Argument(ArgKind.ACCOUNT, bytes(address)))
        return self

    def build(self) -> List[Argument]:
        return list(self._args)


@dataclass
class ComputationRequest:
    """A confidential computation ready to be queued."""
    definition: ComputationDefinition
    offset: int
    args: List[Argument] = field(default_factory=list)
    # Nonce used for the encrypted input, if any
    input_nonce: Optional[bytes] = None

    def values(self, kind: ArgKind) -> List[Any]:
        """All argument values of one kind, in order."""
        return [a.value for a in self.args if a.kind == kind]

    def to_dict(self) -> dict:
        return {
            "definition": self.definition.value,
            "offset": str(self.offset),
            "args": [a.to_dict() for a in self.args],
            "input_nonce": self.input_nonce.hex() if self.input_nonce else None,
        }


def generate_computation_offset() -> int:
    """Random u64 computation offset."""
    return int.from_bytes(os.urandom(8), "little")


class ComputationDispatcher:
    """
    Builds computation requests for one participant.

    Keeps the set of offsets it has handed out and not yet released, per
    definition, and never hands out a pending offset twice.
    """

    def __init__(self, context: EncryptionContext):
        if context.public_key is None:
            raise ValidationError("Dispatcher needs a context built from a keypair")
        self.context = context
        self._in_flight: Dict[ComputationDefinition, Set[int]] = {}

    @property
    def user_pubkey(self) -> bytes:
        return self.context.public_key

    def _offset(self, definition: ComputationDefinition) -> int:
        pending = self._in_flight.setdefault(definition, set())
        offset = generate_computation_offset()
        while offset in pending:
            offset = generate_computation_offset()
        pending.add(offset)
        return offset

    def release(self, request: ComputationRequest) -> None:
        """Forget a request's offset once it finalized or was abandoned."""
        self._in_flight.get(request.definition, set()).discard(request.offset)

    def in_flight(self, definition: Optional[ComputationDefinition] = None) -> Set[int]:
        if definition is not None:
            return set(self._in_flight.get(definition, set()))
        return set().union(*self._in_flight.values()) if self._in_flight else set()

    def init_balance(self) -> ComputationRequest:
        definition = ComputationDefinition.INIT_VOTE_TOKEN_ACCOUNT
        nonce = generate_nonce()
        args = ArgBuilder().x25519_pubkey(self.user_pubkey).plaintext_u128(
            nonce_to_u128(nonce)
        ).build()
        return ComputationRequest(definition, self._offset(definition), args, nonce)

    def mint_credits(self, amount: int) -> ComputationRequest:
        definition = ComputationDefinition.BUY_VOTE_TOKENS
        args = ArgBuilder().x25519_pubkey(self.user_pubkey).plaintext_u64(amount).build()
        return ComputationRequest(definition, self._offset(definition), args)

    def claim_credits(self, amount: int) -> ComputationRequest:
        definition = ComputationDefinition.CLAIM_VOTE_TOKENS
        args = ArgBuilder().x25519_pubkey(self.user_pubkey).plaintext_u64(amount).build()
        return ComputationRequest(definition, self._offset(definition), args)

    def stake(self, amount: int, option: int) -> ComputationRequest:
        """Encrypt (amount, option) under a fresh nonce."""
        if not 0 < amount <= U64_MAX:
            raise ValidationError(f"Stake amount must be a positive u64, got {amount}")
        if not 1 <= option <= U16_MAX:
            raise ValidationError(f"Option index out of range: {option}")
        definition = ComputationDefinition.STAKE
        nonce = generate_nonce()
        amount_ct, option_ct = self.context.encrypt([amount, option], nonce)
        args = (ArgBuilder()
                .x25519_pubkey(self.user_pubkey)
                .plaintext_u128(nonce_to_u128(nonce))
                .encrypted_u64(amount_ct)
                .encrypted_u16(option_ct)
                .build())
        return ComputationRequest(definition, self._offset(definition), args, nonce)

    def reveal(self) -> ComputationRequest:
        definition = ComputationDefinition.REVEAL_SHARES
        args = ArgBuilder().x25519_pubkey(self.user_pubkey).build()
        return ComputationRequest(definition, self._offset(definition), args)

    def close(self) -> ComputationRequest:
        definition = ComputationDefinition.CLOSE_SHARE_ACCOUNT
        args = ArgBuilder().x25519_pubkey(self.user_pubkey).build()
        return ComputationRequest(definition, self._offset(definition), args)
