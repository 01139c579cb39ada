"""
convictionmarket/ledger/base.py

Ledger interface consumed by the client and the finalization waiter.

The ledger is the authoritative store for markets, options, share records
and balances, keyed by derived addresses, plus an append-only transaction
log. Implementations may be remote; every method is async.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..computation import ComputationRequest


@dataclass
class Instruction:
    """A signed request to the ledger-side program."""
    name: str
    signer: bytes
    args: Dict[str, Any] = field(default_factory=dict)
    computation: Optional[ComputationRequest] = None


@dataclass
class SignatureInfo:
    """Entry in an address's transaction history."""
    signature: str
    slot: int


@dataclass
class TransactionRecord:
    """A processed transaction and its logs."""
    signature: str
    slot: int
    instruction: str
    log_messages: List[str] = field(default_factory=list)
    accounts: List[bytes] = field(default_factory=list)
    err: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.err is None

    def to_dict(self) -> dict:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "instruction": self.instruction,
            "log_messages": list(self.log_messages),
            "accounts": [a.hex() for a in self.accounts],
            "err": self.err,
        }


def new_signature() -> str:
    """Random 64-byte transaction signature, hex encoded."""
    return os.urandom(64).hex()


class Ledger(ABC):
    """Abstract ledger collaborator."""

    @abstractmethod
    async def get_account(self, address: bytes) -> Optional[Any]:
        """Entity stored at address, or None."""

    @abstractmethod
    async def send_transaction(self, instruction: Instruction) -> str:
        """
        Execute an instruction.

        Returns:
            Transaction signature

        Raises:
            ConvictionMarketError: the program rejected the instruction
        """

    @abstractmethod
    async def get_signatures_for_address(
        self, address: bytes, limit: int = 10
    ) -> List[SignatureInfo]:
        """Most recent transactions touching address, newest first."""

    @abstractmethod
    async def get_transaction(self, signature: str) -> Optional[TransactionRecord]:
        """Transaction by signature, or None if unknown."""

    @abstractmethod
    async def get_cluster_public_key(self) -> bytes:
        """X25519 public key of the computation cluster."""

    @abstractmethod
    async def get_time(self) -> int:
        """Ledger clock, unix seconds."""
