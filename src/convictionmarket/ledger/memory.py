"""
convictionmarket/ledger/memory.py

In-process ledger hosting the program and a local computation cluster.

Transactions are atomic: if the program rejects an instruction, every
account change it made is rolled back before the error propagates.
Finalization callbacks are recorded as separate transactions at the
cluster log address, each carrying a FinalizeComputationEvent log line.

Usage:
    clock = ManualClock(1_000)
    ledger = InMemoryLedger(clock=clock)
    ledger.airdrop(wallet.public_key, 10_000)

    # Hold computations back to control completion order
    ledger = InMemoryLedger(clock=clock, auto_finalize=False)
    ...
    await ledger.cluster.finalize(offset)
"""

import copy
import logging
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

from ..addresses import derive_token_account_address
from ..config import CLUSTER_LOG_ADDRESS, PROGRAM_ID, MarketPolicy
from ..errors import ConvictionMarketError, LedgerError
from ..finalization import FinalizationEvent
from ..state import TokenAccount
from .base import Instruction, Ledger, SignatureInfo, TransactionRecord, new_signature
from .cluster import LocalComputationCluster
from .program import ConvictionMarketProgram, PendingComputation

logger = logging.getLogger("convictionmarket.ledger.memory")


class SystemClock:
    """Wall-clock time in whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, now: int = 0):
        self._now = now

    def now(self) -> int:
        return self._now

    def set(self, timestamp: int) -> None:
        self._now = timestamp

    def advance(self, seconds: int) -> int:
        self._now += seconds
        return self._now


class InMemoryLedger(Ledger):
    """
    Ledger backed by a dict of accounts.

    Attributes:
        accounts: address -> entity (shared with the program)
        program: ConvictionMarketProgram applying the rules
        cluster: LocalComputationCluster evaluating computations
        auto_finalize: finalize each computation as soon as it is queued
    """

    def __init__(
        self,
        clock=None,
        policy: Optional[MarketPolicy] = None,
        cluster: Optional[LocalComputationCluster] = None,
        auto_finalize: bool = True,
        program_id: bytes = PROGRAM_ID,
    ):
        self.clock = clock or SystemClock()
        self.accounts: Dict[bytes, Any] = {}
        self.program = ConvictionMarketProgram(self.accounts, policy, program_id)
        self.cluster = cluster or LocalComputationCluster()
        self.cluster.attach(self)
        self.auto_finalize = auto_finalize
        self.program_id = program_id

        self._transactions: Dict[str, TransactionRecord] = {}
        self._history: Dict[bytes, List[SignatureInfo]] = defaultdict(list)
        self._slot = 0

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _snapshot(self):
        return copy.deepcopy(self.accounts), dict(self.program.pending)

    def _restore(self, snapshot) -> None:
        accounts, pending = snapshot
        self.accounts.clear()
        self.accounts.update(accounts)
        self.program.pending.clear()
        self.program.pending.update(pending)

    def _record(
        self,
        instruction: str,
        logs: List[str],
        touched: List[bytes],
        err: Optional[Dict[str, Any]] = None,
    ) -> TransactionRecord:
        self._slot += 1
        tx = TransactionRecord(
            signature=new_signature(),
            slot=self._slot,
            instruction=instruction,
            log_messages=list(logs),
            accounts=list(dict.fromkeys(touched)),
            err=err,
        )
        self._transactions[tx.signature] = tx
        info = SignatureInfo(signature=tx.signature, slot=tx.slot)
        for address in tx.accounts:
            self._history[address].append(info)
        return tx

    # ------------------------------------------------------------------
    # Ledger interface
    # ------------------------------------------------------------------

    async def get_account(self, address: bytes) -> Optional[Any]:
        account = self.accounts.get(address)
        return copy.deepcopy(account) if account is not None else None

    async def send_transaction(self, instruction: Instruction) -> str:
        snapshot = self._snapshot()
        try:
            result = self.program.execute(instruction, self.clock.now())
        except ConvictionMarketError as e:
            self._restore(snapshot)
            logger.debug(f"Rejected {instruction.name}: {e}")
            raise

        tx = self._record(
            instruction.name, result.logs, [instruction.signer] + result.accounts
        )
        logger.debug(f"Processed {instruction.name} in slot {tx.slot}")

        if result.queued is not None:
            self.cluster.enqueue(result.queued)
            if self.auto_finalize:
                await self.cluster.finalize(result.queued.offset)
        return tx.signature

    async def get_signatures_for_address(
        self, address: bytes, limit: int = 10
    ) -> List[SignatureInfo]:
        if limit <= 0:
            raise LedgerError(f"Signature limit must be positive, got {limit}")
        return list(reversed(self._history.get(address, [])))[:limit]

    async def get_transaction(self, signature: str) -> Optional[TransactionRecord]:
        tx = self._transactions.get(signature)
        return copy.deepcopy(tx) if tx is not None else None

    async def get_cluster_public_key(self) -> bytes:
        return self.cluster.public_key

    async def get_time(self) -> int:
        return self.clock.now()

    # ------------------------------------------------------------------
    # cluster side
    # ------------------------------------------------------------------

    async def record_finalization(
        self, pending: PendingComputation, outputs: Dict[str, Any]
    ) -> str:
        """
        Apply a computation's outputs and append its finalization event.

        A callback that fails validation is recorded as an aborted
        computation so its accounts are released.
        """
        snapshot = self._snapshot()
        try:
            result = self.program.finalize(pending.offset, outputs)
        except ConvictionMarketError as e:
            self._restore(snapshot)
            logger.warning(f"Callback for computation {pending.offset} failed: {e}")
            result = self.program.finalize(
                pending.offset, {"aborted": True, "reason": str(e)}
            )

        event = FinalizationEvent(offset=pending.offset, program_id=self.program_id)
        err = result.reported_error.to_dict() if result.reported_error else None
        tx = self._record(
            f"callback:{pending.definition.value}",
            result.logs + [event.to_log_line()],
            [CLUSTER_LOG_ADDRESS] + result.accounts,
            err,
        )
        logger.debug(
            f"Finalized computation {pending.offset} in slot {tx.slot}"
            + (f" with error {err['code']}" if err else "")
        )
        return tx.signature

    # ------------------------------------------------------------------
    # test helpers
    # ------------------------------------------------------------------

    def airdrop(self, owner: bytes, amount: int) -> TokenAccount:
        """Credit settlement/reward tokens to owner's token account."""
        address = derive_token_account_address(owner, self.program_id)
        account = self.accounts.get(address)
        if account is None:
            account = TokenAccount(address=address, owner=owner)
            self.accounts[address] = account
        account.amount += amount
        return account

    def transactions(self) -> List[TransactionRecord]:
        return sorted(self._transactions.values(), key=lambda tx: tx.slot)
