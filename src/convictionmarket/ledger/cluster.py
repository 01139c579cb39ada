"""
convictionmarket/ledger/cluster.py

In-process stand-in for the multiparty computation cluster.

The cluster owns an X25519 keypair. For each queued computation it
decrypts the inputs it is entitled to, evaluates the computation, and
re-encrypts confidential outputs for the owner under a fresh nonce. The
outputs are handed back to the ledger, which runs the program callback
and appends the finalization event to the cluster log.

Computations complete independently; finalize(offset) lets callers pick
the completion order.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

import trio

from ..computation import ArgKind, ComputationDefinition
from ..encryption import (
    EncryptionContext,
    X25519Keypair,
    generate_nonce,
    shared_secret,
)
from ..errors import DecryptionError, ValidationError
from .program import PendingComputation

logger = logging.getLogger("convictionmarket.ledger.cluster")

Encrypted = Tuple[List[bytes], bytes]


class LocalComputationCluster:
    """
    Evaluates confidential computations for an InMemoryLedger.

    Usage:
        cluster = LocalComputationCluster()
        ledger = InMemoryLedger(cluster=cluster, auto_finalize=False)
        ...
        await cluster.finalize(offset)        # one computation
        await cluster.finalize_all()          # everything queued
    """

    def __init__(self, keypair: Optional[X25519Keypair] = None):
        self.keypair = keypair or X25519Keypair.generate()
        self._queue: "OrderedDict[int, PendingComputation]" = OrderedDict()
        self._ledger = None

    @property
    def public_key(self) -> bytes:
        return self.keypair.public_key

    def attach(self, ledger) -> None:
        self._ledger = ledger

    def enqueue(self, pending: PendingComputation) -> None:
        self._queue[pending.offset] = pending
        logger.debug(f"Queued {pending.definition.value} computation {pending.offset}")

    def pending_offsets(self) -> List[int]:
        return list(self._queue.keys())

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _context(self, user_pubkey: bytes) -> EncryptionContext:
        return EncryptionContext(shared_secret(self.keypair.secret_key, user_pubkey))

    def _seal(self, user_pubkey: bytes, values: List[int]) -> Encrypted:
        nonce = generate_nonce()
        return self._context(user_pubkey).encrypt(values, nonce), nonce

    def _read_balance(self, pending: PendingComputation) -> Tuple[bytes, int]:
        balance = self._ledger.accounts[pending.accounts["balance"]]
        if balance.encrypted_balance is None:
            return balance.user_pubkey, 0
        (amount,) = self._context(balance.user_pubkey).decrypt(
            [balance.encrypted_balance], balance.state_nonce
        )
        return balance.user_pubkey, amount

    # ------------------------------------------------------------------
    # computations
    # ------------------------------------------------------------------

    def compute(self, pending: PendingComputation) -> Dict[str, Any]:
        """Evaluate one computation and return its outputs."""
        request = pending.request
        definition = request.definition

        if definition == ComputationDefinition.INIT_VOTE_TOKEN_ACCOUNT:
            (user_pubkey,) = request.values(ArgKind.X25519_PUBKEY)
            return {"balance": self._seal(user_pubkey, [0])}

        if definition == ComputationDefinition.BUY_VOTE_TOKENS:
            (amount,) = request.values(ArgKind.PLAINTEXT_U64)
            user_pubkey, current = self._read_balance(pending)
            return {"amount": amount, "balance": self._seal(user_pubkey, [current + amount])}

        if definition == ComputationDefinition.CLAIM_VOTE_TOKENS:
            (amount,) = request.values(ArgKind.PLAINTEXT_U64)
            user_pubkey, current = self._read_balance(pending)
            insufficient = amount > current
            remaining = current if insufficient else current - amount
            return {
                "error": insufficient,
                "amount": 0 if insufficient else amount,
                "balance": self._seal(user_pubkey, [remaining]),
            }

        if definition == ComputationDefinition.STAKE:
            return self._compute_stake(pending)

        if definition == ComputationDefinition.REVEAL_SHARES:
            record = self._ledger.accounts[pending.accounts["share"]]
            amount, option = self._context(record.user_pubkey).decrypt(
                record.encrypted_state, record.state_nonce
            )
            return {"amount": amount, "option": option}

        if definition == ComputationDefinition.CLOSE_SHARE_ACCOUNT:
            record = self._ledger.accounts[pending.accounts["share"]]
            returned = pending.context.get("stake_returned")
            if returned is None:
                returned, _ = self._context(record.user_pubkey).decrypt(
                    record.encrypted_state, record.state_nonce
                )
            user_pubkey, current = self._read_balance(pending)
            return {"amount": returned, "balance": self._seal(user_pubkey, [current + returned])}

        raise ValidationError(f"Unknown computation definition {definition}")

    def _compute_stake(self, pending: PendingComputation) -> Dict[str, Any]:
        request = pending.request
        (user_pubkey,) = request.values(ArgKind.X25519_PUBKEY)
        (nonce_int,) = request.values(ArgKind.PLAINTEXT_U128)
        ciphertexts = request.values(ArgKind.ENCRYPTED_U64) + request.values(ArgKind.ENCRYPTED_U16)
        amount, option = self._context(user_pubkey).decrypt(
            ciphertexts, nonce_int.to_bytes(16, "little")
        )

        market = self._ledger.accounts[pending.accounts["market"]]
        _, current = self._read_balance(pending)
        error = amount > current or not 1 <= option <= market.total_options
        staked = 0 if error else amount
        return {
            "error": error,
            "share": self._seal(user_pubkey, [staked, option]),
            "balance": self._seal(user_pubkey, [current - staked]),
        }

    # ------------------------------------------------------------------
    # completion
    # ------------------------------------------------------------------

    async def finalize(self, offset: int) -> str:
        """
        Complete one queued computation.

        Returns:
            Signature of the finalization transaction
        """
        pending = self._queue.pop(offset, None)
        if pending is None:
            raise ValidationError(f"No queued computation with offset {offset}")
        try:
            outputs = self.compute(pending)
        except DecryptionError as e:
            logger.warning(f"Computation {offset} aborted: {e}")
            outputs = {"aborted": True, "reason": str(e)}
        return await self._ledger.record_finalization(pending, outputs)

    async def finalize_all(self) -> List[str]:
        """Complete every queued computation in submission order."""
        signatures = []
        while self._queue:
            offset = next(iter(self._queue))
            signatures.append(await self.finalize(offset))
        return signatures

    async def run(self, delay: float = 0.1, task_status=trio.TASK_STATUS_IGNORED) -> None:
        """Background task finalizing queued computations after delay."""
        task_status.started()
        while True:
            await trio.sleep(delay)
            if self._queue:
                await self.finalize_all()
