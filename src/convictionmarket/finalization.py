"""
convictionmarket/finalization.py

Waiting for confidential computations to finalize.

The cluster reports completion by appending a FinalizeComputationEvent to
its log address. The event is emitted as a "Program data: <base64>" log
line with the layout:

    discriminator   8 bytes   sha256("event:FinalizeComputationEvent")[:8]
    offset          8 bytes   u64, little-endian
    program_id     32 bytes   program that queued the computation

The ledger gives no ordered push delivery, so the waiter polls the most
recent transactions at the log address until every awaited offset has
been seen, or the attempt budget runs out.

Usage:
    waiter = FinalizationWaiter(ledger, config=WaiterConfig(poll_interval=0.1))
    signature = await waiter.await_one(offset)
    signatures = await waiter.await_batch([offset_a, offset_b])
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

import trio

from .config import (
    CLUSTER_LOG_ADDRESS,
    FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR,
    PROGRAM_DATA_PREFIX,
    PROGRAM_ID,
    U64_MAX,
    WaiterConfig,
)
from .errors import FinalizationTimeout, LedgerError, ValidationError

logger = logging.getLogger("convictionmarket.finalization")

EVENT_SIZE = 8 + 8 + 32


# ============================================================================
# EVENT CODEC
# ============================================================================

@dataclass(frozen=True)
class FinalizationEvent:
    """A computation with this offset, queued by program_id, has finalized."""
    offset: int
    program_id: bytes

    def encode(self) -> bytes:
        return (
            FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR
            + self.offset.to_bytes(8, "little")
            + self.program_id
        )

    def to_log_line(self) -> str:
        return PROGRAM_DATA_PREFIX + base64.b64encode(self.encode()).decode("ascii")

    @classmethod
    def decode(cls, data: bytes) -> Optional["FinalizationEvent"]:
        """Parse event bytes; None if they are not a finalization event."""
        if len(data) < EVENT_SIZE:
            return None
        if data[:8] != FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR:
            return None
        return cls(
            offset=int.from_bytes(data[8:16], "little"),
            program_id=bytes(data[16:48]),
        )


def parse_finalization_events(log_messages: Iterable[str]) -> Iterator[FinalizationEvent]:
    """Yield every finalization event found in a transaction's logs."""
    for line in log_messages:
        if PROGRAM_DATA_PREFIX not in line:
            continue
        payload = line.split(PROGRAM_DATA_PREFIX, 1)[1].strip()
        if not payload:
            continue
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            logger.debug(f"Skipping undecodable program data: {payload[:32]}")
            continue
        event = FinalizationEvent.decode(data)
        if event is not None:
            yield event


# ============================================================================
# WAITER
# ============================================================================

class FinalizationWaiter:
    """
    Polls the cluster log for finalization events.

    No ordering is assumed between offsets: each is recorded the moment a
    matching event is seen, and the wait ends once none are outstanding.
    """

    def __init__(
        self,
        ledger,
        config: Optional[WaiterConfig] = None,
        program_id: bytes = PROGRAM_ID,
        log_address: bytes = CLUSTER_LOG_ADDRESS,
    ):
        """
        Args:
            ledger: Ledger exposing get_signatures_for_address/get_transaction
            config: Polling budget (defaults to ~2 minutes)
            program_id: Only events from this program are accepted
            log_address: Address whose transactions carry the events
        """
        self.ledger = ledger
        self.config = config or WaiterConfig()
        self.program_id = program_id
        self.log_address = log_address

    async def _scan(self, outstanding: Set[int]) -> Dict[int, str]:
        """One pass over the recent transaction window."""
        found: Dict[int, str] = {}
        signatures = await self.ledger.get_signatures_for_address(
            self.log_address, limit=self.config.transaction_count_limit
        )
        for info in signatures:
            tx = await self.ledger.get_transaction(info.signature)
            if tx is None:
                continue
            for event in parse_finalization_events(tx.log_messages):
                if event.program_id != self.program_id:
                    continue
                if event.offset in outstanding and event.offset not in found:
                    found[event.offset] = info.signature
            if len(found) == len(outstanding):
                break
        return found

    async def await_batch(
        self,
        offsets: Iterable[int],
        on_finalized: Optional[Callable[[int, str], None]] = None,
    ) -> Dict[int, str]:
        """
        Wait until every offset has finalized.

        Args:
            offsets: Computation offsets to wait for
            on_finalized: Called with (offset, signature) as each one lands

        Returns:
            Dict mapping offset -> finalization transaction signature

        Raises:
            FinalizationTimeout: offsets still outstanding after max_attempts;
                the computations may still complete
        """
        outstanding = set(offsets)
        for offset in outstanding:
            if not 0 <= offset <= U64_MAX:
                raise ValidationError(f"Computation offset is not a u64: {offset}")

        results: Dict[int, str] = {}
        if not outstanding:
            return results

        attempts = self.config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                found = await self._scan(outstanding)
            except LedgerError as e:
                logger.warning(f"Finalization poll {attempt}/{attempts} failed: {e}")
                found = {}

            for offset, signature in found.items():
                outstanding.discard(offset)
                results[offset] = signature
                logger.info(f"Computation {offset} finalized in {signature[:16]}")
                if on_finalized is not None:
                    on_finalized(offset, signature)

            if not outstanding:
                return results

            logger.debug(
                f"Poll {attempt}/{attempts}: {len(outstanding)} computations outstanding"
            )
            if attempt < attempts:
                await trio.sleep(self.config.poll_interval)

        raise FinalizationTimeout(outstanding, attempts, results)

    async def await_one(self, offset: int) -> str:
        """Wait for a single computation; returns its finalization signature."""
        results = await self.await_batch([offset])
        return results[offset]

    async def await_many(self, offsets: List[int]) -> List[str]:
        """Signatures in the order the offsets were given."""
        results = await self.await_batch(offsets)
        return [results[o] for o in offsets]
