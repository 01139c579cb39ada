"""
convictionmarket/tests/test_finalization.py

Tests for the finalization event codec and FinalizationWaiter.
"""

import base64

import pytest
import trio

from convictionmarket.config import (
    FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR,
    PROGRAM_ID,
    WaiterConfig,
)
from convictionmarket.errors import FinalizationTimeout, LedgerError, ValidationError
from convictionmarket.finalization import (
    FinalizationEvent,
    FinalizationWaiter,
    parse_finalization_events,
)
from convictionmarket.ledger.base import SignatureInfo, TransactionRecord


OFFSET_A = 0x1111_2222_3333_4444
OFFSET_B = 0xFFFF_FFFF_FFFF_FFFF


class ScriptedLedger:
    """Cluster log whose events land on given poll attempts."""

    def __init__(self, schedule, program_id=PROGRAM_ID, failing_calls=()):
        self.schedule = schedule
        self.program_id = program_id
        self.failing_calls = set(failing_calls)
        self.calls = 0
        self._history = []
        self._txs = {}

    def _land(self, offset):
        signature = f"sig-{offset}"
        slot = len(self._history) + 1
        self._txs[signature] = TransactionRecord(
            signature=signature,
            slot=slot,
            instruction="callback",
            log_messages=[
                "Program log: Callback",
                FinalizationEvent(offset, self.program_id).to_log_line(),
            ],
        )
        self._history.append(SignatureInfo(signature, slot))

    async def get_signatures_for_address(self, address, limit=10):
        self.calls += 1
        for offset in self.schedule.get(self.calls, []):
            self._land(offset)
        if self.calls in self.failing_calls:
            raise LedgerError("connection reset")
        return list(reversed(self._history))[:limit]

    async def get_transaction(self, signature):
        return self._txs.get(signature)


def fast_config(max_attempts=5, limit=10):
    return WaiterConfig(poll_interval=0.01, max_attempts=max_attempts, transaction_count_limit=limit)


# ============================================================================
# Test event codec
# ============================================================================

class TestFinalizationEvent:
    """Tests for event encoding and log parsing."""

    def test_layout(self):
        data = FinalizationEvent(OFFSET_A, PROGRAM_ID).encode()
        assert len(data) == 48
        assert data[:8] == FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR
        assert int.from_bytes(data[8:16], "little") == OFFSET_A
        assert data[16:] == PROGRAM_ID

    def test_parse_log_line(self):
        event = FinalizationEvent(OFFSET_B, PROGRAM_ID)
        logs = ["Program log: Instruction: callback", event.to_log_line()]
        assert list(parse_finalization_events(logs)) == [event]

    def test_skips_other_program_data(self):
        other = base64.b64encode(b"\x00" * 48).decode()
        logs = [
            f"Program data: {other}",
            "Program data: not base64!!",
            "Program data: ",
            "Program data: " + base64.b64encode(FINALIZE_COMPUTATION_EVENT_DISCRIMINATOR).decode(),
        ]
        assert list(parse_finalization_events(logs)) == []

    def test_decode_rejects_short_data(self):
        assert FinalizationEvent.decode(b"\x00" * 10) is None


# ============================================================================
# Test FinalizationWaiter
# ============================================================================

class TestFinalizationWaiter:
    """Tests for polling the cluster log."""

    @pytest.mark.timeout(30)
    def test_batch_out_of_order(self):
        """B lands first although A was awaited first."""
        ledger = ScriptedLedger({1: [OFFSET_B], 3: [OFFSET_A]})
        waiter = FinalizationWaiter(ledger, fast_config())
        seen = []

        async def run_test():
            return await waiter.await_batch(
                [OFFSET_A, OFFSET_B], on_finalized=lambda o, s: seen.append(o)
            )

        results = trio.run(run_test)

        assert results == {OFFSET_A: f"sig-{OFFSET_A}", OFFSET_B: f"sig-{OFFSET_B}"}
        assert seen == [OFFSET_B, OFFSET_A]
        assert ledger.calls == 3

    @pytest.mark.timeout(30)
    def test_await_one_returns_on_first_hit(self):
        ledger = ScriptedLedger({1: [OFFSET_A]})
        waiter = FinalizationWaiter(ledger, fast_config())

        async def run_test():
            return await waiter.await_one(OFFSET_A)

        assert trio.run(run_test) == f"sig-{OFFSET_A}"
        assert ledger.calls == 1

    @pytest.mark.timeout(30)
    def test_await_many_keeps_order(self):
        ledger = ScriptedLedger({1: [OFFSET_B, OFFSET_A]})
        waiter = FinalizationWaiter(ledger, fast_config())

        async def run_test():
            return await waiter.await_many([OFFSET_A, OFFSET_B])

        assert trio.run(run_test) == [f"sig-{OFFSET_A}", f"sig-{OFFSET_B}"]

    @pytest.mark.timeout(30)
    def test_timeout_reports_missing_and_found(self):
        ledger = ScriptedLedger({1: [OFFSET_A]})
        waiter = FinalizationWaiter(ledger, fast_config(max_attempts=3))

        async def run_test():
            await waiter.await_batch([OFFSET_A, OFFSET_B])

        with pytest.raises(FinalizationTimeout) as exc_info:
            trio.run(run_test)

        error = exc_info.value
        assert error.missing_offsets == [OFFSET_B]
        assert error.found == {OFFSET_A: f"sig-{OFFSET_A}"}
        assert error.attempts == 3
        assert error.retryable
        assert ledger.calls == 3

    @pytest.mark.timeout(30)
    def test_repoll_after_timeout(self):
        """A computation that lands after a timeout is found by a second wait."""
        ledger = ScriptedLedger({4: [OFFSET_B]})
        waiter = FinalizationWaiter(ledger, fast_config(max_attempts=2))

        async def run_test():
            with pytest.raises(FinalizationTimeout) as exc_info:
                await waiter.await_batch([OFFSET_B])
            return await waiter.await_batch(exc_info.value.missing_offsets)

        assert trio.run(run_test) == {OFFSET_B: f"sig-{OFFSET_B}"}

    @pytest.mark.timeout(30)
    def test_ignores_other_programs(self):
        ledger = ScriptedLedger({1: [OFFSET_A]}, program_id=b"\x42" * 32)
        waiter = FinalizationWaiter(ledger, fast_config(max_attempts=2))

        async def run_test():
            await waiter.await_one(OFFSET_A)

        with pytest.raises(FinalizationTimeout):
            trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_scan_window_limit(self):
        """Events older than the scan window are not seen."""
        ledger = ScriptedLedger({1: [OFFSET_A, 1, 2]})
        waiter = FinalizationWaiter(ledger, fast_config(max_attempts=1, limit=2))

        async def run_test():
            await waiter.await_one(OFFSET_A)

        with pytest.raises(FinalizationTimeout):
            trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_ledger_errors_are_retried(self):
        ledger = ScriptedLedger({1: [OFFSET_A]}, failing_calls={1})
        waiter = FinalizationWaiter(ledger, fast_config())

        async def run_test():
            return await waiter.await_one(OFFSET_A)

        assert trio.run(run_test) == f"sig-{OFFSET_A}"
        assert ledger.calls == 2

    def test_invalid_offset(self):
        waiter = FinalizationWaiter(ScriptedLedger({}), fast_config())

        async def run_test():
            await waiter.await_batch([-1])

        with pytest.raises(ValidationError):
            trio.run(run_test)

    def test_empty_batch(self):
        ledger = ScriptedLedger({})
        waiter = FinalizationWaiter(ledger, fast_config())

        async def run_test():
            return await waiter.await_batch([])

        assert trio.run(run_test) == {}
        assert ledger.calls == 0
