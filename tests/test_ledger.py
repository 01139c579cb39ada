"""
convictionmarket/tests/test_ledger.py

Tests for the in-process ledger, program and computation cluster.
"""

import os

import pytest
import trio

from convictionmarket.addresses import (
    derive_market_address,
    derive_share_record_address,
    derive_vote_credit_address,
)
from convictionmarket.computation import ComputationDispatcher
from convictionmarket.config import CLUSTER_LOG_ADDRESS
from convictionmarket.encryption import (
    EncryptionContext,
    Wallet,
    derive_context,
    derive_encryption_keypair,
)
from convictionmarket.errors import ComputationPendingError, ValidationError
from convictionmarket.finalization import parse_finalization_events
from convictionmarket.ledger import InMemoryLedger, Instruction, ManualClock
from convictionmarket.shares import ShareState, share_state


@pytest.fixture
def ledger():
    return InMemoryLedger(clock=ManualClock(900))


async def init_balance(ledger, wallet):
    keypair = derive_encryption_keypair(wallet)
    context = derive_context(keypair.secret_key, await ledger.get_cluster_public_key())
    dispatcher = ComputationDispatcher(context)
    request = dispatcher.init_balance()
    await ledger.send_transaction(
        Instruction("init_vote_credit_account", wallet.public_key, computation=request)
    )
    return dispatcher, request


class TestInMemoryLedger:
    """Transactions, logs and rollback."""

    @pytest.mark.timeout(30)
    def test_finalization_is_logged(self, ledger):
        wallet = Wallet.generate()

        async def run_test():
            _, request = await init_balance(ledger, wallet)
            signatures = await ledger.get_signatures_for_address(CLUSTER_LOG_ADDRESS, limit=5)
            assert len(signatures) == 1
            tx = await ledger.get_transaction(signatures[0].signature)
            events = list(parse_finalization_events(tx.log_messages))
            assert [e.offset for e in events] == [request.offset]
            assert tx.succeeded

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_history_is_newest_first(self, ledger):
        wallet = Wallet.generate()

        async def run_test():
            for index in range(3):
                await ledger.send_transaction(Instruction("create_market", wallet.public_key, {
                    "index": index, "reward_amount": 1, "time_to_stake": 10,
                    "time_to_reveal": 10, "max_options": 2,
                }))
            history = await ledger.get_signatures_for_address(wallet.public_key, limit=2)
            assert [h.slot for h in history] == [3, 2]

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_rejected_instruction_changes_nothing(self, ledger):
        wallet = Wallet.generate()

        async def run_test():
            with pytest.raises(ValidationError):
                await ledger.send_transaction(Instruction("create_market", wallet.public_key, {
                    "index": 0, "reward_amount": 1, "time_to_stake": 0,
                    "time_to_reveal": 10, "max_options": 2,
                }))
            assert await ledger.get_account(derive_market_address(wallet.public_key, 0)) is None
            assert ledger.transactions() == []

            with pytest.raises(ValidationError):
                await ledger.send_transaction(Instruction("no_such_instruction", wallet.public_key))

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_reads_are_snapshots(self, ledger):
        wallet = Wallet.generate()
        ledger.airdrop(wallet.public_key, 5)

        async def run_test():
            await init_balance(ledger, wallet)
            address = derive_vote_credit_address(wallet.public_key)
            snapshot = await ledger.get_account(address)
            snapshot.pending_deposit = 99
            assert (await ledger.get_account(address)).pending_deposit == 0

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_pending_computation_locks_balance(self):
        ledger = InMemoryLedger(clock=ManualClock(900), auto_finalize=False)
        wallet = Wallet.generate()
        ledger.airdrop(wallet.public_key, 10)

        async def run_test():
            dispatcher, _ = await init_balance(ledger, wallet)
            # Not initialized until the computation lands
            with pytest.raises(ComputationPendingError):
                await ledger.send_transaction(Instruction(
                    "mint_credits", wallet.public_key, {"amount": 5},
                    dispatcher.mint_credits(5),
                ))
            await ledger.cluster.finalize_all()

            await ledger.send_transaction(Instruction(
                "mint_credits", wallet.public_key, {"amount": 5}, dispatcher.mint_credits(5),
            ))
            with pytest.raises(ComputationPendingError):
                await ledger.send_transaction(Instruction(
                    "claim_credits", wallet.public_key, {"amount": 1},
                    dispatcher.claim_credits(1),
                ))
            balance = await ledger.get_account(derive_vote_credit_address(wallet.public_key))
            assert balance.locked
            assert balance.pending_deposit == 5

            await ledger.cluster.finalize_all()
            balance = await ledger.get_account(derive_vote_credit_address(wallet.public_key))
            assert not balance.locked
            assert balance.pending_deposit == 0

        trio.run(run_test)

    @pytest.mark.timeout(30)
    def test_undecryptable_stake_is_aborted(self, ledger):
        creator = Wallet.generate()
        wallet = Wallet.generate()
        ledger.airdrop(creator.public_key, 10)
        ledger.airdrop(wallet.public_key, 10)

        async def run_test():
            market = derive_market_address(creator.public_key, 0)
            for name, args in (
                ("create_market", {"index": 0, "reward_amount": 10, "time_to_stake": 100,
                                   "time_to_reveal": 50, "max_options": 2}),
                ("add_option", {"market": market, "name": "yes"}),
                ("fund_market", {"market": market, "amount": 10}),
                ("open_market", {"market": market, "open_timestamp": 1000}),
            ):
                await ledger.send_transaction(Instruction(name, creator.public_key, args))

            dispatcher, _ = await init_balance(ledger, wallet)
            ledger.clock.set(1000)

            # Right public key, wrong shared secret
            bogus = ComputationDispatcher(
                EncryptionContext(os.urandom(32), dispatcher.context.keypair)
            )
            request = bogus.stake(5, 1)
            await ledger.send_transaction(Instruction(
                "stake", wallet.public_key, {"market": market, "share_id": 0}, request,
            ))

            signatures = await ledger.get_signatures_for_address(CLUSTER_LOG_ADDRESS, limit=1)
            tx = await ledger.get_transaction(signatures[0].signature)
            assert tx.err["code"] == "aborted_computation"
            assert [e.offset for e in parse_finalization_events(tx.log_messages)] == [request.offset]

            record = await ledger.get_account(
                derive_share_record_address(wallet.public_key, market, 0)
            )
            assert not record.locked
            assert share_state(record) == ShareState.EMPTY
            balance = await ledger.get_account(derive_vote_credit_address(wallet.public_key))
            assert not balance.locked

        trio.run(run_test)

    def test_finalize_unknown_offset(self, ledger):
        with pytest.raises(ValidationError):
            ledger.program.finalize(12345, {})

    def test_manual_clock(self):
        clock = ManualClock(10)
        assert clock.advance(5) == 15
        clock.set(3)
        assert clock.now() == 3
