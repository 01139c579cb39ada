"""
convictionmarket/client.py

Caller-facing API for conviction markets.

One ConvictionMarketClient acts for one participant (wallet). Every
mutating call validates its input locally, submits one instruction, and
for confidential operations waits for the computation to finalize before
returning. Errors reported by a computation are raised as the matching
ConvictionMarketError.

Usage:
    ledger = InMemoryLedger()
    client = ConvictionMarketClient(ledger, Wallet.generate())

    await client.init_balance()
    await client.mint_credits(1_000)
    record = await client.stake(market, option_index=1, amount=400)
    ...
    record = await client.reveal(market, record.share_id)
    await client.increment_tally(market, record.share_id)
    ...
    record = await client.close_share_record(market, record.share_id)
"""

import logging
from typing import Dict, List, Optional, Tuple, Type, TypeVar, Union

from .addresses import (
    derive_market_address,
    derive_option_address,
    derive_share_record_address,
    derive_token_account_address,
    derive_vote_credit_address,
)
from .computation import ComputationDispatcher, ComputationRequest
from .config import U16_MAX, U64_MAX, ClientConfig, MultiStakePolicy
from .encryption import (
    EncryptionContext,
    Wallet,
    X25519Keypair,
    derive_context,
    derive_encryption_keypair,
)
from .errors import (
    AccountNotFoundError,
    ComputationPendingError,
    DecryptionError,
    InvalidPhaseError,
    ValidationError,
    error_from_dict,
)
from .finalization import FinalizationWaiter
from .ledger.base import Instruction, Ledger
from .ledger.program import validate_option_name
from .metadata import MetadataStore
from .phase import MarketPhase, Operation, market_phase, require_phase
from .rewards import RewardDistribution, RewardEngine
from .state import Market, MarketOption, ShareRecord, TokenAccount, VoteCreditBalance

logger = logging.getLogger("convictionmarket.client")

T = TypeVar("T")
MarketRef = Union[bytes, Market]


def _positive_u64(name: str, value: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 < value <= U64_MAX:
        raise ValidationError(f"{name} must be a positive u64, got {value!r}")
    return value


def _aborted_stake(record: ShareRecord) -> bool:
    return not record.is_staked and not record.locked


class ConvictionMarketClient:
    """
    Conviction market operations on behalf of one wallet.

    Attributes:
        ledger: Ledger collaborator
        wallet: Signing identity
        keypair: X25519 keypair (derived from the wallet unless given)
        config: ClientConfig (waiter budget, policy)
        metadata: Optional MetadataStore for display names
    """

    def __init__(
        self,
        ledger: Ledger,
        wallet: Wallet,
        keypair: Optional[X25519Keypair] = None,
        config: Optional[ClientConfig] = None,
        metadata: Optional[MetadataStore] = None,
    ):
        self.ledger = ledger
        self.wallet = wallet
        self.keypair = keypair or derive_encryption_keypair(wallet)
        self.config = config or ClientConfig()
        if metadata is None and self.config.metadata_path:
            metadata = MetadataStore(self.config.metadata_path)
        self.metadata = metadata
        self.waiter = FinalizationWaiter(ledger, self.config.waiter, self.config.program_id)
        self.reward_engine = RewardEngine()

        self._context: Optional[EncryptionContext] = None
        self._dispatcher: Optional[ComputationDispatcher] = None

    @property
    def public_key(self) -> bytes:
        return self.wallet.public_key

    @property
    def program_id(self) -> bytes:
        return self.config.program_id

    # ========================================================================
    # KEYS AND CONTEXT
    # ========================================================================

    def save_keypair(self, path) -> None:
        self.keypair.save(path)

    @classmethod
    def with_saved_keypair(
        cls, ledger: Ledger, wallet: Wallet, path, **kwargs
    ) -> "ConvictionMarketClient":
        """Client using a keypair previously written by save_keypair()."""
        return cls(ledger, wallet, keypair=X25519Keypair.load(path), **kwargs)

    async def encryption_context(self) -> EncryptionContext:
        if self._context is None:
            cluster_key = await self.ledger.get_cluster_public_key()
            self._context = derive_context(self.keypair.secret_key, cluster_key)
        return self._context

    async def _get_dispatcher(self) -> ComputationDispatcher:
        if self._dispatcher is None:
            self._dispatcher = ComputationDispatcher(await self.encryption_context())
        return self._dispatcher

    # ========================================================================
    # READS
    # ========================================================================

    async def _fetch(self, address: bytes, cls: Type[T], kind: str) -> T:
        account = await self.ledger.get_account(address)
        if account is None or not isinstance(account, cls):
            raise AccountNotFoundError(kind, address)
        return account

    async def get_market(self, market: MarketRef) -> Market:
        address = market.address if isinstance(market, Market) else market
        return await self._fetch(address, Market, "market")

    async def get_option(self, market: MarketRef, option_index: int) -> MarketOption:
        address = market.address if isinstance(market, Market) else market
        return await self._fetch(
            derive_option_address(address, option_index, self.program_id),
            MarketOption,
            "option",
        )

    async def list_options(self, market: MarketRef) -> List[MarketOption]:
        market = await self.get_market(market)
        return [
            await self.get_option(market, index)
            for index in range(1, market.total_options + 1)
        ]

    async def get_market_phase(self, market: MarketRef, now: Optional[int] = None) -> MarketPhase:
        """Current phase of a market; now defaults to the ledger clock."""
        if not isinstance(market, Market):
            market = await self.get_market(market)
        if now is None:
            now = await self.ledger.get_time()
        return market_phase(market, now)

    async def get_share_record(
        self, market: MarketRef, share_id: int = 0, owner: Optional[bytes] = None
    ) -> ShareRecord:
        address = market.address if isinstance(market, Market) else market
        return await self._fetch(
            derive_share_record_address(
                owner or self.public_key, address, share_id, self.program_id
            ),
            ShareRecord,
            "share record",
        )

    async def share_records(self, market: MarketRef) -> List[ShareRecord]:
        """This wallet's records in a market, in share id order."""
        records, _ = await self._scan_share_records(market)
        return records

    async def _scan_share_records(self, market: MarketRef) -> Tuple[List[ShareRecord], Optional[int]]:
        """Own records plus the first unused share id (None if all are used)."""
        address = market.address if isinstance(market, Market) else market
        records = []
        for share_id in range(self.config.policy.max_share_records):
            record = await self.ledger.get_account(
                derive_share_record_address(self.public_key, address, share_id, self.program_id)
            )
            if record is None:
                return records, share_id
            records.append(record)
        return records, None

    async def get_token_balance(self, owner: Optional[bytes] = None) -> int:
        """Plaintext settlement/reward token units held by owner."""
        account = await self.ledger.get_account(
            derive_token_account_address(owner or self.public_key, self.program_id)
        )
        return account.amount if isinstance(account, TokenAccount) else 0

    async def get_balance(self) -> int:
        """Decrypt this wallet's vote-credit balance."""
        balance = await self._fetch(
            derive_vote_credit_address(self.public_key, self.program_id),
            VoteCreditBalance,
            "vote credit balance",
        )
        if not balance.is_initialized:
            raise ComputationPendingError("Vote credit balance is not initialized yet")
        context = await self.encryption_context()
        (amount,) = context.decrypt([balance.encrypted_balance], balance.state_nonce)
        return amount

    async def get_share_position(self, market: MarketRef, share_id: int = 0) -> Tuple[int, int]:
        """
        Decrypt one of this wallet's records.

        Returns:
            (amount, option_index); amount is 0 if the stake failed
        """
        record = await self.get_share_record(market, share_id)
        if not record.is_staked:
            raise ComputationPendingError("Stake has not been finalized yet")
        context = await self.encryption_context()
        amount, option = context.decrypt(record.encrypted_state, record.state_nonce)
        return amount, option

    async def reward_distribution(
        self, market: MarketRef, records: List[ShareRecord]
    ) -> RewardDistribution:
        """
        Recompute a resolved market's payouts from ledger state.

        records may come from any owners; ineligible ones are ignored.
        """
        market = await self.get_market(market)
        total = None
        if market.selected_option is not None:
            winning = await self.get_option(market, market.selected_option)
            total = winning.total_score or 0
        return self.reward_engine.distribute(market, records, total)

    # ========================================================================
    # SUBMISSION
    # ========================================================================

    async def _submit(
        self,
        name: str,
        args: Optional[Dict] = None,
        computation: Optional[ComputationRequest] = None,
    ) -> str:
        instruction = Instruction(
            name=name, signer=self.public_key, args=args or {}, computation=computation
        )
        return await self.ledger.send_transaction(instruction)

    async def _submit_computation(
        self, name: str, args: Dict, request: ComputationRequest
    ) -> str:
        """
        Submit, then wait for the computation to finalize.

        Returns:
            Signature of the finalization transaction
        """
        dispatcher = await self._get_dispatcher()
        try:
            await self._submit(name, args, request)
        except Exception:
            dispatcher.release(request)
            raise

        # On FinalizationTimeout the offset stays in flight: it may still land
        signature = await self.waiter.await_one(request.offset)
        dispatcher.release(request)

        tx = await self.ledger.get_transaction(signature)
        if tx is not None and tx.err is not None:
            raise error_from_dict(tx.err)
        return signature

    def _remember(self, address: bytes, kind: str, **fields) -> None:
        if self.metadata is None:
            return
        if not self.metadata.put(address, kind, **fields):
            logger.warning(f"Metadata for {kind} {address.hex()[:16]} not persisted")

    # ========================================================================
    # MARKETS
    # ========================================================================

    async def create_market(
        self,
        reward_amount: int,
        time_to_stake: int,
        time_to_reveal: int,
        max_options: int,
        index: Optional[int] = None,
        market_authority: Optional[bytes] = None,
        name: str = "",
        description: str = "",
    ) -> bytes:
        """
        Create a market owned by this wallet.

        Args:
            index: Per-creator market index; the first unused one if None

        Returns:
            Market address
        """
        _positive_u64("time_to_stake", time_to_stake)
        _positive_u64("time_to_reveal", time_to_reveal)
        if not isinstance(reward_amount, int) or not 0 <= reward_amount <= U64_MAX:
            raise ValidationError(f"reward_amount must be a u64, got {reward_amount!r}")
        if not isinstance(max_options, int) or not 1 <= max_options <= U16_MAX:
            raise ValidationError(f"max_options must be in 1..{U16_MAX}")

        if index is None:
            index = 0
            while await self.ledger.get_account(
                derive_market_address(self.public_key, index, self.program_id)
            ) is not None:
                index += 1

        await self._submit("create_market", {
            "index": index,
            "reward_amount": reward_amount,
            "time_to_stake": time_to_stake,
            "time_to_reveal": time_to_reveal,
            "max_options": max_options,
            "market_authority": market_authority,
        })
        address = derive_market_address(self.public_key, index, self.program_id)
        logger.info(f"Created market {address.hex()[:16]} (index {index})")
        if name or description:
            self._remember(address, "market", name=name, description=description)
        return address

    async def fund_market(self, market: bytes, amount: int) -> str:
        """Move reward tokens from this wallet into the market vault."""
        _positive_u64("amount", amount)
        return await self._submit("fund_market", {"market": market, "amount": amount})

    async def add_option(self, market: bytes, name: str, description: str = "") -> MarketOption:
        validate_option_name(name)
        snapshot = await self.get_market(market)
        if snapshot.total_options >= snapshot.max_options:
            raise ValidationError(
                f"Market already has its maximum of {snapshot.max_options} options"
            )
        phase = require_phase(Operation.ADD_OPTION, snapshot, await self.ledger.get_time())
        if snapshot.open_timestamp is None and not self.config.policy.allow_options_before_open:
            raise InvalidPhaseError(
                Operation.ADD_OPTION.value, phase,
                "Options can only be added once the market is open",
            )

        await self._submit("add_option", {"market": market, "name": name})
        option = await self.get_option(market, snapshot.total_options + 1)
        self._remember(option.address, "option", name=name, description=description, market=market)
        return option

    async def open_market(self, market: bytes, open_timestamp: int) -> Market:
        if open_timestamp <= await self.ledger.get_time():
            raise ValidationError("open_timestamp must be in the future")
        await self._submit("open_market", {"market": market, "open_timestamp": open_timestamp})
        return await self.get_market(market)

    async def select_winning_option(self, market: bytes, option_index: int) -> Market:
        """
        Resolve the winner. Selecting while the market is still open
        closes staking immediately.
        """
        snapshot = await self.get_market(market)
        if not isinstance(option_index, int) or not 1 <= option_index <= snapshot.total_options:
            raise ValidationError(f"Invalid option index {option_index}")
        require_phase(Operation.SELECT_OPTION, snapshot, await self.ledger.get_time())
        await self._submit("select_option", {"market": market, "option_index": option_index})
        return await self.get_market(market)

    async def extend_reveal_period(self, market: bytes, new_time_to_reveal: int) -> Market:
        snapshot = await self.get_market(market)
        _positive_u64("new_time_to_reveal", new_time_to_reveal)
        require_phase(Operation.EXTEND_REVEAL, snapshot, await self.ledger.get_time())
        if new_time_to_reveal <= snapshot.time_to_reveal:
            raise ValidationError("Reveal period can only be extended")
        await self._submit(
            "extend_reveal_period",
            {"market": market, "new_time_to_reveal": new_time_to_reveal},
        )
        return await self.get_market(market)

    # ========================================================================
    # VOTE CREDITS
    # ========================================================================

    async def init_balance(self) -> str:
        """Create this wallet's encrypted zero balance."""
        request = (await self._get_dispatcher()).init_balance()
        return await self._submit_computation("init_vote_credit_account", {}, request)

    async def mint_credits(self, amount: int) -> int:
        """
        Convert settlement tokens into vote credits.

        Returns:
            The new decrypted balance
        """
        _positive_u64("amount", amount)
        request = (await self._get_dispatcher()).mint_credits(amount)
        await self._submit_computation("mint_credits", {"amount": amount}, request)
        return await self.get_balance()

    async def claim_credits(self, amount: int) -> int:
        """
        Convert vote credits back into settlement tokens.

        Raises:
            InsufficientBalanceError: amount exceeds the balance; nothing moved
        """
        _positive_u64("amount", amount)
        request = (await self._get_dispatcher()).claim_credits(amount)
        await self._submit_computation("claim_credits", {"amount": amount}, request)
        return await self.get_balance()

    async def claim_pending_deposit(self) -> int:
        """
        Recover settlement tokens from a mint whose computation never
        credited them (for example an aborted one).

        Returns:
            The amount refunded
        """
        balance = await self._fetch(
            derive_vote_credit_address(self.public_key, self.program_id),
            VoteCreditBalance,
            "vote credit balance",
        )
        amount = balance.pending_deposit
        await self._submit("claim_pending_deposit")
        if amount:
            logger.info(f"Recovered pending deposit of {amount}")
        return amount

    # ========================================================================
    # SHARE RECORDS
    # ========================================================================

    async def _check_multi_stake(self, records: List[ShareRecord], option_index: int) -> None:
        policy = self.config.policy.multi_stake
        if policy == MultiStakePolicy.UNRESTRICTED or not records:
            return
        if policy == MultiStakePolicy.SINGLE:
            raise ValidationError("Only one share record per market is allowed")

        context = await self.encryption_context()
        for record in records:
            if not record.is_staked:
                raise ComputationPendingError(
                    f"Share record {record.share_id} has a stake still pending"
                )
            try:
                amount, option = context.decrypt(record.encrypted_state, record.state_nonce)
            except DecryptionError:
                logger.warning(f"Cannot read own share record {record.share_id}")
                raise
            if amount > 0 and option == option_index:
                raise ValidationError(
                    f"Share record {record.share_id} already backs option {option_index}"
                )

    async def stake(self, market: bytes, option_index: int, amount: int) -> ShareRecord:
        """
        Stake vote credits on an option without disclosing either.

        Returns:
            The new share record

        Raises:
            InsufficientBalanceError: the computation found too few credits or
                an invalid option; the record exists with a zero stake
        """
        _positive_u64("amount", amount)
        snapshot = await self.get_market(market)
        if not isinstance(option_index, int) or not 1 <= option_index <= snapshot.total_options:
            raise ValidationError(f"Invalid option index {option_index}")
        require_phase(Operation.STAKE, snapshot, await self.ledger.get_time())

        records, share_id = await self._scan_share_records(market)
        # An aborted stake left its record empty; stake into it again
        aborted = [r.share_id for r in records if _aborted_stake(r)]
        if aborted:
            share_id = aborted[0]
        if share_id is None:
            raise ValidationError(
                f"All {self.config.policy.max_share_records} share record ids are used"
            )
        await self._check_multi_stake(
            [r for r in records if not _aborted_stake(r)], option_index
        )

        request = (await self._get_dispatcher()).stake(amount, option_index)
        await self._submit_computation(
            "stake", {"market": market, "share_id": share_id}, request
        )
        logger.info(f"Staked in market {market.hex()[:16]} (share {share_id})")
        return await self.get_share_record(market, share_id)

    async def reveal(
        self, market: bytes, share_id: int = 0, owner: Optional[bytes] = None
    ) -> ShareRecord:
        """
        Disclose a record's amount and option. Anyone may reveal anyone's
        record; owner defaults to this wallet.
        """
        owner = owner or self.public_key
        require_phase(Operation.REVEAL, await self.get_market(market), await self.ledger.get_time())
        request = (await self._get_dispatcher()).reveal()
        await self._submit_computation(
            "reveal", {"market": market, "share_id": share_id, "owner": owner}, request
        )
        return await self.get_share_record(market, share_id, owner)

    async def increment_tally(
        self, market: bytes, share_id: int = 0, owner: Optional[bytes] = None
    ) -> MarketOption:
        """
        Fold a revealed record into its option's aggregate.

        In-time reveals are folded when they finalize, so for those this
        only returns the option.
        """
        owner = owner or self.public_key
        record = await self.get_share_record(market, share_id, owner)
        if not record.total_incremented:
            require_phase(
                Operation.INCREMENT_TALLY, await self.get_market(market),
                await self.ledger.get_time(),
            )
            await self._submit(
                "increment_tally", {"market": market, "share_id": share_id, "owner": owner}
            )
            record = await self.get_share_record(market, share_id, owner)
        return await self.get_option(market, record.revealed_option)

    async def close_share_record(self, market: bytes, share_id: int = 0) -> ShareRecord:
        """
        Return the stake to the vote-credit balance and pay any yield in
        reward tokens.
        """
        require_phase(
            Operation.CLOSE_SHARE, await self.get_market(market), await self.ledger.get_time()
        )
        request = (await self._get_dispatcher()).close()
        await self._submit_computation(
            "close_share_record", {"market": market, "share_id": share_id}, request
        )
        record = await self.get_share_record(market, share_id)
        logger.info(
            f"Closed share {share_id} in market {market.hex()[:16]}: "
            f"yield={record.yield_amount}"
        )
        return record
