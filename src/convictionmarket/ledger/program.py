"""
convictionmarket/ledger/program.py

Ledger-side rules for conviction markets.

ConvictionMarketProgram validates and applies instructions against the
ledger's account store. Instructions that need confidential computation
are queued as PendingComputation entries; the cluster later hands their
outputs to finalize(), which applies the callback half of the operation.

Accounts touched by a queued computation stay locked until it finalizes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from ..addresses import (
    derive_market_address,
    derive_market_vault_address,
    derive_option_address,
    derive_share_record_address,
    derive_token_account_address,
    derive_vote_credit_address,
)
from ..computation import ArgKind, ComputationDefinition, ComputationRequest
from ..config import (
    MAX_OPTION_NAME_LENGTH,
    PROGRAM_ID,
    U16_MAX,
    U32_MAX,
    U64_MAX,
    MarketPolicy,
)
from ..errors import (
    AbortedComputationError,
    AccountNotFoundError,
    ComputationPendingError,
    ConvictionMarketError,
    DuplicateTransitionError,
    InsufficientBalanceError,
    InsufficientRewardFundingError,
    InvalidPhaseError,
    UnauthorizedError,
    ValidationError,
)
from ..phase import MarketPhase, Operation, require_phase
from ..shares import ShareRecordManager, require_transition
from ..state import (
    Market,
    MarketOption,
    ShareRecord,
    TokenAccount,
    VoteCreditBalance,
)
from .base import Instruction

logger = logging.getLogger("convictionmarket.ledger.program")

T = TypeVar("T")


@dataclass
class PendingComputation:
    """A queued computation and what its callback needs."""
    request: ComputationRequest
    owner: bytes
    accounts: Dict[str, bytes] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def offset(self) -> int:
        return self.request.offset

    @property
    def definition(self) -> ComputationDefinition:
        return self.request.definition


@dataclass
class ExecutionResult:
    """Outcome of an instruction or a computation callback."""
    logs: List[str] = field(default_factory=list)
    accounts: List[bytes] = field(default_factory=list)
    queued: Optional[PendingComputation] = None
    # Error reported by the computation; state changes still stand
    reported_error: Optional[ConvictionMarketError] = None


def _u64(name: str, value: Any, positive: bool = False) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= U64_MAX:
        raise ValidationError(f"{name} must be a u64, got {value!r}")
    if positive and value == 0:
        raise ValidationError(f"{name} must be greater than zero")
    return value


def validate_option_name(name: Any) -> str:
    """Option names are 1..MAX_OPTION_NAME_LENGTH UTF-8 bytes."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Option name must be a non-empty string")
    if len(name.encode("utf-8")) > MAX_OPTION_NAME_LENGTH:
        raise ValidationError(
            f"Option name exceeds {MAX_OPTION_NAME_LENGTH} bytes: {name[:20]!r}..."
        )
    return name


class ConvictionMarketProgram:
    """
    Authoritative instruction processor.

    Usage:
        program = ConvictionMarketProgram(accounts)
        result = program.execute(instruction, now)
        ...
        result = program.finalize(offset, outputs)
    """

    def __init__(
        self,
        accounts: Dict[bytes, Any],
        policy: Optional[MarketPolicy] = None,
        program_id: bytes = PROGRAM_ID,
        manager: Optional[ShareRecordManager] = None,
    ):
        self.accounts = accounts
        self.policy = policy or MarketPolicy()
        self.program_id = program_id
        self.manager = manager or ShareRecordManager()
        self.pending: Dict[int, PendingComputation] = {}
        self.credit_vault = derive_token_account_address(program_id, program_id)

    # ------------------------------------------------------------------
    # account helpers
    # ------------------------------------------------------------------

    def _get(self, address: bytes, cls: Type[T], kind: str) -> T:
        account = self.accounts.get(address)
        if account is None or not isinstance(account, cls):
            raise AccountNotFoundError(kind, address)
        return account

    def _market(self, address: bytes) -> Market:
        return self._get(address, Market, "market")

    def _token_account(self, owner: bytes, address: Optional[bytes] = None) -> TokenAccount:
        """Get or create a plaintext token account."""
        address = address or derive_token_account_address(owner, self.program_id)
        account = self.accounts.get(address)
        if account is None:
            account = TokenAccount(address=address, owner=owner)
            self.accounts[address] = account
        return account

    def _transfer(self, source: TokenAccount, dest: TokenAccount, amount: int) -> None:
        if source.amount < amount:
            raise InsufficientBalanceError(
                f"Token account {source.address.hex()[:16]} holds {source.amount}, "
                f"needs {amount}"
            )
        source.amount -= amount
        dest.amount += amount

    def _balance(self, owner: bytes, require_unlocked: bool = True) -> VoteCreditBalance:
        balance = self._get(
            derive_vote_credit_address(owner, self.program_id),
            VoteCreditBalance,
            "vote credit balance",
        )
        if not balance.is_initialized:
            raise ComputationPendingError("Vote credit balance is not initialized yet")
        if require_unlocked and balance.locked:
            raise ComputationPendingError("Vote credit balance is locked by a pending computation")
        return balance

    def _share(self, owner: bytes, market: bytes, share_id: int) -> ShareRecord:
        record = self._get(
            derive_share_record_address(owner, market, share_id, self.program_id),
            ShareRecord,
            "share record",
        )
        if record.locked:
            raise ComputationPendingError("Share record is locked by a pending computation")
        return record

    def _require_authority(self, market: Market, signer: bytes) -> None:
        if not market.is_authority(signer):
            raise UnauthorizedError("Signer is not the market creator or authority")

    def _queue(
        self,
        ix: Instruction,
        definition: ComputationDefinition,
        owner: bytes,
        accounts: Dict[str, bytes],
        context: Optional[Dict[str, Any]] = None,
    ) -> PendingComputation:
        request = ix.computation
        if request is None or request.definition != definition:
            raise ValidationError(f"{ix.name} requires a {definition.value} computation")
        _u64("computation offset", request.offset)
        if request.offset in self.pending:
            raise ValidationError(f"Computation offset {request.offset} is already pending")
        pending = PendingComputation(
            request=request, owner=owner, accounts=accounts, context=context or {}
        )
        self.pending[request.offset] = pending
        return pending

    @staticmethod
    def _user_pubkey(ix: Instruction) -> bytes:
        keys = ix.computation.values(ArgKind.X25519_PUBKEY) if ix.computation else []
        if not keys:
            raise ValidationError(f"{ix.name} requires the caller's x25519 public key")
        return keys[0]

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def execute(self, ix: Instruction, now: int) -> ExecutionResult:
        """Apply one instruction. Raises on rejection."""
        handler: Optional[Callable[[Instruction, int], ExecutionResult]] = getattr(
            self, f"_ix_{ix.name}", None
        )
        if handler is None:
            raise ValidationError(f"Unknown instruction: {ix.name}")
        result = handler(ix, now)
        result.logs.insert(0, f"Program log: Instruction: {ix.name}")
        return result

    def finalize(self, offset: int, outputs: Dict[str, Any]) -> ExecutionResult:
        """Apply a computation's outputs (the callback half of an operation)."""
        pending = self.pending.pop(offset, None)
        if pending is None:
            raise ValidationError(f"No pending computation with offset {offset}")

        if outputs.get("aborted"):
            self._unlock(pending)
            return ExecutionResult(
                logs=[f"Program log: Computation {offset} aborted"],
                accounts=list(pending.accounts.values()),
                reported_error=AbortedComputationError(
                    outputs.get("reason", "Computation aborted")
                ),
            )

        handler = getattr(self, f"_cb_{pending.definition.name.lower()}")
        result = handler(pending, outputs)
        result.accounts = list(pending.accounts.values())
        result.logs.insert(0, f"Program log: Callback: {pending.definition.value}")
        return result

    def _unlock(self, pending: PendingComputation) -> None:
        for address in pending.accounts.values():
            account = self.accounts.get(address)
            if hasattr(account, "locked"):
                account.locked = False

    # ------------------------------------------------------------------
    # market instructions
    # ------------------------------------------------------------------

    def _ix_create_market(self, ix: Instruction, now: int) -> ExecutionResult:
        a = ix.args
        index = _u64("index", a.get("index", 0))
        reward_amount = _u64("reward_amount", a.get("reward_amount"))
        time_to_stake = _u64("time_to_stake", a.get("time_to_stake"), positive=True)
        time_to_reveal = _u64("time_to_reveal", a.get("time_to_reveal"), positive=True)
        max_options = a.get("max_options")
        if not isinstance(max_options, int) or not 1 <= max_options <= U16_MAX:
            raise ValidationError(f"max_options must be in 1..{U16_MAX}")
        authority = a.get("market_authority")
        if authority is not None and len(authority) != 32:
            raise ValidationError("market_authority must be a 32-byte key")

        address = derive_market_address(ix.signer, index, self.program_id)
        if address in self.accounts:
            raise ValidationError(f"Market index {index} already used by this creator")

        self.accounts[address] = Market(
            address=address,
            creator=ix.signer,
            index=index,
            max_options=max_options,
            time_to_stake=time_to_stake,
            time_to_reveal=time_to_reveal,
            reward_amount=reward_amount,
            market_authority=authority,
        )
        self._token_account(address, derive_market_vault_address(address, self.program_id))
        logger.info(f"Market {address.hex()[:16]} created (index {index})")
        return ExecutionResult(
            logs=[f"Program log: MarketCreated {address.hex()}"], accounts=[address]
        )

    def _ix_fund_market(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        amount = _u64("amount", ix.args.get("amount"), positive=True)
        vault = self._token_account(
            market.address, derive_market_vault_address(market.address, self.program_id)
        )
        self._transfer(self._token_account(ix.signer), vault, amount)
        return ExecutionResult(
            logs=[f"Program log: MarketFunded {amount}"],
            accounts=[market.address, vault.address],
        )

    def _ix_add_option(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        name = validate_option_name(ix.args.get("name"))
        phase = require_phase(Operation.ADD_OPTION, market, now)
        if market.open_timestamp is None and not self.policy.allow_options_before_open:
            raise InvalidPhaseError(
                Operation.ADD_OPTION.value, phase, "Options can only be added once the market is open"
            )
        index = market.total_options + 1
        if index > market.max_options:
            raise ValidationError(f"Market already has its maximum of {market.max_options} options")

        address = derive_option_address(market.address, index, self.program_id)
        self.accounts[address] = MarketOption(
            address=address,
            market=market.address,
            index=index,
            name=name,
            creator=ix.signer,
        )
        market.total_options = index
        return ExecutionResult(
            logs=[f"Program log: OptionAdded {index} {name}"],
            accounts=[market.address, address],
        )

    def _ix_open_market(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        if ix.signer != market.creator:
            raise UnauthorizedError("Only the market creator can open the market")
        require_phase(Operation.OPEN_MARKET, market, now)
        open_timestamp = _u64("open_timestamp", ix.args.get("open_timestamp"))
        if open_timestamp <= now:
            raise ValidationError("open_timestamp must be in the future")
        vault = self._token_account(
            market.address, derive_market_vault_address(market.address, self.program_id)
        )
        if vault.amount < market.reward_amount:
            raise InsufficientRewardFundingError(
                f"Vault holds {vault.amount}, reward is {market.reward_amount}"
            )
        market.open_timestamp = open_timestamp
        logger.info(f"Market {market.address.hex()[:16]} opens at {open_timestamp}")
        return ExecutionResult(
            logs=[f"Program log: MarketOpened {open_timestamp}"], accounts=[market.address]
        )

    def _ix_select_option(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        self._require_authority(market, ix.signer)
        option_index = ix.args.get("option_index")
        if not isinstance(option_index, int) or not 1 <= option_index <= market.total_options:
            raise ValidationError(f"Invalid option index {option_index}")
        phase = require_phase(Operation.SELECT_OPTION, market, now)

        if phase == MarketPhase.OPEN:
            # Early close: the stake period ends now
            market.time_to_stake = now - market.open_timestamp
        market.selected_option = option_index
        logger.info(
            f"Market {market.address.hex()[:16]} selected option {option_index} ({phase})"
        )
        return ExecutionResult(
            logs=[f"Program log: OptionSelected {option_index}"], accounts=[market.address]
        )

    def _ix_extend_reveal_period(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        self._require_authority(market, ix.signer)
        require_phase(Operation.EXTEND_REVEAL, market, now)
        new_time = _u64("new_time_to_reveal", ix.args.get("new_time_to_reveal"))
        if new_time <= market.time_to_reveal:
            raise ValidationError("Reveal period can only be extended")
        market.time_to_reveal = new_time
        return ExecutionResult(
            logs=[f"Program log: RevealPeriodExtended {new_time}"], accounts=[market.address]
        )

    # ------------------------------------------------------------------
    # vote credits
    # ------------------------------------------------------------------

    def _ix_init_vote_credit_account(self, ix: Instruction, now: int) -> ExecutionResult:
        address = derive_vote_credit_address(ix.signer, self.program_id)
        existing = self.accounts.get(address)
        if existing is not None:
            if existing.locked:
                raise ComputationPendingError("Balance initialization already pending")
            raise DuplicateTransitionError("init_balance", "initialized")
        balance = VoteCreditBalance(
            address=address, owner=ix.signer, user_pubkey=self._user_pubkey(ix), locked=True
        )
        self.accounts[address] = balance
        pending = self._queue(
            ix, ComputationDefinition.INIT_VOTE_TOKEN_ACCOUNT, ix.signer, {"balance": address}
        )
        return ExecutionResult(accounts=[address], queued=pending)

    def _ix_mint_credits(self, ix: Instruction, now: int) -> ExecutionResult:
        amount = _u64("amount", ix.args.get("amount"), positive=True)
        balance = self._balance(ix.signer)
        self._transfer(self._token_account(ix.signer), self._token_account(
            self.program_id, self.credit_vault), amount)
        balance.pending_deposit += amount
        balance.locked = True
        pending = self._queue(
            ix, ComputationDefinition.BUY_VOTE_TOKENS, ix.signer,
            {"balance": balance.address}, {"amount": amount},
        )
        return ExecutionResult(accounts=[balance.address], queued=pending)

    def _ix_claim_credits(self, ix: Instruction, now: int) -> ExecutionResult:
        amount = _u64("amount", ix.args.get("amount"), positive=True)
        balance = self._balance(ix.signer)
        balance.locked = True
        pending = self._queue(
            ix, ComputationDefinition.CLAIM_VOTE_TOKENS, ix.signer,
            {"balance": balance.address}, {"amount": amount},
        )
        return ExecutionResult(accounts=[balance.address], queued=pending)

    def _ix_claim_pending_deposit(self, ix: Instruction, now: int) -> ExecutionResult:
        """Refund settlement tokens a mint moved in but never credited."""
        balance = self._balance(ix.signer)
        amount = balance.pending_deposit
        if amount == 0:
            return ExecutionResult(
                logs=["Program log: NoPendingDeposit"], accounts=[balance.address]
            )
        self._transfer(
            self._token_account(self.program_id, self.credit_vault),
            self._token_account(ix.signer),
            amount,
        )
        balance.pending_deposit = 0
        logger.info(f"Refunded pending deposit of {amount} to {ix.signer.hex()[:16]}")
        return ExecutionResult(
            logs=[f"Program log: PendingDepositClaimed {amount}"],
            accounts=[balance.address, self.credit_vault],
        )

    # ------------------------------------------------------------------
    # share records
    # ------------------------------------------------------------------

    def _share_id(self, ix: Instruction) -> int:
        share_id = ix.args.get("share_id", 0)
        if not isinstance(share_id, int) or not 0 <= share_id <= U32_MAX:
            raise ValidationError(f"share_id must be a u32, got {share_id!r}")
        return share_id

    def _ix_stake(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        share_id = self._share_id(ix)
        require_phase(Operation.STAKE, market, now)
        balance = self._balance(ix.signer)
        user_pubkey = self._user_pubkey(ix)
        if user_pubkey != balance.user_pubkey:
            raise ValidationError("Stake must be encrypted with the balance's key")

        address = derive_share_record_address(ix.signer, market.address, share_id, self.program_id)
        record = self.accounts.get(address)
        if record is not None:
            if record.locked:
                raise ComputationPendingError("Stake already pending for this share record")
            require_transition("stake", record)
        else:
            record = ShareRecord(
                address=address,
                owner=ix.signer,
                market=market.address,
                share_id=share_id,
                user_pubkey=user_pubkey,
            )
            self.accounts[address] = record

        record.locked = True
        balance.locked = True
        pending = self._queue(
            ix, ComputationDefinition.STAKE, ix.signer,
            {"share": address, "balance": balance.address, "market": market.address},
            {"requested_at": now},
        )
        return ExecutionResult(accounts=[address, balance.address], queued=pending)

    def _ix_reveal(self, ix: Instruction, now: int) -> ExecutionResult:
        # Permissionless: anyone may trigger the reveal of anyone's record
        owner = ix.args.get("owner", ix.signer)
        market = self._market(ix.args["market"])
        record = self._share(owner, market.address, self._share_id(ix))
        require_phase(Operation.REVEAL, market, now)
        require_transition("reveal", record)

        record.locked = True
        pending = self._queue(
            ix, ComputationDefinition.REVEAL_SHARES, owner,
            {"share": record.address, "market": market.address},
            {"requested_at": now},
        )
        return ExecutionResult(accounts=[record.address], queued=pending)

    def _ix_increment_tally(self, ix: Instruction, now: int) -> ExecutionResult:
        owner = ix.args.get("owner", ix.signer)
        market = self._market(ix.args["market"])
        record = self._share(owner, market.address, self._share_id(ix))
        if record.total_incremented:
            return ExecutionResult(
                logs=["Program log: TallyAlreadyCounted"], accounts=[record.address]
            )
        require_transition("increment_tally", record)
        require_phase(Operation.INCREMENT_TALLY, market, now)

        option = self._get(
            derive_option_address(market.address, record.revealed_option, self.program_id),
            MarketOption,
            "option",
        )
        self.manager.apply_tally_increment(record, option)
        return ExecutionResult(
            logs=[f"Program log: TallyIncremented option={option.index} "
                  f"shares={option.total_shares} score={option.total_score}"],
            accounts=[record.address, option.address],
        )

    def _ix_close_share_record(self, ix: Instruction, now: int) -> ExecutionResult:
        market = self._market(ix.args["market"])
        record = self._share(ix.signer, market.address, self._share_id(ix))
        require_phase(Operation.CLOSE_SHARE, market, now)
        require_transition("close", record)
        balance = self._balance(ix.signer)
        # In-time reveals still finalizing would change the winning total
        if self._reveals_pending(market.address):
            raise ComputationPendingError("Reveals in this market are still finalizing")

        winning = self.accounts.get(
            derive_option_address(market.address, market.selected_option, self.program_id)
        )
        outcome = self.manager.plan_close(record, market, winning)
        vault_address = derive_market_vault_address(market.address, self.program_id)

        # Latched and paid by the callback; an aborted close leaves the record open
        record.locked = True
        balance.locked = True
        pending = self._queue(
            ix, ComputationDefinition.CLOSE_SHARE_ACCOUNT, ix.signer,
            {"share": record.address, "balance": balance.address, "vault": vault_address},
            {"stake_returned": outcome.stake_returned, "outcome": outcome},
        )
        return ExecutionResult(
            logs=[f"Program log: ShareClosing stake={outcome.stake_returned} "
                  f"yield={outcome.yield_amount}"],
            accounts=[record.address, balance.address, vault_address],
            queued=pending,
        )

    def _reveals_pending(self, market: bytes) -> bool:
        return any(
            p.definition == ComputationDefinition.REVEAL_SHARES
            and p.accounts.get("market") == market
            for p in self.pending.values()
        )

    # ------------------------------------------------------------------
    # computation callbacks
    # ------------------------------------------------------------------

    def _set_balance(self, pending: PendingComputation, outputs: Dict[str, Any]) -> VoteCreditBalance:
        balance = self.accounts[pending.accounts["balance"]]
        ciphertexts, nonce = outputs["balance"]
        balance.encrypted_balance = ciphertexts[0]
        balance.state_nonce = nonce
        balance.locked = False
        return balance

    def _cb_init_vote_token_account(self, pending, outputs) -> ExecutionResult:
        self._set_balance(pending, outputs)
        return ExecutionResult(logs=["Program log: VoteCreditAccountInitialized"])

    def _cb_buy_vote_tokens(self, pending, outputs) -> ExecutionResult:
        balance = self.accounts[pending.accounts["balance"]]
        amount = outputs["amount"]
        if amount > balance.pending_deposit:
            balance.locked = False
            return ExecutionResult(reported_error=InsufficientBalanceError(
                f"Minted {amount} exceeds pending deposit {balance.pending_deposit}"
            ))
        balance.pending_deposit -= amount
        self._set_balance(pending, outputs)
        return ExecutionResult(logs=[f"Program log: VoteCreditsMinted {amount}"])

    def _cb_claim_vote_tokens(self, pending, outputs) -> ExecutionResult:
        self._set_balance(pending, outputs)
        if outputs["error"]:
            return ExecutionResult(reported_error=InsufficientBalanceError(
                f"Claim of {pending.context['amount']} exceeds vote credit balance"
            ))
        amount = outputs["amount"]
        self._transfer(
            self._token_account(self.program_id, self.credit_vault),
            self._token_account(pending.owner),
            amount,
        )
        return ExecutionResult(logs=[f"Program log: VoteCreditsClaimed {amount}"])

    def _cb_stake(self, pending, outputs) -> ExecutionResult:
        record = self.accounts[pending.accounts["share"]]
        ciphertexts, nonce = outputs["share"]
        self.manager.apply_stake(record, ciphertexts, nonce, pending.context["requested_at"])
        record.locked = False
        self._set_balance(pending, outputs)
        if outputs["error"]:
            return ExecutionResult(reported_error=InsufficientBalanceError(
                "Invalid option or not enough vote credits; nothing was staked"
            ))
        return ExecutionResult(logs=["Program log: SharesPurchased"])

    def _cb_reveal_shares(self, pending, outputs) -> ExecutionResult:
        record = self.accounts[pending.accounts["share"]]
        market = self.accounts[pending.accounts["market"]]
        record.locked = False
        self.manager.apply_reveal(
            record, market, outputs["amount"], outputs["option"],
            pending.context["requested_at"],
        )
        logs = [
            f"Program log: SharesRevealed amount={record.revealed_amount} "
            f"option={record.revealed_option} in_time={record.revealed_in_time}"
        ]

        # In-time reveals count towards their option even if this callback
        # lands after the reveal window closed
        option = None
        if record.revealed_in_time and record.revealed_amount:
            option = self.accounts.get(
                derive_option_address(market.address, record.revealed_option, self.program_id)
            )
        if isinstance(option, MarketOption):
            self.manager.apply_tally_increment(record, option)
            pending.accounts["option"] = option.address
            logs.append(
                f"Program log: TallyIncremented option={option.index} "
                f"shares={option.total_shares} score={option.total_score}"
            )
        return ExecutionResult(logs=logs)

    def _cb_close_share_account(self, pending, outputs) -> ExecutionResult:
        record = self.accounts[pending.accounts["share"]]
        outcome = pending.context["outcome"]
        if outcome.yield_amount > 0:
            self._transfer(
                self._token_account(record.market, pending.accounts["vault"]),
                self._token_account(pending.owner),
                outcome.yield_amount,
            )
        self.manager.mark_closed(record, outcome)
        record.locked = False
        self._set_balance(pending, outputs)
        return ExecutionResult(logs=[
            f"Program log: ShareClosed stake={outputs['amount']} yield={outcome.yield_amount}"
        ])

