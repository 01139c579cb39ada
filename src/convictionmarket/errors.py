"""
convictionmarket/errors.py

Error taxonomy shared by the client, the ledger-side program and the
finalization waiter.

Retry semantics:
- FinalizationTimeout and DuplicateTransitionError: safe to retry by
  re-invoking the same logical operation after refreshing state.
- Everything else: terminal for the attempted operation.
"""

from typing import Any, Dict, Iterable, Optional


class ConvictionMarketError(Exception):
    """Base class for all convictionmarket errors."""
    code = "conviction_market_error"
    retryable = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
        }


class ValidationError(ConvictionMarketError):
    """Malformed input, rejected before any ledger interaction."""
    code = "validation_error"


class InvalidPhaseError(ConvictionMarketError):
    """Operation attempted outside its legal lifecycle phase."""
    code = "invalid_phase"

    def __init__(self, operation: str, phase: Any, message: Optional[str] = None):
        self.operation = operation
        self.phase = phase
        super().__init__(
            message or f"{operation} is not allowed while market is {phase}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        result["phase"] = str(self.phase)
        return result


class DuplicateTransitionError(ConvictionMarketError):
    """Record is already past the requested transition."""
    code = "duplicate_transition"
    retryable = True

    def __init__(self, transition: str, state: Any):
        self.transition = transition
        self.state = state
        super().__init__(f"{transition} already applied (record is {state})")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["transition"] = self.transition
        result["state"] = str(self.state)
        return result


class FinalizationTimeout(ConvictionMarketError):
    """
    Polling budget exhausted while computations were still outstanding.

    The computations may still land; callers can re-poll with
    missing_offsets.
    """
    code = "finalization_timeout"
    retryable = True

    def __init__(
        self,
        missing_offsets: Iterable[int],
        attempts: int,
        found: Optional[Dict[int, str]] = None,
    ):
        self.missing_offsets = sorted(missing_offsets)
        self.attempts = attempts
        self.found = dict(found or {})
        super().__init__(
            f"Computation finalization timed out after {attempts} attempts "
            f"for offsets {self.missing_offsets}"
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["missing_offsets"] = [str(o) for o in self.missing_offsets]
        return result


class DecryptionError(ConvictionMarketError):
    """Ciphertext, nonce and key do not match."""
    code = "decryption_error"


class InsufficientBalanceError(ConvictionMarketError):
    """Confidential computation reported an attempted overdraft."""
    code = "insufficient_balance"


class UnauthorizedError(ConvictionMarketError):
    """Signer is neither the market creator nor its market authority."""
    code = "unauthorized"


class InsufficientRewardFundingError(ConvictionMarketError):
    """Market vault holds less than the promised reward amount."""
    code = "insufficient_reward_funding"


class AbortedComputationError(ConvictionMarketError):
    """The computation cluster reported a failed computation."""
    code = "aborted_computation"


class ComputationPendingError(ConvictionMarketError):
    """Account is locked by a computation that has not finalized yet."""
    code = "computation_pending"
    retryable = True


class LedgerError(ConvictionMarketError):
    """Ledger read or submit failure."""
    code = "ledger_error"


class AccountNotFoundError(LedgerError):
    """No entity stored at the requested address."""
    code = "account_not_found"

    def __init__(self, kind: str, address: bytes):
        self.kind = kind
        self.address = address
        super().__init__(f"{kind} not found at {address.hex()}")


_SIMPLE_ERRORS = {
    cls.code: cls
    for cls in (
        ConvictionMarketError,
        ValidationError,
        DecryptionError,
        InsufficientBalanceError,
        UnauthorizedError,
        InsufficientRewardFundingError,
        AbortedComputationError,
        ComputationPendingError,
        LedgerError,
    )
}


def error_from_dict(data: Dict[str, Any]) -> ConvictionMarketError:
    """
    Rebuild an error recorded in a transaction result.

    Errors with structured fields come back as their plain message under
    the matching simple class, or AbortedComputationError when unknown.
    """
    code = data.get("code", "")
    message = data.get("message", code)
    if code == InvalidPhaseError.code:
        return InvalidPhaseError(data.get("operation", "unknown"), data.get("phase"), message)
    if code == DuplicateTransitionError.code:
        return DuplicateTransitionError(data.get("transition", "unknown"), data.get("state"))
    cls = _SIMPLE_ERRORS.get(code, AbortedComputationError)
    return cls(message)
