"""
convictionmarket/ledger

Ledger collaborators: the abstract interface plus an in-process ledger,
program and computation cluster.
"""

from .base import Instruction, Ledger, SignatureInfo, TransactionRecord
from .cluster import LocalComputationCluster
from .memory import InMemoryLedger, ManualClock, SystemClock
from .program import ConvictionMarketProgram, ExecutionResult, PendingComputation

__all__ = [
    "Instruction",
    "Ledger",
    "SignatureInfo",
    "TransactionRecord",
    "LocalComputationCluster",
    "InMemoryLedger",
    "ManualClock",
    "SystemClock",
    "ConvictionMarketProgram",
    "ExecutionResult",
    "PendingComputation",
]
