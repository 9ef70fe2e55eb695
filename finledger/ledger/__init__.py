"""
Ledger Package

The ledger-consistency core: plans are built by the MutationPlanner,
applied atomically by the LedgerStore, and audited after the fact by the
ConsistencyChecker.
"""

from finledger.ledger.errors import (
    Aborted,
    DriftDetected,
    InsufficientFunds,
    LedgerError,
    LinkedRecordError,
    ReferenceNotFound,
    ValidationError,
)
from finledger.ledger.planner import MutationPlanner
from finledger.ledger.store import LedgerStore, collection_path
from finledger.ledger.consistency import ConsistencyChecker, ReconciliationReport

__all__ = [
    # Errors
    "Aborted",
    "DriftDetected",
    "InsufficientFunds",
    "LedgerError",
    "LinkedRecordError",
    "ReferenceNotFound",
    "ValidationError",
    # Components
    "ConsistencyChecker",
    "LedgerStore",
    "MutationPlanner",
    "ReconciliationReport",
    "collection_path",
]
