"""
Ledger Error Taxonomy

Every failure a UI handler can see derives from LedgerError and carries a
user_message that is safe to show as-is.

Planning errors (ValidationError, LinkedRecordError) are raised before any
storage access. ReferenceNotFound and InsufficientFunds may be raised from
inside an atomic unit; the unit is discarded so nothing is written.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from finledger.models.validation import ValidationIssue

if TYPE_CHECKING:
    from finledger.ledger.consistency import ReconciliationReport


class LedgerError(Exception):
    """Base exception for ledger operations."""

    code = "ledger_error"
    user_message = "Something went wrong while updating your records."


class ValidationError(LedgerError):
    """Bad input shape or range. No store access was attempted."""

    code = "validation_error"

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("; ".join(f"{i.field}: {i.message}" for i in issues) or "Invalid input")

    @property
    def user_message(self) -> str:
        return self.issues[0].message if self.issues else "Please check the form and try again."

    def field_errors(self) -> dict[str, str]:
        messages: dict[str, str] = {}
        for issue in self.issues:
            messages.setdefault(issue.field, issue.message)
        return messages


class ReferenceNotFound(LedgerError):
    """An account, goal, investment or transaction disappeared."""

    code = "reference_not_found"
    user_message = "This record was changed or removed elsewhere. Please refresh and try again."

    def __init__(self, kind: str, doc_id: str):
        super().__init__(f"{kind}/{doc_id} not found")
        self.kind = kind
        self.doc_id = doc_id


class InsufficientFunds(LedgerError):
    """A non-credit account cannot cover a debit."""

    code = "insufficient_funds"

    def __init__(self, account_id: str, required: Decimal, available: Decimal):
        super().__init__(
            f"Account {account_id} has {available}, needs {required}"
        )
        self.account_id = account_id
        self.required = required
        self.available = available

    @property
    def user_message(self) -> str:
        return (
            f"Insufficient funds: this account has {self.available:,.2f} "
            f"but {self.required:,.2f} is needed."
        )


class LinkedRecordError(LedgerError):
    """A linked transaction was edited or deleted directly."""

    code = "linked_record"

    def __init__(self, transaction_id: str, owner_kind: str):
        super().__init__(
            f"Transaction {transaction_id} belongs to a {owner_kind} and can only change through it"
        )
        self.transaction_id = transaction_id
        self.owner_kind = owner_kind

    @property
    def user_message(self) -> str:
        return f"This transaction is managed by its {self.owner_kind}. Edit or delete the {self.owner_kind} instead."


class Aborted(LedgerError):
    """
    The atomic unit failed as a whole; nothing was written.

    retryable is True for contention, which the ledger service retries
    with backoff before giving up.
    """

    code = "aborted"
    user_message = "We couldn't save your change. Please try again in a moment."

    def __init__(self, reason: str, retryable: bool = False, attempts: int = 1):
        super().__init__(reason)
        self.reason = reason
        self.retryable = retryable
        self.attempts = attempts


class DriftDetected(LedgerError):
    """A cached total does not match the transaction history."""

    code = "drift_detected"
    user_message = "This balance needs reconciliation."

    def __init__(self, report: "ReconciliationReport", message: Optional[str] = None):
        super().__init__(
            message or f"{report.entity_type}/{report.entity_id} drifted by {report.drift}"
        )
        self.report = report
