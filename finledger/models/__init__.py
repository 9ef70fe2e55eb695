"""
Data Models Package

This package contains all Pydantic models used in finledger.
All data flowing through the ledger must conform to these schemas.
"""

from finledger.models.ledger import (
    Account,
    AccountType,
    DocumentKind,
    GoalContribution,
    Investment,
    InvestmentPurchase,
    InvestmentType,
    LedgerDocument,
    LinkKind,
    NoLink,
    SavingsGoal,
    Transaction,
    TransactionType,
    balance_effect,
    money,
    signed_amount,
)
from finledger.models.plan import (
    AppliedPlan,
    DeleteDocument,
    IncrementGoalAmount,
    InsertDocument,
    Plan,
    PostToAccount,
    RecomputeAccountBalance,
    RecomputeGoalAmount,
    RequireFunds,
    UpdateDocument,
)
from finledger.models.validation import ValidationIssue, ValidationResult
from finledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger documents
    "Account",
    "AccountType",
    "DocumentKind",
    "GoalContribution",
    "Investment",
    "InvestmentPurchase",
    "InvestmentType",
    "LedgerDocument",
    "LinkKind",
    "NoLink",
    "SavingsGoal",
    "Transaction",
    "TransactionType",
    "balance_effect",
    "money",
    "signed_amount",
    # Plans
    "AppliedPlan",
    "DeleteDocument",
    "IncrementGoalAmount",
    "InsertDocument",
    "Plan",
    "PostToAccount",
    "RecomputeAccountBalance",
    "RecomputeGoalAmount",
    "RequireFunds",
    "UpdateDocument",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
