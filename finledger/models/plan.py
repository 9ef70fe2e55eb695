"""
Plan Models

A Plan is the all-or-nothing unit the ledger store applies. It is a list of
typed operations produced by the mutation planner without touching storage.

Operations come in three flavours:
- document writes (insert / update / delete) with optional version checks
- cache movements (post to an account, increment a goal, recompute)
- guards evaluated against the state read inside the atomic unit

CRITICAL: cached totals are never written by a plain document write.
The Plan model rejects any insert or update that tries to.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from finledger.models.ledger import DocumentKind, TransactionType, utcnow


# Fields that only the ledger store may move.
CACHED_FIELDS: dict[DocumentKind, str] = {
    DocumentKind.ACCOUNT: "balance",
    DocumentKind.GOAL: "current_amount",
}


class InsertDocument(BaseModel):
    op: Literal["insert"] = "insert"
    kind: DocumentKind
    doc_id: str
    data: dict


class UpdateDocument(BaseModel):
    op: Literal["update"] = "update"
    kind: DocumentKind
    doc_id: str
    changes: dict
    expected_version: Optional[int] = Field(
        default=None,
        description="Version the planner saw; a mismatch means the snapshot is stale"
    )


class DeleteDocument(BaseModel):
    op: Literal["delete"] = "delete"
    kind: DocumentKind
    doc_id: str
    expected_version: Optional[int] = None


class PostToAccount(BaseModel):
    """
    Move an account balance by the effect of a transaction amount.

    The store resolves the effect using the account type it reads inside
    the atomic unit. Reversing a posting means posting the negated amount.
    """
    op: Literal["post"] = "post"
    account_id: str
    amount: Decimal
    transaction_type: TransactionType


class IncrementGoalAmount(BaseModel):
    op: Literal["increment_goal"] = "increment_goal"
    goal_id: str
    delta: Decimal


class RequireFunds(BaseModel):
    """Fail with InsufficientFunds unless the account can cover the amount."""
    op: Literal["require_funds"] = "require_funds"
    account_id: str
    amount: Decimal


class RecomputeAccountBalance(BaseModel):
    op: Literal["recompute_balance"] = "recompute_balance"
    account_id: str


class RecomputeGoalAmount(BaseModel):
    op: Literal["recompute_goal"] = "recompute_goal"
    goal_id: str


PlanOperation = Annotated[
    Union[
        InsertDocument,
        UpdateDocument,
        DeleteDocument,
        PostToAccount,
        IncrementGoalAmount,
        RequireFunds,
        RecomputeAccountBalance,
        RecomputeGoalAmount,
    ],
    Field(discriminator="op"),
]


class Plan(BaseModel):
    """An ordered set of operations that succeed or fail together."""

    plan_id: UUID = Field(default_factory=uuid4)
    owner_id: str = Field(..., min_length=1)
    intent: str = Field(..., description="Name of the user action, for logs and audit")
    entity_kind: Optional[DocumentKind] = Field(
        default=None,
        description="Kind of the record the user acted on"
    )
    entity_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    operations: list[PlanOperation] = Field(..., min_length=1)

    @model_validator(mode='after')
    def protect_cached_fields(self) -> 'Plan':
        """Reject writes that would set a cached total directly."""
        for op in self.operations:
            cached = CACHED_FIELDS.get(getattr(op, "kind", None))
            if cached is None:
                continue
            if isinstance(op, UpdateDocument) and cached in op.changes:
                raise ValueError(f"{cached} on {op.kind.value} can only change through the ledger")
            if isinstance(op, InsertDocument) and Decimal(str(op.data.get(cached, "0"))) != 0:
                raise ValueError(f"New {op.kind.value} must start with {cached} 0")
        return self

    def targets(self) -> list[tuple[DocumentKind, str]]:
        """Every document the plan reads or writes, in first-seen order."""
        seen: dict[tuple[DocumentKind, str], None] = {}
        for op in self.operations:
            if isinstance(op, (InsertDocument, UpdateDocument, DeleteDocument)):
                seen.setdefault((op.kind, op.doc_id), None)
            elif isinstance(op, (PostToAccount, RequireFunds, RecomputeAccountBalance)):
                seen.setdefault((DocumentKind.ACCOUNT, op.account_id), None)
            elif isinstance(op, (IncrementGoalAmount, RecomputeGoalAmount)):
                seen.setdefault((DocumentKind.GOAL, op.goal_id), None)
        return list(seen)

    @property
    def account_ids(self) -> list[str]:
        return [doc_id for kind, doc_id in self.targets() if kind == DocumentKind.ACCOUNT]

    def describe(self) -> list[str]:
        """Short human-readable summary of each operation."""
        lines = []
        for op in self.operations:
            if isinstance(op, InsertDocument):
                lines.append(f"insert {op.kind.value}/{op.doc_id}")
            elif isinstance(op, UpdateDocument):
                lines.append(f"update {op.kind.value}/{op.doc_id} {sorted(op.changes)}")
            elif isinstance(op, DeleteDocument):
                lines.append(f"delete {op.kind.value}/{op.doc_id}")
            elif isinstance(op, PostToAccount):
                lines.append(f"post {op.amount} ({op.transaction_type.value}) to accounts/{op.account_id}")
            elif isinstance(op, IncrementGoalAmount):
                lines.append(f"increment savingsGoals/{op.goal_id} by {op.delta}")
            elif isinstance(op, RequireFunds):
                lines.append(f"require {op.amount} in accounts/{op.account_id}")
            elif isinstance(op, RecomputeAccountBalance):
                lines.append(f"recompute accounts/{op.account_id}")
            elif isinstance(op, RecomputeGoalAmount):
                lines.append(f"recompute savingsGoals/{op.goal_id}")
        return lines


class AppliedPlan(BaseModel):
    """What the store committed for a plan."""

    plan_id: UUID
    intent: str
    entity_kind: Optional[DocumentKind] = None
    entity_id: Optional[str] = None
    committed_at: datetime = Field(default_factory=utcnow)
    balances: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Final balance of every account the plan touched"
    )
    goal_amounts: dict[str, Decimal] = Field(default_factory=dict)
    corrections: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Drift removed by recompute operations, keyed by document id"
    )
    written: list[str] = Field(
        default_factory=list,
        description="Paths of documents written"
    )
