"""
Ledger Store

Applies plans atomically against the document store.

CRITICAL: this is the only code that moves Account.balance and
SavingsGoal.current_amount. Every movement happens inside one store
transaction, from the value read inside that transaction:
1. Read every document the plan targets
2. Check guards against the state as read (pre-plan)
3. Apply operations in order to a working copy
4. Stage all writes; the backend commits them together or not at all

Once submitted, a unit is shielded from caller cancellation so it always
runs to a definite outcome.
"""

import asyncio
from decimal import Decimal
from typing import Optional

import structlog

from finledger.ledger.errors import Aborted, InsufficientFunds, ReferenceNotFound
from finledger.models.ledger import (
    DOCUMENT_MODELS,
    Account,
    DocumentKind,
    LedgerDocument,
    Transaction,
    balance_effect,
    utcnow,
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
from finledger.services.storage import (
    ConflictError,
    DocumentStore,
    DuplicateError,
    StaleRecordError,
    StorageError,
    StoreTransaction,
)


_logger = structlog.get_logger(__name__)

_Key = tuple[DocumentKind, str]


def collection_path(owner_id: str, kind: DocumentKind) -> str:
    """users/{owner_id}/{collection}"""
    return f"users/{owner_id}/{kind.value}"


def computed_balance(account: Account, transactions: list[Transaction]) -> Decimal:
    """Sum of the balance effects of an account's transactions."""
    return sum(
        (account.effect_of(t) for t in transactions if t.account_id == account.id),
        Decimal("0"),
    )


def computed_goal_amount(goal_id: str, transactions: list[Transaction]) -> Decimal:
    """Sum of the absolute amounts of a goal's contributions."""
    return sum(
        (abs(t.amount) for t in transactions if t.linked_record_id == goal_id),
        Decimal("0"),
    )


class _PlanExecution:
    """Runs one plan against one store transaction."""

    def __init__(self, plan: Plan, transaction: StoreTransaction):
        self._plan = plan
        self._transaction = transaction
        self._state: dict[_Key, Optional[LedgerDocument]] = {}
        self._read_versions: dict[_Key, Optional[int]] = {}
        self._dirty: list[_Key] = []
        self._corrections: dict[str, Decimal] = {}

    def _path(self, kind: DocumentKind) -> str:
        return collection_path(self._plan.owner_id, kind)

    async def _read_targets(self) -> None:
        for kind, doc_id in self._plan.targets():
            data = await self._transaction.get(self._path(kind), doc_id)
            document = DOCUMENT_MODELS[kind].from_document(data) if data is not None else None
            self._state[(kind, doc_id)] = document
            self._read_versions[(kind, doc_id)] = document.version if document else None

    def _require(self, kind: DocumentKind, doc_id: str) -> LedgerDocument:
        document = self._state.get((kind, doc_id))
        if document is None:
            raise ReferenceNotFound(kind.value, doc_id)
        return document

    def _check_version(self, kind: DocumentKind, doc_id: str, expected: Optional[int]) -> None:
        if expected is None:
            return
        actual = self._read_versions.get((kind, doc_id))
        if actual is not None and actual != expected:
            raise StaleRecordError(f"{self._path(kind)}/{doc_id}", expected, actual)

    def _put(self, kind: DocumentKind, doc_id: str, document: Optional[LedgerDocument]) -> None:
        self._state[(kind, doc_id)] = document
        if (kind, doc_id) not in self._dirty:
            self._dirty.append((kind, doc_id))

    async def _transactions_where(self, field: str, value: str) -> list[Transaction]:
        """
        Transactions matching field == value as this plan leaves them.

        Stored matches are overlaid with the plan's own pending writes.
        """
        rows = await self._transaction.query(self._path(DocumentKind.TRANSACTION), field, value)
        found = {row["id"]: Transaction.from_document(row) for row in rows}
        for (kind, doc_id), document in self._state.items():
            if kind != DocumentKind.TRANSACTION:
                continue
            found.pop(doc_id, None)
            if document is not None:
                found[doc_id] = document
        return list(found.values())

    def _check_guards(self) -> None:
        for op in self._plan.operations:
            if not isinstance(op, RequireFunds):
                continue
            account = self._require(DocumentKind.ACCOUNT, op.account_id)
            if not account.is_credit and account.balance < op.amount:
                raise InsufficientFunds(account.id, op.amount, account.balance)

    async def _apply(self, op) -> None:
        if isinstance(op, InsertDocument):
            if self._state.get((op.kind, op.doc_id)) is not None:
                raise DuplicateError(f"{self._path(op.kind)}/{op.doc_id} already exists")
            document = DOCUMENT_MODELS[op.kind].from_document(op.data)
            self._put(op.kind, op.doc_id, document)

        elif isinstance(op, UpdateDocument):
            current = self._require(op.kind, op.doc_id)
            self._check_version(op.kind, op.doc_id, op.expected_version)
            updated = DOCUMENT_MODELS[op.kind].from_document({
                **current.to_document(), **op.changes,
            })
            self._put(op.kind, op.doc_id, updated)

        elif isinstance(op, DeleteDocument):
            self._require(op.kind, op.doc_id)
            self._check_version(op.kind, op.doc_id, op.expected_version)
            self._put(op.kind, op.doc_id, None)

        elif isinstance(op, PostToAccount):
            account = self._require(DocumentKind.ACCOUNT, op.account_id)
            effect = balance_effect(account.account_type, op.transaction_type, op.amount)
            self._put(DocumentKind.ACCOUNT, account.id, account.model_copy(
                update={"balance": account.balance + effect},
            ))

        elif isinstance(op, IncrementGoalAmount):
            goal = self._require(DocumentKind.GOAL, op.goal_id)
            self._put(DocumentKind.GOAL, goal.id, goal.model_copy(
                update={"current_amount": goal.current_amount + op.delta},
            ))

        elif isinstance(op, RecomputeAccountBalance):
            account = self._require(DocumentKind.ACCOUNT, op.account_id)
            transactions = await self._transactions_where("account_id", account.id)
            balance = computed_balance(account, transactions)
            self._corrections[account.id] = balance - account.balance
            self._put(DocumentKind.ACCOUNT, account.id, account.model_copy(update={"balance": balance}))

        elif isinstance(op, RecomputeGoalAmount):
            goal = self._require(DocumentKind.GOAL, op.goal_id)
            transactions = await self._transactions_where("link.goal_id", goal.id)
            amount = computed_goal_amount(goal.id, transactions)
            self._corrections[goal.id] = amount - goal.current_amount
            self._put(DocumentKind.GOAL, goal.id, goal.model_copy(update={"current_amount": amount}))

    def _stage_writes(self) -> list[str]:
        now = utcnow()
        written = []
        for kind, doc_id in self._dirty:
            path = self._path(kind)
            document = self._state[(kind, doc_id)]
            if document is None:
                self._transaction.delete(path, doc_id)
            else:
                version = self._read_versions.get((kind, doc_id))
                document = document.model_copy(update={
                    "version": (version if version is not None else document.version) + 1,
                    "updated_at": now,
                })
                self._state[(kind, doc_id)] = document
                self._transaction.set(path, doc_id, document.to_document())
            written.append(f"{path}/{doc_id}")
        return written

    async def run(self) -> AppliedPlan:
        await self._read_targets()
        self._check_guards()
        for op in self._plan.operations:
            await self._apply(op)
        written = self._stage_writes()

        balances = {}
        goal_amounts = {}
        for (kind, doc_id), document in self._state.items():
            if kind == DocumentKind.ACCOUNT and document is not None:
                balances[doc_id] = document.balance
            elif kind == DocumentKind.GOAL and document is not None:
                goal_amounts[doc_id] = document.current_amount

        return AppliedPlan(
            plan_id=self._plan.plan_id,
            intent=self._plan.intent,
            entity_kind=self._plan.entity_kind,
            entity_id=self._plan.entity_id,
            balances=balances,
            goal_amounts=goal_amounts,
            corrections=self._corrections,
            written=written,
        )


class LedgerStore:
    """
    Owns the ledger documents of every user.

    Reads go straight to the document store. Writes only happen through
    apply_atomic.
    """

    def __init__(self, store: DocumentStore):
        self._store = store

    @property
    def document_store(self) -> DocumentStore:
        return self._store

    async def apply_atomic(self, plan: Plan) -> AppliedPlan:
        """
        Apply every operation of the plan in one atomic unit.

        Raises:
            ReferenceNotFound: A target document does not exist
            InsufficientFunds: A funds guard failed
            Aborted: The unit was contended (retryable) or the store failed
        """
        async def _unit(transaction: StoreTransaction) -> AppliedPlan:
            return await _PlanExecution(plan, transaction).run()

        submitted = asyncio.ensure_future(self._store.run_atomic(_unit))
        submitted.add_done_callback(_retrieve_outcome)
        try:
            applied = await asyncio.shield(submitted)
        except ConflictError as e:
            _logger.info("plan_contended", plan_id=str(plan.plan_id), intent=plan.intent, reason=str(e))
            raise Aborted(str(e), retryable=True)
        except StorageError as e:
            _logger.error("plan_failed", plan_id=str(plan.plan_id), intent=plan.intent, reason=str(e))
            raise Aborted(str(e), retryable=False)

        _logger.info(
            "plan_applied",
            plan_id=str(plan.plan_id),
            intent=plan.intent,
            owner_id=plan.owner_id,
            operations=plan.describe(),
            balances={k: str(v) for k, v in applied.balances.items()},
        )
        return applied

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def find(self, owner_id: str, kind: DocumentKind, doc_id: str) -> Optional[LedgerDocument]:
        data = await self._store.get(collection_path(owner_id, kind), doc_id)
        return DOCUMENT_MODELS[kind].from_document(data) if data is not None else None

    async def load(self, owner_id: str, kind: DocumentKind, doc_id: str) -> LedgerDocument:
        """Read a document, raising ReferenceNotFound when it is missing."""
        document = await self.find(owner_id, kind, doc_id)
        if document is None:
            raise ReferenceNotFound(kind.value, doc_id)
        return document

    async def list_documents(self, owner_id: str, kind: DocumentKind) -> list[LedgerDocument]:
        model = DOCUMENT_MODELS[kind]
        rows = await self._store.list_documents(collection_path(owner_id, kind))
        return [model.from_document(row) for row in rows]

    async def transactions_for_account(self, owner_id: str, account_id: str) -> list[Transaction]:
        rows = await self._store.query(
            collection_path(owner_id, DocumentKind.TRANSACTION), "account_id", account_id,
        )
        return [Transaction.from_document(row) for row in rows]

    async def contributions_for_goal(self, owner_id: str, goal_id: str) -> list[Transaction]:
        rows = await self._store.query(
            collection_path(owner_id, DocumentKind.TRANSACTION), "link.goal_id", goal_id,
        )
        return [Transaction.from_document(row) for row in rows]


def _retrieve_outcome(future: "asyncio.Future") -> None:
    # Marks the outcome as seen even when the caller was cancelled mid-unit.
    if not future.cancelled() and future.exception() is not None:
        _logger.debug("atomic_unit_raised", error=repr(future.exception()))
