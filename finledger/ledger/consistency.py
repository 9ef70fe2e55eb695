"""
Consistency Checker

Recomputes cached totals from transaction history and compares them with
what is stored.

IMPORTANT: Drift is reported, never silently fixed. repair() is an explicit
action that goes through the ledger store like any other mutation and is
always audited.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from finledger.audit import AuditLogger, create_correlation_id
from finledger.ledger.errors import Aborted, DriftDetected, ReferenceNotFound
from finledger.ledger.planner import MutationPlanner
from finledger.ledger.store import (
    LedgerStore,
    collection_path,
    computed_balance,
    computed_goal_amount,
)
from finledger.models.ledger import (
    Account,
    DocumentKind,
    SavingsGoal,
    Transaction,
    utcnow,
)
from finledger.services.storage import ConflictError, StorageError


_logger = structlog.get_logger(__name__)


class ReconciliationReport(BaseModel):
    """Stored versus recomputed value of one cached total."""

    owner_id: str
    entity_type: str = Field(
        default=DocumentKind.ACCOUNT.value,
        description="'accounts' for balances, 'savingsGoals' for saved amounts"
    )
    entity_id: str
    stored_balance: Decimal
    computed_balance: Decimal
    transaction_count: int = 0
    checked_at: datetime = Field(default_factory=utcnow)

    @property
    def drift(self) -> Decimal:
        """Stored minus computed. Zero when consistent."""
        return self.stored_balance - self.computed_balance

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0


class ConsistencyChecker:
    """
    Reconciles accounts and goals against their transactions.

    Runs independently of the mutation flow, on demand or on a schedule.
    """

    def __init__(
        self,
        ledger_store: LedgerStore,
        planner: Optional[MutationPlanner] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._ledger = ledger_store
        self._planner = planner or MutationPlanner()
        self._audit_logger = audit_logger

    async def _read_consistent(self, unit):
        # A read-only unit still gets a consistent snapshot of the total and its history.
        try:
            return await self._ledger.document_store.run_atomic(unit)
        except ConflictError as e:
            raise Aborted(str(e), retryable=True)
        except StorageError as e:
            raise Aborted(str(e), retryable=False)

    async def _report_drift(
        self,
        report: ReconciliationReport,
        correlation_id: Optional[UUID],
    ) -> None:
        if report.is_consistent:
            return
        _logger.warning(
            "drift_detected",
            owner_id=report.owner_id,
            entity_type=report.entity_type,
            entity_id=report.entity_id,
            stored=str(report.stored_balance),
            computed=str(report.computed_balance),
        )
        if self._audit_logger:
            await self._audit_logger.log_drift_detected(
                owner_id=report.owner_id,
                entity_type=report.entity_type,
                entity_id=report.entity_id,
                stored=str(report.stored_balance),
                computed=str(report.computed_balance),
                drift=str(report.drift),
                correlation_id=correlation_id,
            )

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        owner_id: str,
        account_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        """
        Compare an account's stored balance with the sum of its transactions.

        Both are read inside one atomic unit. Drift is logged, not repaired.
        """
        async def _unit(transaction) -> ReconciliationReport:
            data = await transaction.get(collection_path(owner_id, DocumentKind.ACCOUNT), account_id)
            if data is None:
                raise ReferenceNotFound(DocumentKind.ACCOUNT.value, account_id)
            account = Account.from_document(data)
            rows = await transaction.query(
                collection_path(owner_id, DocumentKind.TRANSACTION), "account_id", account_id,
            )
            transactions = [Transaction.from_document(row) for row in rows]
            return ReconciliationReport(
                owner_id=owner_id,
                entity_id=account_id,
                stored_balance=account.balance,
                computed_balance=computed_balance(account, transactions),
                transaction_count=len(transactions),
            )

        report = await self._read_consistent(_unit)
        await self._report_drift(report, correlation_id)
        return report

    async def check(self, owner_id: str, account_id: str) -> ReconciliationReport:
        """Reconcile and raise DriftDetected if the balance has drifted."""
        report = await self.reconcile(owner_id, account_id)
        if not report.is_consistent:
            raise DriftDetected(report)
        return report

    async def repair(
        self,
        owner_id: str,
        account_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        """
        Set the stored balance to the recomputed one, atomically.

        Returns a report of the state that was corrected.
        """
        plan = self._planner.plan_repair_account(owner_id, account_id)
        applied = await self._ledger.apply_atomic(plan)
        balance = applied.balances[account_id]
        correction = applied.corrections.get(account_id, Decimal("0"))
        await self._log_repair(owner_id, DocumentKind.ACCOUNT, account_id, correction, correlation_id)
        return ReconciliationReport(
            owner_id=owner_id,
            entity_id=account_id,
            stored_balance=balance - correction,
            computed_balance=balance,
        )

    async def reconcile_all(self, owner_id: str) -> list[ReconciliationReport]:
        """Reconcile every account of an owner."""
        accounts = await self._ledger.list_documents(owner_id, DocumentKind.ACCOUNT)
        return [await self.reconcile(owner_id, account.id) for account in accounts]

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def reconcile_goal(
        self,
        owner_id: str,
        goal_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        """Compare a goal's saved amount with the sum of its contributions."""
        async def _unit(transaction) -> ReconciliationReport:
            data = await transaction.get(collection_path(owner_id, DocumentKind.GOAL), goal_id)
            if data is None:
                raise ReferenceNotFound(DocumentKind.GOAL.value, goal_id)
            goal = SavingsGoal.from_document(data)
            rows = await transaction.query(
                collection_path(owner_id, DocumentKind.TRANSACTION), "link.goal_id", goal_id,
            )
            contributions = [Transaction.from_document(row) for row in rows]
            return ReconciliationReport(
                owner_id=owner_id,
                entity_type=DocumentKind.GOAL.value,
                entity_id=goal_id,
                stored_balance=goal.current_amount,
                computed_balance=computed_goal_amount(goal_id, contributions),
                transaction_count=len(contributions),
            )

        report = await self._read_consistent(_unit)
        await self._report_drift(report, correlation_id)
        return report

    async def repair_goal(
        self,
        owner_id: str,
        goal_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> ReconciliationReport:
        plan = self._planner.plan_repair_goal(owner_id, goal_id)
        applied = await self._ledger.apply_atomic(plan)
        amount = applied.goal_amounts[goal_id]
        correction = applied.corrections.get(goal_id, Decimal("0"))
        await self._log_repair(owner_id, DocumentKind.GOAL, goal_id, correction, correlation_id)
        return ReconciliationReport(
            owner_id=owner_id,
            entity_type=DocumentKind.GOAL.value,
            entity_id=goal_id,
            stored_balance=amount - correction,
            computed_balance=amount,
        )

    async def _log_repair(
        self,
        owner_id: str,
        kind: DocumentKind,
        doc_id: str,
        correction: Decimal,
        correlation_id: Optional[UUID],
    ) -> None:
        _logger.warning(
            "balance_repaired",
            owner_id=owner_id,
            entity_type=kind.value,
            entity_id=doc_id,
            correction=str(correction),
        )
        if self._audit_logger:
            await self._audit_logger.log_balance_repaired(
                owner_id=owner_id,
                entity_type=kind.value,
                entity_id=doc_id,
                correction=str(correction),
                correlation_id=correlation_id or create_correlation_id(),
            )
