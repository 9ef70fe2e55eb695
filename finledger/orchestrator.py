"""
Main Orchestrator for finledger

This module ties together all the components and defines the end-to-end
flow every UI handler goes through:

    load snapshots → plan → apply atomically → audit

DESIGN DECISION: The orchestrator enforces the boundaries:
- No balance moves except through LedgerStore.apply_atomic
- Contention is retried with fresh snapshots and a fresh plan, never by
  replaying a stale plan
- Every committed, rejected or aborted mutation is audited

This is the "glue" that keeps balances correct even when two browser tabs
edit the same account at once.
"""

from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from finledger.agents import (
    InsightsAgent,
    InsightsInputTooShort,
    InsightsRequest,
    InsightsResult,
    MarketDataAgent,
    MarketDataUnavailable,
)
from finledger.audit import AuditLogger, create_correlation_id
from finledger.config import LedgerSettings, get_settings
from finledger.ledger import (
    Aborted,
    ConsistencyChecker,
    LedgerError,
    LedgerStore,
    MutationPlanner,
    ReconciliationReport,
    ValidationError,
)
from finledger.models.ledger import (
    AccountType,
    DocumentKind,
    InvestmentType,
    TransactionType,
    money,
)
from finledger.models.plan import AppliedPlan, Plan
from finledger.models.validation import ValidationIssue
from finledger.queries import LedgerQueries
from finledger.services.storage import DocumentAuditStorage, DocumentStore, InMemoryDocumentStore


T = TypeVar("T")

_logger = structlog.get_logger(__name__)


def _is_contention(error: BaseException) -> bool:
    return isinstance(error, Aborted) and error.retryable


class LedgerService:
    """
    Orchestrates every ledger intent.

    Flow for each mutation:
    1. Load the record snapshots the intent needs
    2. Plan (pure, may reject with a LedgerError)
    3. Apply the plan in one atomic unit
    4. On contention, back off and go back to step 1
    5. Audit the outcome

    A caller may cancel while waiting to submit; a submitted unit always
    runs to completion.
    """

    def __init__(
        self,
        ledger_store: LedgerStore,
        planner: Optional[MutationPlanner] = None,
        checker: Optional[ConsistencyChecker] = None,
        audit_logger: Optional[AuditLogger] = None,
        insights_agent: Optional[InsightsAgent] = None,
        market_agent: Optional[MarketDataAgent] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._ledger = ledger_store
        self._planner = planner or MutationPlanner()
        self._audit_logger = audit_logger
        self._checker = checker or ConsistencyChecker(ledger_store, self._planner, audit_logger)
        self._queries = LedgerQueries(ledger_store)
        # Agents are created lazily so a missing Gemini key only affects AI features
        self._insights_agent = insights_agent
        self._market_agent = market_agent
        self._settings = settings or get_settings().ledger

    @property
    def queries(self) -> LedgerQueries:
        return self._queries

    @property
    def planner(self) -> MutationPlanner:
        return self._planner

    @property
    def ledger_store(self) -> LedgerStore:
        return self._ledger

    # -------------------------------------------------------------------------
    # Retry and audit plumbing
    # -------------------------------------------------------------------------

    async def _with_retries(
        self,
        owner_id: str,
        intent: str,
        action: Callable[[], Awaitable[T]],
        correlation_id: UUID,
    ) -> tuple[T, int]:
        """
        Run action until it succeeds, fails for good, or contention wins.

        Returns (result, attempts).
        """
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.max_attempts),
                wait=wait_exponential(
                    multiplier=self._settings.backoff_min_seconds,
                    min=self._settings.backoff_min_seconds,
                    max=self._settings.backoff_max_seconds,
                ),
                retry=retry_if_exception(_is_contention),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        _logger.info("mutation_retry", intent=intent, attempt=attempts)
                    result = await action()
        except Aborted as e:
            reason = e.reason
            if e.retryable:
                reason = f"Still contended after {attempts} attempt(s): {e.reason}"
            if self._audit_logger:
                await self._audit_logger.log_mutation_aborted(
                    owner_id=owner_id,
                    intent=intent,
                    reason=reason,
                    attempts=attempts,
                    correlation_id=correlation_id,
                )
            if e.retryable:
                raise Aborted(reason, retryable=False, attempts=attempts) from e
            raise
        except LedgerError as e:
            if self._audit_logger:
                await self._audit_logger.log_mutation_rejected(
                    owner_id=owner_id,
                    intent=intent,
                    error_code=e.code,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise
        return result, attempts

    async def _execute(
        self,
        owner_id: str,
        intent: str,
        build_plan: Callable[[], Awaitable[Plan]],
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        """Plan and apply with retries, then audit the commit."""
        correlation_id = correlation_id or create_correlation_id()

        async def _attempt() -> AppliedPlan:
            plan = await build_plan()
            return await self._ledger.apply_atomic(plan)

        applied, attempts = await self._with_retries(owner_id, intent, _attempt, correlation_id)

        if self._audit_logger:
            await self._audit_logger.log_mutation_applied(
                owner_id=owner_id,
                intent=intent,
                entity_type=applied.entity_kind.value if applied.entity_kind else None,
                entity_id=applied.entity_id,
                balances=applied.balances,
                correlation_id=correlation_id,
                attempts=attempts,
            )
        return applied

    async def _load(self, owner_id: str, kind: DocumentKind, doc_id: str):
        return await self._ledger.load(owner_id, kind, doc_id)

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    async def create_account(
        self,
        owner_id: str,
        name: str,
        account_type: AccountType,
        currency: Optional[str] = None,
        opening_balance: Any = 0,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        currency = currency or self._settings.default_currency

        async def _plan() -> Plan:
            return self._planner.plan_create_account(
                owner_id, name, account_type, currency, opening_balance,
            )

        return await self._execute(owner_id, "create_account", _plan, correlation_id)

    async def fund_account(
        self,
        owner_id: str,
        account_id: str,
        amount: Any,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            account = await self._load(owner_id, DocumentKind.ACCOUNT, account_id)
            return self._planner.plan_fund_account(account, amount)

        return await self._execute(owner_id, "fund_account", _plan, correlation_id)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def create_transaction(
        self,
        owner_id: str,
        account_id: str,
        amount: Any,
        transaction_type: TransactionType,
        category: str,
        occurred_at: Optional[datetime] = None,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            return self._planner.plan_create_transaction(
                owner_id, account_id, amount, transaction_type, category, occurred_at, description,
            )

        return await self._execute(owner_id, "create_transaction", _plan, correlation_id)

    async def edit_transaction(
        self,
        owner_id: str,
        transaction_id: str,
        new_fields: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            existing = await self._load(owner_id, DocumentKind.TRANSACTION, transaction_id)
            return self._planner.plan_edit_transaction(existing, new_fields)

        return await self._execute(owner_id, "edit_transaction", _plan, correlation_id)

    async def delete_transaction(
        self,
        owner_id: str,
        transaction_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            existing = await self._load(owner_id, DocumentKind.TRANSACTION, transaction_id)
            return self._planner.plan_delete_transaction(existing)

        return await self._execute(owner_id, "delete_transaction", _plan, correlation_id)

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def create_goal(
        self,
        owner_id: str,
        name: str,
        target_amount: Any,
        target_date: Optional[date] = None,
        initial_amount: Any = 0,
        source_account_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            return self._planner.plan_create_goal(
                owner_id, name, target_amount, target_date, initial_amount, source_account_id,
            )

        return await self._execute(owner_id, "create_goal", _plan, correlation_id)

    async def edit_goal(
        self,
        owner_id: str,
        goal_id: str,
        new_fields: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            goal = await self._load(owner_id, DocumentKind.GOAL, goal_id)
            return self._planner.plan_edit_goal(goal, new_fields)

        return await self._execute(owner_id, "edit_goal", _plan, correlation_id)

    async def delete_goal(
        self,
        owner_id: str,
        goal_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            goal = await self._load(owner_id, DocumentKind.GOAL, goal_id)
            contributions = await self._ledger.contributions_for_goal(owner_id, goal_id)
            return self._planner.plan_delete_goal(goal, contributions)

        return await self._execute(owner_id, "delete_goal", _plan, correlation_id)

    async def contribute_to_goal(
        self,
        owner_id: str,
        goal_id: str,
        source_account_id: str,
        amount: Any,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            goal = await self._load(owner_id, DocumentKind.GOAL, goal_id)
            return self._planner.plan_contribute_to_goal(goal, source_account_id, amount)

        return await self._execute(owner_id, "contribute_to_goal", _plan, correlation_id)

    # -------------------------------------------------------------------------
    # Investments
    # -------------------------------------------------------------------------

    async def purchase_investment(
        self,
        owner_id: str,
        account_id: str,
        name: str,
        ticker: str,
        quantity: Any,
        purchase_price: Any,
        investment_type: InvestmentType = InvestmentType.STOCK,
        purchase_date: Optional[date] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            return self._planner.plan_purchase_investment(
                owner_id, account_id, name, ticker, quantity, purchase_price,
                investment_type, purchase_date,
            )

        return await self._execute(owner_id, "purchase_investment", _plan, correlation_id)

    async def _load_investment(self, owner_id: str, investment_id: str):
        investment = await self._load(owner_id, DocumentKind.INVESTMENT, investment_id)
        linked = await self._ledger.find(
            owner_id, DocumentKind.TRANSACTION, investment.linked_transaction_id,
        )
        return investment, linked

    async def edit_investment(
        self,
        owner_id: str,
        investment_id: str,
        new_fields: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            investment, linked = await self._load_investment(owner_id, investment_id)
            return self._planner.plan_edit_investment(investment, linked, new_fields)

        return await self._execute(owner_id, "edit_investment", _plan, correlation_id)

    async def delete_investment(
        self,
        owner_id: str,
        investment_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> AppliedPlan:
        async def _plan() -> Plan:
            investment, linked = await self._load_investment(owner_id, investment_id)
            return self._planner.plan_delete_investment(investment, linked)

        return await self._execute(owner_id, "delete_investment", _plan, correlation_id)

    async def refresh_investment_value(
        self,
        owner_id: str,
        investment_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[AppliedPlan]:
        """
        Refresh an investment's market value.

        A failed price lookup leaves current_value unchanged and returns None.
        """
        correlation_id = correlation_id or create_correlation_id()
        investment = await self._load(owner_id, DocumentKind.INVESTMENT, investment_id)

        try:
            quote = await self._get_market_agent().get_price(investment.ticker)
        except MarketDataUnavailable as e:
            _logger.warning("price_refresh_failed", ticker=investment.ticker, reason=e.reason)
            if self._audit_logger:
                await self._audit_logger.log_price_refresh_failed(
                    owner_id=owner_id,
                    investment_id=investment_id,
                    ticker=investment.ticker,
                    error_message=e.reason,
                    correlation_id=correlation_id,
                )
            return None

        async def _plan() -> Plan:
            current = await self._load(owner_id, DocumentKind.INVESTMENT, investment_id)
            return self._planner.plan_refresh_investment_value(
                current, money(quote.price * current.quantity),
            )

        return await self._execute(owner_id, "refresh_investment_value", _plan, correlation_id)

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------

    async def reconcile_account(self, owner_id: str, account_id: str) -> ReconciliationReport:
        """Report drift on one account. Contended reads are retried like mutations."""
        correlation_id = create_correlation_id()
        report, _ = await self._with_retries(
            owner_id,
            "reconcile_account",
            lambda: self._checker.reconcile(owner_id, account_id, correlation_id),
            correlation_id,
        )
        return report

    async def reconcile_goal(self, owner_id: str, goal_id: str) -> ReconciliationReport:
        correlation_id = create_correlation_id()
        report, _ = await self._with_retries(
            owner_id,
            "reconcile_goal",
            lambda: self._checker.reconcile_goal(owner_id, goal_id, correlation_id),
            correlation_id,
        )
        return report

    async def reconcile_all(self, owner_id: str) -> list[ReconciliationReport]:
        accounts = await self._ledger.list_documents(owner_id, DocumentKind.ACCOUNT)
        return [await self.reconcile_account(owner_id, account.id) for account in accounts]

    async def repair_account(self, owner_id: str, account_id: str) -> ReconciliationReport:
        """Explicitly correct an account balance from its transactions."""
        correlation_id = create_correlation_id()
        report, _ = await self._with_retries(
            owner_id,
            "repair_account",
            lambda: self._checker.repair(owner_id, account_id, correlation_id),
            correlation_id,
        )
        return report

    async def repair_goal(self, owner_id: str, goal_id: str) -> ReconciliationReport:
        """Explicitly correct a goal's saved amount from its contributions."""
        correlation_id = create_correlation_id()
        report, _ = await self._with_retries(
            owner_id,
            "repair_goal",
            lambda: self._checker.repair_goal(owner_id, goal_id, correlation_id),
            correlation_id,
        )
        return report

    # -------------------------------------------------------------------------
    # AI features
    # -------------------------------------------------------------------------

    def _get_market_agent(self) -> MarketDataAgent:
        if self._market_agent is None:
            self._market_agent = MarketDataAgent()
        return self._market_agent

    def _get_insights_agent(self) -> InsightsAgent:
        if self._insights_agent is None:
            self._insights_agent = InsightsAgent()
        return self._insights_agent

    async def generate_insights(
        self,
        owner_id: str,
        spending_habits: Optional[str] = None,
        financial_goals: Optional[str] = None,
    ) -> InsightsResult:
        """
        Generate personalized insights.

        Inputs the user leaves empty are filled from the ledger itself.
        """
        correlation_id = create_correlation_id()
        request = InsightsRequest(
            spending_habits=spending_habits or await self._queries.describe_spending(owner_id),
            financial_goals=financial_goals or await self._queries.describe_goals(owner_id),
        )
        try:
            result = await self._get_insights_agent().generate(request)
        except InsightsInputTooShort as e:
            raise ValidationError([ValidationIssue(
                field=e.field,
                issue_type="too_short",
                message=f"Please write at least {e.minimum} characters",
                severity="error",
            )])

        if self._audit_logger:
            if result.used_fallback:
                await self._audit_logger.log_external_service_error(
                    service="gemini",
                    error_message=result.error or "unknown error",
                    correlation_id=correlation_id,
                )
            await self._audit_logger.log_insights_generated(
                owner_id=owner_id,
                used_fallback=result.used_fallback,
                correlation_id=correlation_id,
            )
        return result


def create_app_components(
    document_store: Optional[DocumentStore] = None,
) -> LedgerService:
    """
    Factory function to create all application components.

    Args:
        document_store: Store to use. Defaults to the backend named by
                        LEDGER_STORAGE_BACKEND.

    Returns:
        A LedgerService with audit logging to the same store
    """
    if document_store is None:
        settings = get_settings().ledger
        if settings.storage_backend == "firestore":
            from finledger.services.storage.firestore import FirestoreDocumentStore
            document_store = FirestoreDocumentStore()
        else:
            _logger.warning("using_in_memory_store", detail="data is lost on restart")
            document_store = InMemoryDocumentStore()

    audit_logger = AuditLogger(DocumentAuditStorage(document_store))
    ledger_store = LedgerStore(document_store)
    return LedgerService(ledger_store, audit_logger=audit_logger)
