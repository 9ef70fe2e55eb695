"""
Ledger Queries

DESIGN DECISION: Dashboard numbers are computed DETERMINISTICALLY from
stored documents. The insights agent only ever sees what these queries
return, so it narrates real figures instead of inventing them.

Queries never write. Balances shown come from the cached totals; the
consistency checker is the place to question those.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from finledger.ledger.store import LedgerStore
from finledger.models.ledger import (
    Account,
    DocumentKind,
    Investment,
    SavingsGoal,
    Transaction,
    TransactionType,
)


EXPENSE_TYPES = {TransactionType.WITHDRAWAL, TransactionType.PAYMENT}


class CashFlow(BaseModel):
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


class NetWorth(BaseModel):
    """Cash and holdings minus credit-card debt."""

    cash: Decimal = Decimal("0")
    investments: Decimal = Decimal("0")
    debt: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.cash + self.investments - self.debt


class GoalProgress(BaseModel):
    goal_id: str
    name: str
    current_amount: Decimal
    target_amount: Decimal
    progress: float = Field(ge=0.0, le=1.0)
    target_date: Optional[date] = None


class PortfolioSummary(BaseModel):
    holdings: int = 0
    cost: Decimal = Decimal("0")
    current_value: Decimal = Decimal("0")

    @property
    def gain(self) -> Decimal:
        return self.current_value - self.cost


def _on_or_after(moment: datetime, start: Optional[date]) -> bool:
    return start is None or moment.date() >= start


def _on_or_before(moment: datetime, end: Optional[date]) -> bool:
    return end is None or moment.date() <= end


class LedgerQueries:
    """
    Read-side summaries over one owner's ledger.

    GUARANTEES:
    - Only returns real data from storage
    - Never invents or estimates
    """

    def __init__(self, ledger_store: LedgerStore):
        self._ledger = ledger_store

    async def list_accounts(self, owner_id: str) -> list[Account]:
        accounts = await self._ledger.list_documents(owner_id, DocumentKind.ACCOUNT)
        return sorted(accounts, key=lambda a: a.name.lower())

    async def list_transactions(
        self,
        owner_id: str,
        account_id: Optional[str] = None,
        category: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """Transactions matching every given filter, newest first."""
        if account_id:
            transactions = await self._ledger.transactions_for_account(owner_id, account_id)
        else:
            transactions = await self._ledger.list_documents(owner_id, DocumentKind.TRANSACTION)

        selected = [
            t for t in transactions
            if (category is None or t.category.lower() == category.lower())
            and (transaction_type is None or t.transaction_type == transaction_type)
            and _on_or_after(t.occurred_at, date_from)
            and _on_or_before(t.occurred_at, date_to)
        ]
        selected.sort(key=lambda t: t.occurred_at, reverse=True)
        return selected[:limit] if limit else selected

    async def spending_by_category(
        self,
        owner_id: str,
        account_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> dict[str, Decimal]:
        """Total withdrawals and payments per lower-cased category, largest first."""
        transactions = await self.list_transactions(
            owner_id, account_id=account_id, date_from=date_from, date_to=date_to,
        )
        totals: dict[str, Decimal] = {}
        for t in transactions:
            if t.transaction_type not in EXPENSE_TYPES:
                continue
            category = (t.category or "other").lower()
            totals[category] = totals.get(category, Decimal("0")) + abs(t.amount)
        return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))

    async def cash_flow(
        self,
        owner_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> CashFlow:
        """Deposits versus withdrawals and payments."""
        transactions = await self.list_transactions(owner_id, date_from=date_from, date_to=date_to)
        flow = CashFlow()
        for t in transactions:
            if t.transaction_type == TransactionType.DEPOSIT:
                flow.income += abs(t.amount)
            else:
                flow.expenses += abs(t.amount)
        return flow

    async def net_worth(self, owner_id: str) -> NetWorth:
        accounts = await self.list_accounts(owner_id)
        holdings = await self._ledger.list_documents(owner_id, DocumentKind.INVESTMENT)
        worth = NetWorth()
        for account in accounts:
            if account.is_credit:
                worth.debt += account.balance
            else:
                worth.cash += account.balance
        worth.investments = sum((h.current_value for h in holdings), Decimal("0"))
        return worth

    async def goal_progress(self, owner_id: str) -> list[GoalProgress]:
        goals: list[SavingsGoal] = await self._ledger.list_documents(owner_id, DocumentKind.GOAL)
        return [
            GoalProgress(
                goal_id=goal.id,
                name=goal.name,
                current_amount=goal.current_amount,
                target_amount=goal.target_amount,
                progress=max(goal.progress, 0.0),
                target_date=goal.target_date,
            )
            for goal in sorted(goals, key=lambda g: g.name.lower())
        ]

    async def portfolio(self, owner_id: str) -> PortfolioSummary:
        holdings: list[Investment] = await self._ledger.list_documents(owner_id, DocumentKind.INVESTMENT)
        return PortfolioSummary(
            holdings=len(holdings),
            cost=sum((h.cost for h in holdings), Decimal("0")),
            current_value=sum((h.current_value for h in holdings), Decimal("0")),
        )

    async def describe_spending(self, owner_id: str, top: int = 5) -> str:
        """Plain-text spending summary used as the default insights input."""
        spending = await self.spending_by_category(owner_id)
        flow = await self.cash_flow(owner_id)
        if not spending:
            return "No spending has been recorded yet."
        top_categories = ", ".join(
            f"{category} {amount:,.2f}" for category, amount in list(spending.items())[:top]
        )
        return (
            f"Total income {flow.income:,.2f}, total expenses {flow.expenses:,.2f}. "
            f"Largest spending categories: {top_categories}."
        )

    async def describe_goals(self, owner_id: str) -> str:
        """Plain-text goals summary used as the default insights input."""
        goals = await self.goal_progress(owner_id)
        if not goals:
            return "No savings goals have been set yet."
        parts = []
        for goal in goals:
            deadline = f" by {goal.target_date}" if goal.target_date else ""
            parts.append(
                f"{goal.name}: {goal.current_amount:,.2f} of {goal.target_amount:,.2f}{deadline}"
            )
        return "Savings goals: " + "; ".join(parts) + "."
