"""Ledger queries package."""

from finledger.queries.executor import (
    CashFlow,
    GoalProgress,
    LedgerQueries,
    NetWorth,
    PortfolioSummary,
)

__all__ = ["CashFlow", "GoalProgress", "LedgerQueries", "NetWorth", "PortfolioSummary"]
