"""AI Agents package."""

from finledger.agents.ai_agents import (
    InsightsAgent,
    InsightsInputTooShort,
    InsightsRequest,
    InsightsResult,
    MarketDataAgent,
    MarketDataUnavailable,
    MarketQuote,
)

__all__ = [
    "InsightsAgent",
    "InsightsInputTooShort",
    "InsightsRequest",
    "InsightsResult",
    "MarketDataAgent",
    "MarketDataUnavailable",
    "MarketQuote",
]
