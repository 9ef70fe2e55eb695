"""
AI Agents for finledger

DESIGN DECISION: The LLM wrappers are thin and sit OUTSIDE the ledger.
Their output is text or a single number, and nothing they return is ever
trusted to move a balance.

CRITICAL BOUNDARIES:

1. INSIGHTS AGENT:
   - CAN: Turn a spending summary and goal list into advice text
   - CANNOT: Read or write ledger documents
   - MUST: Fall back to a plain summary when the model fails

2. MARKET DATA AGENT:
   - CAN: Return a price for a ticker
   - CANNOT: Change an investment itself; the ledger service stores the value
   - MUST: Raise MarketDataUnavailable instead of guessing a price

The LLM is a NARRATOR, not a BOOKKEEPER.
"""

import json
from decimal import Decimal, InvalidOperation
from typing import Optional

import google.generativeai as genai
import structlog
from pydantic import BaseModel, Field

from finledger.config import get_settings


_logger = structlog.get_logger(__name__)


class InsightsRequest(BaseModel):
    """Free-text inputs for the insights prompt."""

    spending_habits: str = Field(
        description="Description of the user's spending habits"
    )
    financial_goals: str = Field(
        description="Description of the user's financial goals"
    )


class InsightsResult(BaseModel):
    """Generated insights, or the plain fallback when the model failed."""

    insights: str
    used_fallback: bool = False
    error: Optional[str] = Field(
        default=None,
        description="Why the model could not be used, when it could not"
    )


class MarketQuote(BaseModel):
    ticker: str
    price: Decimal = Field(gt=0)


class InsightsInputTooShort(ValueError):
    """An insights input is shorter than the configured minimum."""

    def __init__(self, field: str, minimum: int):
        super().__init__(f"{field} must be at least {minimum} characters")
        self.field = field
        self.minimum = minimum


class MarketDataUnavailable(Exception):
    """No usable price could be obtained for a ticker."""

    def __init__(self, ticker: str, reason: str):
        super().__init__(f"No price for {ticker}: {reason}")
        self.ticker = ticker
        self.reason = reason


def _extract_json(text: str) -> Optional[dict]:
    """Find the JSON object in a model response."""
    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            return json.loads(text[start:end])
        except json.JSONDecodeError:
            return None
    return None


def _build_model(temperature: float, max_output_tokens: int):
    """Configure Google Generative AI and return a model."""
    settings = get_settings().gemini
    genai.configure(api_key=settings.api_key)
    return genai.GenerativeModel(
        model_name=settings.model_name,
        generation_config={
            "temperature": temperature,
            "max_output_tokens": max_output_tokens,
        }
    )


class InsightsAgent:
    """
    Generates personalized financial insights.

    RESPONSIBILITIES:
    - Validate that both inputs carry enough text to work with
    - Prompt the model for actionable recommendations
    - Return a deterministic summary when the model is unavailable
    """

    def __init__(self, model=None, min_input_length: Optional[int] = None):
        """
        Args:
            model: Anything with an async generate_content_async(prompt).
                   Defaults to the configured Gemini model.
            min_input_length: Minimum characters per input.
        """
        self._model = model
        self._min_length = (
            min_input_length
            if min_input_length is not None
            else get_settings().app.min_insight_input_length
        )

    def _get_model(self):
        if self._model is None:
            settings = get_settings().gemini
            self._model = _build_model(settings.temperature, settings.max_tokens)
        return self._model

    def check_request(self, request: InsightsRequest) -> None:
        """Raise InsightsInputTooShort for an input below the minimum length."""
        for field in ("spending_habits", "financial_goals"):
            if len(getattr(request, field).strip()) < self._min_length:
                raise InsightsInputTooShort(field, self._min_length)

    async def generate(self, request: InsightsRequest) -> InsightsResult:
        """
        Generate insights from spending habits and goals.

        Falls back to restating the inputs when the model call fails.
        """
        self.check_request(request)

        prompt = f"""You are a financial advisor providing personalized financial insights and recommendations.

Based on the user's spending habits and financial goals, provide actionable insights
and recommendations to improve their financial well-being.

Spending Habits: {request.spending_habits}
Financial Goals: {request.financial_goals}

Guidelines:
- Use simple language and short bullet points
- Refer only to the figures given above
- Do not recommend specific securities

Insights:"""

        error = "model returned no text"
        try:
            response = await self._get_model().generate_content_async(prompt)
            text = response.text.strip()
            if text:
                return InsightsResult(insights=text)
        except Exception as e:
            _logger.warning("insights_generation_failed", error=str(e))
            error = str(e)

        return InsightsResult(
            insights=(
                "We couldn't generate personalized insights right now. "
                f"Here is what we know.\n\nSpending: {request.spending_habits}\n\n"
                f"Goals: {request.financial_goals}"
            ),
            used_fallback=True,
            error=error,
        )


class MarketDataAgent:
    """
    Looks up the current price of a ticker.

    BOUNDARIES:
    - NEVER invents a price when the model gives no usable answer
    - Price accuracy is best effort; the value is for display only
    """

    def __init__(self, model=None):
        self._model = model

    def _get_model(self):
        if self._model is None:
            self._model = _build_model(temperature=0.0, max_output_tokens=128)
        return self._model

    async def get_price(self, ticker: str) -> MarketQuote:
        """
        Get the current market price for a ticker.

        Raises:
            MarketDataUnavailable: The model failed or returned no positive price
        """
        ticker = ticker.strip().upper()
        prompt = f"""You are a financial data service.

Give the most recent market price in US dollars for the ticker symbol: {ticker}

Respond with ONLY a JSON object in this exact format:
{{"price": 123.45}}"""

        try:
            response = await self._get_model().generate_content_async(prompt)
            text = response.text.strip()
        except Exception as e:
            raise MarketDataUnavailable(ticker, str(e))

        data = _extract_json(text)
        if data is None or "price" not in data:
            raise MarketDataUnavailable(ticker, "response did not contain a price")

        try:
            price = Decimal(str(data["price"]))
        except (InvalidOperation, ValueError):
            raise MarketDataUnavailable(ticker, f"unreadable price {data['price']!r}")
        if not price.is_finite() or price <= 0:
            raise MarketDataUnavailable(ticker, f"non-positive price {price}")

        return MarketQuote(ticker=ticker, price=price)
