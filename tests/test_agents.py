"""
Tests for the LLM wrappers, with fake models standing in for Gemini.
"""

import pytest
from decimal import Decimal

from finledger.agents import (
    InsightsAgent,
    InsightsInputTooShort,
    InsightsRequest,
    MarketDataAgent,
    MarketDataUnavailable,
)
from finledger.agents.ai_agents import _extract_json


def test_extract_json_from_chatty_reply():
    assert _extract_json('Sure! {"price": 10.5} hope that helps') == {"price": 10.5}
    assert _extract_json("no json here") is None
    assert _extract_json("{not json}") is None


class TestMarketDataAgent:

    @pytest.mark.asyncio
    async def test_parses_price(self, fake_model):
        model = fake_model(text='```json\n{"price": 187.32}\n```')
        quote = await MarketDataAgent(model=model).get_price(" aapl ")

        assert quote.ticker == "AAPL"
        assert quote.price == Decimal("187.32")
        assert "AAPL" in model.prompts[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "I don't know",
        '{"value": 3}',
        '{"price": 0}',
        '{"price": -4}',
        '{"price": "n/a"}',
    ])
    async def test_unusable_reply_raises(self, fake_model, text):
        with pytest.raises(MarketDataUnavailable) as exc_info:
            await MarketDataAgent(model=fake_model(text=text)).get_price("ACME")
        assert exc_info.value.ticker == "ACME"

    @pytest.mark.asyncio
    async def test_model_error_raises(self, fake_model):
        model = fake_model(error=RuntimeError("timeout"))
        with pytest.raises(MarketDataUnavailable) as exc_info:
            await MarketDataAgent(model=model).get_price("ACME")
        assert "timeout" in exc_info.value.reason


class TestInsightsAgent:

    def _request(self):
        return InsightsRequest(
            spending_habits="Most money goes on rent and takeout",
            financial_goals="Build a three month emergency fund",
        )

    @pytest.mark.asyncio
    async def test_returns_model_text(self, fake_model):
        model = fake_model(text="  - Cook at home twice a week  ")
        result = await InsightsAgent(model=model, min_input_length=10).generate(self._request())

        assert result.insights == "- Cook at home twice a week"
        assert not result.used_fallback
        assert "takeout" in model.prompts[0]

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self, fake_model):
        result = await InsightsAgent(model=fake_model(text="   "), min_input_length=10).generate(self._request())

        assert result.used_fallback
        assert result.error == "model returned no text"
        assert "emergency fund" in result.insights

    @pytest.mark.asyncio
    async def test_model_error_is_reported(self, fake_model):
        model = fake_model(error=RuntimeError("quota exceeded"))
        result = await InsightsAgent(model=model, min_input_length=10).generate(self._request())

        assert result.used_fallback
        assert result.error == "quota exceeded"

    @pytest.mark.asyncio
    async def test_short_input_rejected_before_calling_model(self, fake_model):
        model = fake_model(text="unused")
        agent = InsightsAgent(model=model, min_input_length=10)

        with pytest.raises(InsightsInputTooShort) as exc_info:
            await agent.generate(InsightsRequest(spending_habits="Lots of rent", financial_goals="save"))

        assert exc_info.value.field == "financial_goals"
        assert model.prompts == []
