"""
Shared fixtures.

Everything runs against the in-memory document store; no test touches
Firestore or Gemini.
"""

import pytest

from finledger.agents import InsightsAgent, MarketDataAgent
from finledger.audit import AuditLogger
from finledger.config import AppSettings, LedgerSettings
from finledger.ledger import ConsistencyChecker, LedgerStore, MutationPlanner
from finledger.orchestrator import LedgerService
from finledger.queries import LedgerQueries
from finledger.services.storage import DocumentAuditStorage, InMemoryDocumentStore
from finledger.validation import IntentValidator


OWNER = "user-1"


class FakeResponse:
    def __init__(self, text: str):
        self.text = text


class FakeModel:
    """Stands in for a Gemini GenerativeModel."""

    def __init__(self, text: str = "", error: Exception = None):
        self.text = text
        self.error = error
        self.prompts: list[str] = []

    async def generate_content_async(self, prompt: str) -> FakeResponse:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return FakeResponse(self.text)


@pytest.fixture
def fake_model():
    """Factory: fake_model(text=..., error=...)."""
    return FakeModel


@pytest.fixture
def app_settings():
    return AppSettings(
        max_transaction_amount=1000000.0,
        future_date_tolerance_days=1,
        min_insight_input_length=10,
    )


@pytest.fixture
def ledger_settings():
    # No real sleeping between retries in tests
    return LedgerSettings(max_attempts=5, backoff_min_seconds=0, backoff_max_seconds=0)


@pytest.fixture
def validator(app_settings):
    return IntentValidator(app_settings)


@pytest.fixture
def planner(validator):
    return MutationPlanner(validator)


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def ledger_store(document_store):
    return LedgerStore(document_store)


@pytest.fixture
def audit_storage(document_store):
    return DocumentAuditStorage(document_store)


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def checker(ledger_store, planner, audit_logger):
    return ConsistencyChecker(ledger_store, planner, audit_logger)


@pytest.fixture
def queries(ledger_store):
    return LedgerQueries(ledger_store)


@pytest.fixture
def market_model():
    return FakeModel(text='{"price": 12.50}')


@pytest.fixture
def insights_model():
    return FakeModel(text="- Cut dining out by 10%\n- Automate savings")


@pytest.fixture
def service(ledger_store, planner, checker, audit_logger, ledger_settings, market_model, insights_model):
    return LedgerService(
        ledger_store,
        planner=planner,
        checker=checker,
        audit_logger=audit_logger,
        insights_agent=InsightsAgent(model=insights_model, min_input_length=10),
        market_agent=MarketDataAgent(model=market_model),
        settings=ledger_settings,
    )
