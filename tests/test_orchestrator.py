"""
End-to-end tests of the ledger service against the in-memory store.
"""

import pytest
from decimal import Decimal

from finledger.agents import InsightsAgent, MarketDataAgent
from finledger.audit import AuditLogger
from finledger.ledger import (
    Aborted,
    InsufficientFunds,
    LedgerStore,
    LinkedRecordError,
    ReferenceNotFound,
    ValidationError,
    collection_path,
)
from finledger.models.audit import AuditEventType
from finledger.models.ledger import (
    AccountType,
    DocumentKind,
    NoLink,
    TransactionType,
)
from finledger.orchestrator import LedgerService, create_app_components
from finledger.services.storage import ConflictError, DocumentAuditStorage, InMemoryDocumentStore


OWNER = "u1"


async def _account(service, opening=0, account_type=AccountType.CHECKING, name="Checking"):
    applied = await service.create_account(OWNER, name, account_type, "USD", opening)
    return applied.entity_id


async def _balance(service, account_id):
    account = await service.ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    return account.balance


async def _events(audit_storage, event_type):
    return [e for e in await audit_storage.get_recent_events(1000) if e.event_type == event_type]


class TestScenarios:

    @pytest.mark.asyncio
    async def test_deposit_into_empty_account(self, service):
        account_id = await _account(service)

        await service.create_transaction(OWNER, account_id, 500, TransactionType.DEPOSIT, "salary")

        assert await _balance(service, account_id) == Decimal("500")

    @pytest.mark.asyncio
    async def test_goal_contribution_moves_both_totals(self, service):
        account_id = await _account(service, 500)
        goal_id = (await service.create_goal(OWNER, "Holiday", 2000)).entity_id

        await service.contribute_to_goal(OWNER, goal_id, account_id, 100)

        goal = await service.ledger_store.load(OWNER, DocumentKind.GOAL, goal_id)
        assert goal.current_amount == Decimal("100")
        assert await _balance(service, account_id) == Decimal("400")
        [contribution] = await service.ledger_store.contributions_for_goal(OWNER, goal_id)
        assert contribution.amount == Decimal("-100")
        assert contribution.account_id == account_id

    @pytest.mark.asyncio
    async def test_purchase_without_funds_writes_nothing(self, service, document_store, audit_storage):
        account_id = await _account(service, 40)

        with pytest.raises(InsufficientFunds):
            await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 2, 50)

        assert await document_store.list_documents(collection_path(OWNER, DocumentKind.INVESTMENT)) == []
        assert len(await service.ledger_store.transactions_for_account(OWNER, account_id)) == 1
        assert await _balance(service, account_id) == Decimal("40")
        [rejected] = await _events(audit_storage, AuditEventType.MUTATION_REJECTED)
        assert rejected.error_code == "insufficient_funds"
        assert rejected.details["intent"] == "purchase_investment"

    @pytest.mark.asyncio
    async def test_move_transaction_between_accounts(self, service):
        x = await _account(service, 250, name="X")
        y = await _account(service, 10, name="Y")
        tx_id = (await service.create_transaction(OWNER, x, 50, TransactionType.WITHDRAWAL, "food")).entity_id
        assert await _balance(service, x) == Decimal("200")

        await service.edit_transaction(OWNER, tx_id, {"account_id": y})

        assert await _balance(service, x) == Decimal("250")
        assert await _balance(service, y) == Decimal("-40")

    @pytest.mark.asyncio
    async def test_delete_investment_refunds_cost(self, service, document_store):
        account_id = await _account(service, 320)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 3, 100)).entity_id
        assert await _balance(service, account_id) == Decimal("20")
        investment = await service.ledger_store.load(OWNER, DocumentKind.INVESTMENT, investment_id)

        await service.delete_investment(OWNER, investment_id)

        assert await _balance(service, account_id) == Decimal("320")
        assert await service.ledger_store.find(OWNER, DocumentKind.INVESTMENT, investment_id) is None
        assert await service.ledger_store.find(
            OWNER, DocumentKind.TRANSACTION, investment.linked_transaction_id,
        ) is None


class TestTransactions:

    @pytest.mark.asyncio
    async def test_edit_amount_posts_difference(self, service):
        account_id = await _account(service, 100)
        tx_id = (await service.create_transaction(OWNER, account_id, 30, TransactionType.WITHDRAWAL, "food")).entity_id

        await service.edit_transaction(OWNER, tx_id, {"amount": 45, "category": "groceries"})

        assert await _balance(service, account_id) == Decimal("55")
        tx = await service.ledger_store.load(OWNER, DocumentKind.TRANSACTION, tx_id)
        assert tx.amount == Decimal("-45")
        assert tx.category == "groceries"

    @pytest.mark.asyncio
    async def test_delete_reverses(self, service):
        account_id = await _account(service, 100)
        tx_id = (await service.create_transaction(OWNER, account_id, 30, TransactionType.WITHDRAWAL, "food")).entity_id

        await service.delete_transaction(OWNER, tx_id)

        assert await _balance(service, account_id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_delete_missing_transaction(self, service):
        with pytest.raises(ReferenceNotFound):
            await service.delete_transaction(OWNER, "missing")

    @pytest.mark.asyncio
    async def test_validation_error_is_audited(self, service, audit_storage):
        account_id = await _account(service, 100)

        with pytest.raises(ValidationError) as exc_info:
            await service.create_transaction(OWNER, account_id, -5, TransactionType.DEPOSIT, "gift")

        assert exc_info.value.user_message == "Amount must be greater than zero"
        [rejected] = await _events(audit_storage, AuditEventType.MUTATION_REJECTED)
        assert rejected.error_code == "validation_error"

    @pytest.mark.asyncio
    async def test_commit_is_audited_with_balances(self, service, audit_storage):
        account_id = await _account(service, 100)

        await service.create_transaction(OWNER, account_id, 25, TransactionType.WITHDRAWAL, "food")

        [created] = await _events(audit_storage, AuditEventType.TRANSACTION_CREATED)
        assert created.owner_id == OWNER
        assert created.entity_type == "transactions"
        assert created.details["balances"] == {account_id: "75.00"}
        assert created.details["attempts"] == 1


class TestCreditCards:

    @pytest.mark.asyncio
    async def test_charges_and_payments(self, service):
        card = await _account(service, 200, AccountType.CREDIT_CARD, "Visa")
        assert await _balance(service, card) == Decimal("200")

        await service.create_transaction(OWNER, card, 50, TransactionType.WITHDRAWAL, "dining")
        assert await _balance(service, card) == Decimal("250")

        await service.fund_account(OWNER, card, 100)
        assert await _balance(service, card) == Decimal("150")

        await service.create_transaction(OWNER, card, 30, TransactionType.DEPOSIT, "refund")
        assert await _balance(service, card) == Decimal("120")

    @pytest.mark.asyncio
    async def test_goal_contribution_from_card_grows_debt(self, service):
        card = await _account(service, 0, AccountType.CREDIT_CARD, "Visa")
        goal_id = (await service.create_goal(OWNER, "Car", 5000)).entity_id

        await service.contribute_to_goal(OWNER, goal_id, card, 300)

        assert await _balance(service, card) == Decimal("300")

    @pytest.mark.asyncio
    async def test_investment_on_card_then_delete(self, service):
        card = await _account(service, 0, AccountType.CREDIT_CARD, "Visa")
        investment_id = (await service.purchase_investment(OWNER, card, "Acme", "ACME", 1, 80)).entity_id
        assert await _balance(service, card) == Decimal("80")

        await service.delete_investment(OWNER, investment_id)

        assert await _balance(service, card) == Decimal("0")


class TestGoals:

    @pytest.mark.asyncio
    async def test_create_with_initial_amount(self, service):
        account_id = await _account(service, 500)

        applied = await service.create_goal(OWNER, "Trip", 1000, initial_amount=100, source_account_id=account_id)

        assert applied.goal_amounts[applied.entity_id] == Decimal("100")
        assert applied.balances[account_id] == Decimal("400")

    @pytest.mark.asyncio
    async def test_contribution_needs_funds(self, service):
        account_id = await _account(service, 50)
        goal_id = (await service.create_goal(OWNER, "Trip", 1000)).entity_id

        with pytest.raises(InsufficientFunds):
            await service.contribute_to_goal(OWNER, goal_id, account_id, 100)

        goal = await service.ledger_store.load(OWNER, DocumentKind.GOAL, goal_id)
        assert goal.current_amount == Decimal("0")

    @pytest.mark.asyncio
    async def test_contribution_cannot_be_edited_directly(self, service):
        account_id = await _account(service, 500)
        goal_id = (await service.create_goal(OWNER, "Trip", 1000)).entity_id
        await service.contribute_to_goal(OWNER, goal_id, account_id, 100)
        [contribution] = await service.ledger_store.contributions_for_goal(OWNER, goal_id)

        with pytest.raises(LinkedRecordError):
            await service.delete_transaction(OWNER, contribution.id)

        assert await _balance(service, account_id) == Decimal("400")

    @pytest.mark.asyncio
    async def test_delete_goal_keeps_money_where_it_is(self, service):
        account_id = await _account(service, 500)
        goal_id = (await service.create_goal(OWNER, "Trip", 1000)).entity_id
        await service.contribute_to_goal(OWNER, goal_id, account_id, 100)
        [contribution] = await service.ledger_store.contributions_for_goal(OWNER, goal_id)

        await service.delete_goal(OWNER, goal_id)

        assert await service.ledger_store.find(OWNER, DocumentKind.GOAL, goal_id) is None
        assert await _balance(service, account_id) == Decimal("400")
        kept = await service.ledger_store.load(OWNER, DocumentKind.TRANSACTION, contribution.id)
        assert isinstance(kept.link, NoLink)
        assert kept.amount == Decimal("-100")
        assert (await service.reconcile_account(OWNER, account_id)).is_consistent

    @pytest.mark.asyncio
    async def test_edit_goal(self, service):
        goal_id = (await service.create_goal(OWNER, "Trip", 1000)).entity_id

        await service.edit_goal(OWNER, goal_id, {"name": "Big trip", "target_amount": 1500})

        goal = await service.ledger_store.load(OWNER, DocumentKind.GOAL, goal_id)
        assert goal.name == "Big trip"
        assert goal.target_amount == Decimal("1500")


class TestInvestments:

    @pytest.mark.asyncio
    async def test_edit_quantity_on_same_account(self, service):
        account_id = await _account(service, 1000)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 10, 10)).entity_id

        await service.edit_investment(OWNER, investment_id, {"quantity": 15})

        assert await _balance(service, account_id) == Decimal("850")
        investment = await service.ledger_store.load(OWNER, DocumentKind.INVESTMENT, investment_id)
        assert investment.current_value == Decimal("150")
        linked = await service.ledger_store.load(OWNER, DocumentKind.TRANSACTION, investment.linked_transaction_id)
        assert linked.amount == Decimal("-150")

    @pytest.mark.asyncio
    async def test_edit_moves_purchase_to_other_account(self, service):
        a = await _account(service, 1000, name="A")
        b = await _account(service, 500, name="B")
        investment_id = (await service.purchase_investment(OWNER, a, "Acme", "ACME", 10, 10)).entity_id

        await service.edit_investment(OWNER, investment_id, {"account_id": b, "purchase_price": 15})

        assert await _balance(service, a) == Decimal("1000")
        assert await _balance(service, b) == Decimal("350")
        for account_id in (a, b):
            assert (await service.reconcile_account(OWNER, account_id)).is_consistent

    @pytest.mark.asyncio
    async def test_edit_increase_needs_funds(self, service):
        account_id = await _account(service, 120)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 10, 10)).entity_id

        with pytest.raises(InsufficientFunds):
            await service.edit_investment(OWNER, investment_id, {"quantity": 20})

        assert await _balance(service, account_id) == Decimal("20")

    @pytest.mark.asyncio
    async def test_linked_purchase_cannot_be_edited_directly(self, service):
        account_id = await _account(service, 1000)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 1, 10)).entity_id
        investment = await service.ledger_store.load(OWNER, DocumentKind.INVESTMENT, investment_id)

        with pytest.raises(LinkedRecordError):
            await service.edit_transaction(OWNER, investment.linked_transaction_id, {"amount": 1})

    @pytest.mark.asyncio
    async def test_refresh_value_from_market(self, service):
        account_id = await _account(service, 1000)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 4, 10)).entity_id

        applied = await service.refresh_investment_value(OWNER, investment_id)

        assert applied is not None
        investment = await service.ledger_store.load(OWNER, DocumentKind.INVESTMENT, investment_id)
        assert investment.current_value == Decimal("50.00")
        assert await _balance(service, account_id) == Decimal("960")

    @pytest.mark.asyncio
    async def test_refresh_failure_leaves_value(self, service, market_model, audit_storage):
        account_id = await _account(service, 1000)
        investment_id = (await service.purchase_investment(OWNER, account_id, "Acme", "ACME", 4, 10)).entity_id
        market_model.error = RuntimeError("quota exceeded")

        assert await service.refresh_investment_value(OWNER, investment_id) is None

        investment = await service.ledger_store.load(OWNER, DocumentKind.INVESTMENT, investment_id)
        assert investment.current_value == Decimal("40")
        [failed] = await _events(audit_storage, AuditEventType.PRICE_REFRESH_FAILED)
        assert failed.details["ticker"] == "ACME"


class FlakyStore(InMemoryDocumentStore):
    """Reports contention for the first few atomic units."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts_left = conflicts

    async def run_atomic(self, unit):
        if self.conflicts_left > 0:
            self.conflicts_left -= 1
            raise ConflictError("simulated contention")
        return await super().run_atomic(unit)


class TestRetries:

    def _service(self, store, audit_store, ledger_settings, planner):
        return LedgerService(
            LedgerStore(store),
            planner=planner,
            audit_logger=AuditLogger(DocumentAuditStorage(audit_store)),
            settings=ledger_settings,
        )

    @pytest.mark.asyncio
    async def test_contention_is_retried(self, ledger_settings, planner):
        store, audit_store = FlakyStore(conflicts=0), InMemoryDocumentStore()
        service = self._service(store, audit_store, ledger_settings, planner)
        account_id = await _account(service, 100)
        store.conflicts_left = 2

        await service.create_transaction(OWNER, account_id, 10, TransactionType.DEPOSIT, "gift")

        assert await _balance(service, account_id) == Decimal("110")
        events = await DocumentAuditStorage(audit_store).get_recent_events()
        created = [e for e in events if e.event_type == AuditEventType.TRANSACTION_CREATED]
        assert created[0].details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, ledger_settings, planner):
        store, audit_store = FlakyStore(conflicts=0), InMemoryDocumentStore()
        service = self._service(store, audit_store, ledger_settings, planner)
        account_id = await _account(service, 100)
        store.conflicts_left = 100

        with pytest.raises(Aborted) as exc_info:
            await service.create_transaction(OWNER, account_id, 10, TransactionType.DEPOSIT, "gift")

        assert exc_info.value.retryable is False
        assert exc_info.value.attempts == ledger_settings.max_attempts
        store.conflicts_left = 0
        assert await _balance(service, account_id) == Decimal("100")
        events = await DocumentAuditStorage(audit_store).get_recent_events()
        [aborted] = [e for e in events if e.event_type == AuditEventType.MUTATION_ABORTED]
        assert aborted.details["attempts"] == ledger_settings.max_attempts

    @pytest.mark.asyncio
    async def test_reconcile_is_retried(self, ledger_settings, planner):
        store, audit_store = FlakyStore(conflicts=0), InMemoryDocumentStore()
        service = self._service(store, audit_store, ledger_settings, planner)
        account_id = await _account(service, 100)
        goal = await service.create_goal(OWNER, "Trip", 500)

        store.conflicts_left = 2
        report = await service.reconcile_account(OWNER, account_id)
        assert report.is_consistent
        assert report.computed_balance == Decimal("100")

        store.conflicts_left = 2
        assert (await service.reconcile_goal(OWNER, goal.entity_id)).is_consistent

        store.conflicts_left = 2
        [only] = await service.reconcile_all(OWNER)
        assert only.entity_id == account_id
        assert store.conflicts_left == 0


class TestInsights:

    @pytest.mark.asyncio
    async def test_inputs_default_to_ledger_summaries(self, service, insights_model):
        account_id = await _account(service, 1000)
        await service.create_transaction(OWNER, account_id, 200, TransactionType.WITHDRAWAL, "Rent")

        result = await service.generate_insights(OWNER)

        assert not result.used_fallback
        assert "rent 200.00" in insights_model.prompts[0]
        assert "No savings goals" in insights_model.prompts[0]

    @pytest.mark.asyncio
    async def test_short_input_is_a_validation_error(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.generate_insights(OWNER, "food", "save more money every month")

        assert "spending_habits" in exc_info.value.field_errors()

    @pytest.mark.asyncio
    async def test_model_failure_falls_back(self, service, insights_model, audit_storage):
        insights_model.error = RuntimeError("model unavailable")

        result = await service.generate_insights(OWNER, "I spend a lot on takeout", "Save for a house deposit")

        assert result.used_fallback
        assert "takeout" in result.insights
        [event] = await _events(audit_storage, AuditEventType.INSIGHTS_GENERATED)
        assert event.details["used_fallback"] is True
        [failure] = await _events(audit_storage, AuditEventType.EXTERNAL_SERVICE_ERROR)
        assert failure.details["service"] == "gemini"
        assert failure.error_message == "model unavailable"
        assert failure.correlation_id == event.correlation_id


def test_app_components_use_given_store():
    store = InMemoryDocumentStore()

    service = create_app_components(store)

    assert service.ledger_store.document_store is store
