"""
Tests for atomic plan application.
"""

import pytest
from decimal import Decimal

from finledger.ledger import Aborted, InsufficientFunds, LedgerStore, ReferenceNotFound, collection_path
from finledger.models.ledger import Account, AccountType, DocumentKind, TransactionType
from finledger.services.storage import InMemoryDocumentStore


OWNER = "u1"
ACCOUNTS = collection_path(OWNER, DocumentKind.ACCOUNT)
TRANSACTIONS = collection_path(OWNER, DocumentKind.TRANSACTION)
INVESTMENTS = collection_path(OWNER, DocumentKind.INVESTMENT)


async def _open(ledger_store, planner, account_type=AccountType.CHECKING, opening=0):
    plan = planner.plan_create_account(OWNER, "Main", account_type, "USD", opening)
    applied = await ledger_store.apply_atomic(plan)
    return applied.entity_id


def test_collection_path():
    assert collection_path("abc", DocumentKind.GOAL) == "users/abc/savingsGoals"


@pytest.mark.asyncio
async def test_create_account_with_opening_balance(ledger_store, planner, document_store):
    account_id = await _open(ledger_store, planner, opening=100)

    account = await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    assert account.balance == Decimal("100.00")
    assert account.version == 1
    assert len(await ledger_store.transactions_for_account(OWNER, account_id)) == 1
    assert document_store.commit_count == 1


@pytest.mark.asyncio
async def test_posting_reads_balance_inside_unit(ledger_store, planner):
    account_id = await _open(ledger_store, planner, opening=100)

    plan = planner.plan_create_transaction(OWNER, account_id, 30, TransactionType.WITHDRAWAL, "food")
    applied = await ledger_store.apply_atomic(plan)

    assert applied.balances == {account_id: Decimal("70.00")}
    account = await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    assert account.balance == Decimal("70.00")
    assert account.version == 2


@pytest.mark.asyncio
async def test_missing_account_writes_nothing(ledger_store, planner, document_store):
    plan = planner.plan_create_transaction(OWNER, "missing", 30, TransactionType.DEPOSIT, "salary")

    with pytest.raises(ReferenceNotFound) as exc_info:
        await ledger_store.apply_atomic(plan)

    assert exc_info.value.doc_id == "missing"
    assert await document_store.list_documents(TRANSACTIONS) == []
    assert document_store.commit_count == 0


@pytest.mark.asyncio
async def test_funds_guard_uses_pre_plan_balance(ledger_store, planner, document_store):
    account_id = await _open(ledger_store, planner, opening=40)
    plan = planner.plan_purchase_investment(OWNER, account_id, "Acme", "ACME", 2, 50)

    with pytest.raises(InsufficientFunds) as exc_info:
        await ledger_store.apply_atomic(plan)

    assert exc_info.value.required == Decimal("100.00")
    assert exc_info.value.available == Decimal("40.00")
    assert await document_store.list_documents(INVESTMENTS) == []
    assert len(await document_store.list_documents(TRANSACTIONS)) == 1


@pytest.mark.asyncio
async def test_credit_card_is_exempt_from_funds_guard(ledger_store, planner):
    card_id = await _open(ledger_store, planner, AccountType.CREDIT_CARD)
    plan = planner.plan_purchase_investment(OWNER, card_id, "Acme", "ACME", 2, 50)

    applied = await ledger_store.apply_atomic(plan)

    assert applied.balances[card_id] == Decimal("100.00")


@pytest.mark.asyncio
async def test_partial_commit_leaves_nothing_behind(planner):
    document_store = InMemoryDocumentStore()
    ledger_store = LedgerStore(document_store)
    account_id = await _open(ledger_store, planner, opening=100)
    document_store.fail_after_writes = 1

    plan = planner.plan_create_transaction(OWNER, account_id, 30, TransactionType.WITHDRAWAL, "food")
    with pytest.raises(Aborted) as exc_info:
        await ledger_store.apply_atomic(plan)

    assert exc_info.value.retryable is False
    document_store.fail_after_writes = None
    account = await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    assert account.balance == Decimal("100.00")
    assert len(await ledger_store.transactions_for_account(OWNER, account_id)) == 1


def _read_targets(document_store, plan):
    return {
        (kind, doc_id): document_store.peek(collection_path(OWNER, kind), doc_id)
        for kind, doc_id in plan.targets()
    }


async def _crash_mid_commit(document_store, ledger_store, plan, fail_after):
    before = _read_targets(document_store, plan)
    commits = document_store.commit_count
    document_store.fail_after_writes = fail_after

    with pytest.raises(Aborted) as exc_info:
        await ledger_store.apply_atomic(plan)

    document_store.fail_after_writes = None
    assert exc_info.value.retryable is False
    assert document_store.commit_count == commits
    assert _read_targets(document_store, plan) == before


class TestCrashMidCommit:
    """A commit that dies after some writes leaves every plan target as it was."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_after", [1, 2])
    async def test_moving_transaction_between_accounts(self, ledger_store, planner, document_store, fail_after):
        x = await _open(ledger_store, planner, opening=200)
        y = await _open(ledger_store, planner, opening=10)
        create = planner.plan_create_transaction(OWNER, x, 50, TransactionType.WITHDRAWAL, "food")
        await ledger_store.apply_atomic(create)
        snapshot = await ledger_store.load(OWNER, DocumentKind.TRANSACTION, create.entity_id)

        plan = planner.plan_edit_transaction(snapshot, {"account_id": y})
        await _crash_mid_commit(document_store, ledger_store, plan, fail_after)

        assert (await ledger_store.load(OWNER, DocumentKind.ACCOUNT, x)).balance == Decimal("150.00")
        assert (await ledger_store.load(OWNER, DocumentKind.ACCOUNT, y)).balance == Decimal("10.00")
        moved = await ledger_store.load(OWNER, DocumentKind.TRANSACTION, create.entity_id)
        assert moved.account_id == x
        assert moved.version == snapshot.version

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_after", [1, 2])
    async def test_goal_contribution(self, ledger_store, planner, document_store, fail_after):
        account_id = await _open(ledger_store, planner, opening=500)
        created = await ledger_store.apply_atomic(planner.plan_create_goal(OWNER, "Trip", 1000))
        goal = await ledger_store.load(OWNER, DocumentKind.GOAL, created.entity_id)

        plan = planner.plan_contribute_to_goal(goal, account_id, 100)
        await _crash_mid_commit(document_store, ledger_store, plan, fail_after)

        assert (await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)).balance == Decimal("500.00")
        assert (await ledger_store.load(OWNER, DocumentKind.GOAL, goal.id)).current_amount == Decimal("0")
        assert await ledger_store.contributions_for_goal(OWNER, goal.id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_after", [1, 2])
    async def test_deleting_investment(self, ledger_store, planner, document_store, fail_after):
        account_id = await _open(ledger_store, planner, opening=320)
        bought = await ledger_store.apply_atomic(
            planner.plan_purchase_investment(OWNER, account_id, "Acme", "ACME", 3, 100)
        )
        investment = await ledger_store.load(OWNER, DocumentKind.INVESTMENT, bought.entity_id)
        linked = await ledger_store.load(OWNER, DocumentKind.TRANSACTION, investment.linked_transaction_id)

        plan = planner.plan_delete_investment(investment, linked)
        await _crash_mid_commit(document_store, ledger_store, plan, fail_after)

        assert (await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)).balance == Decimal("20.00")
        assert await ledger_store.find(OWNER, DocumentKind.INVESTMENT, investment.id) is not None
        assert await ledger_store.find(OWNER, DocumentKind.TRANSACTION, linked.id) is not None


@pytest.mark.asyncio
async def test_stale_snapshot_is_refused(ledger_store, planner):
    account_id = await _open(ledger_store, planner, opening=100)
    create = planner.plan_create_transaction(OWNER, account_id, 30, TransactionType.WITHDRAWAL, "food")
    await ledger_store.apply_atomic(create)
    snapshot = await ledger_store.load(OWNER, DocumentKind.TRANSACTION, create.entity_id)

    await ledger_store.apply_atomic(planner.plan_edit_transaction(snapshot, {"amount": 40}))
    stale = planner.plan_edit_transaction(snapshot, {"amount": 50})

    with pytest.raises(Aborted) as exc_info:
        await ledger_store.apply_atomic(stale)

    assert exc_info.value.retryable is True
    account = await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    assert account.balance == Decimal("60.00")


@pytest.mark.asyncio
async def test_replaying_a_plan_is_refused(ledger_store, planner):
    account_id = await _open(ledger_store, planner, opening=100)
    plan = planner.plan_create_transaction(OWNER, account_id, 10, TransactionType.DEPOSIT, "gift")
    await ledger_store.apply_atomic(plan)

    with pytest.raises(Aborted) as exc_info:
        await ledger_store.apply_atomic(plan)

    assert exc_info.value.retryable is False
    account = await ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    assert account.balance == Decimal("110.00")


@pytest.mark.asyncio
async def test_recompute_replaces_drifted_balance(ledger_store, planner, document_store):
    account = Account(owner_id=OWNER, name="Main", account_type=AccountType.CHECKING, balance=Decimal("999"))
    document_store.put_raw(ACCOUNTS, account.id, account.to_document())

    applied = await ledger_store.apply_atomic(planner.plan_repair_account(OWNER, account.id))

    assert applied.balances[account.id] == Decimal("0")
    assert applied.corrections[account.id] == Decimal("-999")


@pytest.mark.asyncio
async def test_find_returns_none_for_missing(ledger_store):
    assert await ledger_store.find(OWNER, DocumentKind.GOAL, "nope") is None
    with pytest.raises(ReferenceNotFound):
        await ledger_store.load(OWNER, DocumentKind.GOAL, "nope")
