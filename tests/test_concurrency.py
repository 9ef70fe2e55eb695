"""
Concurrent mutations against one account.

The in-memory store yields on every read, so concurrent atomic units
interleave the way requests from two browser tabs would.
"""

import asyncio

import pytest
from decimal import Decimal

from finledger.models.ledger import AccountType, DocumentKind, TransactionType


OWNER = "u1"


async def _balance(service, account_id):
    account = await service.ledger_store.load(OWNER, DocumentKind.ACCOUNT, account_id)
    return account.balance


@pytest.mark.asyncio
async def test_parallel_postings_both_land(service):
    account_id = (await service.create_account(OWNER, "Checking", AccountType.CHECKING, "USD", 100)).entity_id

    await asyncio.gather(
        service.create_transaction(OWNER, account_id, 10, TransactionType.DEPOSIT, "gift"),
        service.create_transaction(OWNER, account_id, 3, TransactionType.WITHDRAWAL, "coffee"),
    )

    assert await _balance(service, account_id) == Decimal("107")
    assert (await service.reconcile_account(OWNER, account_id)).is_consistent


@pytest.mark.asyncio
async def test_many_parallel_postings(service):
    account_id = (await service.create_account(OWNER, "Checking", AccountType.CHECKING, "USD", 0)).entity_id

    await asyncio.gather(*[
        service.create_transaction(OWNER, account_id, 1, TransactionType.DEPOSIT, "tip")
        for _ in range(20)
    ])

    assert await _balance(service, account_id) == Decimal("20")
    assert (await service.reconcile_account(OWNER, account_id)).is_consistent


@pytest.mark.asyncio
async def test_conflicting_edits_are_replanned(service, document_store):
    account_id = (await service.create_account(OWNER, "Checking", AccountType.CHECKING, "USD", 100)).entity_id
    tx_id = (await service.create_transaction(OWNER, account_id, 10, TransactionType.WITHDRAWAL, "food")).entity_id

    await asyncio.gather(
        service.edit_transaction(OWNER, tx_id, {"amount": 20}),
        service.edit_transaction(OWNER, tx_id, {"amount": 30}),
    )

    tx = await service.ledger_store.load(OWNER, DocumentKind.TRANSACTION, tx_id)
    assert tx.amount in (Decimal("-20"), Decimal("-30"))
    assert await _balance(service, account_id) == Decimal("100") + tx.amount
    assert document_store.conflict_count >= 1
    assert (await service.reconcile_account(OWNER, account_id)).is_consistent


@pytest.mark.asyncio
async def test_parallel_contributions_respect_funds(service):
    account_id = (await service.create_account(OWNER, "Checking", AccountType.CHECKING, "USD", 150)).entity_id
    goal_id = (await service.create_goal(OWNER, "Trip", 1000)).entity_id

    results = await asyncio.gather(
        service.contribute_to_goal(OWNER, goal_id, account_id, 100),
        service.contribute_to_goal(OWNER, goal_id, account_id, 100),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert await _balance(service, account_id) == Decimal("50")
    goal = await service.ledger_store.load(OWNER, DocumentKind.GOAL, goal_id)
    assert goal.current_amount == Decimal("100")


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_tear_a_commit(service, planner):
    account_id = (await service.create_account(OWNER, "Checking", AccountType.CHECKING, "USD", 100)).entity_id
    plan = planner.plan_create_transaction(OWNER, account_id, 25, TransactionType.WITHDRAWAL, "food")

    task = asyncio.ensure_future(service.ledger_store.apply_atomic(plan))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    # The submitted unit is shielded and still runs to completion
    for _ in range(10):
        await asyncio.sleep(0)

    assert await _balance(service, account_id) == Decimal("75")
    assert (await service.reconcile_account(OWNER, account_id)).is_consistent
