"""
Mutation Planner

Translates a user intent into a Plan without touching storage.

DESIGN DECISION: The planner is pure. It takes record snapshots the caller
loaded and returns typed operations; the ledger store applies them inside
one atomic unit. This gives us:
1. One place where balance deltas are computed (no per-form copies)
2. Planning errors that short-circuit before any write
3. Plans that are cheap to rebuild when a retry needs fresh snapshots

Balances are never computed here. The planner only says "post this amount
to that account"; the store reads the account inside the unit and moves the
balance from what it reads there.

Every update and delete of an existing record carries the version the
planner saw. If the record moved on, the store refuses the plan with
StaleRecordError and the service re-plans from fresh snapshots.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from finledger.ledger.errors import LinkedRecordError, ReferenceNotFound, ValidationError
from finledger.models.ledger import (
    Account,
    AccountType,
    DocumentKind,
    GoalContribution,
    Investment,
    InvestmentPurchase,
    InvestmentType,
    SavingsGoal,
    Transaction,
    TransactionType,
    money,
    new_id,
    signed_amount,
)
from finledger.models.plan import (
    DeleteDocument,
    IncrementGoalAmount,
    InsertDocument,
    Plan,
    PostToAccount,
    RecomputeAccountBalance,
    RecomputeGoalAmount,
    RequireFunds,
    UpdateDocument,
)
from finledger.models.validation import ValidationIssue, ValidationResult
from finledger.validation import IntentValidator


EDITABLE_TRANSACTION_FIELDS = {
    "account_id", "amount", "transaction_type", "category", "description", "occurred_at",
}
EDITABLE_GOAL_FIELDS = {"name", "target_amount", "target_date"}
EDITABLE_INVESTMENT_FIELDS = {
    "account_id", "name", "ticker", "investment_type", "quantity", "purchase_price", "purchase_date",
}

OPENING_BALANCE_CATEGORY = "opening balance"
SAVINGS_CATEGORY = "savings"
INVESTMENT_CATEGORY = "investment"


def _changes(before: dict, after: dict, fields: set[str]) -> dict:
    """Document-form values of the fields that differ."""
    return {
        name: after[name]
        for name in sorted(fields)
        if name in after and before.get(name) != after[name]
    }


def _owner_label(transaction: Transaction) -> str:
    if isinstance(transaction.link, GoalContribution):
        return "savings goal"
    return "investment"


class MutationPlanner:
    """
    Builds plans for every ledger intent.

    Each plan_* method either returns a complete Plan or raises a
    LedgerError. No partial plan is ever returned.
    """

    def __init__(self, validator: Optional[IntentValidator] = None):
        self._validator = validator or IntentValidator()

    @property
    def validator(self) -> IntentValidator:
        return self._validator

    @staticmethod
    def _ensure_valid(result: ValidationResult) -> None:
        if result.has_errors:
            raise ValidationError(result.errors)

    @staticmethod
    def _reject_unknown(new_fields: dict, allowed: set[str]) -> None:
        unknown = sorted(set(new_fields) - allowed)
        if unknown:
            raise ValidationError([
                ValidationIssue(
                    field=name,
                    issue_type="not_editable",
                    message=f"{name} cannot be edited here",
                    severity="error",
                )
                for name in unknown
            ])

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def plan_create_transaction(
        self,
        owner_id: str,
        account_id: str,
        amount: Any,
        transaction_type: TransactionType,
        category: str,
        occurred_at: Optional[datetime] = None,
        description: str = "",
    ) -> Plan:
        """
        Record a transaction and post it to its account.

        amount is a positive magnitude; the type decides the sign.
        """
        self._ensure_valid(self._validator.validate_transaction(
            amount, transaction_type, category, occurred_at, description,
        ))
        transaction_type = TransactionType(transaction_type)
        fields = {"occurred_at": occurred_at} if occurred_at else {}
        transaction = Transaction(
            owner_id=owner_id,
            account_id=account_id,
            amount=signed_amount(money(amount), transaction_type),
            transaction_type=transaction_type,
            category=category,
            description=description or "",
            **fields,
        )
        return Plan(
            owner_id=owner_id,
            intent="create_transaction",
            entity_kind=DocumentKind.TRANSACTION,
            entity_id=transaction.id,
            operations=[
                InsertDocument(
                    kind=DocumentKind.TRANSACTION,
                    doc_id=transaction.id,
                    data=transaction.to_document(),
                ),
                PostToAccount(
                    account_id=account_id,
                    amount=transaction.amount,
                    transaction_type=transaction_type,
                ),
            ],
        )

    def plan_edit_transaction(self, existing: Transaction, new_fields: dict) -> Plan:
        """
        Edit a transaction, moving balances by the difference.

        Same account and type: one posting of new minus old.
        Otherwise the old posting is reversed on the old account and the
        new amount is posted on the new account.
        """
        if existing.is_linked:
            raise LinkedRecordError(existing.id, _owner_label(existing))
        self._reject_unknown(new_fields, EDITABLE_TRANSACTION_FIELDS)

        transaction_type = new_fields.get("transaction_type", existing.transaction_type)
        magnitude = new_fields.get("amount", abs(existing.amount))
        category = new_fields.get("category", existing.category)
        self._ensure_valid(self._validator.validate_transaction(
            magnitude,
            transaction_type,
            category,
            new_fields.get("occurred_at"),
            new_fields.get("description", existing.description),
        ))
        transaction_type = TransactionType(transaction_type)

        account_id = new_fields.get("account_id") or existing.account_id
        updated = Transaction.model_validate({
            **existing.model_dump(),
            **new_fields,
            "account_id": account_id,
            "transaction_type": transaction_type,
            "amount": signed_amount(money(magnitude), transaction_type),
        })

        operations: list = []
        changes = _changes(existing.to_document(), updated.to_document(), EDITABLE_TRANSACTION_FIELDS)
        if changes:
            operations.append(UpdateDocument(
                kind=DocumentKind.TRANSACTION,
                doc_id=existing.id,
                changes=changes,
                expected_version=existing.version,
            ))

        if account_id == existing.account_id and transaction_type == existing.transaction_type:
            delta = updated.amount - existing.amount
            if delta != 0:
                operations.append(PostToAccount(
                    account_id=account_id,
                    amount=delta,
                    transaction_type=transaction_type,
                ))
        else:
            operations.append(PostToAccount(
                account_id=existing.account_id,
                amount=-existing.amount,
                transaction_type=existing.transaction_type,
            ))
            operations.append(PostToAccount(
                account_id=account_id,
                amount=updated.amount,
                transaction_type=transaction_type,
            ))

        if not operations:
            raise ValidationError([ValidationIssue(
                field="transaction",
                issue_type="unchanged",
                message="Nothing to save: no field was changed",
                severity="error",
            )])

        return Plan(
            owner_id=existing.owner_id,
            intent="edit_transaction",
            entity_kind=DocumentKind.TRANSACTION,
            entity_id=existing.id,
            operations=operations,
        )

    def plan_delete_transaction(self, existing: Transaction) -> Plan:
        """Delete a transaction and reverse its posting."""
        if existing.is_linked:
            raise LinkedRecordError(existing.id, _owner_label(existing))
        return Plan(
            owner_id=existing.owner_id,
            intent="delete_transaction",
            entity_kind=DocumentKind.TRANSACTION,
            entity_id=existing.id,
            operations=[
                DeleteDocument(
                    kind=DocumentKind.TRANSACTION,
                    doc_id=existing.id,
                    expected_version=existing.version,
                ),
                PostToAccount(
                    account_id=existing.account_id,
                    amount=-existing.amount,
                    transaction_type=existing.transaction_type,
                ),
            ],
        )

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def plan_create_account(
        self,
        owner_id: str,
        name: str,
        account_type: AccountType,
        currency: str = "USD",
        opening_balance: Any = 0,
    ) -> Plan:
        """
        Open an account at zero, recording any opening balance as a transaction.

        For credit cards the opening balance is the amount owed.
        """
        self._ensure_valid(self._validator.validate_account(
            name, account_type, currency, opening_balance,
        ))
        account = Account(
            owner_id=owner_id,
            name=name,
            account_type=AccountType(account_type),
            currency=currency,
        )
        operations: list = [InsertDocument(
            kind=DocumentKind.ACCOUNT,
            doc_id=account.id,
            data=account.to_document(),
        )]

        opening = money(opening_balance or 0)
        if opening != 0:
            if account.is_credit:
                # Owed money is a charge; a credit balance is a refund.
                transaction_type = TransactionType.WITHDRAWAL if opening > 0 else TransactionType.DEPOSIT
            else:
                transaction_type = TransactionType.DEPOSIT if opening > 0 else TransactionType.WITHDRAWAL
            transaction = Transaction(
                owner_id=owner_id,
                account_id=account.id,
                amount=signed_amount(opening, transaction_type),
                transaction_type=transaction_type,
                category=OPENING_BALANCE_CATEGORY,
                description=f"Opening balance for {account.name}",
            )
            operations.append(InsertDocument(
                kind=DocumentKind.TRANSACTION,
                doc_id=transaction.id,
                data=transaction.to_document(),
            ))
            operations.append(PostToAccount(
                account_id=account.id,
                amount=transaction.amount,
                transaction_type=transaction_type,
            ))

        return Plan(
            owner_id=owner_id,
            intent="create_account",
            entity_kind=DocumentKind.ACCOUNT,
            entity_id=account.id,
            operations=operations,
        )

    def plan_fund_account(self, account: Account, amount: Any) -> Plan:
        """
        Add money to an account.

        A cash account gets a deposit. A credit card gets a payment,
        which pays the debt down.
        """
        self._ensure_valid(self._validator.validate_amount(amount, "funding"))
        transaction_type = TransactionType.PAYMENT if account.is_credit else TransactionType.DEPOSIT
        transaction = Transaction(
            owner_id=account.owner_id,
            account_id=account.id,
            amount=signed_amount(money(amount), transaction_type),
            transaction_type=transaction_type,
            category=transaction_type.value,
            description=f"{transaction_type.value.capitalize()} to {account.name}",
        )
        return Plan(
            owner_id=account.owner_id,
            intent="fund_account",
            entity_kind=DocumentKind.ACCOUNT,
            entity_id=account.id,
            operations=[
                InsertDocument(
                    kind=DocumentKind.TRANSACTION,
                    doc_id=transaction.id,
                    data=transaction.to_document(),
                ),
                PostToAccount(
                    account_id=account.id,
                    amount=transaction.amount,
                    transaction_type=transaction_type,
                ),
            ],
        )

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    @staticmethod
    def _contribution_operations(
        goal: SavingsGoal,
        source_account_id: str,
        amount: Decimal,
        description: str,
    ) -> list:
        transaction = Transaction(
            owner_id=goal.owner_id,
            account_id=source_account_id,
            amount=-amount,
            transaction_type=TransactionType.WITHDRAWAL,
            category=SAVINGS_CATEGORY,
            description=description,
            link=GoalContribution(goal_id=goal.id),
        )
        return [
            RequireFunds(account_id=source_account_id, amount=amount),
            InsertDocument(
                kind=DocumentKind.TRANSACTION,
                doc_id=transaction.id,
                data=transaction.to_document(),
            ),
            IncrementGoalAmount(goal_id=goal.id, delta=amount),
            PostToAccount(
                account_id=source_account_id,
                amount=transaction.amount,
                transaction_type=TransactionType.WITHDRAWAL,
            ),
        ]

    def plan_contribute_to_goal(
        self,
        goal: SavingsGoal,
        source_account_id: str,
        amount: Any,
    ) -> Plan:
        """Move money from an account into a savings goal."""
        self._ensure_valid(self._validator.validate_amount(amount, "contribution"))
        return Plan(
            owner_id=goal.owner_id,
            intent="contribute_to_goal",
            entity_kind=DocumentKind.GOAL,
            entity_id=goal.id,
            operations=self._contribution_operations(
                goal, source_account_id, money(amount), f"Contribution to {goal.name}",
            ),
        )

    def plan_create_goal(
        self,
        owner_id: str,
        name: str,
        target_amount: Any,
        target_date: Optional[date] = None,
        initial_amount: Any = 0,
        source_account_id: Optional[str] = None,
    ) -> Plan:
        """Create a goal; a positive initial amount is contributed in the same plan."""
        self._ensure_valid(self._validator.validate_goal(
            name, target_amount, target_date, initial_amount,
        ))
        initial = money(initial_amount or 0)
        if initial > 0 and not source_account_id:
            raise ValidationError([ValidationIssue(
                field="source_account_id",
                issue_type="missing",
                message="Choose the account that funds the initial amount",
                severity="error",
            )])

        goal = SavingsGoal(
            owner_id=owner_id,
            name=name,
            target_amount=money(target_amount),
            target_date=target_date,
        )
        operations: list = [InsertDocument(
            kind=DocumentKind.GOAL,
            doc_id=goal.id,
            data=goal.to_document(),
        )]
        if initial > 0:
            operations.extend(self._contribution_operations(
                goal, source_account_id, initial, f"Initial contribution to {goal.name}",
            ))
        return Plan(
            owner_id=owner_id,
            intent="create_goal",
            entity_kind=DocumentKind.GOAL,
            entity_id=goal.id,
            operations=operations,
        )

    def plan_edit_goal(self, goal: SavingsGoal, new_fields: dict) -> Plan:
        """Rename or retarget a goal. The saved amount only moves by contribution."""
        self._reject_unknown(new_fields, EDITABLE_GOAL_FIELDS)
        updated_values = {
            "name": new_fields.get("name", goal.name),
            "target_amount": new_fields.get("target_amount", goal.target_amount),
            "target_date": new_fields.get("target_date", goal.target_date),
        }
        self._ensure_valid(self._validator.validate_goal(
            updated_values["name"], updated_values["target_amount"], updated_values["target_date"],
        ))
        updated_values["target_amount"] = money(updated_values["target_amount"])
        updated = goal.model_copy(update=updated_values)
        changes = _changes(goal.to_document(), updated.to_document(), EDITABLE_GOAL_FIELDS)
        if not changes:
            raise ValidationError([ValidationIssue(
                field="goal",
                issue_type="unchanged",
                message="Nothing to save: no field was changed",
                severity="error",
            )])
        return Plan(
            owner_id=goal.owner_id,
            intent="edit_goal",
            entity_kind=DocumentKind.GOAL,
            entity_id=goal.id,
            operations=[UpdateDocument(
                kind=DocumentKind.GOAL,
                doc_id=goal.id,
                changes=changes,
                expected_version=goal.version,
            )],
        )

    def plan_delete_goal(self, goal: SavingsGoal, contributions: list[Transaction]) -> Plan:
        """
        Delete a goal.

        Its contributions stay in the ledger as ordinary withdrawals, so no
        balance moves; only their link is cleared.
        """
        operations: list = [DeleteDocument(
            kind=DocumentKind.GOAL,
            doc_id=goal.id,
            expected_version=goal.version,
        )]
        for transaction in contributions:
            link = transaction.link
            if not isinstance(link, GoalContribution) or link.goal_id != goal.id:
                continue
            operations.append(UpdateDocument(
                kind=DocumentKind.TRANSACTION,
                doc_id=transaction.id,
                changes={"link": {"kind": "none"}},
                expected_version=transaction.version,
            ))
        return Plan(
            owner_id=goal.owner_id,
            intent="delete_goal",
            entity_kind=DocumentKind.GOAL,
            entity_id=goal.id,
            operations=operations,
        )

    # -------------------------------------------------------------------------
    # Investments
    # -------------------------------------------------------------------------

    def plan_purchase_investment(
        self,
        owner_id: str,
        account_id: str,
        name: str,
        ticker: str,
        quantity: Any,
        purchase_price: Any,
        investment_type: InvestmentType = InvestmentType.STOCK,
        purchase_date: Optional[date] = None,
    ) -> Plan:
        """Buy a holding: a linked withdrawal, the investment, and the debit."""
        self._ensure_valid(self._validator.validate_investment(
            name, ticker, quantity, purchase_price,
        ))
        quantity = Decimal(str(quantity))
        purchase_price = Decimal(str(purchase_price))
        cost = money(quantity * purchase_price)

        investment_id = new_id()
        transaction = Transaction(
            owner_id=owner_id,
            account_id=account_id,
            amount=-cost,
            transaction_type=TransactionType.WITHDRAWAL,
            category=INVESTMENT_CATEGORY,
            description=f"Purchase of {quantity} {ticker.strip().upper()}",
            link=InvestmentPurchase(investment_id=investment_id),
        )
        fields = {"purchase_date": purchase_date} if purchase_date else {}
        investment = Investment(
            id=investment_id,
            owner_id=owner_id,
            name=name,
            ticker=ticker,
            investment_type=InvestmentType(investment_type),
            quantity=quantity,
            purchase_price=purchase_price,
            current_value=cost,
            linked_transaction_id=transaction.id,
            **fields,
        )
        return Plan(
            owner_id=owner_id,
            intent="purchase_investment",
            entity_kind=DocumentKind.INVESTMENT,
            entity_id=investment.id,
            operations=[
                RequireFunds(account_id=account_id, amount=cost),
                InsertDocument(
                    kind=DocumentKind.TRANSACTION,
                    doc_id=transaction.id,
                    data=transaction.to_document(),
                ),
                InsertDocument(
                    kind=DocumentKind.INVESTMENT,
                    doc_id=investment.id,
                    data=investment.to_document(),
                ),
                PostToAccount(
                    account_id=account_id,
                    amount=transaction.amount,
                    transaction_type=TransactionType.WITHDRAWAL,
                ),
            ],
        )

    @staticmethod
    def _check_linked(existing: Investment, linked_transaction: Optional[Transaction]) -> Transaction:
        if linked_transaction is None or linked_transaction.id != existing.linked_transaction_id:
            raise ReferenceNotFound(DocumentKind.TRANSACTION.value, existing.linked_transaction_id)
        return linked_transaction

    def plan_edit_investment(
        self,
        existing: Investment,
        linked_transaction: Optional[Transaction],
        new_fields: dict,
    ) -> Plan:
        """
        Edit a holding and its purchase transaction together.

        The account moves by old cost minus new cost. Moving the purchase to
        another account refunds the old one and debits the new one.
        """
        linked = self._check_linked(existing, linked_transaction)
        self._reject_unknown(new_fields, EDITABLE_INVESTMENT_FIELDS)

        values = {
            "name": new_fields.get("name", existing.name),
            "ticker": new_fields.get("ticker", existing.ticker),
            "quantity": new_fields.get("quantity", existing.quantity),
            "purchase_price": new_fields.get("purchase_price", existing.purchase_price),
        }
        self._ensure_valid(self._validator.validate_investment(**values))

        old_cost = abs(linked.amount)
        new_quantity = Decimal(str(values["quantity"]))
        new_price = Decimal(str(values["purchase_price"]))
        new_cost = money(new_quantity * new_price)
        account_id = new_fields.get("account_id") or linked.account_id

        investment_update = {
            name: value for name, value in new_fields.items() if name != "account_id"
        }
        investment_update.update(
            quantity=new_quantity,
            purchase_price=new_price,
            # Valued at cost until the next price refresh
            current_value=new_cost,
        )
        updated_investment = Investment.model_validate({
            **existing.model_dump(), **investment_update,
        })
        updated_transaction = linked.model_copy(update={
            "account_id": account_id,
            "amount": -new_cost,
            "description": f"Purchase of {new_quantity} {updated_investment.ticker}",
        })

        operations: list = []
        if account_id == linked.account_id:
            if new_cost > old_cost:
                operations.append(RequireFunds(account_id=account_id, amount=new_cost - old_cost))
        else:
            operations.append(RequireFunds(account_id=account_id, amount=new_cost))

        investment_changes = _changes(
            existing.to_document(),
            updated_investment.to_document(),
            EDITABLE_INVESTMENT_FIELDS | {"current_value"},
        )
        if investment_changes:
            operations.append(UpdateDocument(
                kind=DocumentKind.INVESTMENT,
                doc_id=existing.id,
                changes=investment_changes,
                expected_version=existing.version,
            ))
        transaction_changes = _changes(
            linked.to_document(),
            updated_transaction.to_document(),
            {"account_id", "amount", "description"},
        )
        if transaction_changes:
            operations.append(UpdateDocument(
                kind=DocumentKind.TRANSACTION,
                doc_id=linked.id,
                changes=transaction_changes,
                expected_version=linked.version,
            ))

        if account_id == linked.account_id:
            if old_cost != new_cost:
                operations.append(PostToAccount(
                    account_id=account_id,
                    amount=old_cost - new_cost,
                    transaction_type=linked.transaction_type,
                ))
        else:
            operations.append(PostToAccount(
                account_id=linked.account_id,
                amount=old_cost,
                transaction_type=linked.transaction_type,
            ))
            operations.append(PostToAccount(
                account_id=account_id,
                amount=-new_cost,
                transaction_type=linked.transaction_type,
            ))

        if not operations:
            raise ValidationError([ValidationIssue(
                field="investment",
                issue_type="unchanged",
                message="Nothing to save: no field was changed",
                severity="error",
            )])

        return Plan(
            owner_id=existing.owner_id,
            intent="edit_investment",
            entity_kind=DocumentKind.INVESTMENT,
            entity_id=existing.id,
            operations=operations,
        )

    def plan_delete_investment(
        self,
        existing: Investment,
        linked_transaction: Optional[Transaction],
    ) -> Plan:
        """Delete a holding and its purchase, refunding the cost."""
        linked = self._check_linked(existing, linked_transaction)
        return Plan(
            owner_id=existing.owner_id,
            intent="delete_investment",
            entity_kind=DocumentKind.INVESTMENT,
            entity_id=existing.id,
            operations=[
                DeleteDocument(
                    kind=DocumentKind.INVESTMENT,
                    doc_id=existing.id,
                    expected_version=existing.version,
                ),
                DeleteDocument(
                    kind=DocumentKind.TRANSACTION,
                    doc_id=linked.id,
                    expected_version=linked.version,
                ),
                PostToAccount(
                    account_id=linked.account_id,
                    amount=-linked.amount,
                    transaction_type=linked.transaction_type,
                ),
            ],
        )

    def plan_refresh_investment_value(self, investment: Investment, current_value: Any) -> Plan:
        """Store a new market value. No balance moves."""
        value = money(current_value)
        if value < 0:
            raise ValidationError([ValidationIssue(
                field="current_value",
                issue_type="invalid_value",
                message="Market value cannot be negative",
                severity="error",
            )])
        return Plan(
            owner_id=investment.owner_id,
            intent="refresh_investment_value",
            entity_kind=DocumentKind.INVESTMENT,
            entity_id=investment.id,
            operations=[UpdateDocument(
                kind=DocumentKind.INVESTMENT,
                doc_id=investment.id,
                changes={"current_value": str(value)},
            )],
        )

    # -------------------------------------------------------------------------
    # Repairs
    # -------------------------------------------------------------------------

    def plan_repair_account(self, owner_id: str, account_id: str) -> Plan:
        return Plan(
            owner_id=owner_id,
            intent="repair_account",
            entity_kind=DocumentKind.ACCOUNT,
            entity_id=account_id,
            operations=[RecomputeAccountBalance(account_id=account_id)],
        )

    def plan_repair_goal(self, owner_id: str, goal_id: str) -> Plan:
        return Plan(
            owner_id=owner_id,
            intent="repair_goal",
            entity_kind=DocumentKind.GOAL,
            entity_id=goal_id,
            operations=[RecomputeGoalAmount(goal_id=goal_id)],
        )
