"""
Core Ledger Models for finledger

These models define the document shapes persisted in the document store:
accounts, transactions, savings goals and investments.

DESIGN DECISION: Monetary values are Decimal in Python and strings in the
store. Floats never touch a balance.

The cached totals (Account.balance, SavingsGoal.current_amount) are only
ever written by the ledger store while applying a plan.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Opaque document identifier."""
    return uuid4().hex


def money(value: Any) -> Decimal:
    """Coerce to a Decimal rounded to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# ENUMS
# =============================================================================

class AccountType(str, Enum):
    """
    Supported account types.

    credit_card balances are debt-positive: a positive balance is the
    amount owed.
    """
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"
    INVESTMENT = "investment"


class TransactionType(str, Enum):
    """Transaction types. Deposits are inflows, the rest are outflows."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PAYMENT = "payment"


class InvestmentType(str, Enum):
    STOCK = "stock"
    ETF = "etf"
    MUTUAL_FUND = "mutual_fund"
    BOND = "bond"
    CRYPTO = "crypto"
    OTHER = "other"


class DocumentKind(str, Enum):
    """Collections under users/{owner_id}/ in the document store."""
    ACCOUNT = "accounts"
    TRANSACTION = "transactions"
    GOAL = "savingsGoals"
    INVESTMENT = "investments"


def signed_amount(amount: Decimal, transaction_type: TransactionType) -> Decimal:
    """Apply the sign implied by the transaction type to a magnitude."""
    magnitude = abs(Decimal(amount))
    if transaction_type == TransactionType.DEPOSIT:
        return magnitude
    return -magnitude


def balance_effect(
    account_type: AccountType,
    transaction_type: TransactionType,
    amount: Decimal,
) -> Decimal:
    """
    How much a transaction moves its account's balance.

    Cash accounts move by the signed amount. Credit cards track debt, so a
    charge (withdrawal, negative amount) raises the balance and a refund
    (deposit) lowers it, while a payment, itself negative, pays the debt
    down by its own amount.
    """
    amount = Decimal(amount)
    if account_type == AccountType.CREDIT_CARD and transaction_type != TransactionType.PAYMENT:
        return -amount
    return amount


# =============================================================================
# LINKED RECORDS
# =============================================================================

class NoLink(BaseModel):
    """A transaction entered directly by the user."""
    kind: Literal["none"] = "none"


class GoalContribution(BaseModel):
    """Withdrawal that funds a savings goal."""
    kind: Literal["goal_contribution"] = "goal_contribution"
    goal_id: str


class InvestmentPurchase(BaseModel):
    """Withdrawal that paid for an investment."""
    kind: Literal["investment_purchase"] = "investment_purchase"
    investment_id: str


LinkKind = Annotated[
    Union[NoLink, GoalContribution, InvestmentPurchase],
    Field(discriminator="kind"),
]


# =============================================================================
# DOCUMENTS
# =============================================================================

class LedgerDocument(BaseModel):
    """Fields shared by every owner-scoped document."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    owner_id: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(
        default=0,
        ge=0,
        description="Bumped by the store on every committed write"
    )

    def to_document(self) -> dict:
        """Serialize for the document store (Decimals become strings)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, data: dict):
        return cls.model_validate(data)


class Account(LedgerDocument):
    """A money account owned by a user."""

    name: str = Field(..., min_length=1, max_length=128)
    account_type: AccountType
    balance: Decimal = Field(
        default=Decimal("0"),
        description="Cached sum of transaction balance effects"
    )
    currency: str = Field(default="USD")

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid ISO 4217 currency code: {v}")
        return v

    @property
    def is_credit(self) -> bool:
        return self.account_type == AccountType.CREDIT_CARD

    def effect_of(self, transaction: "Transaction") -> Decimal:
        return balance_effect(self.account_type, transaction.transaction_type, transaction.amount)


class Transaction(LedgerDocument):
    """
    A single money movement against one account.

    Amounts are signed: positive for inflow, negative for outflow.
    """

    account_id: str = Field(..., min_length=1)
    amount: Decimal
    transaction_type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=255)
    occurred_at: datetime = Field(default_factory=utcnow)
    link: LinkKind = Field(default_factory=NoLink)

    @field_validator('occurred_at')
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        """Naive times are taken as UTC so every transaction sorts together."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_linked(self) -> bool:
        return not isinstance(self.link, NoLink)

    @property
    def linked_record_id(self) -> Optional[str]:
        if isinstance(self.link, GoalContribution):
            return self.link.goal_id
        if isinstance(self.link, InvestmentPurchase):
            return self.link.investment_id
        return None


class SavingsGoal(LedgerDocument):
    """A savings target funded by contributions from accounts."""

    name: str = Field(..., min_length=1, max_length=128)
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(
        default=Decimal("0"),
        description="Cached sum of linked contribution amounts"
    )
    target_date: Optional[date] = None

    @property
    def progress(self) -> float:
        """Fraction of the target reached, capped at 1."""
        return float(min(self.current_amount / self.target_amount, Decimal("1")))

    @property
    def remaining(self) -> Decimal:
        return max(self.target_amount - self.current_amount, Decimal("0"))


class Investment(LedgerDocument):
    """A holding bought with money from an account."""

    name: str = Field(..., min_length=1, max_length=128)
    ticker: str = Field(..., min_length=1, max_length=16)
    investment_type: InvestmentType = InvestmentType.STOCK
    quantity: Decimal = Field(..., gt=0)
    purchase_price: Decimal = Field(..., gt=0)
    purchase_date: date = Field(default_factory=lambda: utcnow().date())
    current_value: Decimal = Field(default=Decimal("0"), ge=0)
    linked_transaction_id: str = Field(..., min_length=1)

    @field_validator('ticker')
    @classmethod
    def normalize_ticker(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def cost(self) -> Decimal:
        return money(self.quantity * self.purchase_price)

    @property
    def gain(self) -> Decimal:
        return self.current_value - self.cost


DOCUMENT_MODELS: dict[DocumentKind, type[LedgerDocument]] = {
    DocumentKind.ACCOUNT: Account,
    DocumentKind.TRANSACTION: Transaction,
    DocumentKind.GOAL: SavingsGoal,
    DocumentKind.INVESTMENT: Investment,
}
