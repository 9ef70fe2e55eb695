"""
Two-Stage Validation Pipeline

DESIGN DECISION: Validation of user intents happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Required field presence
- Positive amounts, quantities and prices
- Format validation (currency codes, tickers)
- Errors here block the mutation before any storage access

STAGE 2 - SEMANTIC VALIDATION:
- Suspiciously large amounts
- Transactions dated in the future
- Goal target dates already in the past
- These are warnings: allowed, but surfaced for the user to confirm

WHY TWO STAGES:
1. Separation of concerns (structural vs logical)
2. Better error messages (know exactly what kind of issue)
3. Can skip stage 2 if stage 1 fails

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for human review.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from finledger.config import AppSettings, get_settings
from finledger.models.ledger import AccountType, TransactionType, money
from finledger.models.validation import ValidationIssue, ValidationResult


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    return None


class IntentValidator:
    """
    Validates user intents through a two-stage pipeline.

    Each validate_* method returns a ValidationResult; the mutation
    planner refuses to plan when the result has errors.
    """

    def __init__(self, settings: Optional[AppSettings] = None):
        self._settings = settings or get_settings().app

    # -------------------------------------------------------------------------
    # Field checks shared by every intent
    # -------------------------------------------------------------------------

    def _positive_amount(
        self,
        field: str,
        value: Any,
        label: str,
        issues: list[ValidationIssue],
        in_cents: bool = True,
    ) -> Optional[Decimal]:
        """Parse a positive number. Money amounts must still be positive once rounded to cents."""
        amount = _to_decimal(value)
        if amount is None:
            issues.append(ValidationIssue(
                field=field,
                issue_type="missing" if value is None else "invalid_value",
                message=f"{label} is required and must be a number",
                severity="error",
                suggested_fix=f"Enter the {label.lower()} as a number, e.g. 25.00",
            ))
            return None
        if (money(amount) if in_cents else amount) <= 0:
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{label} must be greater than zero",
                severity="error",
                suggested_fix="Use the transaction type to say which way the money moves",
            ))
            return None
        return amount

    def _required_text(
        self,
        field: str,
        value: Optional[str],
        label: str,
        issues: list[ValidationIssue],
        max_length: int = 128,
    ) -> None:
        if not value or not value.strip():
            issues.append(ValidationIssue(
                field=field,
                issue_type="missing",
                message=f"{label} is required",
                severity="error",
            ))
        elif len(value.strip()) > max_length:
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message=f"{label} must be at most {max_length} characters",
                severity="error",
            ))

    def _large_amount(
        self,
        field: str,
        amount: Optional[Decimal],
        issues: list[ValidationIssue],
    ) -> None:
        limit = Decimal(str(self._settings.max_transaction_amount))
        if amount is not None and abs(amount) > limit:
            issues.append(ValidationIssue(
                field=field,
                issue_type="suspicious_value",
                message=f"Amount ({amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

    @staticmethod
    def _result(
        subject: str,
        schema_issues: list[ValidationIssue],
        semantic_issues: Optional[list[ValidationIssue]] = None,
    ) -> ValidationResult:
        schema_valid = not any(issue.severity == "error" for issue in schema_issues)
        semantic_issues = semantic_issues or []
        semantic_valid = schema_valid and not any(
            issue.severity == "error" for issue in semantic_issues
        )
        return ValidationResult(
            subject=subject,
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=schema_issues + semantic_issues,
        )

    # -------------------------------------------------------------------------
    # Intents
    # -------------------------------------------------------------------------

    def validate_transaction(
        self,
        amount: Any,
        transaction_type: Any,
        category: Optional[str],
        occurred_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> ValidationResult:
        """Validate a new or edited transaction."""
        issues: list[ValidationIssue] = []
        parsed = self._positive_amount("amount", amount, "Amount", issues)

        try:
            TransactionType(transaction_type)
        except ValueError:
            issues.append(ValidationIssue(
                field="transaction_type",
                issue_type="invalid_value",
                message=f"Unknown transaction type: {transaction_type}",
                severity="error",
                suggested_fix="Choose deposit, withdrawal or payment",
            ))

        self._required_text("category", category, "Category", issues, max_length=100)
        if description and len(description) > 255:
            issues.append(ValidationIssue(
                field="description",
                issue_type="invalid_value",
                message="Description must be at most 255 characters",
                severity="error",
            ))

        schema_valid = not any(issue.severity == "error" for issue in issues)
        if not schema_valid:
            return self._result("transaction", issues)

        # Stage 2
        semantic: list[ValidationIssue] = []
        self._large_amount("amount", parsed, semantic)

        occurred = _as_date(occurred_at)
        if occurred is not None:
            latest = date.today() + timedelta(days=self._settings.future_date_tolerance_days)
            if occurred > latest:
                semantic.append(ValidationIssue(
                    field="occurred_at",
                    issue_type="future_date",
                    message=f"Transaction date ({occurred}) is in the future",
                    severity="warning",
                    suggested_fix="Please verify the date is correct",
                ))

        return self._result("transaction", issues, semantic)

    def validate_account(
        self,
        name: Optional[str],
        account_type: Any,
        currency: Optional[str],
        opening_balance: Any = 0,
    ) -> ValidationResult:
        """Validate a new account. The opening balance may be zero or negative."""
        issues: list[ValidationIssue] = []
        self._required_text("name", name, "Account name", issues)

        try:
            AccountType(account_type)
        except ValueError:
            issues.append(ValidationIssue(
                field="account_type",
                issue_type="invalid_value",
                message=f"Unknown account type: {account_type}",
                severity="error",
                suggested_fix="Choose checking, savings, credit_card or investment",
            ))

        code = (currency or "").strip()
        if len(code) != 3 or not code.isalpha():
            issues.append(ValidationIssue(
                field="currency",
                issue_type="invalid_value",
                message=f"Currency must be a three-letter ISO code, got '{currency}'",
                severity="error",
                suggested_fix="For example USD, EUR or INR",
            ))

        balance = _to_decimal(opening_balance if opening_balance is not None else 0)
        if balance is None:
            issues.append(ValidationIssue(
                field="opening_balance",
                issue_type="invalid_value",
                message="Opening balance must be a number",
                severity="error",
            ))

        if any(issue.severity == "error" for issue in issues):
            return self._result("account", issues)

        semantic: list[ValidationIssue] = []
        self._large_amount("opening_balance", balance, semantic)
        return self._result("account", issues, semantic)

    def validate_amount(self, amount: Any, subject: str = "amount") -> ValidationResult:
        """Validate a bare positive amount (funding, goal contributions)."""
        issues: list[ValidationIssue] = []
        parsed = self._positive_amount("amount", amount, "Amount", issues)
        if any(issue.severity == "error" for issue in issues):
            return self._result(subject, issues)
        semantic: list[ValidationIssue] = []
        self._large_amount("amount", parsed, semantic)
        return self._result(subject, issues, semantic)

    def validate_goal(
        self,
        name: Optional[str],
        target_amount: Any,
        target_date: Optional[date] = None,
        initial_amount: Any = 0,
    ) -> ValidationResult:
        """Validate a new or edited savings goal."""
        issues: list[ValidationIssue] = []
        self._required_text("name", name, "Goal name", issues)
        self._positive_amount("target_amount", target_amount, "Target amount", issues)

        initial = _to_decimal(initial_amount if initial_amount is not None else 0)
        if initial is None or initial < 0:
            issues.append(ValidationIssue(
                field="initial_amount",
                issue_type="invalid_value",
                message="Initial amount must be zero or more",
                severity="error",
            ))

        if any(issue.severity == "error" for issue in issues):
            return self._result("goal", issues)

        semantic: list[ValidationIssue] = []
        deadline = _as_date(target_date)
        if deadline is not None and deadline < date.today():
            semantic.append(ValidationIssue(
                field="target_date",
                issue_type="past_date",
                message=f"Target date ({deadline}) has already passed",
                severity="warning",
                suggested_fix="Pick a date in the future",
            ))
        if initial and initial > _to_decimal(target_amount):
            semantic.append(ValidationIssue(
                field="initial_amount",
                issue_type="suspicious_value",
                message="Initial amount is more than the target",
                severity="warning",
            ))
        return self._result("goal", issues, semantic)

    def validate_investment(
        self,
        name: Optional[str],
        ticker: Optional[str],
        quantity: Any,
        purchase_price: Any,
    ) -> ValidationResult:
        """Validate an investment purchase or edit."""
        issues: list[ValidationIssue] = []
        self._required_text("name", name, "Investment name", issues)
        self._required_text("ticker", ticker, "Ticker", issues, max_length=16)
        qty = self._positive_amount("quantity", quantity, "Quantity", issues, in_cents=False)
        price = self._positive_amount(
            "purchase_price", purchase_price, "Purchase price", issues, in_cents=False,
        )
        if qty is not None and price is not None and money(qty * price) <= 0:
            issues.append(ValidationIssue(
                field="quantity",
                issue_type="invalid_value",
                message="Total cost rounds to zero",
                severity="error",
                suggested_fix="Buy a larger quantity so the cost is at least 0.01",
            ))

        if any(issue.severity == "error" for issue in issues):
            return self._result("investment", issues)

        semantic: list[ValidationIssue] = []
        self._large_amount("purchase_price", qty * price, semantic)
        return self._result("investment", issues, semantic)

    def get_user_friendly_summary(
        self,
        result: ValidationResult,
    ) -> str:
        """
        Generate a user-friendly summary of validation results.

        This is what we show next to the form before saving.
        """
        if result.is_valid and not result.warnings:
            return "✅ All checks passed."

        lines = []

        if result.has_errors:
            lines.append("❌ Please fix the following:")
            for issue in result.errors:
                lines.append(f"   • {issue.message}")
                if issue.suggested_fix:
                    lines.append(f"     💡 {issue.suggested_fix}")

        if result.warnings:
            if lines:
                lines.append("")
            lines.append("⚠️ Please verify the following:")
            for warning in result.warnings:
                lines.append(f"   • {warning}")

        lines.append("")
        if result.has_errors:
            lines.append("Nothing was saved.")
        else:
            lines.append("You can still save, but please double-check.")

        return "\n".join(lines)
