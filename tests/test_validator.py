"""
Tests for the two-stage intent validator.
"""

from datetime import date, datetime, timedelta, timezone

from finledger.config import AppSettings
from finledger.validation import IntentValidator


class TestTransactionValidation:

    def test_valid_transaction_passes(self, validator):
        result = validator.validate_transaction("12.50", "withdrawal", "food")
        assert result.is_valid
        assert result.issues == []

    def test_non_numeric_amount(self, validator):
        result = validator.validate_transaction("abc", "deposit", "salary")
        assert not result.schema_valid
        assert result.field_errors()["amount"] == "Amount is required and must be a number"

    def test_negative_amount_blocks(self, validator):
        result = validator.validate_transaction(-10, "deposit", "salary")
        assert result.has_errors
        assert result.errors[0].suggested_fix is not None

    def test_amount_must_survive_rounding_to_cents(self, validator):
        assert validator.validate_transaction("0.004", "deposit", "salary").has_errors
        assert validator.validate_amount("0.004").has_errors
        assert validator.validate_amount("0.005").is_valid

    def test_investment_cost_must_reach_a_cent(self, validator):
        result = validator.validate_investment("Acme", "ACME", "0.001", "1")
        assert result.field_errors()["quantity"] == "Total cost rounds to zero"
        assert validator.validate_investment("Acme", "ACME", "0.001", "0.5").is_valid is False
        assert validator.validate_investment("Acme", "ACME", "0.02", "0.5").is_valid

    def test_errors_skip_semantic_stage(self, validator):
        future = datetime.now(timezone.utc) + timedelta(days=30)
        result = validator.validate_transaction(0, "deposit", "salary", occurred_at=future)
        assert not result.semantic_valid
        assert result.warnings == []

    def test_large_amount_is_only_a_warning(self):
        validator = IntentValidator(AppSettings(max_transaction_amount=1000.0))
        result = validator.validate_transaction(5000, "deposit", "bonus")
        assert not result.has_errors
        assert result.is_valid
        assert "unusually high" in result.warnings[0]

    def test_future_date_warning(self, validator):
        future = datetime.now(timezone.utc) + timedelta(days=10)
        result = validator.validate_transaction(5, "withdrawal", "food", occurred_at=future)
        assert not result.has_errors
        assert any("future" in w for w in result.warnings)

    def test_tomorrow_is_tolerated(self, validator):
        tomorrow = datetime.now() + timedelta(days=1)
        result = validator.validate_transaction(5, "withdrawal", "food", occurred_at=tomorrow)
        assert result.warnings == []

    def test_long_description_rejected(self, validator):
        result = validator.validate_transaction(5, "withdrawal", "food", description="x" * 300)
        assert "description" in result.field_errors()


class TestOtherIntents:

    def test_account_with_negative_opening_balance(self, validator):
        result = validator.validate_account("Overdrawn", "checking", "USD", -50)
        assert result.is_valid

    def test_account_bad_type_and_currency(self, validator):
        result = validator.validate_account("Main", "brokerage", "dollars")
        assert set(result.field_errors()) == {"account_type", "currency"}
        assert result.error_count == 2

    def test_goal_past_target_date_warns(self, validator):
        result = validator.validate_goal("Trip", 1000, date.today() - timedelta(days=1))
        assert not result.has_errors
        assert "already passed" in result.warnings[0]

    def test_goal_initial_above_target_warns(self, validator):
        result = validator.validate_goal("Trip", 100, None, 150)
        assert any("more than the target" in w for w in result.warnings)

    def test_goal_negative_initial_rejected(self, validator):
        result = validator.validate_goal("Trip", 100, None, -1)
        assert "initial_amount" in result.field_errors()

    def test_investment_requires_ticker(self, validator):
        result = validator.validate_investment("Acme", "", 1, 10)
        assert "ticker" in result.field_errors()

    def test_amount_rejects_booleans(self, validator):
        result = validator.validate_amount(True, "funding")
        assert result.has_errors
        assert result.subject == "funding"


class TestSummary:

    def test_summary_for_clean_result(self, validator):
        result = validator.validate_amount(10)
        assert validator.get_user_friendly_summary(result) == "✅ All checks passed."

    def test_summary_lists_errors(self, validator):
        result = validator.validate_transaction(0, "deposit", "")
        summary = validator.get_user_friendly_summary(result)
        assert "Please fix the following" in summary
        assert "Category is required" in summary
        assert summary.endswith("Nothing was saved.")

    def test_summary_lists_warnings(self):
        validator = IntentValidator(AppSettings(max_transaction_amount=10.0))
        summary = validator.get_user_friendly_summary(validator.validate_amount(50))
        assert "Please verify" in summary
        assert summary.endswith("please double-check.")
