"""
Audit Models for finledger

Every ledger mutation, failed mutation and balance correction is logged.
This provides:
1. Complete traceability of money movements
2. Debugging information when a mutation aborts
3. An explicit record of every drift repair
4. Ability to reconstruct history

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Accounts
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_FUNDED = "account_funded"

    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"

    # Savings goals
    GOAL_CREATED = "goal_created"
    GOAL_UPDATED = "goal_updated"
    GOAL_DELETED = "goal_deleted"
    GOAL_CONTRIBUTED = "goal_contributed"

    # Investments
    INVESTMENT_PURCHASED = "investment_purchased"
    INVESTMENT_UPDATED = "investment_updated"
    INVESTMENT_DELETED = "investment_deleted"
    INVESTMENT_VALUE_REFRESHED = "investment_value_refreshed"
    PRICE_REFRESH_FAILED = "price_refresh_failed"

    # Mutation outcomes
    MUTATION_REJECTED = "mutation_rejected"
    MUTATION_ABORTED = "mutation_aborted"

    # Consistency
    DRIFT_DETECTED = "drift_detected"
    BALANCE_REPAIRED = "balance_repaired"

    # Insights
    INSIGHTS_GENERATED = "insights_generated"

    # External services
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Intent name -> event type for successful mutations.
INTENT_EVENTS: dict[str, AuditEventType] = {
    "create_account": AuditEventType.ACCOUNT_CREATED,
    "fund_account": AuditEventType.ACCOUNT_FUNDED,
    "create_transaction": AuditEventType.TRANSACTION_CREATED,
    "edit_transaction": AuditEventType.TRANSACTION_UPDATED,
    "delete_transaction": AuditEventType.TRANSACTION_DELETED,
    "create_goal": AuditEventType.GOAL_CREATED,
    "edit_goal": AuditEventType.GOAL_UPDATED,
    "delete_goal": AuditEventType.GOAL_DELETED,
    "contribute_to_goal": AuditEventType.GOAL_CONTRIBUTED,
    "purchase_investment": AuditEventType.INVESTMENT_PURCHASED,
    "edit_investment": AuditEventType.INVESTMENT_UPDATED,
    "delete_investment": AuditEventType.INVESTMENT_DELETED,
    "refresh_investment_value": AuditEventType.INVESTMENT_VALUE_REFRESHED,
    "repair_account": AuditEventType.BALANCE_REPAIRED,
    "repair_goal": AuditEventType.BALANCE_REPAIRED,
}


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - whose data, and which document
    owner_id: Optional[str] = Field(
        default=None,
        description="Owner whose ledger the event concerns"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'accounts', 'transactions')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all attempts of one user action)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "owner_id": self.owner_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_document(self) -> dict:
        """Serialize for the document store."""
        return self.model_dump(mode="json")


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.mutation_applied(owner_id, "create_transaction", ...)
        event = AuditEventBuilder.drift_detected(owner_id, "accounts", account_id, ...)
    """

    @staticmethod
    def mutation_applied(
        owner_id: str,
        intent: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
        balances: dict[str, str],
        correlation_id: UUID,
        attempts: int = 1,
    ) -> AuditEvent:
        event_type = INTENT_EVENTS.get(intent, AuditEventType.TRANSACTION_UPDATED)
        return AuditEvent(
            event_type=event_type,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"{intent.replace('_', ' ').capitalize()} committed",
            details={
                "intent": intent,
                "balances": balances,
                "attempts": attempts,
            },
            is_user_action=True,
        )

    @staticmethod
    def mutation_rejected(
        owner_id: str,
        intent: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_REJECTED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description=f"{intent.replace('_', ' ').capitalize()} rejected: {error_code}",
            details={"intent": intent},
            error_code=error_code,
            error_message=error_message,
            is_user_action=True,
        )

    @staticmethod
    def mutation_aborted(
        owner_id: str,
        intent: str,
        reason: str,
        attempts: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MUTATION_ABORTED,
            severity=AuditSeverity.ERROR,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description=f"{intent.replace('_', ' ').capitalize()} aborted after {attempts} attempt(s)",
            details={
                "intent": intent,
                "attempts": attempts,
            },
            error_code="aborted",
            error_message=reason,
        )

    @staticmethod
    def drift_detected(
        owner_id: str,
        entity_type: str,
        entity_id: str,
        stored: str,
        computed: str,
        drift: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DRIFT_DETECTED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Cached total drifted by {drift}",
            details={
                "stored": stored,
                "computed": computed,
                "drift": drift,
            },
        )

    @staticmethod
    def balance_repaired(
        owner_id: str,
        entity_type: str,
        entity_id: str,
        correction: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_REPAIRED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=correlation_id,
            description=f"Cached total corrected by {correction}",
            details={"correction": correction},
            is_user_action=True,
        )

    @staticmethod
    def price_refresh_failed(
        owner_id: str,
        investment_id: str,
        ticker: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PRICE_REFRESH_FAILED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="investments",
            entity_id=investment_id,
            correlation_id=correlation_id,
            description=f"Price refresh failed for {ticker}; value left unchanged",
            details={"ticker": ticker},
            error_message=error_message,
        )

    @staticmethod
    def insights_generated(
        owner_id: str,
        correlation_id: UUID,
        used_fallback: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSIGHTS_GENERATED,
            owner_id=owner_id,
            correlation_id=correlation_id,
            description="Personalized insights generated",
            details={"used_fallback": used_fallback},
            is_user_action=True,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: UUID
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
