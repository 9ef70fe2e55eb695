"""
Audit Logger

DESIGN DECISION: Every ledger mutation, rejection, abort and repair is logged.
This provides:
1. Complete traceability of money movements
2. Debugging capability when a mutation aborts
3. User can see history of their changes
4. An explicit trail for every balance correction

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a failed audit write never undoes or fails a mutation)
- Supports correlation IDs to trace all attempts of one user action
"""

import logging
from typing import Optional
from uuid import UUID, uuid4

import structlog

from finledger.models.audit import AuditEvent, AuditEventBuilder
from finledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at the given level."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit collection of the document store (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("finledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_mutation_applied(
        self,
        owner_id: str,
        intent: str,
        entity_type: Optional[str],
        entity_id: Optional[str],
        balances: dict,
        correlation_id: UUID,
        attempts: int = 1,
    ) -> None:
        """Log a committed plan."""
        event = AuditEventBuilder.mutation_applied(
            owner_id=owner_id,
            intent=intent,
            entity_type=entity_type,
            entity_id=entity_id,
            balances={key: str(value) for key, value in balances.items()},
            correlation_id=correlation_id,
            attempts=attempts,
        )
        await self.log(event)

    async def log_mutation_rejected(
        self,
        owner_id: str,
        intent: str,
        error_code: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log a mutation refused by validation or a guard."""
        event = AuditEventBuilder.mutation_rejected(
            owner_id=owner_id,
            intent=intent,
            error_code=error_code,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_mutation_aborted(
        self,
        owner_id: str,
        intent: str,
        reason: str,
        attempts: int,
        correlation_id: UUID,
    ) -> None:
        """Log a mutation the store could not commit."""
        event = AuditEventBuilder.mutation_aborted(
            owner_id=owner_id,
            intent=intent,
            reason=reason,
            attempts=attempts,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_drift_detected(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        stored: str,
        computed: str,
        drift: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.drift_detected(
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            stored=stored,
            computed=computed,
            drift=drift,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_balance_repaired(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        correction: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.balance_repaired(
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            correction=correction,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_price_refresh_failed(
        self,
        owner_id: str,
        investment_id: str,
        ticker: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.price_refresh_failed(
            owner_id=owner_id,
            investment_id=investment_id,
            ticker=ticker,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_insights_generated(
        self,
        owner_id: str,
        used_fallback: bool,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.insights_generated(
            owner_id=owner_id,
            correlation_id=correlation_id,
            used_fallback=used_fallback,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a transaction edit).
    Every attempt and audit event of that action shares it.
    """
    return uuid4()
