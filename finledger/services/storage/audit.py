"""
Document-store Audit Storage

Audit events are appended to a single collection in whichever document
store the ledger runs on. Events carry their owner_id so they can be
filtered per user.
"""

from uuid import UUID

import structlog

from finledger.models.audit import AuditEvent
from finledger.services.storage.interface import (
    AuditStorageInterface,
    DocumentStore,
    StorageError,
)


AUDIT_COLLECTION = "auditLog"

_logger = structlog.get_logger(__name__)


class DocumentAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in the document store."""

    def __init__(self, store: DocumentStore, collection: str = AUDIT_COLLECTION):
        self._store = store
        self._collection = collection

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        data = event.to_document()

        async def _append(transaction) -> None:
            transaction.set(self._collection, str(event.event_id), data)

        try:
            await self._store.run_atomic(_append)
            return True
        except StorageError as e:
            # Audit logging should not break the main flow
            _logger.warning("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        docs = await self._store.query(self._collection, "correlation_id", str(correlation_id))
        events = [AuditEvent.model_validate(doc) for doc in docs]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        docs = await self._store.query(self._collection, "entity_id", entity_id)
        events = [
            AuditEvent.model_validate(doc)
            for doc in docs
            if doc.get("entity_type") == entity_type
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        docs = await self._store.list_documents(self._collection)
        events = [AuditEvent.model_validate(doc) for doc in docs]
        # Newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
