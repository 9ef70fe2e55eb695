"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for the document store.
This allows us to:
1. Run against Firestore in production
2. Use in-memory storage for tests and local development
3. Keep the ledger logic decoupled from the storage implementation

The interface is intentionally small - we're not building an ORM.
Documents are plain dicts addressed by (collection path, document id).
The one non-negotiable capability is run_atomic: a multi-document
read-modify-write unit that either commits as a whole or not at all.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from finledger.models.audit import AuditEvent


T = TypeVar("T")


class StoreTransaction(ABC):
    """
    Handle passed to an atomic unit.

    All reads must happen before the unit returns; writes are staged and
    only become visible when the store commits the unit.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """Read a document inside the unit. Returns None if it does not exist."""
        pass

    @abstractmethod
    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        """
        Read every document whose field equals value, inside the unit.

        Dotted field paths (e.g. 'link.goal_id') address nested values.
        """
        pass

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None:
        """Stage a full document write."""
        pass

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Stage a document deletion."""
        pass


class DocumentStore(ABC):
    """
    Abstract interface for the document database.

    Any backend (Firestore, in-memory, ...) must implement these methods.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """
        Read a single document outside any atomic unit.

        Args:
            collection: Collection path, e.g. 'users/u1/accounts'
            doc_id: Document identifier

        Returns:
            The document data if found, None otherwise
        """
        pass

    @abstractmethod
    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        """
        Read every document in a collection whose field equals value.

        Returns:
            Matching documents, in no particular order
        """
        pass

    @abstractmethod
    async def list_documents(self, collection: str) -> list[dict]:
        """Read every document in a collection."""
        pass

    @abstractmethod
    async def run_atomic(
        self,
        unit: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        """
        Run unit inside one atomic read-modify-write transaction.

        The unit's staged writes commit together after it returns.
        If any document the unit read has changed by commit time the
        whole unit is discarded.

        Returns:
            Whatever unit returned

        Raises:
            ConflictError: Concurrent writes invalidated the unit's reads
            StorageError: The backend rejected or failed the commit
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a correlation ID, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific document, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConflictError(StorageError):
    """A concurrent write invalidated an atomic unit. Safe to retry."""
    pass


class StaleRecordError(ConflictError):
    """A record changed since the caller read it. Re-read, re-plan, retry."""

    def __init__(self, path: str, expected: int, actual: int):
        super().__init__(f"{path} is at version {actual}, expected {expected}")
        self.path = path
        self.expected = expected
        self.actual = actual


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
