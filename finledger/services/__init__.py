"""Services package."""

from finledger.services.storage import (
    AuditStorageInterface,
    ConflictError,
    ConnectionError,
    DocumentAuditStorage,
    DocumentStore,
    DuplicateError,
    InMemoryDocumentStore,
    NotFoundError,
    StaleRecordError,
    StorageError,
    StoreTransaction,
)

__all__ = [
    "AuditStorageInterface",
    "ConflictError",
    "ConnectionError",
    "DocumentAuditStorage",
    "DocumentStore",
    "DuplicateError",
    "InMemoryDocumentStore",
    "NotFoundError",
    "StaleRecordError",
    "StorageError",
    "StoreTransaction",
]
