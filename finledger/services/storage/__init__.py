"""
Storage Services Package

Provides the abstract document-store interface and its implementations:
an in-memory store for tests and development, and Firestore for production.
"""

from finledger.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    ConnectionError,
    DocumentStore,
    DuplicateError,
    NotFoundError,
    StaleRecordError,
    StorageError,
    StoreTransaction,
)
from finledger.services.storage.memory import InMemoryDocumentStore
from finledger.services.storage.audit import DocumentAuditStorage

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "DocumentStore",
    "StoreTransaction",
    # Exceptions
    "ConflictError",
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StaleRecordError",
    "StorageError",
    # Implementations
    "DocumentAuditStorage",
    "InMemoryDocumentStore",
]
