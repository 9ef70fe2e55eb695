"""
In-Memory Document Store

Used for tests and local development. It implements the same contract as
the Firestore backend:
- every atomic unit records the revision of each document (and each
  queried collection) it read
- commit fails with ConflictError if any of those changed meanwhile
  (optimistic compare-and-swap)
- staged writes are applied to a copy and swapped in only when all of
  them succeeded, so a failed commit leaves nothing behind

fail_after_writes simulates a crash part-way through a commit.
"""

import asyncio
import copy
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from finledger.services.storage.interface import (
    ConflictError,
    DocumentStore,
    StorageError,
    StoreTransaction,
)


T = TypeVar("T")

_logger = structlog.get_logger(__name__)


def _field_value(doc: dict, field: str) -> Any:
    """Resolve a dotted field path, returning None when any part is missing."""
    value: Any = doc
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class _MemoryTransaction(StoreTransaction):
    """Records reads and stages writes for one atomic unit."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self.read_documents: dict[tuple[str, str], int] = {}
        self.read_collections: dict[str, int] = {}
        self.writes: list[tuple[str, str, Optional[dict]]] = []

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        # Yield like a network round trip so concurrent units interleave.
        await asyncio.sleep(0)
        key = (collection, doc_id)
        self.read_documents.setdefault(key, self._store.revision_of(key))
        return self._store.peek(collection, doc_id)

    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        await asyncio.sleep(0)
        self.read_collections.setdefault(
            collection, self._store.collection_revision_of(collection)
        )
        return self._store.match(collection, field, value)

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append((collection, doc_id, copy.deepcopy(data)))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append((collection, doc_id, None))


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed document store with optimistic concurrency control.

    Args:
        fail_after_writes: If set, every commit raises StorageError after
            staging this many writes. Nothing staged becomes visible.
    """

    def __init__(self, fail_after_writes: Optional[int] = None):
        self._documents: dict[str, dict[str, dict]] = {}
        self._revisions: dict[tuple[str, str], int] = {}
        self._collection_revisions: dict[str, int] = {}
        self.fail_after_writes = fail_after_writes
        self.commit_count = 0
        self.conflict_count = 0

    # -- revision bookkeeping -------------------------------------------------

    def revision_of(self, key: tuple[str, str]) -> int:
        return self._revisions.get(key, 0)

    def collection_revision_of(self, collection: str) -> int:
        return self._collection_revisions.get(collection, 0)

    def peek(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self._documents.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def match(self, collection: str, field: str, value: Any) -> list[dict]:
        return [
            copy.deepcopy(doc)
            for doc in self._documents.get(collection, {}).values()
            if _field_value(doc, field) == value
        ]

    def put_raw(self, collection: str, doc_id: str, data: dict) -> None:
        """
        Write a document directly, outside any atomic unit.

        Used to seed fixtures and to simulate out-of-band edits.
        """
        self._documents.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        self._bump(collection, doc_id)

    def _bump(self, collection: str, doc_id: str) -> None:
        key = (collection, doc_id)
        self._revisions[key] = self._revisions.get(key, 0) + 1
        self._collection_revisions[collection] = self._collection_revisions.get(collection, 0) + 1

    # -- DocumentStore --------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self.peek(collection, doc_id)

    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        return self.match(collection, field, value)

    async def list_documents(self, collection: str) -> list[dict]:
        return [copy.deepcopy(doc) for doc in self._documents.get(collection, {}).values()]

    async def run_atomic(
        self,
        unit: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        transaction = _MemoryTransaction(self)
        result = await unit(transaction)
        self._commit(transaction)
        return result

    def _commit(self, transaction: _MemoryTransaction) -> None:
        # No awaits from here on: a commit never interleaves with another.
        for key, revision in transaction.read_documents.items():
            if self.revision_of(key) != revision:
                self.conflict_count += 1
                raise ConflictError(f"{key[0]}/{key[1]} changed during the unit")
        for collection, revision in transaction.read_collections.items():
            if self.collection_revision_of(collection) != revision:
                self.conflict_count += 1
                raise ConflictError(f"{collection} changed during the unit")

        staged = {name: dict(docs) for name, docs in self._documents.items()}
        for count, (collection, doc_id, data) in enumerate(transaction.writes, start=1):
            docs = staged.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = data
            if self.fail_after_writes is not None and count >= self.fail_after_writes:
                _logger.warning("simulated_commit_failure", writes_staged=count)
                raise StorageError(f"Simulated crash after {count} write(s)")

        self._documents = staged
        for collection, doc_id, _ in transaction.writes:
            self._bump(collection, doc_id)
        self.commit_count += 1
