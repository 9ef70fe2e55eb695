"""
Firestore Storage Implementation

DESIGN DECISION: Firestore is the production document store because its
transactions give us exactly what the ledger needs:
1. Multi-document reads and writes committed as one unit
2. Serialisable isolation - documents read in a transaction are locked
   (server side) or re-validated at commit
3. Abort on contention, which we surface as ConflictError

Documents live under users/{owner_id}/{collection}. Decimals are stored as
strings, so no precision is lost on the way through.

The transaction is created with max_attempts=1: the ledger service owns
the retry loop because a retry may need a fresh plan, not just a replay.
"""

from typing import Any, Awaitable, Callable, Optional, TypeVar

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from finledger.config import get_settings
from finledger.services.storage.interface import (
    ConflictError,
    ConnectionError,
    DocumentStore,
    StorageError,
    StoreTransaction,
)


T = TypeVar("T")


class _FirestoreTransaction(StoreTransaction):
    """StoreTransaction backed by a google.cloud.firestore AsyncTransaction."""

    def __init__(self, client: firestore.AsyncClient, transaction):
        self._client = client
        self._transaction = transaction

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ref = self._client.collection(collection).document(doc_id)
        snapshot = await ref.get(transaction=self._transaction)
        return snapshot.to_dict() if snapshot.exists else None

    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        query = self._client.collection(collection).where(
            filter=FieldFilter(field, "==", value)
        )
        snapshots = await query.get(transaction=self._transaction)
        return [snapshot.to_dict() for snapshot in snapshots]

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.set(ref, data)

    def delete(self, collection: str, doc_id: str) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.delete(ref)


class FirestoreDocumentStore(DocumentStore):
    """
    Firestore implementation of the document store.

    Handles authentication and maps Google API errors onto StorageError.
    """

    def __init__(self, client: Optional[firestore.AsyncClient] = None):
        self._client = client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> firestore.AsyncClient:
        """
        Establish the Firestore client.

        Uses a service account file when configured, otherwise
        application default credentials.
        """
        if self._client is None:
            settings = get_settings().firestore
            try:
                credentials = None
                if settings.credentials_path:
                    credentials = Credentials.from_service_account_file(
                        settings.credentials_path,
                    )
                self._client = firestore.AsyncClient(
                    project=settings.project_id,
                    credentials=credentials,
                    database=settings.database,
                )
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Firestore: {e}")

        return self._client

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        try:
            snapshot = await self.connect().collection(collection).document(doc_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to read {collection}/{doc_id}: {e}")
        return snapshot.to_dict() if snapshot.exists else None

    async def query(self, collection: str, field: str, value: Any) -> list[dict]:
        query = self.connect().collection(collection).where(
            filter=FieldFilter(field, "==", value)
        )
        try:
            return [snapshot.to_dict() async for snapshot in query.stream()]
        except google_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to query {collection}: {e}")

    async def list_documents(self, collection: str) -> list[dict]:
        try:
            return [
                snapshot.to_dict()
                async for snapshot in self.connect().collection(collection).stream()
            ]
        except google_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to list {collection}: {e}")

    async def run_atomic(
        self,
        unit: Callable[[StoreTransaction], Awaitable[T]],
    ) -> T:
        client = self.connect()
        transaction = client.transaction(max_attempts=1)

        @firestore.async_transactional
        async def _run(transaction) -> T:
            return await unit(_FirestoreTransaction(client, transaction))

        try:
            return await _run(transaction)
        except (google_exceptions.Aborted, google_exceptions.Conflict) as e:
            raise ConflictError(f"Firestore transaction contended: {e}")
        except ValueError as e:
            # async_transactional raises ValueError once its own attempts are spent
            if "contention" in str(e).lower():
                raise ConflictError(str(e))
            raise
        except google_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Firestore transaction failed: {e}")
