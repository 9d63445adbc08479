"""Authoritative document store for per-user credit records."""

import copy
from typing import Any, Protocol

import structlog
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from velto_credits.config import settings
from velto_credits.exceptions import RemoteUnavailableError

logger = structlog.get_logger()


class DocumentStore(Protocol):
    """Record store keyed by (collection, id)."""

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any] | None: ...

    async def set_record(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = True,
    ) -> None: ...

    async def delete_record(self, collection: str, record_id: str) -> None: ...

    async def query_by_field(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]: ...


class MemoryDocumentStore:
    """In-process document store for development and tests."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any] | None:
        record = self._collections.get(collection, {}).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def set_record(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = True,
    ) -> None:
        records = self._collections.setdefault(collection, {})
        if merge and record_id in records:
            records[record_id].update(copy.deepcopy(data))
        else:
            records[record_id] = copy.deepcopy(data)

    async def delete_record(self, collection: str, record_id: str) -> None:
        self._collections.get(collection, {}).pop(record_id, None)

    async def query_by_field(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]:
        return [
            {"id": record_id, **copy.deepcopy(record)}
            for record_id, record in self._collections.get(collection, {}).items()
            if record.get(field) == value
        ]


class FirestoreDocumentStore:
    """Cloud Firestore backed document store.

    Google API and auth errors surface as RemoteUnavailableError so callers can
    degrade to their local cache.
    """

    def __init__(
        self,
        project: str | None = None,
        database: str | None = None,
        client: Any = None,
    ) -> None:
        """Initialize the store.

        Args:
            project: GCP project id (defaults to FIRESTORE_PROJECT, then the ambient
                credentials' project)
            database: Firestore database id (defaults to FIRESTORE_DATABASE)
            client: Optional pre-built firestore.AsyncClient
        """
        self._project = project or settings.FIRESTORE_PROJECT
        self._database = database or settings.FIRESTORE_DATABASE
        self._client = client

    @property
    def client(self) -> Any:
        """Get or create the Firestore async client."""
        if self._client is None:
            self._client = firestore.AsyncClient(project=self._project, database=self._database)
        return self._client

    async def get_record(self, collection: str, record_id: str) -> dict[str, Any] | None:
        try:
            snapshot = await self.client.collection(collection).document(record_id).get()
        except (GoogleAPIError, GoogleAuthError) as e:
            raise RemoteUnavailableError("get_record", str(e)) from e
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    async def set_record(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = True,
    ) -> None:
        try:
            await self.client.collection(collection).document(record_id).set(data, merge=merge)
        except (GoogleAPIError, GoogleAuthError) as e:
            raise RemoteUnavailableError("set_record", str(e)) from e

    async def delete_record(self, collection: str, record_id: str) -> None:
        try:
            await self.client.collection(collection).document(record_id).delete()
        except (GoogleAPIError, GoogleAuthError) as e:
            raise RemoteUnavailableError("delete_record", str(e)) from e

    async def query_by_field(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]:
        query = self.client.collection(collection).where(filter=FieldFilter(field, "==", value))
        try:
            return [
                {"id": snapshot.id, **(snapshot.to_dict() or {})}
                async for snapshot in query.stream()
            ]
        except (GoogleAPIError, GoogleAuthError) as e:
            raise RemoteUnavailableError("query_by_field", str(e)) from e


async def delete_credit_record(
    store: DocumentStore,
    user_id: str,
    collection: str = "users",
) -> None:
    """Remove a user's credit record, for account deletion."""
    await store.delete_record(collection, user_id)
    logger.info("Deleted credit record", user_id=user_id, collection=collection)
