"""In-process document store adapter."""

import threading
from typing import Any

from doccms.exceptions import DuplicateDocumentError
from doccms.persistence.query import apply_query, normalize_document

# Marks a document deleted inside a transaction overlay.
_DELETED = None


class MemorySavepoint:
    """Copy of a transaction's overlay to return to."""

    def __init__(self, transaction: "MemoryTransaction"):
        self._transaction = transaction
        self._writes = {c: dict(w) for c, w in transaction._writes.items()}
        self._created = {c: set(ids) for c, ids in transaction._created.items()}

    def release(self) -> None:
        pass

    def rollback(self) -> None:
        if self._transaction.active:
            self._transaction._writes = self._writes
            self._transaction._created = self._created


class MemoryTransaction:
    """Write overlay applied to the store atomically on commit."""

    def __init__(self, adapter: "MemoryAdapter"):
        self._adapter = adapter
        self._writes: dict[str, dict[str, dict[str, Any] | None]] = {}
        # Ids this transaction created that were absent from the store.
        self._created: dict[str, set[str]] = {}
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _ensure_active(self) -> None:
        if not self._active:
            raise RuntimeError("Transaction is no longer active")

    def stage(
        self,
        collection: str,
        id: str,
        document: dict[str, Any] | None,
        created: bool = False,
    ) -> None:
        self._ensure_active()
        writes = self._writes.setdefault(collection, {})
        fresh = self._created.setdefault(collection, set())
        if document is _DELETED and id in fresh:
            # Deleting a document this transaction created leaves no trace.
            fresh.discard(id)
            writes.pop(id, None)
            return
        writes[id] = document
        if created:
            fresh.add(id)

    def overlay(self, collection: str) -> dict[str, dict[str, Any] | None]:
        return self._writes.get(collection, {})

    def savepoint(self) -> MemorySavepoint:
        self._ensure_active()
        return MemorySavepoint(self)

    def commit(self) -> None:
        self._ensure_active()
        try:
            self._adapter._apply(self._writes, self._created)
        finally:
            self._active = False

    def rollback(self) -> None:
        self._writes = {}
        self._created = {}
        self._active = False


class MemoryAdapter:
    """Document store kept in process memory.

    Documents are JSON-normalised on write and copied on read, so callers
    never share state with the store.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self.connected = False

    def connect(self) -> None:
        self.connected = True

    def close(self) -> None:
        self.connected = False

    def begin(self) -> MemoryTransaction:
        return MemoryTransaction(self)

    def _apply(
        self,
        writes: dict[str, dict[str, dict[str, Any] | None]],
        created: dict[str, set[str]],
    ) -> None:
        with self._lock:
            # Another transaction may have committed the same id since insert.
            for collection, ids in created.items():
                stored = self._collections.get(collection, {})
                for id in ids:
                    if id in stored:
                        raise DuplicateDocumentError(
                            f"Document '{id}' already exists in '{collection}'"
                        )
            for collection, changes in writes.items():
                stored = self._collections.setdefault(collection, {})
                for id, document in changes.items():
                    if document is _DELETED:
                        stored.pop(id, None)
                    else:
                        stored[id] = document

    def _stored(self, collection: str, id: str) -> bool:
        with self._lock:
            return id in self._collections.get(collection, {})

    def _view(
        self, collection: str, transaction: MemoryTransaction | None
    ) -> dict[str, dict[str, Any]]:
        """Committed documents merged with the transaction's own writes."""
        with self._lock:
            view = dict(self._collections.get(collection, {}))
        if transaction is not None and transaction.active:
            for id, document in transaction.overlay(collection).items():
                if document is _DELETED:
                    view.pop(id, None)
                else:
                    view[id] = document
        return view

    def find(
        self,
        collection: str,
        filter: dict | None = None,
        sort: dict | None = None,
        skip: int = 0,
        limit: int | None = None,
        transaction: MemoryTransaction | None = None,
    ) -> list[dict[str, Any]]:
        documents = self._view(collection, transaction).values()
        return [normalize_document(d) for d in apply_query(documents, filter, sort, skip, limit)]

    def find_one(
        self, collection: str, id: str, transaction: MemoryTransaction | None = None
    ) -> dict[str, Any] | None:
        document = self._view(collection, transaction).get(str(id))
        return normalize_document(document) if document is not None else None

    def insert(
        self, collection: str, documents: list[dict[str, Any]], transaction: MemoryTransaction
    ) -> list[dict[str, Any]]:
        view = self._view(collection, transaction)
        inserted = []
        for document in documents:
            normalized = normalize_document(document)
            if normalized["_id"] in view:
                raise DuplicateDocumentError(
                    f"Document '{normalized['_id']}' already exists in '{collection}'"
                )
            transaction.stage(
                collection,
                normalized["_id"],
                normalized,
                created=not self._stored(collection, normalized["_id"]),
            )
            view[normalized["_id"]] = normalized
            inserted.append(normalize_document(normalized))
        return inserted

    def replace(
        self,
        collection: str,
        id: str,
        document: dict[str, Any],
        transaction: MemoryTransaction,
    ) -> dict[str, Any] | None:
        id = str(id)
        if id not in self._view(collection, transaction):
            return None
        normalized = normalize_document({**document, "_id": id})
        transaction.stage(collection, id, normalized)
        return normalize_document(normalized)

    def delete(self, collection: str, ids: list[str], transaction: MemoryTransaction) -> int:
        view = self._view(collection, transaction)
        deleted = 0
        for id in ids:
            id = str(id)
            if id in view:
                transaction.stage(collection, id, _DELETED)
                del view[id]
                deleted += 1
        return deleted
