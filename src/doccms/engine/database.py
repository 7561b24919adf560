"""Database handles passed to hooks.

``db`` (Database) re-enters the lifecycle engine, so nested operations run
their own hooks. ``raw_db`` (RawDatabase) talks to the adapter directly on
the operation's transaction, bypassing hooks. Collection methods are
coroutines because the first write of an operation waits for the writer
lock.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from doccms.engine.state import OperationState
from doccms.hooks.types import FindOptions
from doccms.persistence.adapter import DocumentAdapter

if TYPE_CHECKING:
    from doccms.engine.lifecycle import LifecycleEngine


class Database:
    """Engine facade bound to one operation.

    Every call runs as a nested operation on a child state sharing the
    caller's context and transaction.
    """

    def __init__(self, engine: LifecycleEngine, state: OperationState):
        self._engine = engine
        self._state = state

    async def find(self, schema: str, options: FindOptions | dict | None = None) -> list[dict]:
        return await self._engine.find(schema, options, state=self._state.child())

    async def find_one(self, schema: str, id: str) -> dict | None:
        return await self._engine.find_by_id(schema, id, state=self._state.child())

    async def create(self, schema: str, data: dict | list[dict]) -> Any:
        return await self._engine.create(schema, data, state=self._state.child())

    async def update(self, schema: str, filter: dict, data: dict) -> list:
        return await self._engine.update(schema, filter, data, state=self._state.child())

    async def update_by_id(self, schema: str, id: str, data: dict) -> Any:
        return await self._engine.update_by_id(schema, id, data, state=self._state.child())

    async def delete(self, schema: str, filter: dict) -> list:
        return await self._engine.delete_many(schema, filter, state=self._state.child())

    async def delete_by_id(self, schema: str, id: str) -> Any:
        return await self._engine.delete_by_id(schema, id, state=self._state.child())


class RawCollection:
    """Hook-free access to one collection on the operation's transaction."""

    def __init__(self, adapter: DocumentAdapter, state: OperationState, name: str):
        self._adapter = adapter
        self._state = state
        self.name = name

    def _filter(self, filter: dict | str | None) -> dict | None:
        if isinstance(filter, str):
            return {"_id": filter}
        return filter

    async def find(
        self,
        filter: dict | None = None,
        sort: dict | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict]:
        return self._adapter.find(
            self.name, filter, sort, skip, limit, transaction=self._state.transaction
        )

    async def find_one(self, filter: dict | str) -> dict | None:
        """Find the first document matching a filter, or by identifier."""
        found = await self.find(self._filter(filter), limit=1)
        return found[0] if found else None

    async def count(self, filter: dict | None = None) -> int:
        return len(await self.find(filter))

    async def insert_one(self, document: dict) -> dict:
        transaction = await self._state.open_transaction()
        return self._adapter.insert(self.name, [document], transaction)[0]

    async def insert_many(self, documents: list[dict]) -> list[dict]:
        transaction = await self._state.open_transaction()
        return self._adapter.insert(self.name, list(documents), transaction)

    async def update_one(self, filter: dict | str, changes: dict) -> dict | None:
        """Merge ``changes`` into the first matching document."""
        transaction = await self._state.open_transaction()
        document = await self.find_one(filter)
        if document is None:
            return None
        return self._adapter.replace(
            self.name, document["_id"], {**document, **changes}, transaction
        )

    async def delete_one(self, filter: dict | str) -> int:
        transaction = await self._state.open_transaction()
        document = await self.find_one(filter)
        if document is None:
            return 0
        return self._adapter.delete(self.name, [document["_id"]], transaction)

    async def delete_many(self, filter: dict | None = None) -> int:
        transaction = await self._state.open_transaction()
        ids = [d["_id"] for d in await self.find(filter)]
        if not ids:
            return 0
        return self._adapter.delete(self.name, ids, transaction)


class RawDatabase:
    """Adapter handle bound to one operation's transaction.

    Recovery hooks use commit() and abort() to settle the transaction
    themselves, since the engine does not commit a recovered operation.
    """

    def __init__(self, adapter: DocumentAdapter, state: OperationState):
        self._adapter = adapter
        self._state = state

    def collection(self, name: str) -> RawCollection:
        return RawCollection(self._adapter, self._state, name)

    def __getitem__(self, name: str) -> RawCollection:
        return self.collection(name)

    @property
    def in_transaction(self) -> bool:
        return self._state.transaction is not None

    def commit(self) -> None:
        self._state.commit()

    def abort(self) -> None:
        self._state.abort()
