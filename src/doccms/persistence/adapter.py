"""DocumentAdapter Protocol: the interface all document stores implement."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Savepoint(Protocol):
    """A marker inside a Transaction that writes can be rolled back to."""

    def release(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class Transaction(Protocol):
    """A unit of work opened by DocumentAdapter.begin().

    Owned by exactly one operation; unusable after commit() or rollback().
    """

    @property
    def active(self) -> bool: ...

    def savepoint(self) -> Savepoint: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class DocumentAdapter(Protocol):
    """Interface all persistence adapters must implement.

    Reads accept an optional transaction so an operation sees its own
    uncommitted writes. Writes always run inside a transaction.
    """

    def connect(self) -> None: ...

    def close(self) -> None: ...

    def begin(self) -> Transaction: ...

    def find(
        self,
        collection: str,
        filter: dict | None = None,
        sort: dict | None = None,
        skip: int = 0,
        limit: int | None = None,
        transaction: Transaction | None = None,
    ) -> list[dict[str, Any]]: ...

    def find_one(
        self, collection: str, id: str, transaction: Transaction | None = None
    ) -> dict[str, Any] | None: ...

    def insert(
        self, collection: str, documents: list[dict[str, Any]], transaction: Transaction
    ) -> list[dict[str, Any]]: ...

    def replace(
        self, collection: str, id: str, document: dict[str, Any], transaction: Transaction
    ) -> dict[str, Any] | None: ...

    def delete(self, collection: str, ids: list[str], transaction: Transaction) -> int: ...
