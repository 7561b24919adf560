"""Record lifecycle engine.

Runs one CRUD operation through its hook points:

    before* hooks -> persist -> after* hooks -> deferred calls -> commit

A HookException raised by a hook diverts the operation into the exception
recovery protocol; any other failure runs the afterError hooks, rolls the
transaction back and propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from doccms.core.pure import create_pure_value
from doccms.engine.database import Database, RawDatabase
from doccms.engine.state import OperationState
from doccms.exceptions import (
    DocumentCountError,
    DocumentNotFoundError,
    HookException,
    SchemaNotFoundError,
    UnsafeFilterError,
)
from doccms.hooks.registry import HookTable
from doccms.hooks.service import HookService
from doccms.hooks.types import (
    AfterCreateParams,
    AfterErrorParams,
    AfterQueryParams,
    AfterUpdateParams,
    BeforeCreateParams,
    BeforeUpdateParams,
    CatchExceptionParams,
    Defer,
    DeleteParams,
    FindOptions,
    HookContext,
    HookPoint,
    Proceed,
)
from doccms.persistence.adapter import DocumentAdapter, Savepoint, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Recovered:
    """Result supplied by exception hooks after clearing an interrupt."""

    record: Any


def _find_options(options: FindOptions | Mapping | None) -> FindOptions:
    if options is None:
        return FindOptions()
    if isinstance(options, FindOptions):
        return options
    return FindOptions(
        skip=options.get("skip") or 0,
        limit=options.get("limit"),
        sort=options.get("sort"),
        filter=options.get("filter"),
    )


def _filter_fields(filter: Mapping[str, Any]) -> set[str]:
    """Top-level field names a filter constrains, looking inside $and/$or."""
    fields: set[str] = set()
    for key, condition in filter.items():
        if key in ("$and", "$or"):
            for sub in condition or []:
                fields |= _filter_fields(sub)
        elif not key.startswith("$"):
            fields.add(key.split(".", 1)[0])
    return fields


class LifecycleEngine:
    """Executes CRUD operations through the hook table.

    The engine holds only startup-time, read-only collaborators; everything
    mutable lives on the OperationState built for each call, so one engine
    serves concurrent operations.

    Each public method takes an optional ``context`` for new operations and
    an optional ``state`` used by the ``db`` facade for nested operations.
    """

    def __init__(
        self,
        table: HookTable,
        adapter: DocumentAdapter,
        service: HookService | None = None,
    ):
        self.table = table
        self.adapter = adapter
        self.service = service or HookService()
        self._writer = asyncio.Lock()

    # =========================================================================
    # Operation scaffolding
    # =========================================================================

    def new_state(self, context: HookContext | None = None) -> OperationState:
        return OperationState(
            self.adapter,
            context if context is not None else HookContext(),
            writer=self._writer,
        )

    def facades(self, state: OperationState) -> tuple[Database, RawDatabase]:
        return Database(self, state), RawDatabase(self.adapter, state)

    def _begin(
        self, schema: str, context: HookContext | None, state: OperationState | None
    ) -> OperationState:
        if not self.table.has_schema(schema):
            raise SchemaNotFoundError(schema)
        return state if state is not None else self.new_state(context)

    async def execute(
        self,
        path: str,
        schema: str,
        state: OperationState,
        body: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run an operation body with deferred-call and transaction handling.

        Only a root state commits or aborts; a child state flushes its own
        deferred calls and leaves the shared transaction to its root.
        """
        logger.debug("%s on '%s' started", path, schema)
        try:
            result = await body()
            if not state.recovered:
                result = await self._flush_deferred(schema, state, result)
            if state.recovered:
                state.release()
            elif state.is_root:
                state.commit()
            return result
        except HookException:
            if state.is_root:
                state.abort()
            raise
        except Exception as error:
            await self._run_error_hooks(schema, path, error, state)
            if state.is_root:
                state.abort()
            raise
        except BaseException:
            if state.is_root:
                state.abort()
            raise

    async def _flush_deferred(self, schema: str, state: OperationState, result: Any) -> Any:
        """Run deferred calls in registration order, each to completion.

        Calls registered while flushing run in the same pass. A HookException
        from a call goes through the exception hooks under the point that
        registered it, with the operation's result as ``data``; the calls
        after it are dropped.
        """
        while state.deferred:
            point, call = state.deferred.pop(0)
            try:
                await call()
            except HookException as e:
                interrupt = e
            else:
                continue
            return await self._recover(schema, point, result, interrupt, state)
        return result

    async def _run_error_hooks(
        self, schema: str, path: str, error: Exception, state: OperationState
    ) -> None:
        hooks = self.table.hooks(schema, HookPoint.AFTER_ERROR)
        if not hooks:
            return
        db, raw_db = self.facades(state)
        params = AfterErrorParams(
            schema=schema,
            path=path,
            error=error,
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.AFTER_ERROR),
        )
        await self.service.run_error_hooks(hooks, params)

    async def _run_point(
        self,
        schema: str,
        point: HookPoint,
        params: Any,
        state: OperationState,
        attr: str | None = None,
        allow_defer: bool = False,
    ) -> Proceed | Defer | _Recovered:
        """Run one hook point, routing a HookException into recovery."""
        hooks = self.table.hooks(schema, point)
        try:
            return await self.service.run_chain(point, hooks, params, attr, allow_defer)
        except HookException as e:
            interrupt = e
        return _Recovered(await self._recover(schema, point, params, interrupt, state))

    async def _recover(
        self,
        schema: str,
        point: HookPoint,
        data: Any,
        exception: HookException,
        state: OperationState,
    ) -> Any:
        logger.debug(
            "%s raised at %s on '%s'; running exception hooks",
            type(exception).__name__,
            point.value,
            schema,
        )
        exception_actions, return_actions = HookService.recovery_controllers(exception)
        db, raw_db = self.facades(state)
        params = CatchExceptionParams(
            schema=schema,
            name=point,
            data=data,
            exception=exception,
            exception_actions=exception_actions,
            return_actions=return_actions,
            db=db,
            raw_db=raw_db,
            context=state.context,
        )
        hooks = self.table.hooks(schema, HookPoint.CATCH_EXCEPTION)
        result = await self.service.run_exception_hooks(hooks, params)
        state.recovered = True
        logger.debug("Recovered from %s at %s on '%s'", type(exception).__name__, point.value, schema)
        return result

    # =========================================================================
    # Single-record steps
    # =========================================================================

    async def _create_one(self, schema: str, data: dict, state: OperationState) -> Any:
        db, raw_db = self.facades(state)
        before = BeforeCreateParams(
            schema=schema,
            data=data,
            pure_data=create_pure_value(data),
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.BEFORE_CREATE),
        )
        outcome = await self._run_point(
            schema, HookPoint.BEFORE_CREATE, before, state, "data", allow_defer=True
        )
        if not isinstance(outcome, Proceed):
            return outcome.record
        data = outcome.value

        inserted = self.adapter.insert(schema, [data], await state.open_transaction())
        if len(inserted) != 1:
            raise DocumentCountError(
                f"Expected 1 document inserted into '{schema}', got {len(inserted)}"
            )
        document = inserted[0]

        after = AfterCreateParams(
            schema=schema,
            data=data,
            pure_data=create_pure_value(data),
            document=document,
            pure_document=create_pure_value(document),
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.AFTER_CREATE),
        )
        outcome = await self._run_point(schema, HookPoint.AFTER_CREATE, after, state, "document")
        if not isinstance(outcome, Proceed):
            return outcome.record
        return outcome.value

    async def _update_one(
        self, schema: str, original: dict, data: dict, state: OperationState
    ) -> Any:
        db, raw_db = self.facades(state)
        pure_original = create_pure_value(original)
        before = BeforeUpdateParams(
            schema=schema,
            data=data,
            pure_data=create_pure_value(data),
            original_document=pure_original,
            target_document=create_pure_value({**original, **data}),
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.BEFORE_UPDATE),
        )
        outcome = await self._run_point(
            schema, HookPoint.BEFORE_UPDATE, before, state, "data", allow_defer=True
        )
        if not isinstance(outcome, Proceed):
            return outcome.record
        data = outcome.value

        current = self.adapter.replace(
            schema, original["_id"], {**original, **data}, await state.open_transaction()
        )
        if current is None:
            raise DocumentNotFoundError(schema, original["_id"])

        after = AfterUpdateParams(
            schema=schema,
            data=data,
            pure_data=create_pure_value(data),
            original_document=pure_original,
            current_document=current,
            pure_current_document=create_pure_value(current),
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.AFTER_UPDATE),
        )
        outcome = await self._run_point(
            schema, HookPoint.AFTER_UPDATE, after, state, "current_document"
        )
        if not isinstance(outcome, Proceed):
            return outcome.record
        return outcome.value

    async def _delete_one(self, schema: str, document: dict, state: OperationState) -> Any:
        db, raw_db = self.facades(state)
        pure_document = create_pure_value(document)
        params = DeleteParams(
            schema=schema,
            document=document,
            pure_document=pure_document,
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.BEFORE_DELETE),
        )
        outcome = await self._run_point(
            schema, HookPoint.BEFORE_DELETE, params, state, allow_defer=True
        )
        if not isinstance(outcome, Proceed):
            return outcome.record

        deleted = self.adapter.delete(
            schema, [document["_id"]], await state.open_transaction()
        )
        if deleted != 1:
            raise DocumentCountError(
                f"Expected 1 document deleted from '{schema}', got {deleted}"
            )

        params.defer = state.deferrer(HookPoint.AFTER_DELETE)
        outcome = await self._run_point(schema, HookPoint.AFTER_DELETE, params, state)
        if not isinstance(outcome, Proceed):
            return outcome.record
        return document

    async def _query_one(self, schema: str, document: dict, state: OperationState) -> Any:
        db, raw_db = self.facades(state)
        params = AfterQueryParams(
            schema=schema,
            document=document,
            pure_document=create_pure_value(document),
            db=db,
            raw_db=raw_db,
            context=state.context,
            defer=state.deferrer(HookPoint.AFTER_QUERY),
        )
        outcome = await self._run_point(schema, HookPoint.AFTER_QUERY, params, state, "document")
        if not isinstance(outcome, Proceed):
            return outcome.record
        return outcome.value

    async def _batch(
        self,
        schema: str,
        state: OperationState,
        steps: list[Callable[[OperationState], Awaitable[Any]]],
    ) -> list:
        """Run record steps sequentially, each on its own child state.

        Every record runs inside a savepoint and flushes its own deferred
        calls, so a record ends exactly as it would as a single-record
        operation: a recovered record leaves neither writes nor deferred
        calls behind. The records that persisted commit together.
        """
        results = []
        for step in steps:
            item = state.child()
            transaction = await state.open_transaction()
            savepoint = transaction.savepoint()
            try:
                result = await step(item)
                if not item.recovered:
                    result = await self._flush_deferred(schema, item, result)
            except BaseException:
                if transaction.active:
                    savepoint.rollback()
                raise
            if item.recovered:
                item.deferred.clear()
                self._discard_record(state, transaction, savepoint)
            else:
                savepoint.release()
            results.append(result)
        return results

    @staticmethod
    def _discard_record(
        state: OperationState, transaction: Transaction, savepoint: Savepoint
    ) -> None:
        if transaction.active:
            savepoint.rollback()
        elif state.transaction is not None:
            # Recovery hooks committed, then wrote again.
            logger.warning("Transaction left open after exception recovery; rolling back")
            state.abort()

    def _load(self, schema: str, id: str, state: OperationState) -> dict:
        document = self.adapter.find_one(schema, id, transaction=state.transaction)
        if document is None:
            raise DocumentNotFoundError(schema, id)
        return document

    def _check_delete_filter(self, schema: str, filter: Mapping[str, Any] | None) -> None:
        if not filter:
            raise UnsafeFilterError(f"Refusing to delete from '{schema}' with an empty filter")
        recognized = self.table.schemas[schema].recognized_fields
        if not _filter_fields(filter) & recognized:
            raise UnsafeFilterError(
                f"Refusing to delete from '{schema}': filter keys {sorted(filter)} "
                "match no field of the schema"
            )

    # =========================================================================
    # Public operations
    # =========================================================================

    async def find(
        self,
        schema: str,
        options: FindOptions | Mapping | None = None,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> list:
        """Query documents; afterQuery runs concurrently per document.

        Each document gets its own child state, so a recovered document drops
        its deferred calls. Writes made by afterQuery hooks share the query's
        transaction: concurrent hooks cannot be isolated by savepoints.
        """
        state = self._begin(schema, context, state)
        options = _find_options(options)

        async def body() -> list:
            documents = self.adapter.find(
                schema,
                options.filter,
                options.sort,
                options.skip,
                options.limit,
                transaction=state.transaction,
            )
            items = [state.child() for _ in documents]
            outcomes = await asyncio.gather(
                *(self._query_one(schema, d, item) for d, item in zip(documents, items)),
                return_exceptions=True,
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            results = []
            for item, outcome in zip(items, outcomes):
                if not item.recovered:
                    outcome = await self._flush_deferred(schema, item, outcome)
                if item.recovered:
                    item.deferred.clear()
                results.append(outcome)
            return results

        return await self.execute("find", schema, state, body)

    async def find_by_id(
        self,
        schema: str,
        id: str,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> Any:
        """Fetch one document; None without running hooks when it is missing."""
        state = self._begin(schema, context, state)

        async def body() -> Any:
            document = self.adapter.find_one(schema, id, transaction=state.transaction)
            if document is None:
                return None
            return await self._query_one(schema, document, state)

        return await self.execute("findById", schema, state, body)

    async def create(
        self,
        schema: str,
        data: dict | list[dict],
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> Any:
        """Create one document, or each document of a list in order."""
        state = self._begin(schema, context, state)

        async def body() -> Any:
            if isinstance(data, list):
                return await self._batch(
                    schema,
                    state,
                    [
                        lambda s, record=record: self._create_one(schema, dict(record), s)
                        for record in data
                    ],
                )
            return await self._create_one(schema, dict(data), state)

        return await self.execute("create", schema, state, body)

    async def update(
        self,
        schema: str,
        filter: dict,
        data: dict,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> list:
        """Update every document matching ``filter``."""
        state = self._begin(schema, context, state)

        async def body() -> list:
            transaction = await state.open_transaction()
            documents = self.adapter.find(schema, filter, transaction=transaction)
            return await self._batch(
                schema,
                state,
                [lambda s, d=d: self._update_one(schema, d, dict(data), s) for d in documents],
            )

        return await self.execute("update", schema, state, body)

    async def update_by_id(
        self,
        schema: str,
        id: str,
        data: dict,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> Any:
        state = self._begin(schema, context, state)

        async def body() -> Any:
            return await self._update_one(schema, self._load(schema, id, state), dict(data), state)

        return await self.execute("updateById", schema, state, body)

    async def delete_many(
        self,
        schema: str,
        filter: dict,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> list:
        """Delete every document matching ``filter``.

        Raises:
            UnsafeFilterError: If the filter is empty or names no schema field
        """
        state = self._begin(schema, context, state)

        async def body() -> list:
            self._check_delete_filter(schema, filter)
            transaction = await state.open_transaction()
            documents = self.adapter.find(schema, filter, transaction=transaction)
            return await self._batch(
                schema, state, [lambda s, d=d: self._delete_one(schema, d, s) for d in documents]
            )

        return await self.execute("delete", schema, state, body)

    async def delete_by_id(
        self,
        schema: str,
        id: str,
        context: HookContext | None = None,
        *,
        state: OperationState | None = None,
    ) -> Any:
        state = self._begin(schema, context, state)

        async def body() -> Any:
            return await self._delete_one(schema, self._load(schema, id, state), state)

        return await self.execute("deleteById", schema, state, body)
