"""Per-operation engine state.

One OperationState is constructed for every engine call and threaded
through every hook invocation and persistence call of that call. Nested
operations issued by hooks through ``db``, and each record of a batch, run
on a child state: the child shares the root's context and transaction but
owns its deferred list and its recovery flag.

Write transactions are serialized per engine: the root acquires the
engine's writer lock when its transaction opens and releases it when the
transaction commits or rolls back. Reads never wait on it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import partial

from doccms.hooks.types import DeferredCall, HookContext, HookPoint
from doccms.persistence.adapter import DocumentAdapter, Transaction

logger = logging.getLogger(__name__)


class OperationState:
    def __init__(
        self,
        adapter: DocumentAdapter,
        context: HookContext,
        parent: OperationState | None = None,
        writer: asyncio.Lock | None = None,
    ):
        self.adapter = adapter
        self.context = context
        self.parent = parent
        self.deferred: list[tuple[HookPoint, DeferredCall]] = []
        self.recovered = False
        self._transaction: Transaction | None = None
        self._writer = writer if writer is not None else asyncio.Lock()
        self._opening = asyncio.Lock()
        self._holds_writer = False

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def root(self) -> OperationState:
        state = self
        while state.parent is not None:
            state = state.parent
        return state

    def child(self) -> OperationState:
        return OperationState(self.adapter, self.context, parent=self, writer=self._writer)

    # ------------------------------------------------------------------
    # Deferred calls
    # ------------------------------------------------------------------

    def defer(self, call: DeferredCall, point: HookPoint = HookPoint.OPERATION) -> None:
        """Register a zero-argument async action to run before commit.

        ``point`` is the hook point that registered it, reported to
        exception hooks if the call raises a HookException.
        """
        if not callable(call):
            raise TypeError("defer() expects a zero-argument callable")
        self.deferred.append((point, call))

    def deferrer(self, point: HookPoint) -> Callable[[DeferredCall], None]:
        """The ``defer`` callback handed to hooks running at ``point``."""
        return partial(self.defer, point=point)

    # ------------------------------------------------------------------
    # Transaction
    # ------------------------------------------------------------------

    @property
    def transaction(self) -> Transaction | None:
        """The shared transaction when one is open, for reads."""
        transaction = self.root._transaction
        if transaction is not None and transaction.active:
            return transaction
        return None

    async def open_transaction(self) -> Transaction:
        """Return the shared transaction, opening it on first write.

        Opening waits for the writer lock, so a second operation's first
        write waits until the current writer commits or rolls back.
        """
        root = self.root
        async with root._opening:
            if root._transaction is None or not root._transaction.active:
                if not root._holds_writer:
                    await root._writer.acquire()
                    root._holds_writer = True
                try:
                    root._transaction = self.adapter.begin()
                except Exception:
                    root._release_writer()
                    raise
                logger.debug("Transaction opened")
        return root._transaction

    def _release_writer(self) -> None:
        if self._holds_writer:
            self._holds_writer = False
            self._writer.release()

    def _close(self, finish: Callable[[Transaction], None], verb: str) -> None:
        root = self.root
        transaction = self.transaction
        try:
            if transaction is not None:
                finish(transaction)
                logger.debug("Transaction %s", verb)
        finally:
            root._transaction = None
            root._release_writer()

    def commit(self) -> None:
        self._close(lambda t: t.commit(), "committed")

    def abort(self) -> None:
        self._close(lambda t: t.rollback(), "rolled back")

    def release(self) -> None:
        """Finish a recovered operation.

        Deferred calls are discarded. A transaction the recovery hooks left
        open on a root state is rolled back.
        """
        self.deferred.clear()
        if not self.is_root:
            return
        if self.transaction is not None:
            logger.warning(
                "Transaction left open after exception recovery; rolling back"
            )
        self.abort()
