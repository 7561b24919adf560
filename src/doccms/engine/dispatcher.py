"""Routes named, non-CRUD operations to their registered handlers."""

import logging
from typing import Any

from doccms.engine.lifecycle import LifecycleEngine
from doccms.hooks.types import HookContext, OperationParams

logger = logging.getLogger(__name__)


class OperationDispatcher:
    """Dispatches (schema, operation_type, action) to exactly one handler.

    Handlers get the same db/raw_db/context facade as CRUD hooks, without
    defer. Writes they make commit when the handler returns and roll back
    when it raises.
    """

    def __init__(self, engine: LifecycleEngine):
        self.engine = engine

    async def dispatch(
        self,
        schema: str,
        operation_type: str,
        action: str,
        context: HookContext | None = None,
    ) -> Any:
        """Run a custom operation.

        Raises:
            OperationNotFoundError: If no handler matches the triple
        """
        handler = self.engine.table.operation(schema, operation_type, action)
        state = self.engine.new_state(context)
        db, raw_db = self.engine.facades(state)
        params = OperationParams(
            schema=schema,
            operation_type=operation_type,
            action=action,
            db=db,
            raw_db=raw_db,
            context=state.context,
        )
        logger.debug("Dispatching %s.%s on '%s'", operation_type, action, schema)

        async def body() -> Any:
            return await self.engine.service.call(handler, params)

        return await self.engine.execute(f"{operation_type}.{action}", schema, state, body)
