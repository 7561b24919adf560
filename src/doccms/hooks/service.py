"""Hook execution service for doccms.

Orchestrates the execution of hooks at each lifecycle point:
sequential transform chains, observation-only afterError hooks, and the
concurrent settle-all protocol for catchException hooks.
"""

import asyncio
import inspect
import logging
from collections.abc import Sequence
from typing import Any

from doccms.exceptions import EmptyRecoveryError, HookResultError
from doccms.hooks.types import (
    AfterErrorParams,
    CatchExceptionParams,
    Defer,
    ExceptionActions,
    HookFn,
    HookPoint,
    Proceed,
    ReturnActions,
)

logger = logging.getLogger(__name__)


def _hook_name(hook_fn: HookFn) -> str:
    return getattr(hook_fn, "__qualname__", None) or repr(hook_fn)


class HookService:
    """Runs hook lists produced by the HookRegistry.

    Hooks within a hook point execute sequentially in registered order.
    Each hook's output replaces the chained value before the next hook runs.
    """

    async def call(self, hook_fn: HookFn, params: Any) -> Any:
        """Invoke a plain or async hook."""
        result = hook_fn(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run_chain(
        self,
        point: HookPoint,
        hooks: Sequence[HookFn],
        params: Any,
        attr: str | None = None,
        allow_defer: bool = False,
    ) -> Proceed | Defer:
        """Execute a transform chain for a hook point.

        Args:
            point: The lifecycle point being executed
            hooks: Hooks in execution order
            params: The point's params bundle, shared by every hook in the chain
            attr: Attribute of ``params`` holding the chained value, or None
                for points whose hooks return nothing
            allow_defer: Whether hooks at this point may return Defer

        Returns:
            Proceed with the final chained value, or the first Defer returned.
            A HookException raised by a hook propagates and halts the chain.
        """
        for hook_fn in hooks:
            result = await self.call(hook_fn, params)

            if isinstance(result, Defer):
                if not allow_defer:
                    raise HookResultError(
                        f"Hook '{_hook_name(hook_fn)}' returned Defer at {point.value}; "
                        "only before* hooks may defer"
                    )
                logger.debug("Hook '%s' deferred %s", _hook_name(hook_fn), point.value)
                return result

            if isinstance(result, Proceed):
                result = result.value

            if attr is not None and result is not None:
                setattr(params, attr, result)

        return Proceed(getattr(params, attr) if attr is not None else None)

    async def run_error_hooks(self, hooks: Sequence[HookFn], params: AfterErrorParams) -> None:
        """Execute afterError hooks for observation.

        Failures are logged; they never replace the original error.
        """
        for hook_fn in hooks:
            try:
                await self.call(hook_fn, params)
            except Exception as e:
                logger.error(
                    "afterError hook '%s' failed while handling %s: %s",
                    _hook_name(hook_fn),
                    params.path,
                    e,
                )

    async def run_exception_hooks(
        self,
        hooks: Sequence[HookFn],
        params: CatchExceptionParams,
    ) -> Any:
        """Run every catchException hook concurrently and to completion.

        All hooks share ``params.exception_actions`` and
        ``params.return_actions``. A failing hook does not stop its siblings.

        Returns:
            The value supplied through return_actions when the exception was cleared.

        Raises:
            The pending exception (original or substituted) when not cleared.
            EmptyRecoveryError: When cleared without a replacement value.
        """
        outcomes = await asyncio.gather(
            *(self.call(hook_fn, params) for hook_fn in hooks),
            return_exceptions=True,
        )
        for hook_fn, outcome in zip(hooks, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "catchException hook '%s' failed: %s", _hook_name(hook_fn), outcome
                )

        pending = params.exception_actions.get()
        if pending is not None:
            raise pending

        if not params.return_actions.is_set:
            raise EmptyRecoveryError(
                f"Exception raised at {params.name.value} on '{params.schema}' was "
                "cleared but no replacement result was set"
            )
        return params.return_actions.get()

    @staticmethod
    def recovery_controllers(exception: BaseException) -> tuple[ExceptionActions, ReturnActions]:
        """Fresh shared controllers seeded with the thrown exception."""
        return ExceptionActions(exception), ReturnActions()
