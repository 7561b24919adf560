"""Hook system types for doccms.

Defines the core data structures for the record lifecycle hook system:
- HookPoint: the named stages where extension code runs
- HookContext: per-request bag passed through to every hook untouched
- Proceed / Defer: tagged results a pre-hook may return
- *Params: the point-specific bundle each hook receives
- ExceptionActions / ReturnActions: shared controllers for exception hooks
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Zero-argument async action registered by a hook, run before commit.
DeferredCall = Callable[[], Awaitable[Any]]
DeferFn = Callable[[DeferredCall], None]

# Hooks may be plain or coroutine functions taking one params object.
HookFn = Callable[[Any], Any]
OperationFn = Callable[["OperationParams"], Any]


class HookPoint(str, Enum):
    """Stages of the CRUD lifecycle where hooks run."""

    BEFORE_CREATE = "beforeCreate"
    AFTER_CREATE = "afterCreate"
    BEFORE_UPDATE = "beforeUpdate"
    AFTER_UPDATE = "afterUpdate"
    BEFORE_DELETE = "beforeDelete"
    AFTER_DELETE = "afterDelete"
    AFTER_QUERY = "afterQuery"
    AFTER_ERROR = "afterError"
    CATCH_EXCEPTION = "catchException"
    OPERATION = "operation"


# Points whose hooks may short-circuit persistence with Defer.
PRE_POINTS = frozenset(
    {HookPoint.BEFORE_CREATE, HookPoint.BEFORE_UPDATE, HookPoint.BEFORE_DELETE}
)


@dataclass
class HookContext:
    """Inbound request metadata for one operation.

    The engine never interprets these fields. Plugins may record ad hoc
    flags in ``markers`` (e.g. a replay marker); nested operations issued
    through ``db`` share the same context.
    """

    request: Any = None
    session: Any = None
    params: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    markers: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Proceed:
    """Continue the chain with ``value`` as the next hook's input."""

    value: Any


@dataclass(frozen=True)
class Defer:
    """Skip persistence and finish the operation with ``record`` as its result."""

    record: Any


@dataclass
class FindOptions:
    """Pagination, sort and filter already resolved by the caller."""

    skip: int = 0
    limit: int | None = None
    sort: dict[str, Any] | None = None
    filter: dict[str, Any] | None = None


# =============================================================================
# Hook parameter bundles
# =============================================================================


@dataclass
class BeforeCreateParams:
    schema: str
    data: dict[str, Any]
    pure_data: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class AfterCreateParams:
    schema: str
    data: dict[str, Any]
    pure_data: Any
    document: dict[str, Any]
    pure_document: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class BeforeUpdateParams:
    schema: str
    data: dict[str, Any]
    pure_data: Any
    original_document: Any
    target_document: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class AfterUpdateParams:
    schema: str
    data: dict[str, Any]
    pure_data: Any
    original_document: Any
    current_document: dict[str, Any]
    pure_current_document: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class DeleteParams:
    """Bundle for both beforeDelete and afterDelete."""

    schema: str
    document: Any
    pure_document: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class AfterQueryParams:
    schema: str
    document: dict[str, Any]
    pure_document: Any
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class AfterErrorParams:
    schema: str
    path: str
    error: BaseException
    db: Any
    raw_db: Any
    context: HookContext
    defer: DeferFn


@dataclass
class CatchExceptionParams:
    """Bundle for catchException hooks.

    Attributes:
        name: Hook point the exception was raised from
        data: The params bundle of that hook point at the time of the raise
        exception: The exception currently pending (see exception_actions)
    """

    schema: str
    name: HookPoint
    data: Any
    exception: BaseException
    exception_actions: "ExceptionActions"
    return_actions: "ReturnActions"
    db: Any
    raw_db: Any
    context: HookContext


@dataclass
class OperationParams:
    schema: str
    operation_type: str
    action: str
    db: Any
    raw_db: Any
    context: HookContext


# =============================================================================
# Exception recovery controllers
# =============================================================================


class ExceptionActions:
    """Shared slot holding the exception that will be raised after recovery."""

    def __init__(self, exception: BaseException):
        self._exception: BaseException | None = exception

    def get(self) -> BaseException | None:
        return self._exception

    def clear(self) -> None:
        self._exception = None

    def replace(self, exception: BaseException) -> None:
        self._exception = exception


_UNSET = object()


class ReturnActions:
    """Shared slot holding the replacement result of a recovered operation."""

    def __init__(self) -> None:
        self._value: Any = _UNSET

    @property
    def is_set(self) -> bool:
        return self._value is not _UNSET

    def get(self) -> Any:
        return None if self._value is _UNSET else self._value

    def set(self, value: Any) -> None:
        self._value = value
