"""doccms record lifecycle hook system.

Provides extension points for logic that runs around every CRUD operation:
- beforeCreate / beforeUpdate / beforeDelete: transform the input, or Defer
- afterCreate / afterUpdate / afterDelete: transform the persisted document
- afterQuery: transform each document read
- afterError: observe non-hook failures before they propagate
- catchException: recover from a HookException
- operation: custom, non-CRUD handlers

Usage:
    from doccms.hooks import HookProvider

    books = HookProvider("books")

    @books.before_create()
    def assign_id(params):
        return {**params.data, "_id": "book_123"}
"""

from doccms.hooks.catalog import HookCatalog, hook
from doccms.hooks.registry import HookProvider, HookRegistry, HookTable
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
    ExceptionActions,
    FindOptions,
    HookContext,
    HookPoint,
    OperationParams,
    Proceed,
    ReturnActions,
)

VALID_HOOK_POINTS = tuple(point.value for point in HookPoint)

__all__ = [
    "AfterCreateParams",
    "AfterErrorParams",
    "AfterQueryParams",
    "AfterUpdateParams",
    "BeforeCreateParams",
    "BeforeUpdateParams",
    "CatchExceptionParams",
    "Defer",
    "DeleteParams",
    "ExceptionActions",
    "FindOptions",
    "HookCatalog",
    "HookContext",
    "HookPoint",
    "HookProvider",
    "HookRegistry",
    "HookService",
    "HookTable",
    "OperationParams",
    "Proceed",
    "ReturnActions",
    "VALID_HOOK_POINTS",
    "hook",
]
