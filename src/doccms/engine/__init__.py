"""doccms lifecycle engine.

Executes CRUD operations and custom operations through the hook table with
per-operation transactional and interrupt/recovery semantics.
"""

from doccms.engine.database import Database, RawCollection, RawDatabase
from doccms.engine.dispatcher import OperationDispatcher
from doccms.engine.lifecycle import LifecycleEngine
from doccms.engine.state import OperationState

__all__ = [
    "Database",
    "LifecycleEngine",
    "OperationDispatcher",
    "OperationState",
    "RawCollection",
    "RawDatabase",
]
