"""CMS bootstrap.

Wires the startup pipeline once:

    options -> compose_plugins -> HookRegistry.build -> LifecycleEngine
                                                     -> OperationDispatcher

and exposes the resulting CRUD and custom operations.
"""

import logging
from pathlib import Path
from typing import Any

from doccms.config import CMSOptions
from doccms.engine import LifecycleEngine, OperationDispatcher
from doccms.hooks import FindOptions, HookContext, HookRegistry, HookService, HookTable
from doccms.persistence import DatabaseConfig, DocumentAdapter, create_adapter
from doccms.plugins import compose_plugins

logger = logging.getLogger(__name__)


class CMS:
    """Schema-parameterised CRUD over a document store, with hooks.

    Example:
        registry = HookRegistry()
        registry.include(book_hooks)
        cms = CMS(options, MemoryAdapter(), registry)
        book = await cms.create("books", {"title": "X"})
    """

    def __init__(
        self,
        options: CMSOptions,
        adapter: DocumentAdapter | None = None,
        registry: HookRegistry | None = None,
        service: HookService | None = None,
    ):
        self.options = compose_plugins(options)
        self.registry = registry or HookRegistry()
        self.table: HookTable = self.registry.build(self.options)
        self.adapter = adapter if adapter is not None else create_adapter(DatabaseConfig.from_env())
        self.adapter.connect()
        self.engine = LifecycleEngine(self.table, self.adapter, service)
        self.dispatcher = OperationDispatcher(self.engine)
        logger.info("doccms ready with schemas: %s", ", ".join(sorted(self.options.schemas)))

    @classmethod
    def from_config(
        cls,
        path: Path | str,
        adapter: DocumentAdapter | None = None,
        registry: HookRegistry | None = None,
    ) -> "CMS":
        """Build a CMS from a YAML configuration file."""
        return cls(CMSOptions.load(path), adapter, registry)

    def close(self) -> None:
        self.adapter.close()

    async def find(
        self,
        schema: str,
        options: FindOptions | dict | None = None,
        context: HookContext | None = None,
    ) -> list:
        return await self.engine.find(schema, options, context)

    async def find_by_id(self, schema: str, id: str, context: HookContext | None = None) -> Any:
        return await self.engine.find_by_id(schema, id, context)

    async def create(
        self, schema: str, data: dict | list[dict], context: HookContext | None = None
    ) -> Any:
        return await self.engine.create(schema, data, context)

    async def update(
        self, schema: str, filter: dict, data: dict, context: HookContext | None = None
    ) -> list:
        return await self.engine.update(schema, filter, data, context)

    async def update_by_id(
        self, schema: str, id: str, data: dict, context: HookContext | None = None
    ) -> Any:
        return await self.engine.update_by_id(schema, id, data, context)

    async def delete(self, schema: str, filter: dict, context: HookContext | None = None) -> list:
        return await self.engine.delete_many(schema, filter, context)

    async def delete_by_id(self, schema: str, id: str, context: HookContext | None = None) -> Any:
        return await self.engine.delete_by_id(schema, id, context)

    async def operation(
        self,
        schema: str,
        operation_type: str,
        action: str,
        context: HookContext | None = None,
    ) -> Any:
        return await self.dispatcher.dispatch(schema, operation_type, action, context)
