"""Hook registry for doccms.

Builds, once at startup, the schema -> hook point -> ordered hook list map
the engine reads on every operation. Two sources feed it:

- configuration hooks, from SchemaConfig.hooks (after plugin composition)
- declarative hooks, registered through HookRegistry.register() or
  collected from HookProvider units

Configuration hooks always precede declarative ones; each group keeps its
registration order. The resulting HookTable is read-only and safe to share
between concurrent operations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from doccms.exceptions import ConfigurationError, OperationNotFoundError
from doccms.hooks.types import HookFn, HookPoint, OperationFn

if TYPE_CHECKING:
    from doccms.config import CMSOptions, SchemaConfig

logger = logging.getLogger(__name__)

OperationKey = tuple[str, str, str]


class HookProvider:
    """A unit of declaratively registered hooks.

    The unit may name a default schema; each hook may name its own schema
    instead. A hook that resolves to neither is a startup error.

    Example:
        books = HookProvider("books")

        @books.before_create()
        def assign_id(params):
            return {**params.data, "_id": "book_123"}

        @books.after_create("chapters")
        async def log_chapter(params):
            return params.document
    """

    def __init__(self, schema: str | None = None, name: str | None = None):
        self.schema = schema
        self.name = name or (schema or "anonymous")
        self._hooks: list[tuple[str | None, HookPoint, HookFn]] = []
        self._operations: list[tuple[str | None, str, str, OperationFn]] = []

    def on(
        self, point: HookPoint | str, schema: str | None = None
    ) -> Callable[[HookFn], HookFn]:
        """Decorator registering a hook at ``point``."""
        point = HookPoint(point)

        def decorator(fn: HookFn) -> HookFn:
            self._hooks.append((schema, point, fn))
            return fn

        return decorator

    def before_create(self, schema: str | None = None):
        return self.on(HookPoint.BEFORE_CREATE, schema)

    def after_create(self, schema: str | None = None):
        return self.on(HookPoint.AFTER_CREATE, schema)

    def before_update(self, schema: str | None = None):
        return self.on(HookPoint.BEFORE_UPDATE, schema)

    def after_update(self, schema: str | None = None):
        return self.on(HookPoint.AFTER_UPDATE, schema)

    def before_delete(self, schema: str | None = None):
        return self.on(HookPoint.BEFORE_DELETE, schema)

    def after_delete(self, schema: str | None = None):
        return self.on(HookPoint.AFTER_DELETE, schema)

    def after_query(self, schema: str | None = None):
        return self.on(HookPoint.AFTER_QUERY, schema)

    def after_error(self, schema: str | None = None):
        return self.on(HookPoint.AFTER_ERROR, schema)

    def catch_exception(self, schema: str | None = None):
        return self.on(HookPoint.CATCH_EXCEPTION, schema)

    def operation(
        self, operation_type: str, action: str, schema: str | None = None
    ) -> Callable[[OperationFn], OperationFn]:
        """Decorator registering a custom operation handler."""

        def decorator(fn: OperationFn) -> OperationFn:
            self._operations.append((schema, operation_type, action, fn))
            return fn

        return decorator

    def _resolve(self, schema: str | None, what: str, fn: Callable) -> str:
        resolved = schema or self.schema
        if resolved is None:
            raise ConfigurationError(
                f"schema parameter is missing for {what} '{getattr(fn, '__name__', fn)}' "
                f"in provider '{self.name}'; set it on the hook or on the provider"
            )
        return resolved

    def resolve_hooks(self) -> Iterator[tuple[str, HookPoint, HookFn]]:
        for schema, point, fn in self._hooks:
            yield self._resolve(schema, point.value, fn), point, fn

    def resolve_operations(self) -> Iterator[tuple[str, str, str, OperationFn]]:
        for schema, operation_type, action, fn in self._operations:
            what = f"operation {operation_type}.{action}"
            yield self._resolve(schema, what, fn), operation_type, action, fn


class HookTable:
    """Frozen lookup structure produced by HookRegistry.build()."""

    def __init__(
        self,
        schemas: Mapping[str, SchemaConfig],
        hooks: dict[str, dict[HookPoint, tuple[HookFn, ...]]],
        operations: dict[OperationKey, OperationFn],
    ):
        self.schemas = MappingProxyType(dict(schemas))
        self._hooks = MappingProxyType(
            {schema: MappingProxyType(points) for schema, points in hooks.items()}
        )
        self._operations = MappingProxyType(operations)

    def hooks(self, schema: str, point: HookPoint) -> tuple[HookFn, ...]:
        """Ordered hooks for (schema, point); empty when none are registered."""
        points = self._hooks.get(schema)
        if points is None:
            return ()
        return points.get(point, ())

    def operation(self, schema: str, operation_type: str, action: str) -> OperationFn:
        """Resolve a custom operation handler.

        Raises:
            OperationNotFoundError: If no handler matches the triple
        """
        handler = self._operations.get((schema, operation_type, action))
        if handler is None:
            raise OperationNotFoundError(schema, operation_type, action)
        return handler

    def has_schema(self, schema: str) -> bool:
        return schema in self.schemas

    def summary(self) -> dict[str, dict]:
        """Hook counts per point and operation names per schema."""
        result: dict[str, dict] = {}
        for schema in sorted(set(self.schemas) | set(self._hooks)):
            points = self._hooks.get(schema, {})
            result[schema] = {
                "hooks": {p.value: len(fns) for p, fns in points.items() if fns},
                "operations": sorted(
                    f"{t}.{a}" for (s, t, a) in self._operations if s == schema
                ),
            }
        return result


class HookRegistry:
    """Collects declarative hooks and builds the startup hook table.

    Example:
        registry = HookRegistry()
        registry.register("books", HookPoint.BEFORE_CREATE, assign_id)
        registry.include(chapter_hooks)
        table = registry.build(options)
    """

    def __init__(self) -> None:
        self._hooks: list[tuple[str, HookPoint, HookFn]] = []
        self._operations: list[tuple[str, str, str, OperationFn]] = []

    def register(self, schema: str, point: HookPoint | str, hook_fn: HookFn) -> None:
        """Register a hook for (schema, point)."""
        if not schema:
            raise ConfigurationError("schema is required to register a hook")
        self._hooks.append((schema, HookPoint(point), hook_fn))

    def register_operation(
        self, schema: str, operation_type: str, action: str, handler: OperationFn
    ) -> None:
        """Register a custom operation; overrides a configured one with the same triple."""
        if not schema:
            raise ConfigurationError("schema is required to register an operation")
        self._operations.append((schema, operation_type, action, handler))

    def include(self, provider: HookProvider) -> None:
        """Register every hook and operation of a provider.

        Raises:
            ConfigurationError: If a hook resolves to no schema
        """
        hooks = list(provider.resolve_hooks())
        operations = list(provider.resolve_operations())
        for schema, point, fn in hooks:
            self.register(schema, point, fn)
        for schema, operation_type, action, fn in operations:
            self.register_operation(schema, operation_type, action, fn)

    def build(self, options: CMSOptions) -> HookTable:
        """Merge configuration and declarative sources into a HookTable."""
        merged: dict[str, dict[HookPoint, list[HookFn]]] = {}

        for schema, config in options.schemas.items():
            points = merged.setdefault(schema, {})
            for point, fns in config.hooks.items():
                points.setdefault(HookPoint(point), []).extend(fns)

        for schema, point, fn in self._hooks:
            merged.setdefault(schema, {}).setdefault(point, []).append(fn)

        operations: dict[OperationKey, OperationFn] = {}
        for schema, config in options.schemas.items():
            for definition in config.operations:
                key = (schema, definition.operation_type, definition.action)
                operations.setdefault(key, definition.handler)
        for schema, operation_type, action, fn in self._operations:
            key = (schema, operation_type, action)
            if key in operations:
                logger.debug("Operation %s.%s on '%s' overridden", operation_type, action, schema)
            operations[key] = fn

        for schema in merged:
            if schema not in options.schemas:
                logger.warning("Hooks registered for unconfigured schema '%s'", schema)

        frozen = {
            schema: {point: tuple(fns) for point, fns in points.items()}
            for schema, points in merged.items()
        }
        return HookTable(options.schemas, frozen, operations)
