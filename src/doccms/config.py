"""Schema configuration for doccms.

Options can be built in code or loaded from YAML. In YAML, hooks and
operation handlers are referenced by catalog name and plugins by plugin name:

    schemas:
      books:
        fields: [title, author]
        hooks:
          beforeCreate: [assignBookId]
        operations:
          - type: stats
            action: count
            handler: countBooks
        plugins:
          - name: versions
            max: 2
          - name: review
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from doccms.exceptions import ConfigurationError
from doccms.hooks.catalog import HookCatalog
from doccms.hooks.types import HookFn, HookPoint, OperationFn


@dataclass
class OperationDefinition:
    """A custom, non-CRUD operation addressed by (operation_type, action)."""

    operation_type: str
    action: str
    handler: OperationFn


@dataclass
class SchemaConfig:
    """Hook, operation and plugin configuration for one schema.

    Attributes:
        fields: Recognized field names (``_id`` is always recognized)
        hooks: Ordered hooks per hook point
        operations: Ordered custom operations
        plugins: Plugins folded over this config at startup, in order
        applied_plugins: Names of plugins already folded in
    """

    fields: list[str] = field(default_factory=list)
    hooks: dict[HookPoint, list[HookFn]] = field(default_factory=dict)
    operations: list[OperationDefinition] = field(default_factory=list)
    plugins: list[Any] = field(default_factory=list)
    applied_plugins: list[str] = field(default_factory=list)

    def hook_list(self, point: HookPoint | str) -> list[HookFn]:
        """Return the live hook list for a point, creating it if missing.

        Plugins append to or insert into this list; they never replace it.
        """
        return self.hooks.setdefault(HookPoint(point), [])

    @property
    def recognized_fields(self) -> frozenset[str]:
        return frozenset(self.fields) | {"_id"}


@dataclass
class CMSOptions:
    schemas: dict[str, SchemaConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CMSOptions:
        """Create options from a YAML/JSON dict.

        Raises:
            ConfigurationError: For unknown hook points, hook names or plugins
        """
        schemas: dict[str, SchemaConfig] = {}
        for name, raw in (data.get("schemas") or {}).items():
            schemas[name] = _resolve_schema(name, raw or {})
        return cls(schemas=schemas)

    @classmethod
    def load(cls, path: Path | str) -> CMSOptions:
        """Load options from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: top level must be a mapping")
        return cls.from_dict(data)


def _resolve_schema(schema: str, raw: dict[str, Any]) -> SchemaConfig:
    config = SchemaConfig(fields=list(raw.get("fields") or []))

    for point_name, names in (raw.get("hooks") or {}).items():
        try:
            point = HookPoint(point_name)
        except ValueError:
            raise ConfigurationError(
                f"schema [{schema}]: unknown hook point '{point_name}'"
            ) from None
        if isinstance(names, str):
            names = [names]
        config.hook_list(point).extend(HookCatalog.resolve(n, schema) for n in names)

    for op in raw.get("operations") or []:
        try:
            config.operations.append(
                OperationDefinition(
                    operation_type=op["type"],
                    action=op["action"],
                    handler=HookCatalog.resolve(op["handler"], schema),
                )
            )
        except KeyError as e:
            raise ConfigurationError(
                f"schema [{schema}]: operation is missing '{e.args[0]}'"
            ) from None

    plugins = raw.get("plugins") or []
    if not isinstance(plugins, list):
        raise ConfigurationError(
            f"cms schema [{schema}] config error, plugins must be a list."
        )

    from doccms.plugins.catalog import create_plugin

    config.plugins = [create_plugin(schema, entry) for entry in plugins]
    return config
