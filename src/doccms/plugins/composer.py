"""Plugin composition.

Folds each schema's ordered plugin list over its configuration, left to
right, before the hook registry builds the hook table.
"""

import logging

from doccms.config import CMSOptions, SchemaConfig
from doccms.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def compose_schema(schema: str, config: SchemaConfig) -> SchemaConfig:
    """Inject every plugin of one schema, in list order.

    Raises:
        ConfigurationError: For a non-list plugin value, an object that is not
            a plugin, a missing dependency, or a plugin returning no config
    """
    if not isinstance(config.plugins, list):
        raise ConfigurationError(
            f"cms schema [{schema}] config error, plugins must be a list."
        )

    preceding: list[str] = []
    for plugin in config.plugins:
        if not callable(getattr(plugin, "inject", None)):
            raise ConfigurationError(f"schema [{schema}]: {plugin!r} is not a plugin")

        name = getattr(plugin, "name", type(plugin).__name__)
        missing = [dep for dep in getattr(plugin, "depends", ()) if dep not in preceding]
        if missing:
            raise ConfigurationError(
                f"schema [{schema}]: plugin '{name}' depends on {missing}, "
                "which must be listed before it"
            )

        result = plugin.inject(schema, config)
        if not isinstance(result, SchemaConfig):
            raise ConfigurationError(
                f"schema [{schema}]: plugin '{name}' did not return a SchemaConfig"
            )
        config = result
        preceding.append(name)
        logger.debug("Plugin '%s' composed into '%s'", name, schema)

    return config


def compose_plugins(options: CMSOptions) -> CMSOptions:
    """Compose plugins for every schema in place and return the options."""
    for schema, config in list(options.schemas.items()):
        options.schemas[schema] = compose_schema(schema, config)
    return options
