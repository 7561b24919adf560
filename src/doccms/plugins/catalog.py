"""Plugin lookup for configuration files.

Entries may be a plugin instance, a plugin name, or a mapping with a
``name`` key and the plugin's keyword arguments:

    plugins:
      - versions
      - name: review
        operations: [create, update]
"""

from collections.abc import Callable
from typing import Any

from doccms.exceptions import ConfigurationError
from doccms.plugins.base import Plugin
from doccms.plugins.review import ContentReview
from doccms.plugins.versions import VersionControl

PLUGIN_FACTORIES: dict[str, Callable[..., Plugin]] = {
    VersionControl.name: VersionControl,
    ContentReview.name: ContentReview,
}


def create_plugin(schema: str, entry: Any) -> Plugin:
    """Instantiate a plugin from a configuration entry.

    Raises:
        ConfigurationError: For unknown plugin names or invalid parameters
    """
    if isinstance(entry, Plugin):
        return entry
    if isinstance(entry, str):
        name, kwargs = entry, {}
    elif isinstance(entry, dict):
        kwargs = dict(entry)
        name = kwargs.pop("name", None)
    else:
        raise ConfigurationError(f"schema [{schema}]: invalid plugin entry {entry!r}")

    factory = PLUGIN_FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(
            f"schema [{schema}]: unknown plugin '{name}'; "
            f"available: {sorted(PLUGIN_FACTORIES)}"
        )
    try:
        return factory(**kwargs)
    except TypeError as e:
        raise ConfigurationError(
            f"schema [{schema}]: invalid parameters for plugin '{name}': {e}"
        ) from e
