"""Plugin base class."""

import logging
from abc import ABC, abstractmethod

from doccms.config import SchemaConfig

logger = logging.getLogger(__name__)


class Plugin(ABC):
    """A reusable bundle of hooks and operations folded into a schema config.

    Subclasses implement apply(), which must read-modify-write the config's
    hook lists (see SchemaConfig.hook_list) rather than replace them.

    Attributes:
        name: Unique plugin name, recorded in SchemaConfig.applied_plugins
        priority: Informational ordering hint; composition follows list order
        depends: Plugin names that must appear earlier in the same plugin list
    """

    name: str = ""
    priority: int = 0
    depends: tuple[str, ...] = ()

    def inject(self, schema: str, config: SchemaConfig) -> SchemaConfig:
        """Apply the plugin once; re-injection returns the config unchanged."""
        if self.name in config.applied_plugins:
            logger.debug("Plugin '%s' already applied to '%s'", self.name, schema)
            return config
        config.applied_plugins.append(self.name)
        return self.apply(schema, config)

    @abstractmethod
    def apply(self, schema: str, config: SchemaConfig) -> SchemaConfig: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"
