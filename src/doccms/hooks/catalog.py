"""Named hook catalog for doccms.

Configuration files cannot hold functions, so they reference hooks and
operation handlers by name. Names must be bound before the configuration is
loaded, typically at import time with the @hook decorator.
"""

from doccms.exceptions import ConfigurationError
from doccms.hooks.types import HookFn


def _describe(fn: HookFn) -> str:
    return f"{getattr(fn, '__module__', '?')}.{getattr(fn, '__qualname__', repr(fn))}"


class HookCatalog:
    """Process-wide mapping of hook names to implementations.

    Example:
        @hook("assignBookId")
        async def assign_book_id(params: BeforeCreateParams) -> dict:
            ...

        @hook
        def stamp_updated_at(params):  # bound as "stamp_updated_at"
            ...
    """

    _hooks: dict[str, HookFn] = {}

    @classmethod
    def register(cls, name: str, hook_fn: HookFn) -> None:
        """Bind a name to a hook function.

        Binding the same function twice is a no-op, so modules may be
        re-imported; binding a different function to a taken name fails.

        Raises:
            ConfigurationError: If the name is already bound elsewhere
        """
        bound = cls._hooks.get(name)
        if bound is None:
            cls._hooks[name] = hook_fn
        elif bound is not hook_fn:
            raise ConfigurationError(
                f"Hook name '{name}' is already bound to {_describe(bound)}"
            )

    @classmethod
    def resolve(cls, name: str, schema: str | None = None) -> HookFn:
        """Look up the function bound to ``name``.

        Raises:
            ConfigurationError: If nothing is bound to the name
        """
        try:
            return cls._hooks[name]
        except KeyError:
            where = f"schema [{schema}]: " if schema else ""
            raise ConfigurationError(
                f"{where}hook '{name}' is not registered; import the module "
                "defining it before loading the configuration"
            ) from None

    @classmethod
    def clear(cls) -> None:
        """Drop every binding. Primarily for testing."""
        cls._hooks.clear()


def hook(name: str | HookFn | None = None):
    """Decorator binding a function in the catalog.

    Used bare (``@hook``) the function's own name is the hook name.
    """
    if callable(name):
        HookCatalog.register(name.__name__, name)
        return name

    def decorator(fn: HookFn) -> HookFn:
        HookCatalog.register(name or fn.__name__, fn)
        return fn

    return decorator
