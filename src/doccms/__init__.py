"""doccms: hook-driven record lifecycle engine for document stores."""

from doccms.cms import CMS
from doccms.config import CMSOptions, OperationDefinition, SchemaConfig
from doccms.exceptions import CMSError, ConfigurationError, HookException
from doccms.hooks import Defer, HookContext, HookPoint, HookProvider, HookRegistry, Proceed

__all__ = [
    "CMS",
    "CMSError",
    "CMSOptions",
    "ConfigurationError",
    "Defer",
    "HookContext",
    "HookException",
    "HookPoint",
    "HookProvider",
    "HookRegistry",
    "OperationDefinition",
    "Proceed",
    "SchemaConfig",
]
