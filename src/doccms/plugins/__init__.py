"""doccms plugins.

Plugins fold hooks and custom operations into a schema's configuration at
startup. Two reference plugins ship with doccms:
- VersionControl ("versions"): document version history
- ContentReview ("review"): approval queue for changes
"""

from doccms.plugins.base import Plugin
from doccms.plugins.catalog import PLUGIN_FACTORIES, create_plugin
from doccms.plugins.composer import compose_plugins, compose_schema
from doccms.plugins.filters import build_filter
from doccms.plugins.review import REVIEW_REPLAY, ContentReview, ReviewError
from doccms.plugins.versions import DEFAULT_MAX_VERSIONS, VersionControl

__all__ = [
    "ContentReview",
    "DEFAULT_MAX_VERSIONS",
    "PLUGIN_FACTORIES",
    "Plugin",
    "REVIEW_REPLAY",
    "ReviewError",
    "VersionControl",
    "build_filter",
    "compose_plugins",
    "compose_schema",
    "create_plugin",
]
