"""Version snapshotting plugin.

Keeps an immutable copy of every created, updated and deleted document in a
side collection (``__<schema>_versions`` by default):

    {pid, operationAt, operationType, data}

Snapshots are written by deferred calls, so they land in the same
transaction as the change they record and vanish with it on rollback.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from doccms.config import OperationDefinition, SchemaConfig
from doccms.core.pure import thaw
from doccms.hooks.types import (
    AfterCreateParams,
    AfterUpdateParams,
    DeleteParams,
    HookPoint,
    OperationParams,
)
from doccms.plugins.base import Plugin
from doccms.plugins.filters import build_filter

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSIONS = 50
DEFAULT_LIST_LIMIT = 10


def versions_collection(schema: str) -> str:
    return f"__{schema}_versions"


def _snapshot(document: dict[str, Any], operation_type: str) -> dict[str, Any]:
    return {
        "pid": document["_id"],
        "operationAt": datetime.now(UTC).isoformat(),
        "operationType": operation_type,
        "data": document,
    }


class VersionControl(Plugin):
    """Records document versions and exposes ``versions.list``.

    Args:
        max: Update snapshots kept per document; non-positive or
            non-integer values fall back to DEFAULT_MAX_VERSIONS
        collection: Side collection name, defaults to ``__<schema>_versions``
        enabled: When False the plugin leaves the config untouched
    """

    name = "versions"

    def __init__(
        self,
        max: Any = DEFAULT_MAX_VERSIONS,
        collection: str | None = None,
        enabled: bool = True,
    ):
        if isinstance(max, bool) or not isinstance(max, int) or max <= 0:
            max = DEFAULT_MAX_VERSIONS
        self.max = max
        self.collection = collection or None
        self.enabled = enabled

    def apply(self, schema: str, config: SchemaConfig) -> SchemaConfig:
        if not self.enabled:
            return config

        collection = self.collection or versions_collection(schema)
        # Prepended so snapshots capture the document as persisted.
        config.hook_list(HookPoint.AFTER_CREATE).insert(0, self._record_create(collection))
        config.hook_list(HookPoint.AFTER_UPDATE).insert(0, self._record_update(collection))
        config.hook_list(HookPoint.AFTER_DELETE).insert(0, self._record_delete(collection))
        config.operations.insert(
            0, OperationDefinition("versions", "list", self._list_versions(collection))
        )
        return config

    def _record_create(self, collection: str):
        async def record_create_version(params: AfterCreateParams):
            document = thaw(params.pure_document)

            async def write() -> None:
                await params.raw_db.collection(collection).insert_one(
                    _snapshot(document, "create")
                )

            params.defer(write)
            return params.document

        return record_create_version

    def _record_update(self, collection: str):
        keep = self.max

        async def record_update_version(params: AfterUpdateParams):
            document = thaw(params.pure_current_document)

            async def write() -> None:
                versions = params.raw_db.collection(collection)
                await versions.insert_one(_snapshot(document, "update"))
                history = await versions.find(
                    {"pid": document["_id"], "operationType": "update"},
                    sort={"operationAt": "asc"},
                )
                obsolete = history[: max(len(history) - keep, 0)]
                for version in obsolete:
                    await versions.delete_one(version["_id"])
                if obsolete:
                    logger.debug(
                        "Pruned %d update versions of '%s' in %s",
                        len(obsolete),
                        document["_id"],
                        collection,
                    )

            params.defer(write)
            return params.current_document

        return record_update_version

    def _record_delete(self, collection: str):
        async def record_delete_version(params: DeleteParams):
            document = thaw(params.pure_document)

            async def write() -> None:
                await params.raw_db.collection(collection).insert_one(
                    _snapshot(document, "delete")
                )

            params.defer(write)

        return record_delete_version

    def _list_versions(self, collection: str):
        async def list_versions(params: OperationParams):
            body = params.context.body or {}
            return await params.raw_db.collection(collection).find(
                build_filter(body.get("filter")),
                sort=body.get("sort"),
                skip=body.get("skip", 0),
                limit=body.get("limit", DEFAULT_LIST_LIMIT),
            )

        return list_versions
