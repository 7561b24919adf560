"""Content review plugin.

Holds changes to a schema for approval. An intercepted create (and,
optionally, update or delete) is not persisted; instead a review entry is
stored in ``__<schema>_review`` and returned as the operation result:

    {reviewId, type, createdAt, payload, status}

``review.confirm`` with status "approved" replays the original operation
with a replay marker set in the context, so the interceptor lets it through.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from doccms.config import OperationDefinition, SchemaConfig
from doccms.core.pure import thaw
from doccms.exceptions import CMSError, ConfigurationError
from doccms.hooks.types import (
    BeforeCreateParams,
    BeforeUpdateParams,
    Defer,
    DeleteParams,
    HookPoint,
    OperationParams,
)
from doccms.plugins.base import Plugin
from doccms.plugins.filters import build_filter

logger = logging.getLogger(__name__)

REVIEW_REPLAY = "review_replay"

IN_REVIEW = "in review"
APPROVED = "approved"
REJECTED = "reject"

DEFAULT_LIST_LIMIT = 10

_INTERCEPT_POINTS = {
    "create": HookPoint.BEFORE_CREATE,
    "update": HookPoint.BEFORE_UPDATE,
    "delete": HookPoint.BEFORE_DELETE,
}


class ReviewError(CMSError):
    """A review confirmation could not be applied."""


def review_collection(schema: str) -> str:
    return f"__{schema}_review"


def is_replay(context) -> bool:
    return bool(context.markers.get(REVIEW_REPLAY))


class ContentReview(Plugin):
    """Routes changes through a review queue.

    Args:
        collection: Review collection name, defaults to ``__<schema>_review``
        operations: Operation kinds to intercept: create, update, delete
    """

    name = "review"

    def __init__(self, collection: str | None = None, operations=("create",)):
        if isinstance(operations, str):
            operations = (operations,)
        unknown = [op for op in operations if op not in _INTERCEPT_POINTS]
        if unknown:
            raise ConfigurationError(
                f"review plugin: unsupported operations {unknown}; "
                f"expected any of {sorted(_INTERCEPT_POINTS)}"
            )
        self.collection = collection or None
        self.operations = tuple(operations)

    def apply(self, schema: str, config: SchemaConfig) -> SchemaConfig:
        collection = self.collection or review_collection(schema)
        interceptors = {
            "create": self._intercept_create,
            "update": self._intercept_update,
            "delete": self._intercept_delete,
        }
        for kind in self.operations:
            config.hook_list(_INTERCEPT_POINTS[kind]).append(
                interceptors[kind](schema, collection)
            )
        config.operations.insert(
            0, OperationDefinition("review", "confirm", self._confirm(collection))
        )
        config.operations.insert(
            0, OperationDefinition("review", "list", self._list(collection))
        )
        return config

    # ------------------------------------------------------------------
    # Interceptors
    # ------------------------------------------------------------------

    @staticmethod
    async def _submit(
        raw_db, schema: str, collection: str, kind: str, payload: dict
    ) -> Defer:
        entry = await raw_db.collection(collection).insert_one(
            {
                "reviewId": f"review_{schema}_{uuid.uuid4().hex}",
                "type": kind,
                "createdAt": datetime.now(UTC).isoformat(),
                "payload": payload,
                "status": IN_REVIEW,
            }
        )
        logger.debug("Submitted %s on '%s' for review as %s", kind, schema, entry["reviewId"])
        return Defer(entry)

    def _intercept_create(self, schema: str, collection: str):
        async def review_create(params: BeforeCreateParams):
            if is_replay(params.context):
                return params.data
            payload = {"data": thaw(params.pure_data)}
            return await self._submit(params.raw_db, schema, collection, "create", payload)

        return review_create

    def _intercept_update(self, schema: str, collection: str):
        async def review_update(params: BeforeUpdateParams):
            if is_replay(params.context):
                return params.data
            payload = {
                "_id": params.original_document["_id"],
                "data": thaw(params.pure_data),
            }
            return await self._submit(params.raw_db, schema, collection, "update", payload)

        return review_update

    def _intercept_delete(self, schema: str, collection: str):
        async def review_delete(params: DeleteParams):
            if is_replay(params.context):
                return None
            payload = {"_id": params.pure_document["_id"]}
            return await self._submit(params.raw_db, schema, collection, "delete", payload)

        return review_delete

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _list(self, collection: str):
        async def list_reviews(params: OperationParams):
            body = params.context.body or {}
            return await params.raw_db.collection(collection).find(
                build_filter(body.get("filter")),
                sort=body.get("sort"),
                skip=body.get("skip", 0),
                limit=body.get("limit", DEFAULT_LIST_LIMIT),
            )

        return list_reviews

    def _confirm(self, collection: str):
        async def confirm_review(params: OperationParams):
            body = params.context.body or {}
            review_id = body.get("reviewId")
            status = body.get("status")
            if status not in (APPROVED, REJECTED):
                raise ReviewError(f"Review status {status!r} is not supported")

            reviews = params.raw_db.collection(collection)
            entry = await reviews.find_one({"reviewId": review_id})
            if entry is None:
                raise ReviewError(f"Review entry not found: {review_id}")
            if entry["status"] != IN_REVIEW:
                raise ReviewError(
                    f"Review entry {review_id} is already '{entry['status']}'"
                )

            updated = await reviews.update_one(entry["_id"], {"status": status})
            if status == REJECTED:
                return updated
            return await _replay(params, entry)

        return confirm_review


async def _replay(params: OperationParams, entry: dict[str, Any]) -> Any:
    """Re-run an approved operation through ``db`` with the replay marker set."""
    markers = params.context.markers
    previous = markers.get(REVIEW_REPLAY)
    markers[REVIEW_REPLAY] = True
    try:
        payload = entry["payload"]
        if entry["type"] == "create":
            return await params.db.create(params.schema, payload["data"])
        if entry["type"] == "update":
            return await params.db.update_by_id(params.schema, payload["_id"], payload["data"])
        if entry["type"] == "delete":
            return await params.db.delete_by_id(params.schema, payload["_id"])
        raise ReviewError(f"Review entry {entry['reviewId']} has unknown type {entry['type']!r}")
    finally:
        if previous is None:
            markers.pop(REVIEW_REPLAY, None)
        else:
            markers[REVIEW_REPLAY] = previous
