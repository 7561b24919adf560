"""Document filtering, sorting and pagination shared by all adapters.

Filters use a document-store dialect:
    {"status": "in review"}                       equality
    {"author.name": "Ann"}                        dotted path
    {"tags": "python"}                            membership in a list value
    {"year": {"$gte": 2000, "$lt": 2010}}         comparison operators
    {"$or": [{"a": 1}, {"b": {"$exists": False}}]}
"""

import json
import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

_MISSING = object()

_DESCENDING = {"desc", "descending", -1, "-1"}
_ASCENDING = {"asc", "ascending", 1, "1"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_document(document: Mapping[str, Any]) -> str:
    return json.dumps(document, default=_json_default)


def normalize_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Return a detached, JSON-normalised copy of a document.

    Assigns a generated ``_id`` when missing; identifiers are always strings.
    """
    normalized = json.loads(encode_document(document))
    if normalized.get("_id") is None:
        normalized["_id"] = uuid.uuid4().hex
    else:
        normalized["_id"] = str(normalized["_id"])
    return normalized


def resolve_path(document: Mapping[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _comparable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _compare(left: Any, op: str, right: Any) -> bool:
    left, right = _comparable(left), _comparable(right)
    try:
        if op == "$gt":
            return left > right
        if op == "$gte":
            return left >= right
        if op == "$lt":
            return left < right
        return left <= right
    except TypeError:
        return False


def _equals(value: Any, expected: Any) -> bool:
    expected = _comparable(expected)
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _match_operators(value: Any, conditions: Mapping[str, Any]) -> bool:
    for op, operand in conditions.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = _equals(value, operand)
        elif op == "$ne":
            ok = not _equals(value, operand)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = value is not _MISSING and value is not None and _compare(value, op, operand)
        elif op == "$in":
            ok = any(_equals(value, item) for item in operand)
        elif op == "$nin":
            ok = not any(_equals(value, item) for item in operand)
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(operand)
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in conditions.get("$options", "") else 0
            ok = isinstance(value, str) and re.search(operand, value, flags) is not None
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def _is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


def match_filter(document: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    """Check whether a document satisfies a filter. An empty filter matches all."""
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$and":
            if not all(match_filter(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(match_filter(document, sub) for sub in condition):
                return False
        elif _is_operator_dict(condition):
            if not _match_operators(resolve_path(document, key), condition):
                return False
        elif not _equals(resolve_path(document, key), condition):
            return False
    return True


def _sort_key(value: Any) -> tuple:
    if value is _MISSING or value is None:
        return (0, "", 0)
    if isinstance(value, bool):
        return (1, "bool", value)
    if isinstance(value, (int, float)):
        return (1, "number", value)
    if isinstance(value, str):
        return (1, "string", value)
    return (1, type(value).__name__, str(value))


def sort_documents(
    documents: Iterable[dict[str, Any]], sort: Mapping[str, Any] | None
) -> list[dict[str, Any]]:
    """Sort documents by an ordered field -> direction mapping.

    Sorting is stable: documents with equal keys keep their stored order.
    """
    result = list(documents)
    if not sort:
        return result
    # Least significant key first; each pass is stable.
    for field_name, direction in reversed(list(sort.items())):
        if direction in _DESCENDING:
            reverse = True
        elif direction in _ASCENDING:
            reverse = False
        else:
            raise ValueError(f"Unsupported sort direction for '{field_name}': {direction!r}")
        result.sort(key=lambda d: _sort_key(resolve_path(d, field_name)), reverse=reverse)
    return result


def paginate(
    documents: list[dict[str, Any]], skip: int = 0, limit: int | None = None
) -> list[dict[str, Any]]:
    skip = max(int(skip or 0), 0)
    if limit is None:
        return documents[skip:]
    return documents[skip : skip + max(int(limit), 0)]


def apply_query(
    documents: Iterable[dict[str, Any]],
    filter: Mapping[str, Any] | None = None,
    sort: Mapping[str, Any] | None = None,
    skip: int = 0,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Filter, sort and paginate documents in stored order."""
    matched = [d for d in documents if match_filter(d, filter)]
    return paginate(sort_documents(matched, sort), skip, limit)
