"""Immutable deep copies of documents for read-only hook consumption.

A pure value is taken before a hook chain starts and never reflects later
mutation of the source or of any hook's replacement value. Frozen containers
subclass dict/list so they compare equal to (and serialise like) the value
they were copied from, while every mutating method raises TypeError.
"""

import copy
from datetime import date, datetime
from typing import Any, NoReturn


def _readonly(self, *args: Any, **kwargs: Any) -> NoReturn:
    raise TypeError(f"{type(self).__name__} is immutable")


class FrozenDict(dict):
    """A dict that cannot be modified after construction."""

    __setitem__ = _readonly
    __delitem__ = _readonly
    __ior__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly

    def __copy__(self) -> "FrozenDict":
        return self

    def __deepcopy__(self, memo: dict) -> dict:
        # Copying a snapshot yields an ordinary mutable value.
        return thaw(self)

    def __reduce__(self):
        return (FrozenDict, (dict(self),))


class FrozenList(list):
    """A list that cannot be modified after construction."""

    __setitem__ = _readonly
    __delitem__ = _readonly
    __iadd__ = _readonly
    __imul__ = _readonly
    append = _readonly
    clear = _readonly
    extend = _readonly
    insert = _readonly
    pop = _readonly
    remove = _readonly
    reverse = _readonly
    sort = _readonly

    def __copy__(self) -> "FrozenList":
        return self

    def __deepcopy__(self, memo: dict) -> list:
        return thaw(self)

    def __reduce__(self):
        return (FrozenList, (list(self),))


_ATOMIC = (str, bytes, int, float, bool, type(None), datetime, date)


def create_pure_value(value: Any) -> Any:
    """Return an immutable deep copy of ``value``.

    Mappings become FrozenDict, lists and tuples become FrozenList, sets
    become frozenset. Other objects are deep-copied so the snapshot shares
    no state with the source.
    """
    if isinstance(value, (FrozenDict, FrozenList)):
        return value
    if isinstance(value, _ATOMIC):
        return value
    if isinstance(value, dict):
        return FrozenDict((key, create_pure_value(item)) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return FrozenList(create_pure_value(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(create_pure_value(item) for item in value)
    return copy.deepcopy(value)


def thaw(value: Any) -> Any:
    """Return a mutable deep copy of a (possibly frozen) value."""
    if isinstance(value, dict):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, list):
        return [thaw(item) for item in value]
    if isinstance(value, frozenset):
        return {thaw(item) for item in value}
    if isinstance(value, _ATOMIC):
        return value
    return copy.deepcopy(value)


def is_pure(value: Any) -> bool:
    """Check whether a value is a frozen container produced by create_pure_value."""
    return isinstance(value, (FrozenDict, FrozenList, frozenset))
