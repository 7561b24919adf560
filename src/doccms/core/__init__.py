"""Shared utilities used across doccms."""

from doccms.core.pure import FrozenDict, FrozenList, create_pure_value, is_pure, thaw

__all__ = ["FrozenDict", "FrozenList", "create_pure_value", "is_pure", "thaw"]
