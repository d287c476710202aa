# Hierarchy
# Line-management graph queries with cycle and depth protection

from .resolver import HierarchyResolver, DEFAULT_MAX_DEPTH

__all__ = [
    "HierarchyResolver",
    "DEFAULT_MAX_DEPTH",
]
