"""Models package for gencache.

This module exports the Base class and all model classes.
"""

from gencache.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from gencache.models.generation_cache import GenerationCacheEntry

__all__ = [
    # Base and Mixins
    "Base",
    "UUIDPrimaryKeyMixin",
    "TimestampMixin",
    # Cache
    "GenerationCacheEntry",
]
