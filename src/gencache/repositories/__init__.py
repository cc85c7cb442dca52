"""Repository pattern package for gencache.

This module exports the base repository class and concrete repositories.
"""

from gencache.repositories.base import BaseRepository
from gencache.repositories.generation_cache import (
    CacheAggregate,
    GenerationCacheRepository,
)

__all__ = [
    # Base
    "BaseRepository",
    # Cache
    "CacheAggregate",
    "GenerationCacheRepository",
]
