"""GenerationCacheEntry model - persistent store for generated artifacts.

One row per (cache_key, input_hash). The GenerationCache service manages
this table through GenerationCacheRepository.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from gencache.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class GenerationCacheEntry(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Cached output of one upstream generation.

    Attributes:
        cache_key: Logical identity of the kind of artifact (e.g. "summary-S1")
        input_hash: SHA-256 fingerprint of the semantic input
        cache_type: Classification for reporting and scoped invalidation
        output: Cached payload (JSON-encoded or raw text, opaque here)
        input_json: Copy of the semantic input, for diagnostics only
        hit_count: Number of cache hits (for analytics)
        last_used_at: When the entry was last stored or served
        expires_at: When this entry expires (NULL = never)
    """

    __tablename__ = "generation_cache"

    cache_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    cache_type: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )
    output: Mapped[str] = mapped_column(Text, nullable=False)
    input_json: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "cache_key", "input_hash", name="uq_generation_cache_key_hash"
        ),
        Index("ix_generation_cache_type_expires_at", "cache_type", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<GenerationCacheEntry(key='{self.cache_key}', "
            f"hash='{self.input_hash[:12]}', type='{self.cache_type}', "
            f"expires_at={self.expires_at}, hits={self.hit_count})>"
        )
