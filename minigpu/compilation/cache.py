"""
Pipeline caching for minigpu.

Keeps compiled kernel pipelines in memory so that repeated dispatches
of the same source do not recompile it.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class CacheEntry:
    """Entry in the pipeline cache."""

    entry_point: str
    source_hash: str
    pipeline: Any
    created_timestamp: float = field(default_factory=time.time)
    last_accessed: float = field(default_factory=time.time)
    hit_count: int = 0


class PipelineCache:
    """
    In-memory LRU cache for compiled pipelines.

    Entries are keyed by (source hash, entry point). The least recently
    used entry is evicted once max_entries is exceeded.

    Example:
        >>> cache = PipelineCache(max_entries=32)
        >>> pipeline = cache.get_or_create(source.source_hash, "main", compile_fn)
    """

    def __init__(self, max_entries: int = 64) -> None:
        """
        Initialize the pipeline cache.

        Args:
            max_entries: Maximum number of cached pipelines.
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")

        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, source_hash: str, entry_point: str) -> Any | None:
        """
        Look up a cached pipeline.

        Args:
            source_hash: Hash of the kernel source.
            entry_point: Kernel entry point.

        Returns:
            The pipeline, or None on a miss.
        """
        key = (source_hash, entry_point)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            self._entries.move_to_end(key)
            entry.hit_count += 1
            entry.last_accessed = time.time()
            self._hits += 1
            return entry.pipeline

    def store(self, source_hash: str, entry_point: str, pipeline: Any) -> None:
        """Store a compiled pipeline, evicting the oldest entry if needed."""
        key = (source_hash, entry_point)
        with self._lock:
            self._entries[key] = CacheEntry(
                entry_point=entry_point,
                source_hash=source_hash,
                pipeline=pipeline,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def get_or_create(
        self,
        source_hash: str,
        entry_point: str,
        factory: Callable[[], Any],
    ) -> Any:
        """
        Return the cached pipeline or build and store a new one.

        Args:
            source_hash: Hash of the kernel source.
            entry_point: Kernel entry point.
            factory: Called without arguments on a miss.

        Returns:
            The pipeline.
        """
        pipeline = self.get(source_hash, entry_point)
        if pipeline is None:
            pipeline = factory()
            self.store(source_hash, entry_point, pipeline)
        return pipeline

    def invalidate(self, source_hash: str, entry_point: str) -> bool:
        """Drop a single entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop((source_hash, entry_point), None) is not None

    def clear(self) -> None:
        """Drop all entries and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with entry count, hits, misses and hit rate.
        """
        with self._lock:
            total = self._hits + self._misses
            return {
                "num_entries": len(self._entries),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __repr__(self) -> str:
        """String representation."""
        return f"PipelineCache(entries={len(self._entries)}, max_entries={self._max_entries})"
