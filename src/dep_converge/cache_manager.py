"""
Per-build manifest fetch cache.

Every (coordinate, version) pair is fetched at most once per graph build.
The first request starts a task; concurrent and later requests await the same
task and receive the same manifest or the same error.
"""

import asyncio
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Dict

from .manifest import Coordinate, Manifest

ManifestLoader = Callable[[Coordinate, str], Awaitable[Manifest]]


@dataclass(frozen=True)
class FetchKey:
    """Cache key for a manifest fetch."""

    coordinate: Coordinate
    version: str

    def __str__(self) -> str:
        return self.coordinate.label(self.version)


class CacheStats:
    """Fetch cache statistics."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.failures = 0
        self.total_requests = 0
        self._lock = Lock()

    def record_hit(self) -> None:
        """Record a request served by an existing fetch."""
        with self._lock:
            self.hits += 1
            self.total_requests += 1

    def record_miss(self) -> None:
        """Record a request that started a new fetch."""
        with self._lock:
            self.misses += 1
            self.total_requests += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            hit_rate_percent = 0.0
            if self.total_requests > 0:
                hit_rate_percent = (self.hits / self.total_requests) * 100.0

            return {
                "hits": self.hits,
                "misses": self.misses,
                "failures": self.failures,
                "total_requests": self.total_requests,
                "hit_rate_percent": hit_rate_percent,
            }


class ManifestFetchCache:
    """
    Memoizes one fetch task per (coordinate, version).

    Must be used from a single event loop. Waiters are shielded from each
    other: cancelling one waiter does not cancel the shared fetch.
    """

    def __init__(self, loader: ManifestLoader):
        self._loader = loader
        self._tasks: Dict[FetchKey, "asyncio.Future[Manifest]"] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: FetchKey) -> bool:
        return key in self._tasks

    async def get(self, coordinate: Coordinate, version: str) -> Manifest:
        """Return the manifest, starting the fetch only if nobody has yet."""
        key = FetchKey(coordinate, version)
        task = self._tasks.get(key)
        if task is None:
            self.stats.record_miss()
            task = asyncio.ensure_future(self._loader(coordinate, version))
            task.add_done_callback(self._on_done)
            self._tasks[key] = task
        else:
            self.stats.record_hit()
        return await asyncio.shield(task)

    def _on_done(self, task: "asyncio.Future[Manifest]") -> None:
        if not task.cancelled() and task.exception() is not None:
            self.stats.record_failure()

    def fetched(self) -> Dict[FetchKey, Manifest]:
        """Manifests whose fetch completed successfully."""
        return {
            key: task.result()
            for key, task in self._tasks.items()
            if task.done() and not task.cancelled() and task.exception() is None
        }

    def clear(self) -> int:
        """Cancel pending fetches and forget every entry; returns the entry count."""
        count = len(self._tasks)
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
        return count
