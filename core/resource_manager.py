"""
Resource management module for TaskPilot.

The resource manager is shared by every engine of a process. It keeps a
registry of ephemeral resources (watchers, timers, sessions), a bounded
LRU cache with per-entry TTL, and a history of memory samples used to detect
steady memory growth.
"""

import gc
import threading
import time
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
import logging

import psutil

from .models import ResourceEntry, ResourceType

MB = 1024 * 1024


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping."""
    key: str
    value: Any
    size: int
    created_at: float
    last_accessed_at: float
    ttl: float


@dataclass
class LeakReport:
    """Result of a leak detection pass."""
    detected: bool
    leak_rate: float = 0.0  # MB per minute
    severity: str = "low"
    suspected_resources: List[ResourceEntry] = field(default_factory=list)
    sample_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'detected': self.detected,
            'leak_rate': round(self.leak_rate, 3),
            'severity': self.severity,
            'suspected_resources': [entry.id for entry in self.suspected_resources],
            'sample_count': self.sample_count,
        }


def estimate_size(value: Any, _seen: Optional[set] = None) -> int:
    """
    Roughly estimate the memory footprint of a value in bytes.

    Args:
        value: Value to measure

    Returns:
        Estimated size in bytes
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return 4
    if isinstance(value, (int, float)):
        return 8
    if isinstance(value, str):
        return len(value) * 2
    if isinstance(value, bytes):
        return len(value)

    seen = _seen if _seen is not None else set()
    if id(value) in seen:
        return 0
    seen.add(id(value))

    if isinstance(value, dict):
        return sum(estimate_size(key, seen) + estimate_size(item, seen) for key, item in value.items())
    if isinstance(value, (list, tuple, set, frozenset)):
        return sum(estimate_size(item, seen) for item in value)
    if hasattr(value, '__dict__'):
        return estimate_size(vars(value), seen)
    return 8


def process_memory_mb() -> float:
    """Resident memory of the current process in MB."""
    return psutil.Process().memory_info().rss / MB


class ResourceManager:
    """
    Tracks ephemeral resources under a bounded budget.
    """

    def __init__(self, max_cache_entries: int = 1000, max_cache_size_mb: float = 50.0,
                 cache_ttl: float = 300.0, eviction_target: float = 0.8,
                 cleanup_interval: float = 60.0, memory_sample_interval: float = 30.0,
                 max_memory_samples: int = 20, leak_threshold: float = 1.0,
                 clock: Callable[[], float] = time.time,
                 memory_sampler: Callable[[], float] = process_memory_mb):
        """
        Initialize the resource manager.

        Args:
            max_cache_entries: Hard cap on cache entries
            max_cache_size_mb: Hard cap on estimated cache size
            cache_ttl: Default time-to-live of a cache entry in seconds
            eviction_target: Fraction of each cap that eviction shrinks the cache to
            cleanup_interval: Seconds between expired-entry sweeps
            memory_sample_interval: Seconds between memory samples
            max_memory_samples: Number of memory samples kept
            leak_threshold: Growth rate in MB/minute above which growth is a leak
            clock: Time source in seconds
            memory_sampler: Returns current memory usage in MB
        """
        self.max_cache_entries = max_cache_entries
        self.max_cache_size = int(max_cache_size_mb * MB)
        self.cache_ttl = cache_ttl
        self.eviction_target = eviction_target
        self.cleanup_interval = cleanup_interval
        self.memory_sample_interval = memory_sample_interval
        self.leak_threshold = leak_threshold
        self.clock = clock
        self.memory_sampler = memory_sampler
        self.logger = logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._resources: Dict[str, ResourceEntry] = {}
        self._cache: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._cache_size = 0
        self._samples: Deque[Tuple[float, float]] = deque(maxlen=max_memory_samples)
        self._stats = {'hits': 0, 'misses': 0, 'evictions': 0, 'expirations': 0}

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, resources_config) -> 'ResourceManager':
        """
        Build a resource manager from the `resources` configuration section.

        Args:
            resources_config: ResourcesConfig instance

        Returns:
            ResourceManager instance
        """
        return cls(
            max_cache_entries=resources_config.max_cache_entries,
            max_cache_size_mb=resources_config.max_cache_size_mb,
            cache_ttl=resources_config.cache_ttl,
            eviction_target=resources_config.eviction_target,
            cleanup_interval=resources_config.cleanup_interval,
            memory_sample_interval=resources_config.memory_sample_interval,
            max_memory_samples=resources_config.memory_samples,
            leak_threshold=resources_config.leak_threshold_mb_per_min,
        )

    # Registry

    def register_resource(self, resource_type: ResourceType, name: str,
                          metadata: Optional[Dict[str, Any]] = None,
                          dispose: Optional[Callable[[], None]] = None) -> str:
        """
        Register an ephemeral resource.

        Args:
            resource_type: Kind of resource
            name: Human-readable name
            metadata: Free-form metadata; a "session_id" key ties it to a session
            dispose: Called when the resource is released

        Returns:
            Resource id
        """
        now = self.clock()
        entry = ResourceEntry(
            id=f"{ResourceType(resource_type).value}-{uuid.uuid4().hex[:12]}",
            type=ResourceType(resource_type),
            name=name,
            created_at=now,
            last_accessed_at=now,
            metadata=dict(metadata or {}),
            dispose=dispose,
        )
        with self._lock:
            self._resources[entry.id] = entry
        self.logger.debug(f"Registered {entry.type.value} resource {name} ({entry.id})")
        return entry.id

    def access_resource(self, resource_id: str) -> bool:
        """Mark a resource as used now."""
        with self._lock:
            entry = self._resources.get(resource_id)
            if entry is None:
                return False
            entry.last_accessed_at = self.clock()
            return True

    def release_resource(self, resource_id: str) -> bool:
        """
        Release a resource and run its dispose callback.

        Args:
            resource_id: Id returned by register_resource

        Returns:
            True if the resource was registered
        """
        with self._lock:
            entry = self._resources.pop(resource_id, None)
        if entry is None:
            return False
        if entry.dispose is not None:
            try:
                entry.dispose()
            except Exception as e:
                self.logger.error(f"Error disposing resource {entry.name}: {str(e)}")
        self.logger.debug(f"Released {entry.type.value} resource {entry.name}")
        return True

    def get_resources(self, resource_type: Optional[ResourceType] = None) -> List[ResourceEntry]:
        with self._lock:
            entries = list(self._resources.values())
        if resource_type is not None:
            entries = [entry for entry in entries if entry.type == ResourceType(resource_type)]
        return entries

    # Cache

    def cache_set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Store a value, evicting least recently accessed entries over the caps.

        Args:
            key: Cache key
            value: Value to store
            ttl: Time-to-live in seconds (default: cache_ttl)

        Returns:
            False if the value alone exceeds the size cap and was not stored
        """
        size = estimate_size(value)
        if size > self.max_cache_size:
            self.logger.warning(f"Cache value for {key} too large ({size} bytes), not cached")
            return False

        now = self.clock()
        with self._lock:
            previous = self._cache.pop(key, None)
            if previous is not None:
                self._cache_size -= previous.size
            self._cache[key] = CacheEntry(key, value, size, now, now, self.cache_ttl if ttl is None else ttl)
            self._cache_size += size
            if len(self._cache) > self.max_cache_entries or self._cache_size > self.max_cache_size:
                self._evict()
        return True

    def cache_get(self, key: str) -> Any:
        """
        Fetch a cached value, dropping it if its TTL expired.

        Args:
            key: Cache key

        Returns:
            The cached value, or None
        """
        now = self.clock()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats['misses'] += 1
                return None
            if now - entry.created_at > entry.ttl:
                self._remove_entry(key)
                self._stats['expirations'] += 1
                self._stats['misses'] += 1
                return None
            entry.last_accessed_at = now
            self._cache.move_to_end(key)
            self._stats['hits'] += 1
            return entry.value

    def cache_delete(self, key: str) -> bool:
        with self._lock:
            return self._remove_entry(key)

    def cache_clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._cache_size = 0
        return count

    def cache_keys(self) -> List[str]:
        """Keys from least to most recently accessed."""
        with self._lock:
            return list(self._cache.keys())

    def _remove_entry(self, key: str) -> bool:
        entry = self._cache.pop(key, None)
        if entry is None:
            return False
        self._cache_size -= entry.size
        return True

    def _evict(self):
        target_entries = int(self.max_cache_entries * self.eviction_target)
        target_size = self.max_cache_size * self.eviction_target
        evicted = 0
        while self._cache and (len(self._cache) > target_entries or self._cache_size > target_size):
            _, entry = self._cache.popitem(last=False)
            self._cache_size -= entry.size
            evicted += 1
        self._stats['evictions'] += evicted
        self.logger.debug(f"Evicted {evicted} cache entries")

    def sweep_expired(self) -> int:
        """
        Remove every expired cache entry.

        Returns:
            Number of entries removed
        """
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._cache.items() if now - entry.created_at > entry.ttl]
            for key in expired:
                self._remove_entry(key)
            self._stats['expirations'] += len(expired)
        if expired:
            self.logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    # Memory and leaks

    def record_memory_sample(self, memory_mb: Optional[float] = None, timestamp: Optional[float] = None):
        """
        Record a memory usage sample.

        Args:
            memory_mb: Memory usage in MB (sampled when omitted)
            timestamp: Sample time in seconds (now when omitted)
        """
        if memory_mb is None:
            memory_mb = self.memory_sampler()
        with self._lock:
            self._samples.append((self.clock() if timestamp is None else timestamp, memory_mb))

    def get_memory_samples(self) -> List[Tuple[float, float]]:
        with self._lock:
            return list(self._samples)

    def detect_leaks(self) -> LeakReport:
        """
        Look for steady memory growth across the kept samples.

        A leak needs a growth rate above the threshold between the oldest and
        newest sample and growth in at least 70% of consecutive sample pairs.

        Returns:
            LeakReport
        """
        samples = self.get_memory_samples()
        if len(samples) < 5:
            return LeakReport(detected=False, sample_count=len(samples))

        first_time, first_memory = samples[0]
        last_time, last_memory = samples[-1]
        minutes = (last_time - first_time) / 60.0
        if minutes <= 0:
            return LeakReport(detected=False, sample_count=len(samples))

        leak_rate = (last_memory - first_memory) / minutes
        growing_pairs = sum(1 for previous, current in zip(samples, samples[1:]) if current[1] > previous[1])
        growth_ratio = growing_pairs / (len(samples) - 1)
        detected = leak_rate > self.leak_threshold and growth_ratio >= 0.7

        if leak_rate > 5:
            severity = "high"
        elif leak_rate > 2:
            severity = "medium"
        else:
            severity = "low"

        report = LeakReport(
            detected=detected,
            leak_rate=leak_rate,
            severity=severity,
            suspected_resources=self.find_suspected_resources() if detected else [],
            sample_count=len(samples),
        )
        if detected:
            self.logger.warning(f"Memory leak suspected: {leak_rate:.2f} MB/min ({severity})")
        return report

    def find_suspected_resources(self, max_age: float = 600.0, max_idle: float = 300.0,
                                 limit: int = 10) -> List[ResourceEntry]:
        """
        Resources older than `max_age` seconds and idle for more than `max_idle`.

        Returns:
            Up to `limit` entries, oldest first
        """
        now = self.clock()
        with self._lock:
            suspects = [entry for entry in self._resources.values()
                        if now - entry.created_at > max_age and now - entry.last_accessed_at > max_idle]
        suspects.sort(key=lambda entry: entry.created_at)
        return suspects[:limit]

    # Cleanup

    def cleanup_session(self, session_id: str) -> int:
        """
        Dispose everything tied to a session.

        Releases resources whose metadata carries the session id and cache
        entries whose key contains it, then runs a garbage collection pass.

        Args:
            session_id: Session identifier

        Returns:
            Number of resources and cache entries removed
        """
        with self._lock:
            resource_ids = [entry.id for entry in self._resources.values()
                            if entry.metadata.get('session_id') == session_id]
            cache_keys = [key for key in self._cache if session_id in key]
            for key in cache_keys:
                self._remove_entry(key)

        for resource_id in resource_ids:
            self.release_resource(resource_id)
        gc.collect()

        removed = len(resource_ids) + len(cache_keys)
        self.logger.info(f"Cleaned up session {session_id}: {removed} items")
        return removed

    def perform_aggressive_cleanup(self) -> int:
        """
        Clear the cache and release suspected resources.

        Returns:
            Number of cache entries and resources removed
        """
        cleared = self.cache_clear()
        suspects = self.find_suspected_resources(limit=len(self._resources) or 1)
        for entry in suspects:
            self.release_resource(entry.id)
        gc.collect()
        self.logger.warning(f"Aggressive cleanup removed {cleared} cache entries and {len(suspects)} resources")
        return cleared + len(suspects)

    # Statistics

    def get_statistics(self) -> Dict[str, Any]:
        """
        Snapshot of registry, cache and memory figures.

        Returns:
            Dictionary of statistics
        """
        with self._lock:
            by_type = {resource_type.value: 0 for resource_type in ResourceType}
            for entry in self._resources.values():
                by_type[entry.type.value] += 1
            by_type[ResourceType.CACHE_ENTRY.value] += len(self._cache)
            latest = self._samples[-1][1] if self._samples else None
            return {
                'resources': by_type,
                'total_resources': len(self._resources),
                'cache': {
                    'entries': len(self._cache),
                    'size_bytes': self._cache_size,
                    'max_entries': self.max_cache_entries,
                    'max_size_bytes': self.max_cache_size,
                    **self._stats,
                },
                'memory_mb': latest,
                'memory_samples': len(self._samples),
            }

    # Background maintenance

    def start(self):
        """Start the sweep and memory sampling thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._maintenance_loop, name="resource-manager", daemon=True)
        self._thread.start()
        self.logger.debug("Resource manager maintenance started")

    def stop(self):
        """Stop the maintenance thread."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=5)
        self._thread = None

    def _maintenance_loop(self):
        next_sweep = time.monotonic() + self.cleanup_interval
        next_sample = time.monotonic()
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_sample:
                try:
                    self.record_memory_sample()
                except psutil.Error as e:
                    self.logger.warning(f"Memory sampling failed: {e}")
                if self.detect_leaks().detected:
                    self.perform_aggressive_cleanup()
                next_sample = now + self.memory_sample_interval
            if now >= next_sweep:
                self.sweep_expired()
                next_sweep = now + self.cleanup_interval
            self._stop_event.wait(max(0.05, min(next_sample, next_sweep) - time.monotonic()))
