"""
Tests for the resource manager in TaskPilot.
"""

import time
import pytest
from unittest.mock import Mock

from taskpilot.config.config import ResourcesConfig
from taskpilot.core.models import ResourceType
from taskpilot.core.resource_manager import ResourceManager, estimate_size


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestCache:
    """Tests for the bounded LRU cache."""

    def test_overflow_keeps_most_recent_entries(self):
        """Test that one entry over the cap evicts only the oldest with a full target."""
        manager = ResourceManager(max_cache_entries=1000, eviction_target=1.0)

        for i in range(1001):
            manager.cache_set(f"k{i}", i)

        keys = manager.cache_keys()
        assert len(keys) == 1000
        assert keys == [f"k{i}" for i in range(1, 1001)]

    def test_default_eviction_target(self):
        """Test that eviction shrinks the cache to 80% of the cap."""
        manager = ResourceManager(max_cache_entries=1000)

        for i in range(1001):
            manager.cache_set(f"k{i}", i)

        keys = manager.cache_keys()
        assert len(keys) == 800
        assert keys[0] == 'k201'
        assert manager.get_statistics()['cache']['evictions'] == 201

    def test_access_refreshes_recency(self):
        """Test that reading an entry protects it from eviction."""
        manager = ResourceManager(max_cache_entries=3, eviction_target=1.0)
        for key in ('a', 'b', 'c'):
            manager.cache_set(key, key)

        assert manager.cache_get('a') == 'a'
        manager.cache_set('d', 'd')

        assert manager.cache_keys() == ['c', 'a', 'd']

    def test_ttl_expiry(self, clock):
        """Test that expired entries are dropped on read."""
        manager = ResourceManager(cache_ttl=60, clock=clock)
        manager.cache_set('short', 'value', ttl=10)
        manager.cache_set('long', 'value')

        clock.advance(11)

        assert manager.cache_get('short') is None
        assert manager.cache_get('long') == 'value'
        assert manager.get_statistics()['cache']['expirations'] == 1

    def test_sweep_expired(self, clock):
        """Test the periodic sweep of expired entries."""
        manager = ResourceManager(cache_ttl=5, clock=clock)
        manager.cache_set('a', 1)
        manager.cache_set('b', 2, ttl=100)

        clock.advance(6)

        assert manager.sweep_expired() == 1
        assert manager.cache_keys() == ['b']

    def test_oversized_value_not_cached(self):
        """Test that a value larger than the size cap is refused."""
        manager = ResourceManager(max_cache_size_mb=0.001)

        assert manager.cache_set('big', 'x' * 1000) is False
        assert manager.cache_get('big') is None

    def test_size_cap_evicts(self):
        """Test eviction driven by estimated size."""
        manager = ResourceManager(max_cache_size_mb=0.01, eviction_target=0.5)
        for i in range(10):
            manager.cache_set(f"k{i}", 'x' * 1000)

        stats = manager.get_statistics()['cache']
        assert stats['size_bytes'] <= manager.max_cache_size
        assert 'k9' in manager.cache_keys()

    def test_replace_value(self):
        """Test that overwriting a key keeps one entry."""
        manager = ResourceManager()
        manager.cache_set('key', 'one')
        manager.cache_set('key', 'two')

        assert manager.cache_get('key') == 'two'
        assert manager.get_statistics()['cache']['entries'] == 1

    def test_estimate_size(self):
        """Test rough size estimates."""
        assert estimate_size(None) == 0
        assert estimate_size('abcd') == 8
        assert estimate_size(b'abcd') == 4
        assert estimate_size({'a': [1, 2]}) > estimate_size([1, 2])


class TestLeakDetection:
    """Tests for memory growth detection."""

    def _record(self, manager, values, interval=30.0):
        for index, value in enumerate(values):
            manager.record_memory_sample(value, timestamp=index * interval)

    def test_steady_growth_is_a_leak(self):
        """Test that 2 MB per 30 seconds is a medium leak."""
        manager = ResourceManager()
        self._record(manager, [100, 102, 104, 106, 108])

        report = manager.detect_leaks()

        assert report.detected
        assert report.leak_rate == pytest.approx(4.0)
        assert report.severity == 'medium'
        assert report.sample_count == 5

    def test_fast_growth_is_high_severity(self):
        """Test the high severity band."""
        manager = ResourceManager()
        self._record(manager, [100, 110, 120, 130, 140])

        report = manager.detect_leaks()

        assert report.detected
        assert report.severity == 'high'

    def test_oscillation_is_not_a_leak(self):
        """Test that small fluctuations are ignored."""
        manager = ResourceManager()
        self._record(manager, [100.0, 100.1, 100.0, 100.1, 100.0, 100.1, 100.0])

        report = manager.detect_leaks()

        assert not report.detected
        assert report.severity == 'low'

    def test_single_jump_is_not_a_leak(self):
        """Test that growth must be sustained across samples."""
        manager = ResourceManager()
        self._record(manager, [100, 100, 100, 100, 200])

        assert not manager.detect_leaks().detected

    def test_too_few_samples(self):
        """Test that four samples are not enough to judge."""
        manager = ResourceManager()
        self._record(manager, [100, 200, 300, 400])

        report = manager.detect_leaks()

        assert not report.detected
        assert report.sample_count == 4

    def test_sample_window_is_bounded(self):
        """Test that only the newest samples are kept."""
        manager = ResourceManager(max_memory_samples=5)
        self._record(manager, list(range(10)))

        samples = manager.get_memory_samples()
        assert len(samples) == 5
        assert samples[0][1] == 5

    def test_sampler_is_used_when_no_value_given(self):
        """Test sampling through the memory sampler."""
        manager = ResourceManager(memory_sampler=lambda: 42.0)
        manager.record_memory_sample()

        assert manager.get_memory_samples()[0][1] == 42.0

    def test_leak_report_lists_stale_resources(self, clock):
        """Test that old idle resources are reported as suspects."""
        manager = ResourceManager(clock=clock)
        stale = manager.register_resource(ResourceType.LISTENER, 'old-listener')
        clock.advance(700)
        manager.register_resource(ResourceType.LISTENER, 'fresh-listener')
        self._record(manager, [100, 102, 104, 106, 108])

        report = manager.detect_leaks()

        assert [entry.id for entry in report.suspected_resources] == [stale]
        assert report.to_dict()['suspected_resources'] == [stale]


class TestResourceRegistry:
    """Tests for resource registration and cleanup."""

    def test_register_and_release(self):
        """Test that release runs the dispose callback once."""
        manager = ResourceManager()
        dispose = Mock()
        resource_id = manager.register_resource(ResourceType.TIMER, 'timer', dispose=dispose)

        assert manager.release_resource(resource_id) is True
        assert manager.release_resource(resource_id) is False
        dispose.assert_called_once()

    def test_failing_dispose_is_contained(self):
        """Test that a dispose error does not escape release."""
        manager = ResourceManager()
        resource_id = manager.register_resource(ResourceType.WATCHER, 'watcher',
                                                dispose=Mock(side_effect=RuntimeError('boom')))

        assert manager.release_resource(resource_id) is True
        assert manager.get_resources() == []

    def test_access_updates_timestamp(self, clock):
        """Test that accessing a resource keeps it from looking idle."""
        manager = ResourceManager(clock=clock)
        resource_id = manager.register_resource(ResourceType.LISTENER, 'listener')
        clock.advance(700)

        assert manager.access_resource(resource_id)
        assert manager.find_suspected_resources() == []
        assert not manager.access_resource('missing')

    def test_cleanup_session(self):
        """Test removing everything tied to one session."""
        manager = ResourceManager()
        dispose = Mock()
        manager.register_resource(ResourceType.SESSION, 'session', metadata={'session_id': 's1'},
                                  dispose=dispose)
        manager.register_resource(ResourceType.SESSION, 'other', metadata={'session_id': 's2'})
        manager.cache_set('context:s1:design.md', 'text')
        manager.cache_set('parse:workspace', 'tasks')

        removed = manager.cleanup_session('s1')

        assert removed == 2
        dispose.assert_called_once()
        assert [entry.name for entry in manager.get_resources()] == ['other']
        assert manager.cache_keys() == ['parse:workspace']

    def test_get_resources_by_type(self):
        """Test filtering the registry by type."""
        manager = ResourceManager()
        manager.register_resource(ResourceType.TIMER, 'timer')
        manager.register_resource(ResourceType.WATCHER, 'watcher')

        assert [entry.name for entry in manager.get_resources(ResourceType.TIMER)] == ['timer']

    def test_statistics(self):
        """Test the statistics snapshot."""
        manager = ResourceManager()
        manager.register_resource(ResourceType.TIMER, 'timer')
        manager.cache_set('a', 1)
        manager.cache_get('a')
        manager.cache_get('missing')

        stats = manager.get_statistics()

        assert stats['total_resources'] == 1
        assert stats['resources']['timer'] == 1
        assert stats['resources']['cache-entry'] == 1
        assert stats['cache']['hits'] == 1
        assert stats['cache']['misses'] == 1

    def test_aggressive_cleanup(self, clock):
        """Test that aggressive cleanup empties the cache and drops stale resources."""
        manager = ResourceManager(clock=clock)
        manager.register_resource(ResourceType.LISTENER, 'stale')
        manager.cache_set('a', 1)
        clock.advance(700)

        assert manager.perform_aggressive_cleanup() == 2
        assert manager.cache_keys() == []
        assert manager.get_resources() == []

    def test_from_config(self):
        """Test building from the resources configuration section."""
        config = ResourcesConfig(max_cache_entries=10, eviction_target=0.5, cache_ttl=7)

        manager = ResourceManager.from_config(config)

        assert manager.max_cache_entries == 10
        assert manager.eviction_target == 0.5
        assert manager.cache_ttl == 7

    def test_maintenance_thread(self):
        """Test starting and stopping background maintenance."""
        manager = ResourceManager(memory_sampler=lambda: 10.0, memory_sample_interval=0.01)

        manager.start()
        deadline = time.time() + 2
        while not manager.get_memory_samples() and time.time() < deadline:
            time.sleep(0.01)
        manager.stop()

        assert manager._thread is None
        assert len(manager.get_memory_samples()) >= 1
