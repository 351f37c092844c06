#!/usr/bin/env python3
"""
Tests for the caching module.

Tests cover:
- Hash functions (dataframe, array, config, inputs)
- ResultCache operations (get, set, get_or_compute, invalidate)
- Expiry and capacity eviction
- Cache statistics
"""
import asyncio

import numpy as np
import pandas as pd
import pytest

from utils.cache import (
    ResultCache,
    hash_array,
    hash_config,
    hash_dataframe,
    hash_inputs,
)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# ============================================================
# HASH FUNCTION TESTS
# ============================================================

class TestHashDataframe:
    """Tests for hash_dataframe function."""

    def test_same_dataframe_same_hash(self):
        """Same DataFrame should produce same hash."""
        df = pd.DataFrame({'a': [1, 2, 3], 'b': [4, 5, 6]})
        assert hash_dataframe(df) == hash_dataframe(df.copy())

    def test_different_dataframe_different_hash(self):
        """Different DataFrames should produce different hashes."""
        df1 = pd.DataFrame({'a': [1, 2, 3]})
        df2 = pd.DataFrame({'a': [1, 2, 4]})
        assert hash_dataframe(df1) != hash_dataframe(df2)

    def test_column_order_matters(self):
        """Column order should affect hash."""
        df1 = pd.DataFrame({'a': [1, 2], 'b': [3, 4]})
        df2 = pd.DataFrame({'b': [3, 4], 'a': [1, 2]})
        assert hash_dataframe(df1) != hash_dataframe(df2)

    def test_empty_dataframe(self):
        """Empty DataFrame should have a valid hash."""
        h = hash_dataframe(pd.DataFrame())
        assert isinstance(h, str)
        assert len(h) == 32  # MD5 hex digest length


class TestHashArray:
    """Tests for hash_array function."""

    def test_shape_matters(self):
        assert hash_array(np.arange(4).reshape(2, 2)) != hash_array(np.arange(4))

    def test_object_arrays(self):
        assert hash_array(np.array(['a', None], dtype=object)) == \
            hash_array(np.array(['a', None], dtype=object))


class TestHashConfig:
    """Tests for hash_config function."""

    def test_key_order_irrelevant(self):
        """Key order should not affect hash."""
        assert hash_config({'a': 1, 'b': 2}) == hash_config({'b': 2, 'a': 1})

    def test_different_config_different_hash(self):
        assert hash_config({'method': 'pearson'}) != hash_config({'method': 'spearman'})


class TestHashInputs:
    """Tests for hash_inputs function."""

    def test_lists_and_arrays_agree(self):
        assert hash_inputs({'x': [1.0, 2.0]}) == hash_inputs({'x': np.array([1.0, 2.0])})

    def test_nested_groups(self):
        groups = [[1, 2, 3], [4, 5]]
        assert hash_inputs({'groups': groups}) == hash_inputs({'groups': [[1, 2, 3], [4, 5]]})
        assert hash_inputs({'groups': groups}) != hash_inputs({'groups': [[1, 2, 3], [4, 6]]})

    def test_labels(self):
        assert hash_inputs({'labels': ['a', 'b']}) != hash_inputs({'labels': ['b', 'a']})

    def test_names_matter(self):
        assert hash_inputs({'group1': [1, 2]}) != hash_inputs({'group2': [1, 2]})


# ============================================================
# RESULT CACHE TESTS
# ============================================================

class TestResultCache:
    """Tests for ResultCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, clock):
        return ResultCache(ttl_seconds=60, max_entries=3, enabled=True, clock=clock)

    def test_set_and_get(self, cache):
        cache.set('descriptive', {'data': [[1, 2], [3, 4]]}, {'mean': [2, 3]})
        found, value = cache.get('descriptive', {'data': [[1, 2], [3, 4]]})
        assert found
        assert value == {'mean': [2, 3]}

    def test_get_nonexistent(self, cache):
        assert cache.get('descriptive', {'data': [1]}) == (False, None)

    def test_values_are_copied(self, cache):
        original = {'values': [1, 2]}
        cache.set('a', {}, original)
        original['values'].append(3)
        _, value = cache.get('a', {})
        value['values'].append(4)
        assert cache.get('a', {})[1] == {'values': [1, 2]}

    def test_get_or_compute(self, cache):
        calls = []

        async def compute():
            calls.append(1)
            return 'result'

        first = asyncio.run(cache.get_or_compute('a', compute, {'x': 1}))
        second = asyncio.run(cache.get_or_compute('a', compute, {'x': 1}))

        assert first == second == 'result'
        assert len(calls) == 1
        assert cache.stats()['hits'] == 1
        assert cache.stats()['misses'] == 1

    def test_errors_are_not_cached(self, cache):
        async def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(cache.get_or_compute('a', fail, {}))
        assert len(cache) == 0

    def test_expiry(self, cache, clock):
        cache.set('a', {}, 1)
        clock.now = 61
        assert cache.get('a', {}) == (False, None)

    def test_capacity_evicts_oldest(self, cache):
        for i in range(4):
            cache.set(f"a{i}", {}, i)
        assert len(cache) == 3
        assert cache.get('a0', {}) == (False, None)
        assert cache.get('a3', {}) == (True, 3)

    def test_invalidate_one_analysis(self, cache):
        cache.set('a', {'x': 1}, 1)
        cache.set('a', {'x': 2}, 2)
        cache.set('b', {}, 3)
        assert cache.invalidate('a') == 2
        assert cache.stats()['analyses'] == ['b']

    def test_invalidate_all(self, cache):
        cache.set('a', {}, 1)
        cache.set('b', {}, 2)
        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_disabled_cache(self, clock):
        cache = ResultCache(enabled=False, clock=clock)
        assert cache.set('a', {}, 1) is None
        assert cache.get('a', {}) == (False, None)

    def test_stats_hit_rate(self, cache):
        async def compute():
            return 1

        for _ in range(4):
            asyncio.run(cache.get_or_compute('a', compute, {}))
        assert cache.stats()['hit_rate'] == 75.0
