#!/usr/bin/env python3
"""
In-memory caching of analysis results.

Results are keyed by analysis name plus an MD5 hash of the inputs and
options, expire after a TTL, and are evicted oldest-first beyond a maximum
number of entries.

Usage
-----
    from utils.cache import ResultCache

    cache = ResultCache()

    result = await cache.get_or_compute(
        'ttest_independent',
        compute_fn=lambda: run_ttest_independent(gateway, g1, g2),
        depends_on={'group1': g1, 'group2': g2},
    )

    # Check cache statistics
    print(cache.stats())
"""
from __future__ import annotations

import copy
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import numpy as np
import pandas as pd

from config import CACHE_ENABLED, CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


# =============================================================================
# HASHING UTILITIES
# =============================================================================

def hash_dataframe(df: pd.DataFrame) -> str:
    """
    Compute a deterministic hash of a pandas DataFrame.

    Uses shape, column names, dtypes and all values.

    Returns
    -------
    str
        MD5 hash hex digest
    """
    hasher = hashlib.md5()
    hasher.update(f"shape:{df.shape}".encode())
    for col in df.columns:
        hasher.update(f"col:{col}:{df[col].dtype}".encode())
    if len(df) > 0:
        try:
            hash_values = pd.util.hash_pandas_object(df, index=False)
            hasher.update(hash_values.values.tobytes())
        except (TypeError, ValueError):
            # Fallback for unhashable types
            hasher.update(df.to_json().encode())
    return hasher.hexdigest()


def hash_array(values) -> str:
    """MD5 of an array-like's shape and values."""
    array = np.asarray(values)
    hasher = hashlib.md5()
    hasher.update(f"shape:{array.shape}:{array.dtype}".encode())
    if array.dtype == object:
        hasher.update(json.dumps(array.tolist(), default=str).encode())
    else:
        hasher.update(np.ascontiguousarray(array).tobytes())
    return hasher.hexdigest()


def hash_config(config: dict) -> str:
    """
    Compute hash of a configuration dictionary.

    Parameters
    ----------
    config : dict
        Configuration dictionary (must be JSON-serializable)

    Returns
    -------
    str
        MD5 hash hex digest
    """
    # Sort keys for deterministic ordering
    config_str = json.dumps(config, sort_keys=True, default=str)
    return hashlib.md5(config_str.encode()).hexdigest()


def hash_inputs(depends_on: dict) -> str:
    """
    Compute the combined hash of analysis inputs.

    Parameters
    ----------
    depends_on : dict
        Dictionary mapping names to values. Values can be:
        - DataFrames / Series (hashed by content)
        - numpy arrays, lists and tuples (hashed by shape and values)
        - dicts (hashed as JSON)
        - Other (converted to string and hashed)

    Returns
    -------
    str
        Combined MD5 hash hex digest
    """
    hasher = hashlib.md5()

    for name in sorted(depends_on.keys()):
        value = depends_on[name]

        if isinstance(value, pd.DataFrame):
            dep_hash = hash_dataframe(value)
        elif isinstance(value, pd.Series):
            dep_hash = hash_array(value.to_numpy())
        elif isinstance(value, np.ndarray):
            dep_hash = hash_array(value)
        elif isinstance(value, (list, tuple)):
            try:
                dep_hash = hash_array(np.asarray(value, dtype=float))
            except (TypeError, ValueError):
                dep_hash = hashlib.md5(json.dumps(value, default=str).encode()).hexdigest()
        elif isinstance(value, dict):
            dep_hash = hash_config(value)
        else:
            dep_hash = hashlib.md5(str(value).encode()).hexdigest()

        hasher.update(f"{name}:{dep_hash}".encode())

    return hasher.hexdigest()


# =============================================================================
# RESULT CACHE
# =============================================================================

@dataclass
class CacheEntry:
    key: str
    analysis: str
    value: Any
    created: float


class ResultCache:
    """
    TTL + size bounded cache for analysis results.

    Parameters
    ----------
    ttl_seconds : float, optional
        Entry lifetime (default: ``config.CACHE_TTL_SECONDS``)
    max_entries : int, optional
        Capacity; oldest entries are evicted first
    enabled : bool, optional
        Whether caching is enabled (default: ``config.CACHE_ENABLED``)
    clock : callable, optional
        Time source in seconds

    Examples
    --------
    >>> cache = ResultCache(ttl_seconds=60)
    >>> cache.set('descriptive', {'data': [[1, 2], [3, 4]]}, result)
    >>> found, value = cache.get('descriptive', {'data': [[1, 2], [3, 4]]})
    >>> cache.stats()['hits']
    1
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        enabled: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self.enabled = CACHE_ENABLED if enabled is None else enabled
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

        # Statistics
        self._hits = 0
        self._misses = 0

    @staticmethod
    def make_key(analysis: str, depends_on: Optional[dict] = None) -> str:
        return f"{analysis}_{hash_inputs(depends_on or {})}"

    def _cleanup(self) -> None:
        """Drop expired entries, then the oldest beyond capacity."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.created > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def get(self, analysis: str, depends_on: Optional[dict] = None) -> tuple[bool, Any]:
        """
        Get a cached result if it exists and has not expired.

        Returns
        -------
        tuple[bool, Any]
            (found, value) - found is True on a cache hit
        """
        if not self.enabled:
            return False, None

        self._cleanup()
        entry = self._entries.get(self.make_key(analysis, depends_on))
        if entry is None:
            return False, None

        self._hits += 1
        logger.debug(f"[cache hit] {analysis}")
        return True, copy.deepcopy(entry.value)

    def set(self, analysis: str, depends_on: Optional[dict], value: Any) -> Optional[str]:
        """Store a result; returns its key, or None when caching is disabled."""
        if not self.enabled:
            return None

        key = self.make_key(analysis, depends_on)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            key=key,
            analysis=analysis,
            value=copy.deepcopy(value),
            created=self._clock(),
        )
        self._cleanup()
        return key

    async def get_or_compute(
        self,
        analysis: str,
        compute_fn: Callable[[], Awaitable[Any]],
        depends_on: Optional[dict] = None,
    ) -> Any:
        """
        Get a cached result or await ``compute_fn`` and cache it.

        Errors from ``compute_fn`` propagate and nothing is cached.
        """
        found, value = self.get(analysis, depends_on)
        if found:
            return value

        self._misses += 1
        logger.debug(f"[cache miss] {analysis} - computing...")
        value = await compute_fn()
        self.set(analysis, depends_on, value)
        return value

    def invalidate(self, analysis: Optional[str] = None) -> int:
        """
        Remove entries for one analysis, or all entries.

        Returns
        -------
        int
            Number of entries removed
        """
        if analysis is None:
            count = len(self._entries)
            self._entries.clear()
            return count

        keys = [k for k, e in self._entries.items() if e.analysis == analysis]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def __len__(self) -> int:
        self._cleanup()
        return len(self._entries)

    def stats(self) -> dict:
        """
        Get cache statistics.

        Returns
        -------
        dict
            Statistics including hits, misses, hit rate, size and analyses
        """
        self._cleanup()
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0
        return {
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': round(hit_rate, 1),
            'size': len(self._entries),
            'analyses': sorted({e.analysis for e in self._entries.values()}),
        }
