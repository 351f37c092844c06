#!/usr/bin/env python3
"""
Shared pytest fixtures for the test suite.

This module provides common fixtures used across test modules including:
- An in-memory fake R backend that answers the bootstrap sequence and
  replays scripted result envelopes
- Engine manager and gateway fixtures wired to the fake backend
- An envelope builder mirroring the R worker's JSON encoding
- Sample data sets
"""
from __future__ import annotations

import asyncio
import re
import shutil
import sys
from pathlib import Path

# Add src directory to Python path for test imports
_project_root = Path(__file__).parent.parent
_src_path = _project_root / 'src'
if str(_src_path) not in sys.path:
    sys.path.insert(0, str(_src_path))

import numpy as np
import pandas as pd
import pytest

from engine.backends.base import BaseEngineBackend
from engine.errors import EngineCorruption, EvaluationError
from engine.gateway import ExecutionGateway
from engine.lifecycle import EngineManager
from engine.settings import EngineSettings


# ============================================================
# ENVELOPES
# ============================================================

def atomic(value) -> dict:
    """Encode a Python value as the worker encodes an R atomic vector."""
    if isinstance(value, dict):
        return value
    values = value if isinstance(value, (list, tuple)) else [value]
    values = list(values)
    present = [v for v in values if v is not None]
    if present and all(isinstance(v, bool) for v in present):
        kind = 'logical'
    elif present and all(isinstance(v, str) for v in present):
        kind = 'character'
    elif not present and values:
        kind = 'logical'
    else:
        kind = 'double'
    return {'type': kind, 'values': values}


def make_envelope(**fields) -> dict:
    """
    Build a named-list result envelope.

    Scalars become length-1 vectors, lists become vectors, None becomes NA
    and dicts are embedded as-is (nested envelopes).
    """
    return {
        'type': 'list',
        'names': list(fields),
        'values': [atomic(v) for v in fields.values()],
    }


def _bootstrap_response(code: str, capabilities: dict):
    """Answer the lifecycle manager's bootstrap submissions."""
    if code.strip().endswith('list(ok = TRUE)'):
        return make_envelope(ok=True)
    if '.failed <-' in code:
        return make_envelope(missing=[], failed=[])
    match = re.search(r'require\(([A-Za-z][A-Za-z0-9._]*)', code)
    if code.startswith('list(loaded = ') and match:
        return make_envelope(loaded=bool(capabilities.get(match.group(1), False)))
    return None


# ============================================================
# FAKE BACKEND
# ============================================================

class FakeBackend(BaseEngineBackend):
    """In-memory engine handle driven by its ``FakeEngine``."""

    def __init__(self, engine: 'FakeEngine'):
        super().__init__()
        self.engine = engine
        self.closed = False

    @property
    def name(self) -> str:
        return 'fake'

    async def start(self) -> None:
        if self.engine.start_delay:
            await asyncio.sleep(self.engine.start_delay)
        if self.engine.start_failures > 0:
            self.engine.start_failures -= 1
            raise RuntimeError("Rscript could not be started")
        self._started = True

    async def evaluate(self, code: str) -> dict:
        if not self._started:
            raise EngineCorruption("R engine not initialized")
        self.engine.all_codes.append(code)

        response = _bootstrap_response(code, self.engine.capabilities)
        if response is not None:
            return response

        self.engine.submitted.append(code)
        if not self.engine.responses:
            raise EvaluationError("no scripted response")
        item = self.engine.responses.pop(0)
        if callable(item):
            item = item(code)
            if asyncio.iscoroutine(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._started = False


class FakeEngine:
    """
    Backend factory producing ``FakeBackend`` handles that share one script.

    Parameters
    ----------
    responses : list
        Replayed in order for non-bootstrap submissions. Items are envelopes,
        exceptions (raised), or callables ``(code) -> item`` (may be async).
    start_failures : int
        Number of upcoming ``start()`` calls that fail
    start_delay : float
        Seconds each ``start()`` takes
    capabilities : dict
        Optional libraries reported as loaded
    """

    def __init__(self, responses=(), start_failures=0, start_delay=0.0, capabilities=None):
        self.responses = list(responses)
        self.start_failures = start_failures
        self.start_delay = start_delay
        self.capabilities = {'lavaan': True} if capabilities is None else dict(capabilities)
        self.backends: list[FakeBackend] = []
        self.submitted: list[str] = []
        self.all_codes: list[str] = []

    def __call__(self) -> FakeBackend:
        backend = FakeBackend(self)
        self.backends.append(backend)
        return backend

    def script(self, *items) -> 'FakeEngine':
        self.responses.extend(items)
        return self


async def hang(code: str):
    """Scripted response that never returns."""
    await asyncio.sleep(3600)


def fast_settings(**overrides) -> EngineSettings:
    """Settings with zero delays for unit tests."""
    values = dict(
        init_backoff_base_seconds=0,
        init_poll_interval_seconds=0.01,
        init_poll_max_checks=50,
        execution_retry_delay_seconds=0,
    )
    values.update(overrides)
    return EngineSettings(**values)


# ============================================================
# ENGINE FIXTURES
# ============================================================

@pytest.fixture
def fake_engine() -> FakeEngine:
    """Backend factory with an empty script."""
    return FakeEngine()


@pytest.fixture
def sleeps() -> list:
    """Delays requested by the manager's backoff."""
    return []


@pytest.fixture
def manager(fake_engine, sleeps) -> EngineManager:
    """Engine manager over the fake backend, recording backoff delays."""
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return EngineManager(fast_settings(), backend_factory=fake_engine, sleep=record_sleep)


@pytest.fixture
def gateway(manager) -> ExecutionGateway:
    """Gateway with no delay between retries."""
    return ExecutionGateway(manager, retry_delay=0)


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)


# ============================================================
# DATA FIXTURES
# ============================================================

@pytest.fixture
def likert_df() -> pd.DataFrame:
    """50 respondents x 4 Likert(1-5) items."""
    rng = np.random.default_rng(42)
    return pd.DataFrame(
        rng.integers(1, 6, size=(50, 4)),
        columns=['q1', 'q2', 'q3', 'q4'],
    )


@pytest.fixture
def regression_df() -> pd.DataFrame:
    """Outcome with two predictors and noise."""
    rng = np.random.default_rng(7)
    x1 = rng.normal(size=40)
    x2 = rng.normal(size=40)
    return pd.DataFrame({
        'y': 1.5 + 2.0 * x1 - 0.5 * x2 + rng.normal(scale=0.3, size=40),
        'x1': x1,
        'x2': x2,
    })


@pytest.fixture
def temp_dir(tmp_path):
    """Temporary directory that is cleaned up after tests."""
    yield tmp_path
    shutil.rmtree(tmp_path, ignore_errors=True)


# ============================================================
# R AVAILABILITY
# ============================================================

requires_r = pytest.mark.skipif(
    shutil.which('Rscript') is None, reason="Rscript is not installed"
)
