"""
End-to-end tests against a real R installation.

Skipped when ``Rscript`` is not on PATH. Package installation is disabled so
the tests only use libraries already present in the R library.
"""
from __future__ import annotations

import asyncio

import pytest

from analysis.comparison import run_ttest_independent
from analysis.reliability import run_cronbach_alpha
from engine import EngineManager, ExecutionGateway, load_settings
from engine.errors import DomainError, ExecutionTimeout, InitializationFailure
from conftest import requires_r

pytestmark = [requires_r, pytest.mark.integration]


@pytest.fixture(scope='module')
def session():
    """One manager, gateway and event loop shared by the module."""
    loop = asyncio.new_event_loop()
    manager = EngineManager(load_settings(
        core_packages=[], optional_packages=[],
    ))
    gateway = ExecutionGateway(manager)
    try:
        loop.run_until_complete(manager.init_engine(max_retries=1))
    except InitializationFailure as e:
        loop.close()
        pytest.skip(f"R engine could not start: {e.raw_message}")
    yield loop, manager, gateway
    loop.run_until_complete(manager.close())
    loop.close()


def call(session, coro):
    loop, _, _ = session
    return loop.run_until_complete(coro)


class TestRoundTrip:
    def test_named_list(self, session):
        _, _, gateway = session
        envelope = call(session, gateway.execute_code('list(m = mean(c(1, 2, 3)), s = "ok")'))
        assert envelope['names'] == ['m', 's']
        assert envelope['values'][0]['values'] == [2]

    def test_r_error_is_translated(self, session):
        _, _, gateway = session
        with pytest.raises(DomainError) as exc_info:
            call(session, gateway.execute_code('stop("Lapack routine dgesv: system is exactly singular matrix")'))
        assert exc_info.value.category == 'singular_matrix'

    def test_timeout_then_recovery(self, session):
        _, manager, gateway = session
        with pytest.raises(ExecutionTimeout):
            call(session, gateway.execute_code('Sys.sleep(5); list(x = 1)', max_retries=0, timeout_ms=200))

        envelope = call(session, gateway.execute_code('list(x = 1)'))
        assert envelope['values'][0]['values'] == [1]
        assert manager.get_status().is_ready


class TestAnalyses:
    def test_independent_ttest(self, session):
        _, _, gateway = session
        result = call(session, run_ttest_independent(gateway, [1, 2, 3, 4, 5], [4, 5, 6, 7, 8]))

        assert result.mean1 == pytest.approx(3.0)
        assert result.mean2 == pytest.approx(6.0)
        assert result.mean_diff == pytest.approx(-3.0)
        assert result.ci_lower < -3.0 < result.ci_upper
        assert result.method in ('Student', 'Welch')

    def test_cronbach_alpha(self, session, likert_df):
        _, _, gateway = session
        result = call(session, run_cronbach_alpha(gateway, likert_df))

        assert result.n_items == 4
        assert -1 <= result.raw_alpha <= 1
        assert len(result.item_total_stats) == 4
