"""
Tests for the status and execution API.

The app is wired to an engine service whose manager uses the in-memory fake
backend, so no R installation is needed.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from engine.errors import EvaluationError
from engine.lifecycle import EngineManager
from gui.app import create_app, error_status
from gui.services.engine_service import (
    EngineService,
    get_engine_service,
    json_safe,
    set_engine_service,
)
from conftest import FakeEngine, fast_settings, make_envelope

GROUPS = {'group1': [1, 2, 3, 4, 5], 'group2': [4, 5, 6, 7, 8]}


def ttest_envelope():
    return make_envelope(
        t=-3.0, df=8.0, p_value=0.017, mean1=3.0, mean2=6.0, mean_diff=-3.0,
        ci_lower=-5.3, ci_upper=-0.7, effect_size=-1.9, var_test_p=None,
        var_equal=True, method='Student', normality_p1=0.97, normality_p2=0.97,
    )


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def client(engine):
    service = EngineService(manager=EngineManager(fast_settings(), backend_factory=engine))
    app = create_app(service)
    with TestClient(app) as test_client:
        yield test_client
    set_engine_service(None)


class TestEngineRoutes:
    """Tests for lifecycle endpoints."""

    def test_initial_status(self, client):
        response = client.get('/api/engine/status')
        assert response.status_code == 200
        body = response.json()
        assert body['is_ready'] is False
        assert body['is_loading'] is False
        assert body['state'] == 'uninitialized'
        assert body['can_retry'] is True

    def test_init_then_ready(self, client):
        response = client.post('/api/engine/init')
        assert response.status_code == 202

        with client.websocket_connect('/ws/engine') as ws:
            messages = []
            while True:
                message = ws.receive_json()
                messages.append(message)
                if message['type'] == 'complete':
                    break

        assert messages[-1] == {'type': 'complete', 'ready': True}
        assert messages[-2]['status']['is_ready'] is True
        assert client.get('/api/engine/status').json()['is_ready'] is True

    def test_failed_init_and_reset(self, engine, client):
        engine.start_failures = 10

        client.post('/api/engine/init')
        with client.websocket_connect('/ws/engine') as ws:
            message = ws.receive_json()
            while message['type'] != 'complete':
                message = ws.receive_json()
        assert message['ready'] is False

        status = client.get('/api/engine/status').json()
        assert status['state'] == 'failed'
        assert status['can_retry'] is False
        assert 'Rscript could not be started' in status['last_error']

        status = client.post('/api/engine/reset').json()
        assert status['state'] == 'uninitialized'
        assert status['last_error'] is None


class TestAnalysisRoutes:
    """Tests for analysis execution endpoints."""

    def test_list(self, client):
        names = {item['name'] for item in client.get('/api/analyses').json()}
        assert {'ttest_independent', 'cronbach_alpha', 'sem'} <= names

    def test_run(self, engine, client):
        engine.script(ttest_envelope())

        response = client.post('/api/analyses/ttest_independent', json={'params': GROUPS})

        assert response.status_code == 200
        body = response.json()
        assert body['analysis'] == 'ttest_independent'
        assert body['result']['mean_diff'] == -3.0
        assert body['result']['var_test_p'] is None
        assert 'generated_code' in body['result']

    def test_cached_run(self, engine, client):
        engine.script(ttest_envelope())

        client.post('/api/analyses/ttest_independent', json={'params': GROUPS})
        client.post('/api/analyses/ttest_independent', json={'params': GROUPS})

        assert len(engine.submitted) == 1
        stats = client.get('/api/cache').json()
        assert stats['hits'] == 1
        assert stats['analyses'] == ['ttest_independent']

        assert client.post('/api/cache/clear').json() == {'cleared': 1}

    def test_unknown_analysis(self, client):
        response = client.post('/api/analyses/nope', json={'params': {}})
        assert response.status_code == 404

    def test_bad_parameters(self, client):
        response = client.post('/api/analyses/ttest_independent', json={'params': {'x': 1}})
        assert response.status_code == 422

    def test_missing_required_parameter(self, engine, client):
        response = client.post(
            '/api/analyses/ttest_independent', json={'params': {'group1': [1, 2, 3]}}
        )
        assert response.status_code == 422
        assert 'group2' in response.json()['detail']
        assert engine.submitted == []

    def test_internal_type_error_is_server_error(self, client, monkeypatch):
        """A TypeError raised inside a valid call is a bug, not bad input."""
        service = get_engine_service()

        async def broken_run(*args, **kwargs):
            raise TypeError("unsupported operand type(s) for +: 'float' and 'str'")

        monkeypatch.setattr(service, 'run', broken_run)
        server = TestClient(client.app, raise_server_exceptions=False)

        response = server.post('/api/analyses/ttest_independent', json={'params': GROUPS})

        assert response.status_code == 500

    def test_validation_error_body(self, engine, client):
        response = client.post(
            '/api/analyses/ttest_independent',
            json={'params': {'group1': [1], 'group2': [2, 3]}},
        )

        assert response.status_code == 422
        body = response.json()
        assert body['error'] == 'insufficient_observations'
        assert engine.submitted == []

    def test_translated_r_error(self, engine, client):
        engine.script(EvaluationError("Lapack routine dgesv: system is exactly singular matrix"))

        response = client.post(
            '/api/analyses/ttest_independent',
            json={'params': GROUPS, 'use_cache': False},
        )

        assert response.status_code == 422
        body = response.json()
        assert body['error'] == 'singular_matrix'
        assert body['message'].startswith('Singular matrix')
        assert 'dgesv' in body['raw_message']


class TestHelpers:
    def test_json_safe(self):
        assert json_safe({'a': [1.0, float('nan')], 'b': (float('inf'),)}) == {
            'a': [1.0, None], 'b': [None],
        }

    def test_error_status(self):
        from engine.errors import DomainError, ExecutionTimeout, InitializationFailure
        assert error_status(DomainError("x")) == 422
        assert error_status(ExecutionTimeout("x")) == 504
        assert error_status(InitializationFailure("x")) == 503
