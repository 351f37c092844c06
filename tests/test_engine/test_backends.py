#!/usr/bin/env python3
"""
Tests for src/engine/backends/

Tests cover:
- Backend registration and lookup
- Backend factories producing fresh handles
- RScriptBackend behaviour that does not need a running R
"""
from __future__ import annotations

import pytest

from conftest import run
from engine.backends import BaseEngineBackend, backend_factory, get_backend, register_backend
from engine.backends.factory import _backend_registry
from engine.backends.r_backend import RScriptBackend
from engine.errors import EngineCorruption


class TestBackendRegistry:
    """Tests for the backend registry."""

    def test_rscript_registered(self):
        """Default backend name resolves to the Rscript worker."""
        backend = get_backend('rscript')
        assert isinstance(backend, RScriptBackend)
        assert backend.name == 'rscript'

    def test_lookup_case_insensitive(self):
        assert isinstance(get_backend('RScript'), RScriptBackend)

    def test_unknown_backend_raises(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            get_backend('matlab')

    def test_register_custom_backend(self):
        @register_backend('null')
        class NullBackend(BaseEngineBackend):
            @property
            def name(self) -> str:
                return 'null'

        try:
            assert isinstance(get_backend('null'), NullBackend)
        finally:
            _backend_registry.pop('null', None)

    def test_factory_returns_fresh_backends(self):
        """Each bootstrap attempt gets a new, unstarted handle."""
        factory = backend_factory('rscript', r_executable='Rscript')
        first, second = factory(), factory()
        assert first is not second
        assert not first.is_alive()


class TestRScriptBackend:
    """Tests for RScriptBackend without starting R."""

    def test_missing_executable_reported(self):
        backend = RScriptBackend(r_executable='definitely-not-rscript')
        available, message = backend.validate_installation()
        assert available is False
        assert 'R_EXECUTABLE' in message

    def test_not_alive_before_start(self):
        assert RScriptBackend().is_alive() is False

    def test_start_without_worker_script(self, tmp_path):
        backend = RScriptBackend(worker_script=tmp_path / 'missing.R')
        with pytest.raises(EngineCorruption, match="worker script not found"):
            run(backend.start())

    def test_evaluate_before_start_is_corruption(self):
        """An unstarted handle reports the corruption signature."""
        backend = RScriptBackend()
        with pytest.raises(EngineCorruption, match="not initialized"):
            run(backend.evaluate('list(x = 1)'))

    def test_close_is_idempotent(self):
        backend = RScriptBackend()
        run(backend.close())
        run(backend.close())
        assert backend.is_alive() is False
