"""
Engine Backend Implementations.

Available Backends
------------------
- rscript: persistent R worker process driven over stdin/stdout

Backends are automatically registered via the @register_backend decorator
when this package is imported.
"""
from __future__ import annotations

from .base import BaseEngineBackend, EngineBackend
from .factory import backend_factory, get_backend, list_backends, register_backend

# Import backends to trigger registration
from . import r_backend  # noqa: F401

__all__ = [
    'BaseEngineBackend',
    'EngineBackend',
    'backend_factory',
    'get_backend',
    'list_backends',
    'register_backend',
]
