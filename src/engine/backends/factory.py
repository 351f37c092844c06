"""
Engine Backend Factory and Registry.

Provides centralized backend management with automatic registration.

Usage
-----
    from engine.backends.factory import get_backend, list_backends, register_backend

    # Get default backend
    backend = get_backend()

    # List available backends
    backends = list_backends()

    # Register custom backend
    @register_backend('custom')
    class CustomBackend(BaseEngineBackend):
        ...
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .base import EngineBackend

# Backend registry: name -> backend class
_backend_registry: dict[str, type] = {}


def register_backend(name: str):
    """
    Decorator to register a backend implementation.

    Parameters
    ----------
    name : str
        Backend name (e.g., 'rscript')

    Returns
    -------
    Callable
        Decorator function
    """
    def decorator(cls):
        _backend_registry[name] = cls
        return cls
    return decorator


def get_backend(name: Optional[str] = None, **kwargs) -> 'EngineBackend':
    """
    Create a backend instance.

    Parameters
    ----------
    name : str, optional
        Backend name. If not specified, uses ENGINE_BACKEND from config.
    **kwargs
        Passed to the backend constructor

    Returns
    -------
    EngineBackend
        New, not yet started backend

    Raises
    ------
    ValueError
        If backend name is not recognized
    """
    _ensure_backends_loaded()

    if name is None:
        from config import ENGINE_BACKEND
        name = ENGINE_BACKEND

    name = name.lower()

    if name not in _backend_registry:
        available = ', '.join(sorted(_backend_registry.keys()))
        raise ValueError(
            f"Unknown backend: '{name}'. Available backends: {available}"
        )

    return _backend_registry[name](**kwargs)


def backend_factory(name: Optional[str] = None, **kwargs) -> Callable[[], 'EngineBackend']:
    """Return a zero-argument callable producing fresh backends."""
    def factory() -> 'EngineBackend':
        return get_backend(name, **kwargs)
    return factory


def list_backends() -> dict[str, bool]:
    """
    List all registered backends and their availability.

    Returns
    -------
    dict[str, bool]
        Dictionary of backend_name -> is_available
    """
    _ensure_backends_loaded()

    result = {}
    for name, backend_cls in sorted(_backend_registry.items()):
        try:
            backend = backend_cls()
            available, _ = backend.validate_installation()
            result[name] = available
        except Exception:
            result[name] = False

    return result


def _ensure_backends_loaded() -> None:
    """Ensure all backend modules are imported for registration."""
    if _backend_registry:
        return

    from . import r_backend  # noqa: F401
