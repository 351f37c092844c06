"""
Base Protocol for Engine Backends.

A backend is the engine handle: one running interpreter reached only through
generated code text. Uses Python's Protocol for structural subtyping so tests
can substitute an in-memory fake.

Usage
-----
    from engine.backends.base import EngineBackend

    async def mean_of(backend: EngineBackend) -> dict:
        await backend.start()
        return await backend.evaluate('list(m = mean(c(1, 2, 3)))')
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class EngineBackend(Protocol):
    """
    Protocol defining the interface for engine backends.

    Methods
    -------
    start()
        Launch the interpreter and open its message channel.
    evaluate(code)
        Evaluate R code and return its value as a result envelope.
    is_alive()
        Liveness probe: the interpreter runs and its entry point is callable.
    close()
        Stop the interpreter and release its resources.
    """

    @property
    def name(self) -> str:
        """Return the backend identifier (e.g., 'rscript')."""
        ...

    async def start(self) -> None:
        ...

    async def evaluate(self, code: str) -> dict:
        """
        Evaluate code and return the envelope of its final value.

        Raises
        ------
        EvaluationError
            If R signals an error while evaluating
        EngineCorruption
            If the message channel is broken
        """
        ...

    def is_alive(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class BaseEngineBackend:
    """
    Base implementation with common functionality for engine backends.

    Concrete backends should inherit from this class.
    """

    def __init__(self):
        self._started = False

    @property
    def name(self) -> str:
        """Return backend name (must be overridden)."""
        raise NotImplementedError

    @property
    def version(self) -> str:
        """Return interpreter version (must be overridden)."""
        raise NotImplementedError

    def validate_installation(self) -> tuple[bool, str]:
        """Validate installation (must be overridden)."""
        raise NotImplementedError

    async def start(self) -> None:
        raise NotImplementedError

    async def evaluate(self, code: str) -> dict:
        raise NotImplementedError

    def is_alive(self) -> bool:
        return self._started and callable(getattr(self, 'evaluate', None))

    async def close(self) -> None:
        self._started = False
