"""
R engine orchestration layer.

Lifecycle management, execution under timeout and retry discipline, code
generation primitives, result marshaling and error translation for a single
persistent R worker.

Usage
-----
    from engine import EngineManager, ExecutionGateway

    manager = EngineManager()
    gateway = ExecutionGateway(manager)
    envelope = await gateway.execute_code('list(m = mean(c(1, 2, 3)))')
"""
from __future__ import annotations

from .backends import BaseEngineBackend, EngineBackend, get_backend, list_backends
from .codegen import RCodeBuilder, RRequest
from .errors import (
    DomainError,
    EngineCorruption,
    EngineError,
    EvaluationError,
    ExecutionTimeout,
    InitializationFailure,
    ResultShapeError,
    classify,
    translate,
)
from .gateway import ExecutionGateway, ExecutionRequest
from .lifecycle import EngineManager, EngineStatus, LifecycleState, RetryState
from .marshal import ResultSchema, flatten_matrix, parse_result, reconstruct_matrix
from .settings import EngineSettings, load_settings

__all__ = [
    # Backends
    'BaseEngineBackend',
    'EngineBackend',
    'get_backend',
    'list_backends',
    # Lifecycle and execution
    'EngineManager',
    'EngineStatus',
    'LifecycleState',
    'RetryState',
    'ExecutionGateway',
    'ExecutionRequest',
    'EngineSettings',
    'load_settings',
    # Code generation and marshaling
    'RCodeBuilder',
    'RRequest',
    'ResultSchema',
    'flatten_matrix',
    'parse_result',
    'reconstruct_matrix',
    # Errors
    'EngineError',
    'InitializationFailure',
    'ExecutionTimeout',
    'EngineCorruption',
    'DomainError',
    'EvaluationError',
    'ResultShapeError',
    'classify',
    'translate',
]
