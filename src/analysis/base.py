"""
Shared types for analysis families.

Every family module exposes three functions:

- ``build_<name>(inputs..., options...) -> RRequest``: validate inputs and
  generate R code (pure, no engine access)
- ``extract_<name>(envelope, request) -> <Result>``: typed deserialization
- ``run_<name>(gateway, inputs..., options...) -> <Result>``: both, with the
  engine call in between

Usage
-----
    from analysis.comparison import build_ttest_independent, extract_ttest_independent

    request = build_ttest_independent([1, 2, 3, 4, 5], [2, 3, 4, 5, 16])
    print(request.code)
    envelope = await gateway.execute_code(request.code)
    result = extract_ttest_independent(envelope, request)
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence, TypeVar

import numpy as np

from config import NOT_COMPUTED
from engine.codegen import sanitize_identifiers

if TYPE_CHECKING:
    from engine.codegen import RCodeBuilder, RRequest
    from engine.gateway import ExecutionGateway

logger = logging.getLogger(__name__)

R = TypeVar('R')


class AnalysisResult:
    """
    Mixin for analysis result dataclasses.

    Subclasses are dataclasses whose last field is ``generated_code: str``,
    the exact R source that produced the result.
    """

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def to_json(self, path: Optional[Path] = None) -> str:
        """Serialize to JSON; also write to ``path`` when given."""
        text = json.dumps(self.to_dict(), indent=2, default=str)
        if path is not None:
            with open(path, 'w') as f:
                f.write(text)
        return text

    @classmethod
    def from_dict(cls, data: dict):
        """Create from dictionary."""
        return cls(**data)


def is_computed(value: Optional[float]) -> bool:
    """Whether a precondition-sensitive statistic was actually computed."""
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return value != NOT_COMPUTED


def emit_data_frame(
    builder: 'RCodeBuilder',
    matrix: np.ndarray,
    names: Sequence[str],
    var: str = 'df',
) -> list[str]:
    """
    Emit a data frame built from a row-major matrix literal.

    Returns
    -------
    list[str]
        The whitelisted R column names, in column order
    """
    safe = sanitize_identifiers(names)
    builder.assign('data_mat', builder.numeric_matrix(matrix.tolist()))
    builder.assign(var, 'as.data.frame(data_mat)')
    builder.line(f"colnames({var}) <- {builder.string_vector(safe, sanitize=False)}")
    return safe


def emit_groups(
    builder: 'RCodeBuilder',
    arrays: Sequence[np.ndarray],
    labels: Sequence[str],
) -> None:
    """Emit ``values`` and a ``groups`` factor with levels in input order."""
    codes = [label for label, array in zip(labels, arrays) for _ in range(len(array))]
    builder.assign('values', builder.numeric_vector(np.concatenate(arrays)))
    builder.assign(
        'groups',
        f"factor({builder.string_vector(codes)}, levels = {builder.string_vector(labels)})",
    )


async def run_request(
    gateway: 'ExecutionGateway',
    request: 'RRequest',
    extractor: Callable[[Any, 'RRequest'], R],
    timeout_ms: Optional[int] = None,
    max_retries: Optional[int] = None,
) -> R:
    """
    Execute a generated request and deserialize its envelope.

    Parameters
    ----------
    gateway : ExecutionGateway
        Gateway used to reach the engine
    request : RRequest
        Output of a ``build_*`` function
    extractor : callable
        Matching ``extract_*`` function
    timeout_ms, max_retries : int, optional
        Per-call overrides of the gateway defaults

    Returns
    -------
    Result of ``extractor(envelope, request)``
    """
    logger.debug(f"Running {request.analysis} ({len(request.code)} chars of R)")
    envelope = await gateway.execute_code(
        request.code, max_retries=max_retries, timeout_ms=timeout_ms
    )
    return extractor(envelope, request)
