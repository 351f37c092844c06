"""
Input validation for analysis generators.

Inputs are checked before any R code is generated; every failure is a
``DomainError`` and nothing reaches the engine.

Accepted containers
-------------------
- matrices: ``list[list[float]]``, 2-D ``numpy.ndarray``, ``pandas.DataFrame``
- vectors: lists, 1-D arrays, ``pandas.Series``
- labels: any sequence of values convertible to ``str``
"""
from __future__ import annotations

from typing import Optional, Sequence, Sized

import numpy as np
import pandas as pd

from config import get_min_sample_size
from engine.codegen import sanitize_label
from engine.errors import DomainError


def as_matrix(data, columns: Optional[Sequence[str]] = None) -> tuple[np.ndarray, list[str]]:
    """
    Convert tabular input to a float matrix plus column names.

    Column names come from ``columns``, else from a DataFrame, else ``V1..Vp``.
    """
    if isinstance(data, pd.DataFrame):
        names = [str(c) for c in data.columns] if columns is None else list(columns)
        values = data.to_numpy()
    else:
        values = data
        names = list(columns) if columns is not None else None

    try:
        matrix = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise DomainError(
            f"Data must be numeric: {e}", category='non_numeric_values'
        ) from e

    if matrix.size == 0:
        raise DomainError("The dataset is empty", category='empty_data')
    if matrix.ndim == 1:
        matrix = matrix.reshape(-1, 1)
    if matrix.ndim != 2:
        raise DomainError(
            f"Data must be two-dimensional (got {matrix.ndim} dimensions)",
            category='invalid_shape',
        )

    if names is None:
        names = [f"V{i + 1}" for i in range(matrix.shape[1])]
    if len(names) != matrix.shape[1]:
        raise DomainError(
            f"Got {len(names)} column names for {matrix.shape[1]} columns",
            category='length_mismatch',
        )
    return matrix, [str(n) for n in names]


def as_vector(values, name: str = 'values') -> np.ndarray:
    """Convert a 1-D input to a float array."""
    if isinstance(values, (pd.Series, pd.Index)):
        values = values.to_numpy()
    try:
        vector = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise DomainError(f"{name} must be numeric: {e}", category='non_numeric_values') from e
    if vector.ndim != 1:
        vector = vector.ravel()
    if vector.size == 0:
        raise DomainError(f"{name} is empty", category='empty_data')
    return vector


def as_labels(values, name: str = 'labels') -> list[str]:
    """Convert a categorical input to a list of strings."""
    if isinstance(values, (pd.Series, pd.Index, np.ndarray)):
        values = values.tolist()
    labels = ['' if v is None else str(v) for v in values]
    if not labels:
        raise DomainError(f"{name} is empty", category='empty_data')
    return labels


def require_finite(values: np.ndarray, name: str = 'Data') -> None:
    """Reject NaN and infinite values."""
    if not np.all(np.isfinite(values)):
        raise DomainError(
            f"{name} contains invalid values (NaN or Infinity)",
            category='non_finite_values',
        )


def require_min_rows(n: int, analysis: str, what: str = 'observations') -> None:
    """Reject inputs smaller than the method's minimum sample size."""
    minimum = get_min_sample_size(analysis)
    if n < minimum:
        raise DomainError(
            f"At least {minimum} {what} are required (got {n})",
            category='insufficient_observations',
        )


def require_variance(matrix: np.ndarray, names: Sequence[str]) -> None:
    """Reject constant (zero-variance) columns."""
    matrix = np.atleast_2d(matrix.T).T
    for j, name in enumerate(names):
        column = matrix[:, j]
        if column.size and np.all(column == column[0]):
            raise DomainError(
                f"Variable '{name}' is constant (variance = 0)",
                category='zero_variance',
            )


def require_same_length(*vectors: Sized, names: Sequence[str] = ()) -> None:
    """Reject vectors of different lengths."""
    lengths = [len(v) for v in vectors]
    if len(set(lengths)) > 1:
        label = ', '.join(names) if names else 'inputs'
        raise DomainError(
            f"Lengths of {label} differ: {lengths}", category='length_mismatch'
        )


def require_columns(matrix: np.ndarray, minimum: int, analysis: str) -> None:
    if matrix.shape[1] < minimum:
        raise DomainError(
            f"{analysis} needs at least {minimum} variables (got {matrix.shape[1]})",
            category='insufficient_variables',
        )


def validate_matrix(
    data,
    analysis: str,
    columns: Optional[Sequence[str]] = None,
    min_cols: int = 1,
    check_variance: bool = True,
) -> tuple[np.ndarray, list[str]]:
    """
    Full validation of a numeric matrix.

    Returns
    -------
    tuple[np.ndarray, list[str]]
        (matrix, column names)
    """
    matrix, names = as_matrix(data, columns)
    require_columns(matrix, min_cols, analysis)
    require_min_rows(matrix.shape[0], analysis)
    require_finite(matrix)
    if check_variance:
        require_variance(matrix, names)
    return matrix, names


def validate_vector(
    values,
    analysis: str,
    name: str = 'values',
    check_variance: bool = True,
) -> np.ndarray:
    """Full validation of a numeric vector."""
    vector = as_vector(values, name)
    require_min_rows(vector.size, analysis)
    require_finite(vector, name)
    if check_variance:
        require_variance(vector.reshape(-1, 1), [name])
    return vector


def validate_groups(
    groups: Sequence,
    analysis: str,
    min_groups: int = 2,
    within_variance: bool = True,
) -> list[np.ndarray]:
    """
    Validate a list of per-group samples.

    Each group must meet the minimum size; values must be finite; the pooled
    sample must not be constant. With ``within_variance`` at least one group
    must vary, since every constant group means a zero residual variance.
    """
    if groups is None or len(groups) < min_groups:
        raise DomainError(
            f"At least {min_groups} groups are required",
            category='insufficient_groups',
        )
    arrays = []
    for i, group in enumerate(groups):
        vector = as_vector(group, f"Group {i + 1}")
        require_min_rows(vector.size, analysis, what=f"observations in group {i + 1}")
        require_finite(vector, f"Group {i + 1}")
        arrays.append(vector)
    pooled = np.concatenate(arrays)
    require_variance(pooled.reshape(-1, 1), ['outcome'])
    if within_variance and all(np.all(a == a[0]) for a in arrays):
        raise DomainError(
            "Every group is constant (within-group variance = 0)",
            category='zero_variance',
        )
    return arrays


def validate_paired(before, after, analysis: str) -> tuple[np.ndarray, np.ndarray]:
    """Validate two paired samples; their differences must not be constant."""
    first = as_vector(before, 'before')
    second = as_vector(after, 'after')
    require_same_length(first, second, names=('before', 'after'))
    require_min_rows(first.size, analysis, what='pairs')
    require_finite(first, 'before')
    require_finite(second, 'after')
    diffs = first - second
    if np.all(diffs == diffs[0]):
        raise DomainError(
            "The paired differences are constant (variance = 0)",
            category='zero_variance',
        )
    return first, second


def group_labels(labels: Optional[Sequence], n_groups: int) -> list[str]:
    """
    Sanitized, unique display labels for ``n_groups`` groups.

    Defaults to ``G1..Gk`` when no labels are given.
    """
    if labels is None:
        return [f"G{i + 1}" for i in range(n_groups)]
    labels = as_labels(labels, 'group labels')
    if len(labels) != n_groups:
        raise DomainError(
            f"Got {len(labels)} labels for {n_groups} groups", category='length_mismatch'
        )
    sanitized = [sanitize_label(label) for label in labels]
    if len(set(sanitized)) != len(sanitized):
        raise DomainError(
            f"Group labels are not unique after sanitizing: {sanitized}",
            category='duplicate_labels',
        )
    return sanitized
