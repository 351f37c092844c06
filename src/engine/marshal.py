"""
Result marshaling between R named-list envelopes and Python values.

The R worker returns every result as an envelope:

    {"type": "list", "names": ["t", "df", ...], "values": [<envelope>, ...]}

where each value is either an atomic envelope
``{"type": "double", "values": [...], "names"?: [...], "dim"?: [...]}`` or a
nested list envelope. Lookup is by name only.

Matrix convention
-----------------
Row-major, project-wide. Generated code flattens every matrix with the
``.rowmajor()`` prelude helper (``as.vector(t(m))``) and the host rebuilds it
with :func:`reconstruct_matrix`. R's native ``as.vector(m)`` is column-major;
when such a vector must be consumed, call :func:`column_major_to_rows`
explicitly rather than slicing it.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from config import NOT_COMPUTED

from .errors import ResultShapeError


# =============================================================================
# ENVELOPE ACCESS
# =============================================================================

def is_list_envelope(value: Any) -> bool:
    """Whether a value is a nested named-list envelope."""
    return isinstance(value, dict) and value.get('type') == 'list' and 'values' in value


def parse_result(envelope: Optional[dict]) -> Callable[[str], Any]:
    """
    Build a name-keyed getter over a result envelope.

    Parameters
    ----------
    envelope : dict
        Named-list envelope returned by the engine

    Returns
    -------
    Callable[[str], Any]
        Getter returning, for a name: the ``values`` list of an atomic
        element (one level unwrapped), the nested envelope itself for a list
        element, or None when the name is absent.
    """
    names = list((envelope or {}).get('names') or [])
    values = list((envelope or {}).get('values') or [])

    def get_value(name: str) -> Any:
        if not names or not values:
            return None
        try:
            idx = names.index(name)
        except ValueError:
            return None
        if idx >= len(values):
            return None
        item = values[idx]
        if is_list_envelope(item):
            return item
        if isinstance(item, dict) and 'values' in item:
            return item['values']
        return item

    return get_value


def envelope_names(envelope: Optional[dict]) -> list[str]:
    """Field names present in an envelope."""
    return list((envelope or {}).get('names') or [])


# =============================================================================
# MATRICES
# =============================================================================

def flatten_matrix(matrix: Sequence[Sequence[float]]) -> list:
    """Flatten a matrix row by row."""
    return [value for row in matrix for value in row]


def reconstruct_matrix(flat: Optional[Sequence[Any]], ncol: int) -> list[list]:
    """
    Split a row-major flattened vector into rows of ``ncol`` values.

    Parameters
    ----------
    flat : sequence
        Row-major values (``as.vector(t(m))`` on the R side)
    ncol : int
        Number of columns of the original matrix

    Returns
    -------
    list[list]
        Matrix as a list of rows; empty when ``flat`` is empty

    Raises
    ------
    ResultShapeError
        If the vector length is not a multiple of ``ncol``
    """
    if not flat:
        return []
    ncol = int(ncol)
    if ncol <= 0 or len(flat) % ncol != 0:
        raise ResultShapeError(
            f"Unexpected result shape: cannot split {len(flat)} values into rows of {ncol}"
        )
    return [list(flat[i:i + ncol]) for i in range(0, len(flat), ncol)]


def column_major_to_rows(flat: Optional[Sequence[Any]], nrow: int) -> list[list]:
    """
    Rebuild a matrix from R's native column-major vector.

    Element (r, c) sits at ``flat[r + c * nrow]``.
    """
    if not flat:
        return []
    nrow = int(nrow)
    if nrow <= 0 or len(flat) % nrow != 0:
        raise ResultShapeError(
            f"Unexpected result shape: cannot split {len(flat)} values into {nrow} rows"
        )
    ncol = len(flat) // nrow
    return [[flat[r + c * nrow] for c in range(ncol)] for r in range(nrow)]


# =============================================================================
# TYPED SCHEMA
# =============================================================================

NUMBER = 'number'
INTEGER = 'integer'
NUMBERS = 'numbers'
STRING = 'string'
STRINGS = 'strings'
BOOLEAN = 'boolean'
MATRIX = 'matrix'
LIST = 'list'

_KINDS = {NUMBER, INTEGER, NUMBERS, STRING, STRINGS, BOOLEAN, MATRIX, LIST}


def _to_float(value: Any, field_name: str) -> float:
    """Coerce an envelope element to float; R NA (null) becomes nan."""
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value in ('NA', 'NaN', 'Inf', '-Inf'):
        return {'NA': math.nan, 'NaN': math.nan, 'Inf': math.inf, '-Inf': -math.inf}[value]
    raise ResultShapeError(
        f"Unexpected result shape: field '{field_name}' holds non-numeric value {value!r}"
    )


@dataclass(frozen=True)
class Field:
    """
    Declaration of one named field expected in a result envelope.

    Attributes
    ----------
    name : str
        Field name in the named list
    kind : str
        One of number, integer, numbers, string, strings, boolean, matrix, list
    optional : bool
        Absent or NA values yield None instead of raising
    sentinel : float, optional
        Value substituted for NA (precondition not met)
    ncol_field : str, optional
        For matrices: name of the field holding the column count
    """

    name: str
    kind: str = NUMBER
    optional: bool = False
    sentinel: Optional[float] = None
    ncol_field: Optional[str] = None

    def __post_init__(self):
        if self.kind not in _KINDS:
            raise ValueError(f"Unknown field kind: {self.kind}")
        if self.kind == MATRIX and not self.ncol_field:
            raise ValueError(f"Matrix field '{self.name}' needs ncol_field")


def number(name: str, optional: bool = False) -> Field:
    return Field(name, NUMBER, optional=optional)


def integer(name: str, optional: bool = False) -> Field:
    return Field(name, INTEGER, optional=optional)


def numbers(name: str, optional: bool = False) -> Field:
    return Field(name, NUMBERS, optional=optional)


def string(name: str, optional: bool = False) -> Field:
    return Field(name, STRING, optional=optional)


def strings(name: str, optional: bool = False) -> Field:
    return Field(name, STRINGS, optional=optional)


def boolean(name: str, optional: bool = False) -> Field:
    return Field(name, BOOLEAN, optional=optional)


def matrix(name: str, ncol_field: str, optional: bool = False) -> Field:
    return Field(name, MATRIX, optional=optional, ncol_field=ncol_field)


def nested(name: str, optional: bool = False) -> Field:
    return Field(name, LIST, optional=optional)


def sentinel(name: str, value: float = NOT_COMPUTED) -> Field:
    """A number that carries ``value`` when its precondition was not met."""
    return Field(name, NUMBER, optional=True, sentinel=value)


class ResultSchema:
    """
    Typed deserializer for one analysis' result envelope.

    Examples
    --------
    >>> schema = ResultSchema('ttest', [number('t'), number('df'), sentinel('normality_p1')])
    >>> values = schema.extract(envelope)
    >>> values['t']
    -1.5811
    """

    def __init__(self, analysis: str, fields: Sequence[Field]):
        self.analysis = analysis
        self.fields = tuple(fields)
        self._by_name = {f.name: f for f in self.fields}

    @property
    def field_names(self) -> tuple[str, ...]:
        """Names the generated code must return."""
        return tuple(f.name for f in self.fields)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def extract(self, envelope: Optional[dict]) -> dict[str, Any]:
        """
        Extract every declared field from an envelope.

        Raises
        ------
        ResultShapeError
            If the envelope is not a named list, a required field is absent,
            or a value has the wrong type
        """
        if not is_list_envelope(envelope) and not (
            isinstance(envelope, dict) and 'names' in envelope and 'values' in envelope
        ):
            raise ResultShapeError(
                f"Unexpected result shape for {self.analysis}: expected a named list"
            )

        get_value = parse_result(envelope)
        raw = {f.name: get_value(f.name) for f in self.fields}
        out: dict[str, Any] = {}

        for f in self.fields:
            if f.kind == MATRIX:
                continue
            out[f.name] = self._convert(f, raw[f.name])

        # Matrices need their column count, which is itself a field
        for f in self.fields:
            if f.kind != MATRIX:
                continue
            value = raw[f.name]
            if value is None:
                if f.optional:
                    out[f.name] = None
                    continue
                raise self._missing(f)
            ncol = out.get(f.ncol_field)
            if ncol is None or (isinstance(ncol, float) and math.isnan(ncol)):
                raise ResultShapeError(
                    f"Unexpected result shape for {self.analysis}: "
                    f"matrix '{f.name}' has no column count '{f.ncol_field}'"
                )
            out[f.name] = reconstruct_matrix(
                [_to_float(v, f.name) for v in value], int(ncol)
            )

        return out

    def _missing(self, f: Field) -> ResultShapeError:
        return ResultShapeError(
            f"Unexpected result shape for {self.analysis}: missing field '{f.name}'"
        )

    def _convert(self, f: Field, value: Any) -> Any:
        if value is None:
            if f.sentinel is not None:
                return f.sentinel
            if f.optional:
                return None
            raise self._missing(f)

        if f.kind == LIST:
            if not is_list_envelope(value):
                raise ResultShapeError(
                    f"Unexpected result shape for {self.analysis}: field '{f.name}' is not a list"
                )
            return value

        if is_list_envelope(value):
            raise ResultShapeError(
                f"Unexpected result shape for {self.analysis}: field '{f.name}' is a list"
            )
        if not isinstance(value, list):
            value = [value]

        if f.kind in (NUMBER, INTEGER, STRING, BOOLEAN):
            if len(value) == 0:
                if f.sentinel is not None:
                    return f.sentinel
                if f.optional:
                    return None
                raise self._missing(f)
            first = value[0]
            if f.kind == STRING:
                if first is None:
                    return None if f.optional else ''
                return str(first)
            if f.kind == BOOLEAN:
                if first is None:
                    return None if f.optional else False
                return bool(first)
            result = _to_float(first, f.name)
            if math.isnan(result):
                if f.sentinel is not None:
                    return f.sentinel
                if f.optional:
                    return None
            if f.kind == INTEGER and not math.isnan(result):
                return int(result)
            return result

        if f.kind == NUMBERS:
            return [_to_float(v, f.name) for v in value]

        # STRINGS
        return ['' if v is None else str(v) for v in value]


def nested_getter(envelope: Optional[dict]) -> Callable[[str], Any]:
    """Getter over a nested list envelope (None-safe)."""
    return parse_result(envelope if is_list_envelope(envelope) else None)


def first_number(values: Any, default: Optional[float] = None) -> Optional[float]:
    """First element of an atomic value list as float, or ``default``."""
    if not values:
        return default
    item = values[0]
    if item is None:
        return default
    return float(item)
