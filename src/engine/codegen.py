"""
Structured builder for generated R code.

All host data reaches R through this module: numeric literals are formatted
with fixed precision, labels are sanitized, and identifiers are checked
against a whitelist before they are composed into code text. Generators never
interpolate raw values into R source themselves.

Usage
-----
    from engine.codegen import RCodeBuilder
    from engine.marshal import ResultSchema, number

    schema = ResultSchema('mean', [number('mean')])
    builder = RCodeBuilder('mean')
    builder.assign('x', builder.numeric_vector([1.5, 2, 3]))
    builder.returns(schema, {'mean': 'mean(x)'})
    request = builder.build()
    print(request.code)
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from config import EMPTY_LABEL_PLACEHOLDER, NUMERIC_LITERAL_DIGITS

from .errors import DomainError
from .marshal import ResultSchema


IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9._]*$')

# R reserved words cannot be used as bare identifiers
R_RESERVED = frozenset({
    'if', 'else', 'repeat', 'while', 'function', 'for', 'next', 'break',
    'TRUE', 'FALSE', 'NULL', 'Inf', 'NaN', 'NA', 'NA_integer_', 'NA_real_',
    'NA_character_', 'in',
})

# Helpers prepended to every generated script
PRELUDE = """\
.rowmajor <- function(m) as.vector(t(as.matrix(m)))
.or_na <- function(x) if (is.null(x) || length(x) == 0) NA else x
.shapiro_p <- function(x) {
    x <- x[is.finite(x)]
    if (length(x) < 3 || length(x) > 5000 || length(unique(x)) < 2) return(-1)
    tryCatch(shapiro.test(x)$p.value, error = function(e) -1)
}"""


@dataclass(frozen=True)
class RRequest:
    """
    A generated R submission.

    Attributes
    ----------
    analysis : str
        Analysis identifier
    code : str
        Complete R source; its last expression is the named result list
    schema : ResultSchema
        Fields the code returns, used to deserialize the envelope
    labels : dict
        Host-side metadata needed by the extractor (display names, etc.)
    """

    analysis: str
    code: str
    schema: ResultSchema
    labels: dict = field(default_factory=dict)

    @property
    def expected_fields(self) -> tuple[str, ...]:
        return self.schema.field_names


def format_number(value) -> str:
    """
    Format a host number as an R numeric literal.

    Raises
    ------
    DomainError
        If the value is NaN or infinite
    """
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    number = float(value)
    if not math.isfinite(number):
        raise DomainError(
            f"Data contains an invalid value ({value}); NaN and Infinity are not allowed",
            category='non_finite_values',
        )
    if number.is_integer() and abs(number) < 1e15:
        return str(int(number))
    return format(number, f'.{NUMERIC_LITERAL_DIGITS}g')


def sanitize_label(value) -> str:
    """
    Sanitize a group/category label for embedding as an R string.

    Quotes and backslashes are removed, whitespace runs collapse to ``_``,
    and empty labels become the configured placeholder.
    """
    text = '' if value is None else str(value)
    if text.lower() == 'nan':
        text = ''
    text = re.sub(r'["\'`\\]', '', text)
    text = re.sub(r'\s+', '_', text.strip())
    return text or EMPTY_LABEL_PLACEHOLDER


def quote_string(value: str) -> str:
    """Quote a string as an R literal, escaping backslashes, quotes and newlines."""
    escaped = (
        str(value)
        .replace('\\', '\\\\')
        .replace('"', '\\"')
        .replace('\n', '\\n')
        .replace('\r', '\\r')
        .replace('\t', '\\t')
    )
    return f'"{escaped}"'


def check_identifier(name: str) -> str:
    """
    Validate a name for use as a bare R identifier.

    Raises
    ------
    DomainError
        If the name is not whitelisted
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name) or name in R_RESERVED:
        raise DomainError(f"Invalid variable name: {name!r}", category='invalid_identifier')
    return name


def sanitize_identifiers(names: Sequence) -> list[str]:
    """
    Map arbitrary column names to unique whitelisted R identifiers.

    Invalid characters become ``_``; names not starting with a letter are
    prefixed with ``V``; duplicates get a numeric suffix.
    """
    out: list[str] = []
    seen: set[str] = set()
    for i, raw in enumerate(names):
        text = re.sub(r'[^A-Za-z0-9._]', '_', str(raw).strip())
        if not text or not text[0].isalpha():
            text = f"V{text}" if text else f"V{i + 1}"
        if text in R_RESERVED:
            text = f"{text}_"
        candidate = text
        suffix = 2
        while candidate in seen:
            candidate = f"{text}_{suffix}"
            suffix += 1
        seen.add(candidate)
        out.append(candidate)
    return out


class RCodeBuilder:
    """
    Accumulates R statements for one analysis and produces an ``RRequest``.

    Parameters
    ----------
    analysis : str
        Analysis identifier
    libraries : iterable of str, optional
        Libraries attached at the top of the script
    """

    def __init__(self, analysis: str, libraries: Iterable[str] = ()):
        self.analysis = analysis
        self._lines: list[str] = []
        self._schema: Optional[ResultSchema] = None
        self._labels: dict = {}
        for lib in libraries:
            self._lines.append(f"library({check_identifier(lib)})")

    # ------------------------------------------------------------------
    # Literals
    # ------------------------------------------------------------------

    @staticmethod
    def number(value) -> str:
        return format_number(value)

    @staticmethod
    def numeric_vector(values: Iterable) -> str:
        """``c(...)`` literal for a numeric vector."""
        return 'c(' + ', '.join(format_number(v) for v in values) + ')'

    @staticmethod
    def numeric_matrix(rows: Sequence[Sequence]) -> str:
        """Row-major ``matrix(...)`` literal."""
        nrow = len(rows)
        ncol = len(rows[0]) if nrow else 0
        flat = ', '.join(format_number(v) for row in rows for v in row)
        return f"matrix(c({flat}), nrow = {nrow}, ncol = {ncol}, byrow = TRUE)"

    @staticmethod
    def string_vector(values: Iterable, sanitize: bool = True) -> str:
        """``c("...")`` literal; labels sanitized unless told otherwise."""
        items = [sanitize_label(v) if sanitize else str(v) for v in values]
        return 'c(' + ', '.join(quote_string(v) for v in items) + ')'

    @staticmethod
    def string(value: str) -> str:
        return quote_string(value)

    @staticmethod
    def identifier(name: str) -> str:
        return check_identifier(name)

    @staticmethod
    def choice(value: str, allowed: Iterable[str], what: str = 'option') -> str:
        """Quoted literal for a value restricted to ``allowed``."""
        allowed = tuple(allowed)
        if value not in allowed:
            raise DomainError(
                f"Unsupported {what}: {value!r}. Allowed: {', '.join(allowed)}",
                category='invalid_option',
            )
        return quote_string(value)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def line(self, code: str) -> 'RCodeBuilder':
        """Append a verbatim statement built from already-safe fragments."""
        self._lines.append(code)
        return self

    def assign(self, name: str, expr: str) -> 'RCodeBuilder':
        self._lines.append(f"{check_identifier(name)} <- {expr}")
        return self

    def block(self, code: str) -> 'RCodeBuilder':
        """Append a fixed multi-line R fragment (no host data)."""
        self._lines.extend(code.strip('\n').splitlines())
        return self

    def label(self, key: str, value) -> 'RCodeBuilder':
        """Record host-side metadata carried to the extractor."""
        self._labels[key] = value
        return self

    def returns(self, schema: ResultSchema, exprs: Mapping[str, str]) -> 'RCodeBuilder':
        """
        Close the script with a named list covering exactly the schema fields.

        Raises
        ------
        ValueError
            If ``exprs`` and the schema disagree on field names
        """
        missing = [n for n in schema.field_names if n not in exprs]
        extra = [n for n in exprs if n not in schema]
        if missing or extra:
            raise ValueError(
                f"Return list for {self.analysis} does not match schema "
                f"(missing: {missing}, extra: {extra})"
            )
        entries = [f"    {name} = {exprs[name]}" for name in schema.field_names]
        self._lines.append('list(\n' + ',\n'.join(entries) + '\n)')
        self._schema = schema
        return self

    def build(self) -> RRequest:
        if self._schema is None:
            raise ValueError(f"No return list declared for {self.analysis}")
        code = PRELUDE + '\n\n' + '\n'.join(self._lines) + '\n'
        return RRequest(
            analysis=self.analysis,
            code=code,
            schema=self._schema,
            labels=dict(self._labels),
        )
