"""
Error taxonomy and translation for the R engine layer.

Every terminal failure raised by this layer is an ``EngineError`` carrying a
user-facing ``message`` (already passed through :func:`translate`), the
original ``raw_message`` from the engine, and a stable ``category`` key.

Usage
-----
    from engine.errors import DomainError, translate

    try:
        envelope = await gateway.execute(request)
    except DomainError as e:
        show(e.message)          # translated text
        log(e.category)          # e.g. 'singular_matrix'
"""
from __future__ import annotations

from typing import Optional

from config import ERROR_MESSAGE_MAX_CHARS


# Ordered: the first signature contained in the message wins.
# (signature, category, user-facing message)
ERROR_SIGNATURES: tuple[tuple[str, str, str], ...] = (
    ('computationally singular',
     'singular_matrix',
     'Computation failed: the data matrix is singular (perfect multicollinearity or a constant variable).'),
    ('singular matrix',
     'singular_matrix',
     'Singular matrix: perfect multicollinearity or a constant variable.'),
    ('not positive definite',
     'not_positive_definite',
     'The covariance matrix is not positive definite. Check for multicollinearity.'),
    ('missing value',
     'missing_values',
     'The data contain missing values (NA). Clean the data before running the analysis.'),
    ('model is not identified',
     'model_not_identified',
     'The CFA/SEM model is not identified. Each factor needs at least 3 indicators.'),
    ('could not find function',
     'missing_function',
     'An R package has not finished loading. Please try again in a few seconds.'),
    ('there is no package called',
     'package_unavailable',
     'A required R package is not installed in the engine.'),
    ('package not available',
     'package_unavailable',
     'A required R package is not available in the engine.'),
    ('subscript out of bounds',
     'subscript_out_of_bounds',
     'A selected variable could not be found. Check the column names.'),
    ('not enough observations',
     'insufficient_observations',
     'Not enough observations to run this analysis.'),
    ('object not found',
     'object_not_found',
     'An R object was not found. The engine may not have initialized correctly.'),
)

GENERIC_PREFIX = 'R error: '

# Substrings marking a lost or unusable engine handle
CORRUPTION_SIGNATURES: tuple[str, ...] = (
    'engine handle',
    'not initialized',
    'timeout',
    'timed out',
)


def classify(message: str) -> Optional[str]:
    """Return the category key of the first matching signature, or None."""
    lowered = (message or '').lower()
    for signature, category, _ in ERROR_SIGNATURES:
        if signature in lowered:
            return category
    return None


def translate(message: str) -> str:
    """
    Map a raw engine failure message to a user-facing message.

    Parameters
    ----------
    message : str
        Raw error text from R or the worker channel

    Returns
    -------
    str
        The message of the first matching signature; otherwise the raw
        message truncated to ``ERROR_MESSAGE_MAX_CHARS`` with a generic prefix
    """
    message = message or ''
    lowered = message.lower()
    for signature, _, translation in ERROR_SIGNATURES:
        if signature in lowered:
            return translation

    if len(message) > ERROR_MESSAGE_MAX_CHARS:
        return f"{GENERIC_PREFIX}{message[:ERROR_MESSAGE_MAX_CHARS]}..."
    return f"{GENERIC_PREFIX}{message}"


def is_corruption(message: str) -> bool:
    """Whether a failure message indicates a lost or unusable engine handle."""
    lowered = (message or '').lower()
    return any(signature in lowered for signature in CORRUPTION_SIGNATURES)


class EngineError(RuntimeError):
    """
    Base class for all failures surfaced by the engine layer.

    Attributes
    ----------
    message : str
        User-facing message
    raw_message : str
        Untranslated message as produced by the engine or validator
    category : str, optional
        Stable category key from the translation table
    """

    default_category: Optional[str] = None

    def __init__(
        self,
        message: str,
        raw_message: Optional[str] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.raw_message = raw_message if raw_message is not None else message
        self.category = category or self.default_category

    @classmethod
    def from_raw(cls, raw_message: str) -> 'EngineError':
        """Build an error whose message is the translation of ``raw_message``."""
        return cls(
            translate(raw_message),
            raw_message=raw_message,
            category=classify(raw_message) or cls.default_category,
        )


class InitializationFailure(EngineError):
    """Bootstrap exhausted its retry budget; requires an explicit reset."""

    default_category = 'initialization_failure'


class ExecutionTimeout(EngineError):
    """A submission exceeded its wall-clock budget."""

    default_category = 'timeout'


class EngineCorruption(EngineError):
    """The engine handle no longer responds through its entry point."""

    default_category = 'engine_corruption'


class DomainError(EngineError):
    """The request violates a statistical precondition; never retried."""

    default_category = 'domain_error'


class EvaluationError(EngineError):
    """Raw error reported by R while evaluating a submission."""

    default_category = 'evaluation_error'


class ResultShapeError(EngineError):
    """The engine returned a result that does not match the expected schema."""

    default_category = 'unexpected_result_shape'
