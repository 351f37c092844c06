"""
Confirmatory factor analysis and structural equation modeling.

The full computation fits the model with lavaan. When lavaan is not loaded
in the engine, or the fit fails for any reason, a single-factor maximum
likelihood factor analysis (psych::fa) over the model's observed indicators
is returned instead. The two are never confused: every result carries a
``model_kind`` tag and, for approximations, the reason the full fit was not
used.

Model syntax
------------
One statement per line (or separated by ``;``), lavaan operators only::

    F1 =~ item1 + item2 + item3     # measurement
    F2 ~ F1 + age                   # regression
    item1 ~~ item2                  # covariance

Every term must be a plain identifier that is either a latent variable
(left-hand side of ``=~``) or one of the data columns.

Usage
-----
    from analysis.sem import run_cfa, ModelKind

    result = await run_cfa(gateway, df, 'F1 =~ q1 + q2 + q3 + q4')
    if result.model_kind is ModelKind.APPROXIMATE:
        print("approximate:", result.fallback_reason)
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from engine.codegen import IDENTIFIER_PATTERN, R_RESERVED, RCodeBuilder, RRequest, sanitize_identifiers
from engine.errors import DomainError, EngineError, InitializationFailure
from engine.marshal import ResultSchema, number, numbers, strings

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import validate_matrix

logger = logging.getLogger(__name__)

STATEMENT_PATTERN = re.compile(r'^([A-Za-z][A-Za-z0-9._]*)\s*(=~|~~|~)\s*(.+)$')


class ModelKind(str, Enum):
    FULL = 'full'
    APPROXIMATE = 'approximate'


@dataclass(frozen=True)
class ModelStatement:
    lhs: str
    op: str
    rhs: tuple[str, ...]

    def render(self, rename: dict) -> str:
        terms = ' + '.join(rename.get(t, t) for t in self.rhs)
        return f"{rename.get(self.lhs, self.lhs)} {self.op} {terms}"


@dataclass
class ParsedModel:
    statements: list
    latents: list
    indicators: list

    def render(self, rename: Optional[dict] = None) -> str:
        rename = rename or {}
        return '\n'.join(s.render(rename) for s in self.statements)


def _check_term(term: str, line: str) -> str:
    if not IDENTIFIER_PATTERN.match(term) or term in R_RESERVED:
        raise DomainError(
            f"Invalid term {term!r} in model line: {line!r}", category='invalid_model'
        )
    return term


def parse_model(model: str, columns: Sequence[str], require_measurement: bool = False) -> ParsedModel:
    """
    Parse and validate model syntax against the available columns.

    Raises
    ------
    DomainError
        On an unsupported statement, a malformed term, or a reference to a
        variable that is neither a latent nor a column
    """
    statements = []
    for raw_line in re.split(r'[\n;]', model or ''):
        line = raw_line.split('#', 1)[0].strip()
        if not line:
            continue
        match = STATEMENT_PATTERN.match(line)
        if not match:
            raise DomainError(f"Unsupported model line: {line!r}", category='invalid_model')
        lhs, op, rhs = match.groups()
        terms = tuple(_check_term(t.strip(), line) for t in rhs.split('+'))
        statements.append(ModelStatement(_check_term(lhs, line), op, terms))

    if not statements:
        raise DomainError("The model is empty", category='invalid_model')

    latents = []
    for s in statements:
        if s.op == '=~' and s.lhs not in latents:
            latents.append(s.lhs)
    if require_measurement and not latents:
        raise DomainError(
            "A CFA model needs at least one measurement statement (F =~ x1 + x2 + x3)",
            category='invalid_model',
        )

    known = set(columns)
    indicators = []
    for s in statements:
        for term in (s.lhs,) + s.rhs:
            if term in latents:
                continue
            if term not in known:
                raise DomainError(
                    f"Model variable {term!r} is not a latent variable or a data column",
                    category='unknown_variable',
                )
            if term not in indicators:
                indicators.append(term)

    return ParsedModel(statements=statements, latents=latents, indicators=indicators)


SEM_SCHEMA = ResultSchema('sem', [
    number('cfi', optional=True),
    number('tli', optional=True),
    number('rmsea', optional=True),
    number('srmr', optional=True),
    number('chisq', optional=True),
    number('df', optional=True),
    number('pvalue', optional=True),
    strings('est_lhs'),
    strings('est_op'),
    strings('est_rhs'),
    numbers('est_value'),
    numbers('est_se'),
    numbers('est_z'),
    numbers('est_p'),
    numbers('est_std'),
])

FIT_MEASURES = ('cfi', 'tli', 'rmsea', 'srmr', 'chisq', 'df', 'pvalue')


@dataclass
class FitMeasures:
    cfi: Optional[float] = None
    tli: Optional[float] = None
    rmsea: Optional[float] = None
    srmr: Optional[float] = None
    chisq: Optional[float] = None
    df: Optional[float] = None
    pvalue: Optional[float] = None


@dataclass
class ParameterEstimate:
    lhs: str
    op: str
    rhs: str
    estimate: float
    std_estimate: float
    se: Optional[float] = None
    z: Optional[float] = None
    p_value: Optional[float] = None


@dataclass
class SEMResult(AnalysisResult):
    """
    CFA/SEM fit.

    Attributes
    ----------
    model_kind : ModelKind
        FULL for a lavaan fit, APPROXIMATE for the single-factor fallback
    fallback_reason : str, optional
        Why the full fit was not used (APPROXIMATE only)
    """

    analysis: str
    model: str
    model_kind: ModelKind
    fit_measures: FitMeasures
    estimates: list = field(default_factory=list)
    fallback_reason: Optional[str] = None
    generated_code: str = ''

    @property
    def is_approximate(self) -> bool:
        return self.model_kind is ModelKind.APPROXIMATE

    def loadings(self) -> list:
        """Measurement (=~) estimates only."""
        return [e for e in self.estimates if e.op == '=~']


def _prepare(data, model: str, analysis: str, columns: Optional[Sequence[str]]):
    matrix, names = validate_matrix(data, analysis, columns, min_cols=2)
    parsed = parse_model(model, names, require_measurement=(analysis == 'cfa'))
    rename = dict(zip(names, sanitize_identifiers(names)))
    return matrix, names, parsed, rename


def build_sem(
    data,
    model: str,
    analysis: str = 'sem',
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    """Full lavaan fit (``cfa()`` or ``sem()``)."""
    matrix, names, parsed, rename = _prepare(data, model, analysis, columns)

    builder = RCodeBuilder(analysis, libraries=['lavaan'])
    emit_data_frame(builder, matrix, names)
    builder.assign('model_syntax', builder.string(parsed.render(rename)))
    fit_fn = 'cfa' if analysis == 'cfa' else 'sem'
    builder.line(f"fit <- {fit_fn}(model = model_syntax, data = df, std.lv = TRUE)")
    builder.block("""
if (!lavInspect(fit, "converged")) stop("lavaan did not converge")
fm <- fitMeasures(fit, c("cfi", "tli", "rmsea", "srmr", "chisq", "df", "pvalue"))
pe <- parameterEstimates(fit, standardized = TRUE)
""")
    builder.returns(SEM_SCHEMA, {
        'cfi': 'unname(fm["cfi"])',
        'tli': 'unname(fm["tli"])',
        'rmsea': 'unname(fm["rmsea"])',
        'srmr': 'unname(fm["srmr"])',
        'chisq': 'unname(fm["chisq"])',
        'df': 'unname(fm["df"])',
        'pvalue': 'unname(fm["pvalue"])',
        'est_lhs': 'as.character(pe$lhs)',
        'est_op': 'as.character(pe$op)',
        'est_rhs': 'as.character(pe$rhs)',
        'est_value': 'pe$est',
        'est_se': 'pe$se',
        'est_z': 'pe$z',
        'est_p': 'pe$pvalue',
        'est_std': 'pe$std.all',
    })
    builder.label('model', model)
    builder.label('model_kind', ModelKind.FULL)
    builder.label('rename', {v: k for k, v in rename.items()})
    return builder.build()


def build_sem_approximate(
    data,
    model: str,
    analysis: str = 'sem',
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    """Single-factor ML factor analysis over the model's observed indicators."""
    matrix, names, parsed, rename = _prepare(data, model, analysis, columns)
    if len(parsed.indicators) < 3:
        raise DomainError(
            "The approximate fit needs at least 3 observed indicators",
            category='model_not_identified',
        )
    factor = parsed.latents[0] if parsed.latents else 'F1'

    builder = RCodeBuilder(analysis, libraries=['psych'])
    emit_data_frame(builder, matrix, names)
    builder.assign(
        'indicators',
        builder.string_vector([rename[t] for t in parsed.indicators], sanitize=False),
    )
    builder.assign('factor_name', builder.string(factor))
    builder.block("""
fa_result <- fa(df[, indicators], nfactors = 1, rotate = "none", fm = "ml")

chi_sq <- .or_na(fa_result$STATISTIC)
df_val <- .or_na(fa_result$dof)
null_chisq <- .or_na(fa_result$null.chisq)
null_df <- .or_na(fa_result$null.dof)

tli_val <- NA
cfi_val <- NA
if (!is.na(null_chisq) && !is.na(chi_sq) && null_df > 0 && df_val > 0) {
    tli_val <- ((null_chisq / null_df) - (chi_sq / df_val)) / ((null_chisq / null_df) - 1)
    cfi_val <- 1 - max(chi_sq - df_val, 0) / max(null_chisq - null_df, chi_sq - df_val, 0)
}

loadings <- unclass(fa_result$loadings)
k <- nrow(loadings)
""")
    builder.returns(SEM_SCHEMA, {
        'cfi': 'cfi_val',
        'tli': 'tli_val',
        'rmsea': '.or_na(unname(fa_result$RMSEA[1]))',
        'srmr': '.or_na(fa_result$rms)',
        'chisq': 'chi_sq',
        'df': 'df_val',
        'pvalue': '.or_na(fa_result$PVAL)',
        'est_lhs': 'rep(factor_name, k)',
        'est_op': 'rep("=~", k)',
        'est_rhs': 'rownames(loadings)',
        'est_value': 'unname(loadings[, 1])',
        'est_se': 'rep(NA_real_, k)',
        'est_z': 'rep(NA_real_, k)',
        'est_p': 'rep(NA_real_, k)',
        'est_std': 'unname(loadings[, 1])',
    })
    builder.label('model', model)
    builder.label('model_kind', ModelKind.APPROXIMATE)
    builder.label('rename', {v: k for k, v in rename.items()})
    return builder.build()


def _finite(value: float) -> Optional[float]:
    return None if value is None or math.isnan(value) else value


def extract_sem(envelope: dict, request: RRequest) -> SEMResult:
    values = request.schema.extract(envelope)
    rename = request.labels['rename']
    estimates = [
        ParameterEstimate(
            lhs=rename.get(lhs, lhs),
            op=op,
            rhs=rename.get(rhs, rhs),
            estimate=est,
            std_estimate=std,
            se=_finite(se),
            z=_finite(z),
            p_value=_finite(p),
        )
        for lhs, op, rhs, est, se, z, p, std in zip(
            values['est_lhs'], values['est_op'], values['est_rhs'], values['est_value'],
            values['est_se'], values['est_z'], values['est_p'], values['est_std'],
        )
    ]
    return SEMResult(
        analysis=request.analysis,
        model=request.labels['model'],
        model_kind=request.labels['model_kind'],
        fit_measures=FitMeasures(**{name: values[name] for name in FIT_MEASURES}),
        estimates=estimates,
        generated_code=request.code,
    )


async def _fit(gateway, data, model: str, analysis: str, columns, timeout_ms) -> SEMResult:
    # Validate before touching the engine
    _prepare(data, model, analysis, columns)

    manager = gateway.manager
    await manager.init_engine()

    if manager.has_capability('lavaan'):
        request = build_sem(data, model, analysis, columns)
        try:
            return await run_request(gateway, request, extract_sem, timeout_ms)
        except InitializationFailure:
            raise
        except EngineError as e:
            reason = f"lavaan fit failed: {e.message}"
    else:
        reason = "lavaan is not available in the engine"

    logger.warning(f"{analysis}: using single-factor approximation ({reason})")
    request = build_sem_approximate(data, model, analysis, columns)
    result = await run_request(gateway, request, extract_sem, timeout_ms)
    result.fallback_reason = reason
    return result


@register_analysis('cfa', 'Confirmatory factor analysis (lavaan, single-factor fallback)')
async def run_cfa(
    gateway,
    data,
    model: str,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> SEMResult:
    return await _fit(gateway, data, model, 'cfa', columns, timeout_ms)


@register_analysis('sem', 'Structural equation model (lavaan, single-factor fallback)')
async def run_sem(
    gateway,
    data,
    model: str,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> SEMResult:
    return await _fit(gateway, data, model, 'sem', columns, timeout_ms)
