"""
Mediation (X -> M -> Y) and moderation (X x M -> Y) with ordinary least
squares.

Mediation reports the product-of-coefficients indirect effect ``a * b`` with
a percentile bootstrap confidence interval and the Sobel test. Moderation
centers X and M, tests the interaction and probes simple slopes of X at
-1 SD, the mean and +1 SD of the moderator.

Usage
-----
    from analysis.mediation import run_mediation

    result = await run_mediation(gateway, df, x='training', m='skill', y='salary')
    print(result.indirect_effect, result.ci_lower, result.ci_upper)
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from config import BOOTSTRAP_ITERATIONS, BOOTSTRAP_SEED, CONFIDENCE_LEVEL, SIGNIFICANCE_LEVEL
from engine.codegen import RCodeBuilder, RRequest
from engine.errors import DomainError, ResultShapeError
from engine.marshal import ResultSchema, integer, number, numbers, strings
from utils.helpers import format_ci, format_estimate

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import as_matrix, require_finite, require_min_rows, require_variance


def _select_roles(data, roles: dict, analysis: str):
    """
    Pick the role columns (x, m, y) out of a data set.

    Returns
    -------
    tuple[np.ndarray, dict]
        Matrix with columns in role order and role -> display name
    """
    matrix, names = as_matrix(data)
    chosen = list(roles.values())
    if len(set(chosen)) != len(chosen):
        raise DomainError(
            f"X, M and Y must be different variables (got {chosen})", category='invalid_option'
        )
    missing = [c for c in chosen if c not in names]
    if missing:
        raise DomainError(
            f"Variables not found in the data: {', '.join(map(str, missing))}",
            category='unknown_variable',
        )
    subset = matrix[:, [names.index(c) for c in chosen]]
    require_min_rows(subset.shape[0], analysis)
    require_finite(subset)
    require_variance(subset, chosen)
    return subset, dict(roles)


@dataclass
class PathCoefficient:
    estimate: float
    se: float
    p_value: float


# =============================================================================
# MEDIATION
# =============================================================================

MEDIATION_SCHEMA = ResultSchema('mediation', [
    numbers('a'),
    numbers('b'),
    numbers('c'),
    numbers('c_prime'),
    number('indirect'),
    number('ci_lower'),
    number('ci_upper'),
    integer('n_boot_valid'),
    number('sobel_z'),
    number('sobel_p'),
    number('proportion_mediated', optional=True),
    integer('n_obs'),
])


@dataclass
class MediationResult(AnalysisResult):
    """
    Simple mediation.

    Paths: ``a`` (X -> M), ``b`` (M -> Y controlling X), ``c`` (total X -> Y)
    and ``c_prime`` (direct X -> Y controlling M).
    """

    x: str
    m: str
    y: str
    a: PathCoefficient
    b: PathCoefficient
    c: PathCoefficient
    c_prime: PathCoefficient
    indirect_effect: float
    ci_lower: float
    ci_upper: float
    confidence_level: float
    n_boot: int
    n_boot_valid: int
    sobel_z: float
    sobel_p: float
    proportion_mediated: Optional[float]
    n_obs: int
    generated_code: str = ''

    @property
    def total_effect(self) -> float:
        return self.c.estimate

    @property
    def direct_effect(self) -> float:
        return self.c_prime.estimate

    @property
    def is_significant(self) -> bool:
        """Bootstrap CI excludes zero."""
        return self.ci_lower > 0 or self.ci_upper < 0

    def summary(self) -> str:
        paths = ", ".join(
            f"{label} = {format_estimate(path.estimate, path.p_value)}"
            for label, path in (('a', self.a), ('b', self.b), ('c', self.c), ("c'", self.c_prime))
        )
        return (
            f"{paths}; indirect = {self.indirect_effect:.3f} "
            f"{format_ci(self.ci_lower, self.ci_upper)}"
        )


def build_mediation(
    data,
    x: str,
    m: str,
    y: str,
    n_boot: int = BOOTSTRAP_ITERATIONS,
    confidence: float = CONFIDENCE_LEVEL,
) -> RRequest:
    subset, roles = _select_roles(data, {'x': x, 'm': m, 'y': y}, 'mediation')
    if int(n_boot) < 100:
        raise DomainError("At least 100 bootstrap samples are required", category='invalid_option')
    if not 0 < confidence < 1:
        raise DomainError(f"Invalid confidence level: {confidence}", category='invalid_option')

    builder = RCodeBuilder('mediation')
    emit_data_frame(builder, subset, ['x', 'm', 'y'])
    builder.assign('n_boot', builder.number(int(n_boot)))
    builder.assign('conf_level', builder.number(confidence))
    builder.block("""
.path <- function(fit, term) unname(coef(summary(fit))[term, c(1, 2, 4)])

fit_a <- lm(m ~ x, data = df)
fit_b <- lm(y ~ x + m, data = df)
fit_c <- lm(y ~ x, data = df)
a <- .path(fit_a, "x")
b <- .path(fit_b, "m")
c_total <- .path(fit_c, "x")
c_prime <- .path(fit_b, "x")

indirect <- a[1] * b[1]
sobel_se <- sqrt(b[1]^2 * a[2]^2 + a[1]^2 * b[2]^2)
sobel_z <- indirect / sobel_se
sobel_p <- 2 * pnorm(-abs(sobel_z))
""")
    builder.line(f"set.seed({builder.number(BOOTSTRAP_SEED)})")
    builder.block("""
n <- nrow(df)
boot_ab <- replicate(n_boot, {
    d <- df[sample.int(n, n, replace = TRUE), ]
    unname(coef(lm(m ~ x, data = d))["x"] * coef(lm(y ~ x + m, data = d))["m"])
})
boot_ab <- boot_ab[is.finite(boot_ab)]
tail_p <- (1 - conf_level) / 2
ci <- quantile(boot_ab, c(tail_p, 1 - tail_p), names = FALSE)
proportion <- if (abs(c_total[1]) > 0) indirect / c_total[1] else NA
""")
    builder.returns(MEDIATION_SCHEMA, {
        'a': 'a',
        'b': 'b',
        'c': 'c_total',
        'c_prime': 'c_prime',
        'indirect': 'indirect',
        'ci_lower': 'ci[1]',
        'ci_upper': 'ci[2]',
        'n_boot_valid': 'length(boot_ab)',
        'sobel_z': 'sobel_z',
        'sobel_p': 'sobel_p',
        'proportion_mediated': 'proportion',
        'n_obs': 'n',
    })
    builder.label('roles', roles)
    builder.label('n_boot', int(n_boot))
    builder.label('confidence', confidence)
    return builder.build()


def _path(values: list) -> PathCoefficient:
    if len(values) != 3:
        raise ResultShapeError(f"Unexpected result shape for mediation: path has {len(values)} values")
    estimate, se, p_value = values
    return PathCoefficient(estimate=estimate, se=se, p_value=p_value)


def extract_mediation(envelope: dict, request: RRequest) -> MediationResult:
    values = request.schema.extract(envelope)
    roles = request.labels['roles']
    return MediationResult(
        x=roles['x'],
        m=roles['m'],
        y=roles['y'],
        a=_path(values['a']),
        b=_path(values['b']),
        c=_path(values['c']),
        c_prime=_path(values['c_prime']),
        indirect_effect=values['indirect'],
        ci_lower=values['ci_lower'],
        ci_upper=values['ci_upper'],
        confidence_level=request.labels['confidence'],
        n_boot=request.labels['n_boot'],
        n_boot_valid=values['n_boot_valid'],
        sobel_z=values['sobel_z'],
        sobel_p=values['sobel_p'],
        proportion_mediated=values['proportion_mediated'],
        n_obs=values['n_obs'],
        generated_code=request.code,
    )


@register_analysis('mediation', 'Simple mediation with bootstrap CI for the indirect effect')
async def run_mediation(
    gateway,
    data,
    x: str,
    m: str,
    y: str,
    n_boot: int = BOOTSTRAP_ITERATIONS,
    confidence: float = CONFIDENCE_LEVEL,
    timeout_ms: Optional[int] = None,
) -> MediationResult:
    request = build_mediation(data, x, m, y, n_boot, confidence)
    return await run_request(gateway, request, extract_mediation, timeout_ms)


# =============================================================================
# MODERATION
# =============================================================================

SLOPE_LEVELS = ('-1 SD', 'Mean', '+1 SD')

MODERATION_SCHEMA = ResultSchema('moderation', [
    strings('terms'),
    numbers('estimates'),
    numbers('std_errors'),
    numbers('p_values'),
    number('interaction_p'),
    number('r_squared'),
    number('moderator_sd'),
    numbers('slopes'),
    numbers('slope_se'),
    numbers('slope_p'),
    integer('n_obs'),
])


@dataclass
class ModerationCoefficient:
    term: str
    estimate: float
    std_error: float
    p_value: float


@dataclass
class SimpleSlope:
    level: str
    moderator_offset: float
    slope: float
    se: float
    p_value: float


@dataclass
class ModerationResult(AnalysisResult):
    """Moderated regression ``y ~ xc * mc`` on mean-centered X and M."""

    x: str
    m: str
    y: str
    coefficients: list
    interaction_p: float
    interaction_significant: bool
    r_squared: float
    simple_slopes: list = field(default_factory=list)
    n_obs: int = 0
    generated_code: str = ''


def build_moderation(data, x: str, m: str, y: str) -> RRequest:
    subset, roles = _select_roles(data, {'x': x, 'm': m, 'y': y}, 'moderation')

    builder = RCodeBuilder('moderation')
    emit_data_frame(builder, subset, ['x', 'm', 'y'])
    builder.block("""
df$xc <- df$x - mean(df$x)
df$mc <- df$m - mean(df$m)
model <- lm(y ~ xc * mc, data = df)
coefs <- coef(summary(model))
if (!("xc:mc" %in% rownames(coefs))) stop("computationally singular: interaction term is aliased")

m_sd <- sd(df$mc)
levels <- c(-m_sd, 0, m_sd)
probe <- lapply(levels, function(level) {
    df$m_shift <- df$mc - level
    s <- coef(summary(lm(y ~ xc * m_shift, data = df)))
    unname(s["xc", c(1, 2, 4)])
})
""")
    builder.returns(MODERATION_SCHEMA, {
        'terms': 'rownames(coefs)',
        'estimates': 'unname(coefs[, 1])',
        'std_errors': 'unname(coefs[, 2])',
        'p_values': 'unname(coefs[, 4])',
        'interaction_p': 'coefs["xc:mc", 4]',
        'r_squared': 'summary(model)$r.squared',
        'moderator_sd': 'm_sd',
        'slopes': 'vapply(probe, function(p) p[1], numeric(1))',
        'slope_se': 'vapply(probe, function(p) p[2], numeric(1))',
        'slope_p': 'vapply(probe, function(p) p[3], numeric(1))',
        'n_obs': 'nrow(df)',
    })
    builder.label('roles', roles)
    return builder.build()


def extract_moderation(envelope: dict, request: RRequest) -> ModerationResult:
    values = request.schema.extract(envelope)
    roles = request.labels['roles']
    display = {
        '(Intercept)': '(Intercept)',
        'xc': roles['x'],
        'mc': roles['m'],
        'xc:mc': f"{roles['x']}:{roles['m']}",
    }
    coefficients = [
        ModerationCoefficient(term=display.get(t, t), estimate=e, std_error=se, p_value=p)
        for t, e, se, p in zip(
            values['terms'], values['estimates'], values['std_errors'], values['p_values']
        )
    ]
    sd = values['moderator_sd']
    slopes = [
        SimpleSlope(level=level, moderator_offset=offset * sd, slope=s, se=se, p_value=p)
        for level, offset, s, se, p in zip(
            SLOPE_LEVELS, (-1, 0, 1), values['slopes'], values['slope_se'], values['slope_p']
        )
    ]
    interaction_p = values['interaction_p']
    return ModerationResult(
        x=roles['x'],
        m=roles['m'],
        y=roles['y'],
        coefficients=coefficients,
        interaction_p=interaction_p,
        interaction_significant=(not math.isnan(interaction_p)
                                 and interaction_p < SIGNIFICANCE_LEVEL),
        r_squared=values['r_squared'],
        simple_slopes=slopes,
        n_obs=values['n_obs'],
        generated_code=request.code,
    )


@register_analysis('moderation', 'Moderation with centered interaction and simple slopes')
async def run_moderation(
    gateway,
    data,
    x: str,
    m: str,
    y: str,
    timeout_ms: Optional[int] = None,
) -> ModerationResult:
    request = build_moderation(data, x, m, y)
    return await run_request(gateway, request, extract_moderation, timeout_ms)
