"""
Linear and binary logistic regression.

The first column of the input matrix is the dependent variable; every other
column is a predictor. Column names are mapped to whitelisted R identifiers
for the model formula and mapped back to the display names in the result.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from config import CONFIDENCE_LEVEL
from engine.codegen import RCodeBuilder, RRequest
from engine.errors import DomainError
from engine.marshal import ResultSchema, integer, number, numbers, sentinel, strings
from utils.helpers import add_significance_stars

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import validate_matrix

INTERCEPT = '(Intercept)'

# VIF reported for predictors explained almost perfectly by the others
VIF_CAP = 999.99


def _display_terms(terms: Sequence[str], safe_to_display: dict) -> list[str]:
    return [safe_to_display.get(term, term) for term in terms]


def _optional(value: float) -> Optional[float]:
    return None if value is None or math.isnan(value) else value


MODEL_PREAMBLE = """
model_formula <- reformulate(colnames(df)[-1], response = colnames(df)[1])
"""


# =============================================================================
# LINEAR REGRESSION
# =============================================================================

LINEAR_REGRESSION_SCHEMA = ResultSchema('linear_regression', [
    strings('terms'),
    numbers('estimates'),
    numbers('std_betas'),
    numbers('std_errors'),
    numbers('t_values'),
    numbers('p_values'),
    numbers('vifs'),
    number('r_squared'),
    number('adj_r_squared'),
    number('f_stat'),
    number('df_num'),
    number('df_denom'),
    number('f_p_value'),
    number('sigma'),
    sentinel('normality_p'),
    numbers('fitted_values'),
    numbers('residuals'),
    numbers('actual_values'),
])


@dataclass
class LinearCoefficient:
    term: str
    estimate: float
    std_beta: Optional[float]
    std_error: float
    t_value: float
    p_value: float
    vif: Optional[float] = None


@dataclass
class LinearRegressionResult(AnalysisResult):
    """
    OLS fit.

    ``std_beta`` and ``vif`` are None for the intercept. ``normality_p`` is
    the Shapiro-Wilk p-value of the residuals (``NOT_COMPUTED`` outside
    3..5000 observations).
    """

    dependent: str
    coefficients: list
    r_squared: float
    adj_r_squared: float
    f_stat: float
    df_num: float
    df_denom: float
    f_p_value: float
    residual_std_error: float
    normality_p: float
    equation: str
    fitted_values: list = field(default_factory=list)
    residuals: list = field(default_factory=list)
    actual_values: list = field(default_factory=list)
    generated_code: str = ''

    def coefficient(self, term: str) -> LinearCoefficient:
        for coef in self.coefficients:
            if coef.term == term:
                return coef
        raise KeyError(term)

    def format_table(self, decimals: int = 3) -> str:
        lines = [f"{'term':<20} {'B':>10} {'beta':>8} {'SE':>8} {'t':>8} {'p':>8}"]
        for c in self.coefficients:
            beta = '' if c.std_beta is None else f"{c.std_beta:.{decimals}f}"
            lines.append(
                f"{c.term:<20} {c.estimate:>10.{decimals}f}{add_significance_stars(c.p_value):<3}"
                f"{beta:>8} {c.std_error:>8.{decimals}f} {c.t_value:>8.3f} {c.p_value:>8.4f}"
            )
        return '\n'.join(lines)


def format_equation(dependent: str, terms: Sequence[str], estimates: Sequence[float],
                    decimals: int = 3) -> str:
    """Human-readable fitted equation, e.g. ``y = 1.000 + 0.500*x1 - 0.200*x2``."""
    intercept = 0.0
    parts = []
    for term, estimate in zip(terms, estimates):
        if term == INTERCEPT:
            intercept = estimate
            continue
        sign = '+' if estimate >= 0 else '-'
        parts.append(f" {sign} {abs(estimate):.{decimals}f}*{term}")
    return f"{dependent} = {intercept:.{decimals}f}" + ''.join(parts)


def build_linear_regression(data, columns: Optional[Sequence[str]] = None) -> RRequest:
    matrix, names = validate_matrix(data, 'linear_regression', columns, min_cols=2)
    if matrix.shape[0] <= matrix.shape[1]:
        raise DomainError(
            f"Not enough observations ({matrix.shape[0]}) for {matrix.shape[1] - 1} predictors",
            category='insufficient_observations',
        )

    builder = RCodeBuilder('linear_regression')
    safe = emit_data_frame(builder, matrix, names)
    builder.assign('vif_cap', builder.number(VIF_CAP))
    builder.block(MODEL_PREAMBLE)
    builder.block("""
model <- lm(model_formula, data = df)
if (any(is.na(coef(model)))) stop("computationally singular: predictors are perfectly collinear")
s <- summary(model)
coefs <- coef(s)
fstat <- s$fstatistic

x_data <- df[, -1, drop = FALSE]
vifs <- if (ncol(x_data) > 1) {
    vapply(seq_len(ncol(x_data)), function(i) {
        r2 <- summary(lm(x_data[, i] ~ ., data = x_data[, -i, drop = FALSE]))$r.squared
        if (r2 >= 0.9999) vif_cap else 1 / (1 - r2)
    }, numeric(1))
} else {
    1
}

std_betas <- coefs[-1, 1] * vapply(x_data, sd, numeric(1)) / sd(df[, 1])
""")
    builder.returns(LINEAR_REGRESSION_SCHEMA, {
        'terms': 'rownames(coefs)',
        'estimates': 'unname(coefs[, 1])',
        'std_betas': 'c(NA, unname(std_betas))',
        'std_errors': 'unname(coefs[, 2])',
        't_values': 'unname(coefs[, 3])',
        'p_values': 'unname(coefs[, 4])',
        'vifs': 'c(NA, vifs)',
        'r_squared': 's$r.squared',
        'adj_r_squared': 's$adj.r.squared',
        'f_stat': 'unname(fstat[1])',
        'df_num': 'unname(fstat[2])',
        'df_denom': 'unname(fstat[3])',
        'f_p_value': 'unname(pf(fstat[1], fstat[2], fstat[3], lower.tail = FALSE))',
        'sigma': 's$sigma',
        'normality_p': '.shapiro_p(residuals(model))',
        'fitted_values': 'unname(fitted(model))',
        'residuals': 'unname(residuals(model))',
        'actual_values': 'df[, 1]',
    })
    builder.label('dependent', names[0])
    builder.label('names', dict(zip(safe, names)))
    return builder.build()


def extract_linear_regression(envelope: dict, request: RRequest) -> LinearRegressionResult:
    values = request.schema.extract(envelope)
    terms = _display_terms(values['terms'], request.labels['names'])

    coefficients = [
        LinearCoefficient(
            term=term,
            estimate=values['estimates'][i],
            std_beta=_optional(values['std_betas'][i]),
            std_error=values['std_errors'][i],
            t_value=values['t_values'][i],
            p_value=values['p_values'][i],
            vif=_optional(values['vifs'][i]) if i < len(values['vifs']) else None,
        )
        for i, term in enumerate(terms)
    ]

    dependent = request.labels['dependent']
    return LinearRegressionResult(
        dependent=dependent,
        coefficients=coefficients,
        r_squared=values['r_squared'],
        adj_r_squared=values['adj_r_squared'],
        f_stat=values['f_stat'],
        df_num=values['df_num'],
        df_denom=values['df_denom'],
        f_p_value=values['f_p_value'],
        residual_std_error=values['sigma'],
        normality_p=values['normality_p'],
        equation=format_equation(dependent, terms, values['estimates']),
        fitted_values=values['fitted_values'],
        residuals=values['residuals'],
        actual_values=values['actual_values'],
        generated_code=request.code,
    )


@register_analysis('linear_regression', 'Multiple linear regression with VIF and standardized betas')
async def run_linear_regression(
    gateway,
    data,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> LinearRegressionResult:
    request = build_linear_regression(data, columns)
    return await run_request(gateway, request, extract_linear_regression, timeout_ms)


# =============================================================================
# LOGISTIC REGRESSION
# =============================================================================

LOGISTIC_REGRESSION_SCHEMA = ResultSchema('logistic_regression', [
    strings('terms'),
    numbers('estimates'),
    numbers('std_errors'),
    numbers('z_values'),
    numbers('p_values'),
    numbers('odds_ratios'),
    numbers('conf_low'),
    numbers('conf_high'),
    number('aic'),
    number('null_deviance'),
    number('resid_deviance'),
    number('pseudo_r2'),
    integer('tn'),
    integer('fp'),
    integer('fn'),
    integer('tp'),
])


@dataclass
class LogisticCoefficient:
    term: str
    estimate: float
    std_error: float
    z_value: float
    p_value: float
    odds_ratio: float
    conf_low: Optional[float]
    conf_high: Optional[float]


@dataclass
class ConfusionMatrix:
    """Classification at the 0.5 probability threshold."""

    true_negative: int
    false_positive: int
    false_negative: int
    true_positive: int

    @property
    def total(self) -> int:
        return self.true_negative + self.false_positive + self.false_negative + self.true_positive

    @property
    def accuracy(self) -> float:
        total = self.total
        return (self.true_positive + self.true_negative) / total if total else math.nan


@dataclass
class LogisticRegressionResult(AnalysisResult):
    """
    Binomial GLM with logit link.

    Odds-ratio intervals are profile-likelihood intervals; they are None when
    profiling fails (e.g. under separation).
    """

    dependent: str
    coefficients: list
    aic: float
    null_deviance: float
    resid_deviance: float
    pseudo_r2: float
    confusion_matrix: ConfusionMatrix
    accuracy: float
    generated_code: str = ''


def build_logistic_regression(data, columns: Optional[Sequence[str]] = None) -> RRequest:
    matrix, names = validate_matrix(data, 'logistic_regression', columns, min_cols=2,
                                    check_variance=True)
    outcome = matrix[:, 0]
    if not np.all(np.isin(outcome, (0.0, 1.0))):
        raise DomainError(
            f"The dependent variable '{names[0]}' must be binary (0/1)",
            category='non_binary_outcome',
        )

    builder = RCodeBuilder('logistic_regression')
    safe = emit_data_frame(builder, matrix, names)
    builder.assign('conf_level', builder.number(CONFIDENCE_LEVEL))
    builder.block(MODEL_PREAMBLE)
    builder.block("""
model <- glm(model_formula, data = df, family = binomial(link = "logit"))
s <- summary(model)
coefs <- coef(s)

odds_ratios <- exp(coefs[, 1])
ci <- tryCatch(
    exp(suppressMessages(confint(model, level = conf_level))),
    error = function(e) matrix(NA_real_, nrow = nrow(coefs), ncol = 2)
)
ci <- matrix(ci, ncol = 2)

probs <- predict(model, type = "response")
preds <- factor(as.integer(probs > 0.5), levels = c(0, 1))
actual <- factor(df[, 1], levels = c(0, 1))
tbl <- table(preds, actual)
""")
    builder.returns(LOGISTIC_REGRESSION_SCHEMA, {
        'terms': 'rownames(coefs)',
        'estimates': 'unname(coefs[, 1])',
        'std_errors': 'unname(coefs[, 2])',
        'z_values': 'unname(coefs[, 3])',
        'p_values': 'unname(coefs[, 4])',
        'odds_ratios': 'unname(odds_ratios)',
        'conf_low': 'unname(ci[, 1])',
        'conf_high': 'unname(ci[, 2])',
        'aic': 'model$aic',
        'null_deviance': 'model$null.deviance',
        'resid_deviance': 'model$deviance',
        'pseudo_r2': '1 - model$deviance / model$null.deviance',
        'tn': 'tbl[1, 1]',
        'fp': 'tbl[2, 1]',
        'fn': 'tbl[1, 2]',
        'tp': 'tbl[2, 2]',
    })
    builder.label('dependent', names[0])
    builder.label('names', dict(zip(safe, names)))
    return builder.build()


def extract_logistic_regression(envelope: dict, request: RRequest) -> LogisticRegressionResult:
    values = request.schema.extract(envelope)
    terms = _display_terms(values['terms'], request.labels['names'])

    coefficients = [
        LogisticCoefficient(
            term=term,
            estimate=values['estimates'][i],
            std_error=values['std_errors'][i],
            z_value=values['z_values'][i],
            p_value=values['p_values'][i],
            odds_ratio=values['odds_ratios'][i],
            conf_low=_optional(values['conf_low'][i]),
            conf_high=_optional(values['conf_high'][i]),
        )
        for i, term in enumerate(terms)
    ]
    confusion = ConfusionMatrix(
        true_negative=values['tn'],
        false_positive=values['fp'],
        false_negative=values['fn'],
        true_positive=values['tp'],
    )
    return LogisticRegressionResult(
        dependent=request.labels['dependent'],
        coefficients=coefficients,
        aic=values['aic'],
        null_deviance=values['null_deviance'],
        resid_deviance=values['resid_deviance'],
        pseudo_r2=values['pseudo_r2'],
        confusion_matrix=confusion,
        accuracy=confusion.accuracy,
        generated_code=request.code,
    )


@register_analysis('logistic_regression', 'Binary logistic regression with odds ratios')
async def run_logistic_regression(
    gateway,
    data,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> LogisticRegressionResult:
    request = build_logistic_regression(data, columns)
    return await run_request(gateway, request, extract_logistic_regression, timeout_ms)
