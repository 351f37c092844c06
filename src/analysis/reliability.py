"""
Scale reliability (Cronbach's alpha, McDonald's omega) and exploratory
factor analysis.

Usage
-----
    from analysis.reliability import run_cronbach_alpha, run_efa

    alpha = await run_cronbach_alpha(gateway, items, likert_min=1, likert_max=5)
    print(alpha.raw_alpha, alpha.omega_total)

    efa = await run_efa(gateway, items, rotation='oblimin')
    print(efa.n_factors_used, efa.factor_method)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from config import BOOTSTRAP_SEED, PARALLEL_ANALYSIS_ITERATIONS
from engine.codegen import RCodeBuilder, RRequest
from engine.errors import DomainError
from engine.marshal import ResultSchema, integer, matrix, number, numbers, sentinel, string, strings

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import require_variance, validate_matrix


# =============================================================================
# CRONBACH'S ALPHA / OMEGA
# =============================================================================

CRONBACH_SCHEMA = ResultSchema('cronbach_alpha', [
    number('raw_alpha'),
    number('std_alpha'),
    sentinel('omega_total'),
    sentinel('omega_h'),
    integer('n_items'),
    integer('n_obs'),
    integer('n_clamped'),
    number('average_r'),
    number('scale_mean'),
    number('scale_var'),
    numbers('scale_mean_deleted'),
    numbers('scale_var_deleted'),
    numbers('corrected_item_total'),
    numbers('alpha_if_deleted'),
])


@dataclass
class ItemTotalStatistics:
    item: str
    scale_mean_if_deleted: float
    scale_variance_if_deleted: float
    corrected_item_total_correlation: float
    alpha_if_item_deleted: float


@dataclass
class CronbachAlphaResult(AnalysisResult):
    """
    Internal consistency of a multi-item scale.

    ``omega_total`` and ``omega_h`` are ``NOT_COMPUTED`` for fewer than 3
    items or when the omega model cannot be estimated. ``n_clamped`` counts
    responses moved into ``[likert_min, likert_max]``.
    """

    raw_alpha: float
    std_alpha: float
    omega_total: float
    omega_h: float
    n_items: int
    n_obs: int
    likert_min: float
    likert_max: float
    n_clamped: int
    average_r: float
    scale_mean: float
    scale_var: float
    item_total_stats: list = field(default_factory=list)
    generated_code: str = ''

    @property
    def alpha(self) -> float:
        return self.raw_alpha


def build_cronbach_alpha(
    data,
    likert_min: float = 1,
    likert_max: float = 5,
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    if likert_min >= likert_max:
        raise DomainError(
            f"Invalid Likert range [{likert_min}, {likert_max}]", category='invalid_option'
        )
    items, names = validate_matrix(data, 'cronbach_alpha', columns, min_cols=2)
    # Items constant only after clamping into the valid range
    require_variance(np.clip(items, likert_min, likert_max), names)

    builder = RCodeBuilder('cronbach_alpha', libraries=['psych'])
    emit_data_frame(builder, items, names, var='raw_items')
    builder.assign('valid_min', builder.number(likert_min))
    builder.assign('valid_max', builder.number(likert_max))
    builder.block("""
# Clamp out-of-range responses into the valid Likert range
items <- as.data.frame(lapply(raw_items, function(x) pmax(pmin(x, valid_max), valid_min)))
n_clamped <- sum(as.matrix(items) != as.matrix(raw_items))
k <- ncol(items)

result <- alpha(items, check.keys = FALSE, warnings = FALSE)

omega_total <- NA
omega_h <- NA
if (k >= 3) {
    om <- tryCatch(
        omega(items, nfactors = 1, plot = FALSE, warnings = FALSE),
        error = function(e) NULL
    )
    if (!is.null(om)) {
        omega_total <- om$omega.tot
        omega_h <- om$omega_h
    }
}

totals <- rowSums(items)
rest <- lapply(seq_len(k), function(i) totals - items[[i]])
scale_mean_deleted <- vapply(rest, mean, numeric(1))
scale_var_deleted <- vapply(rest, var, numeric(1))
corrected_item_total <- vapply(seq_len(k), function(i) cor(items[[i]], rest[[i]]), numeric(1))
""")
    builder.returns(CRONBACH_SCHEMA, {
        'raw_alpha': 'result$total$raw_alpha',
        'std_alpha': 'result$total$std.alpha',
        'omega_total': 'omega_total',
        'omega_h': 'omega_h',
        'n_items': 'k',
        'n_obs': 'nrow(items)',
        'n_clamped': 'n_clamped',
        'average_r': 'result$total$average_r',
        'scale_mean': 'mean(totals)',
        'scale_var': 'var(totals)',
        'scale_mean_deleted': 'scale_mean_deleted',
        'scale_var_deleted': 'scale_var_deleted',
        'corrected_item_total': 'corrected_item_total',
        'alpha_if_deleted': 'result$alpha.drop$raw_alpha',
    })
    builder.label('items', names)
    builder.label('likert_range', (likert_min, likert_max))
    return builder.build()


def extract_cronbach_alpha(envelope: dict, request: RRequest) -> CronbachAlphaResult:
    values = request.schema.extract(envelope)
    names = request.labels['items']
    stats = [
        ItemTotalStatistics(
            item=name,
            scale_mean_if_deleted=values['scale_mean_deleted'][i],
            scale_variance_if_deleted=values['scale_var_deleted'][i],
            corrected_item_total_correlation=values['corrected_item_total'][i],
            alpha_if_item_deleted=values['alpha_if_deleted'][i],
        )
        for i, name in enumerate(names)
    ]
    likert_min, likert_max = request.labels['likert_range']
    return CronbachAlphaResult(
        raw_alpha=values['raw_alpha'],
        std_alpha=values['std_alpha'],
        omega_total=values['omega_total'],
        omega_h=values['omega_h'],
        n_items=values['n_items'],
        n_obs=values['n_obs'],
        likert_min=likert_min,
        likert_max=likert_max,
        n_clamped=values['n_clamped'],
        average_r=values['average_r'],
        scale_mean=values['scale_mean'],
        scale_var=values['scale_var'],
        item_total_stats=stats,
        generated_code=request.code,
    )


@register_analysis('cronbach_alpha', "Cronbach's alpha and McDonald's omega with item-total statistics")
async def run_cronbach_alpha(
    gateway,
    data,
    likert_min: float = 1,
    likert_max: float = 5,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> CronbachAlphaResult:
    request = build_cronbach_alpha(data, likert_min, likert_max, columns)
    return await run_request(gateway, request, extract_cronbach_alpha, timeout_ms)


# =============================================================================
# EXPLORATORY FACTOR ANALYSIS
# =============================================================================

ROTATIONS = ('none', 'varimax', 'quartimax', 'promax', 'oblimin', 'simplimax')
FACTOR_METHODS = ('pa', 'ml', 'minres')

EFA_SCHEMA = ResultSchema('efa', [
    number('kmo', optional=True),
    number('bartlett_p', optional=True),
    integer('n_factors_used'),
    integer('n_factors_suggested'),
    string('factor_method'),
    strings('factor_names'),
    matrix('loadings', ncol_field='n_factors_used'),
    matrix('structure', ncol_field='n_factors_used'),
    numbers('communalities'),
    numbers('eigenvalues'),
])


@dataclass
class EFAResult(AnalysisResult):
    """
    Exploratory factor analysis.

    ``factor_method`` records how the factor count was chosen: 'user'
    (explicit override), 'parallel' (parallel analysis) or 'kaiser'
    (eigenvalues > 1). Loadings and structure are variables x factors.
    """

    variables: list
    factor_names: list
    kmo: Optional[float]
    bartlett_p: Optional[float]
    loadings: list
    structure: list
    communalities: list
    eigenvalues: list
    n_factors_used: int
    n_factors_suggested: int
    factor_method: str
    rotation: str
    generated_code: str = ''


def build_efa(
    data,
    n_factors: Optional[int] = None,
    rotation: str = 'varimax',
    fm: str = 'pa',
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    items, names = validate_matrix(data, 'efa', columns, min_cols=2)
    if items.shape[0] < items.shape[1]:
        raise DomainError(
            f"The number of observations ({items.shape[0]}) is smaller than "
            f"the number of variables ({items.shape[1]})",
            category='insufficient_observations',
        )
    if n_factors is not None and not 1 <= int(n_factors) <= items.shape[1]:
        raise DomainError(
            f"Number of factors must be between 1 and {items.shape[1]}",
            category='invalid_option',
        )

    builder = RCodeBuilder('efa', libraries=['psych', 'GPArotation'])
    rotation_literal = builder.choice(rotation, ROTATIONS, 'rotation')
    fm_literal = builder.choice(fm, FACTOR_METHODS, 'factoring method')
    emit_data_frame(builder, items, names)
    builder.assign('n_factors_user', builder.number(int(n_factors or 0)))
    builder.assign('pa_iter', builder.number(PARALLEL_ANALYSIS_ITERATIONS))
    builder.assign('rotation_method', rotation_literal)
    builder.assign('fm_method', fm_literal)
    builder.line(f"set.seed({builder.number(BOOTSTRAP_SEED)})")
    builder.block("""
cor_mat <- cor(df)
eigenvalues <- eigen(cor_mat, symmetric = TRUE, only.values = TRUE)$values

n_parallel <- tryCatch({
    pa <- fa.parallel(df, fm = fm_method, fa = "fa", plot = FALSE, n.iter = pa_iter)
    pa$nfact
}, error = function(e) NA)
n_kaiser <- max(1, sum(eigenvalues > 1))

# Factor count priority: user override, parallel analysis, Kaiser criterion
if (n_factors_user >= 1) {
    n_factors <- n_factors_user
    factor_method <- "user"
} else if (!is.na(n_parallel) && n_parallel >= 1) {
    n_factors <- n_parallel
    factor_method <- "parallel"
} else {
    n_factors <- n_kaiser
    factor_method <- "kaiser"
}

kmo <- tryCatch(KMO(df)$MSA, error = function(e) NA)
bartlett_p <- tryCatch(cortest.bartlett(cor_mat, n = nrow(df))$p.value, error = function(e) NA)

efa <- fa(df, nfactors = n_factors, rotate = rotation_method, fm = fm_method)
loadings <- unclass(efa$loadings)
structure <- if (is.null(efa$Structure)) loadings else unclass(efa$Structure)
""")
    builder.returns(EFA_SCHEMA, {
        'kmo': 'kmo',
        'bartlett_p': 'bartlett_p',
        'n_factors_used': 'ncol(loadings)',
        'n_factors_suggested': 'if (is.na(n_parallel)) n_kaiser else n_parallel',
        'factor_method': 'factor_method',
        'factor_names': 'colnames(loadings)',
        'loadings': '.rowmajor(loadings)',
        'structure': '.rowmajor(structure)',
        'communalities': 'unname(efa$communality)',
        'eigenvalues': 'eigenvalues',
    })
    builder.label('variables', names)
    builder.label('rotation', rotation)
    return builder.build()


def extract_efa(envelope: dict, request: RRequest) -> EFAResult:
    values = request.schema.extract(envelope)
    return EFAResult(
        variables=list(request.labels['variables']),
        rotation=request.labels['rotation'],
        generated_code=request.code,
        **values,
    )


@register_analysis('efa', 'Exploratory factor analysis with parallel analysis, KMO and Bartlett')
async def run_efa(
    gateway,
    data,
    n_factors: Optional[int] = None,
    rotation: str = 'varimax',
    fm: str = 'pa',
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> EFAResult:
    request = build_efa(data, n_factors, rotation, fm, columns)
    return await run_request(gateway, request, extract_efa, timeout_ms)
