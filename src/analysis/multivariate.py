"""
Multivariate analyses: k-means clustering and two-way ANOVA.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from config import CLUSTER_NSTART, CLUSTER_SEED, SILHOUETTE_MAX_N
from engine.codegen import RCodeBuilder, RRequest, sanitize_label
from engine.errors import DomainError
from engine.marshal import ResultSchema, integer, matrix, number, numbers, sentinel, strings

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import (
    as_labels,
    as_vector,
    require_finite,
    require_min_rows,
    require_same_length,
    require_variance,
    validate_matrix,
)


# =============================================================================
# K-MEANS CLUSTERING
# =============================================================================

CLUSTER_SCHEMA = ResultSchema('cluster', [
    integer('k'),
    integer('n_cols'),
    numbers('assignments'),
    matrix('centers', ncol_field='n_cols'),
    matrix('centers_original', ncol_field='n_cols'),
    numbers('sizes'),
    numbers('withinss'),
    number('tot_withinss'),
    number('betweenss'),
    number('totss'),
    sentinel('silhouette'),
])


@dataclass
class ClusterResult(AnalysisResult):
    """
    K-means on standardized variables.

    ``centers`` are in standardized units, ``centers_original`` in the units
    of the input. ``silhouette`` is ``NOT_COMPUTED`` for large samples.
    """

    variables: list
    k: int
    assignments: list
    centers: list
    centers_original: list
    sizes: list
    withinss: list
    tot_withinss: float
    betweenss: float
    totss: float
    silhouette: float
    generated_code: str = ''

    @property
    def between_ratio(self) -> float:
        """Share of total variance explained by the clustering."""
        return self.betweenss / self.totss if self.totss else math.nan


def build_cluster_analysis(
    data,
    k: int = 3,
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    data_matrix, names = validate_matrix(data, 'cluster', columns, min_cols=1)
    k = int(k)
    if not 2 <= k < data_matrix.shape[0]:
        raise DomainError(
            f"Number of clusters must be between 2 and {data_matrix.shape[0] - 1}",
            category='invalid_option',
        )

    builder = RCodeBuilder('cluster', libraries=['cluster'])
    emit_data_frame(builder, data_matrix, names)
    builder.assign('k', builder.number(k))
    builder.assign('sil_max_n', builder.number(SILHOUETTE_MAX_N))
    builder.line(f"set.seed({builder.number(CLUSTER_SEED)})")
    builder.block("""
df_scaled <- scale(df)
""")
    builder.line(
        f"km <- kmeans(df_scaled, centers = k, nstart = {builder.number(CLUSTER_NSTART)})"
    )
    builder.block("""
centers_original <- sweep(sweep(km$centers, 2, attr(df_scaled, "scaled:scale"), `*`),
                          2, attr(df_scaled, "scaled:center"), `+`)

# Silhouette needs the full distance matrix
silhouette_score <- NA
if (nrow(df) < sil_max_n) {
    sil <- silhouette(km$cluster, dist(df_scaled))
    silhouette_score <- mean(sil[, 3])
}
""")
    builder.returns(CLUSTER_SCHEMA, {
        'k': 'nrow(km$centers)',
        'n_cols': 'ncol(km$centers)',
        'assignments': 'unname(km$cluster)',
        'centers': '.rowmajor(km$centers)',
        'centers_original': '.rowmajor(centers_original)',
        'sizes': 'km$size',
        'withinss': 'km$withinss',
        'tot_withinss': 'km$tot.withinss',
        'betweenss': 'km$betweenss',
        'totss': 'km$totss',
        'silhouette': 'silhouette_score',
    })
    builder.label('variables', names)
    return builder.build()


def extract_cluster_analysis(envelope: dict, request: RRequest) -> ClusterResult:
    values = request.schema.extract(envelope)
    values.pop('n_cols')
    values['assignments'] = [int(v) for v in values['assignments']]
    values['sizes'] = [int(v) for v in values['sizes']]
    return ClusterResult(
        variables=list(request.labels['variables']),
        generated_code=request.code,
        **values,
    )


@register_analysis('cluster', 'K-means cluster analysis on standardized variables')
async def run_cluster_analysis(
    gateway,
    data,
    k: int = 3,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> ClusterResult:
    request = build_cluster_analysis(data, k, columns)
    return await run_request(gateway, request, extract_cluster_analysis, timeout_ms)


# =============================================================================
# TWO-WAY ANOVA
# =============================================================================

TWO_WAY_SCHEMA = ResultSchema('two_way_anova', [
    strings('terms'),
    numbers('df'),
    numbers('sum_sq'),
    numbers('mean_sq'),
    numbers('f_value'),
    numbers('p_value'),
    numbers('partial_eta_sq'),
    strings('cell_a'),
    strings('cell_b'),
    numbers('cell_mean'),
    numbers('cell_n'),
])


@dataclass
class AnovaTerm:
    term: str
    df: float
    sum_sq: float
    mean_sq: float
    f_value: Optional[float]
    p_value: Optional[float]
    partial_eta_sq: Optional[float]


@dataclass
class CellMean:
    level_a: str
    level_b: str
    mean: float
    n: int


@dataclass
class TwoWayAnovaResult(AnalysisResult):
    """Factorial ANOVA with interaction (Type I sums of squares)."""

    dependent: str
    factor_a: str
    factor_b: str
    table: list = field(default_factory=list)
    cell_means: list = field(default_factory=list)
    generated_code: str = ''

    def term(self, name: str) -> Optional[AnovaTerm]:
        for row in self.table:
            if row.term == name:
                return row
        return None

    @property
    def interaction(self) -> Optional[AnovaTerm]:
        return self.term(f"{self.factor_a}:{self.factor_b}")


def build_two_way_anova(
    y,
    factor_a,
    factor_b,
    y_name: str = 'y',
    a_name: str = 'Factor A',
    b_name: str = 'Factor B',
) -> RRequest:
    outcome = as_vector(y, y_name)
    levels_a = [sanitize_label(v) for v in as_labels(factor_a, a_name)]
    levels_b = [sanitize_label(v) for v in as_labels(factor_b, b_name)]
    require_same_length(outcome, levels_a, levels_b, names=(y_name, a_name, b_name))
    require_min_rows(outcome.size, 'two_way_anova')
    require_finite(outcome, y_name)
    require_variance(outcome.reshape(-1, 1), [y_name])
    for name, levels in ((a_name, levels_a), (b_name, levels_b)):
        if len(set(levels)) < 2:
            raise DomainError(
                f"Factor {name!r} needs at least 2 levels", category='insufficient_categories'
            )

    builder = RCodeBuilder('two_way_anova')
    builder.assign('y', builder.numeric_vector(outcome))
    builder.assign('f1', f"factor({builder.string_vector(levels_a, sanitize=False)})")
    builder.assign('f2', f"factor({builder.string_vector(levels_b, sanitize=False)})")
    builder.block("""
df <- data.frame(y = y, f1 = f1, f2 = f2)
model <- aov(y ~ f1 * f2, data = df)
res <- summary(model)[[1]]
ss <- res[, "Sum Sq"]
ss_resid <- ss[length(ss)]
partial_eta <- c(ss[-length(ss)] / (ss[-length(ss)] + ss_resid), NA)

cells <- aggregate(y ~ f1 + f2, data = df, FUN = mean)
counts <- aggregate(y ~ f1 + f2, data = df, FUN = length)
""")
    builder.returns(TWO_WAY_SCHEMA, {
        'terms': 'trimws(rownames(res))',
        'df': 'res[, "Df"]',
        'sum_sq': 'ss',
        'mean_sq': 'res[, "Mean Sq"]',
        'f_value': 'res[, "F value"]',
        'p_value': 'res[, "Pr(>F)"]',
        'partial_eta_sq': 'partial_eta',
        'cell_a': 'as.character(cells$f1)',
        'cell_b': 'as.character(cells$f2)',
        'cell_mean': 'cells$y',
        'cell_n': 'counts$y',
    })
    builder.label('names', {'y': y_name, 'f1': a_name, 'f2': b_name})
    return builder.build()


def display_term(term: str, names: dict) -> str:
    """Map an R term (``f1``, ``f1:f2``, ``Residuals``) to display names."""
    return ':'.join(names.get(part, part) for part in term.split(':'))


def _optional(value: float) -> Optional[float]:
    return None if math.isnan(value) else value


def extract_two_way_anova(envelope: dict, request: RRequest) -> TwoWayAnovaResult:
    values = request.schema.extract(envelope)
    names = request.labels['names']
    table = [
        AnovaTerm(
            term=display_term(term, names),
            df=df,
            sum_sq=ss,
            mean_sq=ms,
            f_value=_optional(f),
            p_value=_optional(p),
            partial_eta_sq=_optional(eta),
        )
        for term, df, ss, ms, f, p, eta in zip(
            values['terms'], values['df'], values['sum_sq'], values['mean_sq'],
            values['f_value'], values['p_value'], values['partial_eta_sq'],
        )
    ]
    cell_means = [
        CellMean(level_a=a, level_b=b, mean=m, n=int(n))
        for a, b, m, n in zip(
            values['cell_a'], values['cell_b'], values['cell_mean'], values['cell_n']
        )
    ]
    return TwoWayAnovaResult(
        dependent=names['y'],
        factor_a=names['f1'],
        factor_b=names['f2'],
        table=table,
        cell_means=cell_means,
        generated_code=request.code,
    )


@register_analysis('two_way_anova', 'Two-way ANOVA with interaction and cell means')
async def run_two_way_anova(
    gateway,
    y,
    factor_a,
    factor_b,
    y_name: str = 'y',
    a_name: str = 'Factor A',
    b_name: str = 'Factor B',
    timeout_ms: Optional[int] = None,
) -> TwoWayAnovaResult:
    request = build_two_way_anova(y, factor_a, factor_b, y_name, a_name, b_name)
    return await run_request(gateway, request, extract_two_way_anova, timeout_ms)
