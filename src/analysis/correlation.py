"""
Correlation matrices (psych::corr.test).

Pearson, Spearman or Kendall coefficients with unadjusted pairwise p-values.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from engine.codegen import RCodeBuilder, RRequest
from engine.marshal import ResultSchema, integer, matrix, string

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import validate_matrix

METHODS = ('pearson', 'spearman', 'kendall')

CORRELATION_SCHEMA = ResultSchema('correlation', [
    integer('n_cols'),
    integer('n_obs'),
    matrix('correlation', ncol_field='n_cols'),
    matrix('p_values', ncol_field='n_cols'),
    string('method'),
])


@dataclass
class CorrelationResult(AnalysisResult):
    variables: list
    correlation_matrix: list
    p_values: list
    method: str
    n_obs: int
    generated_code: str = ''

    def get(self, first: str, second: str) -> tuple[float, float]:
        """(r, p) for a pair of variables."""
        i, j = self.variables.index(first), self.variables.index(second)
        return self.correlation_matrix[i][j], self.p_values[i][j]


def build_correlation(
    data,
    method: str = 'pearson',
    columns: Optional[Sequence[str]] = None,
) -> RRequest:
    data_matrix, names = validate_matrix(data, 'correlation', columns, min_cols=2)

    builder = RCodeBuilder('correlation', libraries=['psych'])
    method_literal = builder.choice(method, METHODS, 'correlation method')
    emit_data_frame(builder, data_matrix, names)
    builder.assign('method_name', method_literal)
    builder.assign(
        'ct', 'corr.test(df, use = "pairwise", method = method_name, adjust = "none")'
    )
    builder.returns(CORRELATION_SCHEMA, {
        'n_cols': 'ncol(df)',
        'n_obs': 'nrow(df)',
        'correlation': '.rowmajor(ct$r)',
        'p_values': '.rowmajor(ct$p)',
        'method': 'method_name',
    })
    builder.label('variables', names)
    return builder.build()


def extract_correlation(envelope: dict, request: RRequest) -> CorrelationResult:
    values = request.schema.extract(envelope)
    return CorrelationResult(
        variables=list(request.labels['variables']),
        correlation_matrix=values['correlation'],
        p_values=values['p_values'],
        method=values['method'],
        n_obs=values['n_obs'],
        generated_code=request.code,
    )


@register_analysis('correlation', 'Correlation matrix (Pearson, Spearman, Kendall)')
async def run_correlation(
    gateway,
    data,
    method: str = 'pearson',
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> CorrelationResult:
    request = build_correlation(data, method, columns)
    return await run_request(gateway, request, extract_correlation, timeout_ms)
