"""
Descriptive statistics (psych::describe).

Usage
-----
    from analysis.descriptive import run_descriptive_stats

    result = await run_descriptive_stats(gateway, df[['age', 'income']])
    print(result.get('age'))
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from engine.codegen import RCodeBuilder, RRequest
from engine.marshal import ResultSchema, numbers

from .base import AnalysisResult, emit_data_frame, run_request
from .registry import register_analysis
from .validation import validate_matrix

STATISTICS = ('mean', 'sd', 'min', 'max', 'median', 'n', 'skew', 'kurtosis', 'se')

DESCRIPTIVE_SCHEMA = ResultSchema('descriptive', [numbers(name) for name in STATISTICS])


@dataclass
class DescriptiveResult(AnalysisResult):
    """Per-variable summary statistics, aligned with ``variables``."""

    variables: list
    mean: list
    sd: list
    min: list
    max: list
    median: list
    n: list
    skew: list
    kurtosis: list
    se: list
    generated_code: str = ''

    def get(self, variable: str) -> dict:
        """All statistics for one variable."""
        idx = self.variables.index(variable)
        return {name: getattr(self, name)[idx] for name in STATISTICS}


def build_descriptive_stats(data, columns: Optional[Sequence[str]] = None) -> RRequest:
    matrix, names = validate_matrix(data, 'descriptive', columns)

    builder = RCodeBuilder('descriptive', libraries=['psych'])
    emit_data_frame(builder, matrix, names)
    builder.assign('desc', 'describe(df)')
    builder.returns(DESCRIPTIVE_SCHEMA, {name: f"desc${name}" for name in STATISTICS})
    builder.label('variables', names)
    return builder.build()


def extract_descriptive_stats(envelope: dict, request: RRequest) -> DescriptiveResult:
    values = request.schema.extract(envelope)
    return DescriptiveResult(
        variables=list(request.labels['variables']),
        generated_code=request.code,
        **values,
    )


@register_analysis('descriptive', 'Descriptive statistics (mean, SD, skewness, kurtosis)')
async def run_descriptive_stats(
    gateway,
    data,
    columns: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> DescriptiveResult:
    request = build_descriptive_stats(data, columns)
    return await run_request(gateway, request, extract_descriptive_stats, timeout_ms)
