"""
Chi-square test of independence for two categorical variables.

Cramér's V is always reported; phi, Fisher's exact p-value and the odds
ratio exist only for 2x2 tables and are None otherwise.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import SPARSE_CELL_PCT_THRESHOLD
from engine.codegen import RCodeBuilder, RRequest, sanitize_label
from engine.errors import DomainError
from engine.marshal import ResultSchema, integer, matrix, number, string, strings

from .base import AnalysisResult, run_request
from .registry import register_analysis
from .validation import as_labels, require_min_rows, require_same_length

CHI_SQUARE_SCHEMA = ResultSchema('chi_square', [
    number('statistic'),
    number('df'),
    number('p_value'),
    integer('n'),
    integer('n_rows'),
    integer('n_cols'),
    strings('row_labels'),
    strings('col_labels'),
    matrix('observed', ncol_field='n_cols'),
    matrix('expected', ncol_field='n_cols'),
    number('cramers_v'),
    number('phi', optional=True),
    number('fisher_p', optional=True),
    number('odds_ratio', optional=True),
    number('pct_expected_below_5'),
    string('sparse_warning'),
])


@dataclass
class ChiSquareResult(AnalysisResult):
    statistic: float
    df: float
    p_value: float
    n: int
    row_labels: list
    col_labels: list
    observed: list
    expected: list
    cramers_v: float
    phi: Optional[float]
    fisher_p: Optional[float]
    odds_ratio: Optional[float]
    pct_expected_below_5: float
    sparse_warning: Optional[str]
    generated_code: str = ''

    @property
    def is_2x2(self) -> bool:
        return len(self.row_labels) == 2 and len(self.col_labels) == 2


def build_chi_square(row_values, col_values) -> RRequest:
    rows = as_labels(row_values, 'row variable')
    cols = as_labels(col_values, 'column variable')
    require_same_length(rows, cols, names=('row variable', 'column variable'))
    require_min_rows(len(rows), 'chi_square')

    for name, labels in (('row variable', rows), ('column variable', cols)):
        if len({sanitize_label(label) for label in labels}) < 2:
            raise DomainError(
                f"The {name} needs at least 2 categories",
                category='insufficient_categories',
            )

    builder = RCodeBuilder('chi_square')
    builder.assign('row_var', builder.string_vector(rows))
    builder.assign('col_var', builder.string_vector(cols))
    builder.assign('sparse_threshold', builder.number(SPARSE_CELL_PCT_THRESHOLD))
    builder.block("""
tbl <- table(row_var, col_var)
test <- chisq.test(tbl)
n <- sum(tbl)
chi2 <- unname(test$statistic)

pct_below_5 <- sum(test$expected < 5) / length(test$expected) * 100
sparse_warning <- if (pct_below_5 > sparse_threshold) {
    paste0(round(pct_below_5, 1), "% of expected counts are below 5; consider Fisher's exact test.")
} else {
    ""
}

phi <- NA
fisher_p <- NA
odds_ratio <- NA
if (nrow(tbl) == 2 && ncol(tbl) == 2) {
    ft <- fisher.test(tbl)
    fisher_p <- ft$p.value
    odds_ratio <- unname(ft$estimate)
    phi <- sqrt(chi2 / n)
}
cramers_v <- sqrt(chi2 / (n * (min(dim(tbl)) - 1)))
""")
    builder.returns(CHI_SQUARE_SCHEMA, {
        'statistic': 'chi2',
        'df': 'unname(test$parameter)',
        'p_value': 'test$p.value',
        'n': 'n',
        'n_rows': 'nrow(tbl)',
        'n_cols': 'ncol(tbl)',
        'row_labels': 'rownames(tbl)',
        'col_labels': 'colnames(tbl)',
        'observed': '.rowmajor(unclass(tbl))',
        'expected': '.rowmajor(test$expected)',
        'cramers_v': 'cramers_v',
        'phi': 'phi',
        'fisher_p': 'fisher_p',
        'odds_ratio': 'odds_ratio',
        'pct_expected_below_5': 'pct_below_5',
        'sparse_warning': 'sparse_warning',
    })
    return builder.build()


def extract_chi_square(envelope: dict, request: RRequest) -> ChiSquareResult:
    values = request.schema.extract(envelope)
    values.pop('n_rows')
    values.pop('n_cols')
    values['sparse_warning'] = values['sparse_warning'] or None
    return ChiSquareResult(generated_code=request.code, **values)


@register_analysis('chi_square', "Chi-square test of independence (with Fisher's exact for 2x2)")
async def run_chi_square(
    gateway,
    row_values,
    col_values,
    timeout_ms: Optional[int] = None,
) -> ChiSquareResult:
    request = build_chi_square(row_values, col_values)
    return await run_request(gateway, request, extract_chi_square, timeout_ms)
