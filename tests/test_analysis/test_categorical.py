"""Tests for the chi-square test of independence."""
from __future__ import annotations

import pytest

from analysis.categorical import build_chi_square, run_chi_square
from engine.errors import DomainError
from conftest import make_envelope, run


def chi_square_envelope(n_rows=2, n_cols=2, **overrides):
    cells = n_rows * n_cols
    fields = dict(
        statistic=4.2, df=(n_rows - 1) * (n_cols - 1), p_value=0.04, n=40,
        n_rows=n_rows, n_cols=n_cols,
        row_labels=[f"r{i}" for i in range(n_rows)],
        col_labels=[f"c{j}" for j in range(n_cols)],
        observed=[float(i + 1) for i in range(cells)],
        expected=[10.0] * cells,
        cramers_v=0.32, phi=0.32, fisher_p=0.05, odds_ratio=3.5,
        pct_expected_below_5=0.0, sparse_warning='',
    )
    fields.update(overrides)
    return make_envelope(**fields)


class TestChiSquare:
    """Tests for contingency-table analysis."""

    def test_labels_are_sanitized_in_code(self):
        request = build_chi_square(['a"x', 'b', 'a"x', 'b'], ['yes', 'no', 'no', 'yes'])
        assert 'row_var <- c("ax", "b", "ax", "b")' in request.code
        assert '"a\\"x"' not in request.code

    def test_2x2_result(self, fake_engine, gateway):
        fake_engine.script(chi_square_envelope())

        result = run(run_chi_square(gateway, ['a', 'b', 'a', 'b'], ['y', 'n', 'n', 'y']))

        assert result.is_2x2
        assert result.observed == [[1.0, 2.0], [3.0, 4.0]]
        assert result.odds_ratio == 3.5
        assert result.sparse_warning is None

    def test_larger_table_has_no_2x2_statistics(self, fake_engine, gateway):
        fake_engine.script(chi_square_envelope(
            n_rows=3, n_cols=2, phi=None, fisher_p=None, odds_ratio=None,
            pct_expected_below_5=50.0, sparse_warning='50% of expected counts are below 5',
        ))

        result = run(run_chi_square(
            gateway, ['a', 'b', 'c', 'a', 'b', 'c'], ['y', 'n', 'y', 'n', 'y', 'n']
        ))

        assert not result.is_2x2
        assert result.phi is None
        assert result.fisher_p is None
        assert len(result.expected) == 3
        assert result.sparse_warning.startswith('50%')

    def test_single_category_rejected(self, fake_engine, gateway):
        with pytest.raises(DomainError) as exc_info:
            run(run_chi_square(gateway, ['a', 'a', 'a'], ['y', 'n', 'y']))
        assert exc_info.value.category == 'insufficient_categories'
        assert fake_engine.submitted == []

    def test_length_mismatch(self):
        with pytest.raises(DomainError) as exc_info:
            build_chi_square(['a', 'b'], ['y', 'n', 'y'])
        assert exc_info.value.category == 'length_mismatch'

    def test_empty_labels_get_placeholder(self):
        request = build_chi_square(['', 'b', None, 'b'], ['y', 'n', 'n', 'y'])
        assert '"NA_label"' in request.code
