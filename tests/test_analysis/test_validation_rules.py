"""
Tests for input validation.

Invalid inputs must fail before any R code is generated or submitted.
"""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from analysis.descriptive import run_descriptive_stats
from analysis.validation import (
    as_labels,
    as_matrix,
    group_labels,
    validate_groups,
    validate_matrix,
    validate_paired,
)
from engine.errors import DomainError
from conftest import run


class TestAsMatrix:
    def test_dataframe_names(self):
        matrix, names = as_matrix(pd.DataFrame({'a': [1, 2], 'b': [3, 4]}))
        assert names == ['a', 'b']
        assert matrix.shape == (2, 2)

    def test_vector_becomes_column(self):
        matrix, names = as_matrix([1, 2, 3])
        assert matrix.shape == (3, 1)
        assert names == ['V1']

    def test_column_count_mismatch(self):
        with pytest.raises(DomainError) as exc_info:
            as_matrix([[1, 2], [3, 4]], columns=['only'])
        assert exc_info.value.category == 'length_mismatch'

    def test_three_dimensional_rejected(self):
        with pytest.raises(DomainError) as exc_info:
            as_matrix(np.zeros((2, 2, 2)))
        assert exc_info.value.category == 'invalid_shape'


class TestValidateMatrix:
    def test_zero_variance_rejected_before_submission(self, fake_engine, gateway):
        df = pd.DataFrame({'x': [1.0, 2.0, 3.0], 'constant': [4.0, 4.0, 4.0]})

        with pytest.raises(DomainError) as exc_info:
            run(run_descriptive_stats(gateway, df))

        assert exc_info.value.category == 'zero_variance'
        assert "'constant'" in exc_info.value.message
        assert fake_engine.submitted == []
        assert fake_engine.all_codes == []

    @pytest.mark.parametrize('bad', [np.nan, np.inf, -np.inf])
    def test_non_finite_rejected(self, bad):
        with pytest.raises(DomainError) as exc_info:
            validate_matrix([[1.0, 2.0], [bad, 3.0], [2.0, 1.0]], 'descriptive')
        assert exc_info.value.category == 'non_finite_values'

    def test_minimum_rows(self):
        with pytest.raises(DomainError) as exc_info:
            validate_matrix([[1.0, 2.0]], 'correlation', min_cols=2)
        assert exc_info.value.category == 'insufficient_observations'

    def test_variance_check_can_be_skipped(self):
        matrix, _ = validate_matrix([[1.0], [1.0]], 'descriptive', check_variance=False)
        assert matrix.shape == (2, 1)


class TestGroups:
    def test_group_minimum_size_message(self):
        with pytest.raises(DomainError) as exc_info:
            validate_groups([[1.0, 2.0], [3.0]], 'ttest_independent')
        assert 'group 2' in exc_info.value.message

    def test_paired_length_mismatch(self):
        with pytest.raises(DomainError):
            validate_paired([1, 2, 3], [1, 2], 'ttest_paired')

    def test_default_group_labels(self):
        assert group_labels(None, 3) == ['G1', 'G2', 'G3']

    def test_labels_sanitized(self):
        assert group_labels(['Group "A"', 'B'], 2) == ['Group_A', 'B']

    def test_as_labels_none(self):
        assert as_labels(['a', None]) == ['a', '']

    def test_as_labels_empty(self):
        with pytest.raises(DomainError):
            as_labels([])
