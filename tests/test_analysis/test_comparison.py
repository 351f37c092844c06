"""
Tests for group comparison generators and extractors.

The engine is replaced by a scripted fake; these tests check the generated
code, the validation that happens before submission, and the typed results.
"""
from __future__ import annotations

import pytest

from analysis.base import is_computed
from analysis.comparison import (
    CLASSIC_ANOVA,
    WELCH_ANOVA,
    build_kruskal_wallis,
    build_mann_whitney,
    build_oneway_anova,
    build_ttest_independent,
    build_ttest_paired,
    run_kruskal_wallis,
    run_mann_whitney,
    run_oneway_anova,
    run_ttest_independent,
    run_ttest_paired,
    run_wilcoxon_signed_rank,
)
from config import NOT_COMPUTED
from engine.errors import DomainError
from conftest import make_envelope, run


def ttest_envelope(**overrides):
    fields = dict(
        t=-3.0, df=8.0, p_value=0.017, mean1=3.0, mean2=6.0, mean_diff=-3.0,
        ci_lower=-5.3, ci_upper=-0.7, effect_size=-1.9, var_test_p=0.8,
        var_equal=True, method='Student', normality_p1=0.97, normality_p2=0.97,
    )
    fields.update(overrides)
    return make_envelope(**fields)


class TestTTestIndependent:
    """Independent t-test (two small groups with a known mean difference)."""

    def test_generated_code_embeds_inputs(self):
        request = build_ttest_independent([1, 2, 3, 4, 5], [4, 5, 6, 7, 8])
        assert 'group1 <- c(1, 2, 3, 4, 5)' in request.code
        assert 'group2 <- c(4, 5, 6, 7, 8)' in request.code
        assert 't.test(group1, group2, var.equal = var_equal' in request.code
        assert 'mean_diff = mean(group1) - mean(group2)' in request.code

    def test_result(self, fake_engine, gateway):
        fake_engine.script(ttest_envelope())

        result = run(run_ttest_independent(gateway, [1, 2, 3, 4, 5], [4, 5, 6, 7, 8]))

        assert result.mean1 == 3.0
        assert result.mean2 == 6.0
        assert result.mean_diff == -3.0
        assert result.ci_lower < result.mean_diff < result.ci_upper
        assert result.var_equal is True
        assert result.method == 'Student'
        assert result.generated_code == fake_engine.submitted[0]

    def test_normality_not_computed_maps_to_sentinel(self, fake_engine, gateway):
        fake_engine.script(ttest_envelope(normality_p1=None, normality_p2=-1.0))

        result = run(run_ttest_independent(gateway, [1, 2], [4, 5, 7]))

        assert result.normality_p1 == NOT_COMPUTED
        assert result.normality_p2 == NOT_COMPUTED
        assert not is_computed(result.normality_p1)

    def test_levene_not_computable(self, fake_engine, gateway):
        fake_engine.script(ttest_envelope(var_test_p=None, var_equal=False, method='Welch'))

        result = run(run_ttest_independent(gateway, [1, 2, 3], [4, 5, 7]))

        assert result.var_test_p is None
        assert result.method == 'Welch'

    def test_summary(self, fake_engine, gateway):
        fake_engine.script(ttest_envelope())
        result = run(run_ttest_independent(gateway, [1, 2, 3, 4, 5], [4, 5, 6, 7, 8]))
        assert result.summary().startswith('Student t(8.00) = -3.000')

    def test_group_too_small(self, fake_engine, gateway):
        with pytest.raises(DomainError) as exc_info:
            run(run_ttest_independent(gateway, [1], [2, 3, 4]))
        assert exc_info.value.category == 'insufficient_observations'
        assert fake_engine.submitted == []

    def test_constant_pooled_sample(self):
        with pytest.raises(DomainError) as exc_info:
            build_ttest_independent([2, 2, 2], [2, 2])
        assert exc_info.value.category == 'zero_variance'

    def test_every_group_constant(self, fake_engine, gateway):
        """Distinct but constant groups leave no within-group variance."""
        with pytest.raises(DomainError) as exc_info:
            run(run_ttest_independent(gateway, [1, 1, 1, 1], [2, 2, 2, 2]))
        assert exc_info.value.category == 'zero_variance'
        assert fake_engine.submitted == []

    def test_one_varying_group_is_enough(self):
        request = build_ttest_independent([1, 1, 1, 1], [2, 3, 2, 3])
        assert 't.test' in request.code

    def test_nan_rejected(self):
        with pytest.raises(DomainError) as exc_info:
            build_ttest_independent([1, float('nan'), 3], [2, 3])
        assert exc_info.value.category == 'non_finite_values'


class TestTTestPaired:
    """Paired t-test."""

    def test_length_mismatch(self):
        with pytest.raises(DomainError) as exc_info:
            build_ttest_paired([1, 2, 3], [1, 2])
        assert exc_info.value.category == 'length_mismatch'

    def test_constant_differences(self):
        with pytest.raises(DomainError) as exc_info:
            build_ttest_paired([1, 2, 3], [2, 3, 4])
        assert exc_info.value.category == 'zero_variance'

    def test_result(self, fake_engine, gateway):
        fake_engine.script(make_envelope(
            t=2.5, df=4, p_value=0.06, mean_before=5.0, mean_after=4.0, mean_diff=1.0,
            ci_lower=-0.1, ci_upper=2.1, effect_size=1.1, normality_diff_p=None,
        ))

        result = run(run_ttest_paired(gateway, [5, 6, 4, 5, 5], [4, 4, 4, 3, 5]))

        assert result.mean_diff == 1.0
        assert result.normality_diff_p == NOT_COMPUTED
        assert 'paired = TRUE' in result.generated_code


class TestOneWayAnova:
    """One-way ANOVA and its variance-homogeneity branch."""

    def anova_envelope(self, method=CLASSIC_ANOVA, **overrides):
        fields = dict(
            f=12.0, df_between=2, df_within=12, p_value=0.001,
            group_means=[2.0, 4.0, 6.0], grand_mean=4.0, eta_squared=0.67,
            levene_p=0.5, normality_resid_p=0.4, method_used=method,
            post_hoc_note='Variances equal', post_hoc_comparisons=['B-A', 'C-A', 'C-B'],
            post_hoc_diffs=[2.0, 4.0, 2.0], post_hoc_p_adj=[0.04, 0.001, 0.04],
        )
        fields.update(overrides)
        return make_envelope(**fields)

    def test_code_contains_both_branches(self):
        request = build_oneway_anova([[1, 2, 3], [3, 4, 5], [5, 6, 7]], labels=['A', 'B', 'C'])
        assert 'TukeyHSD(model)' in request.code
        assert 'games_howell(values, groups)' in request.code
        assert 'levels = c("A", "B", "C")' in request.code

    def test_classic_branch(self, fake_engine, gateway):
        fake_engine.script(self.anova_envelope())

        result = run(run_oneway_anova(
            gateway, [[1, 2, 3], [3, 4, 5], [5, 6, 7]], labels=['A', 'B', 'C']
        ))

        assert result.method_used == CLASSIC_ANOVA
        assert result.group_labels == ['A', 'B', 'C']
        assert [c.comparison for c in result.post_hoc] == ['B-A', 'C-A', 'C-B']
        assert result.post_hoc[1].p_adj == 0.001

    def test_welch_branch(self, fake_engine, gateway):
        fake_engine.script(self.anova_envelope(
            method=WELCH_ANOVA, levene_p=0.01, post_hoc_note='Variances unequal',
        ))

        result = run(run_oneway_anova(gateway, [[1, 2, 3], [3, 4, 15], [5, 6, 7]]))

        assert result.method_used == WELCH_ANOVA
        assert result.group_labels == ['G1', 'G2', 'G3']

    def test_labels_must_match_groups(self):
        with pytest.raises(DomainError) as exc_info:
            build_oneway_anova([[1, 2], [3, 4]], labels=['only one'])
        assert exc_info.value.category == 'length_mismatch'

    def test_labels_unique_after_sanitizing(self):
        with pytest.raises(DomainError) as exc_info:
            build_oneway_anova([[1, 2], [3, 4]], labels=['a b', 'a_b'])
        assert exc_info.value.category == 'duplicate_labels'

    def test_single_group_rejected(self):
        with pytest.raises(DomainError) as exc_info:
            build_oneway_anova([[1, 2, 3]])
        assert exc_info.value.category == 'insufficient_groups'

    def test_every_group_constant(self):
        with pytest.raises(DomainError) as exc_info:
            build_oneway_anova([[1, 1, 1], [2, 2, 2], [3, 3, 3]])
        assert exc_info.value.category == 'zero_variance'


class TestNonParametric:
    """Mann-Whitney, Kruskal-Wallis and Wilcoxon signed-rank."""

    def test_mann_whitney(self, fake_engine, gateway):
        fake_engine.script(make_envelope(
            statistic=2.0, p_value=0.03, median1=2.0, median2=7.0, effect_size=0.68,
            skew1=0.1, skew2=0.2, shape_note='Similar distribution shapes: compares medians',
        ))

        result = run(run_mann_whitney(gateway, [1, 2, 3, 2], [6, 7, 8, 7]))

        assert result.statistic == 2.0
        assert 'medians' in result.shape_note
        assert 'wilcox.test(g1, g2, exact = FALSE)' in result.generated_code

    def test_rank_tests_accept_constant_groups(self):
        """Fully separated constant groups are still rankable."""
        assert build_mann_whitney([1, 1, 1], [2, 2, 2]).code
        assert build_kruskal_wallis([[1, 1], [2, 2], [3, 3]]).code

    def test_kruskal_wallis(self, fake_engine, gateway):
        fake_engine.script(make_envelope(
            statistic=9.8, df=2, p_value=0.007, medians=[2.0, 5.0, 8.0],
            epsilon_squared=0.7, method='Kruskal-Wallis rank sum test',
        ))

        result = run(run_kruskal_wallis(
            gateway, [[1, 2, 3], [4, 5, 6], [7, 8, 9]], labels=['low', 'mid', 'high']
        ))

        assert result.group_labels == ['low', 'mid', 'high']
        assert result.medians == [2.0, 5.0, 8.0]

    def test_wilcoxon_signed_rank(self, fake_engine, gateway):
        fake_engine.script(make_envelope(
            statistic=15.0, p_value=0.04, median_diff=1.5, effect_size=0.9,
            method='Wilcoxon signed rank test with continuity correction',
        ))

        result = run(run_wilcoxon_signed_rank(gateway, [5, 6, 7, 8, 9], [4, 4, 5, 6, 8]))

        assert result.median_diff == 1.5
        assert 'paired = TRUE' in result.generated_code
