"""
Group comparisons: t-tests, one-way ANOVA and their non-parametric variants.

Variance-homogeneity policy
---------------------------
The Brown-Forsythe variant of Levene's test (ANOVA on absolute deviations
from group medians) decides between the pooled-variance and the Welch form:

- independent t-test: Student when p > alpha, Welch otherwise
- one-way ANOVA: classic ANOVA + Tukey HSD when p >= alpha, Welch ANOVA +
  Games-Howell otherwise

Normality sub-tests (Shapiro-Wilk) report ``NOT_COMPUTED`` when the sample
is outside 3..5000 observations or constant.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from config import CONFIDENCE_LEVEL, SIGNIFICANCE_LEVEL
from engine.codegen import RCodeBuilder, RRequest
from engine.marshal import ResultSchema, boolean, number, numbers, sentinel, string, strings
from utils.helpers import format_ci, format_pvalue

from .base import AnalysisResult, emit_groups, run_request
from .registry import register_analysis
from .validation import group_labels, validate_groups, validate_paired


# =============================================================================
# INDEPENDENT SAMPLES T-TEST
# =============================================================================

TTEST_INDEPENDENT_SCHEMA = ResultSchema('ttest_independent', [
    number('t'),
    number('df'),
    number('p_value'),
    number('mean1'),
    number('mean2'),
    number('mean_diff'),
    number('ci_lower'),
    number('ci_upper'),
    number('effect_size'),
    number('var_test_p', optional=True),
    boolean('var_equal'),
    string('method'),
    sentinel('normality_p1'),
    sentinel('normality_p2'),
])


@dataclass
class TTestIndependentResult(AnalysisResult):
    """
    Independent samples t-test.

    ``method`` is 'Student' (pooled variance) or 'Welch'; ``effect_size`` is
    Cohen's d with the pooled standard deviation.
    """

    t: float
    df: float
    p_value: float
    mean1: float
    mean2: float
    mean_diff: float
    ci_lower: float
    ci_upper: float
    effect_size: float
    var_test_p: Optional[float]
    var_equal: bool
    method: str
    normality_p1: float
    normality_p2: float
    generated_code: str = ''

    def summary(self) -> str:
        return (
            f"{self.method} t({self.df:.2f}) = {self.t:.3f}, p = {format_pvalue(self.p_value)}, "
            f"diff = {self.mean_diff:.3f} {format_ci(self.ci_lower, self.ci_upper)}, "
            f"d = {self.effect_size:.3f}"
        )


def build_ttest_independent(group1, group2) -> RRequest:
    first, second = validate_groups([group1, group2], 'ttest_independent')

    builder = RCodeBuilder('ttest_independent')
    builder.assign('group1', builder.numeric_vector(first))
    builder.assign('group2', builder.numeric_vector(second))
    builder.assign('alpha', builder.number(SIGNIFICANCE_LEVEL))
    builder.assign('conf_level', builder.number(CONFIDENCE_LEVEL))
    builder.block("""
normality_p1 <- .shapiro_p(group1)
normality_p2 <- .shapiro_p(group2)

# Brown-Forsythe test on absolute deviations from the group medians
z <- c(abs(group1 - median(group1)), abs(group2 - median(group2)))
g <- factor(c(rep(1, length(group1)), rep(2, length(group2))))
levene_p <- tryCatch(oneway.test(z ~ g, var.equal = TRUE)$p.value, error = function(e) NA)
var_equal <- isTRUE(levene_p > alpha)

result <- t.test(group1, group2, var.equal = var_equal, conf.level = conf_level)

n1 <- length(group1)
n2 <- length(group2)
pooled_sd <- sqrt(((n1 - 1) * var(group1) + (n2 - 1) * var(group2)) / (n1 + n2 - 2))
cohens_d <- (mean(group1) - mean(group2)) / pooled_sd
""")
    builder.returns(TTEST_INDEPENDENT_SCHEMA, {
        't': 'unname(result$statistic)',
        'df': 'unname(result$parameter)',
        'p_value': 'result$p.value',
        'mean1': 'mean(group1)',
        'mean2': 'mean(group2)',
        'mean_diff': 'mean(group1) - mean(group2)',
        'ci_lower': 'result$conf.int[1]',
        'ci_upper': 'result$conf.int[2]',
        'effect_size': 'cohens_d',
        'var_test_p': 'levene_p',
        'var_equal': 'var_equal',
        'method': 'if (var_equal) "Student" else "Welch"',
        'normality_p1': 'normality_p1',
        'normality_p2': 'normality_p2',
    })
    return builder.build()


def extract_ttest_independent(envelope: dict, request: RRequest) -> TTestIndependentResult:
    return TTestIndependentResult(generated_code=request.code, **request.schema.extract(envelope))


@register_analysis('ttest_independent', 'Independent samples t-test (Student or Welch)')
async def run_ttest_independent(
    gateway,
    group1,
    group2,
    timeout_ms: Optional[int] = None,
) -> TTestIndependentResult:
    request = build_ttest_independent(group1, group2)
    return await run_request(gateway, request, extract_ttest_independent, timeout_ms)


# =============================================================================
# PAIRED SAMPLES T-TEST
# =============================================================================

TTEST_PAIRED_SCHEMA = ResultSchema('ttest_paired', [
    number('t'),
    number('df'),
    number('p_value'),
    number('mean_before'),
    number('mean_after'),
    number('mean_diff'),
    number('ci_lower'),
    number('ci_upper'),
    number('effect_size'),
    sentinel('normality_diff_p'),
])


@dataclass
class TTestPairedResult(AnalysisResult):
    t: float
    df: float
    p_value: float
    mean_before: float
    mean_after: float
    mean_diff: float
    ci_lower: float
    ci_upper: float
    effect_size: float
    normality_diff_p: float
    generated_code: str = ''

    def summary(self) -> str:
        return (
            f"Paired t({self.df:.0f}) = {self.t:.3f}, p = {format_pvalue(self.p_value)}, "
            f"d = {self.effect_size:.3f}"
        )


def build_ttest_paired(before, after) -> RRequest:
    first, second = validate_paired(before, after, 'ttest_paired')

    builder = RCodeBuilder('ttest_paired')
    builder.assign('before', builder.numeric_vector(first))
    builder.assign('after', builder.numeric_vector(second))
    builder.assign('conf_level', builder.number(CONFIDENCE_LEVEL))
    builder.block("""
diffs <- before - after
normality_diff_p <- .shapiro_p(diffs)
result <- t.test(before, after, paired = TRUE, conf.level = conf_level)
cohens_d <- mean(diffs) / sd(diffs)
""")
    builder.returns(TTEST_PAIRED_SCHEMA, {
        't': 'unname(result$statistic)',
        'df': 'unname(result$parameter)',
        'p_value': 'result$p.value',
        'mean_before': 'mean(before)',
        'mean_after': 'mean(after)',
        'mean_diff': 'mean(diffs)',
        'ci_lower': 'result$conf.int[1]',
        'ci_upper': 'result$conf.int[2]',
        'effect_size': 'cohens_d',
        'normality_diff_p': 'normality_diff_p',
    })
    return builder.build()


def extract_ttest_paired(envelope: dict, request: RRequest) -> TTestPairedResult:
    return TTestPairedResult(generated_code=request.code, **request.schema.extract(envelope))


@register_analysis('ttest_paired', 'Paired samples t-test')
async def run_ttest_paired(
    gateway,
    before,
    after,
    timeout_ms: Optional[int] = None,
) -> TTestPairedResult:
    request = build_ttest_paired(before, after)
    return await run_request(gateway, request, extract_ttest_paired, timeout_ms)


# =============================================================================
# ONE-WAY ANOVA
# =============================================================================

CLASSIC_ANOVA = 'Classic ANOVA'
WELCH_ANOVA = 'Welch ANOVA'

ONEWAY_ANOVA_SCHEMA = ResultSchema('oneway_anova', [
    number('f'),
    number('df_between'),
    number('df_within'),
    number('p_value'),
    numbers('group_means'),
    number('grand_mean'),
    number('eta_squared'),
    number('levene_p', optional=True),
    sentinel('normality_resid_p'),
    string('method_used'),
    string('post_hoc_note'),
    strings('post_hoc_comparisons'),
    numbers('post_hoc_diffs'),
    numbers('post_hoc_p_adj'),
])

GAMES_HOWELL = """
# Games-Howell: Welch t per pair, p from the studentized range (q = t * sqrt(2))
games_howell <- function(vals, grps) {
    means <- tapply(vals, grps, mean)
    vars <- tapply(vals, grps, var)
    ns <- tapply(vals, grps, length)
    lv <- levels(grps)
    k <- length(lv)
    combs <- combn(k, 2)
    comparisons <- character(ncol(combs))
    diffs <- numeric(ncol(combs))
    p_adj <- numeric(ncol(combs))
    for (i in seq_len(ncol(combs))) {
        a <- combs[1, i]
        b <- combs[2, i]
        se2 <- vars[a] / ns[a] + vars[b] / ns[b]
        t_val <- abs(means[b] - means[a]) / sqrt(se2)
        df <- se2^2 / ((vars[a] / ns[a])^2 / (ns[a] - 1) + (vars[b] / ns[b])^2 / (ns[b] - 1))
        comparisons[i] <- paste0(lv[b], "-", lv[a])
        diffs[i] <- means[b] - means[a]
        p_adj[i] <- ptukey(t_val * sqrt(2), k, df, lower.tail = FALSE)
    }
    list(comparisons = comparisons, diffs = unname(diffs), p_adj = unname(p_adj))
}
"""


@dataclass
class PostHocComparison:
    comparison: str
    diff: float
    p_adj: float


@dataclass
class OneWayAnovaResult(AnalysisResult):
    """
    One-way ANOVA with an automatic variance-homogeneity branch.

    ``method_used`` names the branch and ``post_hoc_note`` explains why it
    was chosen.
    """

    f: float
    df_between: float
    df_within: float
    p_value: float
    group_labels: list
    group_means: list
    grand_mean: float
    eta_squared: float
    levene_p: Optional[float]
    normality_resid_p: float
    method_used: str
    post_hoc_note: str
    post_hoc: list = field(default_factory=list)
    generated_code: str = ''


def build_oneway_anova(groups: Sequence, labels: Optional[Sequence[str]] = None) -> RRequest:
    arrays = validate_groups(groups, 'oneway_anova')
    names = group_labels(labels, len(arrays))

    builder = RCodeBuilder('oneway_anova')
    emit_groups(builder, arrays, names)
    builder.assign('alpha', builder.number(SIGNIFICANCE_LEVEL))
    builder.block(GAMES_HOWELL)
    builder.block(f"""
# Brown-Forsythe test
deviations <- abs(values - ave(values, groups, FUN = median))
levene_p <- tryCatch(summary(aov(deviations ~ groups))[[1]][1, 5], error = function(e) NA)

model <- aov(values ~ groups)
if (isTRUE(levene_p < alpha)) {{
    welch <- oneway.test(values ~ groups, var.equal = FALSE)
    f_stat <- unname(welch$statistic)
    df_between <- unname(welch$parameter[1])
    df_within <- unname(welch$parameter[2])
    p_val <- welch$p.value
    eta_squared <- (f_stat * df_between) / (f_stat * df_between + df_within)
    method_used <- "{WELCH_ANOVA}"
    gh <- games_howell(values, groups)
    ph_comparisons <- gh$comparisons
    ph_diffs <- gh$diffs
    ph_padj <- gh$p_adj
    post_hoc_note <- paste0("Variances unequal (Levene p = ", signif(levene_p, 3),
                            " < ", alpha, "): Welch ANOVA with Games-Howell post-hoc.")
}} else {{
    tab <- summary(model)[[1]]
    f_stat <- tab[1, 4]
    df_between <- tab[1, 1]
    df_within <- tab[2, 1]
    p_val <- tab[1, 5]
    eta_squared <- tab[1, 2] / (tab[1, 2] + tab[2, 2])
    method_used <- "{CLASSIC_ANOVA}"
    tukey <- TukeyHSD(model)$groups
    ph_comparisons <- rownames(tukey)
    ph_diffs <- unname(tukey[, "diff"])
    ph_padj <- unname(tukey[, "p adj"])
    post_hoc_note <- if (is.na(levene_p)) {{
        "Levene test not computable: classic ANOVA with Tukey HSD post-hoc."
    }} else {{
        paste0("Variances equal (Levene p = ", signif(levene_p, 3),
               " >= ", alpha, "): classic ANOVA with Tukey HSD post-hoc.")
    }}
}}
normality_resid_p <- .shapiro_p(residuals(model))
""")
    builder.returns(ONEWAY_ANOVA_SCHEMA, {
        'f': 'f_stat',
        'df_between': 'df_between',
        'df_within': 'df_within',
        'p_value': 'p_val',
        'group_means': 'as.numeric(tapply(values, groups, mean))',
        'grand_mean': 'mean(values)',
        'eta_squared': 'eta_squared',
        'levene_p': 'levene_p',
        'normality_resid_p': 'normality_resid_p',
        'method_used': 'method_used',
        'post_hoc_note': 'post_hoc_note',
        'post_hoc_comparisons': 'as.character(ph_comparisons)',
        'post_hoc_diffs': 'as.numeric(ph_diffs)',
        'post_hoc_p_adj': 'as.numeric(ph_padj)',
    })
    builder.label('group_labels', names)
    return builder.build()


def extract_oneway_anova(envelope: dict, request: RRequest) -> OneWayAnovaResult:
    values = request.schema.extract(envelope)
    comparisons = values.pop('post_hoc_comparisons')
    diffs = values.pop('post_hoc_diffs')
    p_adj = values.pop('post_hoc_p_adj')
    post_hoc = [
        PostHocComparison(comparison=c, diff=d, p_adj=p)
        for c, d, p in zip(comparisons, diffs, p_adj)
    ]
    return OneWayAnovaResult(
        group_labels=list(request.labels['group_labels']),
        post_hoc=post_hoc,
        generated_code=request.code,
        **values,
    )


@register_analysis('oneway_anova', 'One-way ANOVA (classic + Tukey or Welch + Games-Howell)')
async def run_oneway_anova(
    gateway,
    groups: Sequence,
    labels: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> OneWayAnovaResult:
    request = build_oneway_anova(groups, labels)
    return await run_request(gateway, request, extract_oneway_anova, timeout_ms)


# =============================================================================
# MANN-WHITNEY U
# =============================================================================

MANN_WHITNEY_SCHEMA = ResultSchema('mann_whitney', [
    number('statistic'),
    number('p_value'),
    number('median1'),
    number('median2'),
    number('effect_size'),
    number('skew1'),
    number('skew2'),
    string('shape_note'),
])


@dataclass
class MannWhitneyResult(AnalysisResult):
    """
    Mann-Whitney U (Wilcoxon rank-sum) test.

    ``effect_size`` is r = |z| / sqrt(N); ``shape_note`` says whether the
    group distributions look alike (test reads as a median comparison) or
    not (mean-rank comparison).
    """

    statistic: float
    p_value: float
    median1: float
    median2: float
    effect_size: float
    skew1: float
    skew2: float
    shape_note: str
    generated_code: str = ''


def build_mann_whitney(group1, group2) -> RRequest:
    first, second = validate_groups([group1, group2], 'mann_whitney', within_variance=False)

    builder = RCodeBuilder('mann_whitney', libraries=['psych'])
    builder.assign('g1', builder.numeric_vector(first))
    builder.assign('g2', builder.numeric_vector(second))
    builder.block("""
test <- wilcox.test(g1, g2, exact = FALSE)
z_score <- qnorm(test$p.value / 2)
effect_r <- abs(z_score) / sqrt(length(g1) + length(g2))

sk1 <- skew(g1)
sk2 <- skew(g2)
similar_shape <- isTRUE(sign(sk1) == sign(sk2) && abs(sk1 - sk2) < 1)
shape_note <- if (similar_shape) {
    "Similar distribution shapes: compares medians"
} else {
    "Different distribution shapes: compares mean ranks"
}
""")
    builder.returns(MANN_WHITNEY_SCHEMA, {
        'statistic': 'unname(test$statistic)',
        'p_value': 'test$p.value',
        'median1': 'median(g1)',
        'median2': 'median(g2)',
        'effect_size': 'effect_r',
        'skew1': 'sk1',
        'skew2': 'sk2',
        'shape_note': 'shape_note',
    })
    return builder.build()


def extract_mann_whitney(envelope: dict, request: RRequest) -> MannWhitneyResult:
    return MannWhitneyResult(generated_code=request.code, **request.schema.extract(envelope))


@register_analysis('mann_whitney', 'Mann-Whitney U test')
async def run_mann_whitney(
    gateway,
    group1,
    group2,
    timeout_ms: Optional[int] = None,
) -> MannWhitneyResult:
    request = build_mann_whitney(group1, group2)
    return await run_request(gateway, request, extract_mann_whitney, timeout_ms)


# =============================================================================
# KRUSKAL-WALLIS
# =============================================================================

KRUSKAL_WALLIS_SCHEMA = ResultSchema('kruskal_wallis', [
    number('statistic'),
    number('df'),
    number('p_value'),
    numbers('medians'),
    number('epsilon_squared'),
    string('method'),
])


@dataclass
class KruskalWallisResult(AnalysisResult):
    statistic: float
    df: float
    p_value: float
    group_labels: list
    medians: list
    epsilon_squared: float
    method: str
    generated_code: str = ''


def build_kruskal_wallis(groups: Sequence, labels: Optional[Sequence[str]] = None) -> RRequest:
    arrays = validate_groups(groups, 'kruskal_wallis', within_variance=False)
    names = group_labels(labels, len(arrays))

    builder = RCodeBuilder('kruskal_wallis')
    emit_groups(builder, arrays, names)
    builder.block("""
test <- kruskal.test(values ~ groups)
h <- unname(test$statistic)
epsilon_squared <- h / ((length(values)^2 - 1) / (length(values) + 1))
""")
    builder.returns(KRUSKAL_WALLIS_SCHEMA, {
        'statistic': 'h',
        'df': 'unname(test$parameter)',
        'p_value': 'test$p.value',
        'medians': 'as.numeric(tapply(values, groups, median))',
        'epsilon_squared': 'epsilon_squared',
        'method': 'test$method',
    })
    builder.label('group_labels', names)
    return builder.build()


def extract_kruskal_wallis(envelope: dict, request: RRequest) -> KruskalWallisResult:
    return KruskalWallisResult(
        group_labels=list(request.labels['group_labels']),
        generated_code=request.code,
        **request.schema.extract(envelope),
    )


@register_analysis('kruskal_wallis', 'Kruskal-Wallis rank sum test')
async def run_kruskal_wallis(
    gateway,
    groups: Sequence,
    labels: Optional[Sequence[str]] = None,
    timeout_ms: Optional[int] = None,
) -> KruskalWallisResult:
    request = build_kruskal_wallis(groups, labels)
    return await run_request(gateway, request, extract_kruskal_wallis, timeout_ms)


# =============================================================================
# WILCOXON SIGNED-RANK
# =============================================================================

WILCOXON_SCHEMA = ResultSchema('wilcoxon_signed_rank', [
    number('statistic'),
    number('p_value'),
    number('median_diff'),
    number('effect_size'),
    string('method'),
])


@dataclass
class WilcoxonSignedRankResult(AnalysisResult):
    """``median_diff`` is the Hodges-Lehmann pseudo-median of the differences."""

    statistic: float
    p_value: float
    median_diff: float
    effect_size: float
    method: str
    generated_code: str = ''


def build_wilcoxon_signed_rank(before, after) -> RRequest:
    first, second = validate_paired(before, after, 'wilcoxon_signed_rank')

    builder = RCodeBuilder('wilcoxon_signed_rank')
    builder.assign('v_before', builder.numeric_vector(first))
    builder.assign('v_after', builder.numeric_vector(second))
    builder.block("""
test <- wilcox.test(v_before, v_after, paired = TRUE, conf.int = TRUE, exact = FALSE)
n_nonzero <- sum(v_before != v_after)
effect_r <- abs(qnorm(test$p.value / 2)) / sqrt(n_nonzero)
median_diff <- if (!is.null(test$estimate)) unname(test$estimate) else median(v_before - v_after)
""")
    builder.returns(WILCOXON_SCHEMA, {
        'statistic': 'unname(test$statistic)',
        'p_value': 'test$p.value',
        'median_diff': 'median_diff',
        'effect_size': 'effect_r',
        'method': 'test$method',
    })
    return builder.build()


def extract_wilcoxon_signed_rank(envelope: dict, request: RRequest) -> WilcoxonSignedRankResult:
    return WilcoxonSignedRankResult(generated_code=request.code, **request.schema.extract(envelope))


@register_analysis('wilcoxon_signed_rank', 'Wilcoxon signed-rank test')
async def run_wilcoxon_signed_rank(
    gateway,
    before,
    after,
    timeout_ms: Optional[int] = None,
) -> WilcoxonSignedRankResult:
    request = build_wilcoxon_signed_rank(before, after)
    return await run_request(gateway, request, extract_wilcoxon_signed_rank, timeout_ms)
