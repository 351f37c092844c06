"""
Analysis families for statbridge.

Each family validates its inputs, generates R code through
``engine.codegen.RCodeBuilder`` and deserializes the result envelope into a
typed result dataclass that keeps the generated code for reproducibility.

Usage
-----
    from engine import EngineManager, ExecutionGateway
    from analysis import run_ttest_independent, list_analyses

    gateway = ExecutionGateway(EngineManager())
    result = await run_ttest_independent(gateway, [1, 2, 3, 4, 5], [2, 3, 4, 5, 16])
    print(result.t, result.p_value, result.method)
    print(result.generated_code)

    # Available analyses
    print(list_analyses())
"""
from __future__ import annotations

from .base import AnalysisResult, is_computed
from .categorical import ChiSquareResult, run_chi_square
from .comparison import (
    KruskalWallisResult,
    MannWhitneyResult,
    OneWayAnovaResult,
    TTestIndependentResult,
    TTestPairedResult,
    WilcoxonSignedRankResult,
    run_kruskal_wallis,
    run_mann_whitney,
    run_oneway_anova,
    run_ttest_independent,
    run_ttest_paired,
    run_wilcoxon_signed_rank,
)
from .correlation import CorrelationResult, run_correlation
from .descriptive import DescriptiveResult, run_descriptive_stats
from .mediation import MediationResult, ModerationResult, run_mediation, run_moderation
from .multivariate import ClusterResult, TwoWayAnovaResult, run_cluster_analysis, run_two_way_anova
from .registry import get_analysis, list_analyses, register_analysis, run_analysis
from .regression import (
    LinearRegressionResult,
    LogisticRegressionResult,
    run_linear_regression,
    run_logistic_regression,
)
from .reliability import CronbachAlphaResult, EFAResult, run_cronbach_alpha, run_efa
from .sem import ModelKind, SEMResult, run_cfa, run_sem

__all__ = [
    # Base types
    'AnalysisResult',
    'is_computed',
    # Registry
    'get_analysis',
    'list_analyses',
    'register_analysis',
    'run_analysis',
    # Descriptive and correlation
    'DescriptiveResult',
    'run_descriptive_stats',
    'CorrelationResult',
    'run_correlation',
    # Group comparisons
    'TTestIndependentResult',
    'TTestPairedResult',
    'OneWayAnovaResult',
    'MannWhitneyResult',
    'KruskalWallisResult',
    'WilcoxonSignedRankResult',
    'run_ttest_independent',
    'run_ttest_paired',
    'run_oneway_anova',
    'run_mann_whitney',
    'run_kruskal_wallis',
    'run_wilcoxon_signed_rank',
    # Categorical
    'ChiSquareResult',
    'run_chi_square',
    # Regression
    'LinearRegressionResult',
    'LogisticRegressionResult',
    'run_linear_regression',
    'run_logistic_regression',
    # Reliability and factor models
    'CronbachAlphaResult',
    'EFAResult',
    'SEMResult',
    'ModelKind',
    'run_cronbach_alpha',
    'run_efa',
    'run_cfa',
    'run_sem',
    # Multivariate
    'ClusterResult',
    'TwoWayAnovaResult',
    'run_cluster_analysis',
    'run_two_way_anova',
    # Mediation and moderation
    'MediationResult',
    'ModerationResult',
    'run_mediation',
    'run_moderation',
]
