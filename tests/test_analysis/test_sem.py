"""Tests for CFA/SEM model parsing, full fits and the single-factor fallback."""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from analysis.sem import ModelKind, build_sem, parse_model, run_cfa, run_sem
from engine.errors import DomainError, EvaluationError
from engine.gateway import ExecutionGateway
from engine.lifecycle import EngineManager
from conftest import FakeEngine, fast_settings, make_envelope, run

MODEL = "F1 =~ x1 + x2 + x3"


@pytest.fixture
def sem_df():
    rng = np.random.default_rng(5)
    factor = rng.normal(size=40)
    return pd.DataFrame({
        f"x{i}": factor + rng.normal(scale=0.6, size=40) for i in range(1, 5)
    })


def sem_envelope(approximate=False):
    if approximate:
        return make_envelope(
            cfi=0.97, tli=0.95, rmsea=0.05, srmr=0.03, chisq=0.0, df=0, pvalue=None,
            est_lhs=['F1'] * 3, est_op=['=~'] * 3, est_rhs=['x1', 'x2', 'x3'],
            est_value=[0.8, 0.7, 0.9], est_se=[None] * 3, est_z=[None] * 3,
            est_p=[None] * 3, est_std=[0.8, 0.7, 0.9],
        )
    return make_envelope(
        cfi=1.0, tli=1.0, rmsea=0.0, srmr=0.01, chisq=0.0, df=0, pvalue=None,
        est_lhs=['F1', 'F1', 'F1', 'x1'], est_op=['=~', '=~', '=~', '~~'],
        est_rhs=['x1', 'x2', 'x3', 'x1'], est_value=[0.9, 0.8, 0.85, 0.3],
        est_se=[0.1, 0.1, 0.1, 0.05], est_z=[9.0, 8.0, 8.5, 6.0],
        est_p=[0.0, 0.0, 0.0, 0.0], est_std=[0.85, 0.8, 0.82, 0.28],
    )


def gateway_for(engine: FakeEngine) -> ExecutionGateway:
    return ExecutionGateway(EngineManager(fast_settings(), backend_factory=engine), retry_delay=0)


class TestParseModel:
    """Tests for model syntax validation."""

    def test_measurement_model(self):
        parsed = parse_model("F1 =~ x1 + x2 + x3\nF2 =~ x4 + x5 + x6 # comment",
                             [f"x{i}" for i in range(1, 7)])
        assert parsed.latents == ['F1', 'F2']
        assert parsed.indicators == [f"x{i}" for i in range(1, 7)]

    def test_structural_and_covariance_statements(self):
        parsed = parse_model("F1 =~ a + b + c; y ~ F1; a ~~ b", ['a', 'b', 'c', 'y'])
        assert [s.op for s in parsed.statements] == ['=~', '~', '~~']
        assert 'y' in parsed.indicators

    def test_unknown_variable(self):
        with pytest.raises(DomainError) as exc_info:
            parse_model("F1 =~ x1 + x2 + missing", ['x1', 'x2'])
        assert exc_info.value.category == 'unknown_variable'

    @pytest.mark.parametrize('model', [
        'F1 =~ x1 + system("ls")',
        'F1 := x1 * x2',
        'F1 =~ x1 + 2*x2',
        '',
    ])
    def test_invalid_syntax(self, model):
        with pytest.raises(DomainError) as exc_info:
            parse_model(model, ['x1', 'x2'])
        assert exc_info.value.category == 'invalid_model'

    def test_cfa_requires_measurement(self):
        with pytest.raises(DomainError):
            parse_model("y ~ x1", ['x1', 'y'], require_measurement=True)

    def test_renders_with_safe_names(self):
        parsed = parse_model("F1 =~ a + b + c", ['a', 'b', 'c'])
        assert parsed.render({'a': 'A_'}) == 'F1 =~ A_ + b + c'


class TestFullFit:
    """Tests for lavaan fits."""

    def test_generated_code(self, sem_df):
        request = build_sem(sem_df, MODEL, analysis='cfa')
        assert 'library(lavaan)' in request.code
        assert 'fit <- cfa(model = model_syntax, data = df, std.lv = TRUE)' in request.code
        assert 'model_syntax <- "F1 =~ x1 + x2 + x3"' in request.code

    def test_cfa_with_lavaan(self, sem_df):
        engine = FakeEngine(capabilities={'lavaan': True}).script(sem_envelope())

        result = run(run_cfa(gateway_for(engine), sem_df, MODEL))

        assert result.model_kind is ModelKind.FULL
        assert not result.is_approximate
        assert result.fallback_reason is None
        assert len(result.loadings()) == 3
        assert result.fit_measures.cfi == 1.0
        assert result.fit_measures.pvalue is None
        assert 'cfa(model = model_syntax' in engine.submitted[0]


class TestFallback:
    """The approximate fit is tagged and never mistaken for a full fit."""

    def test_without_lavaan(self, sem_df):
        engine = FakeEngine(capabilities={'lavaan': False}).script(sem_envelope(approximate=True))

        result = run(run_sem(gateway_for(engine), sem_df, MODEL))

        assert result.model_kind is ModelKind.APPROXIMATE
        assert result.is_approximate
        assert 'not available' in result.fallback_reason
        assert len(engine.submitted) == 1
        assert 'fa(df[, indicators], nfactors = 1' in engine.submitted[0]
        assert result.generated_code == engine.submitted[0]
        assert result.estimates[0].se is None

    def test_after_failed_full_fit(self, sem_df):
        engine = FakeEngine(capabilities={'lavaan': True}).script(
            EvaluationError("lavaan did not converge"),
            sem_envelope(approximate=True),
        )

        result = run(run_cfa(gateway_for(engine), sem_df, MODEL))

        assert result.is_approximate
        assert result.fallback_reason.startswith('lavaan fit failed')
        assert len(engine.submitted) == 2

    def test_invalid_model_never_reaches_engine(self, sem_df):
        engine = FakeEngine()
        with pytest.raises(DomainError):
            run(run_cfa(gateway_for(engine), sem_df, "F1 =~ x1 + nope"))
        assert engine.submitted == []

    def test_approximate_needs_three_indicators(self, sem_df):
        engine = FakeEngine(capabilities={'lavaan': False})
        with pytest.raises(DomainError) as exc_info:
            run(run_cfa(gateway_for(engine), sem_df, "F1 =~ x1 + x2"))
        assert exc_info.value.category == 'model_not_identified'
