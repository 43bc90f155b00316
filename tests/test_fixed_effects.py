"""
Tests for the fixed-effects DiD and event-study estimator.
"""

from datetime import date

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf

from agewage.data.policy_events import PolicyCalendar, PolicyEvent
from agewage.data.waves import FrameWaveLoader
from agewage.engine import ThresholdPipeline
from agewage.errors import CapacityExceeded, MissingVariable, RankDeficientDesign
from agewage.model.absorb import demean, find_degenerate_levels
from agewage.model.fixed_effects import FixedEffectsEstimator, RegressionDesign, event_term
from agewage.model.treatment import TreatmentAssigner
from tests.fixtures.synthetic_dgp import make_age_period_cells, make_survey_waves


@pytest.fixture
def event():
    return PolicyEvent("Reform", 25, date(2016, 4, 1), slug="r")


@pytest.fixture
def cells(event):
    df, truth = make_age_period_cells(threshold=25, event_date=date(2016, 4, 1))
    labelled = TreatmentAssigner(PolicyCalendar([event])).assign(df, date_col=None)
    return labelled, truth


@pytest.fixture
def estimator():
    return FixedEffectsEstimator()


class TestAbsorb:
    """Test the weighted within transformation."""

    def test_single_factor_exact(self):
        codes = np.array([0, 0, 1, 1])
        w = np.array([1.0, 3.0, 1.0, 1.0])
        out = demean(np.array([1.0, 5.0, 2.0, 4.0]), [codes], w)
        np.testing.assert_allclose(out.values[:, 0], [-3.0, 1.0, -1.0, 1.0])
        assert out.converged and out.iterations == 1

    def test_two_factors_remove_additive_effects(self):
        rng = np.random.default_rng(0)
        a = np.repeat(np.arange(6), 8)
        b = np.tile(np.arange(8), 6)
        y = rng.normal(size=6)[a] + rng.normal(size=8)[b]
        out = demean(y, [a, b], rng.uniform(0.5, 2.0, 48))
        assert out.converged
        np.testing.assert_allclose(out.values[:, 0], 0.0, atol=1e-8)

    def test_iterative_singleton_removal(self):
        # level 3 of factor a is a singleton; dropping it makes b's level 2 one too
        a = np.array([0, 0, 1, 1, 2, 2, 3])
        b = np.array([0, 1, 0, 1, 2, 0, 2])
        result = find_degenerate_levels({"a": a, "b": b}, np.ones(7))
        assert result.keep.tolist() == [True, True, True, True, False, False, False]
        assert result.rounds >= 2

    def test_zero_weight_level(self):
        a = np.array([0, 0, 1, 1])
        result = find_degenerate_levels({"a": a}, np.array([1.0, 1.0, 0.0, 0.0]))
        assert result.keep.tolist() == [True, True, False, False]
        assert result.zero_weight_rows == 2

    def test_constant_outcome_level(self):
        a = np.array([0, 0, 1, 1, 2, 2])
        y = np.array([0.0, 0.0, 0.1, 0.3, 0.2, 0.5])
        result = find_degenerate_levels({"a": a}, np.ones(6), y)
        assert result.keep.tolist() == [False, False, True, True, True, True]
        assert result.constant_outcome_rows == 2
        assert result.by_factor == {"a": 2}

    def test_outcome_not_checked_without_y(self):
        a = np.array([0, 0, 1, 1])
        result = find_degenerate_levels({"a": a}, np.ones(4))
        assert result.keep.all()


class TestDiD:
    """Test difference-in-differences with absorbed age and period effects."""

    def test_recovers_planted_effect(self, cells, estimator, event):
        df, truth = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight", cluster=())

        assert res.params[event.treat_col] == pytest.approx(truth["effect"], abs=1e-6)
        assert list(res.params.index) == [event.treat_col]
        assert res.n_obs == len(df)
        assert res.reliable
        assert res.std_errors[event.treat_col] > 0
        assert res.metadata["family"] == "did"

    def test_period_clustered_with_shocks(self, estimator, event):
        df, truth = make_age_period_cells(threshold=25, event_date=date(2016, 4, 1), seed=7)
        df = TreatmentAssigner(PolicyCalendar([event])).assign(df, date_col=None)
        res = estimator.fit_did(df, "unemployed", event, weights="weight")

        assert abs(res.params[event.treat_col] - truth["effect"]) < 0.005
        assert res.cov_type == "cluster"
        assert res.n_clusters == {"period": 20}
        assert res.reliable
        assert res.std_errors[event.treat_col] > 0

    def test_matches_dummy_variable_wls(self, cells, estimator, event):
        df, _ = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight")

        data = df.assign(
            treat=df[event.treat_col].astype(float),
            period_label=df["period"].astype(str),
        )
        dummies = smf.wls(
            "unemployed ~ treat + C(age) + C(period_label)", data=data, weights=data["weight"],
        ).fit()
        assert res.params[event.treat_col] == pytest.approx(dummies.params["treat"], abs=1e-8)

    def test_matches_panelols(self, cells, estimator, event):
        from linearmodels.panel import PanelOLS

        df, _ = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight")

        panel = df.assign(
            time=df["period"].dt.start_time,
            treat=df[event.treat_col].astype(float),
        ).set_index(["age", "time"])
        lm = PanelOLS(
            panel["unemployed"], panel[["treat"]],
            entity_effects=True, time_effects=True, weights=panel["weight"],
        ).fit()
        assert res.params[event.treat_col] == pytest.approx(lm.params["treat"], abs=1e-6)

    def test_two_way_clustering(self, cells, estimator, event):
        df, _ = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight",
                                cluster=("period", "age"))
        assert res.cov_type == "two-way cluster"
        assert res.cluster_vars == ("period", "age")
        assert res.n_clusters["period&age"] == len(df)

    def test_hc1_without_cluster(self, cells, estimator, event):
        df, _ = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight", cluster=())
        assert res.cov_type == "HC1"
        assert res.cluster_vars == ()

    def test_all_missing_control_raises(self, cells, estimator, event):
        df, _ = cells
        df = df.assign(region=np.nan)
        with pytest.raises(MissingVariable) as exc:
            estimator.fit_did(df, "unemployed", event, controls=["region"])
        assert exc.value.names == ["region"]

    def test_absent_column_raises(self, cells, estimator, event):
        df, _ = cells
        with pytest.raises(MissingVariable):
            estimator.fit_did(df.drop(columns=["weight"]), "unemployed", event)

    def test_fe_capacity(self, cells, event):
        df, _ = cells
        with pytest.raises(CapacityExceeded):
            FixedEffectsEstimator(max_fe_levels=10).fit_did(df, "unemployed", event)

    def test_design_capacity(self, cells, event):
        df, _ = cells
        with pytest.raises(CapacityExceeded):
            FixedEffectsEstimator(max_design_cells=100).fit_did(df, "unemployed", event)

    def test_singleton_level_dropped_and_reported(self, cells, estimator, event):
        df, truth = cells
        extra = df.iloc[[0]].assign(age=99.0)
        res = estimator.fit_did(pd.concat([df, extra], ignore_index=True),
                                "unemployed", event, weights="weight", cluster=())
        issue = next(i for i in res.issues if i.kind == "degenerate_levels")
        assert issue.count == 1
        assert res.n_obs == len(df)
        assert res.params[event.treat_col] == pytest.approx(truth["effect"], abs=1e-6)

    def test_constant_outcome_level_dropped_and_reported(self, cells, estimator, event):
        df, truth = cells
        df = df.copy()
        # two untreated ages with no unemployment in any quarter
        df.loc[df["age"].isin([17.0, 18.0]), "unemployed"] = 0.0
        res = estimator.fit_did(df, "unemployed", event, weights="weight", cluster=())

        issue = next(i for i in res.issues if i.kind == "degenerate_levels")
        assert issue.count == 40
        assert issue.details["constant_outcome_rows"] == 40
        assert issue.details["by_factor"] == {"age": 40}
        assert res.n_obs == len(df) - 40
        assert res.params[event.treat_col] == pytest.approx(truth["effect"], abs=1e-6)

    def test_partially_missing_cluster_key_raises(self, cells, estimator, event):
        df, _ = cells
        df = df.assign(region=np.where(df["age"] < 20, np.nan, 1.0))
        with pytest.raises(MissingVariable) as exc:
            estimator.fit_did(df, "unemployed", event, weights="weight", cluster=("region",))
        assert exc.value.names == ["region"]
        assert exc.value.waves == []
        assert exc.value.count == 3 * 20

    def test_zero_weight_rows_reported(self, cells, estimator, event):
        df, _ = cells
        df = df.copy()
        df.loc[0, "weight"] = 0.0
        res = estimator.fit_did(df, "unemployed", event, weights="weight", cluster=())
        assert any(i.kind == "zero_weight_rows" and i.count == 1 for i in res.issues)
        assert res.n_obs == len(df) - 1

    def test_incomplete_rows_reported(self, cells, estimator, event):
        df, _ = cells
        df = df.copy()
        df.loc[:4, "unemployed"] = np.nan
        res = estimator.fit_did(df, "unemployed", event, weights="weight")
        assert any(i.kind == "incomplete_rows" and i.count == 5 for i in res.issues)
        assert res.n_obs == len(df) - 5

    def test_unidentified_treatment_raises(self, cells, estimator, event):
        df, _ = cells
        df = df.assign(**{event.treat_col: 0})
        with pytest.raises(RankDeficientDesign):
            estimator.fit_did(df, "unemployed", event, weights="weight")

    def test_collinear_term_dropped(self, cells, estimator, event):
        df, _ = cells
        df = df.assign(treat_copy=df[event.treat_col] * 2)
        design = RegressionDesign.from_frame(
            df, "unemployed", [event.treat_col, "treat_copy"],
            absorb=["age", "period"], weights="weight", clusters=["period"],
        )
        res = estimator.fit(design)
        assert "treat_copy" not in res.params.index
        issue = next(i for i in res.issues if i.kind == "rank_deficient_design")
        assert issue.details["dropped"] == ["treat_copy"]

    def test_no_absorption_adds_constant(self, cells, estimator, event):
        df, _ = cells
        design = RegressionDesign.from_frame(
            df, "unemployed", [event.treat_col, event.post_col, event.age_col],
            weights="weight",
        )
        res = estimator.fit(design)
        assert list(res.params.index) == ["const", event.treat_col, event.post_col, event.age_col]
        assert res.cov_type == "HC1"

    def test_result_tables(self, cells, estimator, event):
        df, _ = cells
        res = estimator.fit_did(df, "unemployed", event, weights="weight", cluster=())
        frame = res.summary_frame()
        assert list(frame.columns) == [
            "estimate", "std_error", "t_stat", "pvalue", "conf_lower", "conf_upper",
        ]
        term = res.term(event.treat_col)
        assert term["pvalue"] < 0.001
        assert "WLS with absorbed fixed effects" in res.summary()
        with pytest.raises(KeyError):
            res.term("nope")


class TestEventStudy:
    """Test event-time interaction models."""

    def test_reference_omitted(self, cells, estimator, event):
        df, _ = cells
        es = estimator.fit_event_study(df, "unemployed", event, weights="weight", cluster=())

        assert es.reference == [-1]
        assert "es_m1" not in es.terms
        assert "es_m1" not in es.estimation.params.index
        assert -1 not in es.coefficients.index
        assert sorted(es.terms.values()) == [k for k in range(-8, 9) if k != -1]

    def test_leads_zero_lags_effect(self, cells, estimator, event):
        df, truth = cells
        es = estimator.fit_event_study(df, "unemployed", event, weights="weight", cluster=())
        coefs = es.coefficients

        np.testing.assert_allclose(coefs[coefs.index < 0], 0.0, atol=1e-6)
        np.testing.assert_allclose(coefs[coefs.index >= 0], truth["effect"], atol=1e-6)
        assert es.lead_terms == [event_term(k) for k in range(-8, -1)]

    def test_pre_trends_pass(self, cells, estimator, event):
        df, _ = cells
        es = estimator.fit_event_study(df, "unemployed", event, weights="weight", cluster=())
        wald = es.pre_trend_test()

        assert wald.df == 7
        assert wald.pvalue > 0.99
        passes, reason = es.passes_pre_trends()
        assert passes, reason

    def test_multiple_references(self, cells, estimator, event):
        df, _ = cells
        es = estimator.fit_event_study(df, "unemployed", event, reference=[-2, -1],
                                       window=(-4, 4), weights="weight", cluster=())
        assert "es_m1" not in es.terms and "es_m2" not in es.terms

        table = es.to_dataframe(include_reference=True)
        ref_rows = table[table["reference"]]
        assert ref_rows["period"].tolist() == [-2, -1]
        assert (ref_rows["coefficient"] == 0.0).all()
        assert table["period"].is_monotonic_increasing

    def test_reference_outside_window(self, cells, estimator, event):
        df, _ = cells
        with pytest.raises(ValueError):
            estimator.fit_event_study(df, "unemployed", event, reference=-9, window=(-8, 8))

    def test_missing_labels_raise(self, cells, estimator, event):
        df, _ = cells
        with pytest.raises(MissingVariable):
            estimator.fit_event_study(df.drop(columns=[event.rel_col]), "unemployed", event)


class TestMissingFactor:
    """Test regressions absorbing a factor that one wave never recorded."""

    @pytest.fixture
    def panel(self, event):
        frames, _ = make_survey_waves(n_waves=2, ages=range(23, 27), drop_region_in=1)
        built = ThresholdPipeline().build_panel(FrameWaveLoader(frames).load_all())
        return TreatmentAssigner(PolicyCalendar([event])).assign(built.panel)

    def test_region_fixed_effect_raises(self, panel, estimator, event):
        assert panel.loc[panel["wave"] == "2015Q2", "region"].isna().all()
        with pytest.raises(MissingVariable) as exc:
            estimator.fit_did(panel, "unemployed", event, absorb=("age", "period", "region"))

        assert exc.value.names == ["region"]
        assert exc.value.waves == ["2015Q2"]
        # active respondents: 4 ages x 5 quarters x 160
        assert exc.value.count == 3200
        assert "2015Q2" in str(exc.value)

    def test_without_region_fits_every_wave(self, panel, estimator, event):
        res = estimator.fit_did(panel, "unemployed", event)
        assert res.n_obs == 6400
